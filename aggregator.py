"""Concurrent per-symbol fetching feeding a single event queue.

Fetch tasks run on a thread pool and never touch application state; the
only thing they share with the consumer loop is the ``EventBus``.
"""

import itertools
import logging
import queue
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from analysis import Analysis, analyze
from quotes import MarketDataProvider
from series import DEFAULT_TIME_RANGE, Series, TimeRange

logger = logging.getLogger(__name__)

NO_DATA_MESSAGE = "no data found"


@dataclass(frozen=True)
class UpdateEvent:
    symbol: str
    series: Series
    analysis: Analysis
    time_range: TimeRange
    generation: int


@dataclass(frozen=True)
class ErrorEvent:
    symbol: str
    message: str
    generation: int


Event = Union[UpdateEvent, ErrorEvent]


class EventBus:
    """Many producers, one consumer; events come out in completion order"""

    def __init__(self):
        self._queue: "queue.Queue[Event]" = queue.Queue()

    def publish(self, event: Event) -> None:
        self._queue.put(event)

    def poll(self) -> Optional[Event]:
        """Non-blocking check for the next event"""
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def drain(self) -> List[Event]:
        events = []
        while True:
            event = self.poll()
            if event is None:
                return events
            events.append(event)

    def empty(self) -> bool:
        return self._queue.empty()


class Aggregator:
    """Starts one fetch task per symbol for each refresh cycle.

    Cycles are numbered; every event is tagged with the generation of the
    cycle that produced it. Each cycle runs on its own pool of at most
    ``max_workers`` threads. Starting a cycle cancels the previous cycle's
    queued fetches; fetches already in flight finish on their own threads
    and their events carry the older generation.
    """

    def __init__(self, provider: MarketDataProvider, bus: EventBus, max_workers: int = 32,
                 default_time_range: TimeRange = DEFAULT_TIME_RANGE):
        self.provider = provider
        self.bus = bus
        self.max_workers = max_workers
        self.default_time_range = default_time_range
        self.executor: Optional[ThreadPoolExecutor] = None
        self._generations = itertools.count(1)
        self.generation = 0

    def start_fetch_cycle(self, symbols: Iterable[str], period_days: int) -> int:
        """Submit a task per symbol and return the new cycle's generation without waiting"""
        generation = next(self._generations)
        self.generation = generation
        symbols = list(symbols)
        logger.info("Starting fetch cycle %d for %d symbols", generation, len(symbols))

        previous = self.executor
        self.executor = ThreadPoolExecutor(max_workers=self.max_workers,
                                           thread_name_prefix=f"fetch-{generation}")
        if previous is not None:
            previous.shutdown(wait=False, cancel_futures=True)

        for symbol in symbols:
            future = self.executor.submit(self._fetch_one, symbol, period_days, generation)
            future.add_done_callback(
                lambda f, symbol=symbol, generation=generation: self._handle_completion(f, symbol, generation)
            )
        return generation

    def _fetch_one(self, symbol: str, period_days: int, generation: int) -> Optional[Event]:
        if generation != self.generation:
            logger.debug("Skipping %s from superseded cycle %d", symbol, generation)
            return None
        series = self.provider.fetch(symbol, period_days)
        if series.is_empty():
            return ErrorEvent(symbol, NO_DATA_MESSAGE, generation)
        return UpdateEvent(symbol, series, analyze(symbol, series), self.default_time_range, generation)

    def _handle_completion(self, future: Future, symbol: str, generation: int) -> None:
        """Callback when a fetch completes - puts the result on the bus"""
        if future.cancelled():
            return
        try:
            event = future.result()
        except Exception as e:
            logger.warning("Fetch for %s failed: %s", symbol, e)
            event = ErrorEvent(symbol, str(e), generation)
        if event is not None:
            self.bus.publish(event)

    def shutdown(self) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=False, cancel_futures=True)
