import time
from typing import Dict, List, Union

import pytest

from aggregator import Aggregator, EventBus
from errors import ApiError
from persistence import PersistenceManager, StockConfig
from series import Series
from viewstate import ViewState

SAMPLE_CLOSES = [100.0, 102.0, 105.0, 103.0, 106.0, 108.0]


def make_series(closes: List[float], start: int = 1672531200) -> Series:
    series = Series()
    for i, close in enumerate(closes):
        series.add_point(start + i * 86400, close, 1000 + i * 100)
    return series


class FakeProvider:
    """Returns canned series per symbol; exceptions in the table are raised"""

    def __init__(self, table: Dict[str, Union[Series, Exception]]):
        self.table = table
        self.calls: List[tuple] = []

    def fetch(self, symbol: str, period_days: int) -> Series:
        self.calls.append((symbol, period_days))
        result = self.table.get(symbol)
        if result is None:
            raise ApiError(symbol, "not found")
        if isinstance(result, Exception):
            raise result
        return result


def collect_events(bus: EventBus, count: int, timeout: float = 5.0) -> list:
    """Poll the bus until ``count`` events arrived or the timeout passes"""
    events = []
    deadline = time.monotonic() + timeout
    while len(events) < count and time.monotonic() < deadline:
        event = bus.poll()
        if event is None:
            time.sleep(0.01)
            continue
        events.append(event)
    return events


def pump(view_state: ViewState, count: int, timeout: float = 5.0) -> int:
    """Drive the consumer side until ``count`` events were applied"""
    applied = 0
    deadline = time.monotonic() + timeout
    while applied < count and time.monotonic() < deadline:
        done = view_state.process_events()
        if not done:
            time.sleep(0.01)
        applied += done
    return applied


@pytest.fixture
def sample_series() -> Series:
    return make_series(SAMPLE_CLOSES)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider({
        "AAPL": make_series(SAMPLE_CLOSES),
        "MSFT": make_series([300.0, 301.5, 299.0, 305.0]),
        "NVDA": make_series([50.0 + i for i in range(60)]),
        "EMPTY": Series(),
    })


@pytest.fixture
def aggregator(provider):
    agg = Aggregator(provider, EventBus(), max_workers=4)
    yield agg
    agg.shutdown()


@pytest.fixture
def persistence(tmp_path) -> PersistenceManager:
    return PersistenceManager(tmp_path / "bstock" / "config.json")


@pytest.fixture
def view_state(aggregator, persistence) -> ViewState:
    config = StockConfig(symbols=["AAPL", "MSFT", "NVDA"], analysis_period_days=90)
    return ViewState(config, aggregator, persistence)
