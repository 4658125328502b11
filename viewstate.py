"""Application state and the browse / detail / edit state machine.

``ViewState`` is the only owner of mutable application state. It is driven
from a single loop: events from fetch tasks arrive through the aggregator's
``EventBus`` and keystrokes arrive as ``KeyEvent`` objects.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from aggregator import Aggregator, ErrorEvent, Event, UpdateEvent
from analysis import Analysis
from errors import AppError
from keyboard import Key, KeyEvent
from persistence import PersistenceManager, StockConfig
from series import DEFAULT_TIME_RANGE, Series, TimeRange

logger = logging.getLogger(__name__)

SAVE_KEY = 's'
QUIT_KEY = 'q'
EDIT_KEY = 'e'


class View(str, Enum):
    MAIN = "main"
    DETAIL = "detail"
    EDIT = "edit"


@dataclass
class TrackedEntry:
    analysis: Analysis
    series: Series
    time_range: TimeRange

    @property
    def symbol(self) -> str:
        return self.analysis.symbol


@dataclass
class EditBuffer:
    """Unsaved symbol list being edited, with its cursor and the text being typed"""
    symbols: List[str] = field(default_factory=list)
    cursor: int = 0
    pending_input: str = ""


@dataclass
class AppState:
    entries: List[TrackedEntry] = field(default_factory=list)
    selected_index: int = 0
    selected_time_range_index: int = 0
    view: View = View.MAIN
    edit_buffer: EditBuffer = field(default_factory=EditBuffer)
    generation: int = 0
    last_error: Optional[str] = None
    running: bool = True

    @property
    def selected_entry(self) -> Optional[TrackedEntry]:
        if 0 <= self.selected_index < len(self.entries):
            return self.entries[self.selected_index]
        return None


class ViewState:
    def __init__(self, config: StockConfig, aggregator: Aggregator, persistence: PersistenceManager,
                 drain_all_events: bool = False, sort_entries: bool = False,
                 default_time_range: TimeRange = DEFAULT_TIME_RANGE):
        self.config = config
        self.aggregator = aggregator
        self.persistence = persistence
        self.drain_all_events = drain_all_events
        self.sort_entries = sort_entries
        self.state = AppState(selected_time_range_index=TimeRange.all().index(default_time_range))
        self._key_handlers = {
            View.MAIN: self._handle_browse_key,
            View.DETAIL: self._handle_browse_key,
            View.EDIT: self._handle_edit_key,
        }

    @property
    def running(self) -> bool:
        return self.state.running

    # ── Refresh cycles ────────────────────────────────────────────

    def refresh(self) -> int:
        """Replace all entries with a fresh fetch of every configured symbol"""
        self.state.entries.clear()
        self.state.selected_index = 0
        self.state.generation = self.aggregator.start_fetch_cycle(
            self.config.symbols, self.config.analysis_period_days
        )
        return self.state.generation

    def process_events(self) -> int:
        """Apply pending fetch results; one per call unless draining everything"""
        if self.drain_all_events:
            events = self.aggregator.bus.drain()
        else:
            event = self.aggregator.bus.poll()
            events = [event] if event is not None else []
        for event in events:
            self.apply_event(event)
        return len(events)

    def apply_event(self, event: Event) -> None:
        if event.generation != self.state.generation:
            logger.debug("Dropping %s for %s from stale cycle %d", type(event).__name__,
                         event.symbol, event.generation)
            return

        if isinstance(event, UpdateEvent):
            self.state.entries.append(TrackedEntry(event.analysis, event.series, event.time_range))
            if self.sort_entries:
                self.state.entries.sort(key=lambda entry: entry.symbol)
        elif isinstance(event, ErrorEvent):
            logger.warning("No update for %s: %s", event.symbol, event.message)
            self.state.last_error = f"{event.symbol}: {event.message}"
        else:
            raise TypeError(f"Unknown event type: {type(event).__name__}")

    # ── Keyboard input ────────────────────────────────────────────

    def handle_key(self, event: KeyEvent) -> None:
        self._key_handlers[self.state.view](event)

    def _handle_browse_key(self, event: KeyEvent) -> None:
        state = self.state
        if event.key == Key.CHAR:
            if event.char == QUIT_KEY or (event.ctrl and event.char == 'c'):
                state.running = False
            elif event.char == EDIT_KEY and not event.ctrl and state.view == View.MAIN:
                self._enter_edit()
        elif event.key == Key.LEFT:
            if state.selected_index > 0:
                state.selected_index -= 1
        elif event.key == Key.RIGHT:
            if state.selected_index < len(state.entries) - 1:
                state.selected_index += 1
        elif event.key in (Key.UP, Key.DOWN):
            self._cycle_time_range(-1 if event.key == Key.UP else 1)
        elif event.key == Key.ENTER:
            if state.view == View.MAIN:
                state.view = View.DETAIL
        elif event.key == Key.ESC:
            if state.view == View.DETAIL:
                state.view = View.MAIN
            else:
                state.running = False

    def _cycle_time_range(self, step: int) -> None:
        entry = self.state.selected_entry
        if entry is None:
            return
        ranges = TimeRange.all()
        self.state.selected_time_range_index = (self.state.selected_time_range_index + step) % len(ranges)
        entry.time_range = ranges[self.state.selected_time_range_index]

    def _enter_edit(self) -> None:
        self.state.view = View.EDIT
        self.state.edit_buffer = EditBuffer(symbols=[entry.symbol for entry in self.state.entries])

    def _handle_edit_key(self, event: KeyEvent) -> None:
        buffer = self.state.edit_buffer
        if event.key == Key.CHAR:
            if event.ctrl and event.char == SAVE_KEY:
                self._save_edits()
            else:
                buffer.pending_input += event.char
        elif event.key == Key.ENTER:
            symbol = buffer.pending_input.strip().upper()
            if symbol and symbol not in buffer.symbols:
                buffer.symbols.append(symbol)
            buffer.pending_input = ""
        elif event.key == Key.BACKSPACE:
            buffer.pending_input = buffer.pending_input[:-1]
        elif event.key == Key.DELETE:
            if buffer.cursor < len(buffer.symbols):
                del buffer.symbols[buffer.cursor]
                if buffer.cursor > 0:
                    buffer.cursor -= 1
        elif event.key == Key.UP:
            if buffer.cursor > 0:
                buffer.cursor -= 1
        elif event.key == Key.DOWN:
            if buffer.cursor < len(buffer.symbols) - 1:
                buffer.cursor += 1
        elif event.key == Key.ESC:
            self.state.view = View.MAIN

    def _save_edits(self) -> None:
        config = StockConfig(
            symbols=list(self.state.edit_buffer.symbols),
            analysis_period_days=self.config.analysis_period_days,
        )
        try:
            self.persistence.save(config)
        except AppError as e:
            logger.error("Could not save symbols: %s", e)
            self.state.last_error = str(e)
            return

        self.config = config
        self.state.last_error = None
        self.state.view = View.MAIN
        self.refresh()
