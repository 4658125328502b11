#!/usr/bin/env python3
from rich.live import Live
from rich.layout import Layout
from rich.panel import Panel
from rich.text import Text
from rich.console import Console, Group
from rich.align import Align
from rich import box

from pydantic import BaseModel, Field, ValidationError
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import argparse
import logging
import math
import sys
from pathlib import Path

import numpy as np
import yaml

from aggregator import Aggregator, EventBus
from analysis import Analysis, price_metrics
from errors import AppError, ConfigParseError, IoError
from keyboard import KeyReader
from persistence import DEFAULT_PERIOD_DAYS, PersistenceManager, StockConfig
from quotes import YahooQuoteProvider
from series import DEFAULT_TIME_RANGE, TimeRange
from viewstate import AppState, TrackedEntry, View, ViewState

logger = logging.getLogger(__name__)

LOG_FILENAME = "bstock.log"
CARDS_PER_PAGE = 4
GRID_COLUMNS = 2
LABEL_WIDTH = 9


class DashboardSettings(BaseModel):
    """Loop timing and display options for the terminal dashboard"""
    screen_fps: int = Field(default=4, ge=1, le=60, description="Screen refreshes per second")
    input_poll_ms: int = Field(default=100, ge=10, le=1000, description="Longest wait for a key per tick")
    drain_all_events: bool = Field(default=False, description="Apply every pending fetch result per tick instead of one")
    fetch_workers: int = Field(default=32, ge=1, description="Concurrent fetches across all refresh cycles")
    request_timeout: float = Field(default=10.0, gt=0, description="Seconds before a quote download gives up")
    sort_entries: bool = Field(default=False, description="Keep cards sorted by symbol rather than arrival order")
    default_time_range: TimeRange = Field(default=DEFAULT_TIME_RANGE, description="Chart window for new cards")
    min_width: int = Field(default=100, ge=1)
    min_height: int = Field(default=35, ge=1)
    log_file: Optional[Path] = Field(default=None, description="Defaults to bstock.log beside the stock config")


def load_settings(path: Path) -> DashboardSettings:
    """Load the ``dashboard`` section of a YAML settings file; a missing file gives defaults."""
    path = Path(path)
    if not path.exists():
        return DashboardSettings()
    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
        return DashboardSettings(**(config.get('dashboard') or {}))
    except (yaml.YAMLError, ValidationError, AttributeError, TypeError) as e:
        raise ConfigParseError(f"Invalid settings file {path}: {e}") from e


def setup_logging(log_file: Path, level: str = "INFO") -> logging.Logger:
    """Send all log records to ``log_file``; the screen belongs to the live display."""
    root = logging.getLogger()
    root.setLevel(level.upper())

    # Prevent duplicate handlers on repeated setup
    if any(isinstance(h, logging.FileHandler) for h in root.handlers):
        return root

    log_file = Path(log_file)
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as e:
        raise IoError(f"Could not open log file {log_file}: {e}") from e
    handler.setFormatter(logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    root.addHandler(handler)
    return root


class TrendArrows:
    """Unicode arrows for showing price moves and their strength"""
    STRONG_UP = "↑↑"
    UP = "↑"
    SLIGHT_UP = "↗"
    NEUTRAL = "→"
    SLIGHT_DOWN = "↘"
    DOWN = "↓"
    STRONG_DOWN = "↓↓"

    @classmethod
    def get_price_arrow(cls, change_pct: float) -> str:
        """Get arrow based on price change percentage"""
        if change_pct > 5: return cls.STRONG_UP
        if change_pct > 2: return cls.UP
        if change_pct > 0: return cls.SLIGHT_UP
        if change_pct < -5: return cls.STRONG_DOWN
        if change_pct < -2: return cls.DOWN
        if change_pct < 0: return cls.SLIGHT_DOWN
        return cls.NEUTRAL


def chart_bounds(prices: np.ndarray) -> Tuple[float, float]:
    """Y-axis bounds padded by 10% of the range, or ±20% of the price when flat"""
    min_price = float(np.nanmin(prices))
    max_price = float(np.nanmax(prices))
    price_range = max_price - min_price
    if price_range > 0:
        return min_price - 0.1 * price_range, max_price + 0.1 * price_range
    low, high = sorted((min_price * 0.8, max_price * 1.2))
    if high == low:
        return low - 1.0, high + 1.0
    return low, high


def _grid_to_text(grid: List[List[str]], styles: List[List[Optional[str]]]) -> Text:
    text = Text(no_wrap=True, overflow="crop")
    for row_idx, (row, row_styles) in enumerate(zip(grid, styles)):
        if row_idx:
            text.append("\n")
        run, run_style = "", row_styles[0] if row_styles else None
        for char, style in zip(row, row_styles):
            if style != run_style:
                text.append(run, style=run_style)
                run, run_style = "", style
            run += char
        text.append(run, style=run_style)
    return text


def render_price_chart(prices: Sequence[float], width: int = 60, height: int = 12,
                       current_price: float = 0.0) -> Text:
    """Draw closing prices as a line chart with price labels on the left.

    Rising segments are green and falling ones red. With no prices a flat
    line is drawn at ``current_price``.
    """
    values = np.asarray(prices, dtype=np.float64)
    if len(values) == 0:
        values = np.array([current_price, current_price])
    elif len(values) == 1:
        values = np.repeat(values, 2)

    low, high = chart_bounds(values)
    plot_width = max(width - LABEL_WIDTH - 1, 4)
    plot_height = max(height - 1, 3)
    total_width = LABEL_WIDTH + 1 + plot_width

    chart = [[' ' for _ in range(total_width)] for _ in range(plot_height + 1)]
    styles: List[List[Optional[str]]] = [[None] * total_width for _ in range(plot_height + 1)]

    def put(row: int, col: int, char: str, style: Optional[str] = None) -> None:
        if 0 <= row <= plot_height and 0 <= col < total_width:
            chart[row][col] = char
            styles[row][col] = style

    # Axes
    for row in range(plot_height):
        put(row, LABEL_WIDTH, '│', "dim")
    for col in range(LABEL_WIDTH, total_width):
        put(plot_height, col, '─', "dim")
    put(plot_height, LABEL_WIDTH, '└', "dim")

    # Price labels at top, middle and bottom
    for row, value in ((0, high), (plot_height // 2, (high + low) / 2), (plot_height - 1, low)):
        label = f"${value:,.2f}"[:LABEL_WIDTH - 1].rjust(LABEL_WIDTH - 1)
        for j, char in enumerate(label):
            put(row, j, char, "cyan")

    normalized = np.round((values - low) / (high - low) * (plot_height - 1)).clip(0, plot_height - 1)
    normalized = np.nan_to_num(normalized, nan=plot_height // 2).astype(np.int32)

    x_scale = (plot_width - 1) / max(len(normalized) - 1, 1)
    for i in range(len(normalized) - 1):
        y1, y2 = int(normalized[i]), int(normalized[i + 1])
        x1 = LABEL_WIDTH + 1 + int(i * x_scale)
        x2 = LABEL_WIDTH + 1 + int((i + 1) * x_scale)
        style = "bright_green" if values[i + 1] >= values[i] else "red"
        dx, dy = x2 - x1, y2 - y1

        if dx > 0 and dx >= abs(dy):
            for x in range(x1, x2):
                y = int(round(y1 + dy * (x - x1) / dx))
                put(plot_height - 1 - y, x, '─' if dy == 0 else ('/' if dy > 0 else '\\'), style)
        else:
            step = 1 if y2 >= y1 else -1
            for y in range(y1, y2 + step, step):
                x = x1 + int(dx * abs(y - y1) / abs(dy or 1))
                put(plot_height - 1 - y, x, '│', style)

    put(plot_height - 1 - int(normalized[-1]), LABEL_WIDTH + 1 + int((len(normalized) - 1) * x_scale), '●', "bold")
    return _grid_to_text(chart, styles)


def format_price(value: Optional[float]) -> str:
    return f"${value:.2f}" if value is not None else "N/A"


def render_time_range_selector(current: TimeRange, is_selected: bool) -> Text:
    text = Text(justify="center")
    for i, time_range in enumerate(TimeRange.all()):
        if i > 0:
            text.append(" ")
        if time_range == current:
            label = f" [{time_range.value}] " if is_selected else f" ({time_range.value}) "
            text.append(label, style="bold yellow" if is_selected else "bold")
        else:
            text.append(f" {time_range.value} ", style="dim")
    return text


def render_metrics(entry: TrackedEntry) -> Panel:
    metrics = price_metrics(entry.series, entry.analysis.current_price)
    text = Text()
    text.append(f"Hi: ${metrics.high:.2f}\n")
    text.append(f"Lo: ${metrics.low:.2f}\n")
    text.append(f"Hi%: {metrics.change_from_high:.2f}%\n")
    text.append(f"Lo%: {metrics.change_from_low:.2f}%\n")
    text.append(f"Vol: {metrics.volatility:.2f}%\n")
    text.append(f"Avg: {metrics.average_volume:,}\n\n")
    text.append(entry.time_range.value, style="bold orange3")
    return Panel(text, title="Metrics", border_style="orange3", box=box.SIMPLE)


def render_analysis_text(analysis: Analysis) -> Text:
    text = Text()
    text.append("Price: ")
    text.append(f"{format_price(analysis.current_price)}\n", style="bright_green")
    text.append(f"10-day SMA: {format_price(analysis.sma_10)}\n")
    text.append(f"50-day SMA: {format_price(analysis.sma_50)}\n")
    text.append(f"20-day EMA: {format_price(analysis.ema_20)}\n")

    change = analysis.recent_change
    text.append("Trend: ")
    if change is None:
        text.append("N/A\n")
    else:
        change_color = "bright_green" if change > 0 else "red"
        text.append(f"{change:.2f}% {TrendArrows.get_price_arrow(change)}\n", style=change_color)

    text.append("\nPredictions:\n", style="bold")
    for day in range(3):
        value = analysis.predictions[day] if day < len(analysis.predictions) else None
        text.append(f"Day {day + 1}: {format_price(value)}\n")
    return text


class Renderer:
    """Builds the rich layout for whichever view the state is in"""

    def __init__(self, console: Console, min_width: int = 100, min_height: int = 35):
        self.console = console
        self.min_width = min_width
        self.min_height = min_height
        self._views: Dict[View, Callable[[AppState], object]] = {
            View.MAIN: self.render_main,
            View.DETAIL: self.render_detail,
            View.EDIT: self.render_edit,
        }

    def render(self, view_state: ViewState) -> Layout:
        state = view_state.state
        layout = Layout()
        layout.split_column(
            Layout(name="body"),
            Layout(name="status", size=3),
        )
        layout["body"].update(self._views[state.view](state))
        layout["status"].update(self.render_status(view_state))
        return layout

    def too_small(self) -> bool:
        width, height = self.console.size
        return width < self.min_width or height < self.min_height

    def render_size_warning(self) -> Panel:
        width, height = self.console.size
        width_color = "bright_green" if width >= self.min_width else "red"
        height_color = "bright_green" if height >= self.min_height else "red"
        text = Text(justify="center")
        text.append("Terminal size:\n")
        text.append("  Width = ")
        text.append(str(width), style=width_color)
        text.append("    Height = ")
        text.append(str(height), style=height_color)
        text.append("\n\nNeeded for current config:\n")
        text.append(f"  Width = {self.min_width}  Height = {self.min_height}")
        return Panel(Align.center(text, vertical="middle"), title="Terminal Size Warning",
                     border_style="red", width=50, height=10)

    def render_main(self, state: AppState):
        if self.too_small():
            return Align.center(self.render_size_warning(), vertical="middle")

        num_pages = max(math.ceil(len(state.entries) / CARDS_PER_PAGE), 1)
        current_page = state.selected_index // CARDS_PER_PAGE + 1
        layout = Layout()
        layout.split_column(
            Layout(Align.center(Text(f"Stock Predictor - Page {current_page}/{num_pages}", style="bold orange3")),
                   name="title", size=1),
            Layout(name="grid"),
        )

        if not state.entries:
            layout["grid"].update(Align.center(Text("Loading data...", style="orange3"), vertical="middle"))
            return layout

        width, height = self.console.size
        card_width = (width - 2) // GRID_COLUMNS
        card_height = (height - 4) // 2
        chart_width = max(int(card_width * 0.35), 20)
        chart_height = max(card_height - 4, 4)

        rows = []
        first = (current_page - 1) * CARDS_PER_PAGE
        for row in range(CARDS_PER_PAGE // GRID_COLUMNS):
            row_layout = Layout(name=f"row{row}")
            cells = []
            for col in range(GRID_COLUMNS):
                index = first + row * GRID_COLUMNS + col
                if index < len(state.entries):
                    card = self.render_card(state.entries[index], index == state.selected_index,
                                            chart_width, chart_height)
                else:
                    card = Text("")
                cells.append(Layout(card))
            row_layout.split_row(*cells)
            rows.append(row_layout)
        layout["grid"].split_column(*rows)
        return layout

    def render_card(self, entry: TrackedEntry, selected: bool, chart_width: int, chart_height: int) -> Panel:
        content = Layout()
        content.split_column(
            Layout(name="content"),
            Layout(render_time_range_selector(entry.time_range, selected), name="selector", size=1),
        )
        content["content"].split_row(
            Layout(render_analysis_text(entry.analysis), ratio=45),
            Layout(render_metrics(entry), ratio=20),
            Layout(render_price_chart(entry.series.window(entry.time_range), chart_width, chart_height,
                                      entry.analysis.current_price), ratio=35),
        )
        return Panel(content, title=entry.symbol, border_style="yellow" if selected else "orange3")

    def render_detail(self, state: AppState):
        entry = state.selected_entry
        if entry is None:
            return Panel(Align.center(Text("No data yet", style="orange3"), vertical="middle"),
                         border_style="orange3")

        width, height = self.console.size
        layout = Layout()
        layout.split_column(
            Layout(Align.right(Text(entry.symbol, style="bold yellow")), name="header", size=1),
            Layout(name="content"),
        )
        chart = render_price_chart(entry.series.window(entry.time_range), int(width * 0.7) - 4,
                                   max(height - 9, 6), entry.analysis.current_price)
        layout["content"].split_row(
            Layout(Panel(chart, title=f"Price Chart ({entry.time_range.value})", border_style="orange3"), ratio=70),
            Layout(Group(render_metrics(entry), render_analysis_text(entry.analysis)), ratio=30),
        )
        return layout

    def render_edit(self, state: AppState):
        buffer = state.edit_buffer
        symbols = Text()
        for i, symbol in enumerate(buffer.symbols):
            if i == buffer.cursor:
                symbols.append(">", style="yellow")
                symbols.append(f" {symbol}\n", style="on grey23")
            else:
                symbols.append(f"  {symbol}\n")

        layout = Layout()
        layout.split_column(
            Layout(Align.center(Text("Edit Stocks - Add or Remove Symbols", style="bold yellow")), size=1),
            Layout(Panel(Text(buffer.pending_input), title="Add New Symbol (Press Enter to add)",
                         border_style="orange3"), size=3),
            Layout(Panel(symbols, title="Current Symbols (Delete to remove)", border_style="orange3")),
            Layout(Align.center(Text(
                "Up/Down: Navigate | Delete: Remove selected | Enter: Add new symbol | "
                "Ctrl+S: Save & Exit | Esc: Cancel", style="dim")), size=1),
        )
        return layout

    def render_status(self, view_state: ViewState) -> Panel:
        state = view_state.state
        status = Text(style="orange3")
        status.append(f"Loaded {len(state.entries)}/{len(view_state.config.symbols)} | ")
        if state.view == View.EDIT:
            status.append("Editing symbols")
        else:
            status.append("Commands: ←/→ Select  ↑/↓ Range  (Enter) Detail  (E)dit  (Q)uit/Esc")
        if state.last_error:
            status.append(f" | {state.last_error}", style="bold red")
        return Panel(status, border_style="orange3")


class Dashboard:
    """Single-threaded consumer loop: apply events, draw, then wait briefly for a key"""

    def __init__(self, settings: DashboardSettings, view_state: ViewState, console: Optional[Console] = None):
        self.settings = settings
        self.view_state = view_state
        self.console = console or Console()
        self.renderer = Renderer(self.console, settings.min_width, settings.min_height)

    def tick(self, keys: KeyReader, live: Live) -> None:
        self.view_state.process_events()
        live.update(self.renderer.render(self.view_state))
        key = keys.poll(self.settings.input_poll_ms / 1000.0)
        if key is not None:
            self.view_state.handle_key(key)

    def run(self) -> None:
        self.view_state.refresh()
        with KeyReader() as keys, Live(self.renderer.render(self.view_state),
                                       console=self.console,
                                       refresh_per_second=self.settings.screen_fps,
                                       screen=True) as live:
            while self.view_state.running:
                self.tick(keys, live)


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"expected a positive number of days, got {value}")
    return number


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Terminal dashboard of price indicators and short forecasts')
    parser.add_argument('--symbols', nargs='+', metavar='SYMBOL',
                        help='Symbols to track; replaces and saves the stored list')
    parser.add_argument('--period', type=positive_int, default=DEFAULT_PERIOD_DAYS,
                        help='Days of history to fetch (only used with --symbols)')
    parser.add_argument('--config-file', type=Path, help='Path of the stored symbol list (JSON)')
    parser.add_argument('--settings', type=Path, default=Path('config.yaml'), help='Dashboard settings file')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Log file verbosity')
    return parser.parse_args(argv)


def normalize_symbols(raw: Sequence[str]) -> List[str]:
    """Upper-case, strip and de-duplicate symbols, keeping their first-seen order"""
    symbols = [part.strip().upper() for part in raw]
    return list(dict.fromkeys(symbol for symbol in symbols if symbol))


def resolve_config(args: argparse.Namespace, persistence: PersistenceManager) -> StockConfig:
    if args.symbols:
        config = StockConfig(symbols=normalize_symbols(args.symbols), analysis_period_days=args.period)
        persistence.save(config)
        return config
    return persistence.load_or_default()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    persistence = PersistenceManager(args.config_file)
    try:
        settings = load_settings(args.settings)
        setup_logging(settings.log_file or persistence.config_file.parent / LOG_FILENAME, args.log_level)
        config = resolve_config(args, persistence)
    except AppError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    logger.info("Starting with %d symbols over %d days", len(config.symbols), config.analysis_period_days)
    provider = YahooQuoteProvider(timeout=settings.request_timeout)
    aggregator = Aggregator(provider, EventBus(), settings.fetch_workers, settings.default_time_range)
    view_state = ViewState(config, aggregator, persistence,
                           drain_all_events=settings.drain_all_events,
                           sort_entries=settings.sort_entries,
                           default_time_range=settings.default_time_range)
    try:
        Dashboard(settings, view_state).run()
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except AppError as e:
        logger.error("Terminal setup failed: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        aggregator.shutdown()
    logger.info("Exiting")
    return 0


if __name__ == '__main__':
    sys.exit(main())
