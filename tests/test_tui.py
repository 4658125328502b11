"""Tests for dashboard settings, the command line and screen rendering.

Rendering is checked against a recording console, so no terminal is needed.
"""

import json
import logging
from collections import deque
from pathlib import Path

import pytest
from rich.console import Console
from rich.layout import Layout
from rich.text import Text

from aggregator import UpdateEvent
from analysis import analyze
from conftest import SAMPLE_CLOSES, make_series
from errors import ConfigParseError
from keyboard import Key, KeyEvent
from persistence import DEFAULT_PERIOD_DAYS, PersistenceManager, StockConfig
from series import TimeRange
from tui import (Dashboard, DashboardSettings, Renderer, TrendArrows, chart_bounds, format_price,
                 load_settings, normalize_symbols, parse_args, render_price_chart, resolve_config)
from viewstate import View, ViewState

log = logging.getLogger(__name__)


def populate(view_state: ViewState, symbols) -> ViewState:
    for i, symbol in enumerate(symbols):
        series = make_series([c + i for c in SAMPLE_CLOSES])
        view_state.apply_event(UpdateEvent(symbol, series, analyze(symbol, series),
                                           TimeRange.ONE_MONTH, view_state.state.generation))
    return view_state


def screen(view_state: ViewState, width: int = 120, height: int = 40) -> str:
    console = Console(width=width, height=height, record=True, color_system=None)
    layout = Renderer(console).render(view_state)
    assert isinstance(layout, Layout)
    console.print(layout)
    return console.export_text()


# ══════════════════════════════════════════════════════════════════
# 1. SETTINGS AND COMMAND LINE
# ══════════════════════════════════════════════════════════════════


class TestSettings:

    def test_missing_file_gives_defaults(self, tmp_path) -> None:
        settings = load_settings(tmp_path / "absent.yaml")
        assert settings == DashboardSettings()
        assert settings.fetch_workers == 32
        assert settings.request_timeout == 10.0
        assert settings.default_time_range == TimeRange.ONE_MONTH
        assert not settings.drain_all_events

    def test_dashboard_section(self, tmp_path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("dashboard:\n  screen_fps: 10\n  drain_all_events: true\n  default_time_range: 6M\n")
        settings = load_settings(path)
        assert settings.screen_fps == 10
        assert settings.drain_all_events
        assert settings.default_time_range == TimeRange.SIX_MONTHS

    def test_file_without_section(self, tmp_path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("other: 1\n")
        assert load_settings(path) == DashboardSettings()

    @pytest.mark.parametrize("content", [
        "dashboard:\n  screen_fps: 0\n",
        "dashboard:\n  request_timeout: 0\n",
        "dashboard:\n  default_time_range: 2W\n",
        "dashboard: [1, 2]\n",
        "dashboard: {unclosed\n",
    ])
    def test_invalid_settings(self, tmp_path, content: str) -> None:
        path = tmp_path / "config.yaml"
        path.write_text(content)
        with pytest.raises(ConfigParseError):
            load_settings(path)

    def test_shipped_settings_file_loads(self) -> None:
        settings = load_settings(Path(__file__).resolve().parent.parent / "config.yaml")
        assert settings.min_width == 100
        assert settings.min_height == 35


class TestCommandLine:

    def test_defaults(self) -> None:
        args = parse_args([])
        assert args.symbols is None
        assert args.period == DEFAULT_PERIOD_DAYS
        assert args.log_level == "INFO"

    def test_symbols_and_period(self) -> None:
        args = parse_args(["--symbols", "aapl", "msft", "--period", "30"])
        assert args.symbols == ["aapl", "msft"]
        assert args.period == 30

    @pytest.mark.parametrize("period", ["0", "-3", "abc"])
    def test_bad_period(self, period: str) -> None:
        with pytest.raises(SystemExit):
            parse_args(["--period", period])

    def test_normalize_symbols(self) -> None:
        assert normalize_symbols([" aapl", "MSFT", "Aapl", "", "nvda "]) == ["AAPL", "MSFT", "NVDA"]

    def test_symbols_flag_saves(self, persistence: PersistenceManager) -> None:
        config = resolve_config(parse_args(["--symbols", "tsla", "ibm", "--period", "45"]), persistence)
        assert config == StockConfig(symbols=["TSLA", "IBM"], analysis_period_days=45)
        stored = json.loads(persistence.config_file.read_text())
        assert stored == {"symbols": ["TSLA", "IBM"], "analysis_period_days": 45}

    def test_stored_config_used_without_flags(self, persistence: PersistenceManager) -> None:
        persistence.save(StockConfig(symbols=["AMD"], analysis_period_days=10))
        assert resolve_config(parse_args([]), persistence).symbols == ["AMD"]


# ══════════════════════════════════════════════════════════════════
# 2. CHART AND FORMATTING
# ══════════════════════════════════════════════════════════════════


class TestChart:

    def test_bounds_pad_range(self) -> None:
        low, high = chart_bounds([100.0, 110.0])
        assert low == pytest.approx(99.0)
        assert high == pytest.approx(111.0)

    def test_bounds_flat_prices(self) -> None:
        low, high = chart_bounds([50.0, 50.0])
        assert low == pytest.approx(40.0)
        assert high == pytest.approx(60.0)

    def test_bounds_all_zero(self) -> None:
        low, high = chart_bounds([0.0, 0.0])
        assert low < high

    def test_chart_dimensions(self) -> None:
        chart = render_price_chart(SAMPLE_CLOSES, width=40, height=10)
        assert isinstance(chart, Text)
        lines = chart.plain.split("\n")
        log.info("\n%s", chart.plain)
        assert len(lines) == 10
        assert all(len(line) == 40 for line in lines)
        assert "●" in chart.plain
        assert "$" in chart.plain

    @pytest.mark.parametrize("prices", [[], [42.0]])
    def test_chart_without_history(self, prices) -> None:
        chart = render_price_chart(prices, width=30, height=8, current_price=42.0)
        assert "●" in chart.plain

    def test_trend_arrows(self) -> None:
        assert TrendArrows.get_price_arrow(6) == TrendArrows.STRONG_UP
        assert TrendArrows.get_price_arrow(0) == TrendArrows.NEUTRAL
        assert TrendArrows.get_price_arrow(-1) == TrendArrows.SLIGHT_DOWN

    def test_format_price(self) -> None:
        assert format_price(None) == "N/A"
        assert format_price(3.14159) == "$3.14"


# ══════════════════════════════════════════════════════════════════
# 3. SCREENS
# ══════════════════════════════════════════════════════════════════


class TestScreens:

    def test_loading(self, view_state: ViewState) -> None:
        text = screen(view_state)
        assert "Stock Predictor - Page 1/1" in text
        assert "Loading data..." in text
        assert "Loaded 0/3" in text

    def test_main_grid_pages(self, view_state: ViewState) -> None:
        populate(view_state, ["AAPL", "MSFT", "NVDA", "TSLA", "AMD"])
        text = screen(view_state)
        assert "Page 1/2" in text
        assert "AAPL" in text and "TSLA" in text
        assert "Predictions" in text

        view_state.state.selected_index = 4
        assert "Page 2/2" in screen(view_state)

    def test_small_terminal(self, view_state: ViewState) -> None:
        populate(view_state, ["AAPL"])
        text = screen(view_state, width=80, height=30)
        assert "Terminal Size Warning" in text

    def test_detail(self, view_state: ViewState) -> None:
        populate(view_state, ["AAPL"])
        view_state.state.view = View.DETAIL
        text = screen(view_state)
        assert "Price Chart (1M)" in text
        assert "Metrics" in text

    def test_detail_without_data(self, view_state: ViewState) -> None:
        view_state.state.view = View.DETAIL
        assert "No data yet" in screen(view_state)

    def test_edit(self, view_state: ViewState) -> None:
        populate(view_state, ["AAPL", "MSFT"])
        view_state.handle_key(KeyEvent.of('e'))
        view_state.handle_key(KeyEvent.of('x'))
        text = screen(view_state)
        assert "Edit Stocks" in text
        assert "> AAPL" in text
        assert "Editing symbols" in text

    def test_error_in_status(self, view_state: ViewState) -> None:
        view_state.state.last_error = "BAD: no data found"
        assert "BAD: no data found" in screen(view_state)


class FakeKeys:
    def __init__(self, *events):
        self.events = deque(events)
        self.timeouts = []

    def poll(self, timeout):
        self.timeouts.append(timeout)
        return self.events.popleft() if self.events else None


class FakeLive:
    def __init__(self):
        self.frames = []

    def update(self, renderable):
        self.frames.append(renderable)


class TestDashboard:

    def test_tick_applies_event_draws_and_handles_key(self, view_state: ViewState) -> None:
        series = make_series(SAMPLE_CLOSES)
        view_state.aggregator.bus.publish(UpdateEvent("AAPL", series, analyze("AAPL", series),
                                                      TimeRange.ONE_MONTH, view_state.state.generation))
        dashboard = Dashboard(DashboardSettings(input_poll_ms=50), view_state,
                              Console(width=120, height=40, record=True))
        keys, live = FakeKeys(KeyEvent(Key.ENTER)), FakeLive()

        dashboard.tick(keys, live)
        assert len(view_state.state.entries) == 1
        assert len(live.frames) == 1
        assert keys.timeouts == [0.05]
        assert view_state.state.view == View.DETAIL

    def test_tick_without_key(self, view_state: ViewState) -> None:
        dashboard = Dashboard(DashboardSettings(), view_state, Console(width=120, height=40))
        dashboard.tick(FakeKeys(), FakeLive())
        assert view_state.state.view == View.MAIN
        assert view_state.running
