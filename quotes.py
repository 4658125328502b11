"""Daily quote retrieval from Yahoo Finance."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Protocol

import pandas as pd
import yfinance as yf

from errors import ApiError
from series import Series

logger = logging.getLogger(__name__)


class MarketDataProvider(Protocol):
    """Anything that can return historical daily bars for a symbol."""

    def fetch(self, symbol: str, period_days: int) -> Series:
        """Bars covering ``[now - period_days, now]``; raises ``ApiError`` on failure."""
        ...


def series_from_history(hist: pd.DataFrame) -> Series:
    """Convert a yfinance history frame into a ``Series``, dropping rows without a close."""
    series = Series()
    if hist is None or hist.empty:
        return series

    hist = hist.dropna(subset=['Close'])
    volumes = hist['Volume'].fillna(0) if 'Volume' in hist.columns else pd.Series(0, index=hist.index)
    for stamp, close, volume in zip(hist.index, hist['Close'], volumes):
        series.add_point(int(pd.Timestamp(stamp).timestamp()), float(close), max(int(volume), 0))
    return series


class YahooQuoteProvider:
    """Adapter around ``yf.Ticker.history`` returning ``Series`` objects"""

    def __init__(self, interval: str = "1d", timeout: float = 10.0):
        self.interval = interval
        self.timeout = timeout

    def fetch(self, symbol: str, period_days: int) -> Series:
        end = datetime.now(timezone.utc)
        start = end - timedelta(days=period_days)
        logger.debug("Fetching %s from %s to %s", symbol, start.date(), end.date())
        try:
            hist = yf.Ticker(symbol).history(start=start, end=end, interval=self.interval,
                                             timeout=self.timeout)
        except Exception as e:
            raise ApiError(symbol, str(e)) from e
        return series_from_history(hist)
