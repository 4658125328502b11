"""Technical indicators and short-horizon forecasts over closing prices.

Every function here is pure: it takes a sequence of closes (oldest first)
and returns plain floats or numpy arrays. ``None`` means there was not enough
data for the indicator.
"""

from typing import List, Optional, Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict

from series import Series

FORECAST_POINTS = 3
PREDICTION_HORIZON = 20


class Analysis(BaseModel):
    """Indicators derived from one completed fetch"""
    model_config = ConfigDict(frozen=True)

    symbol: str
    current_price: float = 0.0
    sma_10: Optional[float] = None
    sma_50: Optional[float] = None
    ema_20: Optional[float] = None
    predictions: List[float] = []
    recent_change: Optional[float] = None


class PriceMetrics(BaseModel):
    """Summary figures shown in the metrics panel"""
    model_config = ConfigDict(frozen=True)

    high: float
    low: float
    change_from_high: float
    change_from_low: float
    volatility: float
    average_volume: int


def _as_array(prices: Sequence[float]) -> np.ndarray:
    return np.asarray(prices, dtype=np.float64)


def sma(prices: Sequence[float], period: int) -> Optional[np.ndarray]:
    """Simple moving average over windows that stop one step short of the newest close.

    Window ``i`` averages ``prices[i:i + period]`` for ``i`` in
    ``0 .. len - period - 1``, so the result has ``len - period`` values and
    the newest close never enters a window.
    """
    if period <= 0:
        raise ValueError("period must be positive")
    closes = _as_array(prices)
    if len(closes) < period:
        return None
    return np.array([closes[i:i + period].mean() for i in range(len(closes) - period)])


def ema(prices: Sequence[float], period: int) -> Optional[np.ndarray]:
    """Exponential moving average seeded with the plain mean of the first ``period`` closes."""
    if period <= 0:
        raise ValueError("period must be positive")
    closes = _as_array(prices)
    if len(closes) < period:
        return None

    multiplier = 2.0 / (period + 1)
    values = [closes[:period].mean()]
    for close in closes[period:]:
        values.append((close - values[-1]) * multiplier + values[-1])
    return np.array(values)


def predict_next(prices: Sequence[float], horizon: int = PREDICTION_HORIZON) -> List[float]:
    """Fit a least-squares line to the last ``horizon`` closes and extend it three steps.

    ``horizon`` only sizes the regression window; the output always holds
    ``FORECAST_POINTS`` values, at positions ``n + 1 .. n + 3`` where ``n``
    is the window length. The window never shrinks below two points.
    """
    closes = _as_array(prices)
    if len(closes) < 2:
        return []

    n = max(2, min(horizon, len(closes)))
    y = closes[-n:]
    x = np.arange(n, dtype=np.float64)
    slope, intercept = np.polyfit(x, y, 1)
    return [float(slope * (n + step) + intercept) for step in range(1, FORECAST_POINTS + 1)]


def recent_change(prices: Sequence[float]) -> Optional[float]:
    """Percent change between the last two closes; absent when the earlier close is zero"""
    if len(prices) < 2:
        return None
    last, second_last = float(prices[-1]), float(prices[-2])
    if second_last == 0:
        return None
    return (last - second_last) / second_last * 100.0


def volatility(prices: Sequence[float]) -> float:
    """Sample standard deviation of daily returns, as a percentage.

    Each return is divided by the later price of its pair; a zero later price
    yields a zero return.
    """
    closes = _as_array(prices)
    if len(closes) < 2:
        return 0.0

    current = closes[1:]
    previous = closes[:-1]
    safe = np.where(current == 0, 1.0, current)
    returns = np.where(current == 0, 0.0, (current - previous) / safe)
    if len(returns) < 2:
        return 0.0
    return float(np.std(returns, ddof=1) * 100.0)


def _last(values: Optional[np.ndarray]) -> Optional[float]:
    if values is None or len(values) == 0:
        return None
    return float(values[-1])


def analyze(symbol: str, series: Series) -> Analysis:
    closes = series.closes
    return Analysis(
        symbol=symbol,
        current_price=float(closes[-1]) if closes else 0.0,
        sma_10=_last(sma(closes, 10)),
        sma_50=_last(sma(closes, 50)),
        ema_20=_last(ema(closes, 20)),
        predictions=predict_next(closes, PREDICTION_HORIZON),
        recent_change=recent_change(closes),
    )


def price_metrics(series: Series, current_price: float) -> PriceMetrics:
    """High/low distances, volatility and average volume over the whole series"""
    if series.is_empty():
        return PriceMetrics(high=0.0, low=0.0, change_from_high=0.0, change_from_low=0.0,
                            volatility=0.0, average_volume=0)

    closes = _as_array(series.closes)
    high = float(closes.max())
    low = float(closes.min())
    average_volume = int(np.mean(series.volumes)) if series.volumes else 0
    return PriceMetrics(
        high=high,
        low=low,
        change_from_high=(current_price - high) / high * 100.0 if high else 0.0,
        change_from_low=(current_price - low) / low * 100.0 if low else 0.0,
        volatility=volatility(series.closes),
        average_volume=average_volume,
    )
