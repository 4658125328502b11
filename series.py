"""Price series model and the display windows used to slice it."""

from enum import Enum
from typing import List

from pydantic import BaseModel, Field, NonNegativeInt, model_validator


class TimeRange(str, Enum):
    """Display windows, each mapped to an approximate number of daily points"""
    ONE_DAY = "1D"
    FIVE_DAYS = "5D"
    ONE_MONTH = "1M"
    SIX_MONTHS = "6M"
    YEAR_TO_DATE = "YTD"

    @property
    def points(self) -> int:
        return _POINTS[self]

    @classmethod
    def all(cls) -> List["TimeRange"]:
        return list(cls)


_POINTS = {
    TimeRange.ONE_DAY: 2,
    TimeRange.FIVE_DAYS: 5,
    TimeRange.ONE_MONTH: 30,
    TimeRange.SIX_MONTHS: 180,
    TimeRange.YEAR_TO_DATE: 365,
}

DEFAULT_TIME_RANGE = TimeRange.ONE_MONTH


class Series(BaseModel):
    """Historical daily bars for one symbol, stored as parallel lists.

    Timestamps are unix seconds and are expected to be non-decreasing; that
    ordering is not checked.
    """
    timestamps: List[int] = Field(default_factory=list)
    closes: List[float] = Field(default_factory=list)
    volumes: List[NonNegativeInt] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_lengths(self) -> "Series":
        if not (len(self.timestamps) == len(self.closes) == len(self.volumes)):
            raise ValueError(
                f"series columns differ in length: timestamps={len(self.timestamps)}, "
                f"closes={len(self.closes)}, volumes={len(self.volumes)}"
            )
        return self

    def __len__(self) -> int:
        return len(self.closes)

    def is_empty(self) -> bool:
        return not self.closes

    def add_point(self, timestamp: int, close: float, volume: int) -> None:
        self.timestamps.append(int(timestamp))
        self.closes.append(float(close))
        self.volumes.append(int(volume))

    def window(self, time_range: TimeRange) -> List[float]:
        """Last closes covered by ``time_range``, oldest first."""
        count = min(time_range.points, len(self.closes))
        return self.closes[len(self.closes) - count:]
