from __future__ import annotations

import json
from bisect import bisect_left
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Iterable

from domain.tax import CpiIndex

DEFAULT_CPI = Decimal(100)


class CpiSeries(CpiIndex):
    """Published CPI readings with linear interpolation between them.

    Outside the published range the nearest reading is used; an empty series
    reads as 100 everywhere.
    """

    def __init__(self, readings: Iterable[tuple[date, Decimal]]) -> None:
        ordered = sorted(readings, key=lambda reading: reading[0])
        self._dates = [day for day, _ in ordered]
        self._values = [value for _, value in ordered]
        for day, value in ordered:
            if not value.is_finite() or value <= 0:
                msg = f"CPI reading for {day.isoformat()} must be finite and > 0, got {value}"
                raise ValueError(msg)

    def value_on(self, on: date) -> Decimal:
        if not self._dates:
            return DEFAULT_CPI
        if on <= self._dates[0]:
            return self._values[0]
        if on >= self._dates[-1]:
            return self._values[-1]

        idx = bisect_left(self._dates, on)
        if self._dates[idx] == on:
            return self._values[idx]
        before_day, after_day = self._dates[idx - 1], self._dates[idx]
        before, after = self._values[idx - 1], self._values[idx]
        fraction = Decimal((on - before_day).days) / Decimal((after_day - before_day).days)
        return before + (after - before) * fraction

    @classmethod
    def from_json(cls, path: Path) -> CpiSeries:
        """Load `[{"date": "YYYY-MM-DD", "value": "..."}]`."""
        with path.open("r", encoding="utf-8") as handle:
            records = json.load(handle)
        return cls((date.fromisoformat(record["date"]), Decimal(str(record["value"]))) for record in records)


__all__ = ["CpiSeries", "DEFAULT_CPI"]
