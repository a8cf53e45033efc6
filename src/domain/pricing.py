from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from functools import cached_property
from typing import Protocol

from .currency import Currency
from .ledger import PriceKey


@dataclass(frozen=True)
class PricePoint:
    on: date
    price: Decimal
    adj_close: Decimal | None = None

    @property
    def value(self) -> Decimal:
        if self.adj_close is not None and self.adj_close > 0:
            return self.adj_close
        return self.price


@dataclass(frozen=True)
class PriceHistory:
    """Daily closes for one security, sorted by date."""

    key: PriceKey
    currency: Currency
    points: tuple[PricePoint, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.points, key=lambda point: point.on))
        object.__setattr__(self, "points", ordered)

    @cached_property
    def dates(self) -> list[date]:
        return [point.on for point in self.points]

    def latest_on_or_before(self, on: date) -> PricePoint | None:
        idx = bisect_right(self.dates, on)
        if idx == 0:
            return None
        return self.points[idx - 1]

    def latest(self) -> PricePoint | None:
        return self.points[-1] if self.points else None


class PriceHistoryProvider(Protocol):
    """Lookup interface for per-security price history."""

    def history(self, key: PriceKey) -> PriceHistory | None: ...


__all__ = ["PriceHistory", "PriceHistoryProvider", "PricePoint"]
