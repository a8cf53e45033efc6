from __future__ import annotations

import json
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Protocol

from domain.currency import Currency, normalize_currency
from domain.ledger import PriceKey
from domain.pricing import PriceHistory, PricePoint


class PriceHistoryStore(Protocol):
    def write(self, history: PriceHistory) -> None: ...

    def read(self, key: PriceKey) -> PriceHistory | None: ...


class JsonlPriceHistoryStore(PriceHistoryStore):
    """One JSONL file per security: `{"date", "price", "adj_close"?, "currency"}` per line."""

    def __init__(self, *, root_dir: Path) -> None:
        self.root_dir = root_dir

    def write(self, history: PriceHistory) -> None:
        path = self._file_path(history.key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            for point in history.points:
                record = {
                    "date": point.on.isoformat(),
                    "price": str(point.price),
                    "currency": str(history.currency),
                }
                if point.adj_close is not None:
                    record["adj_close"] = str(point.adj_close)
                handle.write(json.dumps(record))
                handle.write("\n")

    def read(self, key: PriceKey) -> PriceHistory | None:
        path = self._file_path(key)
        if not path.exists():
            return None

        currency: Currency | None = None
        by_day: dict[date, PricePoint] = {}
        with path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                record = json.loads(line, parse_float=Decimal)
                record_currency = normalize_currency(record["currency"])
                if currency is None:
                    currency = record_currency
                elif record_currency != currency:
                    msg = f"Mixed currencies in {path}: {currency} and {record_currency}"
                    raise ValueError(msg)
                price = Decimal(str(record["price"]))
                adj_close_raw = record.get("adj_close")
                adj_close = Decimal(str(adj_close_raw)) if adj_close_raw is not None else None
                if not price.is_finite() or (adj_close is not None and not adj_close.is_finite()):
                    msg = f"Non-finite price in {path}: {line}"
                    raise ValueError(msg)
                on = date.fromisoformat(record["date"])
                # Later lines for the same day win.
                by_day[on] = PricePoint(on=on, price=price, adj_close=adj_close)

        if currency is None:
            return None
        return PriceHistory(key=key, currency=currency, points=tuple(by_day.values()))

    def _file_path(self, key: PriceKey) -> Path:
        return self.root_dir / "prices" / f"{key.exchange.upper()}-{key.ticker.upper()}.jsonl"


__all__ = ["JsonlPriceHistoryStore", "PriceHistoryStore"]
