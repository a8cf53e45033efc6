from __future__ import annotations

from pathlib import Path

from pydantic import TypeAdapter

from domain.currency import ExchangeRateSnapshot
from domain.ledger import Portfolio, Transaction

_PORTFOLIOS = TypeAdapter(list[Portfolio])
_TRANSACTIONS = TypeAdapter(list[Transaction])


def load_portfolios(path: Path) -> dict[str, Portfolio]:
    portfolios = _PORTFOLIOS.validate_json(path.read_bytes())
    by_id: dict[str, Portfolio] = {}
    for portfolio in portfolios:
        if portfolio.id in by_id:
            msg = f"Duplicate portfolio id {portfolio.id} in {path}"
            raise ValueError(msg)
        by_id[portfolio.id] = portfolio
    return by_id


def load_transactions(path: Path) -> list[Transaction]:
    return _TRANSACTIONS.validate_json(path.read_bytes())


def load_rates(path: Path) -> ExchangeRateSnapshot:
    return ExchangeRateSnapshot.model_validate_json(path.read_bytes())


__all__ = ["load_portfolios", "load_rates", "load_transactions"]
