from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

AGOROT_PER_SHEKEL = Decimal(100)


class Currency(StrEnum):
    USD = "USD"
    ILS = "ILS"
    ILA = "ILA"
    EUR = "EUR"
    GBP = "GBP"


class RatePeriod(StrEnum):
    CURRENT = "current"
    AGO_1W = "ago1w"
    AGO_1M = "ago1m"
    AGO_3M = "ago3m"
    YTD = "ytd"
    AGO_1Y = "ago1y"
    AGO_5Y = "ago5y"
    AGO_MAX = "agoMax"


class UnknownCurrencyError(ValueError):
    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(f"Unknown currency code {code!r}")


class RateUnavailableError(LookupError):
    def __init__(self, currency: Currency, *, period: RatePeriod | None = None, on: date | None = None) -> None:
        self.currency = currency
        self.period = period
        self.on = on
        where = f"period={period}" if period is not None else "period=current"
        if on is not None:
            where = f"{where} on={on.isoformat()}"
        super().__init__(f"No USD rate for {currency} ({where})")


_ALIASES: dict[str, Currency] = {
    'ש"ח': Currency.ILS,
    "NIS": Currency.ILS,
    "ILS": Currency.ILS,
    "אג": Currency.ILA,
    "ILA": Currency.ILA,
    "ILAG": Currency.ILA,
    "AGOROT": Currency.ILA,
    "AG": Currency.ILA,
    "דולר": Currency.USD,
    "$": Currency.USD,
    "DOLLAR": Currency.USD,
    "USD": Currency.USD,
    "אירו": Currency.EUR,
    "EUR": Currency.EUR,
    "EURO": Currency.EUR,
    'ליש"ט': Currency.GBP,
    "LIRA": Currency.GBP,
    "GBP": Currency.GBP,
}


def normalize_currency(code: str | Currency) -> Currency:
    """Map ISO codes, symbols and Hebrew names onto a known currency."""
    if isinstance(code, Currency):
        return code
    cleaned = code.strip().upper() if isinstance(code, str) else ""
    currency = _ALIASES.get(cleaned)
    if currency is None:
        raise UnknownCurrencyError(str(code))
    return currency


RateTable = dict[Currency, Decimal]


def _validate_table(table: RateTable, label: str) -> None:
    for currency, rate in table.items():
        if not rate.is_finite() or rate <= 0:
            msg = f"{label} rate for {currency} must be finite and > 0, got {rate}"
            raise ValueError(msg)
        if currency == Currency.ILA:
            msg = f"{label} must not carry an ILA rate; it is derived from ILS"
            raise ValueError(msg)


class ExchangeRateSnapshot(BaseModel):
    """Point-in-time rates expressed as units of currency per one USD.

    `periods` holds the same view as of earlier reference points (one month ago,
    start of year, ...). `dated` optionally pins rates to specific days.
    """

    model_config = ConfigDict(frozen=True)

    current: RateTable
    periods: dict[RatePeriod, RateTable] = Field(default_factory=dict)
    dated: dict[date, RateTable] = Field(default_factory=dict)

    @field_validator("current", mode="before")
    @classmethod
    def _normalize_current(cls, value: object) -> object:
        return _normalize_table_keys(value)

    @field_validator("periods", "dated", mode="before")
    @classmethod
    def _normalize_nested(cls, value: object) -> object:
        if isinstance(value, dict):
            return {key: _normalize_table_keys(table) for key, table in value.items()}
        return value

    @model_validator(mode="after")
    def _validate_rates(self) -> ExchangeRateSnapshot:
        _validate_table(self.current, "current")
        for period, table in self.periods.items():
            _validate_table(table, str(period))
        for day, table in self.dated.items():
            _validate_table(table, day.isoformat())
        return self

    def usd_rate(self, currency: Currency, *, period: RatePeriod | None = None, on: date | None = None) -> Decimal:
        """Units of `currency` per USD, with ILA derived from the ILS rate."""
        lookup = Currency.ILS if currency == Currency.ILA else currency
        if lookup == Currency.USD:
            rate = Decimal(1)
        else:
            table = self._table_for(period=period, on=on)
            found = table.get(lookup)
            if found is None:
                raise RateUnavailableError(currency, period=period, on=on)
            rate = found
        if currency == Currency.ILA:
            return rate * AGOROT_PER_SHEKEL
        return rate

    def _table_for(self, *, period: RatePeriod | None, on: date | None) -> RateTable:
        if on is not None and self.dated:
            candidates = [day for day in self.dated if day <= on]
            if candidates:
                return self.dated[max(candidates)]
            logger.debug("No dated rates on or before %s, using current rates", on.isoformat())
        if period is None or period == RatePeriod.CURRENT:
            return self.current
        table = self.periods.get(period)
        if table is None:
            # Missing period: every rate is unavailable, never the current one.
            return {}
        return table


def _normalize_table_keys(value: object) -> object:
    if isinstance(value, dict):
        return {normalize_currency(key): rate for key, rate in value.items()}
    return value


def convert_currency(
    amount: Decimal,
    from_currency: Currency | str,
    to_currency: Currency | str,
    snapshot: ExchangeRateSnapshot,
    *,
    period: RatePeriod | None = None,
    on: date | None = None,
) -> Decimal:
    """Convert `amount` by pivoting through USD.

    ILA/ILS is a fixed minor-unit ratio and never consults the snapshot.
    Raises RateUnavailableError when a needed rate is missing.
    """
    source = normalize_currency(from_currency)
    target = normalize_currency(to_currency)
    if source == target:
        return amount
    if source == Currency.ILA and target == Currency.ILS:
        return amount / AGOROT_PER_SHEKEL
    if source == Currency.ILS and target == Currency.ILA:
        return amount * AGOROT_PER_SHEKEL

    from_rate = snapshot.usd_rate(source, period=period, on=on)
    to_rate = snapshot.usd_rate(target, period=period, on=on)
    return amount / from_rate * to_rate


class Money(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: Decimal
    currency: Currency

    @field_validator("currency", mode="before")
    @classmethod
    def _normalize(cls, value: object) -> object:
        if isinstance(value, str):
            return normalize_currency(value)
        return value

    @model_validator(mode="after")
    def _validate_amount(self) -> Money:
        if not self.amount.is_finite():
            raise ValueError("Money.amount must be finite")
        return self

    def to(self, currency: Currency, snapshot: ExchangeRateSnapshot, *, on: date | None = None) -> Money:
        return Money(amount=convert_currency(self.amount, self.currency, currency, snapshot, on=on), currency=currency)

    def __add__(self, other: Money) -> Money:
        if other.currency != self.currency:
            msg = f"Cannot add {other.currency} to {self.currency} without a rate snapshot"
            raise ValueError(msg)
        return Money(amount=self.amount + other.amount, currency=self.currency)

    @classmethod
    def zero(cls, currency: Currency) -> Money:
        return cls(amount=Decimal(0), currency=currency)


def major_unit(currency: Currency) -> Currency:
    """Currency a quoted amount is settled in (agorot settle in shekels)."""
    return Currency.ILS if currency == Currency.ILA else currency


__all__ = [
    "AGOROT_PER_SHEKEL",
    "Currency",
    "ExchangeRateSnapshot",
    "Money",
    "RatePeriod",
    "RateUnavailableError",
    "UnknownCurrencyError",
    "convert_currency",
    "major_unit",
    "normalize_currency",
]
