from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import StrEnum
from typing import Any, NewType
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .currency import Currency, normalize_currency

PortfolioId = NewType("PortfolioId", str)
TransactionId = NewType("TransactionId", UUID)
LotId = NewType("LotId", UUID)


class TransactionType(StrEnum):
    BUY = "BUY"
    SELL = "SELL"
    BUY_TRANSFER = "BUY_TRANSFER"
    SELL_TRANSFER = "SELL_TRANSFER"
    DIVIDEND = "DIVIDEND"
    FEE = "FEE"
    DIV_EVENT = "DIV_EVENT"


ACQUISITION_TYPES = frozenset({TransactionType.BUY, TransactionType.BUY_TRANSFER})
DISPOSAL_TYPES = frozenset({TransactionType.SELL, TransactionType.SELL_TRANSFER})


class TaxPolicy(StrEnum):
    REAL_GAIN = "REAL_GAIN"
    NOMINAL_GAIN = "NOMINAL_GAIN"
    TAX_FREE = "TAX_FREE"
    PENSION = "PENSION"


class DividendPolicy(StrEnum):
    CASH_TAXED = "cash_taxed"
    ACCUMULATE_TAX_FREE = "accumulate_tax_free"
    HYBRID_RSU = "hybrid_rsu"


class FeeType(StrEnum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class FeeFrequency(StrEnum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class PortfolioTemplate(StrEnum):
    STD_IL = "std_il"
    STD_US = "std_us"
    RSU = "rsu"
    HISHTALMUT = "hishtalmut"
    PENSION = "pension"


@dataclass(frozen=True, order=True)
class HoldingKey:
    portfolio_id: str
    ticker: str

    def __str__(self) -> str:
        return f"{self.portfolio_id}/{self.ticker}"


@dataclass(frozen=True, order=True)
class PriceKey:
    exchange: str
    ticker: str

    def __str__(self) -> str:
        return f"{self.exchange}:{self.ticker}"

    @classmethod
    def parse(cls, raw: str) -> PriceKey:
        exchange, sep, ticker = raw.partition(":")
        if not sep or not exchange or not ticker:
            msg = f"Price key must look like 'EXCHANGE:TICKER', got {raw!r}"
            raise ValueError(msg)
        return cls(exchange=exchange.upper(), ticker=ticker.upper())


def _require_finite(values: dict[str, Decimal | None], owner: str) -> None:
    for name, value in values.items():
        if value is None:
            continue
        if not value.is_finite():
            msg = f"{owner}.{name} must be finite, got {value}"
            raise ValueError(msg)
        if value < 0:
            msg = f"{owner}.{name} must be >= 0, got {value}"
            raise ValueError(msg)


class Transaction(BaseModel):
    """A recorded trade or cash event; immutable once constructed.

    `vest_date` moves the ledger (effective) date without touching `trade_date`.
    `base_rate` is the base-currency value of one unit of the trade currency on
    the trade date, when the source knows it.
    A BUY or SELL with no `commission` is charged the portfolio's commission rule.
    """

    model_config = ConfigDict(frozen=True)

    id: TransactionId = TransactionId(Field(default_factory=uuid4))
    trade_date: date
    portfolio_id: str
    ticker: str
    exchange: str
    type: TransactionType
    qty: Decimal = Decimal(0)
    price: Decimal = Decimal(0)
    currency: Currency
    commission: Decimal | None = None
    vest_date: date | None = None
    gross_value: Decimal | None = None
    base_rate: Decimal | None = None

    @field_validator("currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value: Any) -> Any:
        if isinstance(value, str):
            return normalize_currency(value)
        return value

    @field_validator("ticker", "exchange", mode="after")
    @classmethod
    def _upper(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("ticker and exchange must be non-empty")
        return value.strip().upper()

    @model_validator(mode="after")
    def _validate_fields(self) -> Transaction:
        _require_finite(
            {
                "qty": self.qty,
                "price": self.price,
                "commission": self.commission,
                "gross_value": self.gross_value,
                "base_rate": self.base_rate,
            },
            "Transaction",
        )
        if not self.portfolio_id:
            raise ValueError("Transaction.portfolio_id must be non-empty")
        if self.type in ACQUISITION_TYPES or self.type in DISPOSAL_TYPES:
            if self.qty == 0:
                raise ValueError(f"{self.type} requires qty > 0")
        if self.base_rate is not None and self.base_rate == 0:
            raise ValueError("Transaction.base_rate must be > 0 when given")
        return self

    @property
    def effective_date(self) -> date:
        return self.vest_date or self.trade_date

    @property
    def holding_key(self) -> HoldingKey:
        return HoldingKey(portfolio_id=self.portfolio_id, ticker=self.ticker)

    @property
    def price_key(self) -> PriceKey:
        return PriceKey(exchange=self.exchange, ticker=self.ticker)

    def is_vested(self, as_of: date) -> bool:
        return self.effective_date <= as_of

    def value(self) -> Decimal:
        """Gross value in the transaction currency."""
        if self.gross_value is not None and self.gross_value > 0:
            return self.gross_value
        if self.qty > 0 and self.price > 0:
            return self.qty * self.price
        if self.type in (TransactionType.DIVIDEND, TransactionType.FEE):
            return self.price
        return Decimal(0)


@dataclass(frozen=True)
class TaxRates:
    cgt: Decimal
    inc_tax: Decimal


@dataclass(frozen=True)
class FeeSettings:
    mgmt_val: Decimal
    mgmt_type: FeeType
    mgmt_freq: FeeFrequency
    comm_rate: Decimal
    comm_min: Decimal
    comm_max: Decimal
    div_comm_rate: Decimal


class TaxHistoryEntry(BaseModel):
    start_date: date
    cgt: Decimal
    inc_tax: Decimal = Decimal(0)


class FeeHistoryEntry(BaseModel):
    start_date: date
    mgmt_val: Decimal | None = None
    mgmt_type: FeeType | None = None
    mgmt_freq: FeeFrequency | None = None
    comm_rate: Decimal | None = None
    comm_min: Decimal | None = None
    comm_max: Decimal | None = None
    div_comm_rate: Decimal | None = None


_TEMPLATES: dict[PortfolioTemplate, dict[str, Any]] = {
    PortfolioTemplate.STD_IL: {
        "cgt": Decimal("0.25"),
        "inc_tax": Decimal(0),
        "comm_rate": Decimal("0.001"),
        "comm_min": Decimal(5),
        "currency": Currency.ILS,
        "div_policy": DividendPolicy.CASH_TAXED,
        "tax_policy": TaxPolicy.REAL_GAIN,
    },
    PortfolioTemplate.STD_US: {
        "cgt": Decimal("0.25"),
        "inc_tax": Decimal(0),
        "currency": Currency.USD,
        "div_policy": DividendPolicy.CASH_TAXED,
        "tax_policy": TaxPolicy.NOMINAL_GAIN,
    },
    PortfolioTemplate.RSU: {
        "cgt": Decimal("0.25"),
        "inc_tax": Decimal("0.5"),
        "currency": Currency.USD,
        "div_policy": DividendPolicy.HYBRID_RSU,
        "tax_policy": TaxPolicy.NOMINAL_GAIN,
    },
    PortfolioTemplate.HISHTALMUT: {
        "cgt": Decimal(0),
        "inc_tax": Decimal(0),
        "mgmt_val": Decimal("0.007"),
        "currency": Currency.ILS,
        "div_policy": DividendPolicy.ACCUMULATE_TAX_FREE,
        "tax_policy": TaxPolicy.TAX_FREE,
    },
    PortfolioTemplate.PENSION: {
        "cgt": Decimal("0.33"),
        "inc_tax": Decimal("0.33"),
        "currency": Currency.ILS,
        "div_policy": DividendPolicy.ACCUMULATE_TAX_FREE,
        "tax_policy": TaxPolicy.PENSION,
    },
}


class Portfolio(BaseModel):
    id: PortfolioId
    name: str = ""
    currency: Currency
    tax_policy: TaxPolicy
    cgt: Decimal = Decimal("0.25")
    inc_tax: Decimal = Decimal(0)
    div_policy: DividendPolicy = DividendPolicy.CASH_TAXED
    mgmt_val: Decimal = Decimal(0)
    mgmt_type: FeeType = FeeType.PERCENTAGE
    mgmt_freq: FeeFrequency = FeeFrequency.YEARLY
    comm_rate: Decimal = Decimal(0)
    comm_min: Decimal = Decimal(0)
    comm_max: Decimal = Decimal(0)
    div_comm_rate: Decimal = Decimal(0)
    tax_history: list[TaxHistoryEntry] = Field(default_factory=list)
    fee_history: list[FeeHistoryEntry] = Field(default_factory=list)

    @field_validator("currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value: Any) -> Any:
        if isinstance(value, str):
            return normalize_currency(value)
        return value

    @model_validator(mode="after")
    def _validate_fields(self) -> Portfolio:
        if not self.id:
            raise ValueError("Portfolio.id must be non-empty")
        _require_finite(
            {
                "cgt": self.cgt,
                "inc_tax": self.inc_tax,
                "mgmt_val": self.mgmt_val,
                "comm_rate": self.comm_rate,
                "comm_min": self.comm_min,
                "comm_max": self.comm_max,
                "div_comm_rate": self.div_comm_rate,
            },
            "Portfolio",
        )
        for name in ("cgt", "inc_tax", "comm_rate", "div_comm_rate"):
            if getattr(self, name) > 1:
                raise ValueError(f"Portfolio.{name} is a fraction and must be <= 1")
        if self.tax_policy == TaxPolicy.PENSION:
            self.cgt = self.inc_tax
            for entry in self.tax_history:
                entry.cgt = entry.inc_tax
        self.tax_history.sort(key=lambda entry: entry.start_date)
        self.fee_history.sort(key=lambda entry: entry.start_date)
        return self

    @classmethod
    def from_template(
        cls,
        template: PortfolioTemplate,
        *,
        portfolio_id: str,
        name: str = "",
        **overrides: Any,
    ) -> Portfolio:
        fields = dict(_TEMPLATES[template])
        fields.update(overrides)
        return cls(id=PortfolioId(portfolio_id), name=name or portfolio_id, **fields)

    def tax_rates_on(self, on: date) -> TaxRates:
        """Rates of the latest history entry starting on or before `on`."""
        entry = _latest_entry(self.tax_history, on)
        if entry is None:
            return TaxRates(cgt=self.cgt, inc_tax=self.inc_tax)
        return TaxRates(cgt=entry.cgt, inc_tax=entry.inc_tax)

    def fee_settings_on(self, on: date) -> FeeSettings:
        settings = FeeSettings(
            mgmt_val=self.mgmt_val,
            mgmt_type=self.mgmt_type,
            mgmt_freq=self.mgmt_freq,
            comm_rate=self.comm_rate,
            comm_min=self.comm_min,
            comm_max=self.comm_max,
            div_comm_rate=self.div_comm_rate,
        )
        entry = _latest_entry(self.fee_history, on)
        if entry is None:
            return settings
        return FeeSettings(
            mgmt_val=entry.mgmt_val if entry.mgmt_val is not None else settings.mgmt_val,
            mgmt_type=entry.mgmt_type or settings.mgmt_type,
            mgmt_freq=entry.mgmt_freq or settings.mgmt_freq,
            comm_rate=entry.comm_rate if entry.comm_rate is not None else settings.comm_rate,
            comm_min=entry.comm_min if entry.comm_min is not None else settings.comm_min,
            comm_max=entry.comm_max if entry.comm_max is not None else settings.comm_max,
            div_comm_rate=entry.div_comm_rate if entry.div_comm_rate is not None else settings.div_comm_rate,
        )

    def commission_for(self, trade_value: Decimal, on: date) -> Decimal:
        """Broker commission for a trade of `trade_value` in the portfolio currency."""
        settings = self.fee_settings_on(on)
        if trade_value <= 0:
            return Decimal(0)
        fee = max(trade_value * settings.comm_rate, settings.comm_min)
        if settings.comm_max > 0:
            fee = min(fee, settings.comm_max)
        return fee

    def reinvests_dividends(self) -> bool:
        return self.div_policy != DividendPolicy.CASH_TAXED


def _latest_entry(entries: list[Any], on: date) -> Any:
    found = None
    for entry in entries:
        if entry.start_date <= on:
            found = entry
        else:
            break
    return found


__all__ = [
    "ACQUISITION_TYPES",
    "DISPOSAL_TYPES",
    "DividendPolicy",
    "FeeFrequency",
    "FeeHistoryEntry",
    "FeeSettings",
    "FeeType",
    "HoldingKey",
    "LotId",
    "Portfolio",
    "PortfolioId",
    "PortfolioTemplate",
    "PriceKey",
    "TaxHistoryEntry",
    "TaxPolicy",
    "TaxRates",
    "Transaction",
    "TransactionId",
    "TransactionType",
]
