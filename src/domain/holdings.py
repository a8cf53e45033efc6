from __future__ import annotations

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Mapping

from pydantic import BaseModel, Field

from .currency import Currency, ExchangeRateSnapshot, convert_currency
from .ledger import FeeFrequency, FeeType, HoldingKey, Portfolio, PriceKey
from .lots import HoldingState, LedgerResult, UnknownPortfolioError
from .performance import Period, period_start
from .pricing import PriceHistory
from .tax import TaxCalculator

logger = logging.getLogger(__name__)


class HoldingView(BaseModel):
    """One valued holding.

    Trading figures are in `stock_currency`; tax figures are in `base_currency`.
    """

    portfolio_id: str
    ticker: str
    exchange: str
    stock_currency: Currency
    portfolio_currency: Currency
    base_currency: Currency
    as_of: date

    qty: Decimal
    qty_unvested: Decimal = Decimal(0)
    price: Decimal | None
    avg_cost: Decimal
    market_value: Decimal
    market_value_unvested: Decimal = Decimal(0)
    cost_basis: Decimal
    unrealized_gain: Decimal
    unrealized_gain_pct: Decimal
    realized_gain: Decimal
    cost_of_sold: Decimal
    dividends: Decimal
    fees: Decimal

    unrealized_tax: Decimal
    unrealized_income_tax: Decimal
    realized_tax: Decimal
    dividend_tax: Decimal

    day_change_pct: Decimal | None = None
    period_perf: dict[Period, Decimal | None] = Field(default_factory=dict)

    @property
    def key(self) -> HoldingKey:
        return HoldingKey(portfolio_id=self.portfolio_id, ticker=self.ticker)

    @property
    def priced(self) -> bool:
        return self.price is not None

    @property
    def total_unrealized_tax(self) -> Decimal:
        return self.unrealized_tax + self.unrealized_income_tax


class HoldingValuator:
    """Turn ledger holdings and prices into HoldingViews."""

    def __init__(
        self,
        *,
        portfolios: Mapping[str, Portfolio],
        snapshot: ExchangeRateSnapshot,
        tax_calculator: TaxCalculator,
        base_currency: Currency = Currency.ILS,
    ) -> None:
        self._portfolios = portfolios
        self._snapshot = snapshot
        self._tax_calculator = tax_calculator
        self._base_currency = base_currency

    def value(
        self,
        state: HoldingState,
        *,
        price: Decimal | None,
        price_currency: Currency | None = None,
        as_of: date,
        day_change_pct: Decimal | None = None,
        period_perf: Mapping[Period, Decimal | None] | None = None,
    ) -> HoldingView:
        portfolio = self._portfolio(state)
        local_price = None
        if price is not None:
            local_price = convert_currency(price, price_currency or state.currency, state.currency, self._snapshot)

        qty = state.total_qty
        cost_basis = state.cost_basis
        if local_price is None:
            logger.warning("No price for %s as of %s; valuing at zero", state.key, as_of.isoformat())
            market_value = Decimal(0)
            unrealized_tax = unrealized_income_tax = Decimal(0)
            unrealized_gain = Decimal(0)
        else:
            market_value = qty * local_price
            unrealized_gain = market_value - cost_basis
            liability = self._tax_calculator.holding_unrealized_liability(
                state,
                portfolio=portfolio,
                price=local_price,
                as_of=as_of,
            )
            unrealized_tax, unrealized_income_tax = liability.capital, liability.income

        realized = self._tax_calculator.holding_realized_liability(state, portfolio=portfolio)
        unvested_qty = state.unvested_qty

        return HoldingView(
            portfolio_id=state.key.portfolio_id,
            ticker=state.key.ticker,
            exchange=state.exchange,
            stock_currency=state.currency,
            portfolio_currency=portfolio.currency,
            base_currency=self._base_currency,
            as_of=as_of,
            qty=qty,
            qty_unvested=unvested_qty,
            price=local_price,
            avg_cost=state.avg_cost,
            market_value=market_value,
            market_value_unvested=unvested_qty * local_price if local_price is not None else Decimal(0),
            cost_basis=cost_basis,
            unrealized_gain=unrealized_gain,
            unrealized_gain_pct=unrealized_gain / cost_basis if cost_basis > 0 else Decimal(0),
            realized_gain=state.realized_gain,
            cost_of_sold=state.cost_of_sold,
            dividends=state.dividend_income,
            fees=state.fees + state.commissions,
            unrealized_tax=unrealized_tax,
            unrealized_income_tax=unrealized_income_tax,
            realized_tax=realized.total,
            dividend_tax=self._tax_calculator.holding_dividend_tax(state, portfolio=portfolio),
            day_change_pct=day_change_pct,
            period_perf=dict(period_perf or {}),
        )

    def value_all(
        self,
        ledger: LedgerResult,
        *,
        histories: Mapping[PriceKey, PriceHistory],
        as_of: date,
    ) -> list[HoldingView]:
        """Value every holding that still has quantity or booked activity."""
        views: list[HoldingView] = []
        for state in ledger.holdings.values():
            if state.total_qty == 0 and not state.sales and not state.dividends and not state.pending:
                continue
            history = histories.get(state.price_key)
            point = history.latest_on_or_before(as_of) if history is not None else None
            views.append(
                self.value(
                    state,
                    price=point.value if point is not None else None,
                    price_currency=history.currency if history is not None else None,
                    as_of=as_of,
                    day_change_pct=day_change(history, as_of) if history is not None else None,
                    period_perf=price_changes(history, as_of) if history is not None else None,
                )
            )
        return views

    def _portfolio(self, state: HoldingState) -> Portfolio:
        portfolio = self._portfolios.get(state.key.portfolio_id)
        if portfolio is None:
            raise UnknownPortfolioError(f"Portfolio {state.key.portfolio_id} not found", key=state.key)
        return portfolio


def day_change(history: PriceHistory, as_of: date) -> Decimal | None:
    """Relative change between the last two closes on or before `as_of`."""
    latest = history.latest_on_or_before(as_of)
    if latest is None:
        return None
    previous = history.latest_on_or_before(latest.on - timedelta(days=1))
    if previous is None or previous.value == 0:
        return None
    return latest.value / previous.value - 1


def price_changes(history: PriceHistory, as_of: date) -> dict[Period, Decimal | None]:
    """Price-only change per period; None when history does not reach back far enough."""
    latest = history.latest_on_or_before(as_of)
    changes: dict[Period, Decimal | None] = {}
    for period in Period:
        if latest is None or not history.points:
            changes[period] = None
            continue
        start = period_start(period, latest.on)
        start_point = history.points[0] if start is None else history.latest_on_or_before(start)
        if start_point is None or start_point.value == 0:
            changes[period] = None
            continue
        changes[period] = latest.value / start_point.value - 1
    return changes


def management_fee_due(portfolio: Portfolio, on: date) -> bool:
    """Whether a recurring management fee is charged in the month of `on`."""
    frequency = portfolio.fee_settings_on(on).mgmt_freq
    if frequency == FeeFrequency.MONTHLY:
        return True
    if frequency == FeeFrequency.QUARTERLY:
        return on.month % 3 == 0
    return on.month == 1


def management_fee_amount(portfolio: Portfolio, holdings_value: Decimal, on: date) -> Decimal:
    """Fee charged for one due period, in the portfolio currency."""
    settings = portfolio.fee_settings_on(on)
    if settings.mgmt_val == 0 or not management_fee_due(portfolio, on):
        return Decimal(0)
    if settings.mgmt_type == FeeType.FIXED:
        return settings.mgmt_val
    periods_per_year = {
        FeeFrequency.MONTHLY: Decimal(12),
        FeeFrequency.QUARTERLY: Decimal(4),
        FeeFrequency.YEARLY: Decimal(1),
    }[settings.mgmt_freq]
    return holdings_value * settings.mgmt_val / periods_per_year


__all__ = [
    "HoldingValuator",
    "HoldingView",
    "day_change",
    "management_fee_amount",
    "management_fee_due",
    "price_changes",
]
