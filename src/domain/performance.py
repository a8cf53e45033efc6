from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Iterable, Mapping, Sequence

from pydantic import BaseModel

from .currency import Currency, ExchangeRateSnapshot, convert_currency
from .ledger import ACQUISITION_TYPES, DISPOSAL_TYPES, HoldingKey, Portfolio, PriceKey, Transaction, TransactionType
from .lots import OversellError
from .pricing import PriceHistory

logger = logging.getLogger(__name__)

MATERIAL_VALUE = Decimal("1e-6")
DUST_QTY = Decimal("1e-9")


class Period(StrEnum):
    WEEK = "1W"
    MONTH = "1M"
    QUARTER = "3M"
    YTD = "YTD"
    YEAR = "1Y"
    FIVE_YEARS = "5Y"
    ALL = "ALL"


class PerformancePoint(BaseModel):
    as_of: date
    holdings_value: Decimal
    cost_basis: Decimal
    gains_value: Decimal
    twr: Decimal


@dataclass(frozen=True)
class PeriodReturn:
    perf: Decimal
    gain: Decimal


_ZERO_RETURN = PeriodReturn(perf=Decimal(0), gain=Decimal(0))


@dataclass
class _DayFlows:
    net_flow: Decimal = Decimal(0)
    dividends: Decimal = Decimal(0)
    fees: Decimal = Decimal(0)

    def absorb(self, other: _DayFlows) -> None:
        self.net_flow += other.net_flow
        self.dividends += other.dividends
        self.fees += other.fees


@dataclass
class _Position:
    price_key: PriceKey
    qty: Decimal
    cost_basis: Decimal
    last_value: Decimal | None = None
    pending: _DayFlows = field(default_factory=_DayFlows)


class PerformanceEngine:
    """Replay transactions day by day against price history to build a TWR index.

    Every amount is converted with the snapshot's current rates, in the display
    currency. Day returns assume flows land at end of day; on an inception day
    the flow itself is the denominator. A position's flows are held back until
    the first day it can be priced, and each day's return covers only the
    positions valued that day.
    """

    def __init__(
        self,
        *,
        snapshot: ExchangeRateSnapshot,
        display_currency: Currency,
        portfolios: Mapping[str, Portfolio],
        max_price_age_days: int | None = None,
        material_value: Decimal = MATERIAL_VALUE,
        dust: Decimal = DUST_QTY,
    ) -> None:
        self._snapshot = snapshot
        self._display_currency = display_currency
        self._portfolios = portfolios
        self._max_price_age = timedelta(days=max_price_age_days) if max_price_age_days is not None else None
        self._material_value = material_value
        self._dust = dust

    def build_series(
        self,
        transactions: Iterable[Transaction],
        histories: Mapping[PriceKey, PriceHistory],
    ) -> list[PerformancePoint]:
        ordered = sorted(transactions, key=lambda txn: txn.effective_date)
        if not ordered:
            return []

        involved = {txn.price_key for txn in ordered}
        first_day = ordered[0].effective_date
        days = sorted(
            {
                point.on
                for key, history in histories.items()
                if key in involved
                for point in history.points
                if point.on >= first_day
            }
        )
        if not days:
            return []

        positions: dict[HoldingKey, _Position] = {}
        other_gains = Decimal(0)
        twr = Decimal(1)
        txn_idx = 0
        points: list[PerformancePoint] = []

        for day in days:
            flows = _DayFlows()
            while txn_idx < len(ordered) and ordered[txn_idx].effective_date <= day:
                other_gains += self._apply(ordered[txn_idx], positions, flows)
                txn_idx += 1

            start_value, holdings_value, cost_basis = self._value_positions(positions, histories, day, flows)

            day_return = self._day_return(
                end_value=holdings_value,
                start_value=start_value,
                flows=flows,
            )
            twr *= 1 + day_return

            points.append(
                PerformancePoint(
                    as_of=day,
                    holdings_value=holdings_value,
                    cost_basis=cost_basis,
                    gains_value=holdings_value - cost_basis + other_gains,
                    twr=twr,
                )
            )

        return points

    def _apply(self, txn: Transaction, positions: dict[HoldingKey, _Position], unattached: _DayFlows) -> Decimal:
        """Mutate the running position for `txn`; return the change in cumulative other gains.

        Flows of a held position wait on the position until it is valued; flows
        with no position behind them land on the day directly.
        """
        key = txn.holding_key
        held = key in positions
        position = positions[key] if held else _Position(price_key=txn.price_key, qty=Decimal(0), cost_basis=Decimal(0))
        qty = txn.qty
        if txn.type == TransactionType.DIVIDEND and qty > 0 and not self._reinvests(txn):
            qty = Decimal(0)

        if txn.type in DISPOSAL_TYPES and qty > position.qty + self._dust:
            raise OversellError(
                f"Cannot sell {qty} {txn.ticker} from {txn.portfolio_id}: only {position.qty} held "
                f"(txn={txn.id} on {txn.effective_date.isoformat()})",
                transaction=txn,
                key=key,
                quantity_requested=qty,
                quantity_available=position.qty,
            )

        opens = txn.type in ACQUISITION_TYPES or (txn.type == TransactionType.DIVIDEND and qty > 0)
        if not held and opens:
            positions[key] = position
            held = True
        flows = position.pending if held else unattached

        gains_delta = Decimal(0)
        if txn.type == TransactionType.DIV_EVENT:
            value = self._to_display(position.qty * txn.price, txn.currency)
        else:
            value = self._to_display(txn.value(), txn.currency)

        if txn.type in ACQUISITION_TYPES:
            position.qty += qty
            position.cost_basis += value
            flows.net_flow += value
        elif txn.type in DISPOSAL_TYPES:
            avg_cost = position.cost_basis / position.qty if position.qty > 0 else Decimal(0)
            cost_of_sold = avg_cost * min(qty, position.qty)
            position.qty = max(Decimal(0), position.qty - qty)
            position.cost_basis -= cost_of_sold
            if txn.type == TransactionType.SELL:
                gains_delta += value - cost_of_sold
            flows.net_flow -= value
        elif txn.type in (TransactionType.DIVIDEND, TransactionType.DIV_EVENT):
            gains_delta += value
            flows.dividends += value
            if qty > 0 and txn.type == TransactionType.DIVIDEND:
                # Reinvested cash buys shares the same day.
                position.qty += qty
                position.cost_basis += value
                flows.net_flow += value
        elif txn.type == TransactionType.FEE:
            gains_delta -= value
            flows.fees += value
        return gains_delta

    def _value_positions(
        self,
        positions: dict[HoldingKey, _Position],
        histories: Mapping[PriceKey, PriceHistory],
        day: date,
        flows: _DayFlows,
    ) -> tuple[Decimal, Decimal, Decimal]:
        """Value every priceable position; return (start value, end value, cost basis) of those valued."""
        start_value = Decimal(0)
        holdings_value = Decimal(0)
        cost_basis = Decimal(0)
        for key, position in list(positions.items()):
            closed = position.qty <= self._dust
            value = Decimal(0) if closed else self._market_value(key, position, histories, day)
            if value is None:
                continue

            if position.last_value is None and closed:
                logger.debug("Dropping flows of %s, closed before it was ever priced", key)
            else:
                start_value += position.last_value or Decimal(0)
                flows.absorb(position.pending)
            position.pending = _DayFlows()
            position.last_value = value
            holdings_value += value

            if closed:
                logger.debug("Closing position %s on %s", key, day.isoformat())
                del positions[key]
            else:
                cost_basis += position.cost_basis
        return start_value, holdings_value, cost_basis

    def _market_value(
        self,
        key: HoldingKey,
        position: _Position,
        histories: Mapping[PriceKey, PriceHistory],
        day: date,
    ) -> Decimal | None:
        history = histories.get(position.price_key)
        if history is None:
            logger.debug("No price history for %s", key)
            return None
        point = history.latest_on_or_before(day)
        if point is None or point.value <= 0:
            logger.debug("No price for %s on %s", key, day.isoformat())
            return None
        if self._max_price_age is not None and day - point.on > self._max_price_age:
            logger.debug("Price for %s is stale on %s (last %s)", key, day.isoformat(), point.on.isoformat())
            return None
        return self._to_display(position.qty * point.value, history.currency)

    def _day_return(self, *, end_value: Decimal, start_value: Decimal, flows: _DayFlows) -> Decimal:
        gain = (end_value - flows.net_flow) - start_value + flows.dividends - flows.fees
        if start_value > self._material_value:
            return gain / start_value
        if flows.net_flow > self._material_value:
            return gain / flows.net_flow
        return Decimal(0)

    def _reinvests(self, txn: Transaction) -> bool:
        portfolio = self._portfolios.get(txn.portfolio_id)
        return portfolio is not None and portfolio.reinvests_dividends()

    def _to_display(self, amount: Decimal, currency: Currency) -> Decimal:
        return convert_currency(amount, currency, self._display_currency, self._snapshot)


def _shift_months(day: date, months: int) -> date:
    month_index = day.year * 12 + day.month - 1 - months
    year, month = divmod(month_index, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def period_start(period: Period, latest: date) -> date | None:
    """Reference date a period is measured from; None means since inception."""
    if period == Period.WEEK:
        return latest - timedelta(days=7)
    if period == Period.MONTH:
        return _shift_months(latest, 1)
    if period == Period.QUARTER:
        return _shift_months(latest, 3)
    if period == Period.YTD:
        return date(latest.year - 1, 12, 31)
    if period == Period.YEAR:
        return _shift_months(latest, 12)
    if period == Period.FIVE_YEARS:
        return _shift_months(latest, 60)
    if period == Period.ALL:
        return None
    msg = f"Unknown period {period}"
    raise ValueError(msg)


def calculate_period_returns(points: Sequence[PerformancePoint]) -> dict[Period, PeriodReturn]:
    """Compound return and gain change for each period, ending at the latest point.

    The start is the first point on or after the period's reference date; a
    period reaching before the series starts measures from TWR 1.0 and zero gains.
    """
    if len(points) < 2:
        return {period: _ZERO_RETURN for period in Period}

    latest = points[-1]
    first_day = points[0].as_of
    returns: dict[Period, PeriodReturn] = {}
    for period in Period:
        start = period_start(period, latest.as_of)
        start_twr, start_gains = Decimal(1), Decimal(0)
        if start is not None and start >= first_day:
            start_point = next(point for point in points if point.as_of >= start)
            start_twr, start_gains = start_point.twr, start_point.gains_value
        if start_twr == 0:
            returns[period] = PeriodReturn(perf=Decimal(0), gain=latest.gains_value - start_gains)
            continue
        returns[period] = PeriodReturn(
            perf=latest.twr / start_twr - 1,
            gain=latest.gains_value - start_gains,
        )
    return returns


__all__ = [
    "PerformanceEngine",
    "PerformancePoint",
    "Period",
    "PeriodReturn",
    "calculate_period_returns",
    "period_start",
]
