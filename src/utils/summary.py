from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Sequence

from domain.currency import Currency, ExchangeRateSnapshot, convert_currency
from domain.holdings import HoldingView
from domain.ledger import HoldingKey
from domain.performance import Period

from .formatting import format_currency, format_decimal, format_percent


@dataclass(frozen=True)
class MetricCoverage:
    contributing: int
    eligible: int

    @property
    def incomplete(self) -> bool:
        return self.eligible > 0 and self.contributing < self.eligible


@dataclass
class HoldingWeight:
    key: HoldingKey
    market_value: Decimal
    weight_in_portfolio: Decimal
    weight_in_global: Decimal


@dataclass
class PortfolioTotals:
    portfolio_id: str
    market_value: Decimal = Decimal(0)
    unrealized_gain: Decimal = Decimal(0)
    realized_gain: Decimal = Decimal(0)
    dividends: Decimal = Decimal(0)
    unrealized_tax: Decimal = Decimal(0)
    realized_tax: Decimal = Decimal(0)

    @property
    def value_after_tax(self) -> Decimal:
        return self.market_value - self.unrealized_tax


@dataclass
class DashboardSummary:
    display_currency: Currency
    aum: Decimal = Decimal(0)
    cost_basis: Decimal = Decimal(0)
    unrealized_gain: Decimal = Decimal(0)
    unrealized_gain_pct: Decimal = Decimal(0)
    realized_gain: Decimal = Decimal(0)
    realized_gain_pct: Decimal = Decimal(0)
    cost_of_sold: Decimal = Decimal(0)
    dividends: Decimal = Decimal(0)
    fees: Decimal = Decimal(0)
    total_return: Decimal = Decimal(0)
    unrealized_tax: Decimal = Decimal(0)
    realized_tax: Decimal = Decimal(0)
    value_after_tax: Decimal = Decimal(0)
    realized_gain_after_tax: Decimal = Decimal(0)
    unvested_value: Decimal = Decimal(0)
    day_change: Decimal = Decimal(0)
    day_change_pct: Decimal = Decimal(0)
    day_change_coverage: MetricCoverage = MetricCoverage(0, 0)
    period_perf: dict[Period, Decimal] = field(default_factory=dict)
    period_coverage: dict[Period, MetricCoverage] = field(default_factory=dict)
    unpriced_holdings: int = 0
    portfolios: list[PortfolioTotals] = field(default_factory=list)
    weights: list[HoldingWeight] = field(default_factory=list)

    @property
    def day_change_incomplete(self) -> bool:
        return self.day_change_coverage.incomplete

    def period_incomplete(self, period: Period) -> bool:
        coverage = self.period_coverage.get(period)
        return coverage is not None and coverage.incomplete


def _usable(value: Decimal) -> bool:
    return value.is_finite() and value != 0 and value != -1


class SummaryAggregator:
    """Roll holdings up into portfolio and global totals in one display currency.

    Tax figures arrive in the base currency and are converted here, never earlier.
    """

    def __init__(self, *, snapshot: ExchangeRateSnapshot, display_currency: Currency) -> None:
        self._snapshot = snapshot
        self._display_currency = display_currency

    def summarize(self, holdings: Sequence[HoldingView]) -> DashboardSummary:
        summary = DashboardSummary(display_currency=self._display_currency)
        per_portfolio: dict[str, PortfolioTotals] = {}

        day_change_total = Decimal(0)
        day_change_value = Decimal(0)
        day_contributors = 0
        period_change: dict[Period, Decimal] = defaultdict(Decimal)
        period_value: dict[Period, Decimal] = defaultdict(Decimal)
        period_contributors: dict[Period, int] = defaultdict(int)

        for holding in holdings:
            market_value = self._from_stock(holding.market_value, holding)
            unrealized = self._from_stock(holding.unrealized_gain, holding)
            realized = self._from_stock(holding.realized_gain, holding)
            dividends = self._from_stock(holding.dividends, holding)
            fees = self._from_stock(holding.fees, holding)
            unrealized_tax = self._from_base(holding.total_unrealized_tax, holding)
            realized_tax = self._from_base(holding.realized_tax + holding.dividend_tax, holding)

            summary.aum += market_value
            summary.cost_basis += self._from_stock(holding.cost_basis, holding)
            summary.unrealized_gain += unrealized
            summary.realized_gain += realized
            summary.cost_of_sold += self._from_stock(holding.cost_of_sold, holding)
            summary.dividends += dividends
            summary.fees += fees
            summary.unrealized_tax += unrealized_tax
            summary.realized_tax += realized_tax
            summary.unvested_value += self._from_stock(holding.market_value_unvested, holding)
            if not holding.priced:
                summary.unpriced_holdings += 1

            totals = per_portfolio.setdefault(holding.portfolio_id, PortfolioTotals(portfolio_id=holding.portfolio_id))
            totals.market_value += market_value
            totals.unrealized_gain += unrealized
            totals.realized_gain += realized
            totals.dividends += dividends
            totals.unrealized_tax += unrealized_tax
            totals.realized_tax += realized_tax

            day_pct = holding.day_change_pct
            if day_pct is not None and _usable(day_pct):
                day_change_total += market_value * day_pct / (1 + day_pct)
                day_change_value += market_value
                day_contributors += 1

            for period in Period:
                perf = holding.period_perf.get(period)
                if perf is None or not _usable(perf):
                    continue
                period_change[period] += market_value * perf / (1 + perf)
                period_value[period] += market_value
                period_contributors[period] += 1

        # Closed holdings carry no weight; unpriced open ones still count.
        eligible = sum(1 for holding in holdings if holding.qty > 0)
        summary.total_return = summary.unrealized_gain + summary.realized_gain + summary.dividends - summary.fees
        invested = summary.aum - summary.unrealized_gain
        summary.unrealized_gain_pct = summary.unrealized_gain / invested if invested > 0 else Decimal(0)
        summary.realized_gain_pct = summary.realized_gain / summary.cost_of_sold if summary.cost_of_sold > 0 else Decimal(0)
        summary.value_after_tax = summary.aum - summary.unrealized_tax
        summary.realized_gain_after_tax = summary.realized_gain + summary.dividends - summary.realized_tax

        summary.day_change = day_change_total
        summary.day_change_pct = _relative(day_change_total, day_change_value)
        summary.day_change_coverage = MetricCoverage(day_contributors, eligible)
        for period in Period:
            summary.period_perf[period] = _relative(period_change[period], period_value[period])
            summary.period_coverage[period] = MetricCoverage(period_contributors[period], eligible)

        summary.portfolios = sorted(per_portfolio.values(), key=lambda totals: totals.portfolio_id)
        summary.weights = self.holding_weights(holdings)
        return summary

    def holding_weights(self, holdings: Sequence[HoldingView]) -> list[HoldingWeight]:
        values = [(holding.key, self._from_stock(holding.market_value, holding)) for holding in holdings]
        global_total = sum((value for _, value in values), start=Decimal(0))
        portfolio_totals: dict[str, Decimal] = defaultdict(Decimal)
        for key, value in values:
            portfolio_totals[key.portfolio_id] += value

        weights: list[HoldingWeight] = []
        for key, value in values:
            portfolio_total = portfolio_totals[key.portfolio_id]
            weights.append(
                HoldingWeight(
                    key=key,
                    market_value=value,
                    weight_in_portfolio=value / portfolio_total if portfolio_total > 0 else Decimal(0),
                    weight_in_global=value / global_total if global_total > 0 else Decimal(0),
                )
            )
        return weights

    def _from_stock(self, amount: Decimal, holding: HoldingView) -> Decimal:
        return convert_currency(amount, holding.stock_currency, self._display_currency, self._snapshot)

    def _from_base(self, amount: Decimal, holding: HoldingView) -> Decimal:
        return convert_currency(amount, holding.base_currency, self._display_currency, self._snapshot)


def _relative(change: Decimal, end_value: Decimal) -> Decimal:
    start_value = end_value - change
    if start_value <= 0:
        return Decimal(0)
    return change / start_value


def render_dashboard_summary(summary: DashboardSummary) -> None:
    currency = summary.display_currency
    rows: list[tuple[str, str]] = [
        ("AUM", format_currency(summary.aum)),
        ("Cost basis", format_currency(summary.cost_basis)),
        ("Unrealized gain", f"{format_currency(summary.unrealized_gain)} ({format_percent(summary.unrealized_gain_pct)})"),
        ("Realized gain", f"{format_currency(summary.realized_gain)} ({format_percent(summary.realized_gain_pct)})"),
        ("Dividends", format_currency(summary.dividends)),
        ("Fees", format_currency(summary.fees)),
        ("Total return", format_currency(summary.total_return)),
        ("Unrealized tax", format_currency(summary.unrealized_tax)),
        ("Realized tax", format_currency(summary.realized_tax)),
        ("Value after tax", format_currency(summary.value_after_tax)),
        ("Realized after tax", format_currency(summary.realized_gain_after_tax)),
        ("Unvested value", format_currency(summary.unvested_value)),
        (
            "Day change",
            f"{format_currency(summary.day_change)} ({format_percent(summary.day_change_pct)})"
            f"{' *' if summary.day_change_incomplete else ''}",
        ),
    ]
    for period in Period:
        marker = " *" if summary.period_incomplete(period) else ""
        rows.append((f"Perf {period}", f"{format_percent(summary.period_perf.get(period, Decimal(0)))}{marker}"))

    print(f"Dashboard summary ({currency}):")
    label_width = max(len(label) for label, _ in rows)
    value_width = max(len(value) for _, value in rows)
    lines = [f"  {label:<{label_width}} {value:>{value_width}}" for label, value in rows]
    if summary.unpriced_holdings:
        lines.append(f"  {summary.unpriced_holdings} holding(s) had no price and were valued at zero")
    if summary.day_change_incomplete or any(summary.period_incomplete(period) for period in Period):
        lines.append("  * not every holding reported this figure")
    print("\n".join(lines))


def render_holdings(holdings: Sequence[HoldingView], weights: Sequence[HoldingWeight]) -> None:
    print("Holdings:")
    if not holdings:
        print("  (empty)")
        return

    weight_by_key = {weight.key: weight for weight in weights}
    header_cells = ("Holding", "Ccy", "Qty", "Value", "Unrealized", "Weight")
    rows: list[tuple[str, ...]] = []
    for holding in sorted(holdings, key=lambda h: (h.portfolio_id, h.ticker)):
        weight = weight_by_key.get(holding.key)
        rows.append(
            (
                str(holding.key),
                str(holding.stock_currency),
                format_decimal(holding.qty),
                format_currency(holding.market_value),
                format_percent(holding.unrealized_gain_pct),
                format_percent(weight.weight_in_global) if weight is not None else "-",
            )
        )

    widths = [max(len(header_cells[idx]), max(len(row[idx]) for row in rows)) for idx in range(len(header_cells))]
    header = " ".join(
        f"{cell:<{widths[idx]}}" if idx < 2 else f"{cell:>{widths[idx]}}" for idx, cell in enumerate(header_cells)
    )
    lines = [header, "-" * len(header)]
    for row in rows:
        lines.append(
            " ".join(f"{cell:<{widths[idx]}}" if idx < 2 else f"{cell:>{widths[idx]}}" for idx, cell in enumerate(row))
        )
    lines.append("-" * len(header))
    print("\n".join(lines))


__all__ = [
    "DashboardSummary",
    "HoldingWeight",
    "MetricCoverage",
    "PortfolioTotals",
    "SummaryAggregator",
    "render_dashboard_summary",
    "render_holdings",
]
