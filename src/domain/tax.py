from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Protocol

from .currency import Currency, ExchangeRateSnapshot, convert_currency, major_unit
from .ledger import DividendPolicy, Portfolio, TaxPolicy
from .lots import DividendRecord, HoldingState, LotSnapshot, SaleAllocation


class CpiIndex(Protocol):
    """Consumer price index lookup used for inflation-adjusted gains."""

    def value_on(self, on: date) -> Decimal: ...


class TaxConfigurationError(ValueError):
    pass


@dataclass(frozen=True)
class TaxLiability:
    """Tax owed in the base currency; capital and income parts stay separate."""

    taxable_gain: Decimal
    capital: Decimal
    income: Decimal

    @property
    def total(self) -> Decimal:
        return self.capital + self.income

    @classmethod
    def zero(cls) -> TaxLiability:
        return cls(taxable_gain=Decimal(0), capital=Decimal(0), income=Decimal(0))

    def __add__(self, other: TaxLiability) -> TaxLiability:
        return TaxLiability(
            taxable_gain=self.taxable_gain + other.taxable_gain,
            capital=self.capital + other.capital,
            income=self.income + other.income,
        )


def real_taxable_gain(nominal: Decimal, real: Decimal) -> Decimal:
    """Combine nominal and real gain: opposite signs tax nothing, gains take the lower, losses the nominal."""
    if (nominal > 0 and real < 0) or (nominal < 0 and real > 0):
        return Decimal(0)
    if nominal > 0 and real > 0:
        return min(nominal, real)
    return nominal


def sum_liabilities(liabilities: Iterable[TaxLiability]) -> TaxLiability:
    total = TaxLiability.zero()
    for liability in liabilities:
        total = total + liability
    return total


class TaxCalculator:
    def __init__(
        self,
        *,
        snapshot: ExchangeRateSnapshot,
        cpi_index: CpiIndex | None = None,
        base_currency: Currency = Currency.ILS,
    ) -> None:
        self._snapshot = snapshot
        self._cpi_index = cpi_index
        self._base_currency = base_currency

    def unrealized_liability(
        self,
        lot: LotSnapshot,
        *,
        portfolio: Portfolio,
        price: Decimal,
        as_of: date,
    ) -> TaxLiability:
        """Liability if `lot` were sold at `price` (holding currency) on `as_of`."""
        if portfolio.tax_policy == TaxPolicy.TAX_FREE:
            return TaxLiability.zero()

        currency = lot.cost_basis.currency
        value = lot.remaining_qty * price
        value_base = convert_currency(value, currency, self._base_currency, self._snapshot)
        fees_base = convert_currency(lot.fees.amount, currency, self._base_currency, self._snapshot)
        taxable = self._taxable_gain(
            portfolio,
            currency=currency,
            gain=value - lot.cost_basis.amount - lot.fees.amount,
            value_base=value_base,
            cost_base=lot.cost_basis_base.amount,
            fees_base=fees_base,
            acquired=lot.acquisition_date,
            as_of=as_of,
            rate_on=None,
        )
        return self._liability(
            portfolio,
            taxable=taxable,
            grant_value_base=self._grant_value_base(
                lot.dividend_reinvestment,
                cost_base=lot.cost_basis_base.amount,
                fees=lot.fees.amount,
                currency=currency,
                acquired=lot.acquisition_date,
            ),
            as_of=as_of,
        )

    def holding_unrealized_liability(
        self,
        state: HoldingState,
        *,
        portfolio: Portfolio,
        price: Decimal,
        as_of: date,
    ) -> TaxLiability:
        return sum_liabilities(
            self.unrealized_liability(lot, portfolio=portfolio, price=price, as_of=as_of) for lot in state.open_lots
        )

    def realized_liability(
        self,
        allocation: SaleAllocation,
        *,
        portfolio: Portfolio,
        currency: Currency,
    ) -> TaxLiability:
        """Liability for one consumed lot portion; transfers are never taxed."""
        if allocation.is_transfer or portfolio.tax_policy == TaxPolicy.TAX_FREE:
            return TaxLiability.zero()

        fees = allocation.buy_fees + allocation.sell_fees
        fees_base = convert_currency(fees, currency, self._base_currency, self._snapshot, on=allocation.sale_date)
        taxable = self._taxable_gain(
            portfolio,
            currency=currency,
            gain=allocation.proceeds - allocation.cost - fees,
            value_base=allocation.proceeds_base,
            cost_base=allocation.cost_base,
            fees_base=fees_base,
            acquired=allocation.acquisition_date,
            as_of=allocation.sale_date,
            rate_on=allocation.sale_date,
        )
        return self._liability(
            portfolio,
            taxable=taxable,
            grant_value_base=self._grant_value_base(
                allocation.dividend_reinvestment,
                cost_base=allocation.cost_base,
                fees=allocation.buy_fees,
                currency=currency,
                acquired=allocation.acquisition_date,
            ),
            as_of=allocation.sale_date,
        )

    def holding_realized_liability(self, state: HoldingState, *, portfolio: Portfolio) -> TaxLiability:
        return sum_liabilities(
            self.realized_liability(sale, portfolio=portfolio, currency=state.currency) for sale in state.sales
        )

    def dividend_tax(self, record: DividendRecord, *, portfolio: Portfolio, is_reit: bool = False) -> Decimal:
        """Withholding on a dividend, in the base currency."""
        if portfolio.tax_policy == TaxPolicy.TAX_FREE:
            return Decimal(0)
        if record.reinvested and portfolio.div_policy in (
            DividendPolicy.ACCUMULATE_TAX_FREE,
            DividendPolicy.HYBRID_RSU,
        ):
            return Decimal(0)
        if record.gross == 0:
            return Decimal(0)
        rates = portfolio.tax_rates_on(record.paid_date)
        rate = rates.inc_tax if is_reit and rates.inc_tax > 0 else rates.cgt
        net_base = record.gross_base * (record.gross - record.fee) / record.gross
        return max(Decimal(0), net_base) * rate

    def holding_dividend_tax(self, state: HoldingState, *, portfolio: Portfolio, is_reit: bool = False) -> Decimal:
        return sum(
            (self.dividend_tax(record, portfolio=portfolio, is_reit=is_reit) for record in state.dividends),
            start=Decimal(0),
        )

    def _taxable_gain(
        self,
        portfolio: Portfolio,
        *,
        currency: Currency,
        gain: Decimal,
        value_base: Decimal,
        cost_base: Decimal,
        fees_base: Decimal,
        acquired: date,
        as_of: date,
        rate_on: date | None,
    ) -> Decimal:
        nominal_base = value_base - cost_base - fees_base
        domestic = major_unit(currency) == self._base_currency

        if domestic:
            if portfolio.tax_policy != TaxPolicy.REAL_GAIN:
                return nominal_base
            if self._cpi_index is None:
                msg = f"Portfolio {portfolio.id} uses REAL_GAIN but no CPI index was supplied"
                raise TaxConfigurationError(msg)
            cpi_start = self._cpi_index.value_on(acquired)
            cpi_end = self._cpi_index.value_on(as_of)
            if cpi_start <= 0:
                msg = f"CPI on {acquired.isoformat()} must be > 0, got {cpi_start}"
                raise TaxConfigurationError(msg)
            real = nominal_base - cost_base * (cpi_end / cpi_start - 1)
            return real_taxable_gain(nominal_base, real)

        # Foreign security: the gain measured in its own currency, converted once.
        gain_in_base = convert_currency(gain, currency, self._base_currency, self._snapshot, on=rate_on)
        if portfolio.tax_policy == TaxPolicy.REAL_GAIN:
            return real_taxable_gain(nominal_base, gain_in_base)
        return gain_in_base

    def _grant_value_base(
        self,
        dividend_reinvestment: bool,
        *,
        cost_base: Decimal,
        fees: Decimal,
        currency: Currency,
        acquired: date,
    ) -> Decimal:
        """Income-taxable value of granted shares: base cost plus buy fees at the acquisition rate."""
        if dividend_reinvestment:
            return Decimal(0)
        return cost_base + convert_currency(fees, currency, self._base_currency, self._snapshot, on=acquired)

    def _liability(
        self,
        portfolio: Portfolio,
        *,
        taxable: Decimal,
        grant_value_base: Decimal,
        as_of: date,
    ) -> TaxLiability:
        rates = portfolio.tax_rates_on(as_of)
        capital = max(Decimal(0), taxable) * rates.cgt
        income = Decimal(0)
        if rates.inc_tax > 0:
            income = max(Decimal(0), grant_value_base) * rates.inc_tax
        return TaxLiability(taxable_gain=taxable, capital=capital, income=income)


__all__ = [
    "CpiIndex",
    "TaxCalculator",
    "TaxConfigurationError",
    "TaxLiability",
    "real_taxable_gain",
    "sum_liabilities",
]
