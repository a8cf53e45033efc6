from typing import Mapping

import pytest

from domain.currency import Currency, ExchangeRateSnapshot
from domain.ledger import DividendPolicy, Portfolio, PortfolioTemplate, TaxPolicy
from domain.lots import LotLedger
from domain.tax import TaxCalculator
from services.cpi import CpiSeries
from tests.constants import HISHTALMUT_PORTFOLIO, IL_PORTFOLIO, RSU_PORTFOLIO, US_PORTFOLIO
from tests.helpers.builders import DEFAULT_DATE_GEN, make_portfolio, make_snapshot


@pytest.fixture(autouse=True)
def _reset_default_date_gen() -> None:
    DEFAULT_DATE_GEN.reset()


@pytest.fixture(scope="function")
def snapshot() -> ExchangeRateSnapshot:
    return make_snapshot()


@pytest.fixture(scope="function")
def portfolios() -> dict[str, Portfolio]:
    return {
        US_PORTFOLIO: make_portfolio(US_PORTFOLIO, currency=Currency.USD, tax_policy=TaxPolicy.NOMINAL_GAIN),
        IL_PORTFOLIO: make_portfolio(IL_PORTFOLIO, currency=Currency.ILS, tax_policy=TaxPolicy.REAL_GAIN),
        RSU_PORTFOLIO: Portfolio.from_template(PortfolioTemplate.RSU, portfolio_id=RSU_PORTFOLIO),
        HISHTALMUT_PORTFOLIO: make_portfolio(
            HISHTALMUT_PORTFOLIO,
            currency=Currency.ILS,
            tax_policy=TaxPolicy.TAX_FREE,
            div_policy=DividendPolicy.ACCUMULATE_TAX_FREE,
        ),
    }


@pytest.fixture(scope="function")
def lot_ledger(portfolios: Mapping[str, Portfolio], snapshot: ExchangeRateSnapshot) -> LotLedger:
    return LotLedger(portfolios=portfolios, snapshot=snapshot)


@pytest.fixture(scope="function")
def flat_cpi() -> CpiSeries:
    return CpiSeries([])


@pytest.fixture(scope="function")
def tax_calculator(snapshot: ExchangeRateSnapshot, flat_cpi: CpiSeries) -> TaxCalculator:
    return TaxCalculator(snapshot=snapshot, cpi_index=flat_cpi)
