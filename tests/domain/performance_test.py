from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from domain.currency import Currency, ExchangeRateSnapshot
from domain.ledger import Portfolio, TransactionType
from domain.lots import OversellError
from domain.performance import (
    PerformanceEngine,
    PerformancePoint,
    Period,
    PeriodReturn,
    calculate_period_returns,
    period_start,
)
from domain.pricing import PriceHistory
from tests.constants import AAPL, MSFT, RSU_PORTFOLIO, US_PORTFOLIO
from tests.helpers.builders import make_history, make_txn

D1 = date(2024, 1, 1)
D2 = date(2024, 1, 2)
D3 = date(2024, 1, 3)


@pytest.fixture
def engine(snapshot: ExchangeRateSnapshot, portfolios: dict[str, Portfolio]) -> PerformanceEngine:
    return PerformanceEngine(snapshot=snapshot, display_currency=Currency.USD, portfolios=portfolios)


def _histories(*histories: PriceHistory) -> dict:
    return {history.key: history for history in histories}


def _buy(qty: int, price: int, on: date, *, ticker: str = AAPL, portfolio_id: str = US_PORTFOLIO):
    return make_txn(TransactionType.BUY, portfolio_id=portfolio_id, ticker=ticker, qty=qty, price=price, trade_date=on)


def _sell(qty: int, price: int, on: date, *, txn_type: TransactionType = TransactionType.SELL):
    return make_txn(txn_type, portfolio_id=US_PORTFOLIO, ticker=AAPL, qty=qty, price=price, trade_date=on)


def test_no_transactions_or_prices_give_empty_series(engine: PerformanceEngine) -> None:
    assert engine.build_series([], _histories(make_history(AAPL, {D1: "100"}))) == []
    assert engine.build_series([_buy(1, 100, D1)], {}) == []


def test_flat_prices_keep_index_at_one(engine: PerformanceEngine) -> None:
    points = engine.build_series([_buy(10, 100, D1)], _histories(make_history(AAPL, {D1: "100", D2: "100", D3: "100"})))

    assert [point.as_of for point in points] == [D1, D2, D3]
    assert all(point.twr == Decimal(1) for point in points)
    assert all(point.gains_value == Decimal(0) for point in points)


def test_index_follows_price_moves(engine: PerformanceEngine) -> None:
    points = engine.build_series([_buy(10, 100, D1)], _histories(make_history(AAPL, {D1: "100", D2: "110", D3: "99"})))

    assert [point.twr for point in points] == [Decimal(1), Decimal("1.1"), Decimal("0.99")]
    assert [point.holdings_value for point in points] == [Decimal(1000), Decimal(1100), Decimal(990)]
    assert points[1].gains_value == Decimal(100)
    assert points[1].cost_basis == Decimal(1000)


def test_inception_day_return_uses_the_flow(engine: PerformanceEngine) -> None:
    points = engine.build_series([_buy(10, 100, D1)], _histories(make_history(AAPL, {D1: "105"})))

    assert points[0].twr == Decimal("1.05")


def test_days_before_first_transaction_are_skipped(engine: PerformanceEngine) -> None:
    history = make_history(AAPL, {date(2023, 12, 30): "90", D1: "100", D2: "110"})

    points = engine.build_series([_buy(10, 100, D1)], _histories(history))

    assert [point.as_of for point in points] == [D1, D2]


def test_contributions_do_not_move_the_index(engine: PerformanceEngine) -> None:
    points = engine.build_series(
        [_buy(10, 100, D1), _buy(10, 110, D2)],
        _histories(make_history(AAPL, {D1: "100", D2: "110", D3: "110"})),
    )

    assert [point.twr for point in points] == [Decimal(1), Decimal("1.1"), Decimal("1.1")]
    assert points[-1].holdings_value == Decimal(2200)
    assert points[-1].cost_basis == Decimal(2100)


def test_sale_realizes_gain_at_average_cost(engine: PerformanceEngine) -> None:
    points = engine.build_series(
        [
            _buy(10, 100, D1),
            make_txn(TransactionType.SELL, portfolio_id=US_PORTFOLIO, ticker=AAPL, qty=5, price=120, trade_date=D2),
        ],
        _histories(make_history(AAPL, {D1: "100", D2: "120"})),
    )

    assert points[-1].twr == Decimal("1.2")
    assert points[-1].cost_basis == Decimal(500)
    assert points[-1].gains_value == Decimal(200)


def test_cash_dividend_counts_as_return(engine: PerformanceEngine) -> None:
    points = engine.build_series(
        [
            _buy(10, 100, D1),
            make_txn(TransactionType.DIVIDEND, portfolio_id=US_PORTFOLIO, ticker=AAPL, qty=1, price=10, trade_date=D2),
        ],
        _histories(make_history(AAPL, {D1: "100", D2: "100"})),
    )

    assert points[-1].twr == Decimal("1.01")
    assert points[-1].holdings_value == Decimal(1000)
    assert points[-1].gains_value == Decimal(10)


def test_reinvested_dividend_counts_once(engine: PerformanceEngine) -> None:
    points = engine.build_series(
        [
            _buy(10, 100, D1, portfolio_id=RSU_PORTFOLIO),
            make_txn(TransactionType.DIVIDEND, portfolio_id=RSU_PORTFOLIO, ticker=AAPL, qty=1, price=100, trade_date=D2),
        ],
        _histories(make_history(AAPL, {D1: "100", D2: "100"})),
    )

    assert points[-1].twr == Decimal("1.1")
    assert points[-1].holdings_value == Decimal(1100)
    assert points[-1].gains_value == Decimal(100)


def test_fee_reduces_return(engine: PerformanceEngine) -> None:
    points = engine.build_series(
        [
            _buy(10, 100, D1),
            make_txn(TransactionType.FEE, portfolio_id=US_PORTFOLIO, ticker=AAPL, price=10, trade_date=D2),
        ],
        _histories(make_history(AAPL, {D1: "100", D2: "100"})),
    )

    assert points[-1].twr == Decimal("0.99")
    assert points[-1].gains_value == Decimal(-10)


def test_missing_days_carry_last_price_forward(engine: PerformanceEngine) -> None:
    histories = _histories(
        make_history(AAPL, {D1: "100", D3: "120"}),
        make_history(MSFT, {D2: "50", D3: "50"}),
    )

    points = engine.build_series([_buy(10, 100, D1), _buy(2, 50, D2, ticker=MSFT)], histories)

    assert [point.as_of for point in points] == [D1, D2, D3]
    assert points[1].holdings_value == Decimal(1100)
    assert points[1].twr == Decimal(1)
    assert points[2].holdings_value == Decimal(1300)
    assert points[2].twr == 1 + Decimal(200) / Decimal(1100)


def test_stale_prices_are_left_out(snapshot: ExchangeRateSnapshot, portfolios: dict[str, Portfolio]) -> None:
    engine = PerformanceEngine(
        snapshot=snapshot,
        display_currency=Currency.USD,
        portfolios=portfolios,
        max_price_age_days=0,
    )
    histories = _histories(
        make_history(AAPL, {D1: "100", D3: "100"}),
        make_history(MSFT, {D2: "50"}),
    )

    points = engine.build_series([_buy(10, 100, D1), _buy(2, 50, D2, ticker=MSFT)], histories)

    assert points[1].holdings_value == Decimal(100)


def test_series_is_in_display_currency(portfolios: dict[str, Portfolio], snapshot: ExchangeRateSnapshot) -> None:
    engine = PerformanceEngine(snapshot=snapshot, display_currency=Currency.ILS, portfolios=portfolios)

    points = engine.build_series([_buy(10, 100, D1)], _histories(make_history(AAPL, {D1: "100", D2: "110"})))

    assert points[0].holdings_value == Decimal(3500)
    assert points[1].twr == Decimal("1.1")


@pytest.mark.parametrize(
    ("period", "latest", "expected"),
    [
        (Period.WEEK, date(2024, 3, 10), date(2024, 3, 3)),
        (Period.MONTH, date(2024, 3, 31), date(2024, 2, 29)),
        (Period.QUARTER, date(2024, 5, 31), date(2024, 2, 29)),
        (Period.YTD, date(2024, 3, 10), date(2023, 12, 31)),
        (Period.YEAR, date(2024, 2, 29), date(2023, 2, 28)),
        (Period.FIVE_YEARS, date(2024, 3, 10), date(2019, 3, 10)),
        (Period.ALL, date(2024, 3, 10), None),
    ],
)
def test_period_start(period: Period, latest: date, expected: date | None) -> None:
    assert period_start(period, latest) == expected


def _point(on: date, twr: str, gains: str) -> PerformancePoint:
    return PerformancePoint(
        as_of=on,
        holdings_value=Decimal(0),
        cost_basis=Decimal(0),
        gains_value=Decimal(gains),
        twr=Decimal(twr),
    )


def test_period_returns_with_fewer_than_two_points_are_zero() -> None:
    zero = PeriodReturn(perf=Decimal(0), gain=Decimal(0))

    assert calculate_period_returns([]) == {period: zero for period in Period}
    assert calculate_period_returns([_point(D1, "1.5", "10")]) == {period: zero for period in Period}


def test_period_returns() -> None:
    points = [
        _point(date(2024, 1, 1), "1", "0"),
        _point(date(2024, 6, 1), "1.1", "100"),
        _point(date(2024, 12, 25), "1.21", "210"),
        _point(date(2025, 1, 2), "1.331", "331"),
    ]

    returns = calculate_period_returns(points)

    assert returns[Period.WEEK] == PeriodReturn(perf=Decimal(0), gain=Decimal(0))
    assert returns[Period.YTD] == PeriodReturn(perf=Decimal(0), gain=Decimal(0))
    assert returns[Period.MONTH] == PeriodReturn(perf=Decimal("0.1"), gain=Decimal(121))
    assert returns[Period.QUARTER] == PeriodReturn(perf=Decimal("0.1"), gain=Decimal(121))
    assert returns[Period.YEAR] == PeriodReturn(perf=Decimal("0.21"), gain=Decimal(231))
    assert returns[Period.FIVE_YEARS] == PeriodReturn(perf=Decimal("0.331"), gain=Decimal(331))
    assert returns[Period.ALL] == PeriodReturn(perf=Decimal("0.331"), gain=Decimal(331))


def test_overselling_raises(engine: PerformanceEngine) -> None:
    history = make_history(AAPL, {D1: "100", D2: "100", D3: "100"})

    with pytest.raises(OversellError) as exc_info:
        engine.build_series([_buy(10, 100, D1), _sell(15, 100, D2)], _histories(history))

    assert exc_info.value.quantity_requested == Decimal(15)
    assert exc_info.value.quantity_available == Decimal(10)


def test_flows_wait_for_first_priced_day(engine: PerformanceEngine) -> None:
    histories = _histories(
        make_history(AAPL, {D1: "100", D2: "100", D3: "110"}),
        make_history(MSFT, {D3: "100"}),
    )

    points = engine.build_series([_buy(10, 100, D1), _buy(10, 100, D2, ticker=MSFT)], histories)

    assert [point.twr for point in points] == [Decimal(1), Decimal(1), Decimal("1.1")]
    assert [point.holdings_value for point in points] == [Decimal(1000), Decimal(1000), Decimal(2100)]
    assert [point.cost_basis for point in points] == [Decimal(1000), Decimal(1000), Decimal(2000)]


def test_transfers_are_external_flows(engine: PerformanceEngine) -> None:
    points = engine.build_series(
        [
            make_txn(
                TransactionType.BUY_TRANSFER, portfolio_id=US_PORTFOLIO, ticker=AAPL, qty=10, price=100, trade_date=D1
            ),
            _sell(5, 110, D3, txn_type=TransactionType.SELL_TRANSFER),
        ],
        _histories(make_history(AAPL, {D1: "100", D2: "110", D3: "110"})),
    )

    assert [point.twr for point in points] == [Decimal(1), Decimal("1.1"), Decimal("1.1")]
    assert points[-1].holdings_value == Decimal(550)
    # A transfer realizes nothing; only the open half's gain remains.
    assert points[-1].gains_value == Decimal(50)


def test_dividend_event_pays_per_held_share(engine: PerformanceEngine) -> None:
    points = engine.build_series(
        [
            _buy(10, 100, D1),
            make_txn(TransactionType.DIV_EVENT, portfolio_id=US_PORTFOLIO, ticker=AAPL, price=2, trade_date=D2),
        ],
        _histories(make_history(AAPL, {D1: "100", D2: "100"})),
    )

    assert points[-1].twr == Decimal("1.02")
    assert points[-1].gains_value == Decimal(20)


def test_cash_dividend_quantity_buys_no_shares(engine: PerformanceEngine) -> None:
    points = engine.build_series(
        [
            _buy(10, 100, D1),
            make_txn(TransactionType.DIVIDEND, portfolio_id=US_PORTFOLIO, ticker=AAPL, qty=2, price=5, trade_date=D2),
        ],
        _histories(make_history(AAPL, {D1: "100", D2: "100", D3: "110"})),
    )

    assert points[-1].holdings_value == Decimal(1100)
    assert points[-1].twr == Decimal("1.01") * Decimal("1.1")


def test_vested_shares_enter_on_vest_date(engine: PerformanceEngine) -> None:
    grant = make_txn(
        TransactionType.BUY,
        portfolio_id=RSU_PORTFOLIO,
        ticker=MSFT,
        qty=10,
        price=50,
        trade_date=D1,
        vest_date=D3,
    )
    histories = _histories(
        make_history(AAPL, {D1: "100", D2: "100", D3: "100"}),
        make_history(MSFT, {D1: "50", D2: "50", D3: "50"}),
    )

    points = engine.build_series([grant, _buy(10, 100, D1)], histories)

    assert [point.holdings_value for point in points] == [Decimal(1000), Decimal(1000), Decimal(1500)]
    assert all(point.twr == Decimal(1) for point in points)
