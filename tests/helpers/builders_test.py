from datetime import date
from decimal import Decimal

from domain.currency import Currency
from domain.ledger import TransactionType
from tests.constants import AAPL, US_PORTFOLIO
from tests.helpers.builders import DateGenerator, make_history, make_snapshot, make_txn


def test_date_generator_advances_from_start() -> None:
    gen = DateGenerator(start=date(2024, 3, 1))

    assert gen() == date(2024, 3, 1)
    assert gen() == date(2024, 3, 2)
    assert gen(days=7) == date(2024, 3, 9)

    gen.reset()
    assert gen() == date(2024, 3, 1)


def test_make_txn_uses_shared_generator_by_default() -> None:
    first = make_txn(TransactionType.BUY, portfolio_id=US_PORTFOLIO, ticker=AAPL, qty=1, price=10)
    second = make_txn(TransactionType.BUY, portfolio_id=US_PORTFOLIO, ticker=AAPL, qty=1, price=10)

    assert first.trade_date < second.trade_date


def test_default_generator_is_reset_between_tests() -> None:
    txn = make_txn(TransactionType.BUY, portfolio_id=US_PORTFOLIO, ticker=AAPL, qty=1, price=10)

    assert txn.trade_date == date(2024, 1, 1)


def test_make_snapshot_overrides_rates() -> None:
    snapshot = make_snapshot(ils=Decimal("4.0"))

    assert snapshot.current[Currency.ILS] == Decimal("4.0")
    assert snapshot.current[Currency.USD] == Decimal(1)


def test_make_history_sorts_points() -> None:
    history = make_history(AAPL, {date(2024, 1, 3): "3", date(2024, 1, 1): "1"})

    assert [point.on for point in history.points] == [date(2024, 1, 1), date(2024, 1, 3)]
