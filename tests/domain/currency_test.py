from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError

from domain.currency import (
    Currency,
    ExchangeRateSnapshot,
    Money,
    RatePeriod,
    RateUnavailableError,
    UnknownCurrencyError,
    convert_currency,
    normalize_currency,
)
from tests.helpers.builders import make_snapshot


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("usd", Currency.USD),
        ("$", Currency.USD),
        ("דולר", Currency.USD),
        ("NIS", Currency.ILS),
        ('ש"ח', Currency.ILS),
        ("agorot", Currency.ILA),
        ("אג", Currency.ILA),
        (" Euro ", Currency.EUR),
        ("LIRA", Currency.GBP),
        (Currency.GBP, Currency.GBP),
    ],
)
def test_normalize_currency_accepts_aliases(raw: str, expected: Currency) -> None:
    assert normalize_currency(raw) == expected


@pytest.mark.parametrize("raw", ["", "JPY", "dollars"])
def test_normalize_currency_rejects_unknown_codes(raw: str) -> None:
    with pytest.raises(UnknownCurrencyError) as exc_info:
        normalize_currency(raw)

    assert exc_info.value.code == raw


def test_convert_same_currency_is_identity() -> None:
    snapshot = ExchangeRateSnapshot(current={})
    amount = Decimal("123.456")

    for currency in Currency:
        assert convert_currency(amount, currency, currency, snapshot) == amount


def test_agorot_shekel_conversion_ignores_snapshot() -> None:
    empty = ExchangeRateSnapshot(current={})

    assert convert_currency(Decimal(250), Currency.ILA, Currency.ILS, empty) == Decimal("2.5")
    assert convert_currency(Decimal("2.5"), Currency.ILS, Currency.ILA, empty) == Decimal(250)


def test_convert_pivots_through_usd() -> None:
    snapshot = make_snapshot()

    assert convert_currency(Decimal(100), Currency.USD, Currency.ILS, snapshot) == Decimal(350)
    assert convert_currency(Decimal(350), Currency.ILS, Currency.USD, snapshot) == Decimal(100)
    # 90 EUR -> 100 USD -> 80 GBP
    assert convert_currency(Decimal(90), Currency.EUR, Currency.GBP, snapshot) == Decimal(80)


def test_convert_agorot_to_usd_uses_shekel_rate() -> None:
    snapshot = make_snapshot()

    assert convert_currency(Decimal(35000), Currency.ILA, Currency.USD, snapshot) == Decimal(100)
    assert convert_currency(Decimal(1), Currency.USD, Currency.ILA, snapshot) == Decimal(350)


def test_round_trip_within_tolerance() -> None:
    snapshot = make_snapshot(ils=Decimal("3.6712"), eur=Decimal("0.9231"))
    amount = Decimal("1234.56")

    there = convert_currency(amount, Currency.EUR, Currency.ILS, snapshot)
    back = convert_currency(there, Currency.ILS, Currency.EUR, snapshot)

    assert abs(back - amount) < Decimal("1e-20")


def test_missing_rate_raises_instead_of_zero() -> None:
    snapshot = ExchangeRateSnapshot(current={Currency.ILS: Decimal("3.5")})

    with pytest.raises(RateUnavailableError) as exc_info:
        convert_currency(Decimal(10), Currency.EUR, Currency.ILS, snapshot)

    assert exc_info.value.currency == Currency.EUR


def test_missing_period_never_falls_back_to_current() -> None:
    snapshot = make_snapshot()

    with pytest.raises(RateUnavailableError) as exc_info:
        convert_currency(Decimal(10), Currency.USD, Currency.ILS, snapshot, period=RatePeriod.AGO_1M)

    assert exc_info.value.period == RatePeriod.AGO_1M


def test_period_rates_are_used_when_present() -> None:
    snapshot = ExchangeRateSnapshot(
        current={Currency.ILS: Decimal("3.5")},
        periods={RatePeriod.AGO_1M: {Currency.ILS: Decimal("3.7")}},
    )

    assert convert_currency(Decimal(10), Currency.USD, Currency.ILS, snapshot, period=RatePeriod.AGO_1M) == Decimal(37)


def test_dated_rates_pick_latest_day_on_or_before() -> None:
    snapshot = ExchangeRateSnapshot(
        current={Currency.ILS: Decimal("4.0")},
        dated={
            date(2024, 1, 1): {Currency.ILS: Decimal("3.5")},
            date(2024, 2, 1): {Currency.ILS: Decimal("3.6")},
        },
    )

    assert snapshot.usd_rate(Currency.ILS, on=date(2024, 1, 15)) == Decimal("3.5")
    assert snapshot.usd_rate(Currency.ILS, on=date(2024, 3, 1)) == Decimal("3.6")
    # Before any dated entry the current table applies.
    assert snapshot.usd_rate(Currency.ILS, on=date(2023, 12, 1)) == Decimal("4.0")


def test_snapshot_normalizes_keys_and_rejects_bad_rates() -> None:
    snapshot = ExchangeRateSnapshot.model_validate({"current": {"NIS": "3.5", "$": "1"}})
    assert snapshot.current[Currency.ILS] == Decimal("3.5")

    with pytest.raises(ValidationError):
        ExchangeRateSnapshot(current={Currency.ILS: Decimal("NaN")})
    with pytest.raises(ValidationError):
        ExchangeRateSnapshot(current={Currency.ILS: Decimal(0)})
    with pytest.raises(ValidationError):
        ExchangeRateSnapshot(current={Currency.ILA: Decimal(350)})


def test_money_conversion_and_addition() -> None:
    snapshot = make_snapshot()
    price = Money(amount=Decimal(10), currency="$")

    in_ils = price.to(Currency.ILS, snapshot)

    assert in_ils == Money(amount=Decimal(35), currency=Currency.ILS)
    assert (in_ils + Money.zero(Currency.ILS)).amount == Decimal(35)
    with pytest.raises(ValueError):
        in_ils + price
