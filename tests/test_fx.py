from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from finance_tracker.errors import InvalidCurrency, UndefinedConversion
from finance_tracker.models import FxRate
from finance_tracker.services.fx import (
    ConversionRoute,
    FxConverter,
    RateObservation,
    RateTable,
    conversion_route,
    convert,
    latest_rates,
    record_rate,
    refresh_rates,
)

T0 = datetime(2024, 1, 8, 12, 0, tzinfo=timezone.utc)


def make_converter() -> FxConverter:
    table = RateTable(
        [
            RateObservation("USD", Decimal("1.08"), T0),
            RateObservation("GBP", Decimal("0.86"), T0),
            RateObservation("USD", Decimal("1.10"), T0 + timedelta(days=7)),
        ]
    )
    return FxConverter(table, pivot="EUR")


def test_conversion_route_is_a_closed_case_analysis() -> None:
    assert conversion_route("USD", "USD", "EUR") is ConversionRoute.IDENTITY
    assert conversion_route("EUR", "USD", "EUR") is ConversionRoute.FROM_PIVOT
    assert conversion_route("USD", "EUR", "EUR") is ConversionRoute.TO_PIVOT
    assert conversion_route("USD", "GBP", "EUR") is ConversionRoute.BRIDGE


@pytest.mark.parametrize("code", ["EUR", "USD", "XAU", "JPY"])
def test_identity_conversion_needs_no_rate(code: str) -> None:
    converter = FxConverter(RateTable(), pivot="EUR")
    assert converter.convert(Decimal("123.45"), code, code, T0) == Decimal("123.45")


def test_from_pivot_multiplies_by_latest_rate() -> None:
    converter = make_converter()
    assert converter.convert(Decimal("100"), "EUR", "USD", T0) == Decimal("108.00")
    assert converter.convert(Decimal("100"), "EUR", "USD", T0 + timedelta(days=3)) == Decimal("108.00")
    assert converter.convert(Decimal("100"), "EUR", "USD", T0 + timedelta(days=8)) == Decimal("110.00")


def test_to_pivot_divides_by_rate() -> None:
    converter = make_converter()
    assert converter.convert(Decimal("108"), "USD", "EUR", T0) == pytest.approx(Decimal("100"))


def test_round_trip_is_stable() -> None:
    converter = make_converter()
    amount = Decimal("987.654321")
    back = converter.convert(converter.convert(amount, "GBP", "EUR", T0), "EUR", "GBP", T0)
    assert back == pytest.approx(amount)


def test_bridge_matches_two_step_conversion() -> None:
    converter = make_converter()
    amount = Decimal("250")
    direct = converter.convert(amount, "USD", "GBP", T0)
    via_pivot = converter.convert(converter.convert(amount, "USD", "EUR", T0), "EUR", "GBP", T0)
    assert direct == pytest.approx(via_pivot)
    assert direct == pytest.approx(Decimal("250") / Decimal("1.08") * Decimal("0.86"))


def test_missing_rate_before_first_observation_is_undefined() -> None:
    converter = make_converter()
    with pytest.raises(UndefinedConversion):
        converter.convert(Decimal("1"), "EUR", "USD", T0 - timedelta(seconds=1))


def test_bridge_with_one_missing_leg_is_undefined() -> None:
    converter = make_converter()
    with pytest.raises(UndefinedConversion) as excinfo:
        converter.convert(Decimal("1"), "USD", "CHF", T0)
    assert excinfo.value.missing == "EUR->CHF"


def test_same_timestamp_observations_resolve_to_last_inserted() -> None:
    table = RateTable()
    table.add("USD", Decimal("1.05"), T0)
    table.add("USD", Decimal("1.06"), T0)
    assert table.latest_at_or_before("USD", T0) == Decimal("1.06")


@pytest.mark.parametrize("code", ["", "US", "EURO", "12A", None])
def test_malformed_codes_are_rejected(code) -> None:
    with pytest.raises(InvalidCurrency):
        make_converter().convert(Decimal("1"), code, "USD", T0)


def test_convert_uses_stored_rates_at_or_before_as_of(db_session_factory) -> None:
    with db_session_factory() as db:
        record_rate(db, "USD", Decimal("1.08"), observed_at=T0)
        record_rate(db, "USD", Decimal("1.20"), observed_at=T0 + timedelta(days=30))
        db.commit()

        assert convert(db, Decimal("10"), "EUR", "USD", as_of=T0 + timedelta(days=1)) == Decimal("10.80")
        assert convert(db, Decimal("10"), "eur", "usd") == Decimal("12.00")
        assert convert(db, Decimal("10"), "EUR", "USD", as_of="2024-01-08") == Decimal("10.80")
        with pytest.raises(UndefinedConversion):
            convert(db, Decimal("10"), "EUR", "USD", as_of="2024-01-07")


def test_refresh_rates_appends_and_reports_skipped(db_session_factory, rate_provider) -> None:
    rate_provider.rates = {"USD": 1.09, "GBP": float("nan"), "XAU": 0.00045}
    with db_session_factory() as db:
        record_rate(db, "USD", Decimal("1.01"), observed_at=T0)
        result = refresh_rates(db, rate_provider, quotes=["usd", "gbp", "pln", "xau"], observed_at=T0 + timedelta(days=1))
        db.commit()

        assert result.inserted == ["USD", "XAU"]
        assert sorted(result.skipped) == ["GBP", "PLN"]
        # Older observations survive a refresh.
        count = db.scalar(select(func.count()).select_from(FxRate).where(FxRate.quote == "USD"))
        assert count == 2
        assert latest_rates(db, ["USD"])["USD"].rate == pytest.approx(Decimal("1.09"))


def test_refresh_rates_outage_skips_everything(db_session_factory, rate_provider) -> None:
    rate_provider.unavailable = True
    with db_session_factory() as db:
        result = refresh_rates(db, rate_provider, quotes=["USD", "GBP"])
        assert result.inserted == []
        assert result.skipped == ["GBP", "USD"]
        assert db.scalar(select(func.count()).select_from(FxRate)) == 0
