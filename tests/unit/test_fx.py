"""Tests for date-pinned FX conversion."""

from datetime import date
from decimal import Decimal

import pytest

from solesync.core.exceptions import NoFxRateError, UnsupportedCurrencyError
from solesync.core.models import Currency, EventType
from solesync.market.fx import FxService, normalize_currency, round_money


@pytest.fixture
def fx(store):
    return FxService(store)


@pytest.fixture
async def christmas_rate(fx):
    return await fx.upsert_rate(
        date(2024, 12, 25), gbp_per_usd=Decimal("0.80"), gbp_per_eur=Decimal("0.83")
    )


class TestHelpers:
    def test_normalize_currency(self):
        assert normalize_currency(" usd ") == Currency.USD

    @pytest.mark.parametrize("code", ["JPY", "", "US"])
    def test_unsupported(self, code):
        with pytest.raises(UnsupportedCurrencyError):
            normalize_currency(code)

    def test_round_money_half_up(self):
        assert round_money(Decimal("1.005")) == Decimal("1.01")
        assert round_money(Decimal("1.004")) == Decimal("1.00")

    def test_invalid_base_currency(self, store):
        with pytest.raises(UnsupportedCurrencyError):
            FxService(store, base_currency="CHF")


class TestRateFor:
    async def test_falls_back_to_earlier_date(self, fx, christmas_rate):
        rate = await fx.rate_for(date(2025, 1, 1), "USD", "EUR")
        assert rate == Decimal("0.80") / Decimal("0.83")

    async def test_exact_date_preferred(self, fx, christmas_rate):
        await fx.upsert_rate(
            date(2025, 1, 1), gbp_per_usd=Decimal("0.79"), gbp_per_eur=Decimal("0.84")
        )
        assert await fx.rate_for(date(2025, 1, 1), "USD", "GBP") == Decimal("0.79")
        assert await fx.rate_for(date(2024, 12, 31), "USD", "GBP") == Decimal("0.80")

    async def test_gbp_legs(self, fx, christmas_rate):
        assert await fx.rate_for(date(2025, 1, 1), "GBP", "USD") == Decimal(1) / Decimal("0.80")
        assert await fx.rate_for(date(2025, 1, 1), "EUR", "GBP") == Decimal("0.83")

    async def test_same_currency_needs_no_row(self, fx):
        assert await fx.rate_for(date(2025, 1, 1), "usd", "USD") == Decimal(1)

    async def test_no_rate_before_date(self, fx):
        await fx.upsert_rate(
            date(2025, 2, 1), gbp_per_usd=Decimal("0.79"), gbp_per_eur=Decimal("0.84")
        )
        with pytest.raises(NoFxRateError) as exc_info:
            await fx.rate_for(date(2025, 1, 1), "USD", "GBP")
        assert exc_info.value.context["as_of"] == "2025-01-01"

    async def test_unsupported_currency(self, fx, christmas_rate):
        with pytest.raises(UnsupportedCurrencyError):
            await fx.rate_for(date(2025, 1, 1), "USD", "JPY")

    async def test_convert_rounds(self, fx, christmas_rate):
        assert await fx.convert(Decimal("100"), date(2025, 1, 1), "USD", "GBP") == Decimal("80.00")
        assert await fx.convert(Decimal("100"), date(2025, 1, 1), "USD", "EUR") == Decimal("96.39")


class TestUpsert:
    async def test_missing_leg_carried_forward(self, fx, christmas_rate):
        rate = await fx.upsert_rate(date(2025, 1, 2), gbp_per_usd=Decimal("0.78"))
        assert rate.gbp_per_eur == Decimal("0.83")
        assert rate.gbp_per_usd == Decimal("0.78")

    async def test_missing_leg_without_prior(self, fx):
        with pytest.raises(NoFxRateError):
            await fx.upsert_rate(date(2025, 1, 2), gbp_per_usd=Decimal("0.78"))

    async def test_correction_overwrites(self, fx, christmas_rate):
        await fx.upsert_rate(date(2024, 12, 25), gbp_per_usd=Decimal("0.81"), source="ecb")
        [rate] = await fx.list_rates()
        assert rate.gbp_per_usd == Decimal("0.81")
        assert rate.gbp_per_eur == Decimal("0.83")
        assert rate.source == "ecb"

    async def test_list_newest_first(self, fx, christmas_rate):
        await fx.upsert_rate(date(2025, 1, 2), gbp_per_usd=Decimal("0.78"))
        assert [r.as_of for r in await fx.list_rates()] == [date(2025, 1, 2), date(2024, 12, 25)]


class TestEventSnapshots:
    async def test_pinned_value_survives_rate_correction(self, fx):
        day = date(2025, 1, 10)
        await fx.upsert_rate(day, gbp_per_usd=Decimal("0.79"), gbp_per_eur=Decimal("0.84"))
        first = await fx.snapshot_event("p-1", EventType.PURCHASE, day, Decimal("100"), "USD")
        assert first.base_amount == Decimal("79.00")
        assert first.base_currency == "GBP"
        assert first.fx_rate == Decimal("0.79")

        await fx.upsert_rate(day, gbp_per_usd=Decimal("0.85"))
        again = await fx.snapshot_event("p-1", EventType.PURCHASE, day, Decimal("100"), "USD")
        assert again.base_amount == Decimal("79.00")

        other = await fx.snapshot_event("s-1", EventType.SALE, day, Decimal("100"), "USD")
        assert other.base_amount == Decimal("85.00")

    async def test_event_type_is_part_of_identity(self, fx, christmas_rate):
        day = date(2025, 1, 1)
        await fx.snapshot_event("x", EventType.PURCHASE, day, Decimal("10"), "USD")
        sale = await fx.snapshot_event("x", EventType.SALE, day, Decimal("20"), "USD")
        assert sale.original_amount == Decimal("20")

    async def test_base_currency_override(self, fx, christmas_rate):
        snap = await fx.snapshot_event(
            "s-2", EventType.SALE, date(2025, 1, 1), Decimal("83"), "EUR", base_currency="USD"
        )
        assert snap.base_currency == "USD"
        assert snap.base_amount == Decimal("86.11")

    async def test_no_rate_pins_nothing(self, fx):
        with pytest.raises(NoFxRateError):
            await fx.snapshot_event(
                "p-9", EventType.PURCHASE, date(2025, 1, 1), Decimal("1"), "USD"
            )
        assert await fx.get_event_snapshot(EventType.PURCHASE, "p-9") is None
