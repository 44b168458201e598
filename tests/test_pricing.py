from datetime import date, datetime, timedelta
from decimal import Decimal

from pms_core.channel_manager.pricing import (
    RateResolver,
    apply_markup,
    pick_nightly_price,
    policy_price,
    round_price,
)

from .factories import add_mapping, add_override, add_policy, add_room

DAY = date(2030, 1, 15)


class TestPriceArithmetic:
    def test_round_half_up(self):
        assert round_price(Decimal("10.005")) == Decimal("10.01")
        assert round_price(Decimal("10.004")) == Decimal("10.00")

    def test_markup_applied_then_rounded(self):
        assert apply_markup(Decimal("100"), Decimal("15")) == Decimal("115.00")
        assert apply_markup(Decimal("99.99"), Decimal("12.5")) == Decimal("112.49")

    def test_no_markup_keeps_price(self):
        assert apply_markup(Decimal("80"), None) == Decimal("80.00")

    def test_negative_result_clamped_to_zero(self):
        assert apply_markup(Decimal("-5"), None) == Decimal("0.00")
        assert apply_markup(Decimal("50"), Decimal("-150")) == Decimal("0.00")

    def test_zero_price_is_valid(self):
        assert apply_markup(Decimal("0"), Decimal("10")) == Decimal("0.00")

    def test_policy_without_base_price_is_unusable(self):
        assert policy_price(None, Decimal("10")) is None
        assert policy_price(Decimal("0"), Decimal("10")) is None
        assert policy_price(Decimal("100"), Decimal("-10")) == Decimal("90")

    def test_override_beats_policies_and_legacy(self):
        price, source = pick_nightly_price(Decimal("70"), [Decimal("50")], Decimal("100"))
        assert (price, source) == (Decimal("70"), "override")

    def test_cheapest_policy_wins(self):
        price, source = pick_nightly_price(None, [Decimal("120"), None, Decimal("95")], Decimal("100"))
        assert (price, source) == (Decimal("95"), "rate_policy")

    def test_legacy_price_as_last_resort(self):
        price, source = pick_nightly_price(None, [None], Decimal("100"))
        assert (price, source) == (Decimal("100"), "legacy")


class TestRateResolver:
    async def test_override_wins_over_policy(self, session):
        room = await add_room(session, price="100.00")
        await add_policy(session, room, "80.00")
        await add_override(session, room, DAY, "150.00")

        price = await RateResolver(session).resolve_price(room, DAY)

        assert price == Decimal("150.00")

    async def test_latest_override_wins(self, session):
        room = await add_room(session)
        await add_override(session, room, DAY, "150.00", updated_at=datetime(2030, 1, 1, 9, 0))
        await add_override(session, room, DAY, "175.00", updated_at=datetime(2030, 1, 2, 9, 0))

        assert await RateResolver(session).resolve_price(room, DAY) == Decimal("175.00")

    async def test_inactive_override_ignored(self, session):
        room = await add_room(session, price="100.00")
        await add_override(session, room, DAY, "150.00", is_active=False)

        assert await RateResolver(session).resolve_price(room, DAY) == Decimal("100.00")

    async def test_minimum_over_active_policies_with_adjustment(self, session):
        room = await add_room(session, price="100.00")
        await add_policy(session, room, "100.00", adjustment="20")
        await add_policy(session, room, "110.00", adjustment="0")
        await add_policy(session, room, "50.00", is_active=False)

        assert await RateResolver(session).resolve_price(room, DAY) == Decimal("110.00")

    async def test_policy_without_base_price_falls_back_to_legacy(self, session):
        room = await add_room(session, price="99.00")
        await add_policy(session, room, None)

        assert await RateResolver(session).resolve_price(room, DAY) == Decimal("99.00")

    async def test_markup_applied_after_override(self, session):
        room = await add_room(session)
        mapping = await add_mapping(session, room, markup_percent=Decimal("10"))
        await add_override(session, room, DAY, "150.00")

        assert await RateResolver(session).resolve_price(room, DAY, mapping) == Decimal("165.00")

    async def test_range_matches_single_date_resolution(self, session):
        room = await add_room(session, price="100.00")
        await add_policy(session, room, "90.00")
        await add_override(session, room, DAY + timedelta(days=1), "130.00")
        resolver = RateResolver(session)

        prices = await resolver.resolve_prices(room, DAY, DAY + timedelta(days=3))

        assert list(prices) == [DAY, DAY + timedelta(days=1), DAY + timedelta(days=2)]
        for day, price in prices.items():
            assert price == await resolver.resolve_price(room, day)
        assert prices[DAY + timedelta(days=1)] == Decimal("130.00")
        assert prices[DAY] == Decimal("90.00")
