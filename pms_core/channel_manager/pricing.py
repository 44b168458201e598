"""
Rate Resolver
=============

Determines the nightly price pushed to the channel for a (room, date).

Priority:
1. Active date override for exactly that room and date (latest update wins)
2. Cheapest active rate policy linked to the room, adjusted by the room's
   percentage
3. The room's legacy flat price

The channel markup of the mapping is applied afterwards and the result is
rounded half-up to two decimals.
"""

from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import and_, select

from ..models import RateDateOverride, RatePolicy, Room, RoomChannelMapping, RoomRate

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")


# =============================================================================
# PURE PRICE ARITHMETIC
# =============================================================================

def round_price(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def policy_price(base_price: Optional[Decimal], adjustment: Optional[Decimal]) -> Optional[Decimal]:
    """Price of one policy for a room, or None when the policy has no usable base."""
    if base_price is None or Decimal(base_price) <= ZERO:
        return None
    adjustment = Decimal(adjustment or 0)
    return Decimal(base_price) * (1 + adjustment / 100)


def pick_nightly_price(
    override_price: Optional[Decimal],
    policy_prices: Iterable[Optional[Decimal]],
    legacy_price: Optional[Decimal]
) -> Tuple[Decimal, str]:
    """Apply the source priority. Returns (price, source)."""
    if override_price is not None:
        return Decimal(override_price), "override"

    candidates = [p for p in policy_prices if p is not None]
    if candidates:
        return min(candidates), "rate_policy"

    return Decimal(legacy_price or 0), "legacy"


def apply_markup(price: Decimal, markup_percent: Optional[Decimal]) -> Decimal:
    """Apply channel markup, round, and clamp at zero."""
    if markup_percent:
        price = Decimal(price) * (1 + Decimal(markup_percent) / 100)
    price = round_price(price)
    return price if price > ZERO else round_price(ZERO)


# =============================================================================
# RESOLVER
# =============================================================================

class RateResolver:
    """Resolves channel prices against the database."""

    def __init__(self, session):
        self.session = session

    async def _policy_prices(self, room_id: str) -> List[Decimal]:
        result = await self.session.execute(
            select(RatePolicy.base_price, RoomRate.percentage_adjustment)
            .join(RoomRate, RoomRate.rate_policy_id == RatePolicy.id)
            .where(
                and_(
                    RoomRate.room_id == room_id,
                    RatePolicy.is_active.is_(True),
                )
            )
        )
        return [policy_price(base, adj) for base, adj in result.all()]

    async def _overrides(self, room_id: str, start: date, end: date) -> Dict[date, Decimal]:
        result = await self.session.execute(
            select(RateDateOverride)
            .where(
                and_(
                    RateDateOverride.room_id == room_id,
                    RateDateOverride.is_active.is_(True),
                    RateDateOverride.stay_date >= start,
                    RateDateOverride.stay_date < end,
                )
            )
            .order_by(RateDateOverride.updated_at.asc())
        )
        # Later rows overwrite earlier ones: latest update wins
        return {o.stay_date: o.price for o in result.scalars().all()}

    async def resolve_prices(
        self,
        room: Room,
        start: date,
        end: date,
        mapping: Optional[RoomChannelMapping] = None
    ) -> Dict[date, Decimal]:
        """Prices for each date in [start, end)."""
        overrides = await self._overrides(room.id, start, end)
        policy_prices = await self._policy_prices(room.id)
        markup = mapping.markup_percent if mapping is not None else None

        prices = {}
        degraded = False
        day = start
        while day < end:
            price, source = pick_nightly_price(overrides.get(day), policy_prices, room.price)
            degraded = degraded or source == "legacy"
            prices[day] = apply_markup(price, markup)
            day += timedelta(days=1)

        if degraded:
            logger.warning(
                "No active rate policy, using legacy room price",
                room_id=room.id,
                legacy_price=str(room.price),
            )
        return prices

    async def resolve_price(
        self,
        room: Room,
        day: date,
        mapping: Optional[RoomChannelMapping] = None
    ) -> Decimal:
        prices = await self.resolve_prices(room, day, day + timedelta(days=1), mapping)
        return prices[day]
