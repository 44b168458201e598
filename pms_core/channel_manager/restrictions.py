"""
Booking Restriction Overlay
===========================

Folds the active booking restrictions of a room into the per-date values
pushed to Beds24: closure override code, minimum stay and maximum stay.
"""

from datetime import date
from typing import Iterable, List, Optional

from ..models import BookingRestriction, RestrictionType, RoomChannelMapping, RoomScope
from .platform_adapters.base_adapter import RoomDateUpdate

DEFAULT_MIN_STAY = 1
DEFAULT_MAX_STAY = 30

# Beds24 setRoomDates "o" codes
OVERRIDE_NONE = 0
OVERRIDE_CODES = {
    RestrictionType.CLOSE_TO_STAY: 1,
    RestrictionType.CLOSE_TO_ARRIVAL: 2,
    RestrictionType.CLOSE_TO_DEPARTURE: 3,
}
# Strongest closure first
_CLOSURE_PRECEDENCE = (
    RestrictionType.CLOSE_TO_STAY,
    RestrictionType.CLOSE_TO_ARRIVAL,
    RestrictionType.CLOSE_TO_DEPARTURE,
)


def js_weekday(day: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return day.isoweekday() % 7


def applies_on(restriction: BookingRestriction, day: date) -> bool:
    if not (restriction.start_date <= day <= restriction.end_date):
        return False
    days = restriction.days_of_week or []
    return not days or js_weekday(day) in days


def in_scope(restriction: BookingRestriction, room_id: str) -> bool:
    if restriction.room_scope == RoomScope.ALL_ROOMS:
        return True
    return room_id in (restriction.room_ids or [])


def overlay_for(
    restrictions: Iterable[BookingRestriction],
    mapping: RoomChannelMapping,
    day: date
) -> RoomDateUpdate:
    """
    Values for one room and date given all restrictions.

    Inactive restrictions are ignored, so a date whose only restriction was
    deactivated gets the neutral values (no closure, the mapping's stay limits).
    """
    active: List[BookingRestriction] = [
        r for r in restrictions
        if r.is_active and in_scope(r, mapping.local_room_id) and applies_on(r, day)
    ]
    kinds = {r.type for r in active}

    override = OVERRIDE_NONE
    for kind in _CLOSURE_PRECEDENCE:
        if kind in kinds:
            override = OVERRIDE_CODES[kind]
            break

    min_stay: Optional[int] = mapping.min_stay or DEFAULT_MIN_STAY
    max_stay: Optional[int] = mapping.max_stay or DEFAULT_MAX_STAY

    min_lengths = [r.min_length for r in active if r.type == RestrictionType.MIN_LENGTH and r.min_length]
    max_lengths = [r.max_length for r in active if r.type == RestrictionType.MAX_LENGTH and r.max_length]
    if min_lengths:
        min_stay = max(min_lengths)
    if max_lengths:
        max_stay = min(max_lengths)

    return RoomDateUpdate(min_stay=min_stay, max_stay=max_stay, override=override)
