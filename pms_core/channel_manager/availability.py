"""
Availability Calculator
=======================

A room is occupied on date ``d`` by a booking when
``check_in.date() <= d < check_out.date()``; the checkout date is free.

Two blocking sets exist on purpose: manual availability checks only treat
confirmed bookings as blocking, while the channel push also blocks pending
bookings so that an unconfirmed stay is never sold twice.
"""

from datetime import date, datetime, time, timedelta
from typing import Dict, FrozenSet, Iterable

from sqlalchemy import and_, select

from ..models import Booking, BookingStatus

MANUAL_BLOCKING_STATUSES: FrozenSet[BookingStatus] = frozenset({BookingStatus.CONFIRMED})
SYNC_BLOCKING_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {BookingStatus.CONFIRMED, BookingStatus.PENDING}
)


def occupies(check_in: datetime, check_out: datetime, day: date) -> bool:
    return check_in.date() <= day < check_out.date()


async def _blocking_bookings(session, room_id: str, start: date, end: date, statuses: Iterable):
    # Any booking touching [start, end) at datetime granularity; the exact
    # per-date occupancy is decided by ``occupies``.
    result = await session.execute(
        select(Booking.check_in, Booking.check_out).where(
            and_(
                Booking.room_id == room_id,
                Booking.status.in_(list(statuses)),
                Booking.check_in < datetime.combine(end, time.min),
                Booking.check_out >= datetime.combine(start, time.min),
            )
        )
    )
    return result.all()


async def availability_calendar(
    session,
    room_id: str,
    start: date,
    end: date,
    statuses: Iterable[BookingStatus] = SYNC_BLOCKING_STATUSES
) -> Dict[date, int]:
    """Inventory (1 free, 0 occupied) for each date in [start, end)."""
    bookings = await _blocking_bookings(session, room_id, start, end, statuses)

    calendar = {}
    day = start
    while day < end:
        taken = any(occupies(ci, co, day) for ci, co in bookings)
        calendar[day] = 0 if taken else 1
        day += timedelta(days=1)
    return calendar


async def is_available(session, room_id: str, day: date) -> bool:
    """Manual availability: only confirmed bookings block."""
    calendar = await availability_calendar(
        session, room_id, day, day + timedelta(days=1), MANUAL_BLOCKING_STATUSES
    )
    return calendar[day] == 1


async def is_available_for_sync(session, room_id: str, day: date) -> bool:
    """Channel availability: confirmed and pending bookings block."""
    calendar = await availability_calendar(
        session, room_id, day, day + timedelta(days=1), SYNC_BLOCKING_STATUSES
    )
    return calendar[day] == 1
