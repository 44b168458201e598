"""
Booking Writes
==============

Local booking updates guarded by optimistic locking. The caller passes the
version it read; a mismatch means someone else changed the booking first.
"""

from typing import Any, Dict

import structlog
from sqlalchemy.orm.exc import StaleDataError

from .channel_manager.sync_state import RELEASED_ROOMS_KEY, mark_dirty
from .errors import ConflictError, NotFoundError, ValidationError
from .models import Booking, BookingStatus

logger = structlog.get_logger(__name__)

UPDATABLE_FIELDS = frozenset({
    "room_id",
    "check_in",
    "check_out",
    "total_guests",
    "status",
    "total_amount",
    "request",
})

# Changes to these alter the room's channel inventory
INVENTORY_FIELDS = frozenset({"room_id", "check_in", "check_out", "status"})


async def update_booking(
    session,
    booking_id: str,
    expected_version: int,
    changes: Dict[str, Any]
) -> Booking:
    """
    Apply ``changes`` if the booking is still at ``expected_version``.

    Raises:
        NotFoundError: If the booking does not exist
        ConflictError: If the booking was modified concurrently
        ValidationError: On unknown fields or an empty stay
    """
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

    booking = await session.get(Booking, booking_id, populate_existing=True)
    if booking is None:
        raise NotFoundError("Booking")

    if booking.version != expected_version:
        raise ConflictError(
            "Booking was modified by another request",
            data={"current_version": booking.version}
        )

    check_in = changes.get("check_in", booking.check_in)
    check_out = changes.get("check_out", booking.check_out)
    if check_out.date() <= check_in.date():
        raise ValidationError("check_out must be after check_in")

    new_room_id = changes.get("room_id", booking.room_id)
    if new_room_id != booking.room_id:
        metadata = dict(booking.booking_metadata or {})
        released = set(metadata.get(RELEASED_ROOMS_KEY, [])) | {booking.room_id}
        released.discard(new_room_id)
        metadata[RELEASED_ROOMS_KEY] = sorted(released)
        booking.booking_metadata = metadata

    for field, value in changes.items():
        setattr(booking, field, value)

    if INVENTORY_FIELDS & set(changes):
        mark_dirty(booking)

    try:
        await session.flush()
    except StaleDataError:
        await session.rollback()
        raise ConflictError("Booking was modified by another request")

    logger.info(
        "Booking updated",
        booking_id=booking.id,
        version=booking.version,
        fields=sorted(changes),
    )
    return booking


async def cancel_booking(session, booking_id: str, expected_version: int) -> Booking:
    """Bookings are never deleted; cancelling frees the dates on the channel."""
    return await update_booking(
        session,
        booking_id,
        expected_version,
        {"status": BookingStatus.CANCELLED},
    )
