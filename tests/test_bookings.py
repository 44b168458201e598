from datetime import date

import pytest

from pms_core.bookings import cancel_booking, update_booking
from pms_core.channel_manager.sync_state import RELEASED_ROOMS_KEY
from pms_core.errors import ConflictError, NotFoundError, ValidationError
from pms_core.models import BookingStatus

from .factories import add_booking, add_customer, add_room, at, reload


async def make_booking(session):
    room = await add_room(session)
    guest = await add_customer(session)
    booking = await add_booking(session, room, guest, date(2030, 1, 15), date(2030, 1, 18))
    await session.commit()
    return booking


async def test_update_bumps_version(session):
    booking = await make_booking(session)
    assert booking.version == 1

    updated = await update_booking(session, booking.id, 1, {"total_guests": 3})
    await session.commit()

    assert updated.version == 2
    assert updated.total_guests == 3
    assert updated.needs_channel_sync is False


async def test_stale_version_is_rejected(session_factory, session):
    booking = await make_booking(session)

    async with session_factory() as other:
        await update_booking(other, booking.id, 1, {"request": "Crib please"})
        await other.commit()

    with pytest.raises(ConflictError) as exc_info:
        await update_booking(session, booking.id, 1, {"total_guests": 3})
    assert exc_info.value.data == {"current_version": 2}

    booking = await reload(session, booking)
    assert booking.total_guests == 1
    assert booking.request == "Crib please"


async def test_date_change_marks_inventory_dirty(session):
    booking = await make_booking(session)

    updated = await update_booking(session, booking.id, 1, {"check_out": at(date(2030, 1, 20))})

    assert updated.needs_channel_sync is True


async def test_empty_stay_is_rejected(session):
    booking = await make_booking(session)

    with pytest.raises(ValidationError):
        await update_booking(session, booking.id, 1, {"check_out": at(date(2030, 1, 15))})


async def test_unknown_fields_are_rejected(session):
    booking = await make_booking(session)

    with pytest.raises(ValidationError):
        await update_booking(session, booking.id, 1, {"channel_booking_id": "B-1"})


async def test_missing_booking(session):
    with pytest.raises(NotFoundError):
        await update_booking(session, "missing", 1, {"total_guests": 2})


async def test_cancel_frees_inventory_on_next_pass(session):
    booking = await make_booking(session)

    cancelled = await cancel_booking(session, booking.id, 1)
    await session.commit()

    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.needs_channel_sync is True
    assert cancelled.version == 2


async def test_room_change_remembers_released_room(session):
    booking = await make_booking(session)
    old_room_id = booking.room_id
    new_room = await add_room(session, name="Suite")
    await session.commit()

    updated = await update_booking(session, booking.id, 1, {"room_id": new_room.id})

    assert updated.needs_channel_sync is True
    assert updated.booking_metadata[RELEASED_ROOMS_KEY] == [old_room_id]
