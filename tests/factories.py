"""Row builders and fakes shared by the test modules."""

from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pms_core.channel_manager.platform_adapters.base_adapter import (
    ChannelAdapter,
    ChannelAdapterError,
    ChannelType,
    RoomDateUpdate,
)
from pms_core.models import (
    Booking,
    BookingRestriction,
    BookingStatus,
    Customer,
    RateDateOverride,
    RatePolicy,
    Room,
    RoomChannelMapping,
    RoomRate,
    RoomScope,
)
from pms_core.notifications import Notifier

NOW = datetime(2030, 1, 10, 12, 0)
TODAY = NOW.date()


def at(day: date) -> datetime:
    return datetime.combine(day, time.min)


async def reload(session, obj):
    """Fresh copy of a row, bypassing the identity map."""
    return await session.get(type(obj), obj.id, populate_existing=True)


async def add_room(session, price="100.00", name="Double Room") -> Room:
    room = Room(name=name, price=Decimal(price))
    session.add(room)
    await session.flush()
    return room


async def add_mapping(session, room: Room, remote_room_id: str = "602724", dirty: bool = False, **kw) -> RoomChannelMapping:
    mapping = RoomChannelMapping(
        local_room_id=room.id,
        remote_room_id=remote_room_id,
        needs_channel_sync=dirty,
        channel_sync_fail_count=0,
        **kw
    )
    session.add(mapping)
    await session.flush()
    return mapping


async def add_customer(session, email: str = "anna@example.com", **kw) -> Customer:
    customer = Customer(email=email, **kw)
    session.add(customer)
    await session.flush()
    return customer


async def add_booking(
    session,
    room: Room,
    customer: Customer,
    check_in: date,
    check_out: date,
    status: BookingStatus = BookingStatus.CONFIRMED,
    dirty: bool = False,
    **kw
) -> Booking:
    booking = Booking(
        room_id=room.id,
        customer_id=customer.id,
        check_in=at(check_in),
        check_out=at(check_out),
        status=status,
        total_amount=Decimal("200.00"),
        needs_channel_sync=dirty,
        channel_sync_fail_count=0,
        booking_metadata={},
        **kw
    )
    session.add(booking)
    await session.flush()
    return booking


async def add_policy(
    session,
    room: Room,
    base_price: Optional[str],
    adjustment: str = "0",
    is_active: bool = True,
    dirty: bool = False
) -> RatePolicy:
    policy = RatePolicy(
        name="Standard",
        base_price=Decimal(base_price) if base_price is not None else None,
        is_active=is_active,
        needs_channel_sync=dirty,
        channel_sync_fail_count=0,
    )
    session.add(policy)
    await session.flush()
    session.add(RoomRate(room_id=room.id, rate_policy_id=policy.id, percentage_adjustment=Decimal(adjustment)))
    await session.flush()
    return policy


async def add_override(
    session,
    room: Room,
    day: date,
    price: str,
    updated_at: Optional[datetime] = None,
    is_active: bool = True,
    dirty: bool = False
) -> RateDateOverride:
    override = RateDateOverride(
        room_id=room.id,
        stay_date=day,
        price=Decimal(price),
        is_active=is_active,
        needs_channel_sync=dirty,
        channel_sync_fail_count=0,
    )
    if updated_at is not None:
        override.updated_at = updated_at
    session.add(override)
    await session.flush()
    return override


async def add_restriction(session, type, start: date, end: date, dirty: bool = True, **kw) -> BookingRestriction:
    kw.setdefault("room_scope", RoomScope.ALL_ROOMS)
    kw.setdefault("days_of_week", [])
    kw.setdefault("room_ids", [])
    restriction = BookingRestriction(
        name=type.value,
        type=type,
        start_date=start,
        end_date=end,
        needs_channel_sync=dirty,
        channel_sync_fail_count=0,
        **kw
    )
    session.add(restriction)
    await session.flush()
    return restriction


def beds24_booking(**overrides) -> Dict[str, Any]:
    payload = {
        "bookId": "B-1001",
        "propId": "12345",
        "roomId": "602724",
        "arrival": "2030-01-15",
        "departure": "2030-01-18",
        "numAdult": 2,
        "numChild": 0,
        "guestFirstName": "Anna",
        "guestName": "Keller",
        "guestEmail": "anna@example.com",
        "guestPhone": "+49 30 1234567",
        "guestCountry": "DE",
        "price": "450.00",
        "status": "1",
        "guestComments": "Late arrival",
    }
    payload.update(overrides)
    return payload


# =============================================================================
# FAKES
# =============================================================================

class FakeChannelAdapter(ChannelAdapter):
    """Records pushes; fails on demand."""

    channel_type = ChannelType.BEDS24
    base_url = "http://beds24.test"

    def __init__(self):
        super().__init__()
        self.pushes: List = []
        self.attempts: List[str] = []
        self.bookings: List[Dict[str, Any]] = []
        self.room_bookings: Dict[str, List[Dict[str, Any]]] = {}
        self.failing_rooms = set()
        self.fail_get_bookings = False
        self.connected = True

    async def test_connection(self) -> bool:
        return self.connected

    async def get_rooms(self):
        return []

    async def get_property_info(self):
        return {}

    async def update_property(self, changes):
        return changes

    async def push_room_dates(self, remote_room_id, updates: Dict[date, RoomDateUpdate]) -> None:
        self.attempts.append(remote_room_id)
        if remote_room_id in self.failing_rooms:
            raise ChannelAdapterError(f"Beds24 error: room {remote_room_id} rejected", remote_status=500)
        self.pushes.append((remote_room_id, dict(updates)))

    async def get_bookings(self, date_start=None, date_end=None):
        if self.fail_get_bookings:
            raise ChannelAdapterError("Request timed out: /json/getBookings")
        return list(self.bookings)

    async def get_room_bookings(self, remote_room_id):
        return list(self.room_bookings.get(remote_room_id, []))

    def pushed_to(self, remote_room_id) -> Dict[date, RoomDateUpdate]:
        merged: Dict[date, RoomDateUpdate] = {}
        for room_id, updates in self.pushes:
            if room_id != remote_room_id:
                continue
            for day, update in updates.items():
                merged[day] = merged[day].merge(update) if day in merged else update
        return merged

    def push_count(self, remote_room_id) -> int:
        return sum(1 for room_id, _ in self.pushes if room_id == remote_room_id)


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.invitations = []
        self.check_in_invitations = []
        self.alerts = []

    async def send_check_in_invitation(self, email, guest_name, check_in_link, booking_ids,
                                       days_until_check_in, is_manual=False):
        if self.fail:
            raise RuntimeError("SMTP unavailable")
        self.check_in_invitations.append({
            "email": email,
            "name": guest_name,
            "link": check_in_link,
            "booking_ids": list(booking_ids),
            "days": days_until_check_in,
            "manual": is_manual,
        })

    async def send_guest_invitation(self, email, inviter_name, check_in_link, booking_id):
        if self.fail:
            raise RuntimeError("SMTP unavailable")
        self.invitations.append({
            "email": email,
            "inviter": inviter_name,
            "link": check_in_link,
            "booking_id": booking_id,
        })

    async def send_double_booking_alert(self, booking_id, conflicting_booking_ids, details):
        if self.fail:
            raise RuntimeError("SMTP unavailable")
        self.alerts.append({"booking_id": booking_id, "conflicts": list(conflicting_booking_ids)})
