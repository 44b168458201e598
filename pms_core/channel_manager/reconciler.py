"""
Inbound Booking Reconciler
==========================

Applies bookings reported by Beds24 to the local database.

- A known channel booking id updates the existing booking in place.
- A new booking that overlaps a confirmed or pending local booking of the
  same room is still stored (the guest has paid the channel) but as PENDING,
  flagged in its metadata, and an admin alert is raised.
- After the write is committed the inventory of every room whose occupancy
  changed is pushed back to the channel. That push is best-effort; a failure
  leaves the room mapping dirty for the next sync pass.
- A flagged double booking stays PENDING on later deliveries unless the
  channel cancels it.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable, List, Optional, Set

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError

from ..config import settings
from ..errors import NotFoundError, PmsError
from ..models import Booking, BookingStatus, Customer, RoomChannelMapping, utcnow
from ..notifications import LoggingNotifier, Notifier, best_effort
from .availability import SYNC_BLOCKING_STATUSES, availability_calendar
from .mappings import get_room_mapping_by_local_id, get_room_mapping_by_remote_id
from .platform_adapters.base_adapter import ChannelAdapter, RoomDateUpdate
from .schemas import BookingNotification, parse_channel_message
from .sync_state import mark_dirty

logger = structlog.get_logger(__name__)

DOUBLE_BOOKING_ALERT = "DOUBLE BOOKING DETECTED - Requires immediate attention"


async def push_room_inventory(
    session,
    adapter: ChannelAdapter,
    mapping: RoomChannelMapping,
    start: date,
    days: int
) -> None:
    """Push 0/1 inventory for [start, start + days) of a mapped room."""
    end = start + timedelta(days=days)
    calendar = await availability_calendar(
        session, mapping.local_room_id, start, end, SYNC_BLOCKING_STATUSES
    )
    await adapter.push_room_dates(
        mapping.remote_room_id,
        {day: RoomDateUpdate(available=inventory) for day, inventory in calendar.items()}
    )


def _at_midnight(day: date) -> datetime:
    return datetime.combine(day, time.min)


@dataclass
class RoomReconcileResult:
    remote_room_id: str
    processed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    availability_pushed: bool = False


class BookingReconciler:
    """Reconciles channel bookings into local bookings."""

    def __init__(
        self,
        session,
        adapter: ChannelAdapter,
        notifier: Optional[Notifier] = None,
        horizon_days: Optional[int] = None,
        today: Optional[Callable[[], date]] = None
    ):
        self.session = session
        self.adapter = adapter
        self.notifier = notifier or LoggingNotifier(settings.ADMIN_ALERT_EMAIL)
        self.horizon_days = horizon_days or settings.CHANNEL_SYNC_HORIZON_DAYS
        self.today = today or (lambda: utcnow().date())
        # Local rooms whose occupancy changed since the last inventory push
        self.touched_room_ids: Set[str] = set()

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def _mapping_for(self, remote_room_id: str) -> RoomChannelMapping:
        mapping = await get_room_mapping_by_remote_id(self.session, remote_room_id)
        if mapping is None:
            raise NotFoundError(
                "RoomChannelMapping",
                f"No active room mapping for Beds24 room {remote_room_id}"
            )
        return mapping

    async def _existing_booking(self, channel_booking_id: str) -> Optional[Booking]:
        result = await self.session.execute(
            select(Booking).where(Booking.channel_booking_id == channel_booking_id)
        )
        return result.scalar_one_or_none()

    async def find_conflicts(
        self,
        room_id: str,
        arrival: date,
        departure: date,
        channel_booking_id: str
    ) -> List[Booking]:
        """
        Confirmed/pending bookings of the room overlapping [arrival, departure).

        Bookings without a channel id (direct bookings) are included.
        """
        result = await self.session.execute(
            select(Booking).where(
                and_(
                    Booking.room_id == room_id,
                    Booking.status.in_(list(SYNC_BLOCKING_STATUSES)),
                    Booking.check_in < _at_midnight(departure),
                    Booking.check_out > _at_midnight(arrival),
                    or_(
                        Booking.channel_booking_id.is_(None),
                        Booking.channel_booking_id != channel_booking_id,
                    ),
                )
            )
        )
        # Date-level overlap; a checkout day is free for the next arrival
        return [
            b for b in result.scalars().all()
            if b.check_in.date() < departure and b.check_out.date() > arrival
        ]

    async def upsert_customer(self, notification: BookingNotification) -> Customer:
        email = str(notification.guest_email).lower()
        result = await self.session.execute(select(Customer).where(Customer.email == email))
        customer = result.scalar_one_or_none()

        if customer is None:
            customer = Customer(
                email=email,
                first_name=notification.guest_first_name,
                last_name=notification.guest_name,
                phone=notification.guest_phone,
                nationality=notification.guest_country,
            )
            self.session.add(customer)
            await self.session.flush()
            logger.info("Created customer from channel booking", customer_id=customer.id)
            return customer

        # Only fill blanks; local edits win over channel data
        customer.first_name = customer.first_name or notification.guest_first_name
        customer.last_name = customer.last_name or notification.guest_name
        customer.phone = customer.phone or notification.guest_phone
        customer.nationality = customer.nationality or notification.guest_country
        return customer

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def _apply(self, notification: BookingNotification, mapping: RoomChannelMapping) -> Booking:
        existing = await self._existing_booking(notification.book_id)

        if existing is not None:
            status = notification.pms_status
            # A flagged double booking stays on hold until staff resolve it
            if (
                (existing.booking_metadata or {}).get("is_double_booking")
                and status != BookingStatus.CANCELLED
            ):
                status = BookingStatus.PENDING

            check_in = _at_midnight(notification.arrival)
            check_out = _at_midnight(notification.departure)
            if (
                existing.room_id != mapping.local_room_id
                or existing.check_in != check_in
                or existing.check_out != check_out
                or existing.status != status
            ):
                self.touched_room_ids.update({existing.room_id, mapping.local_room_id})

            existing.room_id = mapping.local_room_id
            existing.check_in = check_in
            existing.check_out = check_out
            existing.total_guests = notification.total_guests
            existing.status = status
            existing.total_amount = notification.price
            existing.request = notification.guest_comments
            existing.needs_channel_sync = False
            await self.session.flush()

            logger.info(
                "Updated booking from channel",
                booking_id=existing.id,
                channel_booking_id=notification.book_id,
                status=existing.status.value,
            )
            return existing

        customer = await self.upsert_customer(notification)
        status = notification.pms_status
        metadata = {"source": "beds24"}
        conflicts = []

        if status != BookingStatus.CANCELLED:
            conflicts = await self.find_conflicts(
                mapping.local_room_id,
                notification.arrival,
                notification.departure,
                notification.book_id,
            )

        if conflicts:
            status = BookingStatus.PENDING
            metadata.update({
                "is_double_booking": True,
                "admin_alert": DOUBLE_BOOKING_ALERT,
                "conflicting_booking_ids": [b.id for b in conflicts],
                "original_booking_data": notification.model_dump(mode="json", by_alias=True),
            })

        booking = Booking(
            room_id=mapping.local_room_id,
            customer_id=customer.id,
            check_in=_at_midnight(notification.arrival),
            check_out=_at_midnight(notification.departure),
            total_guests=notification.total_guests,
            status=status,
            total_amount=notification.price,
            request=notification.guest_comments,
            channel_booking_id=notification.book_id,
            booking_metadata=metadata,
            needs_channel_sync=False,
            channel_sync_fail_count=0,
        )
        self.session.add(booking)
        await self.session.flush()
        if status != BookingStatus.CANCELLED:
            self.touched_room_ids.add(mapping.local_room_id)

        if conflicts:
            logger.error(
                DOUBLE_BOOKING_ALERT,
                booking_id=booking.id,
                channel_booking_id=notification.book_id,
                room_id=mapping.local_room_id,
                conflicting_booking_ids=[b.id for b in conflicts],
            )
        else:
            logger.info(
                "Created booking from channel",
                booking_id=booking.id,
                channel_booking_id=notification.book_id,
            )
        return booking

    async def reconcile(
        self,
        notification: BookingNotification,
        push_availability: bool = True
    ) -> Booking:
        """
        Apply one channel booking and commit.

        Raises:
            NotFoundError: If the remote room has no active mapping
        """
        mapping = await self._mapping_for(notification.room_id)

        try:
            booking = await self._apply(notification, mapping)
            await self.session.commit()
        except IntegrityError:
            # Concurrent delivery of the same channel booking; the other
            # writer won, so apply this one as an update.
            await self.session.rollback()
            logger.info("Channel booking inserted concurrently, retrying as update",
                        channel_booking_id=notification.book_id)
            mapping = await self._mapping_for(notification.room_id)
            booking = await self._apply(notification, mapping)
            await self.session.commit()

        if booking.booking_metadata.get("is_double_booking"):
            await best_effort(
                "double_booking_alert",
                self.notifier.send_double_booking_alert(
                    booking.id,
                    booking.booking_metadata.get("conflicting_booking_ids", []),
                    {"channel_booking_id": notification.book_id, "room_id": mapping.local_room_id},
                ),
                booking_id=booking.id,
            )

        if push_availability:
            # Always reflect the delivered booking's room, changed or not
            self.touched_room_ids.add(mapping.local_room_id)
            if not await self.push_touched_rooms():
                mark_dirty(booking)
                await self.session.commit()

        return booking

    async def push_touched_rooms(self) -> bool:
        """
        Push inventory once for every room touched since the last push.

        A failed push marks the room mapping dirty so the next sync pass
        retries it. Returns False if any push failed.
        """
        room_ids = sorted(self.touched_room_ids)
        self.touched_room_ids.clear()

        all_pushed = True
        for room_id in room_ids:
            mapping = await get_room_mapping_by_local_id(self.session, room_id)
            if mapping is None or not (mapping.is_active and mapping.auto_sync):
                continue
            pushed = await best_effort(
                "realtime_availability_push",
                push_room_inventory(self.session, self.adapter, mapping, self.today(), self.horizon_days),
                remote_room_id=mapping.remote_room_id,
            )
            if not pushed:
                all_pushed = False
                mark_dirty(mapping)

        if not all_pushed:
            await self.session.commit()
        return all_pushed

    async def reconcile_room(self, remote_room_id: str) -> RoomReconcileResult:
        """Pull every booking of a remote room, reconcile each, then push once."""
        mapping = await self._mapping_for(remote_room_id)
        result = RoomReconcileResult(remote_room_id=str(remote_room_id))

        raw_bookings = await self.adapter.get_room_bookings(mapping.remote_room_id)
        for raw in raw_bookings:
            book_id = str(raw.get("bookId", "")) if isinstance(raw, dict) else ""
            try:
                notification = parse_channel_message(raw)
                if not isinstance(notification, BookingNotification):
                    raise PmsError("Expected a booking payload")
                await self.reconcile(notification, push_availability=False)
                result.processed.append(book_id)
            except PmsError as e:
                await self.session.rollback()
                result.failed.append(book_id)
                logger.warning(
                    "Skipping channel booking",
                    remote_room_id=remote_room_id,
                    channel_booking_id=book_id,
                    error=e.message,
                )

        # Rollbacks above expire loaded instances
        mapping = await self._mapping_for(remote_room_id)
        self.touched_room_ids.add(mapping.local_room_id)
        pushed = await self.push_touched_rooms()
        result.availability_pushed = pushed and mapping.auto_sync

        logger.info(
            "Room sync completed",
            remote_room_id=remote_room_id,
            processed=len(result.processed),
            failed=len(result.failed),
        )
        return result
