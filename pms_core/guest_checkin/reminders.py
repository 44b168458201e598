"""
Check-In Reminders
==================

Sends the online check-in link to main guests ahead of arrival.

Confirmed bookings of one customer arriving on the same day form a group and
get a single email. The access token belongs to the group's primary booking.

- Daily run (Celery beat): groups arriving CHECK_IN_REMINDER_DAYS_AHEAD days
  from now; a group already holding an unexpired token is skipped.
- Manual send (admin): always rotates the token and re-sends.
"""

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import and_, select

from ..channel_manager.sync_engine import celery
from ..config import settings
from ..database import get_async_session, get_engine
from ..errors import NotFoundError, PmsError, ValidationError
from ..logging_config import configure_logging
from ..models import Booking, BookingStatus, Customer, GuestCheckInAccess, utcnow
from ..notifications import LoggingNotifier, Notifier, best_effort
from .access import check_in_link, full_name, issue_main_guest_access, primary_booking

logger = structlog.get_logger(__name__)


@dataclass
class ReminderResult:
    customer_id: str
    check_in: date
    booking_ids: List[str] = field(default_factory=list)
    primary_booking_id: Optional[str] = None
    sent: bool = False
    skipped: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["check_in"] = self.check_in.isoformat()
        return data


def group_bookings(bookings) -> Dict[Tuple[str, date], List[Booking]]:
    """Bookings keyed by (customer, arrival day), in input order."""
    groups: Dict[Tuple[str, date], List[Booking]] = {}
    for booking in bookings:
        groups.setdefault((booking.customer_id, booking.check_in.date()), []).append(booking)
    return groups


async def _confirmed_arrivals(session, day: date, customer_id: Optional[str] = None) -> List[Booking]:
    start = datetime.combine(day, time.min)
    stmt = select(Booking).where(
        and_(
            Booking.status == BookingStatus.CONFIRMED,
            Booking.check_in >= start,
            Booking.check_in < start + timedelta(days=1),
        )
    )
    if customer_id is not None:
        stmt = stmt.where(Booking.customer_id == customer_id)
    result = await session.execute(stmt.order_by(Booking.check_in, Booking.created_at))
    return list(result.scalars().all())


async def _has_active_token(session, booking_ids: List[str], now: datetime) -> bool:
    result = await session.execute(
        select(GuestCheckInAccess.booking_id).where(
            and_(
                GuestCheckInAccess.booking_id.in_(booking_ids),
                GuestCheckInAccess.token_expires_at > now,
            )
        ).limit(1)
    )
    return result.first() is not None


async def _send_group(
    session,
    notifier: Notifier,
    bookings: List[Booking],
    now: datetime,
    is_manual: bool
) -> ReminderResult:
    primary = primary_booking(bookings)
    result = ReminderResult(
        customer_id=primary.customer_id,
        check_in=primary.check_in.date(),
        booking_ids=[b.id for b in bookings],
    )

    if not is_manual and await _has_active_token(session, result.booking_ids, now):
        result.skipped = True
        logger.info(
            "Check-in token already issued, skipping group",
            customer_id=result.customer_id,
            check_in=result.check_in.isoformat(),
        )
        return result

    access = await issue_main_guest_access(session, primary, now)
    await session.commit()
    result.primary_booking_id = primary.id

    customer = await session.get(Customer, primary.customer_id)
    result.sent = await best_effort(
        "check_in_invitation_email",
        notifier.send_check_in_invitation(
            customer.email,
            full_name(customer),
            check_in_link(access.access_token),
            result.booking_ids,
            max((result.check_in - now.date()).days, 0),
            is_manual,
        ),
        booking_id=primary.id,
    )

    logger.info(
        "Check-in invitation processed",
        booking_id=primary.id,
        bookings=len(bookings),
        manual=is_manual,
        sent=result.sent,
    )
    return result


async def send_check_in_reminders(
    session,
    notifier: Notifier,
    target_date: date,
    now: Optional[datetime] = None
) -> List[ReminderResult]:
    """
    Send one reminder per group arriving on ``target_date``.

    A failing group is reported and never stops the others.
    """
    now = now or utcnow()
    bookings = await _confirmed_arrivals(session, target_date)
    groups = {
        key: [b.id for b in group]
        for key, group in group_bookings(bookings).items()
    }
    logger.info(
        "Processing check-in reminders",
        target_date=target_date.isoformat(),
        bookings=len(bookings),
        groups=len(groups),
    )

    results = []
    for (customer_id, check_in), booking_ids in groups.items():
        try:
            # Rollbacks expire loaded rows, so each group is read fresh
            loaded = await session.execute(select(Booking).where(Booking.id.in_(booking_ids)))
            group = list(loaded.scalars().all())
            results.append(await _send_group(session, notifier, group, now, is_manual=False))
        except PmsError as e:
            await session.rollback()
            logger.warning(
                "Check-in reminder failed",
                customer_id=customer_id,
                check_in=check_in.isoformat(),
                error=e.message,
            )
            results.append(ReminderResult(
                customer_id=customer_id,
                check_in=check_in,
                booking_ids=booking_ids,
                error=e.message,
            ))

    logger.info(
        "Check-in reminders completed",
        sent=sum(1 for r in results if r.sent),
        skipped=sum(1 for r in results if r.skipped),
        failed=sum(1 for r in results if r.error),
    )
    return results


async def send_manual_check_in(
    session,
    notifier: Notifier,
    booking_id: str,
    now: Optional[datetime] = None
) -> ReminderResult:
    """
    Re-send the check-in link for a booking and the rest of its group.

    Raises:
        NotFoundError: Unknown booking
        ValidationError: Booking is not confirmed
    """
    now = now or utcnow()
    booking = await session.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError("Booking")
    if booking.status != BookingStatus.CONFIRMED:
        raise ValidationError("Booking is not confirmed")

    group = await _confirmed_arrivals(session, booking.check_in.date(), booking.customer_id)
    return await _send_group(session, notifier, group, now, is_manual=True)


# =============================================================================
# CELERY TASKS
# =============================================================================

async def _run_check_in_reminders() -> list:
    target = utcnow().date() + timedelta(days=settings.CHECK_IN_REMINDER_DAYS_AHEAD)
    notifier = LoggingNotifier(settings.ADMIN_ALERT_EMAIL)
    try:
        async with get_async_session() as session:
            results = await send_check_in_reminders(session, notifier, target)
    finally:
        await get_engine().dispose()
    return [r.to_dict() for r in results]


@celery.task
def send_check_in_reminders_task() -> list:
    """Daily reminder run for arrivals CHECK_IN_REMINDER_DAYS_AHEAD days out."""
    configure_logging()
    return asyncio.run(_run_check_in_reminders())
