"""
Check-In Admin Routes
=====================

Staff endpoints for sending online check-in links. Staff authentication is
applied by the hosting application.

Endpoints:
- POST /admin/checkin/bookings/{booking_id}/send
- POST /admin/checkin/reminders
"""

from datetime import date, timedelta
from typing import Optional

import structlog
from fastapi import APIRouter, Depends

from ..config import settings
from ..dependencies import get_db, get_notifier
from ..models import utcnow
from ..notifications import Notifier
from ..responses import envelope
from .reminders import send_check_in_reminders, send_manual_check_in

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/admin/checkin",
    tags=["Online Check-In Admin"]
)


@router.post("/bookings/{booking_id}/send")
async def send_for_booking(
    booking_id: str,
    session=Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Re-send the check-in link; the token is always rotated."""
    result = await send_manual_check_in(session, notifier, booking_id)
    message = "Check-in invitation sent" if result.sent else "Check-in link issued, email failed"
    return envelope(result.to_dict(), message)


@router.post("/reminders")
async def run_reminders(
    target_date: Optional[date] = None,
    session=Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    target = target_date or utcnow().date() + timedelta(days=settings.CHECK_IN_REMINDER_DAYS_AHEAD)
    results = await send_check_in_reminders(session, notifier, target)
    logger.info("Manual check-in reminder run", target_date=target.isoformat(), groups=len(results))
    return envelope([r.to_dict() for r in results], "Check-in reminders processed")
