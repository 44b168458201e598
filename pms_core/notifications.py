"""
Notifications
=============

Outbound side effects of the core: check-in reminder and guest invitation
emails, and double-booking alerts. Delivery is an external concern; the default notifier only logs.

Side effects never fail the primary operation. ``best_effort`` logs and counts
the failure instead of raising.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Dict, List, Optional

import structlog
from prometheus_client import Counter

logger = structlog.get_logger(__name__)

SIDE_EFFECT_FAILURES = Counter(
    "pms_side_effect_failures_total",
    "Best-effort side effects that failed",
    ["effect"]
)


class Notifier(ABC):
    """Hook for the email / alerting system."""

    @abstractmethod
    async def send_check_in_invitation(
        self,
        email: str,
        guest_name: str,
        check_in_link: str,
        booking_ids: List[str],
        days_until_check_in: int,
        is_manual: bool = False
    ) -> None:
        pass

    @abstractmethod
    async def send_guest_invitation(
        self,
        email: str,
        inviter_name: str,
        check_in_link: str,
        booking_id: str
    ) -> None:
        pass

    @abstractmethod
    async def send_double_booking_alert(
        self,
        booking_id: str,
        conflicting_booking_ids: list,
        details: Dict[str, Any]
    ) -> None:
        pass


class LoggingNotifier(Notifier):
    """Notifier that records what would have been sent."""

    def __init__(self, admin_email: Optional[str] = None):
        self.admin_email = admin_email

    async def send_check_in_invitation(self, email, guest_name, check_in_link, booking_ids,
                                       days_until_check_in, is_manual=False):
        logger.info(
            "Check-in invitation queued",
            email=email,
            booking_ids=booking_ids,
            days_until_check_in=days_until_check_in,
            manual=is_manual,
        )

    async def send_guest_invitation(self, email, inviter_name, check_in_link, booking_id):
        logger.info(
            "Guest invitation queued",
            email=email,
            inviter=inviter_name,
            booking_id=booking_id,
        )

    async def send_double_booking_alert(self, booking_id, conflicting_booking_ids, details):
        logger.error(
            "DOUBLE BOOKING DETECTED - Requires immediate attention",
            booking_id=booking_id,
            conflicting_booking_ids=conflicting_booking_ids,
            admin_email=self.admin_email,
            **details,
        )


async def best_effort(effect: str, awaitable: Awaitable, **context) -> bool:
    """Await a side effect; on failure log and count it. Returns success."""
    try:
        await awaitable
        return True
    except Exception as e:
        SIDE_EFFECT_FAILURES.labels(effect=effect).inc()
        logger.warning(
            "Side effect failed",
            effect=effect,
            error=str(e),
            **context,
        )
        return False
