"""
Guest Check-In Access
=====================

Access tokens, invitations and completion tracking for online check-in.

Every (customer, booking) pair that may fill in check-in details has one
access row holding a random token. The main guest gets theirs when the
check-in reminder goes out; co-travellers are either invited by email or
added manually by the main guest.

Completion is derived from the customer record:

- personal: first name, last name, email and date of birth
- identity: nationality plus either full passport data or an id card
- address: city
"""

import secrets
from datetime import datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import select

from ..config import settings
from ..errors import ExpiredTokenError, NotFoundError, ValidationError
from ..models import (
    Booking,
    CompletionStatus,
    Customer,
    GuestCheckInAccess,
    GuestType,
    InvitationStatus,
    utcnow,
)
from ..notifications import Notifier, best_effort

logger = structlog.get_logger(__name__)

TOKEN_BYTES = 32

CUSTOMER_EDITABLE_FIELDS = frozenset({
    "first_name",
    "middle_name",
    "last_name",
    "phone",
    "nationality",
    "dob",
    "passport_number",
    "passport_expiry",
    "passport_issued_country",
    "id_card_number",
    "city",
})


# =============================================================================
# PURE HELPERS
# =============================================================================

def generate_access_token() -> str:
    """64 hex characters."""
    return secrets.token_hex(TOKEN_BYTES)


def token_expiry_for(booking: Booking) -> datetime:
    """Last instant of the day after check-in."""
    return datetime.combine(booking.check_in.date() + timedelta(days=1), time.max)


def check_in_link(token: str) -> str:
    return f"{settings.FRONTEND_BASE_URL.rstrip('/')}/online-checkin/{token}"


def _filled(*values) -> bool:
    return all(v is not None and (not isinstance(v, str) or v.strip()) for v in values)


def compute_completion(customer: Customer) -> Tuple[bool, bool, bool]:
    """(personal, identity, address) completeness of a customer record."""
    personal = _filled(customer.first_name, customer.last_name, customer.email, customer.dob)
    has_passport = _filled(
        customer.passport_number,
        customer.passport_expiry,
        customer.passport_issued_country,
    )
    identity = _filled(customer.nationality) and (has_passport or _filled(customer.id_card_number))
    address = _filled(customer.city)
    return personal, identity, address


def completion_status(personal: bool, identity: bool, address: bool) -> CompletionStatus:
    flags = (personal, identity, address)
    if all(flags):
        return CompletionStatus.COMPLETE
    if any(flags):
        return CompletionStatus.PARTIAL
    return CompletionStatus.INCOMPLETE


def apply_completion(access: GuestCheckInAccess, customer: Customer, now: Optional[datetime] = None) -> None:
    personal, identity, address = compute_completion(customer)
    access.personal_info_complete = personal
    access.identity_info_complete = identity
    access.address_info_complete = address
    access.completion_status = completion_status(personal, identity, address)
    if access.completion_status == CompletionStatus.COMPLETE:
        access.check_in_completed_at = access.check_in_completed_at or now or utcnow()
    else:
        access.check_in_completed_at = None


def primary_booking(bookings: Iterable[Booking]) -> Optional[Booking]:
    """The booking a group's reminder is sent for: earliest check-in."""
    bookings = list(bookings)
    if not bookings:
        return None
    return min(bookings, key=lambda b: (b.check_in, b.created_at or b.check_in, b.id))


def full_name(customer: Customer) -> str:
    parts = [customer.first_name, customer.last_name]
    return " ".join(p for p in parts if p) or customer.email


# =============================================================================
# LOOKUPS
# =============================================================================

async def get_access(session, customer_id: str, booking_id: str) -> Optional[GuestCheckInAccess]:
    return await session.get(GuestCheckInAccess, (customer_id, booking_id))


async def get_access_by_token(session, token: str) -> GuestCheckInAccess:
    result = await session.execute(
        select(GuestCheckInAccess).where(GuestCheckInAccess.access_token == token)
    )
    access = result.scalar_one_or_none()
    if access is None:
        raise NotFoundError("GuestCheckInAccess", "Invalid check-in link")
    return access


async def resolve_access(session, token: str, now: Optional[datetime] = None) -> GuestCheckInAccess:
    """Token lookup with expiry check, without changing anything."""
    now = now or utcnow()
    access = await get_access_by_token(session, token)
    if access.token_expires_at < now:
        raise ExpiredTokenError("Check-in link has expired")
    return access


async def _get_customer_by_email(session, email: str) -> Optional[Customer]:
    result = await session.execute(select(Customer).where(Customer.email == email.strip().lower()))
    return result.scalar_one_or_none()


# =============================================================================
# MAIN GUEST
# =============================================================================

async def issue_main_guest_access(session, booking: Booking, now: Optional[datetime] = None) -> GuestCheckInAccess:
    """
    Create or refresh the main guest's access for a booking.

    A new token is issued each time; existing completion data is kept.
    """
    customer = await session.get(Customer, booking.customer_id)
    if customer is None:
        raise NotFoundError("Customer")

    access = await get_access(session, booking.customer_id, booking.id)
    if access is None:
        access = GuestCheckInAccess(
            customer_id=booking.customer_id,
            booking_id=booking.id,
            is_main_guest=True,
            guest_type=GuestType.MAIN_GUEST,
            invitation_status=InvitationStatus.NOT_APPLICABLE,
        )
        apply_completion(access, customer, now)
        session.add(access)

    access.access_token = generate_access_token()
    access.token_expires_at = token_expiry_for(booking)

    await session.flush()
    logger.info(
        "Issued main guest check-in access",
        booking_id=booking.id,
        customer_id=booking.customer_id,
        expires_at=access.token_expires_at.isoformat(),
    )
    return access


# =============================================================================
# VERIFICATION & DETAILS
# =============================================================================

async def verify_token(session, token: str, now: Optional[datetime] = None) -> Tuple[Customer, Booking, GuestCheckInAccess]:
    """
    Validate a check-in link.

    An invited guest opening a pending invitation accepts it.

    Raises:
        NotFoundError: Unknown token
        ExpiredTokenError: Token past its expiry (nothing is changed)
    """
    now = now or utcnow()
    access = await resolve_access(session, token, now)

    if (
        access.guest_type == GuestType.INVITED
        and access.invitation_status == InvitationStatus.PENDING
    ):
        access.invitation_status = InvitationStatus.ACCEPTED
        access.invitation_accepted_at = now
        await session.flush()
        logger.info(
            "Invitation accepted",
            booking_id=access.booking_id,
            customer_id=access.customer_id,
        )

    customer = await session.get(Customer, access.customer_id)
    booking = await session.get(Booking, access.booking_id)
    if customer is None or booking is None:
        raise NotFoundError("Booking" if booking is None else "Customer")
    return customer, booking, access


async def recompute_completion(session, customer: Customer, now: Optional[datetime] = None) -> List[GuestCheckInAccess]:
    """Refresh completion on every access row of the customer."""
    result = await session.execute(
        select(GuestCheckInAccess).where(GuestCheckInAccess.customer_id == customer.id)
    )
    rows = list(result.scalars().all())
    for access in rows:
        apply_completion(access, customer, now)
    await session.flush()
    return rows


async def update_guest_details(session, customer_id: str, changes: Dict[str, Any]) -> Customer:
    unknown = set(changes) - CUSTOMER_EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

    customer = await session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError("Customer")

    for field, value in changes.items():
        setattr(customer, field, value)

    await recompute_completion(session, customer)
    return customer


# =============================================================================
# CO-GUESTS
# =============================================================================

async def _upsert_guest_access(
    session,
    inviter_access: GuestCheckInAccess,
    email: str,
    first_name: Optional[str],
    last_name: Optional[str],
    guest_type: GuestType,
) -> Tuple[Customer, GuestCheckInAccess]:
    email = email.strip().lower()
    booking = await session.get(Booking, inviter_access.booking_id)
    if booking is None:
        raise NotFoundError("Booking")

    inviter = await session.get(Customer, inviter_access.customer_id)
    if inviter is not None and (inviter.email or "").strip().lower() == email:
        raise ValidationError("You cannot invite yourself")

    customer = await _get_customer_by_email(session, email)
    if customer is None:
        customer = Customer(email=email, first_name=first_name, last_name=last_name)
        session.add(customer)
        await session.flush()
    else:
        customer.first_name = customer.first_name or first_name
        customer.last_name = customer.last_name or last_name

    access = await get_access(session, customer.id, booking.id)
    if access is not None:
        already_registered = (
            access.is_main_guest
            or access.guest_type == GuestType.MANUAL
            or access.invitation_status == InvitationStatus.ACCEPTED
        )
        if already_registered:
            raise ValidationError("Guest is already registered for this booking")
    else:
        access = GuestCheckInAccess(
            customer_id=customer.id,
            booking_id=booking.id,
            is_main_guest=False,
        )
        session.add(access)

    access.guest_type = guest_type
    access.invited_by_customer_id = inviter_access.customer_id
    access.access_token = generate_access_token()
    access.token_expires_at = token_expiry_for(booking)
    apply_completion(access, customer)
    return customer, access


async def invite_guest(
    session,
    inviter_access: GuestCheckInAccess,
    email: str,
    notifier: Notifier,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    now: Optional[datetime] = None
) -> GuestCheckInAccess:
    """
    Invite a co-traveller by email.

    Pending or declined invitations are re-issued with a fresh token. The
    email is best-effort; the invitation stands even if sending fails.

    Raises:
        ValidationError: Self-invite, or the guest is already registered
    """
    now = now or utcnow()
    customer, access = await _upsert_guest_access(
        session, inviter_access, email, first_name, last_name, GuestType.INVITED
    )
    access.invitation_status = InvitationStatus.PENDING
    access.invitation_sent_at = now
    access.invitation_accepted_at = None
    await session.commit()

    inviter = await session.get(Customer, inviter_access.customer_id)
    await best_effort(
        "guest_invitation_email",
        notifier.send_guest_invitation(
            customer.email,
            full_name(inviter) if inviter else "",
            check_in_link(access.access_token),
            access.booking_id,
        ),
        booking_id=access.booking_id,
        customer_id=customer.id,
    )

    logger.info(
        "Guest invited",
        booking_id=access.booking_id,
        customer_id=customer.id,
        invited_by=inviter_access.customer_id,
    )
    return access


async def add_manual_guest(
    session,
    inviter_access: GuestCheckInAccess,
    email: str,
    details: Optional[Dict[str, Any]] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None
) -> GuestCheckInAccess:
    """Register a co-traveller whose details the main guest enters; no email."""
    customer, access = await _upsert_guest_access(
        session, inviter_access, email, first_name, last_name, GuestType.MANUAL
    )
    access.invitation_status = InvitationStatus.NOT_APPLICABLE
    access.invitation_sent_at = None

    if details:
        unknown = set(details) - CUSTOMER_EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot set fields: {', '.join(sorted(unknown))}")
        for field, value in details.items():
            setattr(customer, field, value)

    await session.flush()
    await recompute_completion(session, customer)
    await session.commit()

    logger.info("Manual guest added", booking_id=access.booking_id, customer_id=customer.id)
    return access


async def decline_invitation(session, token: str, now: Optional[datetime] = None) -> GuestCheckInAccess:
    access = await resolve_access(session, token, now)
    if access.guest_type != GuestType.INVITED or access.invitation_status != InvitationStatus.PENDING:
        raise ValidationError("Only pending invitations can be declined")

    access.invitation_status = InvitationStatus.DECLINED
    await session.flush()
    logger.info("Invitation declined", booking_id=access.booking_id, customer_id=access.customer_id)
    return access


async def delete_guest(session, booking_id: str, customer_id: str) -> None:
    access = await get_access(session, customer_id, booking_id)
    if access is None:
        raise NotFoundError("GuestCheckInAccess")
    if access.is_main_guest:
        raise ValidationError("The main guest cannot be removed")

    await session.delete(access)
    await session.flush()
    logger.info("Guest removed from booking", booking_id=booking_id, customer_id=customer_id)


async def list_booking_guests(session, booking_id: str) -> List[Tuple[GuestCheckInAccess, Customer]]:
    result = await session.execute(
        select(GuestCheckInAccess, Customer)
        .join(Customer, Customer.id == GuestCheckInAccess.customer_id)
        .where(GuestCheckInAccess.booking_id == booking_id)
        .order_by(GuestCheckInAccess.is_main_guest.desc(), GuestCheckInAccess.created_at)
    )
    return [(access, customer) for access, customer in result.all()]
