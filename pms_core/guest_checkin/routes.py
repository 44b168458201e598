"""
Online Check-In Routes
======================

Guest-facing endpoints. Opening the emailed link verifies the token and
stores it in the ``onlineCheckInToken`` cookie, which authenticates the
remaining calls.

Endpoints:
- GET    /online-checkin/verify/{token}
- GET    /online-checkin/guests
- POST   /online-checkin/guests/invite
- POST   /online-checkin/guests/manual
- PATCH  /online-checkin/guests/{customer_id}
- DELETE /online-checkin/guests/{customer_id}
- POST   /online-checkin/invitations/{token}/decline
"""

from datetime import date
from typing import Optional

import structlog
from fastapi import APIRouter, Cookie, Depends
from pydantic import BaseModel, EmailStr
from sqlalchemy.ext.asyncio import AsyncSession

from ..dependencies import get_db, get_notifier
from ..errors import NotFoundError, UnauthorizedError, ValidationError
from ..models import Customer, GuestCheckInAccess, utcnow
from ..notifications import Notifier
from ..responses import envelope
from .access import (
    add_manual_guest,
    decline_invitation,
    delete_guest,
    invite_guest,
    list_booking_guests,
    resolve_access,
    update_guest_details,
    verify_token,
)

logger = structlog.get_logger(__name__)

TOKEN_COOKIE = "onlineCheckInToken"

router = APIRouter(
    prefix="/online-checkin",
    tags=["Online Check-In"]
)


# =============================================================================
# REQUEST MODELS
# =============================================================================

class GuestDetails(BaseModel):
    first_name: Optional[str] = None
    middle_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    nationality: Optional[str] = None
    dob: Optional[date] = None
    passport_number: Optional[str] = None
    passport_expiry: Optional[date] = None
    passport_issued_country: Optional[str] = None
    id_card_number: Optional[str] = None
    city: Optional[str] = None


class InviteGuestRequest(BaseModel):
    email: EmailStr
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class ManualGuestRequest(GuestDetails):
    email: EmailStr


def _guest_out(access: GuestCheckInAccess, customer: Customer) -> dict:
    return {
        "customer_id": customer.id,
        "booking_id": access.booking_id,
        "email": customer.email,
        "first_name": customer.first_name,
        "last_name": customer.last_name,
        "is_main_guest": access.is_main_guest,
        "guest_type": access.guest_type.value,
        "invitation_status": access.invitation_status.value,
        "personal_info_complete": access.personal_info_complete,
        "identity_info_complete": access.identity_info_complete,
        "address_info_complete": access.address_info_complete,
        "completion_status": access.completion_status.value,
        "check_in_completed_at": access.check_in_completed_at,
    }


# =============================================================================
# AUTH
# =============================================================================

async def get_current_access(
    online_check_in_token: Optional[str] = Cookie(None, alias=TOKEN_COOKIE),
    db: AsyncSession = Depends(get_db),
) -> GuestCheckInAccess:
    """Access row of the guest holding the check-in cookie."""
    if not online_check_in_token:
        raise UnauthorizedError("Unauthorized")
    return await resolve_access(db, online_check_in_token)


def _require_main_guest(access: GuestCheckInAccess) -> None:
    if not access.is_main_guest:
        raise ValidationError("Only the main guest can manage guests")


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/verify/{token}")
async def verify(token: str, db: AsyncSession = Depends(get_db)):
    """
    Verify a check-in link and open the session.

    Expired links answer 401 without changing anything.
    """
    customer, booking, access = await verify_token(db, token)
    await db.commit()

    result = envelope(
        {
            "guest": _guest_out(access, customer),
            "booking": {
                "id": booking.id,
                "check_in": booking.check_in,
                "check_out": booking.check_out,
                "total_guests": booking.total_guests,
                "status": booking.status.value,
            },
        },
        "Check-in link verified",
    )
    result.set_cookie(
        TOKEN_COOKIE,
        token,
        httponly=True,
        samesite="lax",
        max_age=max(int((access.token_expires_at - utcnow()).total_seconds()), 0),
    )
    return result


@router.get("/guests")
async def get_guests(
    access: GuestCheckInAccess = Depends(get_current_access),
    db: AsyncSession = Depends(get_db),
):
    guests = await list_booking_guests(db, access.booking_id)
    return envelope([_guest_out(a, c) for a, c in guests])


@router.post("/guests/invite")
async def invite(
    payload: InviteGuestRequest,
    access: GuestCheckInAccess = Depends(get_current_access),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    _require_main_guest(access)
    invited = await invite_guest(
        db,
        access,
        payload.email,
        notifier,
        first_name=payload.first_name,
        last_name=payload.last_name,
    )
    customer = await db.get(Customer, invited.customer_id)
    return envelope(_guest_out(invited, customer), "Invitation sent", status_code=201)


@router.post("/guests/manual")
async def add_manual(
    payload: ManualGuestRequest,
    access: GuestCheckInAccess = Depends(get_current_access),
    db: AsyncSession = Depends(get_db),
):
    _require_main_guest(access)
    details = payload.model_dump(exclude={"email"}, exclude_none=True)
    added = await add_manual_guest(db, access, payload.email, details=details)
    customer = await db.get(Customer, added.customer_id)
    return envelope(_guest_out(added, customer), "Guest added", status_code=201)


@router.patch("/guests/{customer_id}")
async def update_guest(
    customer_id: str,
    payload: GuestDetails,
    access: GuestCheckInAccess = Depends(get_current_access),
    db: AsyncSession = Depends(get_db),
):
    # Guests edit themselves; the main guest may edit anyone on the booking
    if customer_id != access.customer_id:
        _require_main_guest(access)
        guests = {c.id for _, c in await list_booking_guests(db, access.booking_id)}
        if customer_id not in guests:
            raise NotFoundError("Customer")

    customer = await update_guest_details(db, customer_id, payload.model_dump(exclude_unset=True))
    await db.commit()

    target = await db.get(GuestCheckInAccess, (customer_id, access.booking_id))
    return envelope(_guest_out(target, customer), "Guest updated")


@router.delete("/guests/{customer_id}")
async def remove_guest(
    customer_id: str,
    access: GuestCheckInAccess = Depends(get_current_access),
    db: AsyncSession = Depends(get_db),
):
    _require_main_guest(access)
    await delete_guest(db, access.booking_id, customer_id)
    await db.commit()
    return envelope(None, "Guest removed")


@router.post("/invitations/{token}/decline")
async def decline(token: str, db: AsyncSession = Depends(get_db)):
    access = await decline_invitation(db, token)
    await db.commit()
    return envelope({"invitation_status": access.invitation_status.value}, "Invitation declined")
