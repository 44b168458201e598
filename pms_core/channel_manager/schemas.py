"""
Channel Payload Schemas
=======================

Validated variants of the messages Beds24 sends (webhooks) or returns
(booking lists). Everything entering the reconciler passes through
``parse_channel_message``; malformed payloads are rejected here.
"""

import re
from datetime import date
from decimal import Decimal
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from ..models import BookingStatus

SYNC_ROOM_ACTION = "SYNC_ROOM"

# Beds24 status codes: "0" new/request, "1" confirmed, "2" cancelled
CHANNEL_STATUS_MAP = {
    "1": BookingStatus.CONFIRMED,
    "2": BookingStatus.CANCELLED,
}

_COMPACT_DATE = re.compile(r"^\d{8}$")


def map_channel_status_to_pms(status: Optional[str]) -> BookingStatus:
    """Anything not explicitly confirmed or cancelled is treated as pending."""
    return CHANNEL_STATUS_MAP.get(str(status).strip() if status is not None else "", BookingStatus.PENDING)


class _ChannelModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="ignore",
    )


class InventoryNotification(_ChannelModel):
    """A room's bookings changed remotely; pull and reconcile that room."""
    kind: Literal["inventory"] = "inventory"
    room_id: str = Field(alias="roomId", min_length=1)
    prop_id: Optional[str] = Field(default=None, alias="propId")
    owner_id: Optional[str] = Field(default=None, alias="ownerId")
    action: str = SYNC_ROOM_ACTION


class BookingNotification(_ChannelModel):
    """A single booking as delivered by the channel."""
    kind: Literal["booking"] = "booking"
    book_id: str = Field(alias="bookId", min_length=1)
    room_id: str = Field(alias="roomId", min_length=1)
    prop_id: Optional[str] = Field(default=None, alias="propId")
    arrival: date
    departure: date
    num_adult: int = Field(default=1, alias="numAdult", ge=0)
    num_child: int = Field(default=0, alias="numChild", ge=0)
    guest_first_name: Optional[str] = Field(default=None, alias="guestFirstName")
    guest_name: Optional[str] = Field(default=None, alias="guestName")
    guest_email: EmailStr = Field(alias="guestEmail")
    guest_phone: Optional[str] = Field(default=None, alias="guestPhone")
    guest_country: Optional[str] = Field(default=None, alias="guestCountry")
    price: Decimal = Decimal("0")
    commission: Decimal = Decimal("0")
    api_reference: Optional[str] = Field(default=None, alias="apiReference")
    booking_time: Optional[str] = Field(default=None, alias="bookingTime")
    status: str = "0"
    pay_status: Optional[str] = Field(default=None, alias="payStatus")
    guest_comments: Optional[str] = Field(default=None, alias="guestComments")

    @field_validator("arrival", "departure", mode="before")
    @classmethod
    def parse_compact_date(cls, v: Any) -> Any:
        if isinstance(v, str) and _COMPACT_DATE.match(v):
            return f"{v[:4]}-{v[4:6]}-{v[6:]}"
        return v

    @field_validator("price", "commission", mode="before")
    @classmethod
    def empty_amount_is_zero(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return Decimal("0")
        return v

    @field_validator("guest_email", mode="before")
    @classmethod
    def normalize_email(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def departure_after_arrival(self):
        if self.departure <= self.arrival:
            raise ValueError("departure must be after arrival")
        return self

    @property
    def pms_status(self) -> BookingStatus:
        return map_channel_status_to_pms(self.status)

    @property
    def total_guests(self) -> int:
        return max(self.num_adult + self.num_child, 1)


ChannelMessage = Union[InventoryNotification, BookingNotification]


def _validate(model, data: dict):
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {model.__name__} payload",
            data=e.errors(include_url=False, include_context=False, include_input=False)
        )


def parse_channel_message(data: Any) -> ChannelMessage:
    """
    Classify and validate a raw channel payload.

    A payload carrying ``bookId`` is a booking; one carrying ``roomId`` with
    the SYNC_ROOM action (or no action) is an inventory notification.

    Raises:
        ValidationError: If the payload matches no variant or fails validation
    """
    if not isinstance(data, dict):
        raise ValidationError("Channel payload must be a JSON object")

    if data.get("bookId"):
        return _validate(BookingNotification, data)

    if data.get("roomId") and data.get("action", SYNC_ROOM_ACTION) == SYNC_ROOM_ACTION:
        return _validate(InventoryNotification, data)

    raise ValidationError("Unrecognized channel payload", data={"keys": sorted(data)})
