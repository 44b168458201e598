"""
Persistence Models
==================

SQLAlchemy 2.0 declarative models for rooms, pricing, restrictions, bookings,
channel mappings and guest check-in access.

Every entity that is mirrored to the channel manager carries the sync-state
columns from ``ChannelSyncStateMixin``. Those columns are the durable record of
pending and failed outbound work.
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for all datetime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls):
    return SAEnum(enum_cls, native_enum=False, length=32)


class Base(DeclarativeBase):
    pass


# =============================================================================
# ENUMS
# =============================================================================

class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    CHECKED_IN = "CHECKED_IN"
    CHECKED_OUT = "CHECKED_OUT"


class MappingSyncStatus(str, Enum):
    PENDING = "PENDING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class RestrictionType(str, Enum):
    CLOSE_TO_ARRIVAL = "CLOSE_TO_ARRIVAL"
    CLOSE_TO_DEPARTURE = "CLOSE_TO_DEPARTURE"
    CLOSE_TO_STAY = "CLOSE_TO_STAY"
    MIN_LENGTH = "MIN_LENGTH"
    MAX_LENGTH = "MAX_LENGTH"


class RoomScope(str, Enum):
    ALL_ROOMS = "ALL_ROOMS"
    SPECIFIC_ROOMS = "SPECIFIC_ROOMS"


class GuestType(str, Enum):
    MAIN_GUEST = "MAIN_GUEST"
    INVITED = "INVITED"
    MANUAL = "MANUAL"


class InvitationStatus(str, Enum):
    NOT_APPLICABLE = "NOT_APPLICABLE"
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"


class CompletionStatus(str, Enum):
    INCOMPLETE = "INCOMPLETE"
    PARTIAL = "PARTIAL"
    COMPLETE = "COMPLETE"


# =============================================================================
# SYNC STATE
# =============================================================================

class ChannelSyncStateMixin:
    """Outbound sync bookkeeping shared by all syncable entities."""

    needs_channel_sync: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    channel_sync_fail_count: Mapped[int] = mapped_column(Integer, default=0)
    last_channel_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_channel_sync_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class SyncJob(Base):
    """Retry record for an entity whose last push failed."""
    __tablename__ = "sync_jobs"
    __table_args__ = (UniqueConstraint("entity_type", "entity_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    entity_type: Mapped[str] = mapped_column(String(64))
    entity_id: Mapped[str] = mapped_column(String(36))
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_eligible_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


# =============================================================================
# ROOMS & CHANNEL MAPPINGS
# =============================================================================

class Room(Base):
    __tablename__ = "rooms"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255))
    # Flat price used when no rate policy applies
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    max_guests: Mapped[int] = mapped_column(Integer, default=2)


class RoomChannelMapping(ChannelSyncStateMixin, Base):
    __tablename__ = "room_channel_mappings"
    sync_entity_type = "room_mapping"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    local_room_id: Mapped[str] = mapped_column(ForeignKey("rooms.id"), unique=True)
    remote_room_id: Mapped[str] = mapped_column(String(64), unique=True)
    remote_room_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    auto_sync: Mapped[bool] = mapped_column(Boolean, default=True)
    markup_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2), nullable=True)
    min_stay: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_stay: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sync_status: Mapped[MappingSyncStatus] = mapped_column(
        _enum(MappingSyncStatus), default=MappingSyncStatus.PENDING
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


# =============================================================================
# PRICING
# =============================================================================

class RatePolicy(ChannelSyncStateMixin, Base):
    __tablename__ = "rate_policies"
    sync_entity_type = "rate_policy"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255))
    base_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class RoomRate(Base):
    __tablename__ = "room_rates"
    __table_args__ = (UniqueConstraint("room_id", "rate_policy_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    room_id: Mapped[str] = mapped_column(ForeignKey("rooms.id"), index=True)
    rate_policy_id: Mapped[str] = mapped_column(ForeignKey("rate_policies.id"), index=True)
    percentage_adjustment: Mapped[Decimal] = mapped_column(Numeric(6, 2), default=Decimal("0"))


class RateDateOverride(ChannelSyncStateMixin, Base):
    __tablename__ = "rate_date_overrides"
    sync_entity_type = "rate_date_override"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    room_id: Mapped[str] = mapped_column(ForeignKey("rooms.id"), index=True)
    stay_date: Mapped[date] = mapped_column("date", Date, index=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class BookingRestriction(ChannelSyncStateMixin, Base):
    __tablename__ = "booking_restrictions"
    sync_entity_type = "booking_restriction"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), default="")
    type: Mapped[RestrictionType] = mapped_column(_enum(RestrictionType))
    start_date: Mapped[date] = mapped_column(Date)
    end_date: Mapped[date] = mapped_column(Date)
    room_scope: Mapped[RoomScope] = mapped_column(_enum(RoomScope), default=RoomScope.ALL_ROOMS)
    room_ids: Mapped[List[str]] = mapped_column(JSON, default=list)
    # 0 = Sunday ... 6 = Saturday; empty means every day
    days_of_week: Mapped[List[int]] = mapped_column(JSON, default=list)
    min_length: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_length: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


# =============================================================================
# GUESTS & BOOKINGS
# =============================================================================

class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    middle_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    nationality: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    dob: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    passport_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    passport_expiry: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    passport_issued_country: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    id_card_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Booking(ChannelSyncStateMixin, Base):
    __tablename__ = "bookings"
    sync_entity_type = "booking"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    room_id: Mapped[str] = mapped_column(ForeignKey("rooms.id"), index=True)
    customer_id: Mapped[str] = mapped_column(ForeignKey("customers.id"), index=True)
    check_in: Mapped[datetime] = mapped_column(DateTime, index=True)
    check_out: Mapped[datetime] = mapped_column(DateTime, index=True)
    total_guests: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[BookingStatus] = mapped_column(
        _enum(BookingStatus), default=BookingStatus.PENDING
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    request: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    channel_booking_id: Mapped[Optional[str]] = mapped_column(
        String(64), unique=True, nullable=True
    )
    booking_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}


class GuestCheckInAccess(Base):
    __tablename__ = "guest_checkin_access"

    customer_id: Mapped[str] = mapped_column(ForeignKey("customers.id"), primary_key=True)
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.id"), primary_key=True)
    access_token: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    token_expires_at: Mapped[datetime] = mapped_column(DateTime)
    is_main_guest: Mapped[bool] = mapped_column(Boolean, default=False)
    guest_type: Mapped[GuestType] = mapped_column(_enum(GuestType))
    invitation_status: Mapped[InvitationStatus] = mapped_column(
        _enum(InvitationStatus), default=InvitationStatus.NOT_APPLICABLE
    )
    invited_by_customer_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("customers.id"), nullable=True
    )
    invitation_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    invitation_accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    personal_info_complete: Mapped[bool] = mapped_column(Boolean, default=False)
    identity_info_complete: Mapped[bool] = mapped_column(Boolean, default=False)
    address_info_complete: Mapped[bool] = mapped_column(Boolean, default=False)
    completion_status: Mapped[CompletionStatus] = mapped_column(
        _enum(CompletionStatus), default=CompletionStatus.INCOMPLETE
    )
    check_in_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
