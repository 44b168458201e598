"""
Room Mapping Store
==================

Maintains the one-to-one link between local rooms and Beds24 rooms together
with the per-room channel configuration (markup, stay limits, auto-sync).
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select

from ..errors import ConflictError, NotFoundError, ValidationError
from ..models import MappingSyncStatus, Room, RoomChannelMapping
from .sync_state import mark_dirty, reset_entity

logger = structlog.get_logger(__name__)

EDITABLE_FIELDS = frozenset({
    "remote_room_name",
    "is_active",
    "auto_sync",
    "markup_percent",
    "min_stay",
    "max_stay",
})


async def get_room_mapping(session, mapping_id: str) -> RoomChannelMapping:
    mapping = await session.get(RoomChannelMapping, mapping_id)
    if mapping is None:
        raise NotFoundError("RoomChannelMapping")
    return mapping


async def get_room_mapping_by_remote_id(
    session,
    remote_room_id: str,
    active_only: bool = True
) -> Optional[RoomChannelMapping]:
    stmt = select(RoomChannelMapping).where(RoomChannelMapping.remote_room_id == str(remote_room_id))
    if active_only:
        stmt = stmt.where(RoomChannelMapping.is_active.is_(True))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_room_mapping_by_local_id(session, local_room_id: str) -> Optional[RoomChannelMapping]:
    result = await session.execute(
        select(RoomChannelMapping).where(RoomChannelMapping.local_room_id == local_room_id)
    )
    return result.scalar_one_or_none()


async def list_room_mappings(session, active_only: bool = False) -> List[RoomChannelMapping]:
    stmt = select(RoomChannelMapping).order_by(RoomChannelMapping.created_at)
    if active_only:
        stmt = stmt.where(RoomChannelMapping.is_active.is_(True))
    result = await session.execute(stmt)
    return list(result.scalars().all())


def _validate_config(config: Dict[str, Any]) -> None:
    unknown = set(config) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown mapping fields: {', '.join(sorted(unknown))}")

    for flag in ("is_active", "auto_sync"):
        if flag in config and config[flag] is None:
            raise ValidationError(f"{flag} must be true or false")

    min_stay = config.get("min_stay")
    max_stay = config.get("max_stay")
    if min_stay is not None and min_stay < 1:
        raise ValidationError("min_stay must be at least 1")
    if min_stay is not None and max_stay is not None and max_stay < min_stay:
        raise ValidationError("max_stay must not be below min_stay")
    if config.get("markup_percent") is not None:
        config["markup_percent"] = Decimal(str(config["markup_percent"]))


async def create_room_mapping(
    session,
    local_room_id: str,
    remote_room_id: str,
    **config
) -> RoomChannelMapping:
    """
    Map a local room to a Beds24 room.

    A remote room already mapped to a different local room is a conflict and
    the existing mapping is left untouched. If the local room is already
    mapped, that mapping is re-pointed and queued for a full push.

    Raises:
        NotFoundError: If the local room does not exist
        ConflictError: If the remote room belongs to another local room
    """
    _validate_config(config)
    remote_room_id = str(remote_room_id)

    room = await session.get(Room, local_room_id)
    if room is None:
        raise NotFoundError("Room")

    taken = await get_room_mapping_by_remote_id(session, remote_room_id, active_only=False)
    if taken is not None and taken.local_room_id != local_room_id:
        raise ConflictError(
            f"Remote room {remote_room_id} is already mapped to another room",
            data={"mapping_id": taken.id, "local_room_id": taken.local_room_id}
        )

    mapping = await get_room_mapping_by_local_id(session, local_room_id)
    if mapping is None:
        mapping = RoomChannelMapping(
            local_room_id=local_room_id,
            remote_room_id=remote_room_id,
            channel_sync_fail_count=0,
        )
        session.add(mapping)

    mapping.remote_room_id = remote_room_id
    for field, value in config.items():
        setattr(mapping, field, value)
    mapping.sync_status = MappingSyncStatus.PENDING
    mark_dirty(mapping)

    await session.flush()
    logger.info(
        "Room mapping saved",
        mapping_id=mapping.id,
        local_room_id=local_room_id,
        remote_room_id=remote_room_id,
    )
    return mapping


async def update_room_mapping(session, mapping_id: str, **config) -> RoomChannelMapping:
    """Edit channel configuration; the room is queued for a push."""
    _validate_config(config)
    mapping = await get_room_mapping(session, mapping_id)

    merged_min = config.get("min_stay", mapping.min_stay)
    merged_max = config.get("max_stay", mapping.max_stay)
    if merged_min is not None and merged_max is not None and merged_max < merged_min:
        raise ValidationError("max_stay must not be below min_stay")

    for field, value in config.items():
        setattr(mapping, field, value)
    mark_dirty(mapping)

    await session.flush()
    return mapping


async def reset_sync_failures(session, mapping_id: str) -> RoomChannelMapping:
    mapping = await get_room_mapping(session, mapping_id)
    await reset_entity(session, mapping)
    await session.flush()
    return mapping
