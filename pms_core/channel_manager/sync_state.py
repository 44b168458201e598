"""
Channel Sync State
==================

Transitions of the per-entity sync state and the retry queue behind it.

    CLEAN --mark_dirty--> DIRTY --select_dirty--> IN-FLIGHT
    IN-FLIGHT --mark_synced--> CLEAN
    IN-FLIGHT --mark_failed--> DIRTY (fail count + 1, backoff scheduled)

An entity whose fail count reaches MAX_RETRY_ATTEMPTS is no longer selected
until ``reset_entity`` (or ``recover_exhausted`` after a cooldown) clears it.
"""

import random
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Type

import structlog
from sqlalchemy import and_, delete, func, or_, select

from ..models import (
    Booking,
    BookingRestriction,
    MappingSyncStatus,
    RateDateOverride,
    RatePolicy,
    RoomChannelMapping,
    SyncJob,
    utcnow,
)

logger = structlog.get_logger(__name__)

MAX_RETRY_ATTEMPTS = 3

# Booking metadata key: rooms the booking moved away from, pushed on the next pass
RELEASED_ROOMS_KEY = "released_room_ids"

SYNCABLE_MODELS = (
    RoomChannelMapping,
    RatePolicy,
    RateDateOverride,
    BookingRestriction,
    Booking,
)


def compute_backoff(attempts: int, rng: random.Random = None) -> float:
    """Seconds to wait before the next attempt: exponential with jitter."""
    rng = rng or random
    base_delays = [60, 120, 240, 480, 960]
    base = base_delays[min(max(attempts - 1, 0), len(base_delays) - 1)]
    jitter = rng.uniform(0, base / 2)
    return base + jitter


def _job_join(model):
    return and_(
        SyncJob.entity_type == model.sync_entity_type,
        SyncJob.entity_id == model.id,
    )


async def _get_job(session, entity) -> Optional[SyncJob]:
    result = await session.execute(
        select(SyncJob).where(
            SyncJob.entity_type == entity.sync_entity_type,
            SyncJob.entity_id == entity.id,
        )
    )
    return result.scalar_one_or_none()


def mark_dirty(entity) -> None:
    entity.needs_channel_sync = True
    if isinstance(entity, RoomChannelMapping) and entity.sync_status == MappingSyncStatus.SYNCED:
        entity.sync_status = MappingSyncStatus.PENDING


async def mark_synced(session, entity, now: Optional[datetime] = None) -> None:
    entity.needs_channel_sync = False
    entity.channel_sync_fail_count = 0
    entity.last_channel_sync_at = now or utcnow()
    entity.last_channel_sync_error = None
    if isinstance(entity, RoomChannelMapping):
        entity.sync_status = MappingSyncStatus.SYNCED

    await session.execute(
        delete(SyncJob).where(
            SyncJob.entity_type == entity.sync_entity_type,
            SyncJob.entity_id == entity.id,
        )
    )


async def mark_failed(
    session,
    entity,
    error: Exception,
    now: Optional[datetime] = None,
    rng: random.Random = None
) -> SyncJob:
    """Record a failed push and schedule the next eligible attempt."""
    now = now or utcnow()
    message = str(error)[:2000] or error.__class__.__name__

    entity.needs_channel_sync = True
    entity.channel_sync_fail_count = (entity.channel_sync_fail_count or 0) + 1
    entity.last_channel_sync_error = message
    if isinstance(entity, RoomChannelMapping):
        entity.sync_status = MappingSyncStatus.FAILED

    job = await _get_job(session, entity)
    if job is None:
        job = SyncJob(
            entity_type=entity.sync_entity_type,
            entity_id=entity.id,
            attempts=0,
        )
        session.add(job)

    job.attempts = (job.attempts or 0) + 1
    job.last_error = message
    job.next_eligible_at = now + timedelta(seconds=compute_backoff(job.attempts, rng))

    logger.warning(
        "Channel sync failed",
        entity_type=entity.sync_entity_type,
        entity_id=entity.id,
        fail_count=entity.channel_sync_fail_count,
        next_eligible_at=job.next_eligible_at.isoformat(),
        error=message,
    )
    return job


async def select_dirty(session, model: Type, now: Optional[datetime] = None, *criteria) -> List:
    """Dirty entities of ``model`` under the retry cap whose backoff has elapsed."""
    now = now or utcnow()
    stmt = (
        select(model)
        .outerjoin(SyncJob, _job_join(model))
        .where(
            model.needs_channel_sync.is_(True),
            model.channel_sync_fail_count < MAX_RETRY_ATTEMPTS,
            or_(SyncJob.id.is_(None), SyncJob.next_eligible_at <= now),
            *criteria
        )
    )
    result = await session.execute(stmt)
    return list(result.scalars().unique().all())


async def reset_entity(session, entity) -> None:
    """Operator reset: clear failures and queue the entity again."""
    entity.channel_sync_fail_count = 0
    entity.last_channel_sync_error = None
    entity.needs_channel_sync = True
    if isinstance(entity, RoomChannelMapping):
        entity.sync_status = MappingSyncStatus.PENDING

    await session.execute(
        delete(SyncJob).where(
            SyncJob.entity_type == entity.sync_entity_type,
            SyncJob.entity_id == entity.id,
        )
    )
    logger.info(
        "Channel sync state reset",
        entity_type=entity.sync_entity_type,
        entity_id=entity.id,
    )


async def recover_exhausted(session, now: datetime, cooldown: timedelta) -> int:
    """Reset entities stuck at the retry cap for longer than ``cooldown``."""
    recovered = 0
    for model in SYNCABLE_MODELS:
        result = await session.execute(
            select(model)
            .outerjoin(SyncJob, _job_join(model))
            .where(
                model.needs_channel_sync.is_(True),
                model.channel_sync_fail_count >= MAX_RETRY_ATTEMPTS,
                or_(SyncJob.id.is_(None), SyncJob.next_eligible_at <= now - cooldown),
            )
        )
        for entity in result.scalars().unique().all():
            await reset_entity(session, entity)
            recovered += 1

    if recovered:
        logger.info("Recovered exhausted sync entities", count=recovered)
    return recovered


async def count_sync_states(session) -> Dict[str, Dict[str, int]]:
    """Per entity type: how many rows are dirty and how many hit the cap."""
    summary = {}
    for model in SYNCABLE_MODELS:
        dirty = await session.scalar(
            select(func.count()).select_from(model).where(
                model.needs_channel_sync.is_(True),
                model.channel_sync_fail_count < MAX_RETRY_ATTEMPTS,
            )
        )
        exhausted = await session.scalar(
            select(func.count()).select_from(model).where(
                model.needs_channel_sync.is_(True),
                model.channel_sync_fail_count >= MAX_RETRY_ATTEMPTS,
            )
        )
        summary[model.sync_entity_type] = {"dirty": dirty or 0, "exhausted": exhausted or 0}
    return summary
