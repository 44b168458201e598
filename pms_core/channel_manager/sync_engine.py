"""
Channel Sync Engine
===================

Periodic outbound sync (PMS -> Beds24) plus a fallback inbound booking pull.

A pass walks the dirty entities in a fixed order:

1. rooms (channel mappings)
2. rate policies
3. rate date overrides
4. booking restrictions
5. booking availability
6. inbound bookings

Each entity is pushed and marked synced or failed on its own; one failure
never aborts the pass. Only one pass runs at a time: a scheduler tick that
finds the lock held does nothing.

Technology Stack:
- Celery beat for scheduling, Redis as broker and lock store
- httpx (via the Beds24 adapter) for the remote API
- Structured logging with structlog, Prometheus metrics
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as aioredis
import structlog
from celery import Celery
from celery.schedules import crontab
from prometheus_client import Counter, Histogram
from redis.exceptions import LockError
from sqlalchemy import and_, select

from ..config import settings
from ..database import get_engine, get_session_factory
from ..errors import NotFoundError, PmsError
from ..logging_config import configure_logging
from ..models import (
    Booking,
    BookingRestriction,
    RateDateOverride,
    RatePolicy,
    Room,
    RoomChannelMapping,
    RoomRate,
    RoomScope,
    utcnow,
)
from ..notifications import Notifier
from .availability import SYNC_BLOCKING_STATUSES, availability_calendar
from .platform_adapters.base_adapter import ChannelAdapter, RoomDateUpdate
from .platform_adapters.beds24_adapter import build_beds24_adapter
from .pricing import RateResolver
from .reconciler import BookingReconciler
from .restrictions import overlay_for
from .schemas import BookingNotification, parse_channel_message
from .sync_state import RELEASED_ROOMS_KEY, mark_failed, mark_synced, recover_exhausted, select_dirty

logger = structlog.get_logger(__name__)

# =============================================================================
# CELERY CONFIGURATION
# =============================================================================

celery = Celery(
    "pms_core",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["pms_core.guest_checkin.reminders"]
)

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,
    task_soft_time_limit=540,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)

celery.conf.beat_schedule = {
    "channel-sync-pass": {
        "task": "pms_core.channel_manager.sync_engine.run_channel_sync",
        "schedule": crontab(minute=f"*/{settings.CHANNEL_SYNC_INTERVAL_MINUTES}"),
    },
    "check-in-reminders": {
        "task": "pms_core.guest_checkin.reminders.send_check_in_reminders_task",
        "schedule": crontab(hour=settings.CHECK_IN_REMINDER_HOUR, minute=0),
    },
}

# =============================================================================
# PROMETHEUS METRICS
# =============================================================================

CHANNEL_PUSHES = Counter(
    "channel_sync_pushes_total",
    "Entities pushed to the channel manager",
    ["entity_type", "result"]  # result: synced, failed, skipped
)

SYNC_PASS_DURATION = Histogram(
    "channel_sync_pass_seconds",
    "Duration of a full channel sync pass",
    buckets=[1, 5, 15, 30, 60, 120, 300, 600]
)

SYNC_PASS_SKIPPED = Counter(
    "channel_sync_pass_skipped_total",
    "Sync ticks skipped because a pass was already running"
)

# =============================================================================
# SINGLE-FLIGHT LOCKS
# =============================================================================

class SyncLock(ABC):
    """Non-blocking mutual exclusion for sync passes."""

    @abstractmethod
    async def acquire(self) -> bool:
        pass

    @abstractmethod
    async def release(self) -> None:
        pass


class LocalSyncLock(SyncLock):
    """In-process lock for a single scheduler."""

    def __init__(self):
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    async def acquire(self) -> bool:
        if self._held:
            return False
        self._held = True
        return True

    async def release(self) -> None:
        self._held = False


class RedisSyncLock(SyncLock):
    """
    Lock shared by every worker and API process through Redis.

    The client lives only while the lock is held; a failed acquire closes it
    straight away.
    """

    def __init__(self, redis_url: str, name: str = "pms:channel-sync", ttl_seconds: int = 600):
        self.redis_url = redis_url
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.redis = None
        self._lock = None

    async def acquire(self) -> bool:
        self.redis = aioredis.from_url(self.redis_url)
        self._lock = self.redis.lock(self.name, timeout=self.ttl_seconds)
        try:
            acquired = await self._lock.acquire(blocking=False)
        except Exception:
            await self._close()
            raise
        if not acquired:
            await self._close()
        return acquired

    async def release(self) -> None:
        try:
            await self._lock.release()
        except LockError:
            logger.warning("Channel sync lock expired before release")
        finally:
            await self._close()

    async def _close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
        self.redis = None
        self._lock = None


# =============================================================================
# PASS REPORT
# =============================================================================

@dataclass
class StepReport:
    name: str
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    error: Optional[str] = None


@dataclass
class SyncPassReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool = False
    recovered: int = 0
    steps: List[StepReport] = field(default_factory=list)

    def step(self, name: str) -> StepReport:
        return next(s for s in self.steps if s.name == name)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


PushPlan = Dict[str, Dict[date, RoomDateUpdate]]


def _merge_plans(*plans: Dict[date, RoomDateUpdate]) -> Dict[date, RoomDateUpdate]:
    merged: Dict[date, RoomDateUpdate] = {}
    for plan in plans:
        for day, update in plan.items():
            merged[day] = merged[day].merge(update) if day in merged else update
    return merged


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class ChannelSyncOrchestrator:
    """Runs ordered sync passes against one channel adapter."""

    STEP_ORDER = (
        "rooms",
        "rate_policies",
        "date_overrides",
        "restrictions",
        "booking_availability",
        "inbound_bookings",
    )

    def __init__(
        self,
        session_factory,
        adapter: ChannelAdapter,
        lock: Optional[SyncLock] = None,
        notifier: Optional[Notifier] = None,
        horizon_days: Optional[int] = None,
        lookback_days: Optional[int] = None,
        auto_reset_minutes: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.session_factory = session_factory
        self.adapter = adapter
        self.lock = lock or LocalSyncLock()
        self.notifier = notifier
        self.horizon_days = horizon_days or settings.CHANNEL_SYNC_HORIZON_DAYS
        self.lookback_days = lookback_days or settings.INBOUND_PULL_LOOKBACK_DAYS
        self.auto_reset_minutes = (
            auto_reset_minutes if auto_reset_minutes is not None
            else settings.CHANNEL_SYNC_AUTO_RESET_MINUTES
        )
        self.clock = clock or utcnow

    async def run_pass(self) -> SyncPassReport:
        now = self.clock()
        report = SyncPassReport(started_at=now)

        if not await self.lock.acquire():
            SYNC_PASS_SKIPPED.inc()
            logger.info("Channel sync already running, skipping tick")
            report.skipped = True
            report.finished_at = now
            return report

        started = time.monotonic()
        try:
            if self.auto_reset_minutes:
                async with self.session_factory() as session:
                    report.recovered = await recover_exhausted(
                        session, now, timedelta(minutes=self.auto_reset_minutes)
                    )
                    await session.commit()

            for name in self.STEP_ORDER:
                step = StepReport(name=name)
                report.steps.append(step)
                try:
                    async with self.session_factory() as session:
                        await getattr(self, f"_sync_{name}")(session, step, now)
                except Exception as e:
                    step.error = str(e)
                    logger.error(
                        "Channel sync step failed",
                        step=name,
                        error=str(e),
                        exc_info=True,
                    )
        finally:
            await self.lock.release()
            SYNC_PASS_DURATION.observe(time.monotonic() - started)

        report.finished_at = self.clock()
        logger.info(
            "Channel sync pass completed",
            steps={s.name: {"synced": s.synced, "failed": s.failed, "skipped": s.skipped}
                   for s in report.steps},
        )
        return report

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _window(self, now: datetime):
        start = now.date()
        return start, start + timedelta(days=self.horizon_days)

    async def _process(
        self,
        session,
        step: StepReport,
        entity,
        build: Callable[[], Awaitable[PushPlan]],
        now: datetime
    ) -> None:
        """Build and push one entity's plan, then record the outcome."""
        entity_type = entity.sync_entity_type
        try:
            plan = await build()
            for remote_room_id, updates in plan.items():
                if updates:
                    await self.adapter.push_room_dates(remote_room_id, updates)
            await mark_synced(session, entity, now)
            if plan:
                step.synced += 1
                CHANNEL_PUSHES.labels(entity_type=entity_type, result="synced").inc()
            else:
                # Nothing mapped; the entity has no channel counterpart
                step.skipped += 1
                CHANNEL_PUSHES.labels(entity_type=entity_type, result="skipped").inc()
        except Exception as e:
            await mark_failed(session, entity, e, now)
            step.failed += 1
            CHANNEL_PUSHES.labels(entity_type=entity_type, result="failed").inc()
        await session.commit()

    async def _active_mappings(self, session, room_ids: Optional[List[str]] = None) -> List[RoomChannelMapping]:
        stmt = select(RoomChannelMapping).where(
            and_(
                RoomChannelMapping.is_active.is_(True),
                RoomChannelMapping.auto_sync.is_(True),
            )
        )
        if room_ids is not None:
            stmt = stmt.where(RoomChannelMapping.local_room_id.in_(room_ids))
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def _active_restrictions(self, session, include: Optional[BookingRestriction] = None) -> List[BookingRestriction]:
        result = await session.execute(
            select(BookingRestriction).where(BookingRestriction.is_active.is_(True))
        )
        restrictions = list(result.scalars().all())
        if include is not None and include not in restrictions:
            restrictions.append(include)
        return restrictions

    async def _price_plan(self, session, mapping, start: date, end: date) -> Dict[date, RoomDateUpdate]:
        room = await session.get(Room, mapping.local_room_id)
        if room is None:
            raise NotFoundError("Room")
        prices = await RateResolver(session).resolve_prices(room, start, end, mapping)
        return {day: RoomDateUpdate(price=price) for day, price in prices.items()}

    async def _inventory_plan(self, session, mapping, start: date, end: date) -> Dict[date, RoomDateUpdate]:
        calendar = await availability_calendar(
            session, mapping.local_room_id, start, end, SYNC_BLOCKING_STATUSES
        )
        return {day: RoomDateUpdate(available=inv) for day, inv in calendar.items()}

    def _restriction_plan(self, restrictions, mapping, days) -> Dict[date, RoomDateUpdate]:
        return {day: overlay_for(restrictions, mapping, day) for day in days}

    # =========================================================================
    # STEPS
    # =========================================================================

    async def _sync_rooms(self, session, step: StepReport, now: datetime) -> None:
        start, end = self._window(now)
        mappings = await select_dirty(
            session,
            RoomChannelMapping,
            now,
            RoomChannelMapping.is_active.is_(True),
            RoomChannelMapping.auto_sync.is_(True),
        )
        restrictions = await self._active_restrictions(session)
        days = [start + timedelta(days=i) for i in range(self.horizon_days)]

        for mapping in mappings:
            async def build(mapping=mapping):
                return {
                    mapping.remote_room_id: _merge_plans(
                        await self._price_plan(session, mapping, start, end),
                        await self._inventory_plan(session, mapping, start, end),
                        self._restriction_plan(restrictions, mapping, days),
                    )
                }
            await self._process(session, step, mapping, build, now)

    async def _sync_rate_policies(self, session, step: StepReport, now: datetime) -> None:
        start, end = self._window(now)
        policies = await select_dirty(session, RatePolicy, now)

        for policy in policies:
            async def build(policy=policy):
                result = await session.execute(
                    select(RoomRate.room_id).where(RoomRate.rate_policy_id == policy.id)
                )
                room_ids = [row[0] for row in result.all()]
                plan = {}
                if room_ids:
                    for mapping in await self._active_mappings(session, room_ids):
                        plan[mapping.remote_room_id] = await self._price_plan(session, mapping, start, end)
                return plan
            await self._process(session, step, policy, build, now)

    async def _sync_date_overrides(self, session, step: StepReport, now: datetime) -> None:
        start, end = self._window(now)
        overrides = await select_dirty(session, RateDateOverride, now)

        for override in overrides:
            async def build(override=override):
                if not (start <= override.stay_date < end):
                    return {}
                mappings = await self._active_mappings(session, [override.room_id])
                return {
                    m.remote_room_id: await self._price_plan(
                        session, m, override.stay_date, override.stay_date + timedelta(days=1)
                    )
                    for m in mappings
                }
            await self._process(session, step, override, build, now)

    async def _sync_restrictions(self, session, step: StepReport, now: datetime) -> None:
        start, end = self._window(now)
        dirty = await select_dirty(session, BookingRestriction, now)

        for restriction in dirty:
            async def build(restriction=restriction):
                first = max(restriction.start_date, start)
                last = min(restriction.end_date, end - timedelta(days=1))
                days = [first + timedelta(days=i) for i in range((last - first).days + 1)]
                if not days:
                    return {}

                if restriction.room_scope == RoomScope.ALL_ROOMS:
                    mappings = await self._active_mappings(session)
                else:
                    mappings = await self._active_mappings(session, list(restriction.room_ids or []))

                # Values come from every active restriction so clearing this one
                # never wipes another restriction on the same dates.
                restrictions = await self._active_restrictions(session, include=restriction)
                return {
                    m.remote_room_id: self._restriction_plan(restrictions, m, days)
                    for m in mappings
                }
            await self._process(session, step, restriction, build, now)

    async def _sync_booking_availability(self, session, step: StepReport, now: datetime) -> None:
        start, end = self._window(now)
        bookings = await select_dirty(session, Booking, now)

        for booking in bookings:
            released = list((booking.booking_metadata or {}).get(RELEASED_ROOMS_KEY, []))

            async def build(booking=booking, released=released):
                if booking.check_out.date() <= start:
                    return {}
                mappings = await self._active_mappings(session, [booking.room_id, *released])
                return {
                    m.remote_room_id: await self._inventory_plan(session, m, start, end)
                    for m in mappings
                }
            await self._process(session, step, booking, build, now)

            if released and not booking.needs_channel_sync:
                metadata = dict(booking.booking_metadata)
                metadata.pop(RELEASED_ROOMS_KEY, None)
                booking.booking_metadata = metadata
                await session.commit()

    async def _sync_inbound_bookings(self, session, step: StepReport, now: datetime) -> None:
        today = now.date()
        raw_bookings = await self.adapter.get_bookings(
            today - timedelta(days=self.lookback_days),
            today + timedelta(days=self.horizon_days),
        )
        reconciler = BookingReconciler(
            session,
            self.adapter,
            self.notifier,
            horizon_days=self.horizon_days,
            today=lambda: today,
        )

        for raw in raw_bookings:
            try:
                notification = parse_channel_message(raw)
                if not isinstance(notification, BookingNotification):
                    step.skipped += 1
                    continue
                await reconciler.reconcile(notification, push_availability=False)
                step.synced += 1
            except NotFoundError:
                await session.rollback()
                step.skipped += 1
            except PmsError as e:
                await session.rollback()
                step.failed += 1
                logger.warning(
                    "Inbound booking rejected",
                    channel_booking_id=raw.get("bookId") if isinstance(raw, dict) else None,
                    error=e.message,
                )

        # Bookings created or moved by the pull reach the channel in this pass
        await reconciler.push_touched_rooms()


# =============================================================================
# CELERY TASKS
# =============================================================================

async def _run_channel_sync() -> dict:
    adapter = build_beds24_adapter()
    lock = RedisSyncLock(settings.REDIS_URL, ttl_seconds=settings.CHANNEL_SYNC_LOCK_TTL_SECONDS)
    try:
        async with adapter:
            orchestrator = ChannelSyncOrchestrator(get_session_factory(), adapter, lock)
            report = await orchestrator.run_pass()
    finally:
        # Pooled connections are bound to this task's event loop
        await get_engine().dispose()
    return report.to_dict()


@celery.task
def run_channel_sync() -> dict:
    """Scheduled sync pass. A tick that finds a pass running is a no-op."""
    configure_logging()
    return asyncio.run(_run_channel_sync())


def trigger_channel_sync_now() -> str:
    """Queue an immediate pass; the pass lock still applies."""
    result = run_channel_sync.delay()
    logger.info("Manual channel sync queued", task_id=result.id)
    return result.id
