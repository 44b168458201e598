"""FastAPI dependencies shared by the routers."""

from typing import AsyncIterator

from fastapi import Depends

from .channel_manager.platform_adapters.base_adapter import ChannelAdapter
from .channel_manager.platform_adapters.beds24_adapter import build_beds24_adapter
from .channel_manager.sync_engine import ChannelSyncOrchestrator, RedisSyncLock
from .config import settings
from .database import get_db, get_session_factory
from .notifications import LoggingNotifier, Notifier

__all__ = [
    "get_channel_adapter",
    "get_db",
    "get_notifier",
    "get_sync_orchestrator",
    "get_session_factory",
]


async def get_channel_adapter() -> AsyncIterator[ChannelAdapter]:
    async with build_beds24_adapter() as adapter:
        yield adapter


def get_notifier() -> Notifier:
    return LoggingNotifier(settings.ADMIN_ALERT_EMAIL)


async def get_sync_orchestrator(
    adapter: ChannelAdapter = Depends(get_channel_adapter),
    notifier: Notifier = Depends(get_notifier)
):
    lock = RedisSyncLock(settings.REDIS_URL, ttl_seconds=settings.CHANNEL_SYNC_LOCK_TTL_SECONDS)
    return ChannelSyncOrchestrator(get_session_factory(), adapter, lock, notifier)
