"""
Channel Manager Admin Routes
============================

Operator endpoints for room mappings and the sync scheduler. Staff
authentication is applied by the hosting application.

Endpoints:
- POST  /admin/channel/mappings
- GET   /admin/channel/mappings
- PATCH /admin/channel/mappings/{mapping_id}
- POST  /admin/channel/mappings/{mapping_id}/reset
- POST  /admin/channel/sync
- GET   /admin/channel/sync/status
- GET   /admin/channel/connection
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from ..dependencies import get_channel_adapter, get_db, get_sync_orchestrator
from ..models import MappingSyncStatus
from ..responses import envelope
from .mappings import create_room_mapping, list_room_mappings, reset_sync_failures, update_room_mapping
from .sync_state import count_sync_states

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/admin/channel",
    tags=["Channel Manager Admin"]
)


# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================

class MappingConfig(BaseModel):
    remote_room_name: Optional[str] = None
    is_active: Optional[bool] = None
    auto_sync: Optional[bool] = None
    markup_percent: Optional[Decimal] = Field(default=None, ge=-100)
    min_stay: Optional[int] = Field(default=None, ge=1)
    max_stay: Optional[int] = Field(default=None, ge=1)


class MappingCreate(MappingConfig):
    local_room_id: str
    remote_room_id: str = Field(min_length=1)


class MappingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    local_room_id: str
    remote_room_id: str
    remote_room_name: Optional[str]
    is_active: bool
    auto_sync: bool
    markup_percent: Optional[Decimal]
    min_stay: Optional[int]
    max_stay: Optional[int]
    sync_status: MappingSyncStatus
    needs_channel_sync: bool
    channel_sync_fail_count: int
    last_channel_sync_at: Optional[datetime]
    last_channel_sync_error: Optional[str]


def _out(mapping) -> dict:
    return MappingOut.model_validate(mapping).model_dump(mode="json")


# =============================================================================
# MAPPINGS
# =============================================================================

@router.post("/mappings")
async def create_mapping(payload: MappingCreate, session=Depends(get_db)):
    config = payload.model_dump(exclude={"local_room_id", "remote_room_id"}, exclude_none=True)
    mapping = await create_room_mapping(
        session,
        payload.local_room_id,
        payload.remote_room_id,
        **config
    )
    await session.commit()
    return envelope(_out(mapping), "Room mapping saved", status_code=201)


@router.get("/mappings")
async def get_mappings(active_only: bool = False, session=Depends(get_db)):
    mappings = await list_room_mappings(session, active_only=active_only)
    return envelope([_out(m) for m in mappings])


@router.patch("/mappings/{mapping_id}")
async def patch_mapping(mapping_id: str, payload: MappingConfig, session=Depends(get_db)):
    mapping = await update_room_mapping(session, mapping_id, **payload.model_dump(exclude_unset=True))
    await session.commit()
    return envelope(_out(mapping), "Room mapping updated")


@router.post("/mappings/{mapping_id}/reset")
async def reset_mapping(mapping_id: str, session=Depends(get_db)):
    mapping = await reset_sync_failures(session, mapping_id)
    await session.commit()
    return envelope(_out(mapping), "Sync failures reset")


# =============================================================================
# SYNC
# =============================================================================

@router.post("/sync")
async def trigger_sync(orchestrator=Depends(get_sync_orchestrator)):
    """Run a pass now. Returns immediately with skipped=true if one is running."""
    report = await orchestrator.run_pass()
    message = "Sync already running" if report.skipped else "Sync completed"
    logger.info("Manual channel sync", skipped=report.skipped)
    return envelope(report.to_dict(), message)


@router.get("/sync/status")
async def sync_status(session=Depends(get_db)):
    return envelope(await count_sync_states(session))


@router.get("/connection")
async def test_connection(adapter=Depends(get_channel_adapter)):
    connected = await adapter.test_connection()
    return envelope({"connected": connected})
