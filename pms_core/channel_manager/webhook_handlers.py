"""
Webhook Handlers
================

FastAPI endpoints receiving Beds24 notifications.

Endpoints:
- POST /webhook/inventory - A room's bookings changed; pull and reconcile it
- POST /webhook/generic - Room sync or a full booking payload
- GET /webhook/health

Receipt is always acknowledged with 200 once the source is accepted;
processing failures are logged and reported in the body, never as an HTTP
error, so Beds24 does not disable the hook.
"""

import json
import time
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from prometheus_client import Counter, Histogram
from pydantic import BaseModel

from ..config import Settings, get_settings
from ..dependencies import get_channel_adapter, get_db, get_notifier
from ..errors import PmsError
from ..models import utcnow
from .reconciler import BookingReconciler
from .schemas import BookingNotification, InventoryNotification, parse_channel_message

logger = structlog.get_logger(__name__)

# =============================================================================
# PROMETHEUS METRICS
# =============================================================================

WEBHOOK_RECEIVED = Counter(
    "channel_webhook_received_total",
    "Total webhooks received",
    ["endpoint", "kind"]
)

WEBHOOK_PROCESSED = Counter(
    "channel_webhook_processed_total",
    "Total webhooks processed",
    ["endpoint", "status"]  # status: processed, ignored, error
)

WEBHOOK_LATENCY = Histogram(
    "channel_webhook_processing_seconds",
    "Webhook processing latency",
    ["endpoint"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# =============================================================================
# ROUTER SETUP
# =============================================================================

router = APIRouter(
    prefix="/webhook",
    tags=["Beds24 Webhooks"]
)


class WebhookResponse(BaseModel):
    status: str
    message: Optional[str] = None
    kind: Optional[str] = None


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

async def verify_source_ip(request: Request, settings: Settings = Depends(get_settings)) -> None:
    """Reject callers outside the configured allowlist (if any)."""
    allowed = settings.webhook_allowed_ips
    if settings.is_local or not allowed:
        return

    client_ip = request.client.host if request.client else None
    if client_ip not in allowed:
        logger.warning("Webhook from unauthorized IP", client_ip=client_ip)
        raise HTTPException(status_code=403, detail="Forbidden")


async def _handle(endpoint: str, request: Request, session, adapter, notifier) -> WebhookResponse:
    started = time.monotonic()
    body = await request.body()

    try:
        data = json.loads(body or b"{}")
        message = parse_channel_message(data)
    except (ValueError, PmsError) as e:
        WEBHOOK_RECEIVED.labels(endpoint=endpoint, kind="unknown").inc()
        WEBHOOK_PROCESSED.labels(endpoint=endpoint, status="ignored").inc()
        logger.warning(
            "Unrecognized webhook payload",
            endpoint=endpoint,
            error=getattr(e, "message", str(e)),
        )
        return WebhookResponse(status="ignored", message="Unrecognized payload")

    WEBHOOK_RECEIVED.labels(endpoint=endpoint, kind=message.kind).inc()
    reconciler = BookingReconciler(session, adapter, notifier)

    try:
        if isinstance(message, InventoryNotification):
            logger.info("Room sync requested", remote_room_id=message.room_id, endpoint=endpoint)
            await reconciler.reconcile_room(message.room_id)
        elif isinstance(message, BookingNotification):
            logger.info("Booking webhook received", channel_booking_id=message.book_id)
            await reconciler.reconcile(message)
    except Exception as e:
        await session.rollback()
        WEBHOOK_PROCESSED.labels(endpoint=endpoint, status="error").inc()
        logger.error(
            "Error processing webhook",
            endpoint=endpoint,
            kind=message.kind,
            error=str(e),
        )
        return WebhookResponse(status="error", message="Processing error", kind=message.kind)

    WEBHOOK_PROCESSED.labels(endpoint=endpoint, status="processed").inc()
    WEBHOOK_LATENCY.labels(endpoint=endpoint).observe(time.monotonic() - started)
    return WebhookResponse(status="processed", kind=message.kind)


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/inventory", response_model=WebhookResponse, dependencies=[Depends(verify_source_ip)])
async def inventory_webhook(
    request: Request,
    session=Depends(get_db),
    adapter=Depends(get_channel_adapter),
    notifier=Depends(get_notifier)
):
    """Beds24 inventory notification: pull the room's bookings and reconcile."""
    return await _handle("inventory", request, session, adapter, notifier)


@router.post("/generic", response_model=WebhookResponse, dependencies=[Depends(verify_source_ip)])
async def generic_webhook(
    request: Request,
    session=Depends(get_db),
    adapter=Depends(get_channel_adapter),
    notifier=Depends(get_notifier)
):
    return await _handle("generic", request, session, adapter, notifier)


@router.get("/health")
async def webhook_health():
    return {"status": "ok", "timestamp": utcnow().isoformat()}
