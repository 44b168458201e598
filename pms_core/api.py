"""
Application Factory
===================

Builds the FastAPI app: channel webhooks, channel admin, online check-in and
check-in admin routers, plus the error handlers producing the uniform
response envelope.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .channel_manager.admin_routes import router as channel_admin_router
from .channel_manager.webhook_handlers import router as webhook_router
from .errors import PmsError
from .guest_checkin.admin_routes import router as checkin_admin_router
from .guest_checkin.routes import router as checkin_router
from .logging_config import configure_logging
from .responses import error_envelope

logger = structlog.get_logger(__name__)


async def pms_error_handler(request: Request, exc: PmsError):
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=exc.message)
    else:
        logger.info("Request rejected", path=request.url.path, status=exc.status_code, error=exc.message)
    return error_envelope(exc.status_code, exc.message, exc.data)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_envelope(exc.status_code, str(exc.detail))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    return error_envelope(400, "Validation failed", exc.errors())


def create_app(setup_logging: bool = True) -> FastAPI:
    if setup_logging:
        configure_logging()

    app = FastAPI(title="PMS Core", version="0.1.0")
    app.add_exception_handler(PmsError, pms_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(webhook_router)
    app.include_router(channel_admin_router)
    app.include_router(checkin_router)
    app.include_router(checkin_admin_router)
    return app
