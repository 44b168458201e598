"""Uniform response envelope: ``{"status", "message", "data"}``."""

from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def envelope(data: Any = None, message: str = "OK", status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "status": status_code,
            "message": message,
            "data": jsonable_encoder(data) if data is not None else None,
        },
    )


def error_envelope(status_code: int, message: str, data: Optional[Any] = None) -> JSONResponse:
    return envelope(data=data, message=message, status_code=status_code)
