from .base_adapter import (
    AuthenticationError,
    ChannelAdapter,
    ChannelAdapterError,
    ChannelType,
    RateLimitError,
    RoomDateUpdate,
)
from .beds24_adapter import Beds24Adapter, build_beds24_adapter

__all__ = [
    "AuthenticationError",
    "Beds24Adapter",
    "ChannelAdapter",
    "ChannelAdapterError",
    "ChannelType",
    "RateLimitError",
    "RoomDateUpdate",
    "build_beds24_adapter",
]
