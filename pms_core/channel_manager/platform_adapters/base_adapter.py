"""
Base Channel Adapter
====================

Abstract base class defining the interface the sync orchestrator and the
booking reconciler use to talk to a channel manager. Concrete adapters turn
these calls into the platform's wire format and translate transport errors
into ``ChannelAdapterError``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
import structlog

from ...errors import ExternalServiceError

logger = structlog.get_logger(__name__)


class ChannelType(str, Enum):
    """Supported channel managers."""
    BEDS24 = "beds24"


@dataclass
class RoomDateUpdate:
    """Values pushed for one room on one date. None means leave unchanged."""
    price: Optional[Decimal] = None
    available: Optional[int] = None
    min_stay: Optional[int] = None
    max_stay: Optional[int] = None
    override: Optional[int] = None

    def merge(self, other: "RoomDateUpdate") -> "RoomDateUpdate":
        """Fields set on ``other`` win."""
        return RoomDateUpdate(
            price=other.price if other.price is not None else self.price,
            available=other.available if other.available is not None else self.available,
            min_stay=other.min_stay if other.min_stay is not None else self.min_stay,
            max_stay=other.max_stay if other.max_stay is not None else self.max_stay,
            override=other.override if other.override is not None else self.override,
        )


class ChannelAdapterError(ExternalServiceError):
    """Base exception for channel adapter errors."""
    def __init__(self, message: str, remote_status: Optional[int] = None, response_body: Optional[str] = None):
        self.remote_status = remote_status
        self.response_body = response_body
        super().__init__(message)


class AuthenticationError(ChannelAdapterError):
    """Raised when authentication fails (401, 403) or credentials are missing."""
    pass


class RateLimitError(ChannelAdapterError):
    """Raised when rate limit is exceeded (429)."""
    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message, 429)
        self.retry_after = retry_after


class ChannelAdapter(ABC):
    """
    Abstract base class for channel manager adapters.

    Adapters handle:
    - Room/date pushes (price, inventory, stay limits, closures)
    - Booking retrieval for reconciliation
    - Property metadata
    - Error handling and translation
    """

    def __init__(self, timeout: int = 30, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize the adapter.

        Args:
            timeout: HTTP request timeout in seconds
            transport: Optional httpx transport (used to stub the remote API)
        """
        self.timeout = timeout
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    @abstractmethod
    def channel_type(self) -> ChannelType:
        """Return the channel type for this adapter."""
        pass

    @property
    @abstractmethod
    def base_url(self) -> str:
        """Return the base API URL for this platform."""
        pass

    @property
    def headers(self) -> Dict[str, str]:
        """Return default headers for API requests."""
        return {
            "Content-Type": "application/json",
            "Accept": "application/json"
        }

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                transport=self.transport
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # =========================================================================
    # ABSTRACT METHODS - Must be implemented by each adapter
    # =========================================================================

    @abstractmethod
    async def test_connection(self) -> bool:
        """Return True if the credentials are accepted by the platform."""
        pass

    @abstractmethod
    async def get_rooms(self) -> List[Dict[str, Any]]:
        """List the rooms configured on the platform for this property."""
        pass

    @abstractmethod
    async def get_property_info(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def update_property(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def push_room_dates(
        self,
        remote_room_id: str,
        updates: Dict[date, RoomDateUpdate]
    ) -> None:
        """
        Push per-date values for one remote room.

        Args:
            remote_room_id: Platform room id
            updates: Values per date; unset fields are left unchanged remotely

        Raises:
            ChannelAdapterError: On API errors
        """
        pass

    @abstractmethod
    async def get_bookings(
        self,
        date_start: Optional[date] = None,
        date_end: Optional[date] = None
    ) -> List[Dict[str, Any]]:
        """
        Get bookings of the property, optionally limited to a date window.

        Returns:
            Raw booking payloads, parsed by ``schemas.parse_channel_message``
        """
        pass

    @abstractmethod
    async def get_room_bookings(self, remote_room_id: str) -> List[Dict[str, Any]]:
        """Current and future bookings of one remote room."""
        pass

    # =========================================================================
    # HELPER METHODS - Shared across adapters
    # =========================================================================

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        json: Optional[Dict] = None,
        params: Optional[Dict] = None,
        **kwargs
    ) -> httpx.Response:
        """
        Make an HTTP request with error handling.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            endpoint: API endpoint (relative to base_url)
            json: JSON body
            params: Query parameters

        Returns:
            httpx.Response

        Raises:
            ChannelAdapterError: On API errors
        """
        client = await self.get_client()

        try:
            response = await client.request(
                method=method,
                url=endpoint,
                json=json,
                params=params,
                **kwargs
            )
        except httpx.TimeoutException as e:
            logger.error(
                "HTTP request timed out",
                channel=self.channel_type.value,
                endpoint=endpoint,
                error=str(e)
            )
            raise ChannelAdapterError(f"Request timed out: {endpoint}")
        except httpx.RequestError as e:
            logger.error(
                "HTTP request failed",
                channel=self.channel_type.value,
                endpoint=endpoint,
                error=str(e)
            )
            raise ChannelAdapterError(f"Request failed: {e}")

        if response.status_code in (401, 403):
            raise AuthenticationError(
                "Authentication failed - check API credentials",
                remote_status=response.status_code,
                response_body=response.text
            )
        elif response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                "Rate limit exceeded",
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None
            )
        elif response.status_code >= 400:
            raise ChannelAdapterError(
                f"API error: {response.status_code}",
                remote_status=response.status_code,
                response_body=response.text
            )

        return response

    def _log_request(self, method: str, endpoint: str, **kwargs):
        """Log outgoing API request."""
        logger.info(
            "API request",
            channel=self.channel_type.value,
            method=method,
            endpoint=endpoint,
            **kwargs
        )

    def _log_response(self, response: httpx.Response, **kwargs):
        """Log API response."""
        logger.info(
            "API response",
            channel=self.channel_type.value,
            status_code=response.status_code,
            **kwargs
        )
