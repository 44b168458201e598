"""
Beds24 Adapter
==============

Adapter for the Beds24 JSON API.

Endpoints:
- POST /json/getProperties - Connection test, property listing
- POST /json/getProperty - Property details and room types
- POST /json/setProperty - Property updates
- POST /json/setRoomDates - Per-date price, inventory, stay limits, closures
- POST /json/getBookings - Bookings of the property

Authentication travels in the request body: the account API key on every
call, plus the property key on property-scoped calls. A body containing an
``error`` key is a failure even with HTTP 200.
"""

from datetime import date
from typing import Any, Dict, List, Optional

import httpx
import structlog

from ...config import settings
from .base_adapter import (
    AuthenticationError,
    ChannelAdapter,
    ChannelAdapterError,
    ChannelType,
    RoomDateUpdate,
)

logger = structlog.get_logger(__name__)

MIN_PROP_KEY_LENGTH = 16


class Beds24Adapter(ChannelAdapter):
    """Adapter for one Beds24 property."""

    def __init__(
        self,
        api_key: str,
        prop_key: Optional[str] = None,
        property_id: Optional[str] = None,
        base_url: str = "https://api.beds24.com",
        timeout: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(timeout=timeout, transport=transport)
        self.api_key = api_key
        self.prop_key = prop_key
        self.property_id = property_id
        self._base_url = base_url.rstrip("/")

    @property
    def channel_type(self) -> ChannelType:
        return ChannelType.BEDS24

    @property
    def base_url(self) -> str:
        return self._base_url

    # =========================================================================
    # REQUEST HELPERS
    # =========================================================================

    def _authentication(self, with_prop_key: bool = False) -> Dict[str, str]:
        if not self.api_key:
            raise AuthenticationError("Beds24 API key is not configured")

        auth = {"apiKey": self.api_key}
        if with_prop_key:
            if not self.prop_key or len(self.prop_key) < MIN_PROP_KEY_LENGTH:
                raise AuthenticationError(
                    f"Beds24 property key must be at least {MIN_PROP_KEY_LENGTH} characters"
                )
            auth["propKey"] = self.prop_key
        return auth

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Any:
        response = await self._make_request("POST", endpoint, json=payload)
        self._log_response(response, endpoint=endpoint)

        try:
            data = response.json()
        except ValueError:
            raise ChannelAdapterError(
                f"Invalid JSON from {endpoint}",
                remote_status=response.status_code,
                response_body=response.text
            )

        if isinstance(data, dict) and data.get("error"):
            raise ChannelAdapterError(
                f"Beds24 error: {data['error']}",
                remote_status=response.status_code,
                response_body=response.text
            )
        return data

    @staticmethod
    def format_room_date(update: RoomDateUpdate) -> Dict[str, str]:
        """Encode one date's values in the setRoomDates field codes."""
        fields = {}
        if update.price is not None:
            fields["p1"] = f"{update.price:.2f}"
        if update.available is not None:
            fields["i"] = str(update.available)
        if update.min_stay is not None:
            fields["mn"] = str(update.min_stay)
        if update.max_stay is not None:
            fields["mx"] = str(update.max_stay)
        if update.override is not None:
            fields["o"] = str(update.override)
        return fields

    # =========================================================================
    # PROPERTY
    # =========================================================================

    async def test_connection(self) -> bool:
        try:
            await self._post("/json/getProperties", {"authentication": self._authentication()})
            return True
        except ChannelAdapterError as e:
            logger.warning("Beds24 connection test failed", error=e.message)
            return False

    async def get_property_info(self) -> Dict[str, Any]:
        data = await self._post(
            "/json/getProperty",
            {"authentication": self._authentication(with_prop_key=True)}
        )
        return data if isinstance(data, dict) else {"data": data}

    async def get_rooms(self) -> List[Dict[str, Any]]:
        info = await self.get_property_info()
        prop = info.get("getProperty", [info])
        if isinstance(prop, list):
            prop = prop[0] if prop else {}
        return list(prop.get("roomTypes", []))

    async def update_property(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        self._log_request("POST", "/json/setProperty", fields=sorted(changes))
        payload = {"authentication": self._authentication(with_prop_key=True)}
        payload.update(changes)
        data = await self._post("/json/setProperty", payload)
        return data if isinstance(data, dict) else {"data": data}

    # =========================================================================
    # ROOM DATES
    # =========================================================================

    async def push_room_dates(
        self,
        remote_room_id: str,
        updates: Dict[date, RoomDateUpdate]
    ) -> None:
        """
        Push per-date values for one room via setRoomDates.

        Dates are keyed ``YYYYMMDD``; dates without any set field are omitted.
        """
        dates = {}
        for day in sorted(updates):
            fields = self.format_room_date(updates[day])
            if fields:
                dates[day.strftime("%Y%m%d")] = fields

        if not dates:
            return

        self._log_request(
            "POST",
            "/json/setRoomDates",
            room_id=remote_room_id,
            dates=len(dates)
        )

        await self._post(
            "/json/setRoomDates",
            {
                "authentication": self._authentication(with_prop_key=True),
                "roomId": remote_room_id,
                "dates": dates,
            }
        )

    # =========================================================================
    # BOOKINGS
    # =========================================================================

    async def get_bookings(
        self,
        date_start: Optional[date] = None,
        date_end: Optional[date] = None
    ) -> List[Dict[str, Any]]:
        payload = {
            "authentication": self._authentication(),
            "propId": self.property_id,
        }
        if date_start:
            payload["dateStart"] = date_start.isoformat()
        if date_end:
            payload["dateEnd"] = date_end.isoformat()

        data = await self._post("/json/getBookings", payload)
        return list(data or [])

    async def get_room_bookings(self, remote_room_id: str) -> List[Dict[str, Any]]:
        payload = {
            "authentication": self._authentication(),
            "propId": self.property_id,
            "roomId": remote_room_id,
            "departureFrom": date.today().strftime("%Y%m%d"),
        }
        data = await self._post("/json/getBookings", payload)
        return list(data or [])


def build_beds24_adapter(transport: Optional[httpx.AsyncBaseTransport] = None) -> Beds24Adapter:
    """Adapter configured from settings."""
    return Beds24Adapter(
        api_key=settings.BEDS24_API_KEY,
        prop_key=settings.BEDS24_PROP_KEY,
        property_id=settings.BEDS24_PROPERTY_ID,
        base_url=settings.BEDS24_BASE_URL,
        timeout=settings.BEDS24_TIMEOUT_SECONDS,
        transport=transport
    )
