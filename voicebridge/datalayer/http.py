"""DataLayer backed by the platform REST API.

One ``httpx.AsyncClient`` is created when the application starts and closed
when it stops; every call shares it through the injected ``HttpDataLayer``.

Endpoints used (all JSON, camelCase keys):

  GET   /tenants/by-phone/{phone}          tenant owning a dialed number
  GET   /tenants/{id}                      tenant by id
  POST  /call-sessions                     create call record → {"id": ...}
  PATCH /call-sessions/{id}                partial update
  GET   /tenants/{id}/availability         ?start=&end=&duration=
  POST  /tenants/{id}/clients/capture      create-or-update client
  POST  /tenants/{id}/bookings             create booking (409 on conflict)
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from voicebridge.errors import BookingConflictError, DataLayerError
from voicebridge.models import (
    Booking,
    CallSessionRecord,
    Client,
    TenantVoiceConfig,
    TimeSlot,
)

from .base import DataLayer

log = logging.getLogger("voicebridge.datalayer.http")


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


class HttpDataLayer(DataLayer):
    """DataLayer implementation talking to the platform over HTTP."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request, mapping transport failures to DataLayerError."""
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise DataLayerError(f"{method} {path} failed: {exc}") from exc

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.is_success:
            return
        raise DataLayerError(
            f"{resp.request.method} {resp.request.url.path} returned {resp.status_code}",
            status_code=resp.status_code,
        )

    async def _get_tenant(self, path: str) -> Optional[TenantVoiceConfig]:
        resp = await self._request("GET", path)
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp)
        try:
            return TenantVoiceConfig.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise DataLayerError(f"GET {path} returned a malformed tenant record: {exc}") from exc

    # ------------------------------------------------------------------
    # DataLayer interface
    # ------------------------------------------------------------------

    async def get_tenant_by_phone(self, phone_number: str) -> Optional[TenantVoiceConfig]:
        return await self._get_tenant(f"/tenants/by-phone/{quote(phone_number, safe='')}")

    async def get_tenant(self, tenant_id: str) -> Optional[TenantVoiceConfig]:
        return await self._get_tenant(f"/tenants/{quote(tenant_id, safe='')}")

    async def create_call_session(self, record: CallSessionRecord) -> str:
        payload = record.model_dump(mode="json", by_alias=True, exclude={"id"})
        resp = await self._request("POST", "/call-sessions", json=payload)
        self._raise_for_status(resp)
        return str(resp.json()["id"])

    async def update_call_session(self, record_id: str, fields: dict[str, Any]) -> None:
        payload = {to_camel(k): _jsonable(v) for k, v in fields.items()}
        resp = await self._request(
            "PATCH", f"/call-sessions/{quote(record_id, safe='')}", json=payload
        )
        self._raise_for_status(resp)

    async def get_available_slots(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        duration_minutes: int = 30,
    ) -> list[TimeSlot]:
        resp = await self._request(
            "GET",
            f"/tenants/{quote(tenant_id, safe='')}/availability",
            params={
                "start": start.isoformat(),
                "end": end.isoformat(),
                "duration": duration_minutes,
            },
        )
        self._raise_for_status(resp)
        return [TimeSlot.model_validate(s) for s in resp.json().get("slots", [])]

    async def capture_client(
        self,
        tenant_id: str,
        name: str = "",
        phone: Optional[str] = None,
        email: Optional[str] = None,
        notes: Optional[str] = None,
        source: str = "AI_AGENT",
    ) -> Client:
        resp = await self._request(
            "POST",
            f"/tenants/{quote(tenant_id, safe='')}/clients/capture",
            json={
                "name": name,
                "phone": phone,
                "email": email,
                "notes": notes,
                "source": source,
            },
        )
        self._raise_for_status(resp)
        return Client.model_validate(resp.json())

    async def create_booking(
        self,
        tenant_id: str,
        client_id: str,
        date: datetime,
        purpose: str = "General Consultation",
    ) -> Booking:
        resp = await self._request(
            "POST",
            f"/tenants/{quote(tenant_id, safe='')}/bookings",
            json={
                "clientId": client_id,
                "date": date.isoformat(),
                "purpose": purpose,
            },
        )
        if resp.status_code == 409:
            raise BookingConflictError("This time slot is already booked.", status_code=409)
        self._raise_for_status(resp)
        return Booking.model_validate(resp.json())

    async def aclose(self) -> None:
        await self._client.aclose()
        log.info("Data layer HTTP client closed")
