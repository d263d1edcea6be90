"""In-memory DataLayer for local development and tests.

Mirrors the platform's behavior closely enough to exercise the bridge:
unique tenant phone numbers, client dedup by phone/email, booking conflicts
on an already-taken start time, and weekday business-hours availability.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, time, timedelta
from typing import Any, Optional

from voicebridge.errors import BookingConflictError, DataLayerError
from voicebridge.models import (
    Booking,
    CallSessionRecord,
    Client,
    TenantVoiceConfig,
    TimeSlot,
)

from .base import DataLayer

log = logging.getLogger("voicebridge.datalayer.memory")

BUSINESS_OPEN = time(9, 0)
BUSINESS_CLOSE = time(17, 0)


class InMemoryDataLayer(DataLayer):
    def __init__(self, tenants: Optional[list[TenantVoiceConfig]] = None) -> None:
        self._tenants: dict[str, TenantVoiceConfig] = {}
        self.call_sessions: dict[str, CallSessionRecord] = {}
        self.clients: dict[str, Client] = {}
        self.bookings: dict[str, Booking] = {}
        for tenant in tenants or []:
            self.add_tenant(tenant)

    # ── Tenant management (dashboard side) ───────────────────────

    def add_tenant(self, tenant: TenantVoiceConfig) -> None:
        """Register a tenant. Phone numbers are unique across tenants."""
        if tenant.phone_number:
            for other in self._tenants.values():
                if other.id != tenant.id and other.phone_number == tenant.phone_number:
                    raise ValueError(
                        f"Phone number {tenant.phone_number} already belongs to tenant {other.id}"
                    )
        self._tenants[tenant.id] = tenant.model_copy(deep=True)

    def update_tenant(self, tenant_id: str, **fields: Any) -> None:
        """Apply a dashboard edit to a stored tenant."""
        current = self._tenants[tenant_id]
        self._tenants[tenant_id] = current.model_copy(update=fields, deep=True)

    # ── DataLayer interface ──────────────────────────────────────

    async def get_tenant_by_phone(self, phone_number: str) -> Optional[TenantVoiceConfig]:
        for tenant in self._tenants.values():
            if tenant.phone_number and tenant.phone_number == phone_number:
                return tenant.model_copy(deep=True)
        return None

    async def get_tenant(self, tenant_id: str) -> Optional[TenantVoiceConfig]:
        tenant = self._tenants.get(tenant_id)
        return tenant.model_copy(deep=True) if tenant else None

    async def create_call_session(self, record: CallSessionRecord) -> str:
        record_id = uuid.uuid4().hex
        self.call_sessions[record_id] = record.model_copy(update={"id": record_id})
        return record_id

    async def update_call_session(self, record_id: str, fields: dict[str, Any]) -> None:
        record = self.call_sessions.get(record_id)
        if record is None:
            raise DataLayerError(f"Call session {record_id} not found", status_code=404)
        self.call_sessions[record_id] = record.model_copy(update=fields)

    async def get_available_slots(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        duration_minutes: int = 30,
    ) -> list[TimeSlot]:
        taken = {
            b.date
            for b in self.bookings.values()
            if b.tenant_id == tenant_id and b.status != "Cancelled"
        }
        step = timedelta(minutes=duration_minutes)
        slots: list[TimeSlot] = []

        day = start.replace(hour=0, minute=0, second=0, microsecond=0)
        while day < end:
            if day.weekday() < 5:
                cursor = day.replace(hour=BUSINESS_OPEN.hour, minute=BUSINESS_OPEN.minute)
                close = day.replace(hour=BUSINESS_CLOSE.hour, minute=BUSINESS_CLOSE.minute)
                while cursor + step <= close:
                    if cursor >= start and cursor + step <= end and cursor not in taken:
                        slots.append(TimeSlot(start=cursor, end=cursor + step))
                    cursor += step
            day += timedelta(days=1)
        return slots

    async def capture_client(
        self,
        tenant_id: str,
        name: str = "",
        phone: Optional[str] = None,
        email: Optional[str] = None,
        notes: Optional[str] = None,
        source: str = "AI_AGENT",
    ) -> Client:
        for client in self.clients.values():
            if client.tenant_id != tenant_id:
                continue
            if (email and client.email == email) or (phone and client.phone == phone):
                if notes:
                    merged = f"{client.notes or ''}\n[Update]: {notes}".strip()
                    client = client.model_copy(update={"notes": merged})
                    self.clients[client.id] = client
                return client

        client = Client(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            name=name or "Unknown Caller",
            phone=phone,
            email=email,
            notes=notes,
            source=source,
        )
        self.clients[client.id] = client
        return client

    async def create_booking(
        self,
        tenant_id: str,
        client_id: str,
        date: datetime,
        purpose: str = "General Consultation",
    ) -> Booking:
        for booking in self.bookings.values():
            if (
                booking.tenant_id == tenant_id
                and booking.date == date
                and booking.status != "Cancelled"
            ):
                raise BookingConflictError("This time slot is already booked.", status_code=409)

        booking = Booking(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            client_id=client_id,
            date=date,
            purpose=purpose,
        )
        self.bookings[booking.id] = booking
        log.info("Booking %s created for tenant %s", booking.id, tenant_id)
        return booking
