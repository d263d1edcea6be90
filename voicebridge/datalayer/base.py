"""Abstract base class for the platform data layer.

The bridge owns no durable storage. Tenant configuration, call session
records, clients and bookings all live behind this interface, which the
application builds once at startup and hands to every call.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from voicebridge.models import (
    Booking,
    CallSessionRecord,
    Client,
    TenantVoiceConfig,
    TimeSlot,
)


class DataLayer(ABC):
    """Request/response access to the platform's records.

    Implementations raise ``DataLayerError`` for transport or server
    failures and ``BookingConflictError`` when a booking slot is taken.
    Callers inside the bridge decide how each failure is surfaced.
    """

    @abstractmethod
    async def get_tenant_by_phone(self, phone_number: str) -> Optional[TenantVoiceConfig]:
        """Return the tenant owning ``phone_number``, or None if no tenant does."""

    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> Optional[TenantVoiceConfig]:
        """Return the tenant with ``tenant_id``, or None if it does not exist."""

    @abstractmethod
    async def create_call_session(self, record: CallSessionRecord) -> str:
        """Persist a new call session record and return its id."""

    @abstractmethod
    async def update_call_session(self, record_id: str, fields: dict[str, Any]) -> None:
        """Apply a partial update to an existing call session record.

        Args:
            record_id: Id returned by ``create_call_session``.
            fields: snake_case attribute names of ``CallSessionRecord``.
        """

    @abstractmethod
    async def get_available_slots(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        duration_minutes: int = 30,
    ) -> list[TimeSlot]:
        """Return open booking slots for the tenant within ``[start, end)``."""

    @abstractmethod
    async def capture_client(
        self,
        tenant_id: str,
        name: str = "",
        phone: Optional[str] = None,
        email: Optional[str] = None,
        notes: Optional[str] = None,
        source: str = "AI_AGENT",
    ) -> Client:
        """Create a client, or update the one matching phone/email.

        Dedup is the data layer's responsibility; the bridge does not try
        to enforce uniqueness itself.
        """

    @abstractmethod
    async def create_booking(
        self,
        tenant_id: str,
        client_id: str,
        date: datetime,
        purpose: str = "General Consultation",
    ) -> Booking:
        """Create a booking. Raises BookingConflictError if the slot is taken."""

    async def aclose(self) -> None:
        """Release connections held by the implementation."""
