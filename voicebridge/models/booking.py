"""Pydantic models for clients, bookings and availability."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from .base import CamelModel


class Client(CamelModel):
    """A contact record (lead or customer) owned by one tenant."""

    id: str
    tenant_id: str
    name: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None
    source: str = "AI_AGENT"


class Booking(CamelModel):
    """A scheduled appointment for exactly one tenant and one client."""

    id: str
    tenant_id: str
    client_id: str
    date: datetime
    purpose: str = "General Consultation"
    status: str = "Scheduled"


class TimeSlot(BaseModel):
    """A window of availability on the tenant's calendar."""

    start: datetime
    end: datetime
