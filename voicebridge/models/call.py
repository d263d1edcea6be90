"""Pydantic models for call session records."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .base import CamelModel


class CallDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class CallStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TranscriptEntry(BaseModel):
    """One utterance in the call transcript."""

    role: str  # "user" | "assistant"
    text: str
    at: datetime


class CallSessionRecord(CamelModel):
    """A phone call as persisted by the data layer."""

    id: Optional[str] = None
    tenant_id: str
    call_sid: str
    caller_phone: str = ""
    direction: CallDirection = CallDirection.INBOUND
    status: CallStatus = CallStatus.IN_PROGRESS
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    transcript: str = ""
    summary: Optional[str] = None
    action_items: list[str] = Field(default_factory=list)
    lead_score: Optional[int] = None
    sentiment: Optional[str] = None
