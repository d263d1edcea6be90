"""Per-call state for the media bridge.

Each Twilio Media Stream connection gets one ``CallState`` that:
  1. Tracks the bridge state machine (IDLE → ... → TERMINATED)
  2. Holds the tenant snapshot resolved when the stream started
  3. Accumulates the transcript (append-only)
  4. Tracks playback marks and timestamps needed for barge-in
  5. Carries the call session record id and the finalize guard

Active calls are listed through a ``SessionRegistry`` that the application
creates at startup and injects into every bridge.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from voicebridge.errors import InvalidTransitionError
from voicebridge.models import CallDirection, TenantVoiceConfig, TranscriptEntry

log = logging.getLogger("voicebridge.session")


def redact_pii(value: str) -> str:
    """Mask PII for logging: show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


class BridgeState(str, Enum):
    IDLE = "idle"
    STREAM_STARTED = "stream_started"
    MODEL_CONNECTED = "model_connected"
    ACTIVE = "active"
    CLOSING = "closing"
    TERMINATED = "terminated"


# TERMINATED is reachable from every state and is handled in advance().
_TRANSITIONS: dict[BridgeState, frozenset[BridgeState]] = {
    BridgeState.IDLE: frozenset({BridgeState.STREAM_STARTED, BridgeState.CLOSING}),
    BridgeState.STREAM_STARTED: frozenset({BridgeState.MODEL_CONNECTED, BridgeState.CLOSING}),
    BridgeState.MODEL_CONNECTED: frozenset({BridgeState.ACTIVE, BridgeState.CLOSING}),
    BridgeState.ACTIVE: frozenset({BridgeState.ACTIVE, BridgeState.CLOSING}),
    BridgeState.CLOSING: frozenset(),
    BridgeState.TERMINATED: frozenset(),
}


@dataclass
class CallState:
    """Everything the bridge knows about one live call."""

    call_sid: str = ""
    stream_sid: str = ""
    caller_number: str = ""
    called_number: str = ""
    direction: CallDirection = CallDirection.INBOUND
    custom_parameters: dict[str, str] = field(default_factory=dict)
    tenant: Optional[TenantVoiceConfig] = None

    state: BridgeState = BridgeState.IDLE
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_monotonic: float = field(default_factory=time.monotonic)
    transcript: list[TranscriptEntry] = field(default_factory=list)

    # Playback tracking for barge-in
    pending_marks: deque[str] = field(default_factory=deque)
    latest_media_timestamp: int = 0
    response_start_timestamp: Optional[int] = None
    last_assistant_item: Optional[str] = None

    # Lifecycle bookkeeping
    session_id: str = ""
    reached_active: bool = False
    record_id: Optional[str] = None
    finalized: bool = False
    finalize_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    # ── State machine ────────────────────────────────────────────

    def can_advance(self, new_state: BridgeState) -> bool:
        if new_state is BridgeState.TERMINATED:
            return self.state is not BridgeState.TERMINATED
        return new_state in _TRANSITIONS[self.state]

    def advance(self, new_state: BridgeState) -> None:
        """Move to ``new_state`` or raise InvalidTransitionError."""
        if not self.can_advance(new_state):
            raise InvalidTransitionError(
                f"Call {self.call_sid or '-'}: {self.state.value} -> {new_state.value} not allowed"
            )
        if new_state is not self.state:
            log.debug("Call %s: %s -> %s", self.call_sid, self.state.value, new_state.value)
        self.state = new_state
        if new_state is BridgeState.ACTIVE:
            self.reached_active = True

    @property
    def is_closing(self) -> bool:
        return self.state in (BridgeState.CLOSING, BridgeState.TERMINATED)

    # ── Transcript ───────────────────────────────────────────────

    def add_transcript(self, role: str, text: str) -> Optional[TranscriptEntry]:
        text = (text or "").strip()
        if not text:
            return None
        entry = TranscriptEntry(role=role, text=text, at=datetime.now(timezone.utc))
        self.transcript.append(entry)
        return entry

    def transcript_text(self) -> str:
        """Render the transcript as ``Role: text`` lines."""
        labels = {"user": "Caller", "assistant": "AI"}
        return "\n".join(
            f"{labels.get(e.role, e.role.title())}: {e.text}" for e in self.transcript
        )

    # ── Playback tracking ────────────────────────────────────────

    def reset_playback(self) -> None:
        self.pending_marks.clear()
        self.response_start_timestamp = None
        self.last_assistant_item = None

    @property
    def has_unplayed_audio(self) -> bool:
        return bool(self.pending_marks)

    def duration_seconds(self, now: Optional[float] = None) -> int:
        """Elapsed call time in whole seconds."""
        elapsed = (now if now is not None else time.monotonic()) - self.started_monotonic
        return max(0, int(elapsed))

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the admin active-calls listing."""
        return {
            "session_id": self.session_id,
            "call_sid": self.call_sid,
            "stream_sid": self.stream_sid,
            "caller": redact_pii(self.caller_number),
            "direction": self.direction.value,
            "tenant_id": self.tenant.id if self.tenant else None,
            "tenant_name": self.tenant.name if self.tenant else None,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "duration_seconds": self.duration_seconds(),
            "transcript_entries": len(self.transcript),
        }


class SessionRegistry:
    """Active calls in this process, keyed by a generated session id."""

    def __init__(self) -> None:
        self._calls: dict[str, CallState] = {}

    def register(self, call: CallState) -> str:
        """Register a call and return its unique ID."""
        session_id = secrets.token_urlsafe(18)
        call.session_id = session_id
        self._calls[session_id] = call
        log.info("Session registered: %s (call_sid=%s)", session_id, call.call_sid)
        return session_id

    def unregister(self, session_id: str) -> None:
        """Remove a call from the registry."""
        if self._calls.pop(session_id, None) is not None:
            log.info("Session unregistered: %s", session_id)

    def get(self, session_id: str) -> Optional[CallState]:
        return self._calls.get(session_id)

    def active(self) -> list[CallState]:
        return list(self._calls.values())

    def __len__(self) -> int:
        return len(self._calls)
