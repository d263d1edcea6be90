"""Call lifecycle recorder: call session records and lifecycle events.

  start(call)     create the in_progress record before any audio flows
  finalize(call)  once per call: status, duration, transcript; then emit
                  call.completed and kick off the summary in the background

Persistence failures are logged and swallowed. The caller has already hung
up (or is about to), so nothing here may raise into the bridge teardown.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from voicebridge.analysis import TranscriptAnalyzer
from voicebridge.datalayer import DataLayer
from voicebridge.errors import DataLayerError
from voicebridge.events import CALL_COMPLETED, CALL_STARTED, LifecycleEventBus
from voicebridge.models import CallSessionRecord, CallStatus
from voicebridge.session import CallState, redact_pii

log = logging.getLogger("voicebridge.recorder")


class CallLifecycleRecorder:
    def __init__(
        self,
        data_layer: DataLayer,
        bus: LifecycleEventBus,
        analyzer: Optional[TranscriptAnalyzer] = None,
    ) -> None:
        self._data_layer = data_layer
        self._bus = bus
        self._analyzer = analyzer
        self._tasks: set[asyncio.Task] = set()

    def _base_record(self, call: CallState) -> CallSessionRecord:
        return CallSessionRecord(
            tenant_id=call.tenant.id if call.tenant else "",
            call_sid=call.call_sid,
            caller_phone=call.caller_number,
            direction=call.direction,
            status=CallStatus.IN_PROGRESS,
            started_at=call.started_at,
        )

    async def start(self, call: CallState) -> None:
        """Create the in_progress call session record."""
        try:
            call.record_id = await self._data_layer.create_call_session(self._base_record(call))
            log.info(
                "Call session %s created (call_sid=%s from=%s)",
                call.record_id, call.call_sid, redact_pii(call.caller_number),
            )
        except DataLayerError as e:
            # finalize() creates the record instead
            log.error("Failed to create call session for %s: %s", call.call_sid, e)

        self._bus.emit(
            CALL_STARTED,
            call.tenant.id if call.tenant else "",
            call.call_sid,
            {
                "record_id": call.record_id,
                "direction": call.direction.value,
                "caller_phone": redact_pii(call.caller_number),
            },
        )

    async def finalize(self, call: CallState) -> bool:
        """Persist the final record once. Returns False if already finalized."""
        async with call.finalize_lock:
            if call.finalized:
                return False
            call.finalized = True

        if not call.call_sid or call.tenant is None:
            log.info("Stream closed before the call started; nothing to record")
            return True

        status = CallStatus.COMPLETED if call.reached_active else CallStatus.FAILED
        duration = call.duration_seconds()
        transcript = call.transcript_text()
        fields = {
            "status": status,
            "ended_at": datetime.now(timezone.utc),
            "duration_seconds": duration,
            "transcript": transcript,
        }

        try:
            if call.record_id:
                await self._data_layer.update_call_session(call.record_id, fields)
            else:
                record = self._base_record(call).model_copy(update=fields)
                call.record_id = await self._data_layer.create_call_session(record)
        except DataLayerError as e:
            log.error("Failed to finalize call session for %s: %s", call.call_sid, e)

        log.info(
            "Call finalized: call_sid=%s status=%s duration=%ds entries=%d",
            call.call_sid, status.value, duration, len(call.transcript),
        )

        self._bus.emit(
            CALL_COMPLETED,
            call.tenant.id,
            call.call_sid,
            {
                "record_id": call.record_id,
                "status": status.value,
                "direction": call.direction.value,
                "duration_seconds": duration,
                "transcript": transcript,
                "caller_phone": call.caller_number,
            },
        )

        if self._analyzer is not None and call.record_id and transcript:
            task = asyncio.create_task(self._summarize(call.call_sid, call.record_id, transcript))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return True

    async def _summarize(self, call_sid: str, record_id: str, transcript: str) -> None:
        summary = await self._analyzer.summarize(transcript)
        if summary is None:
            return
        try:
            await self._data_layer.update_call_session(
                record_id,
                {"summary": summary.summary, "action_items": summary.action_items},
            )
            log.info("Summary stored for %s", call_sid)
        except DataLayerError as e:
            log.error("Failed to store summary for %s: %s", call_sid, e)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for background summaries at shutdown."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
