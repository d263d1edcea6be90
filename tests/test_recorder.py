"""Tests for CallLifecycleRecorder and the lifecycle event bus."""

import asyncio
from unittest.mock import AsyncMock

from voicebridge.analysis import CallSummary
from voicebridge.errors import DataLayerError
from voicebridge.events import CALL_COMPLETED, CALL_STARTED, LifecycleEventBus
from voicebridge.models import CallDirection, CallStatus
from voicebridge.recorder import CallLifecycleRecorder
from voicebridge.session import BridgeState, CallState


def _call(tenant, active=True):
    call = CallState(
        call_sid="CA100",
        stream_sid="MZ100",
        caller_number="+15557654321",
        called_number=tenant.phone_number or "",
        tenant=tenant,
    )
    call.advance(BridgeState.STREAM_STARTED)
    call.advance(BridgeState.MODEL_CONNECTED)
    if active:
        call.advance(BridgeState.ACTIVE)
    return call


# ── Recorder ────────────────────────────────────────────────────────


class TestRecorder:
    async def test_start_creates_in_progress_record(self, recorder, data_layer, bus, tenant_a):
        queue = bus.subscribe_queue()
        call = _call(tenant_a)

        await recorder.start(call)

        record = data_layer.call_sessions[call.record_id]
        assert record.status is CallStatus.IN_PROGRESS
        assert record.tenant_id == "tenant-a"
        assert record.caller_phone == "+15557654321"
        event = queue.get_nowait()
        assert event["type"] == CALL_STARTED
        assert event["data"]["caller_phone"] == "+15***21"

    async def test_finalize_updates_record(self, recorder, data_layer, tenant_a):
        call = _call(tenant_a)
        await recorder.start(call)
        call.add_transcript("assistant", "Acme Dental, how can I help?")
        call.add_transcript("user", "Book me in.")

        assert await recorder.finalize(call) is True

        assert len(data_layer.call_sessions) == 1
        record = data_layer.call_sessions[call.record_id]
        assert record.status is CallStatus.COMPLETED
        assert record.duration_seconds is not None
        assert record.transcript == "AI: Acme Dental, how can I help?\nCaller: Book me in."

    async def test_never_active_is_failed(self, recorder, data_layer, tenant_a):
        call = _call(tenant_a, active=False)
        await recorder.start(call)
        await recorder.finalize(call)
        assert data_layer.call_sessions[call.record_id].status is CallStatus.FAILED

    async def test_finalize_runs_once(self, recorder, data_layer, bus, tenant_a):
        queue = bus.subscribe_queue()
        call = _call(tenant_a)
        await recorder.start(call)

        results = await asyncio.gather(*(recorder.finalize(call) for _ in range(5)))

        assert sorted(results) == [False, False, False, False, True]
        types = [queue.get_nowait()["type"] for _ in range(queue.qsize())]
        assert types == [CALL_STARTED, CALL_COMPLETED]

    async def test_start_failure_creates_record_at_finalize(self, bus, tenant_a):
        data_layer = AsyncMock()
        data_layer.create_call_session.side_effect = [DataLayerError("down"), "rec-2"]
        recorder = CallLifecycleRecorder(data_layer, bus)
        call = _call(tenant_a)

        await recorder.start(call)
        assert call.record_id is None
        await recorder.finalize(call)

        assert call.record_id == "rec-2"
        final = data_layer.create_call_session.call_args.args[0]
        assert final.status is CallStatus.COMPLETED
        data_layer.update_call_session.assert_not_called()

    async def test_persistence_error_does_not_raise(self, bus, tenant_a):
        data_layer = AsyncMock()
        data_layer.create_call_session.return_value = "rec-1"
        data_layer.update_call_session.side_effect = DataLayerError("down")
        recorder = CallLifecycleRecorder(data_layer, bus)
        call = _call(tenant_a)
        await recorder.start(call)

        assert await recorder.finalize(call) is True

    async def test_nothing_recorded_without_call(self, recorder, data_layer):
        assert await recorder.finalize(CallState()) is True
        assert data_layer.call_sessions == {}

    async def test_summary_stored_in_background(self, data_layer, bus, tenant_a):
        analyzer = AsyncMock()
        analyzer.summarize.return_value = CallSummary(
            summary="Caller booked a cleaning.", action_items=["Send reminder"]
        )
        recorder = CallLifecycleRecorder(data_layer, bus, analyzer=analyzer)
        call = _call(tenant_a)
        await recorder.start(call)
        call.add_transcript("user", "I'd like to book a cleaning please.")

        await recorder.finalize(call)
        await recorder.drain()

        record = data_layer.call_sessions[call.record_id]
        assert record.summary == "Caller booked a cleaning."
        assert record.action_items == ["Send reminder"]
        assert recorder.pending == 0

    async def test_outbound_direction_recorded(self, recorder, data_layer, tenant_a):
        call = _call(tenant_a)
        call.direction = CallDirection.OUTBOUND
        await recorder.start(call)
        assert data_layer.call_sessions[call.record_id].direction is CallDirection.OUTBOUND


# ── Event bus ───────────────────────────────────────────────────────


class TestEventBus:
    async def test_handlers_run_in_background(self):
        bus = LifecycleEventBus()
        seen = []
        release = asyncio.Event()

        async def handler(event):
            await release.wait()
            seen.append(event["call_sid"])

        bus.subscribe(CALL_COMPLETED, handler)
        event = bus.emit(CALL_COMPLETED, "tenant-a", "CA1", {"status": "completed"})

        assert event["data"] == {"status": "completed"}
        assert seen == []
        assert bus.pending == 1
        release.set()
        await bus.drain()
        assert seen == ["CA1"]

    async def test_handler_only_gets_its_type(self):
        bus = LifecycleEventBus()
        handler = AsyncMock()
        bus.subscribe(CALL_COMPLETED, handler)

        bus.emit(CALL_STARTED, "t", "CA1")
        await bus.drain()

        handler.assert_not_called()

    async def test_failing_handler_is_contained(self):
        bus = LifecycleEventBus()
        ok = AsyncMock()
        bus.subscribe(CALL_COMPLETED, AsyncMock(side_effect=RuntimeError("boom")))
        bus.subscribe(CALL_COMPLETED, ok)

        bus.emit(CALL_COMPLETED, "t", "CA1")
        await bus.drain()

        ok.assert_awaited_once()

    async def test_drain_cancels_stuck_handlers(self):
        bus = LifecycleEventBus()

        async def stuck(event):
            await asyncio.sleep(30)

        bus.subscribe(CALL_STARTED, stuck)
        bus.emit(CALL_STARTED, "t", "CA1")
        await bus.drain(timeout=0.05)
        await asyncio.sleep(0.01)
        assert bus.pending == 0

    def test_queue_drops_oldest_when_full(self):
        bus = LifecycleEventBus(queue_size=2)
        queue = bus.subscribe_queue()
        for sid in ("CA1", "CA2", "CA3"):
            bus.emit(CALL_STARTED, "t", sid)

        assert [queue.get_nowait()["call_sid"] for _ in range(2)] == ["CA2", "CA3"]
        bus.unsubscribe_queue(queue)
        bus.unsubscribe_queue(queue)
        assert bus.subscriber_count == 0
