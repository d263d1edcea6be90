"""MediaBridge: one Twilio Media Stream ⇄ one realtime model session.

One bridge per call. Two tasks cooperate:

  inbound   Twilio frames in arrival order: start → resolve tenant, record
            the call, open and configure the model; media → append audio;
            mark → playback bookkeeping; stop → close
  model     server events: audio deltas → Twilio media + mark; transcripts;
            speech_started → barge-in; function calls → dispatcher tasks

Barge-in, when the caller talks over unplayed assistant audio:

  1. close the inbound audio gate (caller audio waits, in order)
  2. one ``clear`` to Twilio (drop queued playback)
  3. one ``conversation.item.truncate`` at the played offset, or one
     ``response.cancel`` if no assistant item is known
  4. reset playback tracking and reopen the gate

If the model cannot be reached within ``model_connect_timeout``, or drops
mid-call, the caller hears an apology through the Twilio REST API and the
stream is closed. Teardown runs once no matter how many paths trigger it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from voicebridge.channels.base import (
    MarkFrame,
    MediaFrame,
    StartFrame,
    StopFrame,
    TelephonyChannel,
)
from voicebridge.config import (
    APOLOGY_MESSAGE,
    TELEPHONY_ENCODING,
    TELEPHONY_SAMPLE_RATE,
    runtime_settings,
    settings,
)
from voicebridge.datalayer import DataLayer
from voicebridge.dispatcher import FunctionCallDispatcher
from voicebridge.errors import ModelConnectionError
from voicebridge.models import CallDirection
from voicebridge.realtime import RealtimeConnection, RealtimeConnector, build_session_config
from voicebridge.recorder import CallLifecycleRecorder
from voicebridge.session import BridgeState, CallState, SessionRegistry, redact_pii
from voicebridge.telephony import TwilioRestClient
from voicebridge.tenants import (
    TenantResolver,
    build_greeting,
    build_instructions,
    resolve_model,
    resolve_system_prompt,
    resolve_voice,
)
from voicebridge.tools.base import ToolContext
from voicebridge.tools.registry import ToolRegistry

log = logging.getLogger("voicebridge.bridge")

AUDIO_DELTA_EVENTS = {"response.audio.delta", "response.output_audio.delta"}
ASSISTANT_TRANSCRIPT_EVENTS = {
    "response.audio_transcript.done",
    "response.output_audio_transcript.done",
}
USER_TRANSCRIPT_EVENT = "conversation.item.input_audio_transcription.completed"


class MediaBridge:
    """Protocol state machine for one call."""

    def __init__(
        self,
        channel: TelephonyChannel,
        data_layer: DataLayer,
        connector: RealtimeConnector,
        registry: ToolRegistry,
        recorder: CallLifecycleRecorder,
        sessions: SessionRegistry,
        telephony: Optional[TwilioRestClient] = None,
        connect_timeout: Optional[float] = None,
        tool_timeout: Optional[float] = None,
        max_tool_result_chars: Optional[int] = None,
    ) -> None:
        self.channel = channel
        self.call = CallState()
        self._data_layer = data_layer
        self._connector = connector
        self._registry = registry
        self._recorder = recorder
        self._sessions = sessions
        self._telephony = telephony
        self._connect_timeout = connect_timeout or settings.model_connect_timeout
        self._tool_timeout = tool_timeout
        self._max_tool_result_chars = max_tool_result_chars

        self._resolver = TenantResolver(data_layer)
        self._model: Optional[RealtimeConnection] = None
        self._dispatcher: Optional[FunctionCallDispatcher] = None
        self._barge_in_enabled = True

        # Set = caller audio may flow to the model
        self._audio_gate = asyncio.Event()
        self._audio_gate.set()

        self._inbound_task: Optional[asyncio.Task] = None
        self._model_task: Optional[asyncio.Task] = None
        self._tool_tasks: set[asyncio.Task] = set()
        self._mark_seq = 0
        self._failed = False
        self._closed = False

    @property
    def model(self) -> Optional[RealtimeConnection]:
        return self._model

    # ── Entry point ──────────────────────────────────────────────

    async def run(self) -> None:
        """Serve the call until the stream stops or either side fails."""
        self._inbound_task = asyncio.create_task(self._consume_frames())
        try:
            await asyncio.wait({self._inbound_task})
            if not self._inbound_task.cancelled() and self._inbound_task.exception():
                exc = self._inbound_task.exception()
                log.error(
                    "Bridge error (call_sid=%s): %s", self.call.call_sid or "-", exc,
                    exc_info=exc,
                )
        finally:
            await self.close()

    async def _consume_frames(self) -> None:
        async for frame in self.channel.frames():
            if isinstance(frame, StartFrame):
                await self._on_start(frame)
            elif isinstance(frame, MediaFrame):
                await self._on_media(frame)
            elif isinstance(frame, MarkFrame):
                self._on_mark(frame)
            elif isinstance(frame, StopFrame):
                log.info("Twilio stream stopped (call_sid=%s)", self.call.call_sid)
                self._begin_closing()
            # connected and unknown frames need no action

            if self.call.is_closing:
                break

    # ── Inbound: Twilio frames ───────────────────────────────────

    async def _on_start(self, frame: StartFrame) -> None:
        call = self.call
        if call.state is not BridgeState.IDLE:
            log.warning("Duplicate start frame ignored (call_sid=%s)", call.call_sid)
            return

        direction = frame.param("direction").lower()
        call.direction = (
            CallDirection.OUTBOUND if direction == "outbound" else CallDirection.INBOUND
        )
        call.stream_sid = frame.stream_sid
        call.call_sid = frame.call_sid or frame.param("CallSid")
        call.custom_parameters = frame.custom_parameters
        from_number = frame.param("From", "from")
        to_number = frame.param("To", "to")
        if call.direction is CallDirection.OUTBOUND:
            # The customer is the dialed party on calls we place
            call.caller_number, call.called_number = to_number, from_number
        else:
            call.caller_number, call.called_number = from_number, to_number
        call.advance(BridgeState.STREAM_STARTED)

        encoding = frame.media_format.get("encoding")
        sample_rate = frame.media_format.get("sampleRate")
        if (encoding and encoding != TELEPHONY_ENCODING) or (
            sample_rate and str(sample_rate) != str(TELEPHONY_SAMPLE_RATE)
        ):
            log.warning(
                "Unexpected Twilio media format %s/%s Hz; audio is relayed unchanged",
                encoding, sample_rate,
            )

        log.info(
            "Twilio stream started: stream_sid=%s call_sid=%s from=%s direction=%s",
            call.stream_sid, call.call_sid, redact_pii(call.caller_number), call.direction.value,
        )

        call.tenant = await self._resolver.resolve(
            called_number=call.called_number,
            tenant_id=frame.param("tenantId"),
        )
        self._sessions.register(call)
        await self._recorder.start(call)
        await self._connect_model()

    async def _on_media(self, frame: MediaFrame) -> None:
        self.call.latest_media_timestamp = frame.timestamp
        if self._model is None or self.call.is_closing:
            return

        await self._audio_gate.wait()
        try:
            await self._model.append_audio(frame.payload)
        except ModelConnectionError as e:
            await self._fail_call(f"audio append failed: {e}")
            return
        self._mark_active()

    def _on_mark(self, frame: MarkFrame) -> None:
        marks = self.call.pending_marks
        # Twilio echoes marks in the order they were sent
        if frame.name in marks:
            while marks and marks.popleft() != frame.name:
                pass

    # ── Model session ────────────────────────────────────────────

    async def _connect_model(self) -> None:
        call = self.call
        tenant = await self._resolver.refresh()
        call.tenant = tenant
        model_name = resolve_model(tenant)

        try:
            self._model = await asyncio.wait_for(
                self._connector.connect(model_name), timeout=self._connect_timeout
            )
        except asyncio.TimeoutError:
            await self._fail_call(f"model handshake exceeded {self._connect_timeout:.1f}s")
            return
        except ModelConnectionError as e:
            await self._fail_call(str(e))
            return

        registry = self._registry.with_tenant_tools(tenant)
        self._dispatcher = FunctionCallDispatcher(
            registry,
            default_timeout=self._tool_timeout,
            max_result_chars=self._max_tool_result_chars,
        )

        # Snapshot per call; admin changes apply to the next call
        voice_settings = dict(runtime_settings)
        self._barge_in_enabled = bool(voice_settings.get("barge_in_enabled", True))

        session_config = build_session_config(
            instructions=build_instructions(tenant, resolve_system_prompt(tenant)),
            voice=resolve_voice(tenant),
            tools=registry.declarations(),
            vad=voice_settings,
        )
        greeting = build_greeting(tenant)
        try:
            await self._model.configure_session(session_config)
            await self._model.request_response(
                instructions=(
                    "You are starting a new call. Speak the following greeting "
                    f'immediately and then wait for the caller to respond: "{greeting}"'
                )
            )
        except ModelConnectionError as e:
            await self._fail_call(f"session configuration failed: {e}")
            return

        call.advance(BridgeState.MODEL_CONNECTED)
        log.info(
            "Model session configured: tenant=%s model=%s voice=%s tools=%s",
            tenant.id, model_name, session_config["session"]["voice"], ",".join(registry.names),
        )
        self._model_task = asyncio.create_task(self._pump_model_events())

    def _mark_active(self) -> None:
        if self.call.state is BridgeState.MODEL_CONNECTED:
            self.call.advance(BridgeState.ACTIVE)
            log.info("Call active (call_sid=%s)", self.call.call_sid)

    async def _pump_model_events(self) -> None:
        model = self._model
        try:
            async for event in model.events():
                await self._handle_model_event(event)
                if self.call.is_closing:
                    return
        except ModelConnectionError as e:
            if not self.call.is_closing:
                await self._fail_call(str(e))
            return
        except Exception:
            log.exception("Model event handling failed (call_sid=%s)", self.call.call_sid)
            await self._fail_call("model event handling failed")
            return
        if not self.call.is_closing:
            await self._fail_call("model closed the session")

    async def _handle_model_event(self, event: dict[str, Any]) -> None:
        etype = event.get("type", "")

        if etype in AUDIO_DELTA_EVENTS:
            await self._on_audio_delta(event)
        elif etype == "input_audio_buffer.speech_started":
            await self._handle_barge_in()
        elif etype == "response.function_call_arguments.done":
            self._start_function_call(event)
        elif etype in ASSISTANT_TRANSCRIPT_EVENTS:
            self.call.add_transcript("assistant", event.get("transcript", ""))
        elif etype == USER_TRANSCRIPT_EVENT:
            self.call.add_transcript("user", event.get("transcript", ""))
        elif etype == "error":
            error = event.get("error") or {}
            log.error(
                "Model error (call_sid=%s): %s %s",
                self.call.call_sid, error.get("code", ""), error.get("message", ""),
            )
        elif etype == "response.done":
            response = event.get("response") or {}
            if response.get("status") == "failed":
                log.error(
                    "Model response failed (call_sid=%s): %s",
                    self.call.call_sid, response.get("status_details"),
                )
        elif etype == "session.updated":
            log.debug("Model session updated (call_sid=%s)", self.call.call_sid)

    async def _on_audio_delta(self, event: dict[str, Any]) -> None:
        call = self.call
        payload = event.get("delta")
        if not payload or not call.stream_sid:
            return

        await self.channel.send_audio(call.stream_sid, payload)

        item_id = event.get("item_id")
        if item_id and item_id != call.last_assistant_item:
            # A new assistant item starts its own played-audio clock
            call.last_assistant_item = item_id
            call.response_start_timestamp = call.latest_media_timestamp
        elif call.response_start_timestamp is None:
            call.response_start_timestamp = call.latest_media_timestamp

        self._mark_seq += 1
        mark = f"chunk-{self._mark_seq}"
        call.pending_marks.append(mark)
        await self.channel.send_mark(call.stream_sid, mark)
        self._mark_active()

    async def _handle_barge_in(self) -> None:
        call = self.call
        if not self._barge_in_enabled or not call.has_unplayed_audio:
            return

        self._audio_gate.clear()
        try:
            await self.channel.send_clear(call.stream_sid)
            if call.last_assistant_item and call.response_start_timestamp is not None:
                played_ms = call.latest_media_timestamp - call.response_start_timestamp
                await self._model.truncate(call.last_assistant_item, played_ms)
                log.info(
                    "Barge-in: truncated %s at %dms (call_sid=%s)",
                    call.last_assistant_item, played_ms, call.call_sid,
                )
            else:
                await self._model.cancel_response()
                log.info("Barge-in: cancelled response (call_sid=%s)", call.call_sid)
        finally:
            call.reset_playback()
            self._audio_gate.set()

    # ── Function calls ───────────────────────────────────────────

    def _start_function_call(self, event: dict[str, Any]) -> None:
        self._mark_active()
        task = asyncio.create_task(
            self._run_function_call(
                event.get("name", ""), event.get("call_id", ""), event.get("arguments", "")
            )
        )
        self._tool_tasks.add(task)
        task.add_done_callback(self._tool_tasks.discard)

    async def _run_function_call(self, name: str, call_id: str, arguments: Any) -> None:
        call = self.call
        log.info("Function call %s (call_sid=%s)", name, call.call_sid)
        context = ToolContext(
            tenant=call.tenant,
            data_layer=self._data_layer,
            call_sid=call.call_sid,
            caller_number=call.caller_number,
        )
        result = await self._dispatcher.dispatch(name, arguments, context)

        model = self._model
        if model is None or model.closed or call.is_closing:
            return
        try:
            await model.send_function_output(call_id, result)
        except ModelConnectionError as e:
            log.warning("Could not return %s result to model: %s", name, e)

    # ── Failure and teardown ─────────────────────────────────────

    def _begin_closing(self) -> None:
        if self.call.can_advance(BridgeState.CLOSING):
            self.call.advance(BridgeState.CLOSING)

    async def _fail_call(self, reason: str) -> None:
        """Apologize, hang up, and close the stream."""
        if self._failed:
            return
        self._failed = True
        log.error("Model connection failed (call_sid=%s): %s", self.call.call_sid or "-", reason)
        self._begin_closing()

        try:
            if self._telephony is not None and self.call.call_sid:
                await self._telephony.hangup_with_message(self.call.call_sid, APOLOGY_MESSAGE)
        finally:
            await self.channel.close()
            current = asyncio.current_task()
            if self._inbound_task is not None and self._inbound_task is not current:
                self._inbound_task.cancel()

    async def close(self) -> None:
        """Release both connections and finalize the call. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._begin_closing()
        current = asyncio.current_task()

        pending = [t for t in self._tool_tasks if t is not current]
        for task in (self._model_task, self._inbound_task):
            if task is not None and task is not current:
                pending.append(task)
        for task in pending:
            task.cancel()
        if pending:
            results = await asyncio.gather(*pending, return_exceptions=True)
            if self._model_task in pending:
                outcome = results[pending.index(self._model_task)]
                if isinstance(outcome, Exception):
                    log.error(
                        "Model task ended with error (call_sid=%s): %s",
                        self.call.call_sid or "-", outcome,
                    )

        if self._model is not None:
            await self._model.close()
        await self.channel.close()

        await self._recorder.finalize(self.call)
        if self.call.session_id:
            self._sessions.unregister(self.call.session_id)
        self.call.advance(BridgeState.TERMINATED)
        log.info("Bridge closed (call_sid=%s)", self.call.call_sid or "-")
