"""FastAPI application: Twilio webhook, Media Stream bridge, admin API.

Endpoints:

  GET  /health               Health check
  POST /twilio/voice         Twilio webhook: returns TwiML to connect a Media Stream
  WS   /twilio/stream        Twilio Media Stream WebSocket (mulaw 8kHz audio)
  GET  /api/config           Runtime voice settings (admin)
  POST /api/config           Update runtime voice settings (admin)
  GET  /api/calls/active     Calls in progress on this process (admin)
  POST /api/calls/outbound   Dial a number and attach the bridge on answer (admin)
  WS   /api/events           Live lifecycle events (admin, ?token=)

The Twilio flow:
  1. Incoming call hits POST /twilio/voice
  2. We return TwiML with <Connect><Stream> pointing to /twilio/stream,
     passing To/From/CallSid (and tenantId for outbound calls) as parameters
  3. Twilio opens a WebSocket to /twilio/stream with mulaw audio
  4. MediaBridge relays audio to and from the realtime model

Shared resources (data layer client, tool registry, event bus, recorder)
are built once per application and handed to every bridge through
``app.state``.
"""

from __future__ import annotations

# Load .env into os.environ before settings are read
from dotenv import load_dotenv
load_dotenv()

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import urlencode

# Configure root logger early so all voicebridge.* loggers have a handler
# and are visible when run via `uvicorn voicebridge.app:app`.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-24s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from voicebridge.analysis import LeadScoringSubscriber, TranscriptAnalyzer
from voicebridge.auth import require_admin_token, require_admin_ws
from voicebridge.bridge import MediaBridge
from voicebridge.channels.twilio import TwilioMediaStreamChannel
from voicebridge.config import runtime_settings, settings
from voicebridge.datalayer import DataLayer, HttpDataLayer, InMemoryDataLayer
from voicebridge.errors import DataLayerError, TelephonyError
from voicebridge.events import CALL_COMPLETED, LifecycleEventBus
from voicebridge.realtime import RealtimeConnector
from voicebridge.recorder import CallLifecycleRecorder
from voicebridge.session import SessionRegistry
from voicebridge.telephony import TwilioRestClient, build_stream_twiml
from voicebridge.tools.registry import ToolRegistry, build_default_registry

log = logging.getLogger("voicebridge.app")

_START_TIME = time.time()


class ConfigUpdate(BaseModel):
    """Admin-editable runtime voice settings. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    barge_in_enabled: Optional[bool] = None
    vad_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    vad_prefix_padding_ms: Optional[int] = Field(default=None, ge=0, le=5000)
    vad_silence_duration_ms: Optional[int] = Field(default=None, ge=0, le=10000)


class OutboundCallRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    to: str = Field(min_length=4)
    tenant_id: str = Field(alias="tenantId", min_length=1)


def build_data_layer() -> DataLayer:
    """HTTP data layer when DATA_LAYER_URL is set, otherwise in-memory."""
    if settings.data_layer_url:
        return HttpDataLayer(
            settings.data_layer_url,
            api_key=settings.data_layer_api_key,
            timeout=settings.data_layer_timeout,
        )
    log.warning("DATA_LAYER_URL not set; using the in-memory data layer")
    return InMemoryDataLayer()


def build_analyzer() -> Optional[TranscriptAnalyzer]:
    if not settings.summary_enabled or not settings.openai_api_key:
        return None
    return TranscriptAnalyzer()


def _public_host(request: Request) -> str:
    return settings.public_host or request.headers.get("host", "localhost:8080")


def create_app(
    data_layer: Optional[DataLayer] = None,
    connector: Optional[RealtimeConnector] = None,
    registry: Optional[ToolRegistry] = None,
    telephony: Optional[TwilioRestClient] = None,
    analyzer: Optional[TranscriptAnalyzer] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Every collaborator can be injected; anything left out is built from
    ``settings``. Built-in tools are validated here, so a bad tool
    descriptor fails application startup.
    """
    data_layer = data_layer or build_data_layer()
    registry = registry or build_default_registry()
    analyzer = analyzer or build_analyzer()
    bus = LifecycleEventBus()
    recorder = CallLifecycleRecorder(data_layer, bus, analyzer=analyzer)
    if analyzer is not None:
        bus.subscribe(CALL_COMPLETED, LeadScoringSubscriber(analyzer, data_layer, bus))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("Voice bridge started (tools: %s)", ", ".join(registry.names))
        yield
        await recorder.drain()
        await bus.drain()
        await data_layer.aclose()
        log.info("Voice bridge stopped")

    app = FastAPI(
        title="Voice Call Bridge",
        description="Twilio Media Streams bridged to a realtime speech model",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.data_layer = data_layer
    app.state.connector = connector or RealtimeConnector()
    app.state.registry = registry
    app.state.telephony = telephony or TwilioRestClient()
    app.state.bus = bus
    app.state.recorder = recorder
    app.state.sessions = SessionRegistry()

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        """Lightweight health check: confirms the event loop is responsive."""
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({
            "status": "ok",
            "uptime": uptime,
            "active_calls": len(app.state.sessions),
        })

    # ── Twilio voice webhook ───────────────────────────────────

    @app.post("/twilio/voice")
    async def twilio_voice(request: Request) -> Response:
        """Twilio webhook for incoming (and answered outbound) calls.

        Returns TwiML that tells Twilio to open a Media Stream WebSocket
        back to our /twilio/stream endpoint. A ``tenantId`` query parameter
        marks a call we placed through /api/calls/outbound.
        """
        form = await request.form()
        tenant_id = request.query_params.get("tenantId", "")

        stream_url = f"wss://{_public_host(request)}/twilio/stream"
        twiml = build_stream_twiml(stream_url, {
            "To": str(form.get("To", "")),
            "From": str(form.get("From", "")),
            "CallSid": str(form.get("CallSid", "")),
            "tenantId": tenant_id,
            "direction": "outbound" if tenant_id else "inbound",
        })

        log.info("Twilio voice webhook: connecting stream to %s", stream_url)
        return Response(content=twiml, media_type="application/xml")

    # ── Twilio Media Stream WebSocket ──────────────────────────

    @app.websocket("/twilio/stream")
    async def twilio_stream(websocket: WebSocket) -> None:
        """Bridge one Twilio Media Stream to one realtime model session."""
        await websocket.accept()
        log.info("Twilio Media Stream WebSocket connected")

        state = websocket.app.state
        bridge = MediaBridge(
            channel=TwilioMediaStreamChannel(websocket),
            data_layer=state.data_layer,
            connector=state.connector,
            registry=state.registry,
            recorder=state.recorder,
            sessions=state.sessions,
            telephony=state.telephony,
        )
        try:
            await bridge.run()
        except Exception:
            # One call's failure must not reach the server
            log.exception("Twilio stream error (call_sid=%s)", bridge.call.call_sid or "-")
            await bridge.close()
        log.info("Twilio Media Stream ended")

    # ── Admin API ──────────────────────────────────────────────

    @app.get("/api/config", dependencies=[Depends(require_admin_token)])
    async def get_config():
        return JSONResponse(runtime_settings)

    @app.post("/api/config", dependencies=[Depends(require_admin_token)])
    async def update_config(body: ConfigUpdate):
        runtime_settings.update(body.model_dump(exclude_none=True))
        log.info("Config updated: %s", runtime_settings)
        return JSONResponse(runtime_settings)

    @app.get("/api/calls/active", dependencies=[Depends(require_admin_token)])
    async def list_active_calls():
        calls = [c.to_dict() for c in app.state.sessions.active()]
        return JSONResponse({"calls": calls, "count": len(calls)})

    @app.post("/api/calls/outbound", dependencies=[Depends(require_admin_token)])
    async def create_outbound_call(body: OutboundCallRequest, request: Request):
        """Dial ``to`` on behalf of a tenant; the answered call streams to this bridge."""
        try:
            tenant = await app.state.data_layer.get_tenant(body.tenant_id)
        except DataLayerError as e:
            log.error("Tenant lookup failed for outbound call: %s", e)
            raise HTTPException(status_code=502, detail="Tenant lookup failed")
        if tenant is None:
            raise HTTPException(status_code=404, detail="Tenant not found")

        from_number = tenant.phone_number or settings.twilio_phone_number
        if not from_number:
            raise HTTPException(status_code=400, detail="No caller ID configured for tenant")

        query = urlencode({"tenantId": tenant.id})
        webhook_url = f"https://{_public_host(request)}/twilio/voice?{query}"
        try:
            call_sid = await app.state.telephony.create_call(body.to, from_number, webhook_url)
        except TelephonyError as e:
            log.error("Outbound call failed: %s", e)
            raise HTTPException(status_code=502, detail="Telephony provider rejected the call")

        return JSONResponse({"call_sid": call_sid, "tenant_id": tenant.id}, status_code=201)

    # ── Lifecycle event stream ─────────────────────────────────

    @app.websocket("/api/events")
    async def event_stream(websocket: WebSocket, _: None = Depends(require_admin_ws)) -> None:
        """WebSocket endpoint that streams lifecycle events as they happen."""
        await websocket.accept()
        bus: LifecycleEventBus = websocket.app.state.bus
        queue = bus.subscribe_queue()

        try:
            while True:
                event = await queue.get()
                await websocket.send_json(event)
        except WebSocketDisconnect:
            pass
        finally:
            bus.unsubscribe_queue(queue)

    return app


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    for warning in settings.validate_startup():
        log.warning(warning)

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "voicebridge.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )
