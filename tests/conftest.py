"""Shared fakes for bridge tests: a scripted Twilio channel and model socket."""

import asyncio
import json
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from websockets.exceptions import ConnectionClosedError
from websockets.frames import Close

from voicebridge.channels.base import TelephonyChannel, parse_frame
from voicebridge.datalayer import InMemoryDataLayer
from voicebridge.errors import ModelConnectionError
from voicebridge.events import LifecycleEventBus
from voicebridge.models import AIConfig, TenantVoiceConfig
from voicebridge.realtime import RealtimeConnection
from voicebridge.recorder import CallLifecycleRecorder
from voicebridge.session import SessionRegistry
from voicebridge.tools.registry import build_default_registry


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it is truthy or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


# ── Twilio side ─────────────────────────────────────────────────────


class FakeChannel(TelephonyChannel):
    """Frames are fed through ``push``; everything sent is recorded."""

    def __init__(self, timeline=None):
        self._inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.timeline = timeline if timeline is not None else []
        self.closed = False

    def push(self, message: dict) -> None:
        self._inbox.put_nowait(message)

    def hang_up(self) -> None:
        self._inbox.put_nowait(None)

    async def frames(self):
        while True:
            msg = await self._inbox.get()
            if msg is None:
                return
            frame = parse_frame(msg)
            if frame is not None:
                yield frame

    def _record(self, message: dict) -> None:
        self.sent.append(message)
        self.timeline.append(("twilio", message["event"]))

    async def send_audio(self, stream_sid, payload):
        self._record({"event": "media", "streamSid": stream_sid, "media": {"payload": payload}})

    async def send_mark(self, stream_sid, name):
        self._record({"event": "mark", "streamSid": stream_sid, "mark": {"name": name}})

    async def send_clear(self, stream_sid):
        self._record({"event": "clear", "streamSid": stream_sid})

    async def close(self):
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)

    def events(self, name: str) -> list[dict]:
        return [m for m in self.sent if m["event"] == name]


# ── Model side ──────────────────────────────────────────────────────


class FakeModelSocket:
    """Stands in for a websockets ClientConnection.

    ``hold(type)`` makes sends of that event type wait until ``release()``.
    """

    def __init__(self, timeline=None):
        self._inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.timeline = timeline if timeline is not None else []
        self.closed = False
        self._hold_type = None
        self._released = asyncio.Event()

    def hold(self, event_type: str) -> None:
        self._hold_type = event_type
        self._released.clear()

    def release(self) -> None:
        self._released.set()

    def push(self, event: dict) -> None:
        self._inbox.put_nowait(json.dumps(event))

    def end(self) -> None:
        self._inbox.put_nowait(None)

    def drop(self) -> None:
        self._inbox.put_nowait(ConnectionClosedError(Close(1011, "server error"), None))

    async def send(self, text: str) -> None:
        event = json.loads(text)
        if event["type"] == self._hold_type:
            await self._released.wait()
        self.sent.append(event)
        self.timeline.append(("model", event["type"]))

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._inbox.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self) -> None:
        self.closed = True

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.sent if e["type"] == event_type]


class FakeConnector:
    """Hands out RealtimeConnections over FakeModelSockets."""

    def __init__(self, timeline=None, delay: float = 0.0, error: Exception = None):
        self.sockets: list[FakeModelSocket] = []
        self.models: list[str] = []
        self.timeline = timeline
        self.delay = delay
        self.error = error

    async def connect(self, model: str) -> RealtimeConnection:
        self.models.append(model)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        socket = FakeModelSocket(self.timeline)
        self.sockets.append(socket)
        return RealtimeConnection(socket, session_id=f"sess_{len(self.sockets)}")


class FakeTelephony:
    def __init__(self):
        self.hangups: list[tuple[str, str]] = []

    async def hangup_with_message(self, call_sid: str, message: str) -> bool:
        self.hangups.append((call_sid, message))
        return True


# ── Frame builders ──────────────────────────────────────────────────


def start_frame(call_sid="CA100", stream_sid="MZ100", to="+15550001111",
                from_="+15557654321", **params) -> dict:
    custom = {"To": to, "From": from_, "CallSid": call_sid}
    custom.update(params)
    return {
        "event": "start",
        "streamSid": stream_sid,
        "start": {
            "streamSid": stream_sid,
            "callSid": call_sid,
            "customParameters": custom,
            "mediaFormat": {"encoding": "audio/x-mulaw", "sampleRate": 8000, "channels": 1},
        },
    }


def media_frame(timestamp: int, payload: str = "/////w==", stream_sid="MZ100") -> dict:
    return {
        "event": "media",
        "streamSid": stream_sid,
        "media": {"payload": payload, "timestamp": str(timestamp)},
    }


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture
def tenant_a():
    return TenantVoiceConfig(
        id="tenant-a",
        name="Acme Dental",
        phone_number="+15550001111",
        ai_name="Ava",
        welcome_message="thanks for calling Acme Dental.",
        voice_id="shimmer",
        timezone="America/New_York",
        ai_config=AIConfig(system_prompt="You are the Acme Dental receptionist."),
    )


@pytest.fixture
def tenant_b():
    return TenantVoiceConfig(
        id="tenant-b",
        name="Bolt Plumbing",
        phone_number="+15550002222",
        ai_name="Ben",
        custom_system_prompt="You answer phones for Bolt Plumbing.",
        voice_id="echo",
    )


@pytest.fixture
def data_layer(tenant_a, tenant_b):
    return InMemoryDataLayer([tenant_a, tenant_b])


@pytest.fixture
def bus():
    return LifecycleEventBus()


@pytest.fixture
def recorder(data_layer, bus):
    return CallLifecycleRecorder(data_layer, bus)


@pytest.fixture
def sessions():
    return SessionRegistry()


@pytest.fixture
def registry():
    return build_default_registry()


@pytest.fixture
def timeline():
    return []


@pytest.fixture
def connector(timeline):
    return FakeConnector(timeline)


@pytest.fixture
def telephony():
    return FakeTelephony()


@pytest.fixture
def make_bridge(data_layer, connector, registry, recorder, sessions, telephony, timeline):
    from voicebridge.bridge import MediaBridge

    def _make(**overrides):
        channel = overrides.pop("channel", None) or FakeChannel(timeline)
        kwargs = dict(
            channel=channel,
            data_layer=data_layer,
            connector=connector,
            registry=registry,
            recorder=recorder,
            sessions=sessions,
            telephony=telephony,
            connect_timeout=1.0,
        )
        kwargs.update(overrides)
        return MediaBridge(**kwargs)

    return _make


__all__ = [
    "FakeChannel",
    "FakeConnector",
    "FakeModelSocket",
    "FakeTelephony",
    "ModelConnectionError",
    "media_frame",
    "start_frame",
    "wait_until",
]
