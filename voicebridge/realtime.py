"""Realtime speech-model connection (OpenAI Realtime protocol).

``RealtimeConnector`` opens one WebSocket per call and waits for the
``session.created`` handshake. ``RealtimeConnection`` wraps the open socket
with the handful of client events the bridge sends and an async iterator
over server events.

Client events sent:
  session.update                     prompt, voice, g711_ulaw, VAD, tools
  input_audio_buffer.append          caller audio (base64 passed through)
  response.create                    greeting, and after tool results
  conversation.item.create           function_call_output
  conversation.item.truncate         barge-in: cut assistant audio at played ms
  response.cancel                    barge-in with no known assistant item
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from voicebridge.config import AUDIO_FORMAT, runtime_settings, settings
from voicebridge.errors import ModelConnectionError

log = logging.getLogger("voicebridge.realtime")


def build_session_config(
    instructions: str,
    voice: str,
    tools: list[dict[str, Any]],
    temperature: Optional[float] = None,
    vad: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Build the ``session.update`` event sent once per call.

    ``vad`` defaults to a snapshot of ``runtime_settings`` so an admin
    change affects the next call, never one already in progress.
    """
    vad = vad if vad is not None else dict(runtime_settings)
    return {
        "type": "session.update",
        "session": {
            "modalities": ["audio", "text"],
            "instructions": instructions,
            "voice": voice,
            "input_audio_format": AUDIO_FORMAT,
            "output_audio_format": AUDIO_FORMAT,
            "input_audio_transcription": {"model": "whisper-1"},
            "turn_detection": {
                "type": "server_vad",
                "threshold": vad.get("vad_threshold", 0.8),
                "prefix_padding_ms": vad.get("vad_prefix_padding_ms", 300),
                "silence_duration_ms": vad.get("vad_silence_duration_ms", 500),
            },
            "tools": tools,
            "tool_choice": "auto" if tools else "none",
            "temperature": temperature if temperature is not None else settings.temperature,
        },
    }


class RealtimeConnection:
    """One open model session. Not shared between calls."""

    def __init__(self, ws: ClientConnection, session_id: str = "") -> None:
        self._ws = ws
        self.session_id = session_id
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def _send(self, event: dict[str, Any]) -> None:
        if self._closed:
            raise ModelConnectionError("Model connection already closed")
        try:
            await self._ws.send(json.dumps(event))
        except ConnectionClosed as e:
            self._closed = True
            raise ModelConnectionError(f"Model connection closed: {e}") from e

    async def configure_session(self, session_config: dict[str, Any]) -> None:
        await self._send(session_config)

    async def append_audio(self, payload: str) -> None:
        await self._send({"type": "input_audio_buffer.append", "audio": payload})

    async def request_response(self, instructions: Optional[str] = None) -> None:
        event: dict[str, Any] = {"type": "response.create"}
        if instructions:
            event["response"] = {"instructions": instructions}
        await self._send(event)

    async def send_function_output(self, call_id: str, output: str) -> None:
        """Return a tool result to the model and let it continue speaking."""
        await self._send({
            "type": "conversation.item.create",
            "item": {
                "type": "function_call_output",
                "call_id": call_id,
                "output": output,
            },
        })
        await self._send({"type": "response.create"})

    async def cancel_response(self) -> None:
        await self._send({"type": "response.cancel"})

    async def truncate(self, item_id: str, audio_end_ms: int) -> None:
        await self._send({
            "type": "conversation.item.truncate",
            "item_id": item_id,
            "content_index": 0,
            "audio_end_ms": max(0, audio_end_ms),
        })

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield server events until the socket closes.

        Raises ModelConnectionError if the model drops the connection
        abnormally. A normal close just ends the iteration.
        """
        try:
            async for message in self._ws:
                try:
                    event = json.loads(message)
                except ValueError:
                    log.warning("Ignoring malformed model event")
                    continue
                if isinstance(event, dict):
                    yield event
        except ConnectionClosed as e:
            self._closed = True
            if e.rcvd is not None and e.rcvd.code == 1000:
                return
            raise ModelConnectionError(f"Model connection lost: {e}") from e
        self._closed = True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._ws.close()
        log.info("Model connection closed (session=%s)", self.session_id or "-")


class RealtimeConnector:
    """Opens model connections. One instance per process."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.openai_api_key
        self._url = url or settings.realtime_url

    async def connect(self, model: str) -> RealtimeConnection:
        """Open a model session and wait for ``session.created``.

        The caller bounds the whole handshake with a timeout.
        """
        url = f"{self._url}?model={model}"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "OpenAI-Beta": "realtime=v1",
        }

        try:
            ws = await websockets.connect(
                url,
                additional_headers=headers,
                max_size=None,
                ping_interval=20,
            )
        except (OSError, websockets.exceptions.InvalidHandshake) as e:
            raise ModelConnectionError(f"Could not connect to model: {e}") from e

        try:
            raw = await ws.recv()
            event = json.loads(raw)
        except (ConnectionClosed, ValueError) as e:
            await ws.close()
            raise ModelConnectionError(f"Model handshake failed: {e}") from e
        except asyncio.CancelledError:
            # Handshake timed out in the caller
            await ws.close()
            raise

        if event.get("type") != "session.created":
            await ws.close()
            raise ModelConnectionError(f"Unexpected first model event: {event.get('type')}")

        session_id = (event.get("session") or {}).get("id", "")
        log.info("Connected to realtime model %s (session=%s)", model, session_id or "-")
        return RealtimeConnection(ws, session_id=session_id)
