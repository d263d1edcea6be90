"""TwilioMediaStreamChannel: TelephonyChannel for Twilio Media Streams.

Twilio Media Streams deliver audio over a WebSocket as base64-encoded
mulaw (G.711 u-law) at 8kHz mono. The payload is relayed as-is; the model
session is configured for the same encoding.

Protocol reference:
  https://www.twilio.com/docs/voice/media-streams/websocket-messages

WebSocket message flow:
  ← {"event":"connected", "protocol":"Call", "version":"1.0.0"}
  ← {"event":"start",     "start":{"streamSid":"...","callSid":"...","customParameters":{...}}}
  ← {"event":"media",     "media":{"payload":"<base64 mulaw>","timestamp":"..."}}
  ← {"event":"mark",      "mark":{"name":"..."}}
  ← {"event":"stop"}

  → {"event":"media", "streamSid":"...", "media":{"payload":"<base64 mulaw>"}}
  → {"event":"mark",  "streamSid":"...", "mark":{"name":"..."}}
  → {"event":"clear", "streamSid":"..."}
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

from fastapi import WebSocket, WebSocketDisconnect

from voicebridge.channels.base import Frame, TelephonyChannel, UnknownFrame, parse_frame

log = logging.getLogger("voicebridge.channels.twilio")


class TwilioMediaStreamChannel(TelephonyChannel):
    """TelephonyChannel implementation for Twilio Media Streams over WebSocket.

    Usage::

        @app.websocket("/twilio/stream")
        async def twilio_stream(ws: WebSocket):
            await ws.accept()
            channel = TwilioMediaStreamChannel(ws)
            async for frame in channel.frames():
                ...
    """

    def __init__(self, websocket: WebSocket):
        self._ws = websocket
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def frames(self) -> AsyncIterator[Frame]:
        """Yield parsed frames until the WebSocket closes."""
        while not self._closed:
            try:
                raw = await self._ws.receive_text()
            except WebSocketDisconnect:
                log.info("Twilio WebSocket closed by peer")
                self._closed = True
                break

            try:
                msg = json.loads(raw)
            except ValueError:
                log.warning("Ignoring malformed Twilio frame (%d bytes)", len(raw))
                continue

            frame = parse_frame(msg)
            if frame is None:
                log.warning("Ignoring non-object Twilio frame")
                continue
            if isinstance(frame, UnknownFrame):
                log.debug("Ignoring Twilio event %r", frame.event)
            yield frame

    async def _send(self, message: dict[str, Any]) -> None:
        if self._closed:
            return
        try:
            await self._ws.send_text(json.dumps(message))
        except (WebSocketDisconnect, RuntimeError) as e:
            # Starlette raises RuntimeError once the socket is closed
            log.warning("Failed to send %s to Twilio: %s", message.get("event"), e)
            self._closed = True

    async def send_audio(self, stream_sid: str, payload: str) -> None:
        await self._send({
            "event": "media",
            "streamSid": stream_sid,
            "media": {"payload": payload},
        })

    async def send_mark(self, stream_sid: str, name: str) -> None:
        await self._send({
            "event": "mark",
            "streamSid": stream_sid,
            "mark": {"name": name},
        })

    async def send_clear(self, stream_sid: str) -> None:
        await self._send({"event": "clear", "streamSid": stream_sid})

    async def close(self) -> None:
        """Close the Twilio Media Stream WebSocket."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close()
        except RuntimeError:
            pass  # Already closed
        log.info("Twilio channel closed")
