"""TelephonyChannel ABC and the media-stream frame types.

A telephony channel delivers the caller side of a call as a sequence of
parsed frames and accepts outbound audio, playback marks and clear
instructions. Audio stays in the transport's native encoding (base64
G.711 u-law for Twilio) because the speech model is configured for the
same format.

Frame types:
  connected   handshake, carries nothing the bridge needs
  start       call identifiers and custom routing parameters
  media       one chunk of caller audio plus its stream timestamp
  mark        a playback mark echoed back once audio before it was played
  stop        the call ended
  unknown     anything else; forward-compatible, always ignored
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Union


@dataclass
class ConnectedFrame:
    protocol: str = ""
    version: str = ""


@dataclass
class StartFrame:
    stream_sid: str
    call_sid: str = ""
    account_sid: str = ""
    custom_parameters: dict[str, str] = field(default_factory=dict)
    media_format: dict[str, Any] = field(default_factory=dict)

    def param(self, *names: str) -> str:
        """First non-blank custom parameter among ``names``."""
        for name in names:
            value = self.custom_parameters.get(name)
            if value and str(value).strip():
                return str(value).strip()
        return ""


@dataclass
class MediaFrame:
    payload: str  # base64, passed through untouched
    timestamp: int = 0
    stream_sid: str = ""


@dataclass
class MarkFrame:
    name: str


@dataclass
class StopFrame:
    call_sid: str = ""


@dataclass
class UnknownFrame:
    event: str
    raw: dict[str, Any] = field(default_factory=dict)


Frame = Union[ConnectedFrame, StartFrame, MediaFrame, MarkFrame, StopFrame, UnknownFrame]


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_frame(msg: Any) -> Optional[Frame]:
    """Turn one decoded JSON message into a frame.

    Returns None for messages that are not JSON objects. Unrecognized
    ``event`` values become ``UnknownFrame`` and never raise.
    """
    if not isinstance(msg, dict):
        return None

    event = msg.get("event")

    if event == "connected":
        return ConnectedFrame(
            protocol=str(msg.get("protocol", "")),
            version=str(msg.get("version", "")),
        )

    if event == "start":
        start = msg.get("start") or {}
        params = start.get("customParameters") or {}
        return StartFrame(
            stream_sid=start.get("streamSid") or msg.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            custom_parameters={str(k): str(v) for k, v in params.items() if v is not None},
            media_format=start.get("mediaFormat") or {},
        )

    if event == "media":
        media = msg.get("media") or {}
        payload = media.get("payload")
        if not isinstance(payload, str):
            return UnknownFrame(event="media", raw=msg)
        return MediaFrame(
            payload=payload,
            timestamp=_as_int(media.get("timestamp")),
            stream_sid=msg.get("streamSid", ""),
        )

    if event == "mark":
        mark = msg.get("mark") or {}
        return MarkFrame(name=str(mark.get("name", "")))

    if event == "stop":
        stop = msg.get("stop") or {}
        return StopFrame(call_sid=stop.get("callSid", ""))

    return UnknownFrame(event=str(event), raw=msg)


class TelephonyChannel(ABC):
    """Abstract telephony channel: frames in, audio/marks/clear out.

    Each concrete channel wraps one transport connection (a Twilio Media
    Stream WebSocket, for example) for the lifetime of one call.
    """

    @abstractmethod
    def frames(self) -> AsyncIterator[Frame]:
        """Yield parsed frames in arrival order until the transport closes.

        Malformed messages are skipped. The iterator ends when the
        connection closes; a ``stop`` frame is yielded like any other.
        """

    @abstractmethod
    async def send_audio(self, stream_sid: str, payload: str) -> None:
        """Queue one base64 audio chunk for playback to the caller."""

    @abstractmethod
    async def send_mark(self, stream_sid: str, name: str) -> None:
        """Queue a playback mark behind the audio already sent."""

    @abstractmethod
    async def send_clear(self, stream_sid: str) -> None:
        """Discard all audio queued but not yet played."""

    @abstractmethod
    async def close(self) -> None:
        """Tear down the channel connection. Safe to call multiple times."""
