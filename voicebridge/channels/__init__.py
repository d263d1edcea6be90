"""Telephony channels that carry the caller side of a call."""

from .base import (
    ConnectedFrame,
    Frame,
    MarkFrame,
    MediaFrame,
    StartFrame,
    StopFrame,
    TelephonyChannel,
    UnknownFrame,
    parse_frame,
)
from .twilio import TwilioMediaStreamChannel

__all__ = [
    "ConnectedFrame",
    "Frame",
    "MarkFrame",
    "MediaFrame",
    "StartFrame",
    "StopFrame",
    "TelephonyChannel",
    "TwilioMediaStreamChannel",
    "UnknownFrame",
    "parse_frame",
]
