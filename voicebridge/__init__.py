"""Voice call bridge: Twilio Media Streams to a realtime speech model."""

__version__ = "0.1.0"
