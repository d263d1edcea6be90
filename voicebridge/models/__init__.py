"""Data models shared between the bridge and the platform data layer."""

from .booking import Booking, Client, TimeSlot
from .call import CallDirection, CallSessionRecord, CallStatus, TranscriptEntry
from .tenant import FAQ, AIConfig, CustomToolConfig, ServiceOffering, TenantVoiceConfig

__all__ = [
    "AIConfig",
    "Booking",
    "CallDirection",
    "CallSessionRecord",
    "CallStatus",
    "Client",
    "CustomToolConfig",
    "FAQ",
    "ServiceOffering",
    "TenantVoiceConfig",
    "TimeSlot",
    "TranscriptEntry",
]
