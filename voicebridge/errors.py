"""Exception types raised across the voice bridge."""


class VoiceBridgeError(Exception):
    """Base class for bridge errors."""


class DataLayerError(VoiceBridgeError):
    """A request to the platform data layer failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BookingConflictError(DataLayerError):
    """The requested booking slot is already taken."""


class ModelConnectionError(VoiceBridgeError):
    """The speech model connection could not be established or was lost."""


class ToolRegistryError(VoiceBridgeError):
    """A function-call tool descriptor is invalid or duplicated."""


class InvalidTransitionError(VoiceBridgeError):
    """A call attempted a state transition the bridge does not allow."""


class TelephonyError(VoiceBridgeError):
    """A Twilio REST request failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
