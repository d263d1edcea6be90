"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("voicebridge.config")

# Twilio Media Streams carry G.711 u-law at 8kHz mono. The model session is
# configured with the same format so audio passes through without resampling.
AUDIO_FORMAT = "g711_ulaw"
TELEPHONY_ENCODING = "audio/x-mulaw"
TELEPHONY_SAMPLE_RATE = 8000

DEFAULT_GREETING = "Hello, thank you for calling. How can I assist you today?"

DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly, professional AI receptionist answering the phone for a "
    "small business. Help callers with questions about the business and its "
    "services, check appointment availability, book appointments, and take down "
    "contact details for anyone who would like a follow-up. Keep answers short "
    "and conversational, confirm names, phone numbers and dates back to the "
    "caller before booking, and offer to take a message when you cannot help "
    "directly."
)

APOLOGY_MESSAGE = (
    "We're sorry, our assistant is unavailable right now. "
    "Please call back in a few minutes. Goodbye."
)


class Settings(BaseSettings):
    # Realtime speech model
    openai_api_key: str = ""
    realtime_url: str = "wss://api.openai.com/v1/realtime"
    realtime_model: str = "gpt-4o-realtime-preview"
    default_voice: str = "alloy"
    temperature: float = 0.8
    model_connect_timeout: float = 5.0

    # Function calls
    tool_timeout: float = 10.0
    max_tool_result_chars: int = 4000

    # Post-call analysis
    summary_enabled: bool = True
    summary_model: str = "gpt-4o-mini"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    public_host: str = ""

    # Platform data layer (tenants, call sessions, bookings, clients)
    data_layer_url: str = ""
    data_layer_api_key: str = ""
    data_layer_timeout: float = 5.0

    # Admin auth
    admin_api_key: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []
        _placeholders = {"sk-...", "AC...", "your-key-here"}

        if not self.openai_api_key or self.openai_api_key in _placeholders:
            raise ValueError(
                "OPENAI_API_KEY is missing or still a placeholder. "
                "Set it in .env to connect calls to the speech model."
            )

        if self.model_connect_timeout <= 0 or self.tool_timeout <= 0:
            raise ValueError("MODEL_CONNECT_TIMEOUT and TOOL_TIMEOUT must be positive.")

        if not self.data_layer_url:
            warnings.append(
                "DATA_LAYER_URL not set. Using the in-memory data layer; "
                "tenants, calls and bookings will not be persisted."
            )

        if not self.admin_api_key:
            if self.debug:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are open (DEBUG=true)."
                )
            else:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are locked in production. "
                    "Set ADMIN_API_KEY in .env to enable admin access."
                )

        if not self.twilio_account_sid or self.twilio_account_sid in _placeholders:
            warnings.append(
                "TWILIO_ACCOUNT_SID not set. Apology hangups and outbound calls are disabled."
            )

        return warnings


settings = Settings()

# Runtime-mutable voice behavior (admin API can change these). Read once per
# call when the model session is configured.
runtime_settings = {
    "barge_in_enabled": True,
    # Server VAD: higher threshold ignores more line noise
    "vad_threshold": 0.8,
    "vad_prefix_padding_ms": 300,
    # Silence after speech before the model takes its turn
    "vad_silence_duration_ms": 500,
}
