"""Pydantic models for tenant voice configuration.

The data layer serves tenant records as camelCase JSON. Two storage
locations exist for the system prompt: the legacy flat
``customSystemPrompt`` column and the structured ``aiConfig.systemPrompt``.
Both are read here; ``voicebridge.tenants.resolve_system_prompt`` collapses
them into one string.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import Field

from .base import CamelModel


class FAQ(CamelModel):
    question: str
    answer: str


class ServiceOffering(CamelModel):
    """A priced service the tenant sells; read to callers who ask about cost."""

    name: str
    price: float
    currency: str = "USD"


class CustomToolConfig(CamelModel):
    """A tenant-defined function the model may call, executed as a webhook."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    url: str
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = None
    failure_message: str = ""


class AIConfig(CamelModel):
    """Structured AI settings saved from the dashboard."""

    system_prompt: Optional[str] = None
    voice_id: Optional[str] = None
    model: Optional[str] = None
    faqs: list[FAQ] = Field(default_factory=list)
    custom_tools: list[CustomToolConfig] = Field(default_factory=list)


class TenantVoiceConfig(CamelModel):
    """Everything the bridge needs to know about the tenant owning a call."""

    id: str
    name: str = ""
    phone_number: Optional[str] = None
    ai_name: Optional[str] = None
    welcome_message: Optional[str] = None
    custom_system_prompt: Optional[str] = None
    voice_id: Optional[str] = None
    model: Optional[str] = None
    timezone: str = "UTC"
    services: list[ServiceOffering] = Field(default_factory=list)
    ai_config: AIConfig = Field(default_factory=AIConfig)

    # Set by the resolver when no tenant matched
    is_fallback: bool = False


FALLBACK_TENANT = TenantVoiceConfig(
    id="fallback",
    name="Our Business",
    ai_name="AI Assistant",
    is_fallback=True,
)
