"""Tenant resolution and prompt composition for a call.

Resolution order for one call:

  1. explicit tenant id (outbound calls pass ``tenantId`` as a stream parameter)
  2. dialed number (``To``) matched against tenant phone numbers
  3. ``FALLBACK_TENANT`` with a brand-neutral default prompt

A resolver instance lives for exactly one call. The first result is cached
on the instance, so asking twice never switches tenants mid-call. The
tenant record is re-read once more by id when the model session is
configured (``refresh``), which picks up dashboard edits made while the
call was ringing; edits after that point only affect the next call.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from voicebridge.config import DEFAULT_GREETING, DEFAULT_SYSTEM_PROMPT, settings
from voicebridge.datalayer import DataLayer
from voicebridge.errors import DataLayerError
from voicebridge.models import TenantVoiceConfig
from voicebridge.models.tenant import FALLBACK_TENANT

log = logging.getLogger("voicebridge.tenants")

PRICING_UNAVAILABLE = "Pricing is available upon request."

VOICE_RULES = (
    "\n\nVOICE CHANNEL RULES: You are speaking on a live phone call. Keep turns "
    "short and natural, spell out numbers the way people say them, and confirm "
    "names, phone numbers and dates back to the caller. If a tool result says "
    "something went wrong, apologize briefly and offer another option. NEVER read "
    "error codes, JSON, or internal system messages aloud."
)


def _non_blank(value: Optional[str]) -> Optional[str]:
    if value and value.strip():
        return value
    return None


def resolve_system_prompt(
    tenant: Optional[TenantVoiceConfig],
    explicit_prompt: Optional[str] = None,
) -> str:
    """Collapse every prompt source into one string; first non-blank wins.

    1. ``explicit_prompt`` supplied by the caller of the session
    2. structured ``ai_config.system_prompt``
    3. legacy flat ``custom_system_prompt``
    4. ``DEFAULT_SYSTEM_PROMPT``
    """
    candidates = [explicit_prompt]
    if tenant is not None:
        candidates.append(tenant.ai_config.system_prompt)
        candidates.append(tenant.custom_system_prompt)

    for candidate in candidates:
        prompt = _non_blank(candidate)
        if prompt is not None:
            return prompt
    return DEFAULT_SYSTEM_PROMPT


def resolve_voice(tenant: TenantVoiceConfig) -> str:
    return (
        _non_blank(tenant.ai_config.voice_id)
        or _non_blank(tenant.voice_id)
        or settings.default_voice
    )


def resolve_model(tenant: TenantVoiceConfig) -> str:
    return (
        _non_blank(tenant.ai_config.model)
        or _non_blank(tenant.model)
        or settings.realtime_model
    )


def _format_price(price: float) -> str:
    return f"{price:.2f}".rstrip("0").rstrip(".")


def build_pricing(tenant: TenantVoiceConfig) -> str:
    """One bullet per service, or a stock sentence when none are listed."""
    if not tenant.services:
        return PRICING_UNAVAILABLE
    return "\n".join(
        f"- {s.name}: {s.currency} {_format_price(s.price)}" for s in tenant.services
    )


def build_instructions(tenant: TenantVoiceConfig, prompt: Optional[str] = None) -> str:
    """Render the full model instructions for a tenant.

    The resolved prompt comes first, followed by the assistant's identity,
    pricing, the tenant FAQ knowledge block, then the voice-channel rules.
    """
    instructions = prompt if prompt is not None else resolve_system_prompt(tenant)

    ai_name = _non_blank(tenant.ai_name) or "the AI assistant"
    business = _non_blank(tenant.name) or "the business"
    instructions += f"\n\nYou are {ai_name}, answering calls for {business}."
    instructions += f"\n\nServices and pricing:\n{build_pricing(tenant)}"

    faqs = tenant.ai_config.faqs
    if faqs:
        lines = [f"- Q: {f.question}\n  A: {f.answer}" for f in faqs]
        instructions += f"\n\nKnowledge base for {business}:\n" + "\n".join(lines)

    return instructions + VOICE_RULES


def build_greeting(tenant: TenantVoiceConfig, now: Optional[datetime] = None) -> str:
    """Time-of-day greeting followed by the tenant's welcome message."""
    welcome = _non_blank(tenant.welcome_message)
    if welcome is None:
        return DEFAULT_GREETING

    try:
        tz = ZoneInfo(tenant.timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        log.warning("Unknown timezone %r for tenant %s, using UTC", tenant.timezone, tenant.id)
        tz = ZoneInfo("UTC")

    local = (now or datetime.now(tz=tz)).astimezone(tz)
    if local.hour < 12:
        salutation = "Good morning"
    elif local.hour < 18:
        salutation = "Good afternoon"
    else:
        salutation = "Good evening"
    return f"{salutation}, {welcome}"


class TenantResolver:
    """Per-call tenant lookup with a call-scoped cache."""

    def __init__(self, data_layer: DataLayer) -> None:
        self._data_layer = data_layer
        self._resolved: Optional[TenantVoiceConfig] = None
        self._refreshed = False

    @property
    def tenant(self) -> Optional[TenantVoiceConfig]:
        return self._resolved

    async def resolve(
        self,
        called_number: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> TenantVoiceConfig:
        """Return the tenant for this call. Never raises, never returns None."""
        if self._resolved is not None:
            return self._resolved

        tenant: Optional[TenantVoiceConfig] = None
        number = (called_number or "").strip()
        explicit_id = (tenant_id or "").strip()

        try:
            if explicit_id:
                tenant = await self._data_layer.get_tenant(explicit_id)
                if tenant is None:
                    log.warning("Tenant id %s from stream parameters not found", explicit_id)
            if tenant is None and number:
                tenant = await self._data_layer.get_tenant_by_phone(number)
        except DataLayerError as exc:
            log.error(
                "Tenant lookup failed (number=%s tenant_id=%s); using fallback tenant: %s",
                number or "-", explicit_id or "-", exc,
            )
            tenant = None
        else:
            if tenant is None:
                log.warning(
                    "No tenant matches number=%s tenant_id=%s, using fallback tenant",
                    number or "-", explicit_id or "-",
                )

        if tenant is None:
            tenant = FALLBACK_TENANT.model_copy(deep=True)
        else:
            log.info("Tenant resolved: %s (%s)", tenant.name, tenant.id)

        self._resolved = tenant
        return tenant

    async def refresh(self) -> TenantVoiceConfig:
        """Re-read the resolved tenant by id once, keeping the snapshot on failure."""
        if self._resolved is None:
            return await self.resolve()
        if self._refreshed or self._resolved.is_fallback:
            return self._resolved

        self._refreshed = True
        try:
            fresh = await self._data_layer.get_tenant(self._resolved.id)
        except DataLayerError as exc:
            log.error("Tenant refresh failed for %s, keeping snapshot: %s", self._resolved.id, exc)
            return self._resolved

        if fresh is not None:
            self._resolved = fresh
        return self._resolved
