"""Lead capture tool.

The model calls ``saveLead`` when a caller wants a follow-up. Dedup by
phone/email is left to the data layer; a returning caller gets the new
notes appended to their existing record.
"""

from __future__ import annotations

import logging
from typing import Any

from voicebridge.session import redact_pii
from voicebridge.tools.base import BaseTool, ToolContext

logger = logging.getLogger("voicebridge.tools.leads")


class SaveLeadTool(BaseTool):
    """Save the caller as a lead in the tenant's CRM."""

    failure_message = "Unable to save the caller's details right now."

    @property
    def name(self) -> str:
        return "saveLead"

    @property
    def description(self) -> str:
        return (
            "Save the caller as a new lead for follow-up. Use the name, email "
            "and phone number collected during the conversation, plus a short "
            "note about what they are interested in."
        )

    @property
    def parameters_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Caller's full name."},
                "email": {"type": "string", "description": "Caller's email address."},
                "phone": {"type": "string", "description": "Caller's phone number."},
                "notes": {
                    "type": "string",
                    "description": "What the caller needs or asked about.",
                },
            },
            "required": ["name"],
        }

    async def execute(self, context: ToolContext, **kwargs: Any) -> str:
        name: str = kwargs["name"]
        email = kwargs.get("email") or None
        phone = kwargs.get("phone") or context.caller_number or None

        if not email and not phone:
            return "Please ask the caller for a phone number or email address before saving."

        client = await context.data_layer.capture_client(
            context.tenant.id,
            name=name,
            phone=phone,
            email=email,
            notes=kwargs.get("notes") or None,
            source="AI_AGENT",
        )
        logger.info(
            "Lead saved for tenant %s: client=%s phone=%s",
            context.tenant.id, client.id, redact_pii(phone or ""),
        )
        return "Lead saved successfully."
