"""Tenant-defined tools executed as HTTP webhooks.

A tenant lists custom tools in ``aiConfig.customTools``. Each one is
declared to the model like a built-in and, when called, POSTs the
arguments to the tenant's URL. The response body is handed back to the
model: the ``result`` field of a JSON object if present, otherwise the raw
text.

Request body::

    {"tool": "<name>", "tenantId": "...", "callSid": "...", "arguments": {...}}
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from voicebridge.models import CustomToolConfig
from voicebridge.tools.base import BaseTool, ToolContext

logger = logging.getLogger("voicebridge.tools.custom")

DEFAULT_FAILURE = "That request could not be completed right now."


class WebhookTool(BaseTool):
    """A ``CustomToolConfig`` wrapped as a callable tool."""

    def __init__(
        self,
        config: CustomToolConfig,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config
        self._client = client
        self.timeout = config.timeout_seconds
        self.failure_message = config.failure_message or DEFAULT_FAILURE

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def description(self) -> str:
        return self._config.description

    @property
    def parameters_schema(self) -> dict:
        return self._config.parameters

    async def execute(self, context: ToolContext, **kwargs: Any) -> str:
        body = {
            "tool": self.name,
            "tenantId": context.tenant.id,
            "callSid": context.call_sid,
            "arguments": kwargs,
        }
        method = self._config.method.upper()
        if self._client is not None:
            resp = await self._send(self._client, method, body)
        else:
            # The dispatcher bounds the call; no separate HTTP timeout
            async with httpx.AsyncClient(timeout=None) as client:
                resp = await self._send(client, method, body)

        resp.raise_for_status()
        logger.info("Custom tool %s returned %d for tenant %s", self.name, resp.status_code, context.tenant.id)

        if "json" in resp.headers.get("content-type", ""):
            data = resp.json()
            if isinstance(data, dict) and "result" in data:
                return str(data["result"])
        return resp.text

    async def _send(self, client: httpx.AsyncClient, method: str, body: dict) -> httpx.Response:
        if method == "GET":
            return await client.get(
                self._config.url,
                params={k: str(v) for k, v in body["arguments"].items()},
                headers=self._config.headers,
            )
        return await client.request(
            method, self._config.url, json=body, headers=self._config.headers,
        )
