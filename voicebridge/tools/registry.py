"""Registry mapping function names to validated tool descriptors.

Every tool is checked when it is registered, not when the model first
calls it:

  - name matches ``[A-Za-z0-9_-]{1,64}`` and is not already registered
  - ``parameters_schema`` is an object schema with a ``properties`` dict
  - every ``required`` entry names a declared property
  - ``timeout`` is None or a positive number

Built-ins are registered at application startup, so a bad built-in stops
the process before it accepts calls. Tenant custom tools are layered on
per call with ``with_tenant_tools``; an invalid one is logged and left out
of that call's toolset.
"""

from __future__ import annotations

import logging
import re
from typing import Iterator, Optional

import httpx

from voicebridge.errors import ToolRegistryError
from voicebridge.models import TenantVoiceConfig
from voicebridge.tools.base import BaseTool
from voicebridge.tools.booking import CreateBookingTool
from voicebridge.tools.calendar import CheckAvailabilityTool
from voicebridge.tools.custom import WebhookTool
from voicebridge.tools.leads import SaveLeadTool

log = logging.getLogger("voicebridge.tools.registry")

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_tool(tool: BaseTool) -> None:
    """Raise ToolRegistryError if ``tool`` cannot be declared to the model."""
    name = tool.name
    if not isinstance(name, str) or not NAME_PATTERN.match(name):
        raise ToolRegistryError(f"Invalid tool name {name!r}")

    schema = tool.parameters_schema
    if not isinstance(schema, dict) or schema.get("type") != "object":
        raise ToolRegistryError(f"Tool {name}: parameters must be an object schema")

    properties = schema.get("properties", {})
    if not isinstance(properties, dict):
        raise ToolRegistryError(f"Tool {name}: 'properties' must be an object")

    required = schema.get("required", [])
    if not isinstance(required, list):
        raise ToolRegistryError(f"Tool {name}: 'required' must be a list")
    missing = [r for r in required if r not in properties]
    if missing:
        raise ToolRegistryError(
            f"Tool {name}: required parameters not declared in properties: {missing}"
        )

    timeout = tool.timeout
    if timeout is not None and (
        isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
    ):
        raise ToolRegistryError(f"Tool {name}: timeout must be a positive number")


class ToolRegistry:
    def __init__(self, tools: Optional[list[BaseTool]] = None) -> None:
        self._tools: dict[str, BaseTool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: BaseTool) -> None:
        validate_tool(tool)
        if tool.name in self._tools:
            raise ToolRegistryError(f"Tool {tool.name} is already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[BaseTool]:
        return self._tools.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def declarations(self) -> list[dict]:
        """Function declarations for ``session.update``."""
        return [tool.to_declaration() for tool in self._tools.values()]

    def with_tenant_tools(
        self,
        tenant: TenantVoiceConfig,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "ToolRegistry":
        """Copy of this registry plus the tenant's valid custom tools."""
        merged = ToolRegistry()
        merged._tools = dict(self._tools)

        for config in tenant.ai_config.custom_tools:
            try:
                merged.register(WebhookTool(config, client=client))
            except ToolRegistryError as e:
                log.error("Skipping custom tool for tenant %s: %s", tenant.id, e)
        return merged

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[BaseTool]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)


def build_default_registry() -> ToolRegistry:
    """Register the built-in tools. Raises ToolRegistryError on a bad descriptor."""
    registry = ToolRegistry([
        CheckAvailabilityTool(),
        CreateBookingTool(),
        SaveLeadTool(),
    ])
    log.info("Registered built-in tools: %s", ", ".join(registry.names))
    return registry
