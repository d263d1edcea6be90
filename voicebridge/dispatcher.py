"""Function-call dispatcher: model function call → side effect → text result.

``dispatch`` never raises for anything a tool does. Unknown names, bad
JSON, missing arguments, timeouts and handler exceptions all come back as
short sentences the model can speak around, and every result is capped at
``max_tool_result_chars``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Optional, Union

from voicebridge.config import settings
from voicebridge.tools.base import ToolContext
from voicebridge.tools.registry import ToolRegistry

log = logging.getLogger("voicebridge.dispatcher")


class FunctionCallDispatcher:
    """Executes function calls against one call's tool registry."""

    def __init__(
        self,
        registry: ToolRegistry,
        default_timeout: Optional[float] = None,
        max_result_chars: Optional[int] = None,
    ) -> None:
        self._registry = registry
        self._default_timeout = default_timeout or settings.tool_timeout
        self._max_chars = max_result_chars or settings.max_tool_result_chars

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def _bound(self, text: str) -> str:
        if len(text) <= self._max_chars:
            return text
        if self._max_chars <= 3:
            return text[: self._max_chars]
        return text[: self._max_chars - 3] + "..."

    @staticmethod
    def _parse_arguments(arguments: Union[str, dict, None]) -> dict[str, Any]:
        if arguments is None or arguments == "":
            return {}
        if isinstance(arguments, dict):
            return arguments
        parsed = json.loads(arguments)
        if not isinstance(parsed, dict):
            raise ValueError("arguments must be a JSON object")
        return parsed

    async def dispatch(
        self,
        name: str,
        arguments: Union[str, dict, None],
        context: ToolContext,
    ) -> str:
        """Run one function call and return the text to send back to the model."""
        tool = self._registry.get(name)
        if tool is None:
            log.warning("Model called unknown function %r (call_sid=%s)", name, context.call_sid)
            return self._bound(f"Unknown function {name!r}. Do not call it again.")

        try:
            args = self._parse_arguments(arguments)
        except ValueError as e:
            log.warning("Invalid arguments for %s: %s", name, e)
            return self._bound(
                f"Invalid arguments for {name}: expected a JSON object. Please try again."
            )

        schema = tool.parameters_schema
        properties = schema.get("properties") or {}
        missing = [r for r in schema.get("required", []) if args.get(r) in (None, "")]
        if missing:
            return self._bound(
                f"Missing required arguments for {name}: {', '.join(missing)}. "
                "Ask the caller for them first."
            )
        if properties:
            args = {k: v for k, v in args.items() if k in properties}

        timeout = tool.timeout or self._default_timeout
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(tool.execute(context, **args), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("Tool %s timed out after %.1fs (call_sid=%s)", name, timeout, context.call_sid)
            return self._bound(tool.failure_message)
        except Exception:
            log.exception("Tool %s failed (call_sid=%s)", name, context.call_sid)
            return self._bound(tool.failure_message)

        log.info(
            "Tool %s completed in %.0fms (call_sid=%s)",
            name, (time.monotonic() - started) * 1000, context.call_sid,
        )
        return self._bound(str(result))
