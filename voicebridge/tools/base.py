"""Base class for model-callable tools.

A tool is a named handler with a JSON-schema parameter declaration. The
same declaration is sent to the speech model in ``session.update`` and
checked by the dispatcher before the handler runs, so the model and the
bridge always agree on what a tool accepts.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from voicebridge.datalayer import DataLayer
from voicebridge.models import TenantVoiceConfig


@dataclass
class ToolContext:
    """What a handler may touch while serving one function call."""

    tenant: TenantVoiceConfig
    data_layer: DataLayer
    call_sid: str = ""
    caller_number: str = ""


class BaseTool(ABC):
    """One function the speech model may call.

    Subclasses set ``failure_message`` to the sentence the model should
    hear when the handler fails or times out. ``timeout`` of None means
    the dispatcher's default applies.
    """

    timeout: Optional[float] = None
    failure_message: str = "Sorry, that action could not be completed right now."

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @property
    @abstractmethod
    def parameters_schema(self) -> dict:
        ...

    @abstractmethod
    async def execute(self, context: ToolContext, **kwargs: Any) -> str:
        """Run the side effect and return text for the model."""

    def to_declaration(self) -> dict[str, Any]:
        """Realtime-protocol function declaration."""
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters_schema,
        }
