"""Model-callable tools for the voice bridge."""

from .base import BaseTool, ToolContext
from .booking import CreateBookingTool
from .calendar import CheckAvailabilityTool
from .custom import WebhookTool
from .leads import SaveLeadTool
from .registry import ToolRegistry, build_default_registry, validate_tool

__all__ = [
    "BaseTool",
    "CheckAvailabilityTool",
    "CreateBookingTool",
    "SaveLeadTool",
    "ToolContext",
    "ToolRegistry",
    "WebhookTool",
    "build_default_registry",
    "validate_tool",
]
