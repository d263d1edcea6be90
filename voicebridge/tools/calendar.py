"""Check-availability tool for the voice assistant.

The model calls ``checkAvailability`` with a date (and optional lookahead
window) to receive a short spoken-friendly list of open time slots from
the tenant's calendar in the data layer.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from voicebridge.tools.base import BaseTool, ToolContext

logger = logging.getLogger("voicebridge.tools.calendar")

# Keep the list short enough to read aloud
MAX_SLOTS_SPOKEN = 8


def tenant_zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


class CheckAvailabilityTool(BaseTool):
    """Return available appointment slots from the tenant's calendar.

    Parameters accepted from the model:

    * ``date``  -- ISO date string (``YYYY-MM-DD``).  Defaults to today.
    * ``days_ahead`` -- How many days to search forward (default **3**).
    * ``duration_minutes`` -- Appointment length (default **30**).
    """

    failure_message = "Unable to check availability right now."

    @property
    def name(self) -> str:
        return "checkAvailability"

    @property
    def description(self) -> str:
        return (
            "Check the business calendar for open appointment slots. "
            "Returns a list of available times over the requested date range."
        )

    @property
    def parameters_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "date": {
                    "type": "string",
                    "description": "Start date in YYYY-MM-DD format. Defaults to today.",
                },
                "days_ahead": {
                    "type": "integer",
                    "description": "Number of days ahead to search. Defaults to 3.",
                },
                "duration_minutes": {
                    "type": "integer",
                    "description": "Appointment length in minutes. Defaults to 30.",
                },
            },
            "required": [],
        }

    async def execute(self, context: ToolContext, **kwargs: Any) -> str:
        """Query the data layer and format results for the model."""
        date_str: str = kwargs.get("date") or ""
        try:
            days_ahead = max(1, min(int(kwargs.get("days_ahead") or 3), 14))
            duration = max(5, int(kwargs.get("duration_minutes") or 30))
        except (TypeError, ValueError):
            return "days_ahead and duration_minutes must be whole numbers."

        tz = tenant_zone(context.tenant.timezone)
        if date_str:
            try:
                start_date = datetime.strptime(date_str, "%Y-%m-%d").replace(tzinfo=tz)
            except ValueError:
                return f"Invalid date format: {date_str!r}. Please use YYYY-MM-DD."
        else:
            now = datetime.now(tz=tz)
            start_date = now.replace(hour=0, minute=0, second=0, microsecond=0)

        range_start = start_date
        range_end = start_date + timedelta(days=days_ahead)

        slots = await context.data_layer.get_available_slots(
            context.tenant.id,
            start=range_start,
            end=range_end,
            duration_minutes=duration,
        )

        if not slots:
            return (
                f"No available slots found between "
                f"{range_start.strftime('%Y-%m-%d')} and "
                f"{range_end.strftime('%Y-%m-%d')}."
            )

        lines = ["Available time slots:"]
        for slot in slots[:MAX_SLOTS_SPOKEN]:
            start = slot.start.astimezone(tz) if slot.start.tzinfo else slot.start
            end = slot.end.astimezone(tz) if slot.end.tzinfo else slot.end
            day = start.strftime("%A, %B %d")
            lines.append(
                f"  - {day}: {start.strftime('%I:%M %p')} to {end.strftime('%I:%M %p')}"
                f" (dateTime {start.isoformat()})"
            )
        if len(slots) > MAX_SLOTS_SPOKEN:
            lines.append(f"  ...and {len(slots) - MAX_SLOTS_SPOKEN} more.")

        logger.info("checkAvailability: %d slots for tenant %s", len(slots), context.tenant.id)
        return "\n".join(lines)
