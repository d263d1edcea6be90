"""Booking tool for the voice assistant.

The model calls ``createBooking`` after the caller has confirmed the
appointment details. The caller is matched to an existing client by phone
(or created), then the booking is written through the data layer.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from voicebridge.errors import BookingConflictError
from voicebridge.tools.base import BaseTool, ToolContext
from voicebridge.tools.calendar import tenant_zone

logger = logging.getLogger("voicebridge.tools.booking")


def parse_datetime(value: str, tz_name: str) -> datetime:
    """Parse an ISO date-time; naive values are taken as tenant-local time."""
    dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tenant_zone(tz_name))
    return dt


class CreateBookingTool(BaseTool):
    """Book an appointment for the caller.

    Parameters accepted from the model:

    * ``name``     -- Caller's name.
    * ``phone``    -- Caller's phone number.
    * ``dateTime`` -- ISO 8601 date-time of the appointment.
    * ``purpose``  -- What the appointment is for.
    """

    failure_message = "There was an error saving the appointment. Please offer to take a message instead."

    @property
    def name(self) -> str:
        return "createBooking"

    @property
    def description(self) -> str:
        return (
            "Book an appointment for the caller once they have confirmed the "
            "date and time. Requires the caller's phone number and the "
            "appointment date-time."
        )

    @property
    def parameters_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "name": {
                    "type": "string",
                    "description": "Full name of the caller.",
                },
                "phone": {
                    "type": "string",
                    "description": "Caller's phone number.",
                },
                "dateTime": {
                    "type": "string",
                    "description": "Appointment start in ISO 8601 format, e.g. 2025-03-14T15:30.",
                },
                "purpose": {
                    "type": "string",
                    "description": "Reason for the appointment.",
                },
            },
            "required": ["phone", "dateTime"],
        }

    async def execute(self, context: ToolContext, **kwargs: Any) -> str:
        """Find or create the client, then create the booking."""
        caller_name: str = kwargs.get("name") or ""
        phone: str = kwargs.get("phone") or context.caller_number
        date_str: str = kwargs["dateTime"]
        purpose: str = kwargs.get("purpose") or "General Consultation"

        try:
            start_dt = parse_datetime(date_str, context.tenant.timezone)
        except ValueError:
            return (
                f"Invalid date/time: {date_str}. "
                "Please use an ISO format such as 2025-03-14T15:30."
            )

        client = await context.data_layer.capture_client(
            context.tenant.id,
            name=caller_name,
            phone=phone,
            source="AI_AGENT",
        )

        try:
            booking = await context.data_layer.create_booking(
                context.tenant.id,
                client.id,
                start_dt,
                purpose=purpose,
            )
        except BookingConflictError:
            logger.info("Booking conflict for tenant %s at %s", context.tenant.id, start_dt)
            return (
                "That time slot is already booked. Please apologize and offer "
                "the caller a different time."
            )

        local = booking.date.astimezone(tenant_zone(context.tenant.timezone))
        return (
            f"Appointment confirmed for {local.strftime('%A, %B %d at %I:%M %p')}. "
            f"Reference: {booking.id[:8]}"
        )
