"""Lifecycle event bus for call start/completion and post-call consumers.

Handlers subscribed with ``subscribe()`` run as background tasks so the
emitter never waits on them; a failing handler is logged and forgotten.
Queue subscribers (``subscribe_queue()``) receive every event for live
streaming over the admin WebSocket.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, TypedDict

log = logging.getLogger("voicebridge.events")

CALL_STARTED = "call.started"
CALL_COMPLETED = "call.completed"
LEAD_SCORED = "lead.scored"


class LifecycleEvent(TypedDict):
    type: str          # call.started | call.completed | lead.scored
    timestamp: float
    tenant_id: str
    call_sid: str
    data: dict


EventHandler = Callable[[LifecycleEvent], Awaitable[None]]


class LifecycleEventBus:
    """Fire-and-forget event fan-out, one instance per process."""

    def __init__(self, queue_size: int = 200) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._subscribers: list[asyncio.Queue[LifecycleEvent]] = []
        self._queue_size = queue_size
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Run ``handler`` in the background for every ``event_type`` event."""
        self._handlers.setdefault(event_type, []).append(handler)

    def subscribe_queue(self) -> asyncio.Queue[LifecycleEvent]:
        """Create a new subscriber queue and return it."""
        q: asyncio.Queue[LifecycleEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(q)
        log.info("Event subscriber added (total: %d)", len(self._subscribers))
        return q

    def unsubscribe_queue(self, q: asyncio.Queue[LifecycleEvent]) -> None:
        """Remove a subscriber queue."""
        try:
            self._subscribers.remove(q)
        except ValueError:
            pass
        log.info("Event subscriber removed (total: %d)", len(self._subscribers))

    def emit(
        self,
        event_type: str,
        tenant_id: str,
        call_sid: str,
        data: dict[str, Any] | None = None,
    ) -> LifecycleEvent:
        """Publish an event without waiting on any consumer."""
        event: LifecycleEvent = {
            "type": event_type,
            "timestamp": time.time(),
            "tenant_id": tenant_id,
            "call_sid": call_sid,
            "data": data or {},
        }

        for q in self._subscribers:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                # Drop oldest event to make room
                try:
                    q.get_nowait()
                    q.put_nowait(event)
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    pass

        for handler in self._handlers.get(event_type, []):
            task = asyncio.create_task(self._run_handler(handler, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return event

    @staticmethod
    async def _run_handler(handler: EventHandler, event: LifecycleEvent) -> None:
        try:
            await handler(event)
        except Exception:
            log.exception("Event handler %r failed for %s", handler, event["type"])

    @property
    def pending(self) -> int:
        """Number of handler tasks still running."""
        return len(self._tasks)

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for in-flight handlers, cancelling any still running after ``timeout``."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        log.info("Event bus drained (%d done, %d cancelled)", len(done), len(pending))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
