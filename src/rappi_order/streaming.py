"""SSE event bus for reorder workflow progress.

Graph nodes publish :class:`~rappi_order.models.OrderEvent` objects per
session; API endpoints consume them via ``async for``.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import structlog

from rappi_order.models import OrderEvent

logger = structlog.get_logger(__name__)

EVENT_TEMPLATE_LOADED = "template_loaded"
EVENT_FETCHING_MENU = "fetching_menu"
EVENT_MENU_READY = "menu_ready"
EVENT_MATCHING = "matching"
EVENT_CART_READY = "cart_ready"
EVENT_COMPLETED = "completed"
EVENT_ERROR = "error"

TERMINAL_EVENTS = (EVENT_COMPLETED, EVENT_ERROR)


class OrderEventStream:
    """In-memory pub/sub with per-session history.

    Every subscriber gets its own queue; late subscribers first receive the
    events already emitted for the session.
    """

    def __init__(self, max_queue_size: int = 256) -> None:
        self._queues: dict[str, list[asyncio.Queue[OrderEvent | None]]] = {}
        self._history: dict[str, list[OrderEvent]] = {}
        self._max_queue_size = max_queue_size

    async def emit(
        self,
        session_id: str,
        event_type: str,
        data: dict[str, Any] | None = None,
        message: str = "",
    ) -> OrderEvent:
        event = OrderEvent(event_type=event_type, session_id=session_id, data=data or {}, message=message)
        self._history.setdefault(session_id, []).append(event)

        queues = self._queues.get(session_id, [])
        for queue in queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("event_queue_full", session_id=session_id, event_type=event_type)

        logger.debug("event_emitted", session_id=session_id, event_type=event_type, subscribers=len(queues))
        return event

    async def subscribe(self, session_id: str) -> AsyncIterator[OrderEvent]:
        """Yield events until a terminal event or :meth:`close`."""
        history = list(self._history.get(session_id, []))
        for past in history:
            yield past
            if past.event_type in TERMINAL_EVENTS:
                return

        queue: asyncio.Queue[OrderEvent | None] = asyncio.Queue(maxsize=self._max_queue_size)
        self._queues.setdefault(session_id, []).append(queue)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
                if event.event_type in TERMINAL_EVENTS:
                    break
        finally:
            session_queues = self._queues.get(session_id, [])
            if queue in session_queues:
                session_queues.remove(queue)

    def close(self, session_id: str) -> None:
        for queue in self._queues.pop(session_id, []):
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                logger.warning("event_queue_full_on_close", session_id=session_id)

    def get_history(self, session_id: str) -> list[OrderEvent]:
        return list(self._history.get(session_id, []))
