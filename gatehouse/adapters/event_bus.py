"""Per-session async queue between the supervisor and the orchestrator.

The supervisor fires notification dicts via callback from the session's
runner task. The EventBus queues them, typed, for the orchestrator's
consumer loop, so a session's events are consumed in the order they
were produced.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from gatehouse.adapters.events import SupervisorEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging supervisor callbacks to one consumer."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[SupervisorEvent] = asyncio.Queue(
            maxsize=maxsize
        )
        self._put_timeout = put_timeout
        self._closed = False

    async def _callback(self, data: dict[str, Any]) -> None:
        """Callback to pass to AgentSupervisor.start(event_callback=...)."""
        await self.emit(dict_to_event(data))

    def make_callback(self):
        """Return the async callback for the supervisor."""
        return self._callback

    async def emit(self, event: SupervisorEvent) -> None:
        if self._closed:
            return
        try:
            # Backpressure on the reader rather than dropping
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (session %s, queue size: %d)",
                self._put_timeout, event.event_type, event.session_id[:12],
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[SupervisorEvent]:
        """Yield events as they arrive. Stops once closed and drained."""
        while not (self._closed and self._queue.empty()):
            try:
                event = await asyncio.wait_for(
                    self._queue.get(), timeout=0.5
                )
            except asyncio.TimeoutError:
                continue
            yield event

    def close(self) -> None:
        """Refuse new events; the consumer finishes what is queued."""
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()
