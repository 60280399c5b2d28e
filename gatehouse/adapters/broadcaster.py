"""Fan-out of stream events to the observers of each session.

Each observer owns a bounded queue drained by its own writer (the HTTP
stream handler). Delivery is ``put_nowait``: a closed channel or a
full queue counts as a disconnect, so the observer is closed and
removed and nobody else waits on it. Disconnecting rather than
skipping keeps every surviving observer's sequence gap-free.

Channels are asyncio objects and must be fed from the event loop
thread; the session map itself is guarded by a lock so HTTP handlers
and session consumers can register and tear down concurrently.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import uuid

from gatehouse.adapters.events import StreamEvent

logger = logging.getLogger(__name__)


class ObserverChannel:
    """Live sink for one client of one session."""

    def __init__(self, session_id: str, maxsize: int = 1000) -> None:
        self.session_id = session_id
        self.channel_id = uuid.uuid4().hex[:8]
        self._maxsize = maxsize
        # One slot beyond maxsize is reserved for the end-of-stream marker,
        # so closing never displaces an accepted event.
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue(
            maxsize=maxsize + 1 if maxsize > 0 else 0,
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: StreamEvent) -> bool:
        """Enqueue without blocking. False means the observer is gone."""
        if self._closed:
            return False
        if self._maxsize > 0 and self._queue.qsize() >= self._maxsize:
            return False
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        """Stop accepting events; the reader drains what was accepted, then
        sees end-of-stream. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def get(self, timeout: float | None = None) -> StreamEvent | None:
        """Next event, or None once closed and drained.

        Raises asyncio.TimeoutError when nothing arrives within *timeout*.
        """
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            event = await self.get()
            if event is None:
                return
            yield event

    def qsize(self) -> int:
        return self._queue.qsize()


class EventBroadcaster:
    """Session id -> observer channels."""

    def __init__(self, queue_size: int = 1000) -> None:
        self._queue_size = queue_size
        self._lock = threading.Lock()
        self._observers: dict[str, list[ObserverChannel]] = {}

    def subscribe(self, session_id: str) -> ObserverChannel:
        """Create a channel with the configured queue size and register it."""
        channel = ObserverChannel(session_id, maxsize=self._queue_size)
        self.add_observer(session_id, channel)
        return channel

    def add_observer(self, session_id: str, channel: ObserverChannel) -> None:
        with self._lock:
            channels = self._observers.setdefault(session_id, [])
            if channel not in channels:
                channels.append(channel)
            count = len(channels)
        logger.info(
            "Observer %s joined session %s (%d connected)",
            channel.channel_id, session_id[:12], count,
        )

    def remove_observer(self, session_id: str, channel: ObserverChannel) -> bool:
        """Unregister and close a channel. Safe to call repeatedly."""
        with self._lock:
            channels = self._observers.get(session_id)
            removed = bool(channels) and channel in channels
            if removed:
                channels.remove(channel)
                if not channels:
                    del self._observers[session_id]
        channel.close()
        if removed:
            logger.info(
                "Observer %s left session %s", channel.channel_id, session_id[:12],
            )
        return removed

    def broadcast(self, session_id: str, event: StreamEvent) -> int:
        """Deliver *event* to every observer; returns how many took it.

        With no observers this is a no-op: late joiners get no replay.
        """
        with self._lock:
            channels = list(self._observers.get(session_id, ()))
        if not channels:
            logger.debug(
                "No observers for session %s, dropping %s",
                session_id[:12], event.event_type,
            )
            return 0

        delivered = 0
        for channel in channels:
            if channel.send(event):
                delivered += 1
                continue
            if not channel.closed:
                logger.warning(
                    "Observer %s on session %s fell behind (%d queued), disconnecting",
                    channel.channel_id, session_id[:12], channel.qsize(),
                )
            self.remove_observer(session_id, channel)
        return delivered

    def get_observer_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._observers.get(session_id, ()))

    def get_total_observer_count(self) -> int:
        with self._lock:
            return sum(len(c) for c in self._observers.values())

    def close_session(self, session_id: str) -> int:
        """Close and drop every observer of a session. Idempotent."""
        with self._lock:
            channels = self._observers.pop(session_id, [])
        for channel in channels:
            channel.close()
        if channels:
            logger.info(
                "Closed %d observer(s) for session %s", len(channels), session_id[:12],
            )
        return len(channels)

    def close_all(self) -> None:
        with self._lock:
            session_ids = list(self._observers)
        for session_id in session_ids:
            self.close_session(session_id)
