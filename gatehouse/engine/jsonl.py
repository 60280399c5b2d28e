"""Incremental newline-delimited JSON decoder for agent stdout.

Chunks arrive at arbitrary boundaries; complete lines are decoded as
they become available and partial lines are buffered. A line that is
not a JSON object raises MalformedEventError inside the parser, is
logged, and dropped. It never ends the stream.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from .errors import MalformedEventError

logger = logging.getLogger(__name__)


class JsonLinesParser:
    """Buffering JSON Lines decoder."""

    def __init__(self, max_line_bytes: int = 10 * 1024 * 1024, label: str = "") -> None:
        self._buffer = bytearray()
        self._max_line_bytes = max_line_bytes
        self._label = label
        # Set while skipping the rest of an oversize line.
        self._discarding = False
        self.malformed_count = 0
        self.last_error: MalformedEventError | None = None

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        """Consume a chunk and return every complete event it finished."""
        self._buffer.extend(chunk)
        events: list[dict[str, Any]] = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            raw = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            if self._discarding:
                self._discarding = False
                continue
            self._collect(raw, events)

        if len(self._buffer) > self._max_line_bytes:
            self._reject(
                MalformedEventError(
                    bytes(self._buffer[:120]).decode("utf-8", errors="replace"),
                    f"line exceeds {self._max_line_bytes} bytes",
                )
            )
            self._buffer.clear()
            self._discarding = True
        return events

    def flush(self) -> list[dict[str, Any]]:
        """Decode whatever is left once the stream has ended."""
        raw = bytes(self._buffer)
        self._buffer.clear()
        discarding, self._discarding = self._discarding, False
        events: list[dict[str, Any]] = []
        if not discarding:
            self._collect(raw, events)
        return events

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def _collect(self, raw: bytes, events: list[dict[str, Any]]) -> None:
        try:
            event = self.parse_line(raw)
        except MalformedEventError as exc:
            self._reject(exc)
            return
        if event is not None:
            events.append(event)

    @staticmethod
    def parse_line(raw: bytes) -> dict[str, Any] | None:
        """Decode one line. Blank lines yield None."""
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return None
        try:
            value = json.loads(line)
        except json.JSONDecodeError as exc:
            raise MalformedEventError(line, f"invalid JSON: {exc.msg}") from exc
        if not isinstance(value, dict):
            raise MalformedEventError(
                line, f"expected an object, got {type(value).__name__}"
            )
        return value

    def _reject(self, exc: MalformedEventError) -> None:
        self.malformed_count += 1
        self.last_error = exc
        logger.warning("Dropping agent output line%s: %s",
                       f" [{self._label}]" if self._label else "", exc)
