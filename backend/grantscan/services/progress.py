"""One-way progress stream for a single subscriber, rendered as server-sent events."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

PROGRESS = "progress"
COMPLETE = "complete"
ERROR = "error"


def format_sse(event: str, data: Any) -> str:
    payload = json.dumps(data, ensure_ascii=False, default=str)
    return f"event: {event}\ndata: {payload}\n\n"


def percent(current: int, total: int) -> int:
    if total <= 0:
        return 0
    return max(0, min(100, (current * 200 + total) // (2 * total)))


@dataclass(frozen=True)
class ProgressEvent:
    event: str
    data: Dict[str, Any]

    def encode(self) -> str:
        return format_sse(self.event, self.data)


class ProgressChannel:
    """Ordered, at-most-once event queue.

    Writes after the subscriber disconnects, or after a terminal event, are
    dropped silently. ``writes`` counts events actually enqueued.
    """

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Optional[ProgressEvent]]" = asyncio.Queue()
        self._disconnected = False
        self._closed = False
        self.terminal: Optional[str] = None
        self.terminal_data: Any = None
        self.writes = 0

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    @property
    def closed(self) -> bool:
        return self._closed

    def _write(self, event: ProgressEvent) -> bool:
        if self._disconnected or self._closed:
            return False
        self._queue.put_nowait(event)
        self.writes += 1
        return True

    def emit_progress(
        self,
        stage: str,
        current: int,
        total: int,
        program_name: Optional[str] = None,
        phase: Optional[int] = None,
    ) -> bool:
        return self._write(
            ProgressEvent(
                PROGRESS,
                {
                    "stage": stage,
                    "current": current,
                    "total": total,
                    "percent": percent(current, total),
                    "programName": program_name or "",
                    "phase": phase or 0,
                },
            )
        )

    def complete(self, payload: Any) -> bool:
        return self._terminate(ProgressEvent(COMPLETE, payload))

    def error(self, message: str) -> bool:
        return self._terminate(ProgressEvent(ERROR, {"message": message}))

    def _terminate(self, event: ProgressEvent) -> bool:
        sent = self._write(event)
        if sent:
            self.terminal = event.event
            self.terminal_data = event.data
        self.close()
        return sent

    def close(self) -> None:
        """End the stream from the producer side."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def disconnect(self) -> None:
        """Subscriber went away; every later write becomes a no-op."""
        if self._disconnected:
            return
        self._disconnected = True
        if not self._closed:
            logger.info("Progress subscriber disconnected")
            self._queue.put_nowait(None)

    async def next_event(self) -> Optional[ProgressEvent]:
        """Next queued event, or None once the stream has ended."""
        return await self._queue.get()

    async def events(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self.next_event()
            if item is None:
                return
            yield item


async def stream_channel(
    channel: ProgressChannel,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    poll_seconds: float = 1.0,
) -> AsyncIterator[str]:
    """SSE body for a StreamingResponse; marks the channel disconnected when the client leaves."""
    try:
        while True:
            try:
                event = await asyncio.wait_for(channel.next_event(), timeout=poll_seconds)
            except asyncio.TimeoutError:
                if is_disconnected is not None and await is_disconnected():
                    return
                continue
            if event is None:
                return
            yield event.encode()
    finally:
        if not channel.closed:
            channel.disconnect()
