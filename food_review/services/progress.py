from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Dict, Protocol, Tuple

from pydantic import BaseModel

from ..schemas import ReviewBatchEvent, ReviewDoneEvent, ReviewErrorEvent, ReviewStartedEvent

logger = logging.getLogger(__name__)

EVENT_STARTED = "started"
EVENT_BATCH = "batch"
EVENT_DONE = "done"
EVENT_ERROR = "error"
TERMINAL_EVENTS = frozenset({EVENT_DONE, EVENT_ERROR})


class ProgressSink(Protocol):
    """Observer for run lifecycle events. Implementations must never block or raise."""

    def started(self, run_id: str, total: int) -> None: ...

    def batch(self, processed: int, suggestions_so_far: int) -> None: ...

    def done(self, run_id: str, processed: int, suggestions_so_far: int, summary: Dict[str, int]) -> None: ...

    def error(self, message: str) -> None: ...


class NullProgressSink:
    """Used when nobody is listening (cron and fire-and-forget triggers)."""

    def started(self, run_id: str, total: int) -> None:
        pass

    def batch(self, processed: int, suggestions_so_far: int) -> None:
        pass

    def done(self, run_id: str, processed: int, suggestions_so_far: int, summary: Dict[str, int]) -> None:
        pass

    def error(self, message: str) -> None:
        pass


class QueueProgressSink:
    """Buffers events for a single streaming subscriber.

    Once the subscriber goes away (`close()`), publishing silently becomes a no-op;
    the run itself keeps going and its persisted state stays authoritative.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Tuple[str, BaseModel]] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def started(self, run_id: str, total: int) -> None:
        self._publish(EVENT_STARTED, ReviewStartedEvent(runId=run_id, total=total))

    def batch(self, processed: int, suggestions_so_far: int) -> None:
        self._publish(EVENT_BATCH, ReviewBatchEvent(processed=processed, suggestionsSoFar=suggestions_so_far))

    def done(self, run_id: str, processed: int, suggestions_so_far: int, summary: Dict[str, int]) -> None:
        self._publish(
            EVENT_DONE,
            ReviewDoneEvent(
                runId=run_id,
                processed=processed,
                suggestionsSoFar=suggestions_so_far,
                summary=dict(summary),
            ),
        )

    def error(self, message: str) -> None:
        self._publish(EVENT_ERROR, ReviewErrorEvent(message=message))

    def _publish(self, event: str, payload: BaseModel) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait((event, payload))
        except (asyncio.QueueFull, RuntimeError) as exc:
            logger.debug("Dropping progress event %s; subscriber unavailable: %s", event, exc)
            self._closed = True

    async def stream(self) -> AsyncIterator[str]:
        """Yield SSE frames until a terminal event has been sent."""
        try:
            while True:
                event, payload = await self._queue.get()
                yield format_sse_event(event, payload)
                if event in TERMINAL_EVENTS:
                    break
        finally:
            self.close()


def format_sse_event(event: str, payload: BaseModel) -> str:
    return f"event: {event}\ndata: {payload.model_dump_json()}\n\n"
