"""Server-Sent Events plumbing for task status streams."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from .errors import TaskNotFoundError
from .models import TaskView
from .storage import InMemoryTaskStore

logger = logging.getLogger(__name__)

KEEP_ALIVE_LINE = ": keep-alive\n\n"


def format_sse_event(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, separators=(',', ':'))}\n\n"


class QueueSubscriber:
    """Store subscriber that hands projections to one asyncio event loop.

    `push` may be called from any thread; the view is always enqueued on the
    loop that created the subscriber, preserving notification order.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._queue: asyncio.Queue[TaskView] = asyncio.Queue()

    def push(self, view: TaskView) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(view)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, view)

    async def next_view(self, timeout_s: float) -> TaskView | None:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout_s)
        except TimeoutError:
            return None


def open_event_stream(
    store: InMemoryTaskStore,
    task_id: str,
    *,
    keepalive_s: float,
    retry_ms: int,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
    """Return the SSE text stream for `task_id`.

    Raises `TaskNotFoundError` before any bytes are produced when the task is
    unknown. The subscription is made when the stream is first pulled, so a
    stream that is never iterated leaves nothing registered. The stream never
    ends on its own; the client decides when to stop listening.
    """
    store.require_task(task_id)

    async def _events() -> AsyncIterator[str]:
        subscriber = QueueSubscriber(asyncio.get_running_loop())
        try:
            store.subscribe(task_id, subscriber)
        except TaskNotFoundError:
            logger.info("task_events event=gone task_id=%s", task_id)
            return
        logger.info("task_events event=subscribed task_id=%s", task_id)
        try:
            yield f"retry: {retry_ms}\n\n"
            while True:
                view = await subscriber.next_view(keepalive_s)
                if view is not None:
                    yield format_sse_event("status", view.to_wire())
                    continue
                if is_disconnected is not None and await is_disconnected():
                    break
                yield KEEP_ALIVE_LINE
        finally:
            store.unsubscribe(task_id, subscriber)
            logger.info("task_events event=unsubscribed task_id=%s", task_id)

    return _events()
