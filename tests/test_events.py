from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest

from fusion_api.app.contracts import validate_generation_contract
from fusion_api.app.errors import TaskNotFoundError
from fusion_api.app.events import KEEP_ALIVE_LINE, format_sse_event, open_event_stream
from fusion_api.app.storage import InMemoryTaskStore

PayloadFactory = Callable[..., dict[str, Any]]


@pytest.fixture
def store(make_payload: PayloadFactory) -> InMemoryTaskStore:
    task_store = InMemoryTaskStore()
    task_store.create_task(validate_generation_contract(make_payload()))
    return task_store


def _status_data(chunk: str) -> dict[str, Any]:
    event_line, data_line, *_ = chunk.split("\n")
    assert event_line == "event: status"
    assert data_line.startswith("data: ")
    return json.loads(data_line[len("data: ") :])


def test_format_sse_event_uses_compact_json() -> None:
    assert format_sse_event("status", {"taskId": "t1", "warnings": []}) == (
        'event: status\ndata: {"taskId":"t1","warnings":[]}\n\n'
    )


def test_stream_sends_retry_then_snapshot_then_updates(store: InMemoryTaskStore) -> None:
    async def _run() -> list[str]:
        stream = open_event_stream(store, "t1", keepalive_s=5, retry_ms=2500)
        chunks = [await anext(stream), await anext(stream)]
        store.start_task("t1")
        chunks.append(await anext(stream))
        await stream.aclose()
        return chunks

    retry, snapshot, update = asyncio.run(_run())

    assert retry == "retry: 2500\n\n"
    assert _status_data(snapshot)["status"] == "QUEUED"
    data = _status_data(update)
    assert data["status"] == "PROCESSING"
    assert data["progress"] == {"stage": "QUEUED", "progress": 0.0}
    assert store.subscriber_count("t1") == 0


def test_updates_from_worker_threads_are_delivered(store: InMemoryTaskStore) -> None:
    async def _run() -> str:
        stream = open_event_stream(store, "t1", keepalive_s=5, retry_ms=10)
        await anext(stream)
        await anext(stream)
        await asyncio.to_thread(store.start_task, "t1")
        chunk = await anext(stream)
        await stream.aclose()
        return chunk

    assert _status_data(asyncio.run(_run()))["status"] == "PROCESSING"


def test_idle_stream_emits_keep_alive(store: InMemoryTaskStore) -> None:
    async def _run() -> str:
        stream = open_event_stream(store, "t1", keepalive_s=0.01, retry_ms=10)
        await anext(stream)
        await anext(stream)
        chunk = await anext(stream)
        await stream.aclose()
        return chunk

    assert asyncio.run(_run()) == KEEP_ALIVE_LINE


def test_stream_stops_when_client_disconnects(store: InMemoryTaskStore) -> None:
    async def _disconnected() -> bool:
        return True

    async def _run() -> list[str]:
        stream = open_event_stream(
            store, "t1", keepalive_s=0.01, retry_ms=10, is_disconnected=_disconnected
        )
        return [chunk async for chunk in stream]

    chunks = asyncio.run(_run())

    assert len(chunks) == 2
    assert store.subscriber_count("t1") == 0


def test_unknown_task_fails_before_streaming(store: InMemoryTaskStore) -> None:
    async def _run() -> None:
        open_event_stream(store, "ghost", keepalive_s=1, retry_ms=10)

    with pytest.raises(TaskNotFoundError):
        asyncio.run(_run())
    assert store.subscriber_count("ghost") == 0


def test_unpulled_stream_registers_no_subscriber(store: InMemoryTaskStore) -> None:
    async def _run() -> int:
        stream = open_event_stream(store, "t1", keepalive_s=5, retry_ms=10)
        count = store.subscriber_count("t1")
        await stream.aclose()
        return count

    assert asyncio.run(_run()) == 0
    assert store.subscriber_count("t1") == 0


def test_stream_ends_when_task_is_evicted_before_first_pull(
    make_payload: PayloadFactory,
) -> None:
    now = [0.0]
    task_store = InMemoryTaskStore(retention_s=10, clock=lambda: now[0])
    task_store.create_task(validate_generation_contract(make_payload()))

    async def _run() -> list[str]:
        stream = open_event_stream(task_store, "t1", keepalive_s=5, retry_ms=10)
        now[0] += 20
        return [chunk async for chunk in stream]

    assert asyncio.run(_run()) == []
    assert task_store.subscriber_count("t1") == 0
