"""FastAPI application wiring for the image fusion service.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Background task: work FastAPI runs after the response has been sent; used
  here to start the generation run once the 202 response is out.
- SSE (Server-Sent Events): a long-lived text/event-stream response that
  pushes `status` events to the browser.
- app.state: a place to store shared runtime objects (store, runner, settings).
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .app.contracts import validate_generation_contract
from .app.errors import (
    FusionError,
    RequestBodyError,
    RouteNotFoundError,
    error_body,
    http_status_for,
)
from .app.events import open_event_stream
from .app.executor import DualTrackExecutor
from .app.models import TaskCreatedView, TaskView
from .app.outputs import resolve_output_path
from .app.runner import GenerationExecutor, TaskRunner
from .app.settings import Settings, get_settings
from .app.storage import InMemoryTaskStore

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"cache-control": "no-store"}


def create_app(
    *,
    settings_override: Settings | None = None,
    store: InMemoryTaskStore | None = None,
    executor: GenerationExecutor | None = None,
) -> FastAPI:
    """Application factory.

    Collaborators can be injected so each test builds a fresh app with a
    stubbed executor or a store driven by a fake clock.
    """
    settings = settings_override or get_settings()
    output_dir = settings.resolved_output_dir()
    task_store = store or InMemoryTaskStore(retention_s=settings.task_retention_s)
    runner = TaskRunner(
        store=task_store,
        executor=executor or DualTrackExecutor(settings=settings),
        output_dir=output_dir,
    )

    app = FastAPI(title=settings.app_name, version="0.2.0")
    # Shared objects live in app.state so route handlers can reuse them.
    app.state.settings = settings
    app.state.store = task_store
    app.state.runner = runner

    _register_error_handlers(app)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {
            "service": settings.app_name,
            "status": "ok",
            "now": datetime.now(tz=UTC).isoformat(),
        }

    @app.get("/api/tasks")
    def list_tasks() -> JSONResponse:
        tasks = [view.to_wire() for view in app.state.store.list_tasks()]
        return JSONResponse({"tasks": tasks}, headers=NO_STORE_HEADERS)

    @app.post("/api/tasks", status_code=202)
    async def create_task(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
        # 1) Read + validate the raw contract; failures never reach the store.
        payload = await _read_json_body(request, max_bytes=settings.max_body_bytes)
        contract = validate_generation_contract(payload)

        # 2) Register the task (409 on duplicate id) and schedule the run.
        view = app.state.store.create_task(contract)
        background_tasks.add_task(app.state.runner.run, contract.task_id, run_id=view.run_id)
        logger.info(
            "task_create event=accepted task_id=%s sources=%d",
            contract.task_id,
            len(contract.sources),
        )
        return JSONResponse(
            _created_view(view).to_wire(),
            status_code=202,
            headers=NO_STORE_HEADERS,
        )

    @app.get("/api/tasks/{task_id}")
    def get_task(task_id: str) -> JSONResponse:
        view = app.state.store.require_task(task_id)
        return JSONResponse(view.to_wire(), headers=NO_STORE_HEADERS)

    @app.get("/api/tasks/{task_id}/events")
    async def stream_task_events(task_id: str, request: Request) -> StreamingResponse:
        events = open_event_stream(
            app.state.store,
            task_id,
            keepalive_s=settings.sse_keepalive_s,
            retry_ms=settings.sse_retry_ms,
            is_disconnected=request.is_disconnected,
        )
        return StreamingResponse(
            events,
            media_type="text/event-stream",
            headers={**NO_STORE_HEADERS, "connection": "keep-alive"},
        )

    @app.get("/outputs/{file_name:path}")
    def get_output(file_name: str) -> FileResponse:
        path = resolve_output_path(output_dir, file_name)
        if path is None or not path.is_file():
            raise RouteNotFoundError("Not Found", details={"path": f"/outputs/{file_name}"})
        return FileResponse(path, headers={"cache-control": "public, max-age=300"})

    return app


def _created_view(view: TaskView) -> TaskCreatedView:
    encoded = quote(view.task_id, safe="")
    return TaskCreatedView(
        **view.model_dump(),
        status_url=f"/api/tasks/{encoded}",
        stream_url=f"/api/tasks/{encoded}/events",
    )


async def _read_json_body(request: Request, *, max_bytes: int) -> Any:
    """Read the request body with a size cap and parse it as JSON."""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise RequestBodyError("REQUEST_TOO_LARGE", "request body is too large", status_code=413)

    chunks: list[bytes] = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > max_bytes:
            raise RequestBodyError(
                "REQUEST_TOO_LARGE", "request body is too large", status_code=413
            )
        chunks.append(chunk)

    raw = b"".join(chunks).decode("utf-8", errors="replace")
    if not raw.strip():
        raise RequestBodyError("EMPTY_BODY", "request body is empty")
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise RequestBodyError("INVALID_JSON", "invalid JSON body") from exc


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(FusionError)
    async def handle_fusion_error(_: Request, exc: FusionError) -> JSONResponse:
        return JSONResponse(
            error_body(exc), status_code=http_status_for(exc), headers=NO_STORE_HEADERS
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        code = {404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}.get(exc.status_code, "HTTP_ERROR")
        body = {"error": {"code": code, "message": str(exc.detail)}}
        return JSONResponse(body, status_code=exc.status_code, headers=NO_STORE_HEADERS)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(_: Request, exc: RequestValidationError) -> JSONResponse:
        body = {
            "error": {
                "code": "INVALID_REQUEST",
                "message": "request validation failed",
                "details": {"errors": json.loads(json.dumps(exc.errors(), default=str))},
            }
        }
        return JSONResponse(body, status_code=400, headers=NO_STORE_HEADERS)

    @app.exception_handler(Exception)
    async def handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
        logger.exception("http event=unexpected_error")
        return JSONResponse(error_body(exc), status_code=500, headers=NO_STORE_HEADERS)


# Module-level app for `uvicorn fusion_api.main:app`.
app = create_app()
