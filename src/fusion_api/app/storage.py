"""In-memory task store and per-task event hub.

Beginner terms:
- Projection: the public view of a task (status response plus run metadata).
- Subscriber: any object with `push(view)`; it receives the current snapshot
  when it subscribes and then one projection per mutation of that task.
- Retention window: how long a task stays readable after creation.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from .contracts import validate_status_response
from .errors import TaskConflictError, TaskNotFoundError, TaskTransitionError, serialize_error
from .models import GenerationContract, StageEvent, Task, TaskStatus, TaskView

logger = logging.getLogger(__name__)

QUEUED_PROGRESS = StageEvent(stage="QUEUED", progress=0)
DONE_PROGRESS = StageEvent(stage="DONE", progress=1)
COMPLETED_WITH_WARNINGS = "completed_with_warnings"


class TaskSubscriber(Protocol):
    def push(self, view: TaskView) -> None: ...


class InMemoryTaskStore:
    """Thread-safe task registry owning task records and their subscribers.

    Every mutation refreshes `updated_at` and notifies the task's subscribers
    while the lock is held, so no subscriber can observe a torn update.
    """

    def __init__(
        self,
        *,
        retention_s: float = 60 * 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if retention_s <= 0:
            raise ValueError("retention_s must be positive")
        self.retention_s = retention_s
        self._clock = clock
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._subscribers: dict[str, list[TaskSubscriber]] = {}

    def create_task(self, contract: GenerationContract) -> TaskView:
        """Insert a new QUEUED task; raise `TaskConflictError` on duplicate ids."""
        with self._lock:
            self._purge_expired_locked()
            if contract.task_id in self._tasks:
                raise TaskConflictError(
                    f"taskId {contract.task_id} already exists",
                    details={"taskId": contract.task_id},
                )
            task = Task(
                task_id=contract.task_id,
                contract=contract,
                status="QUEUED",
                updated_at=_utc_now_iso(),
                expires_at=self._clock() + self.retention_s,
            )
            self._tasks[task.task_id] = task
            view = _project(task)
            self._notify_locked(task.task_id, view)
            return view

    def get_task(self, task_id: str) -> TaskView | None:
        with self._lock:
            self._purge_expired_locked()
            task = self._tasks.get(task_id)
            return _project(task) if task else None

    def require_task(self, task_id: str) -> TaskView:
        view = self.get_task(task_id)
        if view is None:
            raise TaskNotFoundError("task not found", details={"taskId": task_id})
        return view

    def get_contract(self, task_id: str) -> GenerationContract | None:
        with self._lock:
            self._purge_expired_locked()
            task = self._tasks.get(task_id)
            return task.contract if task else None

    def list_tasks(self) -> list[TaskView]:
        with self._lock:
            self._purge_expired_locked()
            return [_project(task) for task in self._tasks.values()]

    def is_current_run(self, task_id: str, run_id: str) -> bool:
        with self._lock:
            return self._owned_locked(task_id, run_id) is not None

    def start_task(self, task_id: str, *, run_id: str | None = None) -> TaskView | None:
        """QUEUED -> PROCESSING; clears prior error and output fields."""
        return self._transition(
            task_id,
            run_id=run_id,
            allowed_from=("QUEUED",),
            status="PROCESSING",
            changes={
                "error_code": None,
                "message": None,
                "output_url": None,
                "progress": QUEUED_PROGRESS,
            },
        )

    def report_progress(
        self, task_id: str, event: StageEvent, *, run_id: str | None = None
    ) -> TaskView | None:
        """Record the latest executor stage; a no-op for unknown, evicted or replaced tasks."""
        with self._lock:
            task = self._owned_locked(task_id, run_id)
            if task is None:
                return None
            if task.is_terminal:
                raise TaskTransitionError(
                    f"task {task_id} is already {task.status}",
                    details={"taskId": task_id, "status": task.status},
                )
            return self._apply_locked(task, {"progress": event})

    def complete_task(
        self,
        task_id: str,
        *,
        output_url: str,
        warnings: list[str],
        workflow_graph: dict[str, Any],
        run_id: str | None = None,
    ) -> TaskView | None:
        """PROCESSING -> SUCCESS."""
        return self._transition(
            task_id,
            run_id=run_id,
            allowed_from=("PROCESSING",),
            status="SUCCESS",
            changes={
                "output_url": output_url,
                "error_code": None,
                "message": COMPLETED_WITH_WARNINGS if warnings else None,
                "warnings": list(warnings),
                "workflow_graph": workflow_graph,
                "progress": DONE_PROGRESS,
            },
        )

    def fail_task(
        self, task_id: str, error: object, *, run_id: str | None = None
    ) -> TaskView | None:
        """PROCESSING -> FAILED, recording the serialized error."""
        payload = serialize_error(error)
        return self._transition(
            task_id,
            run_id=run_id,
            allowed_from=("PROCESSING",),
            status="FAILED",
            changes={
                "output_url": None,
                "error_code": payload["code"],
                "message": payload["message"],
            },
        )

    def subscribe(self, task_id: str, subscriber: TaskSubscriber) -> TaskView:
        """Register `subscriber` and push the current snapshot to it first."""
        with self._lock:
            self._purge_expired_locked()
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError("task not found", details={"taskId": task_id})
            view = _project(task)
            subscriber.push(view)
            self._subscribers.setdefault(task_id, []).append(subscriber)
            return view

    def unsubscribe(self, task_id: str, subscriber: TaskSubscriber) -> None:
        with self._lock:
            entries = self._subscribers.get(task_id)
            if not entries:
                return
            if subscriber in entries:
                entries.remove(subscriber)
            if not entries:
                del self._subscribers[task_id]

    def subscriber_count(self, task_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(task_id, ()))

    def purge_expired(self) -> list[str]:
        with self._lock:
            return self._purge_expired_locked()

    def _transition(
        self,
        task_id: str,
        *,
        run_id: str | None,
        allowed_from: tuple[TaskStatus, ...],
        status: TaskStatus,
        changes: dict[str, Any],
    ) -> TaskView | None:
        with self._lock:
            task = self._owned_locked(task_id, run_id)
            if task is None:
                logger.info("task_store event=skip task_id=%s target=%s", task_id, status)
                return None
            if task.status not in allowed_from:
                raise TaskTransitionError(
                    f"cannot move task {task_id} from {task.status} to {status}",
                    details={"taskId": task_id, "from": task.status, "to": status},
                )
            return self._apply_locked(task, {**changes, "status": status})

    def _owned_locked(self, task_id: str, run_id: str | None) -> Task | None:
        """Return the live record, or None if it is gone or belongs to another run."""
        self._purge_expired_locked()
        task = self._tasks.get(task_id)
        if task is None:
            return None
        if run_id is not None and task.run_id != run_id:
            logger.info("task_store event=stale_run task_id=%s run_id=%s", task_id, run_id)
            return None
        return task

    def _apply_locked(self, task: Task, changes: dict[str, Any]) -> TaskView:
        updated = task.model_copy(update={**changes, "updated_at": _utc_now_iso()})
        self._tasks[task.task_id] = updated
        view = _project(updated)
        self._notify_locked(task.task_id, view)
        return view

    def _notify_locked(self, task_id: str, view: TaskView) -> None:
        for subscriber in list(self._subscribers.get(task_id, ())):
            try:
                subscriber.push(view)
            except Exception:  # noqa: BLE001
                logger.exception("task_store event=subscriber_failed task_id=%s", task_id)
                self._subscribers[task_id].remove(subscriber)
        if task_id in self._subscribers and not self._subscribers[task_id]:
            del self._subscribers[task_id]

    def _purge_expired_locked(self) -> list[str]:
        now = self._clock()
        expired = [task_id for task_id, task in self._tasks.items() if task.expires_at <= now]
        for task_id in expired:
            del self._tasks[task_id]
            self._subscribers.pop(task_id, None)
            logger.info("task_store event=evicted task_id=%s", task_id)
        return expired


def _project(task: Task) -> TaskView:
    status = validate_status_response(
        {
            "taskId": task.task_id,
            "status": task.status,
            "outputUrl": task.output_url,
            "errorCode": task.error_code,
            "message": task.message,
            "warnings": task.warnings,
            "updatedAt": task.updated_at,
        }
    )
    return TaskView(
        **status.model_dump(),
        workflow_graph=task.workflow_graph,
        progress=task.progress,
        run_id=task.run_id,
    )


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()
