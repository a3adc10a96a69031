from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from .errors import FusionError
from .executor import StageSink
from .models import GenerationContract, GenerationResult, StageEvent
from .outputs import output_filename, output_url, write_output
from .storage import InMemoryTaskStore

logger = logging.getLogger(__name__)


class GenerationExecutor(Protocol):
    async def run(
        self,
        contract: GenerationContract,
        *,
        on_stage: StageSink | Callable[[StageEvent], None] | None = None,
    ) -> GenerationResult: ...


class StoreProgressSink:
    """Forwards executor stage events into the task store for one run."""

    def __init__(self, store: InMemoryTaskStore, task_id: str, run_id: str | None = None) -> None:
        self.store = store
        self.task_id = task_id
        self.run_id = run_id

    def report(self, event: StageEvent) -> None:
        self.store.report_progress(self.task_id, event, run_id=self.run_id)


class TaskRunner:
    """Task-run boundary: every executor failure ends as a FAILED task.

    A run is bound to the `run_id` of the record it started. If that record is
    evicted and the id reused, the old run's results are dropped instead of
    landing on the new task.
    """

    def __init__(
        self,
        *,
        store: InMemoryTaskStore,
        executor: GenerationExecutor,
        output_dir: Path,
    ) -> None:
        self.store = store
        self.executor = executor
        self.output_dir = output_dir

    async def run(self, task_id: str, *, run_id: str | None = None) -> None:
        contract = self.store.get_contract(task_id)
        if contract is None:
            logger.warning("task_run event=skip task_id=%s reason=missing", task_id)
            return

        try:
            started = self.store.start_task(task_id, run_id=run_id)
        except FusionError as exc:
            self._log_store_rejection(task_id, exc)
            return
        if started is None:
            return
        run_id = started.run_id
        logger.info("task_run event=start task_id=%s run_id=%s status=%s", task_id, run_id, "PROCESSING")

        try:
            result = await self.executor.run(
                contract, on_stage=StoreProgressSink(self.store, task_id, run_id)
            )
            if run_id is not None and not self.store.is_current_run(task_id, run_id):
                logger.warning("task_run event=stale task_id=%s run_id=%s", task_id, run_id)
                return
            filename = output_filename(task_id, result.output_extension)
            write_output(self.output_dir, filename, result.output_bytes)
        except FusionError as exc:
            logger.warning(
                "task_run event=failed task_id=%s error_code=%s message=%s",
                task_id,
                exc.code,
                exc.message,
            )
            self._fail(task_id, run_id, exc)
            return
        except Exception as exc:  # noqa: BLE001
            logger.exception("task_run event=failed task_id=%s error_code=UNEXPECTED_ERROR", task_id)
            self._fail(task_id, run_id, exc)
            return

        try:
            completed = self.store.complete_task(
                task_id,
                output_url=output_url(filename),
                warnings=result.warnings,
                workflow_graph=result.workflow_graph.to_wire(),
                run_id=run_id,
            )
        except FusionError as exc:
            self._log_store_rejection(task_id, exc)
            return
        if completed is not None:
            logger.info(
                "task_run event=completed task_id=%s status=%s warnings=%d",
                task_id,
                "SUCCESS",
                len(result.warnings),
            )

    def _fail(self, task_id: str, run_id: str | None, error: Exception) -> None:
        try:
            self.store.fail_task(task_id, error, run_id=run_id)
        except FusionError as exc:
            self._log_store_rejection(task_id, exc)

    @staticmethod
    def _log_store_rejection(task_id: str, exc: FusionError) -> None:
        logger.warning(
            "task_run event=store_rejected task_id=%s error_code=%s message=%s",
            task_id,
            exc.code,
            exc.message,
        )
