"""
Background workflow runner for course syncs.

A workflow is a single step callable run on a shared thread pool. The
runner hands back a workflow ID immediately and tracks each run's status,
result and error so callers can poll or wait on it.

Features:
- Non-blocking start with a caller-visible workflow ID
- Whole-step retries for unexpected infrastructure errors
- Status tracking and blocking wait with timeout
- Graceful shutdown
"""

from __future__ import annotations

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from loguru import logger

from .utils import AuthError, SyncInProgressError

# Errors that mean re-running the step cannot help
NON_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (AuthError, SyncInProgressError)


class WorkflowStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class WorkflowRun:
    """Bookkeeping for one workflow."""
    workflow_id: str
    name: str
    status: WorkflowStatus = WorkflowStatus.RUNNING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    attempts: int = 0
    result: Any = None
    error: Optional[str] = None


class WorkflowRunner:
    """Runs workflow steps in the background on a bounded thread pool."""

    def __init__(self, max_workers: int = 4, step_max_attempts: int = 1):
        """
        Initialize runner.

        Args:
            max_workers: Number of workflows that may run at once.
            step_max_attempts: Times a failing step is run before the
                workflow is marked failed.
        """
        if step_max_attempts < 1:
            raise ValueError(f"step_max_attempts must be at least 1, got {step_max_attempts}")

        self.step_max_attempts = step_max_attempts
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="workflow",
        )
        self._runs: dict[str, WorkflowRun] = {}
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()

    @staticmethod
    def new_workflow_id() -> str:
        return str(uuid.uuid4())

    def start(
        self,
        step: Callable[..., Any],
        *,
        workflow_id: Optional[str] = None,
        name: Optional[str] = None,
        **kwargs: Any,
    ) -> str:
        """
        Start a workflow that runs `step(**kwargs)`.

        Returns:
            The workflow ID.
        """
        workflow_id = workflow_id or self.new_workflow_id()
        run = WorkflowRun(
            workflow_id=workflow_id,
            name=name or getattr(step, "__name__", "workflow"),
            started_at=datetime.now(timezone.utc),
        )

        with self._lock:
            if workflow_id in self._runs:
                raise ValueError(f"Workflow {workflow_id} already exists")
            self._runs[workflow_id] = run
            self._futures[workflow_id] = self._executor.submit(self._execute, run, step, kwargs)

        logger.info(f"Started workflow {run.name} ({workflow_id})")
        return workflow_id

    def status(self, workflow_id: str) -> Optional[WorkflowRun]:
        with self._lock:
            return self._runs.get(workflow_id)

    def wait(self, workflow_id: str, timeout: Optional[float] = None) -> Any:
        """
        Block until a workflow finishes.

        Returns:
            The step's return value.

        Raises:
            KeyError: Unknown workflow ID.
            concurrent.futures.TimeoutError: Still running after `timeout`.
            Exception: Whatever the step raised on its final attempt.
        """
        with self._lock:
            future = self._futures.get(workflow_id)
        if future is None:
            raise KeyError(f"Unknown workflow: {workflow_id}")
        return future.result(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting workflows; optionally wait for running ones."""
        logger.info("Shutting down workflow runner")
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "WorkflowRunner":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _execute(self, run: WorkflowRun, step: Callable[..., Any], kwargs: dict[str, Any]) -> Any:
        while True:
            run.attempts += 1
            try:
                result = step(**kwargs)
            except NON_RETRYABLE_ERRORS as e:
                self._finish(run, error=e)
                raise
            except Exception as e:
                if run.attempts < self.step_max_attempts:
                    logger.warning(
                        f"Workflow {run.workflow_id} step failed "
                        f"(attempt {run.attempts}/{self.step_max_attempts}), re-running: {e}"
                    )
                    continue
                self._finish(run, error=e)
                raise
            self._finish(run, result=result)
            return result

    def _finish(self, run: WorkflowRun, result: Any = None, error: Optional[BaseException] = None) -> None:
        with self._lock:
            run.finished_at = datetime.now(timezone.utc)
            if error is None:
                run.status = WorkflowStatus.COMPLETED
                run.result = result
            else:
                run.status = WorkflowStatus.FAILED
                run.error = str(error)

        if error is None:
            logger.info(f"Workflow {run.name} ({run.workflow_id}) completed")
        else:
            logger.error(f"Workflow {run.name} ({run.workflow_id}) failed: {error}")
