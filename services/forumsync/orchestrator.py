"""
Public sync operations and the SyncState lifecycle.

Every triggered sync ends in `completed` or `failed`:

    idle → syncing → completed | failed

`last_successful_sync_at` only advances on `completed` and anchors the next
delta sync. Syncs run as background workflows; the caller gets a workflow ID
back immediately and can poll the course's SyncState or wait on the
workflow.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from loguru import logger

from .config import Config, SyncConfig
from .ed_client import EdClient, StaticTokenProvider, User, UserCourse
from .embedding import EmbedFn, QueryEmbedFn, make_embedders
from .state_store import SyncState, SyncStateStore, SyncStatus, SyncType
from .sync import CourseSyncReport, ForumSyncEngine
from .utils import AuthError, HealthStatus, SyncInProgressError
from .vector_store import CourseStats, ForumVectorStore
from .workflows import WorkflowRunner

ClientFactory = Callable[[str], EdClient]


@dataclass
class FanOutResult:
    """Outcome of starting syncs for all of a user's active courses."""
    total_courses: int
    started_syncs: int
    workflow_ids: list[str] = field(default_factory=list)
    skipped_course_ids: list[int] = field(default_factory=list)


@dataclass
class OperationResult:
    """Success flag and message for operations that report instead of raising."""
    success: bool
    message: str = ""
    workflow_id: Optional[str] = None
    stats: Optional[CourseStats] = None


class SyncOrchestrator:
    """
    Entry point for starting, inspecting and maintaining course syncs.

    Ed clients are built per call from the caller's token through
    `client_factory`, so no token is held between operations.
    """

    def __init__(
        self,
        state_store: SyncStateStore,
        vector_store: ForumVectorStore,
        client_factory: ClientFactory,
        runner: Optional[WorkflowRunner] = None,
        config: Optional[SyncConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize orchestrator.

        Args:
            state_store: Persisted SyncState records.
            vector_store: Vector index for course documents.
            client_factory: Builds an Ed client for a token.
            runner: Background workflow runner (one is created if omitted).
            config: Sync settings.
            sleep: Sleep function for retry backoff (injectable for tests).
        """
        self.config = config or SyncConfig()
        self.state = state_store
        self.vectors = vector_store
        self.client_factory = client_factory
        self.runner = runner or WorkflowRunner(
            max_workers=self.config.workflow_workers,
            step_max_attempts=self.config.step_max_attempts,
        )
        self.sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: Config,
        embed_fn: Optional[EmbedFn] = None,
        query_embed_fn: Optional[QueryEmbedFn] = None,
    ) -> "SyncOrchestrator":
        """Build an orchestrator and its collaborators from configuration."""
        if embed_fn is None or query_embed_fn is None:
            embed_fn, query_embed_fn = make_embedders(config.embedding)

        def client_factory(token: str) -> EdClient:
            return EdClient.from_config(config.ed, StaticTokenProvider(token))

        return cls(
            state_store=SyncStateStore(config.state.path),
            vector_store=ForumVectorStore.from_config(config.qdrant, embed_fn, query_embed_fn),
            client_factory=client_factory,
            config=config.sync,
        )

    def close(self) -> None:
        """Wait for running workflows, then close the vector store."""
        self.runner.shutdown(wait=True)
        self.vectors.close()

    def __enter__(self) -> "SyncOrchestrator":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # =========================================================================
    # Starting Syncs
    # =========================================================================

    def start_course_sync(
        self,
        course_id: int,
        course_name: str,
        course_code: str,
        sync_type: SyncType,
        ed_token: str,
        force_full_sync: bool = False,
    ) -> str:
        """
        Start a background sync for one course.

        Returns:
            The workflow ID.

        Raises:
            SyncInProgressError: The course is already syncing.
        """
        sync_type = SyncType(sync_type)
        workflow_id = self.runner.new_workflow_id()

        claimed = self.state.claim_for_sync(
            course_id,
            sync_type,
            workflow_id,
            course_name=course_name,
            course_code=course_code,
        )
        if not claimed:
            raise SyncInProgressError(course_id)

        try:
            self.runner.start(
                self.perform_course_sync,
                workflow_id=workflow_id,
                name=f"course-sync-{course_id}",
                course_id=course_id,
                course_name=course_name,
                course_code=course_code,
                sync_type=sync_type,
                ed_token=ed_token,
                force_full_sync=force_full_sync,
            )
        except Exception as e:
            self.state.update_sync_state(
                course_id,
                SyncStatus.FAILED,
                sync_type,
                error_message=f"Failed to start sync: {e}",
            )
            raise

        logger.info(f"Started {sync_type.value} sync for course {course_id} ({workflow_id})")
        return workflow_id

    def sync_all_active_courses(
        self,
        sync_type: SyncType,
        ed_token: str,
        force_full_sync: bool = False,
    ) -> FanOutResult:
        """
        Start a sync for each of the caller's active courses this year.

        Courses already syncing are skipped; a course whose sync fails to
        start is logged and skipped.

        Raises:
            AuthError: Empty or rejected token.
        """
        if not ed_token or not ed_token.strip():
            raise AuthError("ED token is required and cannot be empty")

        with self.client_factory(ed_token) as client:
            try:
                _, courses = client.get_user_and_courses(current_year_only=True)
            except AuthError as e:
                raise AuthError(f"Failed to validate ED token: {e}", e.status_code, e.body) from e

        active = [c.course for c in courses if c.course.status == "active"]
        result = FanOutResult(total_courses=len(active), started_syncs=0)

        for course in active:
            try:
                workflow_id = self.start_course_sync(
                    course.id,
                    course.name,
                    course.code,
                    sync_type,
                    ed_token,
                    force_full_sync=force_full_sync,
                )
            except SyncInProgressError:
                logger.info(f"Sync already in progress for course {course.id}, skipping")
                result.skipped_course_ids.append(course.id)
                continue
            except Exception as e:
                logger.error(f"Failed to start sync for course {course.id}: {e}")
                result.skipped_course_ids.append(course.id)
                continue

            result.workflow_ids.append(workflow_id)

        result.started_syncs = len(result.workflow_ids)
        logger.info(
            f"Started {result.started_syncs}/{result.total_courses} course syncs "
            f"({len(result.skipped_course_ids)} skipped)"
        )
        return result

    def force_full_resync(
        self,
        course_id: int,
        course_name: str,
        course_code: str,
        ed_token: str,
    ) -> OperationResult:
        """
        Delete a course's documents and rebuild them with a full sync.

        The token is checked before anything is deleted. Never raises;
        failures are reported in the result.
        """
        try:
            existing = self.state.get(course_id)
            if existing is not None and existing.status is SyncStatus.SYNCING:
                raise SyncInProgressError(course_id)

            self._validate_token(ed_token)

            self.vectors.delete_course(course_id)

            self.state.update_sync_state(
                course_id,
                SyncStatus.IDLE,
                SyncType.FULL,
                course_name=course_name,
                course_code=course_code,
                error_message=None,
                synced_threads=0,
                total_threads=0,
            )

            workflow_id = self.start_course_sync(
                course_id,
                course_name,
                course_code,
                SyncType.FULL,
                ed_token,
                force_full_sync=True,
            )
        except Exception as e:
            logger.error(f"Force resync failed for course {course_id}: {e}")
            return OperationResult(success=False, message=str(e) or "Failed to start full resync")

        return OperationResult(
            success=True,
            message=f"Started full resync for course {course_id}",
            workflow_id=workflow_id,
        )

    # =========================================================================
    # Workflow Step
    # =========================================================================

    def perform_course_sync(
        self,
        course_id: int,
        course_name: str,
        course_code: str,
        sync_type: SyncType,
        ed_token: str,
        force_full_sync: bool = False,
    ) -> CourseSyncReport:
        """
        Run one course sync to completion and record its final state.

        Validates the token first; a full sync runs when requested or
        forced, otherwise a delta sync since the last successful sync.

        Raises:
            AuthError: Token missing or rejected (state is marked failed).
            Exception: Any other failure (state is marked failed).
        """
        sync_type = SyncType(sync_type)
        started_at = datetime.now(timezone.utc)

        try:
            if not ed_token or not ed_token.strip():
                raise AuthError("ED token is required")

            with self.client_factory(ed_token) as client:
                try:
                    client.get_user_and_courses()
                except AuthError as e:
                    raise AuthError(f"Invalid token: {e}", e.status_code, e.body) from e

                self.state.update_sync_state(
                    course_id,
                    SyncStatus.SYNCING,
                    sync_type,
                    course_name=course_name,
                    course_code=course_code,
                    last_sync_at=started_at,
                )

                current = self.state.get(course_id)
                engine = ForumSyncEngine(client, self.vectors, self.config, sleep=self.sleep)

                if sync_type is SyncType.FULL or force_full_sync:
                    report = engine.run_full_sync(course_id)
                else:
                    since = current.last_successful_sync_at if current else None
                    report = engine.run_delta_sync(course_id, since)

            self.state.update_sync_state(
                course_id,
                SyncStatus.COMPLETED,
                sync_type,
                course_name=course_name,
                course_code=course_code,
                last_successful_sync_at=started_at,
                synced_threads=report.upserted,
                total_threads=report.total_threads,
                error_message="; ".join(report.errors) if report.errors else None,
            )
            return report

        except Exception as e:
            logger.error(f"Sync failed for course {course_id}: {e}")
            self.state.update_sync_state(
                course_id,
                SyncStatus.FAILED,
                sync_type,
                course_name=course_name,
                course_code=course_code,
                error_message=str(e) or type(e).__name__,
            )
            raise

    # =========================================================================
    # State Queries
    # =========================================================================

    def get_course_sync_state(self, course_id: int) -> SyncState | None:
        return self.state.get(course_id)

    def get_all_sync_states(self) -> list[SyncState]:
        return self.state.get_all()

    def wait_for_workflow(self, workflow_id: str, timeout: Optional[float] = None) -> Any:
        """Block until a sync workflow finishes and return its report."""
        return self.runner.wait(workflow_id, timeout=timeout)

    def get_health_status(self, ed_token: str) -> HealthStatus:
        """
        Check that the token can reach Ed.

        The identity call is bounded by the configured timeout; this never
        raises.
        """
        if not ed_token or not ed_token.strip():
            return HealthStatus(is_healthy=False, message="ED token not configured")

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="health-check")
        try:
            future = executor.submit(self._fetch_identity, ed_token)
            _, courses = future.result(timeout=self.config.health_check_timeout_seconds)
        except FuturesTimeoutError:
            return HealthStatus(
                is_healthy=False,
                message="Health check timeout - invalid token or network issue",
            )
        except Exception as e:
            return HealthStatus(is_healthy=False, message=str(e) or "Unknown error occurred")
        finally:
            # A hung call is abandoned rather than awaited
            executor.shutdown(wait=False)

        return HealthStatus(
            is_healthy=True,
            message="ED connection is healthy",
            courses_count=len(courses),
        )

    def _validate_token(self, ed_token: str) -> None:
        """
        Raises:
            AuthError: Token missing or rejected by Ed.
        """
        if not ed_token or not ed_token.strip():
            raise AuthError("Invalid token: ED token is required")
        try:
            self._fetch_identity(ed_token)
        except AuthError as e:
            raise AuthError(f"Invalid token: {e}", e.status_code, e.body) from e

    def _fetch_identity(self, ed_token: str) -> tuple[User, list[UserCourse]]:
        with self.client_factory(ed_token) as client:
            return client.get_user_and_courses()

    # =========================================================================
    # Maintenance
    # =========================================================================

    def cleanup_completed_syncs(self, older_than_days: Optional[float] = None) -> int:
        """Delete finished sync records older than the cutoff."""
        days = older_than_days if older_than_days is not None else self.config.cleanup_days
        return self.state.cleanup_completed(days)

    def reset_stuck_syncs(self, max_hours: Optional[float] = None) -> int:
        """Fail syncs that have been running longer than the cutoff."""
        hours = max_hours if max_hours is not None else self.config.stuck_sync_hours
        return self.state.reset_stuck(hours)

    def delete_course_sync(self, course_id: int) -> bool:
        """Delete a course's sync record. Returns True if one existed."""
        return self.state.delete(course_id)

    def cleanup_course_vectors(self, course_id: int) -> OperationResult:
        """Delete every document for a course."""
        try:
            self.vectors.delete_course(course_id)
        except Exception as e:
            return OperationResult(success=False, message=str(e) or "Failed to delete course vectors")
        return OperationResult(success=True, message=f"Deleted all vectors for course {course_id}")

    def get_course_vector_stats(self, course_id: int) -> OperationResult:
        """Document counts for a course, by type."""
        try:
            stats = self.vectors.get_course_stats(course_id)
        except Exception as e:
            return OperationResult(success=False, message=str(e) or "Failed to get vector stats")
        return OperationResult(success=True, stats=stats)
