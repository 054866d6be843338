"""
Sync engine for Ed course discussions.

Pipeline for one course:
1. Page through the thread listing (sequential, offset-based)
2. Enrich each thread with its full answer/comment tree, in fixed-size
   slices of concurrent detail fetches, each wrapped in the retry policy
3. Extract index documents and upsert them into the course namespace

Key principles:
- Partial failure is data: threads whose details never load are reported
  in `failed_thread_ids` and the sync still completes
- Idempotency: document IDs are derived from thread/comment IDs, so a
  re-run overwrites instead of duplicating
- Fan-in: results are gathered from futures in the coordinating thread,
  workers share no mutable state
"""

from __future__ import annotations

import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from loguru import logger

from .config import SyncConfig
from .ed_client import EdClient, Thread, ThreadDetails
from .retry import with_retry
from .utils import AuthError, Timer, timed_operation
from .vector_store import ForumVectorStore, SyncResult


@dataclass
class EnrichmentResult:
    """Thread details that loaded, and the threads that did not."""
    details: list[ThreadDetails] = field(default_factory=list)
    failed_thread_ids: list[int] = field(default_factory=list)


@dataclass
class CourseSyncReport:
    """Result of syncing one course."""
    course_id: int
    upserted: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)
    total_threads: int = 0
    failed_thread_ids: list[int] = field(default_factory=list)
    since: Optional[datetime] = None
    duration_seconds: float = 0.0

    @property
    def is_full_sync(self) -> bool:
        return self.since is None


class ForumSyncEngine:
    """
    Runs full and delta syncs of a course into the vector store.

    Holds no per-course state; one engine can serve several concurrent
    course syncs as long as its Ed client is shared safely (httpx.Client is).
    """

    def __init__(
        self,
        ed_client: EdClient,
        vector_store: ForumVectorStore,
        config: Optional[SyncConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize sync engine.

        Args:
            ed_client: Client for the Ed API.
            vector_store: Destination vector store.
            config: Concurrency and retry settings.
            sleep: Sleep function used between retries (injectable for tests).
        """
        self.ed = ed_client
        self.store = vector_store
        self.config = config or SyncConfig()
        self.sleep = sleep

    # =========================================================================
    # Enrichment
    # =========================================================================

    def enrich_threads(
        self,
        threads: list[Thread],
        concurrency: int,
        max_attempts: Optional[int] = None,
    ) -> EnrichmentResult:
        """
        Fetch full details for each thread.

        Threads are processed in slices of `concurrency`; every fetch in a
        slice runs concurrently and the whole slice is awaited before the
        next starts. A thread that still fails after `max_attempts` is
        recorded in `failed_thread_ids`.

        Raises:
            AuthError: The token was rejected mid-sync.
        """
        max_attempts = max_attempts or self.config.retry_attempts
        result = EnrichmentResult()
        total = len(threads)

        if total == 0:
            return result

        with ThreadPoolExecutor(
            max_workers=max(1, min(concurrency, total)),
            thread_name_prefix="ed-details",
        ) as executor:
            for i in range(0, total, concurrency):
                batch = threads[i:i + concurrency]

                futures: list[tuple[int, Future]] = [
                    (thread.id, executor.submit(self._fetch_details, thread.id, max_attempts))
                    for thread in batch
                ]

                for thread_id, future in futures:
                    try:
                        result.details.append(future.result())
                    except AuthError:
                        for _, pending in futures:
                            pending.cancel()
                        raise
                    except Exception as e:
                        logger.warning(
                            f"Failed to get details for thread {thread_id} "
                            f"after {max_attempts} attempts: {e}"
                        )
                        result.failed_thread_ids.append(thread_id)

                processed = i + len(batch)
                logger.info(
                    f"Processed {processed}/{total} threads ({round(processed / total * 100)}%) - "
                    f"{len(result.details)} successful, {len(result.failed_thread_ids)} failed"
                )

        if result.failed_thread_ids:
            logger.warning(
                f"Failed to fetch details for {len(result.failed_thread_ids)} threads: "
                f"{', '.join(str(t) for t in result.failed_thread_ids)}"
            )

        return result

    def _fetch_details(self, thread_id: int, max_attempts: int) -> ThreadDetails:
        return with_retry(
            lambda: self.ed.get_thread_details(thread_id),
            max_attempts=max_attempts,
            context=f"Getting details for thread {thread_id}",
            sleep=self.sleep,
        )

    # =========================================================================
    # Sync Entry Points
    # =========================================================================

    def run_full_sync(self, course_id: int) -> CourseSyncReport:
        """Sync every thread in a course."""
        logger.info(f"Starting full sync for course {course_id}")

        with Timer(f"full sync {course_id}") as timer:
            with timed_operation(f"Listing threads for course {course_id}", "debug"):
                threads = self.ed.get_all_threads(course_id)
            logger.info(f"Found {len(threads)} threads to sync")

            enrichment = self.enrich_threads(threads, self.config.full_concurrency)

            logger.info(f"Upserting {len(enrichment.details)} thread details to vector store")
            upsert = self.store.upsert_threads(enrichment.details, course_id)

        report = self._report(course_id, threads, enrichment, upsert, since=None)
        report.duration_seconds = timer.elapsed
        self._log_report(report)
        return report

    def run_delta_sync(self, course_id: int, since: Optional[datetime] = None) -> CourseSyncReport:
        """
        Sync threads updated since `since`.

        Without `since`, looks back the configured default window (7 days).
        """
        if since is None:
            since = datetime.now(timezone.utc) - timedelta(days=self.config.default_lookback_days)
        elif since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)

        logger.info(f"Starting delta sync for course {course_id} since {since.isoformat()}")

        with Timer(f"delta sync {course_id}") as timer:
            with timed_operation(f"Listing updated threads for course {course_id}", "debug"):
                threads = self.ed.get_all_threads(course_id, since=since)
            logger.info(f"Found {len(threads)} updated threads to sync")

            enrichment = self.enrich_threads(threads, self.config.delta_concurrency)
            upsert = self.store.delta_upsert(enrichment.details, course_id, since)

        report = self._report(course_id, threads, enrichment, upsert, since=since)
        report.duration_seconds = timer.elapsed
        self._log_report(report)
        return report

    def sync_courses(
        self,
        course_ids: list[int],
        force_full_sync: bool = False,
        since: Optional[datetime] = None,
        concurrency: int = 3,
    ) -> dict[int, CourseSyncReport]:
        """
        Sync several courses directly, a few at a time.

        A course that raises is reported with its error instead of
        aborting the others.
        """
        reports: dict[int, CourseSyncReport] = {}
        logger.info(f"Starting sync for {len(course_ids)} courses with concurrency {concurrency}")

        def sync_one(course_id: int) -> CourseSyncReport:
            if force_full_sync:
                return self.run_full_sync(course_id)
            return self.run_delta_sync(course_id, since)

        with ThreadPoolExecutor(max_workers=max(1, concurrency), thread_name_prefix="course-sync") as executor:
            for i in range(0, len(course_ids), concurrency):
                batch = course_ids[i:i + concurrency]
                futures = [(course_id, executor.submit(sync_one, course_id)) for course_id in batch]

                for course_id, future in futures:
                    try:
                        reports[course_id] = future.result()
                    except Exception as e:
                        logger.error(f"Failed to sync course {course_id}: {e}")
                        reports[course_id] = CourseSyncReport(course_id=course_id, errors=[str(e)])

                logger.info(
                    f"Completed batch {i // concurrency + 1}/"
                    f"{(len(course_ids) + concurrency - 1) // concurrency}"
                )

        total_upserted = sum(r.upserted for r in reports.values())
        total_errors = sum(len(r.errors) for r in reports.values())
        logger.info(f"Sync completed: {total_upserted} total documents upserted, {total_errors} total errors")

        return reports

    # =========================================================================
    # Helper Methods
    # =========================================================================

    @staticmethod
    def _report(
        course_id: int,
        threads: list[Thread],
        enrichment: EnrichmentResult,
        upsert: SyncResult,
        since: Optional[datetime],
    ) -> CourseSyncReport:
        errors = list(upsert.errors)
        if enrichment.failed_thread_ids:
            errors.append(
                f"Failed to fetch details for {len(enrichment.failed_thread_ids)} threads: "
                f"{', '.join(str(t) for t in enrichment.failed_thread_ids)}"
            )

        return CourseSyncReport(
            course_id=course_id,
            upserted=upsert.upserted,
            deleted=upsert.deleted,
            errors=errors,
            total_threads=len(threads),
            failed_thread_ids=list(enrichment.failed_thread_ids),
            since=since,
        )

    @staticmethod
    def _log_report(report: CourseSyncReport) -> None:
        kind = "Full" if report.is_full_sync else "Delta"
        logger.info(
            f"{kind} sync completed for course {report.course_id}: "
            f"{report.total_threads} threads, "
            f"{report.upserted} documents upserted, "
            f"{len(report.failed_thread_ids)} threads failed, "
            f"{len(report.errors)} errors, "
            f"duration: {report.duration_seconds:.2f}s"
        )
