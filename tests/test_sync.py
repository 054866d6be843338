"""
Tests for the course sync engine.
"""

from datetime import datetime, timedelta, timezone

import pytest

from factories import FakeEdClient, make_thread, ts
from services.forumsync.config import SyncConfig
from services.forumsync.sync import ForumSyncEngine
from services.forumsync.utils import AuthError


@pytest.fixture
def sync_config():
    return SyncConfig(full_concurrency=3, delta_concurrency=2, retry_attempts=3)


def make_engine(ed, vector_store, sync_config, fake_sleep):
    return ForumSyncEngine(ed, vector_store, config=sync_config, sleep=fake_sleep)


class TestEnrichment:
    """Test concurrent detail fetching."""

    def test_all_threads_enriched_in_order(self, vector_store, sync_config, fake_sleep):
        """Details should come back in thread order."""
        threads = [make_thread(i) for i in range(1, 8)]
        ed = FakeEdClient.with_threads(threads)
        engine = make_engine(ed, vector_store, sync_config, fake_sleep)

        result = engine.enrich_threads(threads, concurrency=3)

        assert [d.id for d in result.details] == list(range(1, 8))
        assert result.failed_thread_ids == []

    def test_failures_are_recorded_after_retries(self, vector_store, sync_config, fake_sleep, sleeps):
        """A thread that keeps failing should be recorded."""
        threads = [make_thread(i) for i in range(1, 5)]
        ed = FakeEdClient.with_threads(threads, failing_thread_ids=(2,))
        engine = make_engine(ed, vector_store, sync_config, fake_sleep)

        result = engine.enrich_threads(threads, concurrency=2)

        assert [d.id for d in result.details] == [1, 3, 4]
        assert result.failed_thread_ids == [2]
        assert ed.detail_calls[2] == 3
        assert ed.detail_calls[1] == 1
        assert sleeps == [0.1, 0.2]

    def test_empty_list(self, vector_store, sync_config, fake_sleep):
        """No threads should mean no work."""
        engine = make_engine(FakeEdClient(), vector_store, sync_config, fake_sleep)

        result = engine.enrich_threads([], concurrency=5)

        assert result.details == []
        assert result.failed_thread_ids == []

    def test_auth_error_is_fatal(self, vector_store, sync_config, fake_sleep):
        """AuthError should abort enrichment."""
        threads = [make_thread(1), make_thread(2)]
        ed = FakeEdClient.with_threads(threads)

        def rejected(thread_id):
            raise AuthError("Authentication failed - token expired", 401)

        ed.get_thread_details = rejected
        engine = make_engine(ed, vector_store, sync_config, fake_sleep)

        with pytest.raises(AuthError):
            engine.enrich_threads(threads, concurrency=2)


class TestFullSync:
    """Test full course sync."""

    def test_report(self, vector_store, sync_config, fake_sleep):
        """The report should count threads, documents and failures."""
        threads = [make_thread(i) for i in range(1, 6)]
        ed = FakeEdClient.with_threads(threads, failing_thread_ids=(4,))
        engine = make_engine(ed, vector_store, sync_config, fake_sleep)

        report = engine.run_full_sync(course_id=1)

        assert report.is_full_sync
        assert report.total_threads == 5
        assert report.failed_thread_ids == [4]
        # thread + one answer for each of the four that loaded
        assert report.upserted == 8
        assert report.errors == ["Failed to fetch details for 1 threads: 4"]
        assert ed.since_calls == [None]
        assert vector_store.get_course_stats(1).total == 8

    def test_clean_run_has_no_errors(self, vector_store, sync_config, fake_sleep):
        """A clean run should report no errors."""
        ed = FakeEdClient.with_threads([make_thread(1)])
        engine = make_engine(ed, vector_store, sync_config, fake_sleep)

        report = engine.run_full_sync(course_id=1)

        assert report.errors == []
        assert report.upserted == 2


class TestDeltaSync:
    """Test incremental sync."""

    def test_default_lookback(self, vector_store, sync_config, fake_sleep):
        """Without since, look back seven days."""
        ed = FakeEdClient.with_threads([make_thread(1)])
        engine = make_engine(ed, vector_store, sync_config, fake_sleep)

        report = engine.run_delta_sync(course_id=1)

        since = ed.since_calls[0]
        expected = datetime.now(timezone.utc) - timedelta(days=7)
        assert abs((since - expected).total_seconds()) < 60
        assert report.since == since
        assert not report.is_full_sync

    def test_only_recent_threads_are_indexed(self, vector_store, sync_config, fake_sleep):
        """Threads older than since should be skipped."""
        threads = [
            make_thread(1, updated_at=ts(days_ago=1)),
            make_thread(2, updated_at=ts(days_ago=20)),
        ]
        ed = FakeEdClient.with_threads(threads)
        engine = make_engine(ed, vector_store, sync_config, fake_sleep)

        report = engine.run_delta_sync(course_id=1, since=ts(days_ago=3))

        assert report.total_threads == 1
        assert report.upserted == 2
        assert ed.detail_calls[2] == 0

    def test_naive_since_is_treated_as_utc(self, vector_store, sync_config, fake_sleep):
        """A naive since should be read as UTC."""
        ed = FakeEdClient.with_threads([make_thread(1)])
        engine = make_engine(ed, vector_store, sync_config, fake_sleep)

        naive = datetime(2024, 1, 1)
        report = engine.run_delta_sync(course_id=1, since=naive)

        assert report.since == naive.replace(tzinfo=timezone.utc)


class TestSyncCourses:
    """Test multi-course sync."""

    def test_one_failing_course_does_not_stop_the_rest(self, vector_store, sync_config, fake_sleep):
        """One failing course should not stop the others."""
        threads = [make_thread(1, course_id=1), make_thread(2, course_id=2)]
        ed = FakeEdClient.with_threads(threads)
        original = ed.get_all_threads

        def listing(course_id, since=None):
            if course_id == 2:
                raise RuntimeError("listing failed")
            return original(course_id, since)

        ed.get_all_threads = listing
        engine = make_engine(ed, vector_store, sync_config, fake_sleep)

        reports = engine.sync_courses([1, 2], force_full_sync=True, concurrency=2)

        assert reports[1].upserted == 2
        assert reports[2].errors == ["listing failed"]
