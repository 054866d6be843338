"""
Tests for the Qdrant vector store, using Qdrant's in-memory local mode.
"""

from factories import (
    VECTOR_SIZE,
    fake_embed,
    fake_vector,
    make_comment,
    make_details,
    make_thread,
    ts,
)
from services.forumsync.extractor import IndexDocument
from services.forumsync.vector_store import ForumVectorStore, namespace_for, point_id_for


def thread_with_replies(thread_id, course_id=1):
    thread = make_thread(thread_id, course_id=course_id)
    return make_details(
        thread,
        answers=[
            make_comment(thread_id * 10 + 1, thread_id, "answer"),
            make_comment(thread_id * 10 + 2, thread_id, "answer"),
        ],
        comments=[make_comment(thread_id * 10 + 3, thread_id)],
    )


class TestUpsert:
    """Test writes."""

    def test_upsert_is_idempotent(self, vector_store):
        """Upserting twice should not duplicate documents."""
        threads = [thread_with_replies(1), thread_with_replies(2)]

        first = vector_store.upsert_threads(threads, course_id=1)
        second = vector_store.upsert_threads(threads, course_id=1)

        assert first.upserted == 8
        assert second.upserted == 8
        assert vector_store.get_course_stats(1).total == 8

    def test_failing_chunk_is_recorded_and_others_continue(self, qdrant):
        """A failing chunk should not stop later chunks."""
        def embed(texts):
            if any("poison" in t for t in texts):
                raise RuntimeError("embedding backend down")
            return fake_embed(texts)

        store = ForumVectorStore(qdrant, embed, fake_vector, vector_size=VECTOR_SIZE, batch_size=2)
        docs = [
            IndexDocument(id=f"thread_{i}", content=f"document number {i}",
                          metadata={"thread_id": i, "type": "thread"})
            for i in range(1, 6)
        ]
        docs[2].content = "poison document"

        result = store.upsert_batch(docs, course_id=3)

        assert result.upserted == 3
        assert len(result.errors) == 1
        assert "chunk 1" in result.errors[0]

    def test_empty_input(self, vector_store):
        """No threads should upsert nothing."""
        result = vector_store.upsert_threads([], course_id=1)

        assert result.upserted == 0
        assert result.errors == []

    def test_delta_upsert_filters_by_updated_at(self, vector_store):
        """Delta upsert should skip threads older than since."""
        recent = make_thread(1, updated_at=ts(days_ago=1))
        old = make_thread(2, updated_at=ts(days_ago=30))

        result = vector_store.delta_upsert([recent, old], course_id=1, since=ts(days_ago=7))

        assert result.upserted == 1
        assert [d.id for d in vector_store.fetch_documents(["thread_1", "thread_2"], 1)] == ["thread_1"]

    def test_point_ids_are_deterministic(self):
        """Point ids and namespaces should be deterministic."""
        assert point_id_for("thread_1") == point_id_for("thread_1")
        assert point_id_for("thread_1") != point_id_for("thread_2")
        assert namespace_for(42) == "course_42"


class TestSearch:
    """Test reads."""

    def test_search_returns_document_ids_and_content(self, vector_store):
        """Results should expose doc id and content, not payload keys."""
        vector_store.upsert_threads([thread_with_replies(1)], course_id=1)

        results = vector_store.search("anything", course_id=1, top_k=10)

        assert len(results) == 4
        assert {r.id for r in results} == {"thread_1", "answer_1_11", "answer_1_12", "comment_1_13"}
        assert all(r.content for r in results)
        assert all("doc_id" not in r.metadata for r in results)

    def test_search_with_type_filter(self, vector_store):
        """Type filters should accept one value or a list."""
        vector_store.upsert_threads([thread_with_replies(1)], course_id=1)

        answers = vector_store.search("q", course_id=1, filter={"type": "answer"})
        replies = vector_store.search("q", course_id=1, filter={"type": ["answer", "comment"]})

        assert {r.metadata["type"] for r in answers} == {"answer"}
        assert len(replies) == 3

    def test_search_is_scoped_to_course(self, vector_store):
        """Search should only see its own course."""
        vector_store.upsert_threads([thread_with_replies(1, course_id=1)], course_id=1)
        vector_store.upsert_threads([thread_with_replies(2, course_id=2)], course_id=2)

        results = vector_store.search("q", course_id=2)

        assert {r.metadata["thread_id"] for r in results} == {2}

    def test_missing_namespace_returns_nothing(self, vector_store):
        """A course never synced should return nothing."""
        assert vector_store.search("q", course_id=404) == []
        assert vector_store.fetch_documents(["thread_1"], course_id=404) == []


class TestDeletes:
    """Test deletes and stats."""

    def test_delete_thread_counts_all_families(self, vector_store):
        """Deleting a thread should remove its replies too."""
        vector_store.upsert_threads([thread_with_replies(1), thread_with_replies(2)], course_id=1)

        deleted = vector_store.delete_thread(1, course_id=1)

        assert deleted == 4
        stats = vector_store.get_course_stats(1)
        assert stats.total == 4
        assert vector_store.fetch_documents(["thread_2"], 1)[0].id == "thread_2"

    def test_delete_documents(self, vector_store):
        """Only existing ids should be counted."""
        vector_store.upsert_threads([thread_with_replies(1)], course_id=1)

        deleted = vector_store.delete_documents(["answer_1_11", "answer_1_99"], course_id=1)

        assert deleted == 1
        assert vector_store.get_course_stats(1).answer_count == 1

    def test_delete_course_drops_namespace(self, vector_store):
        """Deleting a course should drop its namespace."""
        vector_store.upsert_threads([thread_with_replies(1)], course_id=1)

        vector_store.delete_course(1)

        assert vector_store.get_course_stats(1).total == 0
        assert vector_store.search("q", course_id=1) == []

        # Namespace is recreated on the next write
        result = vector_store.upsert_threads([thread_with_replies(1)], course_id=1)
        assert result.upserted == 4

    def test_stats_by_type(self, vector_store):
        """Stats should count each document type."""
        vector_store.upsert_threads([thread_with_replies(1), thread_with_replies(2)], course_id=1)

        stats = vector_store.get_course_stats(1)

        assert stats.total == 8
        assert stats.thread_count == 2
        assert stats.answer_count == 4
        assert stats.comment_count == 2

    def test_stats_paginate(self, qdrant):
        """Stats should page through large namespaces."""
        store = ForumVectorStore(qdrant, fake_embed, fake_vector, vector_size=VECTOR_SIZE, stats_page_size=3)
        store.upsert_threads([thread_with_replies(i) for i in range(1, 4)], course_id=1)

        assert store.get_course_stats(1).total == 12

    def test_stats_for_missing_namespace_are_zero(self, vector_store):
        """A missing namespace should have zero stats."""
        stats = vector_store.get_course_stats(999)

        assert (stats.total, stats.thread_count, stats.answer_count, stats.comment_count) == (0, 0, 0, 0)
