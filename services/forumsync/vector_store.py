"""
Qdrant vector index for synced forum content.

One collection per course namespace (course_{course_id}), so every
operation for a course is confined to its own collection and dropping a
course is a single collection delete.

Qdrant point IDs must be UUIDs or integers, so each point ID is a uuid5 of
the document ID; the document ID itself is kept in the payload as `doc_id`
next to the document text (`content`) and its metadata.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from loguru import logger
from qdrant_client import QdrantClient
from qdrant_client.http import models
from qdrant_client.http.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchAny,
    MatchValue,
    PayloadSchemaType,
    PointStruct,
    VectorParams,
)

from .ed_client import Thread
from .extractor import IndexDocument, document_type_from_id, extract_documents
from .utils import VectorStoreError

EmbedFn = Callable[[list[str]], list[list[float]]]
QueryEmbedFn = Callable[[str], list[float]]

DEFAULT_BATCH_SIZE = 100
DEFAULT_STATS_PAGE_SIZE = 1000

_INDEXED_FIELDS = ("type", "thread_id", "doc_id")


def namespace_for(course_id: int) -> str:
    """Namespace (collection name) holding a course's documents."""
    return f"course_{course_id}"


def point_id_for(doc_id: str) -> str:
    """Deterministic Qdrant point ID for a document ID."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, doc_id))


@dataclass
class UpsertResult:
    """Outcome of a batched upsert."""
    upserted: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class SyncResult:
    """Outcome of indexing a set of threads."""
    upserted: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class SearchResult:
    """A document returned by search or fetch."""
    id: str
    score: float
    content: str
    metadata: dict[str, Any]


@dataclass
class CourseStats:
    """Document counts for a course namespace."""
    total: int = 0
    thread_count: int = 0
    answer_count: int = 0
    comment_count: int = 0


class ForumVectorStore:
    """
    Namespace-scoped vector index for course discussions.

    Embeddings are computed client-side with the injected embedding
    functions before points are written.
    """

    def __init__(
        self,
        client: QdrantClient,
        embed_fn: EmbedFn,
        query_embed_fn: QueryEmbedFn,
        vector_size: int = 768,
        distance: str = "COSINE",
        batch_size: int = DEFAULT_BATCH_SIZE,
        stats_page_size: int = DEFAULT_STATS_PAGE_SIZE,
    ):
        """
        Initialize the store.

        Args:
            client: Qdrant client (remote, local path or in-memory).
            embed_fn: Embeds a list of document texts.
            query_embed_fn: Embeds a single search query.
            vector_size: Size of embedding vectors.
            distance: Distance metric (COSINE, DOT, EUCLID).
            batch_size: Documents per upsert request.
            stats_page_size: Points per scroll page when computing stats.
        """
        self._client = client
        self.embed_fn = embed_fn
        self.query_embed_fn = query_embed_fn
        self.vector_size = vector_size
        self.distance = self._parse_distance(distance)
        self.batch_size = batch_size
        self.stats_page_size = stats_page_size

        self._known_collections: set[str] = set()
        self._collections_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config,
        embed_fn: EmbedFn,
        query_embed_fn: QueryEmbedFn,
    ) -> "ForumVectorStore":
        """
        Build a store from a QdrantConfig section.

        `url` may be an http(s) URL, ':memory:', or a local storage path;
        when empty, host and port are used.
        """
        url = config.url or ""
        if url == ":memory:":
            client = QdrantClient(location=":memory:")
        elif url.startswith("http"):
            client = QdrantClient(url=url, api_key=config.api_key)
        elif url:
            client = QdrantClient(path=url)
        else:
            client = QdrantClient(host=config.host, port=config.port, api_key=config.api_key)

        logger.info(f"Connected to Qdrant at {url or f'{config.host}:{config.port}'}")

        return cls(
            client,
            embed_fn,
            query_embed_fn,
            vector_size=config.vector_size,
            distance=config.distance,
            batch_size=config.upsert_batch_size,
            stats_page_size=config.stats_page_size,
        )

    def close(self) -> None:
        """Close the Qdrant client."""
        self._client.close()

    def __enter__(self) -> "ForumVectorStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # =========================================================================
    # Namespace Management
    # =========================================================================

    def ensure_namespace(self, course_id: int) -> str:
        """
        Create the course collection if it does not exist yet.

        Raises:
            VectorStoreError: Collection could not be created.
        """
        name = namespace_for(course_id)
        with self._collections_lock:
            if name in self._known_collections:
                return name
            try:
                if not self._client.collection_exists(name):
                    self._client.create_collection(
                        collection_name=name,
                        vectors_config=VectorParams(
                            size=self.vector_size,
                            distance=self.distance,
                        ),
                    )
                    logger.info(f"Created namespace: {name}")
                    self._create_payload_indexes(name)
            except Exception as e:
                raise VectorStoreError(f"Error ensuring namespace {name}: {e}", "ensure") from e
            self._known_collections.add(name)
        return name

    def _create_payload_indexes(self, collection_name: str) -> None:
        for field_name in _INDEXED_FIELDS:
            schema = (
                PayloadSchemaType.INTEGER if field_name == "thread_id"
                else PayloadSchemaType.KEYWORD
            )
            try:
                self._client.create_payload_index(
                    collection_name=collection_name,
                    field_name=field_name,
                    field_schema=schema,
                )
            except Exception as e:
                logger.debug(f"Index may already exist for {field_name}: {e}")

    def namespace_exists(self, course_id: int) -> bool:
        try:
            return self._client.collection_exists(namespace_for(course_id))
        except Exception as e:
            logger.error(f"Error checking namespace for course {course_id}: {e}")
            return False

    # =========================================================================
    # Writes
    # =========================================================================

    def upsert_batch(self, documents: list[IndexDocument], course_id: int) -> UpsertResult:
        """
        Embed and upsert documents in fixed-size chunks.

        A failing chunk is recorded in `errors`; the remaining chunks are
        still written.
        """
        result = UpsertResult()
        if not documents:
            return result

        try:
            name = self.ensure_namespace(course_id)
        except VectorStoreError as e:
            result.errors.append(str(e))
            return result

        for i in range(0, len(documents), self.batch_size):
            chunk_index = i // self.batch_size
            batch = documents[i:i + self.batch_size]

            try:
                vectors = self.embed_fn([doc.content for doc in batch])
                if len(vectors) != len(batch):
                    raise VectorStoreError(
                        f"embedding returned {len(vectors)} vectors for {len(batch)} documents",
                        "embed",
                    )

                points = [
                    PointStruct(
                        id=point_id_for(doc.id),
                        vector=list(vector),
                        payload={**doc.metadata, "doc_id": doc.id, "content": doc.content},
                    )
                    for doc, vector in zip(batch, vectors)
                ]

                response = self._client.upsert(collection_name=name, points=points)
                if response.status != models.UpdateStatus.COMPLETED:
                    logger.warning(f"Upsert completed with status: {response.status}")

                result.upserted += len(points)

            except Exception as e:
                logger.error(f"Batch upsert failed for chunk {chunk_index} in {name}: {e}")
                result.errors.append(f"Batch upsert failed for chunk {chunk_index}: {e}")

        return result

    def upsert_threads(self, threads: list[Thread], course_id: int) -> SyncResult:
        """Extract documents from every thread and upsert them together."""
        all_documents: list[IndexDocument] = []
        errors: list[str] = []

        for thread in threads:
            try:
                all_documents.extend(extract_documents(thread))
            except Exception as e:
                errors.append(f"Failed to process thread {thread.id}: {e}")

        if not all_documents:
            return SyncResult(upserted=0, deleted=0, errors=errors)

        logger.info(
            f"Upserting {len(all_documents)} documents from {len(threads)} threads "
            f"to {namespace_for(course_id)}"
        )
        upsert = self.upsert_batch(all_documents, course_id)

        return SyncResult(upserted=upsert.upserted, deleted=0, errors=errors + upsert.errors)

    def delta_upsert(self, threads: list[Thread], course_id: int, since: datetime) -> SyncResult:
        """Upsert only the threads updated at or after `since`."""
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        recent = [t for t in threads if t.updated_at >= since]
        return self.upsert_threads(recent, course_id)

    # =========================================================================
    # Deletes
    # =========================================================================

    def delete_documents(self, ids: list[str], course_id: int) -> int:
        """Delete documents by document ID. Returns how many existed."""
        if not ids or not self.namespace_exists(course_id):
            return 0

        name = namespace_for(course_id)
        point_ids = [point_id_for(doc_id) for doc_id in ids]
        try:
            existing = self._client.retrieve(
                collection_name=name,
                ids=point_ids,
                with_payload=False,
                with_vectors=False,
            )
            self._client.delete(
                collection_name=name,
                points_selector=models.PointIdsList(points=point_ids),
            )
        except Exception as e:
            raise VectorStoreError(f"Error deleting documents in {name}: {e}", "delete") from e
        return len(existing)

    def delete_thread(self, thread_id: int, course_id: int) -> int:
        """
        Delete every document derived from a thread.

        Runs one delete per document family (thread, answer, comment) and
        returns the summed count.
        """
        if not self.namespace_exists(course_id):
            return 0

        name = namespace_for(course_id)
        deleted = 0
        for doc_type in ("thread", "answer", "comment"):
            family = self._build_filter({"thread_id": thread_id, "type": doc_type})
            try:
                count = self._client.count(
                    collection_name=name,
                    count_filter=family,
                    exact=True,
                ).count
                if count:
                    self._client.delete(
                        collection_name=name,
                        points_selector=models.FilterSelector(filter=family),
                    )
            except Exception as e:
                raise VectorStoreError(
                    f"Error deleting {doc_type} documents of thread {thread_id}: {e}", "delete"
                ) from e
            deleted += count

        logger.debug(f"Deleted {deleted} documents for thread {thread_id} in {name}")
        return deleted

    def delete_course(self, course_id: int) -> None:
        """Drop the whole course namespace. Irreversible."""
        name = namespace_for(course_id)
        with self._collections_lock:
            try:
                if self._client.collection_exists(name):
                    self._client.delete_collection(name)
            except Exception as e:
                raise VectorStoreError(f"Error deleting namespace {name}: {e}", "reset") from e
            self._known_collections.discard(name)
        logger.info(f"Deleted namespace: {name}")

    # =========================================================================
    # Reads
    # =========================================================================

    def search(
        self,
        query: str,
        course_id: int,
        top_k: int = 10,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[SearchResult]:
        """
        Similarity search within a course namespace.

        Args:
            query: Natural-language query.
            course_id: Course whose namespace is searched.
            top_k: Number of results to return.
            filter: Metadata conditions, e.g. {"type": "thread"} or
                {"type": ["answer", "comment"]}.
        """
        if not self.namespace_exists(course_id):
            logger.debug(f"No namespace for course {course_id}, nothing to search")
            return []

        name = namespace_for(course_id)
        try:
            response = self._client.query_points(
                collection_name=name,
                query=self.query_embed_fn(query),
                query_filter=self._build_filter(filter) if filter else None,
                limit=top_k,
                with_payload=True,
                with_vectors=False,
            )
        except Exception as e:
            raise VectorStoreError(f"Error searching {name}: {e}", "query") from e

        return [self._to_result(point.payload, point.score) for point in response.points]

    def fetch_documents(self, ids: list[str], course_id: int) -> list[SearchResult]:
        """Fetch documents by document ID. Missing IDs are skipped."""
        if not ids or not self.namespace_exists(course_id):
            return []

        name = namespace_for(course_id)
        try:
            records = self._client.retrieve(
                collection_name=name,
                ids=[point_id_for(doc_id) for doc_id in ids],
                with_payload=True,
                with_vectors=False,
            )
        except Exception as e:
            raise VectorStoreError(f"Error fetching documents from {name}: {e}", "fetch") from e

        return [self._to_result(record.payload, 1.0) for record in records]

    def get_course_stats(self, course_id: int) -> CourseStats:
        """
        Count documents in a course namespace by type.

        Scrolls the full namespace page by page and classifies each point
        by its document ID prefix. Any failure yields zeroed stats.
        """
        name = namespace_for(course_id)
        stats = CourseStats()

        try:
            cursor = None
            while True:
                records, cursor = self._client.scroll(
                    collection_name=name,
                    limit=self.stats_page_size,
                    offset=cursor,
                    with_payload=True,
                    with_vectors=False,
                )

                for record in records:
                    stats.total += 1
                    doc_type = document_type_from_id((record.payload or {}).get("doc_id", ""))
                    if doc_type == "thread":
                        stats.thread_count += 1
                    elif doc_type == "answer":
                        stats.answer_count += 1
                    elif doc_type == "comment":
                        stats.comment_count += 1

                if cursor is None or not records:
                    break
        except Exception as e:
            logger.warning(f"Failed to get stats for {name}, returning zeroed counts: {e}")
            return CourseStats()

        return stats

    # =========================================================================
    # Helper Methods
    # =========================================================================

    def _parse_distance(self, distance_str: str) -> Distance:
        distance_map = {
            "COSINE": Distance.COSINE,
            "DOT": Distance.DOT,
            "EUCLID": Distance.EUCLID,
        }
        return distance_map.get(distance_str.upper(), Distance.COSINE)

    def _build_filter(self, conditions: dict[str, Any]) -> Optional[Filter]:
        """Build a Qdrant Filter from field -> value (or list of values) conditions."""
        must_conditions = []

        for key, value in conditions.items():
            if isinstance(value, (list, tuple, set)):
                must_conditions.append(FieldCondition(key=key, match=MatchAny(any=list(value))))
            else:
                must_conditions.append(FieldCondition(key=key, match=MatchValue(value=value)))

        return Filter(must=must_conditions) if must_conditions else None

    @staticmethod
    def _to_result(payload: Optional[dict[str, Any]], score: float) -> SearchResult:
        payload = dict(payload or {})
        doc_id = payload.pop("doc_id", "")
        content = payload.pop("content", "")
        return SearchResult(id=doc_id, score=score, content=content, metadata=payload)
