"""
Shared fixtures: in-memory Qdrant with a deterministic embedder, and a
SQLite state store under tmp_path.
"""

import pytest
from qdrant_client import QdrantClient

from factories import VECTOR_SIZE, fake_embed, fake_vector
from services.forumsync.state_store import SyncStateStore
from services.forumsync.vector_store import ForumVectorStore


@pytest.fixture
def qdrant():
    client = QdrantClient(location=":memory:")
    yield client
    client.close()


@pytest.fixture
def vector_store(qdrant):
    return ForumVectorStore(
        qdrant,
        embed_fn=fake_embed,
        query_embed_fn=fake_vector,
        vector_size=VECTOR_SIZE,
    )


@pytest.fixture
def state_store(tmp_path):
    return SyncStateStore(tmp_path / "state.db")


@pytest.fixture
def sleeps():
    """Records requested sleeps instead of sleeping."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    return sleeps.append
