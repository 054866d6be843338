"""
Tests for embedding functions, with the SentenceTransformer loader replaced.
"""

import threading
import time

import pytest

from services.forumsync import embedding
from services.forumsync.config import EmbeddingConfig


class Vectors(list):
    """List with the `tolist` method encode() results expose."""

    def tolist(self):
        return [list(v) if isinstance(v, Vectors) else v for v in self]


class RecordingModel:
    def __init__(self):
        self.inputs = []

    def encode(self, texts, normalize_embeddings=True, show_progress_bar=False):
        self.inputs.extend(texts)
        return Vectors(Vectors([float(len(t)), 1.0]) for t in texts)


@pytest.fixture
def loads(monkeypatch):
    """Replace model loading with a slow fake and count the loads."""
    calls = []

    def load(model_name):
        calls.append(model_name)
        time.sleep(0.05)
        return RecordingModel()

    monkeypatch.setattr(embedding, "_models", {})
    monkeypatch.setattr(embedding, "_load_model", load)
    return calls


class TestEmbedders:
    """Test prefixes and model caching."""

    def test_prefixes_are_applied(self, loads):
        """Documents and queries get their task prefixes."""
        config = EmbeddingConfig(model="fake-model")
        embed_documents, embed_query = embedding.make_embedders(config)

        docs = embed_documents(["hello"])
        query = embed_query("hi")

        model = embedding._models["fake-model"]
        assert model.inputs == ["search_document: hello", "search_query: hi"]
        assert docs == [[float(len("search_document: hello")), 1.0]]
        assert query == [float(len("search_query: hi")), 1.0]

    def test_empty_batch_skips_model(self, loads):
        """An empty batch never loads the model."""
        embed_documents, _ = embedding.make_embedders(EmbeddingConfig(model="fake-model"))

        assert embed_documents([]) == []
        assert loads == []

    def test_concurrent_first_use_loads_once(self, loads):
        """Parallel first calls share a single model load."""
        _, embed_query = embedding.make_embedders(EmbeddingConfig(model="fake-model"))
        threads = [threading.Thread(target=embed_query, args=(f"q{i}",)) for i in range(8)]

        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert loads == ["fake-model"]
        assert len(embedding._models["fake-model"].inputs) == 8
