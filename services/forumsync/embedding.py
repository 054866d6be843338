"""
Shared embedding functions for forum documents and search queries.

Uses nomic-ai/nomic-embed-text-v1.5 locally via sentence-transformers.
Produces 768-dimensional cosine-normalised vectors, matching the default
Qdrant collection config (size=768, distance=COSINE).
"""

from __future__ import annotations

import threading
from typing import Callable, List

from loguru import logger

from .config import EmbeddingConfig

EmbedFn = Callable[[List[str]], List[List[float]]]
QueryEmbedFn = Callable[[str], List[float]]

_models: dict[str, object] = {}
_models_lock = threading.Lock()


def _load_model(model_name: str):
    from sentence_transformers import SentenceTransformer
    return SentenceTransformer(
        model_name,
        trust_remote_code=True,  # required by nomic models
    )


def _get_model(model_name: str):
    """Load a model once per process, even under concurrent first use."""
    with _models_lock:
        if model_name not in _models:
            logger.info(f"Loading embedding model: {model_name}")
            _models[model_name] = _load_model(model_name)
            logger.info("Embedding model loaded")
        return _models[model_name]


def make_embedders(config: EmbeddingConfig | None = None) -> tuple[EmbedFn, QueryEmbedFn]:
    """
    Build (embed_documents, embed_query) functions for a model.

    The model is loaded lazily on first use.
    """
    config = config or EmbeddingConfig()

    def embed_documents(texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        model = _get_model(config.model)
        prefixed = [f"{config.document_prefix}{t}" for t in texts]
        embeddings = model.encode(prefixed, normalize_embeddings=True, show_progress_bar=False)
        return embeddings.tolist()

    def embed_query(query: str) -> List[float]:
        model = _get_model(config.model)
        vec = model.encode(
            [f"{config.query_prefix}{query}"],
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return vec[0].tolist()

    return embed_documents, embed_query
