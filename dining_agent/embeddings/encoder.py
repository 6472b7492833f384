from __future__ import annotations

import logging
import threading

import numpy as np
from sentence_transformers import SentenceTransformer

from .config import DEFAULT_EMBEDDING_CONFIG, EmbeddingConfig

logger = logging.getLogger(__name__)

_model: SentenceTransformer | None = None
_model_lock = threading.Lock()


def _get_model(config: EmbeddingConfig = DEFAULT_EMBEDDING_CONFIG) -> SentenceTransformer:
    global _model
    if _model is None:
        with _model_lock:
            if _model is None:
                logger.info("Loading sentence-transformer model %s", config.model_name)
                _model = SentenceTransformer(config.model_name)
    return _model


def warm_up(config: EmbeddingConfig = DEFAULT_EMBEDDING_CONFIG) -> None:
    """Load the model ahead of the first request so query encoding stays inside its budget."""
    _get_model(config)


def encode_text(text: str, config: EmbeddingConfig = DEFAULT_EMBEDDING_CONFIG) -> np.ndarray:
    """Encode a single string into a 1-D embedding vector."""
    return _get_model(config).encode(text, show_progress_bar=False)


def encode_batch(texts: list[str], config: EmbeddingConfig = DEFAULT_EMBEDDING_CONFIG) -> np.ndarray:
    """Encode a list of strings into a 2-D array of shape (N, dim)."""
    return _get_model(config).encode(texts, show_progress_bar=True, batch_size=256)
