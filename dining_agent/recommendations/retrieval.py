from __future__ import annotations

import logging
from typing import Callable

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity

from ..embeddings.encoder import encode_text
from .config import DEFAULT_PIPELINE_CONFIG, PipelineConfig
from .data_store import CandidateStore
from .errors import UpstreamTimeout, UpstreamUnavailable
from .models import Candidate, FunnelQuery
from .timeouts import call_with_timeout

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5
SCORE_PRECISION = 4

Embedder = Callable[[str], np.ndarray]


def build_query_text(query: FunnelQuery, conversation_summary: str | None = None) -> str:
    """Summarise the dining intent into the text that gets embedded."""
    parts: list[str] = []
    if query.cuisines:
        parts.append(f"Looking for: {', '.join(query.cuisines)}")
    if query.occasion:
        parts.append(f"Occasion: {query.occasion}")
    if query.vibe:
        parts.append(f"Atmosphere: {query.vibe}")

    if parts:
        return ". ".join(parts) + "."
    if conversation_summary and conversation_summary.strip():
        return conversation_summary.strip()
    return "restaurant"


class VectorRetriever:
    """Stage 2: score filtered candidates against the query embedding."""

    def __init__(
        self,
        store: CandidateStore,
        embed: Embedder = encode_text,
        config: PipelineConfig = DEFAULT_PIPELINE_CONFIG,
    ) -> None:
        self.store = store
        self.embed = embed
        self.config = config

    def _embed_query(self, query_text: str) -> np.ndarray | None:
        budgets = (self.config.embedding_timeout, self.config.embedding_retry_timeout)
        for attempt, budget in enumerate(budgets, start=1):
            try:
                vec = call_with_timeout(self.embed, budget, query_text, label="query embedding")
                return np.asarray(vec, dtype=float).reshape(1, -1)
            except UpstreamTimeout:
                logger.warning("Query embedding timed out (attempt %d, %.1fs)", attempt, budget)
            except Exception as exc:
                raise UpstreamUnavailable("Embedding service unavailable") from exc
        logger.warning("Embedding budget exhausted; using neutral vector scores")
        return None

    def retrieve(self, candidates: list[Candidate], query_text: str) -> list[Candidate]:
        if not candidates:
            return []

        scores = [NEUTRAL_SCORE] * len(candidates)
        query_vec = self._embed_query(query_text)

        if query_vec is not None:
            rows: list[int] = []
            vectors: list[np.ndarray] = []
            for i, cand in enumerate(candidates):
                vec = self.store.embedding_for(cand.id)
                if vec is not None:
                    rows.append(i)
                    vectors.append(vec)
            if vectors:
                sims = cosine_similarity(query_vec, np.vstack(vectors)).flatten()
                # Normalise cosine similarity from [-1, 1] to [0, 1]
                normalised = (sims + 1.0) / 2.0
                for i, sim in zip(rows, normalised):
                    scores[i] = float(sim)

        scored = [
            cand.stamp(vector_score=round(score, SCORE_PRECISION))
            for cand, score in zip(candidates, scores)
        ]
        scored.sort(key=lambda c: (-c.vector_score, c.id))
        top = scored[: self.config.vector_top_k]

        logger.info(
            "Vector stage scored %d candidates; best %.4f",
            len(scored), top[0].vector_score,
        )
        return top
