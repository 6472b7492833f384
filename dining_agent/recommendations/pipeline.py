from __future__ import annotations

import logging
import time
from datetime import datetime

from ..analytics.store import record_event
from ..embeddings.encoder import encode_text
from .config import DEFAULT_PIPELINE_CONFIG, PipelineConfig
from .data_store import CandidateStore
from .debug import DebugRecorder
from .errors import NoCandidatesError, PipelineError, UpstreamTimeout, UpstreamUnavailable
from .filters import CandidateGenerator
from .models import (
    FilterStep,
    FunnelQuery,
    FunnelResult,
    RerankStep,
    SelectionStep,
    UserLocation,
    VectorStep,
)
from .reranking import SocialReranker
from .retrieval import Embedder, VectorRetriever, build_query_text
from .selection import LLMSelector, ScoreSelector, Selection, SelectionContext, Selector
from .timeouts import call_with_timeout

logger = logging.getLogger(__name__)

NO_RESULTS_MESSAGE = {
    "en": (
        "I couldn't find any restaurants matching all of that. "
        "Want to try a wider area, a different cuisine or a looser budget?"
    ),
    "he": "לא מצאתי מסעדות שמתאימות לכל זה. לנסות אזור רחב יותר, מטבח אחר או תקציב גמיש יותר?",
}


class RecommendationFunnel:
    """Hard filter -> vector retrieval -> social re-rank -> final selection."""

    def __init__(
        self,
        store: CandidateStore,
        embed: Embedder = encode_text,
        selector: Selector | None = None,
        config: PipelineConfig = DEFAULT_PIPELINE_CONFIG,
    ) -> None:
        self.config = config
        self.generator = CandidateGenerator(store)
        self.retriever = VectorRetriever(store, embed, config)
        self.reranker = SocialReranker(config)
        self.selector = selector or LLMSelector(limit=config.max_recommendations)

    def run(
        self,
        query: FunnelQuery,
        user_location: UserLocation | None = None,
        conversation_summary: str | None = None,
        include_debug_data: bool = False,
        now: datetime | None = None,
    ) -> FunnelResult:
        start_time = time.time()
        recorder = DebugRecorder(include_debug_data)
        stats: dict[str, int] = {}

        try:
            result = self._run(query, user_location, conversation_summary, recorder, stats, now)
        except NoCandidatesError:
            result = FunnelResult(
                recommendations=[],
                message=NO_RESULTS_MESSAGE[query.language],
                ready_to_recommend=True,
                debug_data=recorder.bundle(),
            )
        except PipelineError as exc:
            exc.debug_data = recorder.bundle()
            raise

        elapsed_ms = round((time.time() - start_time) * 1000, 1)
        record_event("funnel", {
            "occasion": query.occasion,
            "location_mode": query.location_mode.value,
            "cuisines": query.cuisines,
            "after_filter": stats.get("after_filter"),
            "results_returned": len(result.recommendations),
            "used_fallback": result.used_fallback,
            "response_time_ms": elapsed_ms,
        })
        logger.info(
            "Funnel finished in %.1fms with %d recommendations",
            elapsed_ms, len(result.recommendations),
        )
        return result

    def _run(
        self,
        query: FunnelQuery,
        user_location: UserLocation | None,
        conversation_summary: str | None,
        recorder: DebugRecorder,
        stats: dict[str, int],
        now: datetime | None,
    ) -> FunnelResult:
        cfg = self.config

        # --- Stage 1: hard filters ---
        try:
            total_in_db, candidates = call_with_timeout(
                self.generator.filter, cfg.store_timeout, query, user_location, now,
                label="candidate store",
            )
        except UpstreamTimeout as exc:
            raise UpstreamUnavailable("Restaurant store did not respond in time") from exc
        stats["after_filter"] = len(candidates)

        recorder.record("step1", lambda: FilterStep(
            total_in_db=total_in_db,
            after_filter=len(candidates),
            sample_restaurants=candidates[: cfg.debug_sample_size],
        ))
        if not candidates:
            raise NoCandidatesError("No restaurants passed the hard filters")

        # --- Stage 2: vector retrieval ---
        query_text = build_query_text(query, conversation_summary)
        top_by_vector = self.retriever.retrieve(candidates, query_text)
        recorder.record("step2", lambda: VectorStep(
            query_text=query_text,
            total_scored=len(candidates),
            top_by_vector=top_by_vector,
        ))

        # --- Stage 3: social re-rank ---
        top_by_rerank = self.reranker.rerank(top_by_vector, query)
        recorder.record("step3", lambda: RerankStep(
            total_reranked=len(top_by_vector),
            top_by_rerank=top_by_rerank,
        ))

        # --- Stage 4: final selection ---
        sent_to_llm = top_by_rerank[: cfg.llm_candidate_cap]
        context = SelectionContext(query=query, conversation_summary=conversation_summary)
        selection = self._select(sent_to_llm, context)
        recorder.record("step4", lambda: SelectionStep(
            candidates_sent_to_llm=sent_to_llm,
            final_recommendations=[r.restaurant for r in selection.recommendations],
        ))

        return FunnelResult(
            recommendations=selection.recommendations,
            message=selection.message,
            ready_to_recommend=True,
            debug_data=recorder.bundle(),
            used_fallback=selection.used_fallback,
        )

    def _select(self, sent_to_llm, context: SelectionContext) -> Selection:
        selection = self.selector.select(sent_to_llm, context)

        allowed = {c.id for c in sent_to_llm}
        picked = [r.restaurant.id for r in selection.recommendations]
        if (
            len(picked) > self.config.max_recommendations
            or len(set(picked)) != len(picked)
            or not allowed.issuperset(picked)
        ):
            logger.error("Selector broke the candidate contract (%s); using score fallback", picked)
            selection = ScoreSelector(self.config.max_recommendations).select(sent_to_llm, context)
        return selection
