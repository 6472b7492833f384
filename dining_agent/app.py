from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from .analytics.aggregator import compute_analytics
from .analytics.store import get_events, record_event
from .chat.dialogue import advance, build_query, reask
from .chat.models import (
    AskSlot,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ConversationContext,
    RecommendRequest,
    RecommendResponse,
)
from .embeddings.encoder import warm_up
from .recommendations.data_store import CandidateStore, get_store
from .recommendations.errors import PipelineError, UpstreamUnavailable, ValidationError
from .recommendations.models import ErrorInfo
from .recommendations.pipeline import RecommendationFunnel

logger = logging.getLogger(__name__)

SUMMARY_MAX_MESSAGES = 8
UNAVAILABLE_MESSAGE = "Oops, I couldn't reach the restaurant list just now. Mind trying again in a moment?"
UNUSABLE_MESSAGE = {
    "en": "Hmm, I couldn't search with that. Could you tell me a bit more about what you're after?",
    "he": "אופס, לא הצלחתי לחפש עם זה. אפשר לספר לי קצת יותר מה מחפשים?",
}

_funnel: RecommendationFunnel | None = None


def get_funnel() -> RecommendationFunnel:
    global _funnel
    if _funnel is None:
        _funnel = RecommendationFunnel(get_store())
    return _funnel


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Load the model and corpus before the first request hits a timeout budget
    try:
        warm_up()
        get_funnel()
    except Exception:
        logger.warning("Warm-up failed, loading on first request instead", exc_info=True)
    yield


app = FastAPI(title="Dining Agent API", version="1.0.0", lifespan=lifespan)


def summarize_conversation(messages: list[ChatMessage], current: str | None = None) -> str:
    """Flatten the recent chat history into the text the funnel embeds and prompts with."""
    lines = [f"{m.role}: {m.content.strip()}" for m in messages[-SUMMARY_MAX_MESSAGES:] if m.content.strip()]
    if current:
        lines.append(f"user: {current.strip()}")
    return "\n".join(lines)


def _error_info(exc: PipelineError) -> ErrorInfo:
    return ErrorInfo(kind=exc.kind, message=str(exc), retryable=exc.retryable)


def _debug_json(exc: PipelineError) -> dict | None:
    if exc.debug_data is None:
        return None
    return exc.debug_data.model_dump(by_alias=True, mode="json")


# ── Error handlers ───────────────────────────────────────────────────────


@app.exception_handler(ValidationError)
def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"error": _error_info(exc).model_dump(by_alias=True), "debugData": _debug_json(exc)},
    )


@app.exception_handler(UpstreamUnavailable)
def upstream_unavailable_handler(request: Request, exc: UpstreamUnavailable) -> JSONResponse:
    logger.error("Upstream unavailable on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"error": _error_info(exc).model_dump(by_alias=True), "debugData": _debug_json(exc)},
    )


# ── Public endpoints ─────────────────────────────────────────────────────


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/metadata")
def metadata(store: CandidateStore = Depends(get_store)) -> dict:
    return {
        "totalRestaurants": len(store),
        "cities": store.cities(),
        "categories": store.categories(),
    }


@app.get("/analytics")
def analytics() -> dict:
    return compute_analytics(get_events())


# ── Agent endpoints ──────────────────────────────────────────────────────


@app.post(
    "/agent/chat",
    response_model=ChatResponse,
    response_model_exclude_none=True,
)
def agent_chat(body: ChatRequest) -> ChatResponse:
    conversation_id = body.conversation_id or f"conv_{uuid.uuid4().hex[:12]}"
    context = body.previous_context or ConversationContext()

    # 1. Advance the dialogue
    new_context, response = advance(context, body.message, user_location=body.user_location)

    record_event("turn", {
        "turn_count": new_context.turn_count,
        "asked_slot": response.slot if isinstance(response, AskSlot) else None,
        "forced": not isinstance(response, AskSlot) and bool(response.defaulted_slots),
    })

    # 2. Still gathering: ask the next question
    if isinstance(response, AskSlot):
        return ChatResponse(
            message=response.prompt,
            context=new_context,
            conversation_id=conversation_id,
            ready_to_recommend=False,
            chips=response.chips,
        )

    # 3. Ready: run the funnel
    summary = summarize_conversation(body.messages, body.message)
    try:
        result = get_funnel().run(
            response.built_query,
            user_location=body.user_location,
            conversation_summary=summary,
            include_debug_data=body.include_debug_data,
            now=body.reference_time,
        )
    except ValidationError as exc:
        logger.info("Query for %s was unusable: %s", conversation_id, exc)
        if exc.slot:
            asked_context, ask = reask(new_context, exc.slot, user_location=body.user_location)
            return ChatResponse(
                message=ask.prompt,
                context=asked_context,
                conversation_id=conversation_id,
                error=_error_info(exc),
                ready_to_recommend=False,
                chips=ask.chips,
            )
        return ChatResponse(
            message=UNUSABLE_MESSAGE[new_context.language],
            context=new_context,
            conversation_id=conversation_id,
            error=_error_info(exc),
            ready_to_recommend=False,
        )
    except UpstreamUnavailable as exc:
        logger.warning("Funnel unavailable for %s", conversation_id, exc_info=True)
        return ChatResponse(
            message=UNAVAILABLE_MESSAGE,
            context=new_context,
            conversation_id=conversation_id,
            error=_error_info(exc),
            debug_data=exc.debug_data,
            ready_to_recommend=False,
        )

    return ChatResponse(
        message=result.message,
        context=new_context,
        conversation_id=conversation_id,
        recommendations=result.recommendations,
        debug_data=result.debug_data,
        ready_to_recommend=result.ready_to_recommend,
    )


@app.post(
    "/agent/recommend",
    response_model=RecommendResponse,
    response_model_exclude_none=True,
)
def agent_recommend(body: RecommendRequest) -> RecommendResponse:
    query = build_query(body.context.slots, body.context.language)
    result = get_funnel().run(
        query,
        user_location=body.user_location,
        conversation_summary=body.conversation_summary,
        include_debug_data=body.include_debug_data,
        now=body.reference_time,
    )
    return RecommendResponse(
        recommendations=result.recommendations,
        message=result.message,
        ready_to_recommend=result.ready_to_recommend,
        debug_data=result.debug_data,
    )
