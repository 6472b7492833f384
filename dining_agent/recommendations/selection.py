from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..llm.config import DEFAULT_LLM_CONFIG, LLMConfig
from ..llm.groq_client import request_selection
from .errors import LLMSelectionError
from .models import Candidate, FunnelQuery, RecommendationResult

logger = logging.getLogger(__name__)

MAX_RECOMMENDATIONS = 3
MARKER_RE = re.compile(r"\[\[(.+?)\]\]")


@dataclass(frozen=True)
class SelectionContext:
    query: FunnelQuery
    conversation_summary: str | None = None


@dataclass
class Selection:
    recommendations: list[RecommendationResult] = field(default_factory=list)
    message: str = ""
    used_fallback: bool = False


class Selector(Protocol):
    def select(self, candidates: list[Candidate], context: SelectionContext) -> Selection:
        ...


# ---------------------------------------------------------------------------
# Mention markers
# ---------------------------------------------------------------------------


def resolve_marker(marker: str, results: list[RecommendationResult]) -> RecommendationResult | None:
    """Match a ``[[Name]]`` marker to a result by case-insensitive substring."""
    needle = marker.strip().lower()
    if not needle:
        return None
    for result in results:
        name = result.restaurant.name.lower()
        if needle in name or name in needle:
            return result
    return None


def markers_resolve(message: str, results: list[RecommendationResult]) -> bool:
    return all(resolve_marker(m, results) is not None for m in MARKER_RE.findall(message))


def compose_message(results: list[RecommendationResult], query: FunnelQuery) -> str:
    hebrew = query.language == "he"
    if not results:
        if hebrew:
            return "לא מצאתי התאמה טובה הפעם. לנסות אזור אחר או מטבח אחר?"
        return "I couldn't find a great match this time. Want to try a different area or cuisine?"
    names = [f"[[{r.restaurant.name}]]" for r in results]
    if len(names) == 1:
        listed = names[0]
    elif hebrew:
        listed = ", ".join(names[:-1]) + f" ו{names[-1]}"
    else:
        listed = ", ".join(names[:-1]) + f" and {names[-1]}"
    if hebrew:
        return f"הנה ההמלצות המובילות שלי: {listed}. בתיאבון!"
    return f"Here are my top picks for your {query.occasion}: {listed}. Enjoy!"


# ---------------------------------------------------------------------------
# Deterministic selector
# ---------------------------------------------------------------------------


def _generic_reason(candidate: Candidate, query: FunnelQuery) -> str:
    if query.language == "he":
        return _generic_reason_he(candidate, query)
    if candidate.friends_who_visited:
        friends = ", ".join(candidate.friends_who_visited[:2])
        return f"Friends like {friends} have been here, and it fits your {query.occasion} plans."
    if query.cuisines:
        return f"A strong {' / '.join(query.cuisines)} pick for your {query.occasion}."
    if candidate.google_rating is not None:
        return f"Rated {candidate.google_rating:.1f}/5 and a great match for your {query.occasion}."
    return f"A great match for your {query.occasion}."


def _generic_reason_he(candidate: Candidate, query: FunnelQuery) -> str:
    if candidate.friends_who_visited:
        friends = ", ".join(candidate.friends_who_visited[:2])
        return f"{friends} כבר היו כאן, וזה מתאים לתוכניות שלך."
    if query.cuisines:
        return f"בחירה חזקה ל{' / '.join(query.cuisines)}."
    if candidate.google_rating is not None:
        return f"דירוג {candidate.google_rating:.1f}/5 והתאמה מצוינת בשבילך."
    return "המלצה מובילה בהתאם להעדפות שלך."


class ScoreSelector:
    """Picks the top candidates by ``final_score``; no model involved."""

    def __init__(self, limit: int = MAX_RECOMMENDATIONS) -> None:
        self.limit = limit

    def select(self, candidates: list[Candidate], context: SelectionContext) -> Selection:
        ranked = sorted(candidates, key=lambda c: (-(c.final_score or 0.0), c.id))
        results: list[RecommendationResult] = []
        for cand in ranked[: self.limit]:
            score = min(100, max(0, round((cand.final_score or 0.0) * 100)))
            reason = _generic_reason(cand, context.query)
            results.append(RecommendationResult(
                restaurant=cand.stamp(match_score=score, reason=reason),
                match_score=score,
                reason=reason,
            ))
        return Selection(
            recommendations=results,
            message=compose_message(results, context.query),
            used_fallback=True,
        )


# ---------------------------------------------------------------------------
# LLM-backed selector
# ---------------------------------------------------------------------------


def _parse_score(raw: Any) -> int:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise LLMSelectionError(f"matchScore is not a number: {raw!r}")
    if math.isnan(raw) or not 0 <= raw <= 100:
        raise LLMSelectionError(f"matchScore out of range: {raw!r}")
    return int(round(raw))


def validate_selection(
    payload: dict[str, Any],
    candidates: list[Candidate],
    limit: int = MAX_RECOMMENDATIONS,
) -> list[RecommendationResult]:
    """Turn raw LLM output into results, rejecting anything outside *candidates*."""
    selections = payload.get("selections")
    if not isinstance(selections, list) or not selections:
        raise LLMSelectionError("LLM returned no selections")
    if len(selections) > limit:
        raise LLMSelectionError(f"LLM returned {len(selections)} selections (max {limit})")

    by_id = {c.id: c for c in candidates}
    results: list[RecommendationResult] = []
    seen: set[str] = set()
    for item in selections:
        if not isinstance(item, dict):
            raise LLMSelectionError("Selection entry is not an object")
        rid = str(item.get("id", ""))
        if rid not in by_id:
            raise LLMSelectionError(f"LLM selected unknown restaurant id {rid!r}")
        if rid in seen:
            raise LLMSelectionError(f"LLM selected {rid!r} twice")
        seen.add(rid)

        score = _parse_score(item.get("matchScore", item.get("match_score")))
        reason = item.get("reason")
        if not isinstance(reason, str) or not reason.strip():
            raise LLMSelectionError(f"Missing reason for {rid!r}")
        reason = reason.strip()

        results.append(RecommendationResult(
            restaurant=by_id[rid].stamp(match_score=score, reason=reason),
            match_score=score,
            reason=reason,
        ))
    return results


class LLMSelector:
    """Groq-backed final selection with a deterministic fallback."""

    def __init__(
        self,
        config: LLMConfig = DEFAULT_LLM_CONFIG,
        fallback: Selector | None = None,
        limit: int = MAX_RECOMMENDATIONS,
    ) -> None:
        self.config = config
        self.limit = limit
        self.fallback = fallback or ScoreSelector(limit)

    def select(self, candidates: list[Candidate], context: SelectionContext) -> Selection:
        if not candidates:
            return Selection(message=compose_message([], context.query))
        if not self.config.enabled or not self.config.api_key:
            return self.fallback.select(candidates, context)

        try:
            payload = request_selection(
                context.query, context.conversation_summary, candidates, config=self.config,
            )
            results = validate_selection(payload, candidates, self.limit)
        except Exception:
            logger.warning("LLM selection failed, falling back to top scores", exc_info=True)
            return self.fallback.select(candidates, context)

        message = payload.get("message")
        if not isinstance(message, str) or not message.strip() or not markers_resolve(message, results):
            logger.info("LLM message missing or has unresolved mentions; using template")
            message = compose_message(results, context.query)

        return Selection(recommendations=results, message=message.strip())
