from __future__ import annotations

import logging
import math

from .config import DEFAULT_PIPELINE_CONFIG, PipelineConfig
from .filters import BUDGET_LEVELS
from .models import Candidate, FunnelQuery

logger = logging.getLogger(__name__)

# Friend endorsement is the strongest personalisation signal we have.
SOCIAL_WEIGHTS: dict[str, float] = {"friends": 0.5, "rating": 0.3, "volume": 0.2}
BLEND_WEIGHTS: dict[str, float] = {"vector": 0.65, "social": 0.35}

FRIENDS_SATURATION = 3
REVIEW_SATURATION = 5000

# Context adjustments added on top of the social signal
ADJUSTMENTS: dict[str, float] = {
    "distance_per_km": 0.01,
    "distance_cap": 0.10,
    "date_high_rating": 0.10,
    "quick_cheap": 0.10,
    "business": 0.05,
    "budget_match": 0.08,
    "budget_mismatch": 0.05,
}
DATE_RATING_FLOOR = 4.3
BUSINESS_RATING_FLOOR = 4.0
UNKNOWN_PRICE_LEVEL = 2

QUICK_OCCASIONS = ("casual", "quick")


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def distance_penalty(distance_meters: float | None) -> float:
    if distance_meters is None:
        return 0.0
    return min(distance_meters / 1000 * ADJUSTMENTS["distance_per_km"], ADJUSTMENTS["distance_cap"])


def occasion_boost(occasion: str | None, rating: float | None, price_level: int | None) -> float:
    occasion = (occasion or "").lower()
    rating = rating or 0.0
    price = price_level or UNKNOWN_PRICE_LEVEL

    boost = 0.0
    if "date" in occasion and rating >= DATE_RATING_FLOOR:
        boost += ADJUSTMENTS["date_high_rating"]
    if any(word in occasion for word in QUICK_OCCASIONS) and price <= 2:
        boost += ADJUSTMENTS["quick_cheap"]
    if "business" in occasion and price >= 2 and rating >= BUSINESS_RATING_FLOOR:
        boost += ADJUSTMENTS["business"]
    return boost


def budget_alignment(budget: str | None, price_level: int | None) -> float:
    expected = BUDGET_LEVELS.get((budget or "").lower())
    if expected is None:
        return 0.0
    gap = abs((price_level or UNKNOWN_PRICE_LEVEL) - expected)
    if gap == 0:
        return ADJUSTMENTS["budget_match"]
    if gap == 1:
        return ADJUSTMENTS["budget_match"] / 2
    return -ADJUSTMENTS["budget_mismatch"]


def context_adjustment(candidate: Candidate, query: FunnelQuery | None) -> float:
    """Distance, occasion and budget adjustments for *candidate* under *query*."""
    adjustment = -distance_penalty(candidate.distance_meters)
    if query is not None:
        adjustment += occasion_boost(query.occasion, candidate.google_rating, candidate.price_level)
        adjustment += budget_alignment(query.budget, candidate.price_level)
    return adjustment


def social_score(
    friends: int,
    rating: float | None,
    reviews: int | None,
    adjustment: float = 0.0,
) -> float:
    """Weighted mix of friend visits, Google rating and review volume, in [0, 1].

    ``adjustment`` shifts the mix before it is clamped back into range.
    """
    friend_part = min(max(friends, 0), FRIENDS_SATURATION) / FRIENDS_SATURATION
    rating_part = min(max(rating or 0.0, 0.0), 5.0) / 5.0
    volume_part = min(1.0, math.log1p(max(reviews or 0, 0)) / math.log1p(REVIEW_SATURATION))
    base = (
        SOCIAL_WEIGHTS["friends"] * friend_part
        + SOCIAL_WEIGHTS["rating"] * rating_part
        + SOCIAL_WEIGHTS["volume"] * volume_part
    )
    return min(1.0, max(0.0, base + adjustment))


def combine(vector: float, social: float) -> float:
    """Blend vector and social scores. Non-decreasing in both arguments."""
    return BLEND_WEIGHTS["vector"] * vector + BLEND_WEIGHTS["social"] * social


def _rank_key(c: Candidate) -> tuple:
    return (-c.final_score, -(c.review_count or 0), -(c.google_rating or 0.0), c.id)


def _primary_cuisine(c: Candidate) -> str:
    return c.categories[0] if c.categories else "Other"


def enhance_diversity(ranked: list[Candidate], target: int, max_same_cuisine: int) -> list[Candidate]:
    """Pick *target* candidates with at most *max_same_cuisine* per primary cuisine.

    Backfills from the rest when the cap leaves the list short. The result
    keeps the input's rank order.
    """
    kept: list[Candidate] = []
    per_cuisine: dict[str, int] = {}
    for cand in ranked:
        if len(kept) >= target:
            break
        cuisine = _primary_cuisine(cand)
        if per_cuisine.get(cuisine, 0) < max_same_cuisine:
            kept.append(cand)
            per_cuisine[cuisine] = per_cuisine.get(cuisine, 0) + 1

    if len(kept) < target:
        chosen = {c.id for c in kept}
        kept.extend([c for c in ranked if c.id not in chosen][: target - len(kept)])

    return sorted(kept, key=_rank_key)


class SocialReranker:
    """Stage 3: blend similarity with social proof and keep the top N."""

    def __init__(self, config: PipelineConfig = DEFAULT_PIPELINE_CONFIG) -> None:
        self.config = config

    def rerank(self, top_by_vector: list[Candidate], query: FunnelQuery | None = None) -> list[Candidate]:
        ranked: list[Candidate] = []
        for cand in top_by_vector:
            social = round(
                social_score(
                    len(cand.friends_who_visited),
                    cand.google_rating,
                    cand.review_count,
                    context_adjustment(cand, query),
                ),
                4,
            )
            final = round(combine(cand.vector_score or 0.0, social), 4)
            ranked.append(cand.stamp(social_score=social, final_score=final))

        ranked.sort(key=_rank_key)
        top = enhance_diversity(ranked, self.config.rerank_top_n, self.config.max_same_cuisine)

        for i, c in enumerate(top[:5], start=1):
            logger.info(
                "  %d. %s final=%.4f (vector=%.4f social=%.4f friends=%d)",
                i, c.name, c.final_score, c.vector_score, c.social_score, len(c.friends_who_visited),
            )
        return top
