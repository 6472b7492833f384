from __future__ import annotations

import pytest

from dining_agent.recommendations.config import PipelineConfig
from dining_agent.recommendations.models import Candidate, FunnelQuery, LocationMode
from dining_agent.recommendations.reranking import (
    SocialReranker,
    _rank_key,
    budget_alignment,
    combine,
    context_adjustment,
    distance_penalty,
    enhance_diversity,
    occasion_boost,
    social_score,
)


def _cand(rid: str, vector: float, friends: int = 0, rating=None, reviews=None, **kwargs) -> Candidate:
    return Candidate(
        id=rid,
        name=f"Place {rid}",
        vector_score=vector,
        friends_who_visited=["Dana", "Noa", "Avi", "Tal"][:friends],
        google_rating=rating,
        review_count=reviews,
        **kwargs,
    )


# ── Scoring ──────────────────────────────────────────────────────────────


class TestSocialScore:
    def test_bounds(self):
        assert social_score(0, None, None) == 0.0
        assert social_score(3, 5.0, 5000) == pytest.approx(1.0)

    def test_friends_saturate(self):
        assert social_score(10, 4.0, 100) == social_score(3, 4.0, 100)

    def test_friends_weigh_most(self):
        assert social_score(3, 0.0, 0) > social_score(0, 5.0, 0)
        assert social_score(3, 0.0, 0) > social_score(0, 0.0, 5000)

    def test_more_reviews_never_hurt(self):
        assert social_score(1, 4.0, 50) <= social_score(1, 4.0, 500)


class TestCombine:
    @pytest.mark.parametrize("vector,social", [(0.0, 0.0), (0.4, 0.9), (0.8, 0.2), (1.0, 1.0)])
    def test_monotonic_in_both_inputs(self, vector, social):
        base = combine(vector, social)
        assert combine(min(vector + 0.1, 1.0), social) >= base
        assert combine(vector, min(social + 0.1, 1.0)) >= base

    def test_range(self):
        assert combine(0.0, 0.0) == 0.0
        assert combine(1.0, 1.0) == pytest.approx(1.0)


# ── Context adjustments ──────────────────────────────────────────────────


def _query(**kwargs) -> FunnelQuery:
    kwargs.setdefault("occasion", "friends")
    kwargs.setdefault("location_mode", LocationMode.anywhere)
    return FunnelQuery(**kwargs)


class TestAdjustments:
    def test_distance_penalty_grows_then_caps(self):
        assert distance_penalty(None) == 0.0
        assert distance_penalty(2000) == pytest.approx(0.02)
        assert distance_penalty(50_000) == pytest.approx(0.10)

    def test_date_boost_needs_high_rating(self):
        assert occasion_boost("date", 4.5, 3) == pytest.approx(0.10)
        assert occasion_boost("date", 4.0, 3) == 0.0

    def test_quick_boost_needs_low_price(self):
        assert occasion_boost("casual", 3.0, 1) == pytest.approx(0.10)
        assert occasion_boost("casual", 3.0, 4) == 0.0

    def test_business_boost(self):
        assert occasion_boost("business", 4.2, 3) == pytest.approx(0.05)
        assert occasion_boost("business", 3.5, 3) == 0.0

    def test_budget_alignment(self):
        assert budget_alignment("moderate", 2) == pytest.approx(0.08)
        assert budget_alignment("moderate", 3) == pytest.approx(0.04)
        assert budget_alignment("cheap", 4) == pytest.approx(-0.05)
        assert budget_alignment(None, 4) == 0.0

    def test_unknown_price_treated_as_moderate(self):
        assert budget_alignment("moderate", None) == pytest.approx(0.08)

    def test_context_adjustment_without_query_is_distance_only(self):
        cand = _cand("a", vector=0.5, rating=4.8, price_level=1, distance_meters=3000.0)
        assert context_adjustment(cand, None) == pytest.approx(-0.03)

    def test_context_adjustment_sums_terms(self):
        cand = _cand("a", vector=0.5, rating=4.8, price_level=2, distance_meters=1000.0)
        query = _query(occasion="date", budget="moderate")
        assert context_adjustment(cand, query) == pytest.approx(-0.01 + 0.10 + 0.08)

    def test_adjusted_social_score_stays_in_range(self):
        assert social_score(3, 5.0, 5000, adjustment=0.3) == 1.0
        assert social_score(0, None, None, adjustment=-0.2) == 0.0


def test_rerank_applies_query_boosts():
    pricey = _cand("a", vector=0.60, rating=4.5, reviews=500, price_level=4)
    matching = _cand("b", vector=0.60, rating=4.5, reviews=500, price_level=1)

    top = SocialReranker().rerank([pricey, matching], _query(occasion="casual", budget="cheap"))

    assert [c.id for c in top] == ["b", "a"]
    assert top[0].social_score > top[1].social_score


def test_rerank_prefers_closer_places():
    far = _cand("a", vector=0.60, rating=4.0, reviews=500, distance_meters=9000.0)
    near = _cand("b", vector=0.60, rating=4.0, reviews=500, distance_meters=200.0)

    top = SocialReranker().rerank([far, near])

    assert [c.id for c in top] == ["b", "a"]


# ── Diversity ────────────────────────────────────────────────────────────


def test_diversity_caps_primary_cuisine():
    sushi = [
        _cand(f"s{i}", vector=0.9, categories=["Japanese"], final_score=0.9 - i / 100)
        for i in range(6)
    ]
    others = [
        _cand(f"o{i}", vector=0.5, categories=[cuisine], final_score=0.5 - i / 100)
        for i, cuisine in enumerate(["Italian", "Mexican", "Cafe"])
    ]

    kept = enhance_diversity(sushi + others, target=6, max_same_cuisine=3)

    assert len(kept) == 6
    assert sum(1 for c in kept if c.categories[0] == "Japanese") == 3
    finals = [c.final_score for c in kept]
    assert finals == sorted(finals, reverse=True)


def test_diversity_backfills_when_short():
    sushi = [
        _cand(f"s{i}", vector=0.5, categories=["Japanese"], final_score=0.9 - i / 100)
        for i in range(5)
    ]

    kept = enhance_diversity(sushi, target=5, max_same_cuisine=3)

    assert [c.id for c in kept] == ["s0", "s1", "s2", "s3", "s4"]


# ── Stage 3 ──────────────────────────────────────────────────────────────


def test_rerank_sorts_by_final_and_caps():
    cands = [_cand(f"r{i:02d}", vector=0.5 + i / 100, friends=i % 4, rating=4.0, reviews=i * 10) for i in range(30)]

    top = SocialReranker(PipelineConfig(rerank_top_n=15)).rerank(cands)

    assert len(top) == 15
    finals = [c.final_score for c in top]
    assert finals == sorted(finals, reverse=True)


def test_rerank_stamps_scores_and_keeps_vector():
    top = SocialReranker().rerank([_cand("a", vector=0.7123, friends=2, rating=4.5, reviews=800)])

    cand = top[0]
    assert cand.vector_score == 0.7123
    assert cand.social_score == round(social_score(2, 4.5, 800), 4)
    assert cand.final_score == round(combine(0.7123, cand.social_score), 4)


def test_friend_endorsement_can_overtake_similarity():
    near_miss = _cand("a", vector=0.70, friends=3, rating=4.5, reviews=1000)
    best_match = _cand("b", vector=0.75, friends=0, rating=4.5, reviews=1000)

    top = SocialReranker().rerank([best_match, near_miss])

    assert [c.id for c in top] == ["a", "b"]


def test_tie_break_reviews_then_rating_then_id():
    tied = [
        _cand("d", vector=0.5, rating=4.0, reviews=100, final_score=0.6),
        _cand("c", vector=0.5, rating=4.5, reviews=100, final_score=0.6),
        _cand("b", vector=0.5, rating=4.0, reviews=900, final_score=0.6),
        _cand("a", vector=0.5, rating=4.0, reviews=100, final_score=0.6),
    ]
    assert [c.id for c in sorted(tied, key=_rank_key)] == ["b", "c", "a", "d"]


def test_rerank_refuses_to_overwrite_scores():
    with pytest.raises(ValueError):
        SocialReranker().rerank([_cand("a", vector=0.5, social_score=0.3)])
