from __future__ import annotations

import json
import time
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from conftest import make_frame, make_funnel, make_store
from dining_agent.analytics.store import get_events
from dining_agent.llm.config import LLMConfig
from dining_agent.recommendations.config import PipelineConfig
from dining_agent.recommendations.errors import UpstreamUnavailable, ValidationError
from dining_agent.recommendations.models import (
    Candidate,
    FunnelQuery,
    LocationMode,
    RecommendationResult,
    UserLocation,
)
from dining_agent.recommendations.pipeline import NO_RESULTS_MESSAGE
from dining_agent.recommendations.selection import LLMSelector, Selection

QUERIES = [
    FunnelQuery(occasion="friends", location_mode=LocationMode.anywhere),
    FunnelQuery(occasion="date", location_mode=LocationMode.city, city="Tel Aviv", cuisines=["Italian"]),
    FunnelQuery(occasion="business", location_mode=LocationMode.city, city="Tel Aviv", vibe="quiet"),
    FunnelQuery(occasion="family", location_mode=LocationMode.anywhere, budget="cheap"),
]


def _mock_groq_response(content: str) -> MagicMock:
    message = MagicMock()
    message.content = content
    choice = MagicMock()
    choice.message = message
    response = MagicMock()
    response.choices = [choice]
    return response


def _ids(candidates) -> list[str]:
    return [c.id for c in candidates]


def _corpus(n: int = 500, in_haifa: int = 80):
    frame = make_frame(n)
    frame["occasions"] = ""
    frame.loc[: in_haifa - 1, "city"] = "Haifa"
    return make_store(frame)


# ── Invariants ───────────────────────────────────────────────────────────


@pytest.mark.parametrize("query", QUERIES)
def test_funnel_invariants(funnel, query):
    result = funnel.run(query, include_debug_data=True)
    debug = result.debug_data

    assert debug.step1.after_filter <= debug.step1.total_in_db
    assert debug.step2.total_scored == debug.step1.after_filter

    vector_scores = [c.vector_score for c in debug.step2.top_by_vector]
    assert vector_scores == sorted(vector_scores, reverse=True)
    assert len(debug.step2.top_by_vector) <= 50

    finals = [c.final_score for c in debug.step3.top_by_rerank]
    assert finals == sorted(finals, reverse=True)

    sent = debug.step4.candidates_sent_to_llm
    assert len(sent) <= 15
    assert _ids(sent) == _ids(debug.step3.top_by_rerank)[: len(sent)]

    picked = _ids(r.restaurant for r in result.recommendations)
    assert 0 <= len(picked) <= 3
    assert set(picked) <= set(_ids(sent))
    assert _ids(debug.step4.final_recommendations) == picked
    assert all(0 <= r.match_score <= 100 for r in result.recommendations)


def test_candidate_fields_survive_each_stage(funnel):
    result = funnel.run(QUERIES[0], include_debug_data=True)
    debug = result.debug_data
    by_vector = {c.id: c for c in debug.step2.top_by_vector}

    for cand in debug.step3.top_by_rerank:
        assert cand.vector_score == by_vector[cand.id].vector_score
        assert cand.distance_meters == by_vector[cand.id].distance_meters
    for rec in result.recommendations:
        assert rec.restaurant.social_score is not None
        assert rec.restaurant.match_score == rec.match_score


# ── Scenarios ────────────────────────────────────────────────────────────


def test_scenario_counts_through_the_funnel():
    funnel = make_funnel(_corpus())
    query = FunnelQuery(occasion="casual", location_mode=LocationMode.city, city="Haifa")

    debug = funnel.run(query, include_debug_data=True).debug_data

    assert (debug.step1.total_in_db, debug.step1.after_filter) == (500, 80)
    assert len(debug.step1.sample_restaurants) == 10
    assert debug.step2.total_scored == 80
    assert len(debug.step2.top_by_vector) == 50
    assert debug.step3.total_reranked == 50


def test_full_rerank_list_reaches_selector():
    funnel = make_funnel(_corpus())
    query = FunnelQuery(occasion="casual", location_mode=LocationMode.city, city="Haifa")

    debug = funnel.run(query, include_debug_data=True).debug_data

    assert len(debug.step3.top_by_rerank) == 15
    assert _ids(debug.step4.candidates_sent_to_llm) == _ids(debug.step3.top_by_rerank)


def test_no_candidates_short_circuits(funnel):
    query = FunnelQuery(occasion="date", location_mode=LocationMode.city, city="Atlantis")

    result = funnel.run(query, include_debug_data=True)

    assert result.ready_to_recommend
    assert result.recommendations == []
    assert result.message == NO_RESULTS_MESSAGE["en"]
    assert result.debug_data.step1.after_filter == 0
    assert result.debug_data.step2 is None
    assert result.debug_data.step3 is None
    assert result.debug_data.step4 is None


@patch("dining_agent.llm.groq_client.Groq")
def test_hallucinated_restaurant_never_reaches_caller(mock_groq_cls, store):
    mock_groq_cls.return_value.chat.completions.create.return_value = _mock_groq_response(json.dumps({
        "selections": [{"id": "ghost-1", "matchScore": 99, "reason": "Not real."}],
        "message": "Go to [[Ghost Kitchen]]!",
    }))
    selector = LLMSelector(config=LLMConfig(api_key="test-key", enabled=True))
    funnel = make_funnel(store, selector=selector)

    result = funnel.run(QUERIES[0], include_debug_data=True)

    picked = _ids(r.restaurant for r in result.recommendations)
    assert "ghost-1" not in picked
    assert picked == _ids(sorted(
        result.debug_data.step4.candidates_sent_to_llm,
        key=lambda c: (-c.final_score, c.id),
    ))[:3]
    assert result.used_fallback
    assert "Ghost Kitchen" not in result.message


def test_selector_breaking_contract_is_replaced(store):
    class RogueSelector:
        def select(self, candidates, context):
            fake = Candidate(id="nope", name="Nowhere", final_score=1.0)
            return Selection(
                recommendations=[RecommendationResult(restaurant=fake, match_score=100, reason="Trust me.")],
                message="Go to [[Nowhere]]",
            )

    result = make_funnel(store, selector=RogueSelector()).run(QUERIES[0])

    assert "nope" not in _ids(r.restaurant for r in result.recommendations)
    assert len(result.recommendations) == 3
    assert result.used_fallback


# ── Determinism & debug toggle ───────────────────────────────────────────


def test_deterministic_stages_are_reproducible(funnel):
    first = funnel.run(QUERIES[1], include_debug_data=True).debug_data
    second = funnel.run(QUERIES[1], include_debug_data=True).debug_data

    for step in ("step1", "step2", "step3"):
        assert getattr(first, step).model_dump_json() == getattr(second, step).model_dump_json()


def test_debug_disabled_builds_no_bundle(funnel):
    result = funnel.run(QUERIES[0], include_debug_data=False)
    assert result.debug_data is None
    assert len(result.recommendations) == 3


def test_debug_bundle_uses_wire_names(funnel):
    wire = funnel.run(QUERIES[0], include_debug_data=True).debug_data.model_dump(by_alias=True)

    assert set(wire) == {"step1", "step2", "step3", "step4"}
    assert {"totalInDb", "afterFilter", "sampleRestaurants"} <= set(wire["step1"])
    assert {"queryText", "totalScored", "topByVector"} <= set(wire["step2"])
    assert {"totalReranked", "topByRerank"} <= set(wire["step3"])
    assert {"candidatesSentToLLM", "finalRecommendations"} <= set(wire["step4"])


# ── Errors ───────────────────────────────────────────────────────────────


def test_walking_without_location_is_rejected(funnel):
    query = FunnelQuery(occasion="date", location_mode=LocationMode.walking, max_distance_meters=800)
    with pytest.raises(ValidationError):
        funnel.run(query)


def test_walking_with_location(funnel):
    query = FunnelQuery(occasion="friends", location_mode=LocationMode.walking, max_distance_meters=800)
    result = funnel.run(query, user_location=UserLocation(lat=32.0853, lng=34.7818))
    assert all(r.restaurant.distance_meters <= 800 for r in result.recommendations)


def test_slow_store_is_unavailable_with_partial_debug(store):
    funnel = make_funnel(store, config=PipelineConfig(store_timeout=0.05))

    def slow_filter(*args):
        time.sleep(0.3)
        return 0, []

    funnel.generator.filter = slow_filter

    with pytest.raises(UpstreamUnavailable) as exc_info:
        funnel.run(QUERIES[0], include_debug_data=True)

    assert exc_info.value.retryable
    assert exc_info.value.debug_data is not None
    assert exc_info.value.debug_data.step1 is None


def test_run_records_analytics_event(funnel):
    funnel.run(QUERIES[0])

    event = get_events()[-1]
    assert event["type"] == "funnel"
    assert event["occasion"] == "friends"
    assert event["after_filter"] > 0
    assert event["results_returned"] == 3
    assert event["used_fallback"] is True


def test_no_candidates_message_follows_language(funnel):
    query = FunnelQuery(occasion="date", location_mode=LocationMode.city, city="Atlantis", language="he")

    result = funnel.run(query)

    assert result.message == NO_RESULTS_MESSAGE["he"]


def test_reference_time_pins_the_timing_filter():
    frame = make_frame(40)
    # Open only Monday 12:00-15:00
    frame.loc[:19, "opening_hours"] = json.dumps(
        {"periods": [{"open": {"day": 1, "time": "1200"}, "close": {"day": 1, "time": "1500"}}]}
    )
    funnel = make_funnel(make_store(frame))
    query = FunnelQuery(occasion="friends", location_mode=LocationMode.anywhere, timing="now")
    monday_lunch = datetime(2024, 1, 1, 13, 0)
    monday_night = datetime(2024, 1, 1, 22, 0)

    first = funnel.run(query, include_debug_data=True, now=monday_lunch).debug_data.step1
    again = funnel.run(query, include_debug_data=True, now=monday_lunch).debug_data.step1
    night = funnel.run(query, include_debug_data=True, now=monday_night).debug_data.step1

    assert first.model_dump_json() == again.model_dump_json()
    assert night.after_filter < first.after_filter
