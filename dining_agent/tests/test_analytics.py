from __future__ import annotations

from fastapi.testclient import TestClient

from dining_agent.analytics import store as analytics_store
from dining_agent.analytics.aggregator import compute_analytics
from dining_agent.analytics.store import clear_events, get_events, record_event
from dining_agent.app import app

client = TestClient(app)


def _funnel_event(**overrides):
    data = {
        "occasion": "date",
        "location_mode": "city",
        "cuisines": ["Italian"],
        "after_filter": 40,
        "results_returned": 3,
        "used_fallback": False,
        "response_time_ms": 120.0,
    }
    data.update(overrides)
    record_event("funnel", data)


def test_analytics_returns_empty_initially():
    resp = client.get("/analytics")
    assert resp.status_code == 200
    body = resp.json()
    assert body["total_funnel_runs"] == 0
    assert body["avg_response_time_ms"] == 0.0
    assert body["funnel_stats"]["no_candidates_rate"] == 0.0


def test_analytics_tracks_funnel_runs():
    _funnel_event()
    _funnel_event(occasion="friends", cuisines=[], after_filter=0, results_returned=0, response_time_ms=80.0)
    _funnel_event(location_mode="walking", used_fallback=True, response_time_ms=100.0)

    body = compute_analytics(get_events())

    assert body["total_funnel_runs"] == 3
    assert body["avg_response_time_ms"] == 100.0
    assert body["top_occasions"][0] == {"name": "date", "count": 2}
    assert body["top_cuisines"] == [{"name": "Italian", "count": 2}]
    assert body["location_mode_usage"] == {"city": 2, "walking": 1}
    assert body["funnel_stats"]["no_candidates"] == 1
    assert body["funnel_stats"]["no_candidates_rate"] == 33.3
    assert body["funnel_stats"]["fallback_rate"] == 33.3
    assert body["funnel_stats"]["avg_after_filter"] == 26.7


def test_analytics_tracks_dialogue_turns():
    client.post("/agent/chat", json={"message": "hi"})
    client.post("/agent/chat", json={"message": "hello again"})

    body = client.get("/analytics").json()

    assert body["dialogue_stats"]["total_turns"] == 2
    assert body["dialogue_stats"]["questions_by_slot"] == {"occasion": 2}
    assert body["dialogue_stats"]["turn_cap_reached"] == 0


def test_event_log_is_bounded(monkeypatch):
    from collections import deque

    monkeypatch.setattr(analytics_store, "_events", deque(maxlen=5))
    for i in range(8):
        record_event("turn", {"turn_count": i})

    events = get_events()
    assert len(events) == 5
    assert events[0]["turn_count"] == 3
    clear_events()
    assert get_events() == []
