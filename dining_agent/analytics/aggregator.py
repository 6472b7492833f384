from __future__ import annotations

from collections import Counter
from typing import Any


def _rate(part: int, total: int) -> float:
    return round(part / total * 100, 1) if total else 0.0


def compute_analytics(events: list[dict[str, Any]]) -> dict[str, Any]:
    runs = [e for e in events if e["type"] == "funnel"]
    turns = [e for e in events if e["type"] == "turn"]
    total = len(runs)

    # Average response time
    times = [r["response_time_ms"] for r in runs if "response_time_ms" in r]
    avg_time = round(sum(times) / len(times), 1) if times else 0.0

    # Top occasions
    occasion_counter: Counter[str] = Counter()
    for r in runs:
        occasion_counter[r.get("occasion") or "unknown"] += 1
    top_occasions = [{"name": n, "count": c} for n, c in occasion_counter.most_common(10)]

    # Top cuisines
    cuisine_counter: Counter[str] = Counter()
    for r in runs:
        for c in r.get("cuisines", []) or []:
            cuisine_counter[c] += 1
    top_cuisines = [{"name": n, "count": c} for n, c in cuisine_counter.most_common(10)]

    # Location mode usage
    mode_usage = dict(Counter(r.get("location_mode", "unknown") for r in runs))

    # Funnel outcomes
    no_candidates = sum(1 for r in runs if r.get("after_filter") == 0)
    fallbacks = sum(1 for r in runs if r.get("used_fallback"))
    filtered = [r["after_filter"] for r in runs if r.get("after_filter") is not None]

    # Dialogue
    asked = Counter(t["asked_slot"] for t in turns if t.get("asked_slot"))
    forced = sum(1 for t in turns if t.get("forced"))

    return {
        "total_funnel_runs": total,
        "avg_response_time_ms": avg_time,
        "top_occasions": top_occasions,
        "top_cuisines": top_cuisines,
        "location_mode_usage": mode_usage,
        "funnel_stats": {
            "avg_after_filter": round(sum(filtered) / len(filtered), 1) if filtered else 0.0,
            "no_candidates": no_candidates,
            "no_candidates_rate": _rate(no_candidates, total),
            "fallbacks": fallbacks,
            "fallback_rate": _rate(fallbacks, total),
        },
        "dialogue_stats": {
            "total_turns": len(turns),
            "questions_by_slot": dict(asked),
            "turn_cap_reached": forced,
        },
    }
