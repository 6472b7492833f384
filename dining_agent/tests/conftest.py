from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from dining_agent.analytics.store import clear_events
from dining_agent.chat import intent
from dining_agent.embeddings.precompute import build_text
from dining_agent.recommendations.data_store import CandidateStore
from dining_agent.recommendations.pipeline import RecommendationFunnel
from dining_agent.recommendations.selection import ScoreSelector

# Toy embedding space: one axis per keyword plus a constant so no vector is zero.
AXES = [
    "italian", "pizza", "japanese", "sushi", "burger", "mexican", "vegan",
    "seafood", "cafe", "romantic", "cozy", "lively", "quiet",
    "date", "friends", "family", "business",
]

CATEGORIES = [
    "Italian, Pizza",
    "Japanese, Sushi",
    "Burgers",
    "Mexican",
    "Vegan, Cafe",
    "Seafood",
]
OCCASIONS = ["date, friends", "family", "business", "", "friends"]
VIBES = ["romantic", "cozy", "lively", "quiet"]
FRIENDS = ["Dana", "Noa", "Avi"]

TLV = (32.0853, 34.7818)


def keyword_embed(text: str) -> np.ndarray:
    lower = text.lower()
    return np.array([1.0 if axis in lower else 0.0 for axis in AXES] + [0.1])


def make_frame(n: int) -> pd.DataFrame:
    rows = []
    for i in range(n):
        rows.append({
            "id": f"r{i:03d}",
            "name": f"Place {i:03d}",
            "city": "Jerusalem" if i % 5 == 4 else "Tel Aviv",
            # Spread east of the centre, ~95m apart
            "latitude": TLV[0],
            "longitude": TLV[1] + i * 0.001,
            "categories": CATEGORIES[i % len(CATEGORIES)],
            "price_level": i % 4 + 1,
            "google_rating": round(3.5 + (i % 15) / 10, 1),
            "review_count": (i * 37) % 2000,
            "occasions": OCCASIONS[i % len(OCCASIONS)],
            "friends_who_visited": ", ".join(FRIENDS[: i % 4]),
            "summary": f"A {VIBES[i % len(VIBES)]} neighbourhood spot",
            "opening_hours": None,
        })
    return pd.DataFrame(rows)


def make_store(frame: pd.DataFrame, with_embeddings: bool = True) -> CandidateStore:
    embeddings = None
    if with_embeddings:
        embeddings = np.vstack([keyword_embed(build_text(row)) for _, row in frame.iterrows()])
    return CandidateStore(frame, embeddings)


def make_funnel(store: CandidateStore, selector=None, **kwargs) -> RecommendationFunnel:
    return RecommendationFunnel(
        store,
        embed=keyword_embed,
        selector=selector or ScoreSelector(),
        **kwargs,
    )


@pytest.fixture(autouse=True)
def _isolate(monkeypatch):
    # No network from slot extraction unless a test opts in
    monkeypatch.setattr(intent, "extract_slots_with_llm", lambda *args, **kwargs: {})
    clear_events()
    yield
    clear_events()


@pytest.fixture
def frame() -> pd.DataFrame:
    return make_frame(60)


@pytest.fixture
def store(frame) -> CandidateStore:
    return make_store(frame)


@pytest.fixture
def funnel(store) -> RecommendationFunnel:
    return make_funnel(store)
