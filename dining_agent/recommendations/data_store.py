from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from .config import DEFAULT_PIPELINE_CONFIG
from .errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

CORPUS_COLUMNS = [
    "id",
    "name",
    "city",
    "latitude",
    "longitude",
    "categories",
    "price_level",
    "google_rating",
    "review_count",
    "occasions",
    "friends_who_visited",
    "summary",
    "opening_hours",
]


def _split_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return []
    return [part.strip() for part in str(value).split(",") if part.strip()]


def _parse_hours(value: Any) -> dict | None:
    if isinstance(value, dict):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Ignoring unparseable opening_hours: %r", value[:80])
        return None


class CandidateStore:
    """Read-only restaurant corpus with row-aligned precomputed embeddings.

    The frame is never mutated after construction, so handing the same
    instance to concurrent funnel runs gives each a consistent snapshot.
    """

    def __init__(self, frame: pd.DataFrame, embeddings: np.ndarray | None = None) -> None:
        missing = [c for c in ("id", "name") if c not in frame.columns]
        if missing:
            raise ValueError(f"Corpus is missing required columns: {missing}")

        df = frame.reset_index(drop=True).copy()
        for col in CORPUS_COLUMNS:
            if col not in df.columns:
                df[col] = None

        df["id"] = df["id"].astype(str)
        for col in ("latitude", "longitude", "price_level", "google_rating", "review_count"):
            df[col] = pd.to_numeric(df[col], errors="coerce")
        # Pre-parse list columns and lowercase copies for matching
        df["categories_list"] = df["categories"].apply(_split_list)
        df["categories_lower"] = df["categories_list"].apply(lambda cs: [c.lower() for c in cs])
        df["occasions_lower"] = df["occasions"].apply(
            lambda v: [o.lower() for o in _split_list(v)]
        )
        df["friends_list"] = df["friends_who_visited"].apply(_split_list)
        df["city_lower"] = df["city"].fillna("").astype(str).str.lower()
        df["hours"] = df["opening_hours"].apply(_parse_hours)

        if embeddings is not None and len(embeddings) != len(df):
            raise ValueError(
                f"Embeddings have {len(embeddings)} rows but corpus has {len(df)}"
            )

        self._df = df
        self._embeddings = embeddings
        self._row_by_id = {rid: i for i, rid in enumerate(df["id"])}

    @classmethod
    def from_files(cls, data_dir: Path) -> CandidateStore:
        csv_path = data_dir / "restaurants.csv"
        npy_path = data_dir / "embeddings.npy"
        try:
            frame = pd.read_csv(csv_path, dtype={"id": str})
        except (OSError, pd.errors.ParserError) as exc:
            raise UpstreamUnavailable(f"Restaurant corpus unavailable at {csv_path}") from exc

        embeddings = np.load(npy_path) if npy_path.exists() else None
        if embeddings is None:
            logger.warning("No precomputed embeddings at %s; vector scores will be neutral", npy_path)
        return cls(frame, embeddings)

    def snapshot(self) -> pd.DataFrame:
        """Return the corpus frame for one funnel invocation."""
        return self._df

    def __len__(self) -> int:
        return len(self._df)

    def embedding_for(self, restaurant_id: str) -> np.ndarray | None:
        if self._embeddings is None:
            return None
        row = self._row_by_id.get(restaurant_id)
        if row is None:
            return None
        vec = self._embeddings[row]
        if not np.any(vec):
            return None
        return vec

    def cities(self) -> list[str]:
        return sorted(self._df["city"].dropna().astype(str).unique().tolist())

    def categories(self) -> list[str]:
        found: set[str] = set()
        for cats in self._df["categories_list"]:
            found.update(cats)
        return sorted(found)


_store: CandidateStore | None = None


def get_store() -> CandidateStore:
    """Return the process-wide corpus, loading it on first call."""
    global _store
    if _store is None:
        _store = CandidateStore.from_files(DEFAULT_PIPELINE_CONFIG.data_dir)
    return _store
