"""
Offline script to precompute restaurant embeddings.

Rows in ``embeddings.npy`` line up with ``restaurants.csv`` in the same data
directory, which is how the candidate store looks vectors up. Restaurants
with no descriptive text get a zero vector, read back as "no embedding".

Usage:
    python -m dining_agent.embeddings.precompute [data_dir]
"""
from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd

from ..recommendations.config import DEFAULT_PIPELINE_CONFIG
from .config import DEFAULT_EMBEDDING_CONFIG, EmbeddingConfig
from .encoder import encode_batch


def build_text(row: pd.Series) -> str:
    """Name, categories and summary: the text a restaurant is embedded by."""
    parts: list[str] = []
    for col in ("name", "categories", "summary"):
        value = row.get(col)
        if value is not None and pd.notna(value) and str(value).strip():
            parts.append(str(value).replace(",", " ").strip())
    return " ".join(parts).lower()


def run_precompute(
    data_dir: Path | None = None,
    config: EmbeddingConfig = DEFAULT_EMBEDDING_CONFIG,
) -> Path:
    data_dir = data_dir or DEFAULT_PIPELINE_CONFIG.data_dir
    df = pd.read_csv(data_dir / "restaurants.csv", dtype={"id": str})
    texts = df.apply(build_text, axis=1).tolist()

    print(f"Encoding {len(texts)} restaurants with {config.model_name} ...")
    embeddings = np.asarray(encode_batch(texts, config), dtype=np.float32)
    if embeddings.shape != (len(texts), config.dimension):
        raise ValueError(
            f"Expected embeddings of shape {(len(texts), config.dimension)}, got {embeddings.shape}"
        )

    blank = np.array([not t for t in texts], dtype=bool)
    embeddings[blank] = 0.0

    out_path = data_dir / "embeddings.npy"
    np.save(out_path, embeddings)
    print(f"Saved embeddings ({embeddings.shape}, {int(blank.sum())} blank) to {out_path}")
    return out_path


if __name__ == "__main__":
    run_precompute(Path(sys.argv[1]) if len(sys.argv) > 1 else None)
