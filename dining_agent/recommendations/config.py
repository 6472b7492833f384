from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
load_dotenv(Path(__file__).resolve().parent.parent.parent / ".env")

_DEFAULT_DATA_DIR = Path(__file__).resolve().parent.parent / "data" / "processed"


@dataclass(frozen=True)
class PipelineConfig:
    vector_top_k: int = 50
    rerank_top_n: int = 15
    llm_candidate_cap: int = 15
    max_recommendations: int = 3
    debug_sample_size: int = 10
    max_same_cuisine: int = 3

    # Per-stage budgets, in seconds
    store_timeout: float = 5.0
    embedding_timeout: float = 5.0
    embedding_retry_timeout: float = 2.0

    default_city: str = os.getenv("DEFAULT_CITY", "Tel Aviv")
    data_dir: Path = field(
        default_factory=lambda: Path(os.getenv("DINING_DATA_DIR", str(_DEFAULT_DATA_DIR)))
    )


DEFAULT_PIPELINE_CONFIG = PipelineConfig()
