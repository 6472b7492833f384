from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent.parent.parent / ".env")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


@dataclass(frozen=True)
class LLMConfig:
    """Groq settings shared by final selection and slot extraction.

    ``timeout`` is the first-attempt budget for selection; ``retry_timeout``
    bounds the single retry and the slot-extraction call.
    """

    api_key: str = os.getenv("GROQ_API_KEY", "")
    model: str = os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile")
    timeout: float = 10.0
    retry_timeout: float = 4.0
    enabled: bool = _env_flag("LLM_ENABLED", True)

    # Stage 4 selection
    max_tokens: int = 1024
    selection_temperature: float = 0.5

    # Dialogue slot extraction
    slot_extraction: bool = _env_flag("LLM_SLOT_EXTRACTION", True)
    extraction_max_tokens: int = 256
    extraction_temperature: float = 0.1


DEFAULT_LLM_CONFIG = LLMConfig()
