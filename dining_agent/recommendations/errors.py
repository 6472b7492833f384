from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for typed recommendation-pipeline errors."""

    kind = "pipeline_error"
    retryable = False

    def __init__(self, message: str, debug_data: Any | None = None) -> None:
        super().__init__(message)
        self.message = message
        # Partial debug bundle, when one was being recorded.
        self.debug_data = debug_data


class ValidationError(PipelineError):
    kind = "validation_error"

    def __init__(self, message: str, debug_data: Any | None = None, slot: str | None = None) -> None:
        super().__init__(message, debug_data)
        # Conversation slot whose value made the request unusable, if any.
        self.slot = slot


class NoCandidatesError(PipelineError):
    kind = "no_candidates"


class UpstreamTimeout(PipelineError):
    kind = "upstream_timeout"
    retryable = True


class LLMSelectionError(PipelineError):
    kind = "llm_selection_error"


class UpstreamUnavailable(PipelineError):
    kind = "upstream_unavailable"
    retryable = True
