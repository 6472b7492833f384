from __future__ import annotations

from typing import Any, Callable, Union

from .models import PipelineDebugBundle

Payload = Union[Any, Callable[[], Any]]

STAGES = ("step1", "step2", "step3", "step4")


class DebugRecorder:
    """Collects per-stage debug payloads without touching the funnel.

    Payloads may be passed as zero-argument callables so nothing is built
    when recording is disabled.
    """

    def __init__(self, enabled: bool) -> None:
        self.enabled = enabled
        self._steps: dict[str, Any] = {}

    def record(self, stage: str, payload: Payload) -> None:
        if not self.enabled:
            return
        if stage not in STAGES:
            raise ValueError(f"Unknown debug stage {stage!r}")
        self._steps[stage] = payload() if callable(payload) else payload

    def bundle(self) -> PipelineDebugBundle | None:
        if not self.enabled:
            return None
        return PipelineDebugBundle(**self._steps)
