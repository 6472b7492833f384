from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


Language = Literal["en", "he"]


class CamelModel(BaseModel):
    """Base for wire models: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserLocation(CamelModel):
    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)


class LocationMode(str, Enum):
    walking = "walking"
    nearby = "nearby"
    city = "city"
    anywhere = "anywhere"


class FunnelQuery(CamelModel):
    occasion: str
    location_mode: LocationMode = LocationMode.city
    city: str | None = None
    max_distance_meters: float | None = None
    cuisines: list[str] = Field(default_factory=list)
    vibe: str | None = None
    budget: str | None = None
    timing: str | None = None
    language: Language = "en"


class Candidate(CamelModel):
    """A restaurant flowing through the funnel.

    Identity, geometry and reputation come from the Candidate Generator;
    every later stage only fills in its own score fields via :meth:`stamp`.
    """

    id: str
    name: str
    city: str | None = None
    categories: list[str] = Field(default_factory=list)
    price_level: int | None = None
    summary: str | None = None
    distance_meters: float | None = None
    friends_who_visited: list[str] = Field(default_factory=list)
    google_rating: float | None = None
    review_count: int | None = None

    vector_score: float | None = None
    social_score: float | None = None
    final_score: float | None = None
    match_score: int | None = None
    reason: str | None = None

    def stamp(self, **fields: Any) -> Candidate:
        """Return a copy with *fields* added; refuses to overwrite a set field."""
        already = [name for name in fields if getattr(self, name) is not None]
        if already:
            raise ValueError(
                f"Candidate {self.id} already has {', '.join(sorted(already))}"
            )
        return self.model_copy(update=fields)


class RecommendationResult(CamelModel):
    restaurant: Candidate
    match_score: int = Field(..., ge=0, le=100)
    reason: str


# ── Debug bundle ─────────────────────────────────────────────────────────


class FilterStep(CamelModel):
    total_in_db: int
    after_filter: int
    sample_restaurants: list[Candidate] = Field(default_factory=list)


class VectorStep(CamelModel):
    query_text: str
    total_scored: int
    top_by_vector: list[Candidate] = Field(default_factory=list)


class RerankStep(CamelModel):
    total_reranked: int
    top_by_rerank: list[Candidate] = Field(default_factory=list)


class SelectionStep(CamelModel):
    candidates_sent_to_llm: list[Candidate] = Field(
        default_factory=list, alias="candidatesSentToLLM"
    )
    final_recommendations: list[Candidate] = Field(default_factory=list)


class PipelineDebugBundle(CamelModel):
    step1: FilterStep | None = None
    step2: VectorStep | None = None
    step3: RerankStep | None = None
    step4: SelectionStep | None = None


# ── Funnel-invocation call ───────────────────────────────────────────────


class ErrorInfo(CamelModel):
    kind: str
    message: str
    retryable: bool = False


class FunnelResult(CamelModel):
    recommendations: list[RecommendationResult] = Field(default_factory=list)
    message: str
    ready_to_recommend: bool = True
    debug_data: PipelineDebugBundle | None = None
    used_fallback: bool = False

