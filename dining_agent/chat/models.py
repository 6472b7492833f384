from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import Field

from ..recommendations.models import (
    CamelModel,
    ErrorInfo,
    FunnelQuery,
    Language,
    PipelineDebugBundle,
    RecommendationResult,
    UserLocation,
)

SLOT_NAMES = ("occasion", "location", "cuisine", "vibe", "budget", "timing")
SlotName = Literal["occasion", "location", "cuisine", "vibe", "budget", "timing"]


class ConversationStateKind(str, Enum):
    gathering = "gathering"
    ready_to_recommend = "ready_to_recommend"


class Slots(CamelModel):
    occasion: str | None = None
    location: str | None = None
    cuisine: str | None = None
    vibe: str | None = None
    budget: str | None = None
    timing: str | None = None

    def filled(self) -> dict[str, str]:
        return {k: v for k, v in self.model_dump().items() if v}


class ConversationContext(CamelModel):
    state: ConversationStateKind = ConversationStateKind.gathering
    slots: Slots = Field(default_factory=Slots)
    turn_count: int = Field(default=0, ge=0)
    last_question: SlotName | None = None
    language: Language = "en"


# ── Dialogue output ──────────────────────────────────────────────────────


class Chip(CamelModel):
    label: str
    value: str


class AskSlot(CamelModel):
    kind: Literal["ask_slot"] = "ask_slot"
    slot: SlotName
    prompt: str
    chips: list[Chip] = Field(default_factory=list)


class Invoke(CamelModel):
    kind: Literal["invoke"] = "invoke"
    built_query: FunnelQuery
    defaulted_slots: list[str] = Field(default_factory=list)


DialogueResponse = Annotated[Union[AskSlot, Invoke], Field(discriminator="kind")]


# ── HTTP wire models ─────────────────────────────────────────────────────


class ChatMessage(CamelModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(CamelModel):
    message: str = Field(..., max_length=1000)
    conversation_id: str | None = None
    previous_context: ConversationContext | None = None
    messages: list[ChatMessage] = Field(default_factory=list)
    user_location: UserLocation | None = None
    include_debug_data: bool = True
    # Moment timing slots resolve against; the server clock when omitted
    reference_time: datetime | None = None


class ChatResponse(CamelModel):
    message: str
    context: ConversationContext
    conversation_id: str
    recommendations: list[RecommendationResult] | None = None
    debug_data: PipelineDebugBundle | None = None
    error: ErrorInfo | None = None
    ready_to_recommend: bool = False
    chips: list[Chip] | None = None


class RecommendRequest(CamelModel):
    context: ConversationContext
    user_location: UserLocation | None = None
    conversation_summary: str | None = None
    include_debug_data: bool = False
    reference_time: datetime | None = None


class RecommendResponse(CamelModel):
    recommendations: list[RecommendationResult] = Field(default_factory=list)
    message: str
    ready_to_recommend: bool = True
    debug_data: PipelineDebugBundle | None = None
