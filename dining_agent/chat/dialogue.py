from __future__ import annotations

import logging

from ..llm.config import DEFAULT_LLM_CONFIG, LLMConfig
from ..recommendations.config import DEFAULT_PIPELINE_CONFIG
from ..recommendations.errors import ValidationError
from ..recommendations.models import FunnelQuery, Language, LocationMode, UserLocation
from .intent import detect_language, extract, wants_override
from .models import (
    AskSlot,
    Chip,
    ConversationContext,
    ConversationStateKind,
    DialogueResponse,
    Invoke,
    Slots,
)

logger = logging.getLogger(__name__)

MAX_TURNS = 4
REQUIRED_SLOTS = ("occasion", "location")
DEFAULT_OCCASION = "casual"

WALKING_DISTANCE_METERS = 800.0
NEARBY_DISTANCE_METERS = 2000.0

# Location values that only work with the user's coordinates
POSITIONAL_LOCATIONS = (LocationMode.walking.value, LocationMode.nearby.value)

# ---------------------------------------------------------------------------
# Prompts & chips
# ---------------------------------------------------------------------------
# Chip values stay canonical in every language so the keyword rules read
# them the same way.

OCCASION_CHIP_LABELS: dict[Language, list[tuple[str, str]]] = {
    "en": [
        ("Date night", "date"),
        ("With friends", "friends"),
        ("Family meal", "family"),
        ("Business", "business"),
        ("Birthday", "birthday"),
        ("Just me", "solo"),
    ],
    "he": [
        ("דייט", "date"),
        ("עם חברים", "friends"),
        ("ארוחה משפחתית", "family"),
        ("עסקים", "business"),
        ("יום הולדת", "birthday"),
        ("רק אני", "solo"),
    ],
}

NO_POSITION_PROMPT: dict[Language, str] = {
    "en": "I can't see where you are right now, so pick a city or say anywhere.",
    "he": "אני לא רואה את המיקום שלך כרגע, אז בחרו עיר או כתבו בכל מקום.",
}


def _occasion_chips(language: Language = "en") -> list[Chip]:
    return [Chip(label=label, value=value) for label, value in OCCASION_CHIP_LABELS[language]]


def _location_chips(default_city: str, located: bool = False, language: Language = "en") -> list[Chip]:
    """Walking and short-drive chips are only offered when we know where the user is."""
    chips: list[Chip] = []
    if language == "he":
        if located:
            chips += [Chip(label="במרחק הליכה", value="walking"), Chip(label="נסיעה קצרה", value="nearby")]
        chips += [Chip(label=f"בכל {default_city}", value=default_city), Chip(label="בכל מקום", value="anywhere")]
        return chips

    if located:
        chips += [Chip(label="Walking distance", value="walking"), Chip(label="Short drive", value="nearby")]
    chips += [Chip(label=f"Anywhere in {default_city}", value=default_city), Chip(label="Anywhere at all", value="anywhere")]
    return chips


def _occasion_prompt(slots: Slots, language: Language = "en") -> str:
    if language == "he":
        if slots.cuisine:
            return f"{slots.cuisine} נשמע מעולה! מה האירוע?"
        if slots.location:
            return "אזור מעולה! מה האירוע?"
        return "אשמח לעזור למצוא מקום! מה האירוע?"

    if slots.cuisine:
        return f"Ooh, {slots.cuisine.lower()} sounds great! What's the occasion?"
    if slots.location:
        return "Nice area! What's the occasion?"
    return "I'd love to help you find a spot! What's the occasion?"


def _location_prompt(slots: Slots, language: Language = "en") -> str:
    if language == "he":
        if slots.occasion == "date":
            return "דייט, מרגש! איפה לחפש?"
        if slots.occasion == "birthday":
            return "יום הולדת שמח! איפה לחפש?"
        if slots.occasion:
            return "נשמע כמו תוכנית! כמה רחוק מתאים לך?"
        return "איפה לחפש?"

    if slots.occasion == "date":
        return "A date, how exciting! Where should I look?"
    if slots.occasion == "birthday":
        return "Happy birthday to someone! Where should I look?"
    if slots.occasion:
        return "Sounds like a plan! How far are you willing to go?"
    return "Where should I look?"


def _ask(
    slot: str,
    slots: Slots,
    default_city: str,
    language: Language = "en",
    located: bool = False,
    prompt: str | None = None,
) -> AskSlot:
    if slot == "occasion":
        return AskSlot(
            slot="occasion",
            prompt=prompt or _occasion_prompt(slots, language),
            chips=_occasion_chips(language),
        )
    return AskSlot(
        slot="location",
        prompt=prompt or _location_prompt(slots, language),
        chips=_location_chips(default_city, located, language),
    )


def _is_chip_value(utterance: str, default_city: str) -> bool:
    value = utterance.strip().lower()
    canonical = {v for _, v in OCCASION_CHIP_LABELS["en"]} | {"walking", "nearby", "anywhere"}
    return value in canonical or value == default_city.lower()


# ---------------------------------------------------------------------------
# Slot state
# ---------------------------------------------------------------------------


def merge_slots(
    slots: Slots,
    extracted: dict[str, str],
    last_question: str | None = None,
    override: bool = False,
) -> Slots:
    """Overlay newly extracted values; filled slots are never cleared.

    A filled slot only takes a different value when it is the one just
    asked about, or when ``override`` says the user is changing their mind.
    """
    update: dict[str, str] = {}
    for name, value in extracted.items():
        if not value:
            continue
        current = getattr(slots, name)
        if current and current != value and name != last_question and not override:
            logger.debug("Keeping %s=%r, ignoring %r", name, current, value)
            continue
        update[name] = value
    return slots.model_copy(update=update)


def missing_required(slots: Slots) -> list[str]:
    return [name for name in REQUIRED_SLOTS if not getattr(slots, name)]


def needs_user_location(slots: Slots) -> bool:
    return (slots.location or "").strip().lower() in POSITIONAL_LOCATIONS


def with_defaults(slots: Slots, default_city: str) -> Slots:
    return slots.model_copy(update={
        "occasion": slots.occasion or DEFAULT_OCCASION,
        "location": slots.location or default_city,
    })


def build_query(slots: Slots, language: Language = "en") -> FunnelQuery:
    """Turn filled slots into the funnel's structured query."""
    missing = missing_required(slots)
    if missing:
        raise ValidationError(f"Missing required slots: {', '.join(missing)}")

    location = slots.location.strip()
    mode = LocationMode.city
    city: str | None = None
    max_distance: float | None = None
    if location.lower() == LocationMode.walking.value:
        mode, max_distance = LocationMode.walking, WALKING_DISTANCE_METERS
    elif location.lower() == LocationMode.nearby.value:
        mode, max_distance = LocationMode.nearby, NEARBY_DISTANCE_METERS
    elif location.lower() == LocationMode.anywhere.value:
        mode = LocationMode.anywhere
    else:
        city = location

    cuisines = [c.strip() for c in (slots.cuisine or "").split(",") if c.strip()]

    return FunnelQuery(
        occasion=slots.occasion,
        location_mode=mode,
        city=city,
        max_distance_meters=max_distance,
        cuisines=cuisines,
        vibe=slots.vibe,
        budget=slots.budget,
        timing=slots.timing,
        language=language,
    )


# ---------------------------------------------------------------------------
# Turn handling
# ---------------------------------------------------------------------------


def reask(
    context: ConversationContext,
    slot: str,
    default_city: str | None = None,
    user_location: UserLocation | None = None,
) -> tuple[ConversationContext, AskSlot]:
    """Clear *slot* and ask for it again without spending a turn."""
    default_city = default_city or DEFAULT_PIPELINE_CONFIG.default_city
    slots = context.slots.model_copy(update={slot: None})
    prompt = None
    if slot == "location" and user_location is None:
        prompt = NO_POSITION_PROMPT[context.language]
    new_context = context.model_copy(update={
        "state": ConversationStateKind.gathering,
        "slots": slots,
        "last_question": slot,
    })
    return new_context, _ask(slot, slots, default_city, context.language, user_location is not None, prompt)


def advance(
    context: ConversationContext,
    utterance: str,
    max_turns: int = MAX_TURNS,
    default_city: str | None = None,
    llm_config: LLMConfig = DEFAULT_LLM_CONFIG,
    user_location: UserLocation | None = None,
) -> tuple[ConversationContext, DialogueResponse]:
    """
    Apply one user turn to *context*.

    Returns the new context and either an :class:`AskSlot` for the next
    missing required slot, or an :class:`Invoke` carrying the built query.
    Walking and nearby answers are only accepted with a *user_location*;
    otherwise the location question is asked again. The input context is
    never mutated.
    """
    if not utterance or not utterance.strip():
        raise ValidationError("Message must not be empty")
    default_city = default_city or DEFAULT_PIPELINE_CONFIG.default_city
    located = user_location is not None

    language = context.language
    if not _is_chip_value(utterance, default_city):
        language = detect_language(utterance, context.language)

    extracted = extract(utterance, context, llm_config)
    slots = merge_slots(context.slots, extracted, context.last_question, wants_override(utterance))
    turn_count = context.turn_count + 1

    unplaced = not located and needs_user_location(slots)
    if unplaced:
        logger.info("Turn %d: '%s' needs a user location, none given", turn_count, slots.location)
        slots = slots.model_copy(update={"location": None})
    missing = missing_required(slots)

    refining = context.state == ConversationStateKind.ready_to_recommend
    if missing and (unplaced or not refining) and turn_count < max_turns:
        slot = missing[0]
        new_context = ConversationContext(
            state=ConversationStateKind.gathering,
            slots=slots,
            turn_count=turn_count,
            last_question=slot,
            language=language,
        )
        prompt = NO_POSITION_PROMPT[language] if unplaced and slot == "location" else None
        logger.info("Turn %d: asking for %s (have %s)", turn_count, slot, sorted(slots.filled()))
        return new_context, _ask(slot, slots, default_city, language, located, prompt)

    if missing:
        logger.info("Turn %d: turn cap reached, defaulting %s", turn_count, missing)
        slots = with_defaults(slots, default_city)

    new_context = ConversationContext(
        state=ConversationStateKind.ready_to_recommend,
        slots=slots,
        turn_count=turn_count,
        last_question=None,
        language=language,
    )
    return new_context, Invoke(built_query=build_query(slots, language), defaulted_slots=missing)
