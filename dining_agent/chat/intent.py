from __future__ import annotations

import json
import logging
import re

from groq import Groq

from ..llm.config import DEFAULT_LLM_CONFIG, LLMConfig
from .models import SLOT_NAMES, ConversationContext, Language

logger = logging.getLogger(__name__)

SHORT_ANSWER_MAX_WORDS = 4

# ---------------------------------------------------------------------------
# Keyword tables
# ---------------------------------------------------------------------------
# Each table maps a canonical slot value to the phrases that imply it.
# English phrases match on a leading word boundary, so "celebrat" covers
# "celebrating". Hebrew phrases match anywhere, since prefixes such as
# ב/ל/ה attach to the word.

OCCASION_KEYWORDS: dict[str, list[str]] = {
    "date": ["date", "anniversary", "girlfriend", "boyfriend", "wife", "husband", "partner"],
    "friends": ["friends", "buddies", "hangout", "hang out", "group", "the gang"],
    "family": ["family", "kids", "parents", "my mom", "my dad"],
    "business": ["business", "work", "client", "colleague", "meeting", "team"],
    "birthday": ["birthday", "celebrat", "party"],
    "solo": ["solo", "alone", "by myself", "just me"],
    "casual": ["casual", "quick bite", "grab a bite"],
}

LOCATION_KEYWORDS: dict[str, list[str]] = {
    "walking": ["walking", "walk", "on foot", "close by", "right here"],
    "nearby": ["nearby", "near me", "around here", "close to me", "short drive", "not far"],
    "anywhere": ["anywhere", "doesn't matter where", "don't care where", "whole city"],
}

KNOWN_CITIES = [
    "Tel Aviv", "Jaffa", "Jerusalem", "Haifa", "Herzliya", "Ramat Gan",
    "Givatayim", "Ra'anana", "Netanya", "Rishon LeZion", "Eilat", "Be'er Sheva",
]

CUISINE_KEYWORDS: dict[str, list[str]] = {
    "Italian": ["italian", "pasta", "trattoria"],
    "Pizza": ["pizza"],
    "Japanese": ["japanese", "sushi", "ramen", "izakaya"],
    "Chinese": ["chinese", "dim sum", "dumpling"],
    "Thai": ["thai"],
    "Asian": ["asian", "noodle"],
    "Indian": ["indian", "curry"],
    "Mexican": ["mexican", "taco", "burrito"],
    "French": ["french", "bistro"],
    "Mediterranean": ["mediterranean", "greek"],
    "Middle Eastern": ["middle eastern", "hummus", "falafel", "shawarma", "israeli"],
    "Seafood": ["seafood", "fish"],
    "Steakhouse": ["steak", "grill", "meat"],
    "Burgers": ["burger"],
    "Vegan": ["vegan", "plant based", "plant-based"],
    "Vegetarian": ["vegetarian", "veggie"],
    "Cafe": ["cafe", "coffee", "brunch"],
    "Bakery": ["bakery", "pastr"],
}

VIBE_KEYWORDS: dict[str, list[str]] = {
    "romantic": ["romantic", "intimate", "candle"],
    "cozy": ["cozy", "cosy", "warm"],
    "lively": ["lively", "buzzing", "energetic", "loud", "fun"],
    "quiet": ["quiet", "calm", "peaceful", "relaxed", "chill"],
    "trendy": ["trendy", "hip", "stylish", "instagram"],
    "upscale": ["upscale", "elegant", "fancy", "classy"],
    "outdoor": ["outdoor", "outside", "terrace", "rooftop", "garden", "by the sea", "beach"],
}

BUDGET_KEYWORDS: dict[str, list[str]] = {
    "cheap": ["cheap", "budget", "affordable", "inexpensive", "not too expensive"],
    "moderate": ["moderate", "mid-range", "mid range", "reasonable", "mid priced"],
    "expensive": ["expensive", "splurge", "fine dining", "high end", "high-end", "pricey"],
}

TIMING_KEYWORDS: dict[str, list[str]] = {
    "now": ["now", "right now", "asap", "immediately"],
    "tonight": ["tonight", "this evening", "dinner tonight"],
    "tomorrow": ["tomorrow"],
    "weekend": ["weekend", "saturday", "friday night"],
    "lunch": ["lunch", "noon", "midday"],
}

# ── Hebrew ───────────────────────────────────────────────────────────────

HE_OCCASION_KEYWORDS: dict[str, list[str]] = {
    "date": ["דייט", "בת זוג", "בן זוג", "יום נישואין", "חברה שלי", "אשתי", "בעלי"],
    "friends": ["חברים", "חבר'ה", "חברות"],
    "family": ["משפחה", "ילדים", "הורים"],
    "business": ["עסקים", "עסקית", "פגישה", "עבודה", "לקוח", "קולגות"],
    "birthday": ["יום הולדת", "יומולדת", "לחגוג", "חגיגה"],
    "solo": ["לבד", "רק אני"],
    "casual": ["ביס מהיר", "משהו מהיר", "קליל"],
}

HE_LOCATION_KEYWORDS: dict[str, list[str]] = {
    "walking": ["במרחק הליכה", "ברגל"],
    "nearby": ["קרוב אליי", "קרוב", "באזור שלי"],
    "anywhere": ["לא משנה איפה", "בכל מקום", "כל מקום", "איפה שיש"],
}

HE_CITIES: dict[str, str] = {
    "תל אביב": "Tel Aviv",
    'ת"א': "Tel Aviv",
    "יפו": "Jaffa",
    "ירושלים": "Jerusalem",
    "חיפה": "Haifa",
    "הרצליה": "Herzliya",
    "רמת גן": "Ramat Gan",
    "גבעתיים": "Givatayim",
    "רעננה": "Ra'anana",
    "נתניה": "Netanya",
    "ראשון לציון": "Rishon LeZion",
    "אילת": "Eilat",
    "באר שבע": "Be'er Sheva",
}

HE_CUISINE_KEYWORDS: dict[str, list[str]] = {
    "Italian": ["איטלקי", "פסטה"],
    "Pizza": ["פיצה"],
    "Japanese": ["יפני", "סושי", "ראמן"],
    "Chinese": ["סיני"],
    "Thai": ["תאילנדי"],
    "Asian": ["אסייתי", "נודלס"],
    "Indian": ["הודי"],
    "Mexican": ["מקסיקני", "טאקו"],
    "French": ["צרפתי"],
    "Mediterranean": ["ים תיכוני", "יווני"],
    "Middle Eastern": ["חומוס", "פלאפל", "שווארמה", "ישראלי"],
    "Seafood": ["דגים", "פירות ים"],
    "Steakhouse": ["סטייק", "בשרים", "גריל"],
    "Burgers": ["המבורגר", "בורגר"],
    "Vegan": ["טבעוני"],
    "Vegetarian": ["צמחוני"],
    "Cafe": ["בית קפה", "קפה", "בראנץ'"],
    "Bakery": ["מאפייה", "מאפים"],
}

HE_VIBE_KEYWORDS: dict[str, list[str]] = {
    "romantic": ["רומנטי", "אינטימי"],
    "cozy": ["נעים", "ביתי"],
    "lively": ["תוסס", "שמח", "רועש"],
    "quiet": ["שקט", "רגוע"],
    "trendy": ["טרנדי", "מגניב"],
    "upscale": ["יוקרתי", "מפואר"],
    "outdoor": ["בחוץ", "מרפסת", "גג", "ליד הים", "חוף"],
}

HE_BUDGET_KEYWORDS: dict[str, list[str]] = {
    "cheap": ["זול", "בתקציב", "לא יקר"],
    "moderate": ["בינוני", "סביר"],
    "expensive": ["יקר", "מסעדת שף"],
}

HE_TIMING_KEYWORDS: dict[str, list[str]] = {
    "now": ["עכשיו", "כרגע", "פתוח עכשיו"],
    "tonight": ["הערב", "הלילה", "ארוחת ערב"],
    "tomorrow": ["מחר"],
    "weekend": ["סוף שבוע", 'סופ"ש', "שבת", "שישי"],
    "lunch": ["צהריים"],
}

# Words that belong to more than one slot. The first entry wins unless the
# last question asked about one of the others.
AMBIGUOUS_WORDS: dict[str, list[tuple[str, str]]] = {
    "romantic": [("vibe", "romantic"), ("occasion", "date")],
    "רומנטי": [("vibe", "romantic"), ("occasion", "date")],
    "lunch": [("timing", "lunch"), ("occasion", "lunch")],
    "brunch": [("cuisine", "Cafe"), ("occasion", "brunch")],
    "drinks": [("vibe", "lively"), ("occasion", "drinks")],
}

NO_PREFERENCE = {
    "anything", "any", "whatever", "no preference", "don't care", "dont care",
    "doesn't matter", "surprise me", "up to you", "you pick", "skip",
    "לא משנה", "לא אכפת לי", "מה שבא", "תפתיע אותי", "כל דבר", "תבחר אתה",
}

# Defaults applied when the user waves off a question about that slot.
NO_PREFERENCE_VALUES = {"occasion": "casual", "location": "anywhere"}

# A keyword preceded by one of these within two words does not count.
NEGATIONS = {"not", "no", "without", "never", "לא", "בלי", "ללא"}
NEGATION_WINDOW = 2

# Phrases that let a new value replace one the user already gave.
OVERRIDE_CUES = [
    "actually", "instead", "change", "rather", "make it", "switch to", "scratch that",
    "how about", "what about",
    "בעצם", "במקום", "דווקא", "תשנה",
]

HEBREW_LETTERS_MIN = 4

_HEBREW_RE = re.compile(r"[\u0590-\u05FF]")
_LATIN_RE = re.compile(r"[A-Za-z]")
_WORD_RE = re.compile(r"[\w'\"]+")
_CITY_AFTER_IN_RE = re.compile(r"\bin ([A-Z][\w'-]+(?: [A-Z][\w'-]+)?)")
_TRAILING_PUNCT_RE = re.compile(r"[\s.!?,]+$")


def _merge(*tables: dict[str, list[str]]) -> dict[str, list[str]]:
    merged: dict[str, list[str]] = {}
    for table in tables:
        for value, phrases in table.items():
            merged.setdefault(value, []).extend(phrases)
    return merged


_TABLES = {
    "occasion": _merge(OCCASION_KEYWORDS, HE_OCCASION_KEYWORDS),
    "location": _merge(LOCATION_KEYWORDS, HE_LOCATION_KEYWORDS),
    "cuisine": _merge(CUISINE_KEYWORDS, HE_CUISINE_KEYWORDS),
    "vibe": _merge(VIBE_KEYWORDS, HE_VIBE_KEYWORDS),
    "budget": _merge(BUDGET_KEYWORDS, HE_BUDGET_KEYWORDS),
    "timing": _merge(TIMING_KEYWORDS, HE_TIMING_KEYWORDS),
}


# ---------------------------------------------------------------------------
# Matching helpers
# ---------------------------------------------------------------------------


def detect_language(text: str, default: Language = "en") -> Language:
    """``"he"`` when the text carries enough Hebrew letters, ``"en"`` for Latin text."""
    if len(_HEBREW_RE.findall(text)) >= HEBREW_LETTERS_MIN:
        return "he"
    if _LATIN_RE.search(text):
        return "en"
    return default


def _negated(text: str, start: int) -> bool:
    preceding = _WORD_RE.findall(text[:start])[-NEGATION_WINDOW:]
    return any(word in NEGATIONS for word in preceding)


def _contains(text: str, phrase: str) -> bool:
    if _HEBREW_RE.search(phrase):
        pattern = re.escape(phrase)
    else:
        pattern = r"\b" + re.escape(phrase)
    return any(not _negated(text, m.start()) for m in re.finditer(pattern, text))


def _all_matches(text: str, table: dict[str, list[str]], skip: set[str]) -> list[str]:
    return [
        value for value, phrases in table.items()
        if any(_contains(text, p) for p in phrases if p not in skip)
    ]


def _find_city(utterance: str) -> str | None:
    lower = utterance.lower()
    for city in KNOWN_CITIES:
        if _contains(lower, city.lower()):
            return city
    for phrase, city in HE_CITIES.items():
        if _contains(utterance, phrase):
            return city
    match = _CITY_AFTER_IN_RE.search(utterance)
    if match and not _negated(utterance, match.start()):
        return match.group(1)
    return None


def wants_override(utterance: str) -> bool:
    """True when the user signals they are changing an earlier answer."""
    lower = utterance.lower()
    return any(_contains(lower, cue) for cue in OVERRIDE_CUES)


# ---------------------------------------------------------------------------
# Rule-based extraction
# ---------------------------------------------------------------------------


def extract_slots(utterance: str, last_question: str | None = None) -> dict[str, str]:
    """
    Pull slot values out of *utterance* with keyword rules.

    ``last_question`` resolves words that could fill several slots, and lets
    a short free-text reply answer the slot that was just asked about.
    """
    text = utterance.strip()
    lower = text.lower()
    slots: dict[str, str] = {}

    # Ambiguous words first, so the question context gets a say
    claimed: set[str] = set()
    for word, readings in AMBIGUOUS_WORDS.items():
        if not _contains(lower, word):
            continue
        slot, value = next(
            ((s, v) for s, v in readings if s == last_question),
            readings[0],
        )
        slots.setdefault(slot, value)
        claimed.add(word)

    for slot, table in _TABLES.items():
        if slot in slots:
            continue
        found = _all_matches(lower, table, claimed)
        if slot == "cuisine":
            if found:
                slots[slot] = ", ".join(found)
        elif slot == "location":
            value = found[0] if found else _find_city(text)
            if value:
                slots[slot] = value
        elif found:
            slots[slot] = found[0]

    if last_question and last_question not in slots:
        answer = _TRAILING_PUNCT_RE.sub("", text)
        if lower.strip(" .!?") in NO_PREFERENCE:
            default = NO_PREFERENCE_VALUES.get(last_question)
            if default:
                slots[last_question] = default
        elif answer and len(answer.split()) <= SHORT_ANSWER_MAX_WORDS and not slots:
            slots[last_question] = answer

    return slots


# ---------------------------------------------------------------------------
# Optional LLM assist
# ---------------------------------------------------------------------------

SLOT_EXTRACTION_PROMPT = """\
You extract dining preferences from a user's message in a restaurant-finding chat.

Return ONLY valid JSON with any of these keys you can infer (omit the rest):
{
  "occasion": "date / friends / family / business / birthday / solo / casual",
  "location": "walking / nearby / anywhere / <city or neighbourhood name>",
  "cuisine": "comma separated cuisines in Title Case",
  "vibe": "romantic / cozy / lively / quiet / trendy / upscale / outdoor",
  "budget": "cheap / moderate / expensive",
  "timing": "now / tonight / tomorrow / weekend / lunch"
}
Never guess. If the message says nothing about a field, leave it out."""

_CLOSED_VALUES = {
    "budget": set(BUDGET_KEYWORDS),
    "timing": set(TIMING_KEYWORDS),
}


def _clean_llm_slots(raw: dict) -> dict[str, str]:
    cleaned: dict[str, str] = {}
    for slot in SLOT_NAMES:
        value = raw.get(slot)
        if not isinstance(value, str) or not value.strip():
            continue
        value = value.strip()
        allowed = _CLOSED_VALUES.get(slot)
        if allowed is not None:
            value = value.lower()
            if value not in allowed:
                continue
        cleaned[slot] = value
    return cleaned


def extract_slots_with_llm(
    utterance: str,
    context: ConversationContext,
    config: LLMConfig = DEFAULT_LLM_CONFIG,
) -> dict[str, str]:
    """Ask Groq for slot values. Returns ``{}`` when disabled or on any failure."""
    if not (config.enabled and config.slot_extraction and config.api_key):
        return {}

    known = context.slots.filled()
    user_content = utterance
    if known or context.last_question:
        user_content = (
            f"Known preferences so far: {json.dumps(known)}\n"
            f"Last question asked about: {context.last_question or 'nothing'}\n\n"
            f"Latest message: {utterance}"
        )

    try:
        client = Groq(api_key=config.api_key, timeout=config.retry_timeout)
        response = client.chat.completions.create(
            model=config.model,
            messages=[
                {"role": "system", "content": SLOT_EXTRACTION_PROMPT},
                {"role": "user", "content": user_content},
            ],
            max_tokens=config.extraction_max_tokens,
            temperature=config.extraction_temperature,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content or "{}"
        parsed = json.loads(content)
        if not isinstance(parsed, dict):
            return {}
        return _clean_llm_slots(parsed)

    except Exception:
        logger.warning("LLM slot extraction failed, using keyword rules only", exc_info=True)
        return {}


def extract(
    utterance: str,
    context: ConversationContext,
    config: LLMConfig = DEFAULT_LLM_CONFIG,
) -> dict[str, str]:
    """Keyword rules first; the LLM may only fill slots the rules missed."""
    slots = extract_slots(utterance, context.last_question)
    if len(slots) < len(SLOT_NAMES):
        for slot, value in extract_slots_with_llm(utterance, context, config).items():
            slots.setdefault(slot, value)
    return slots
