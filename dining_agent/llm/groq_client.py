from __future__ import annotations

import json
import logging
from typing import Any

from groq import APIError, APITimeoutError, Groq

from ..recommendations.errors import LLMSelectionError, UpstreamTimeout
from ..recommendations.models import Candidate, FunnelQuery
from .config import DEFAULT_LLM_CONFIG, LLMConfig

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a restaurant expert helping a friend find the perfect place. "
    "You receive the conversation so far and a list of candidate restaurants.\n\n"
    "Pick at most 3 restaurants from the list that best match what the user wants. "
    "For each, give a match score from 0 to 100 and one short, personal sentence "
    "explaining the pick. Reference what the user actually asked for.\n\n"
    "Then write one friendly message introducing your picks. Mention each picked "
    "restaurant by wrapping its exact name in double brackets, e.g. [[Cafe Noir]]. "
    "Never mention a restaurant you did not pick.\n\n"
    "Return ONLY valid JSON in this exact format:\n"
    '{"selections": [{"id": "<restaurant_id>", "matchScore": 87, "reason": "<one sentence>"}], '
    '"message": "<message with [[Name]] markers>"}\n'
    "Use only ids from the provided list."
)


def _build_user_message(
    query: FunnelQuery,
    conversation_summary: str | None,
    candidates: list[Candidate],
) -> str:
    lines = ["## What the user wants"]
    lines.append(f"- Occasion: {query.occasion}")
    if query.location_mode.value == "city" and query.city:
        lines.append(f"- Where: {query.city}")
    else:
        lines.append(f"- Where: {query.location_mode.value}")
    if query.cuisines:
        lines.append(f"- Cuisines: {', '.join(query.cuisines)}")
    if query.vibe:
        lines.append(f"- Vibe: {query.vibe}")
    if query.budget:
        lines.append(f"- Budget: {query.budget}")
    if query.timing:
        lines.append(f"- When: {query.timing}")
    if query.language == "he":
        lines.append("- Language: write every reason and the message in Hebrew")

    if conversation_summary:
        lines.append("\n## Conversation")
        lines.append(conversation_summary)

    lines.append("\n## Candidate Restaurants")
    lines.append("| ID | Name | Categories | Rating | Reviews | Price | Distance | Friends who visited | Score |")
    lines.append("|---|---|---|---|---|---|---|---|---|")
    for c in candidates:
        distance = f"{round(c.distance_meters)}m" if c.distance_meters is not None else "N/A"
        price = "$" * c.price_level if c.price_level else "?"
        lines.append(
            f"| {c.id} | {c.name} | {', '.join(c.categories) or 'Restaurant'} "
            f"| {c.google_rating if c.google_rating is not None else 'N/A'} "
            f"| {c.review_count or 0} | {price} | {distance} "
            f"| {', '.join(c.friends_who_visited) or '-'} | {round((c.final_score or 0) * 100)}% |"
        )

    return "\n".join(lines)


def _call(client: Groq, config: LLMConfig, user_message: str) -> str:
    response = client.chat.completions.create(
        model=config.model,
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": user_message},
        ],
        max_tokens=config.max_tokens,
        temperature=config.selection_temperature,
        response_format={"type": "json_object"},
    )
    return response.choices[0].message.content or ""


def request_selection(
    query: FunnelQuery,
    conversation_summary: str | None,
    candidates: list[Candidate],
    config: LLMConfig = DEFAULT_LLM_CONFIG,
) -> dict[str, Any]:
    """
    Ask Groq to pick final recommendations from *candidates*.

    Returns the decoded JSON object. A timeout is retried once with
    ``config.retry_timeout``; a second timeout raises :class:`UpstreamTimeout`.
    API failures and undecodable output raise :class:`LLMSelectionError`.
    """
    user_message = _build_user_message(query, conversation_summary, candidates)

    content = None
    for budget in (config.timeout, config.retry_timeout):
        client = Groq(api_key=config.api_key, timeout=budget, max_retries=0)
        try:
            content = _call(client, config, user_message)
            break
        except APITimeoutError:
            logger.warning("Groq selection timed out after %.1fs", budget)
        except APIError as exc:
            raise LLMSelectionError(f"Groq API error: {exc}") from exc
    else:
        raise UpstreamTimeout("LLM selection exceeded its time budget")

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise LLMSelectionError("LLM returned invalid JSON") from exc
    if not isinstance(parsed, dict):
        raise LLMSelectionError("LLM returned a non-object JSON payload")
    return parsed
