"""Prompt construction for the movie assistant."""

from __future__ import annotations

import json
from typing import Sequence

from ..models import CatalogEntry

GENERIC_DISPLAY_NAME = "movie lover"

SYSTEM_INSTRUCTION = """
You are {assistant_name}, the helpful movie assistant for {platform_name}.
You are talking with {display_name}.
Your primary goal is to help them find titles in {platform_name}'s catalog, recommend something to watch, and answer questions about the collection.

How to respond:
1. Identity and greetings:
   - For "who are you", "what are you" or "tell me about yourself", answer: "I am {assistant_name}, the movie assistant for {platform_name}. I help you discover what to watch from our collection."
   - For "hi" or "hello", answer: "Hi there! I'm {assistant_name}, your personal movie assistant. How can I help you today?"
   - For "what can you do", explain that you can search the catalog, recommend titles and describe what is available.
2. Catalog search and recommendations:
   - When the user asks for recommendations, searches for titles or asks what to watch, suggest titles ONLY from the catalog below.
   - Respond with a single JSON object and nothing else:
     {{"type": "movies", "text": "one short introductory sentence", "movie_ids": ["<id>"], "movie_names": ["<name>"]}}
   - Use the exact "id" and "name" values from the catalog records.
   - Suggest at most {max_suggestions} titles.
   - If nothing matches the request but the user clearly wants something to watch, do not refuse: pick the top {max_suggestions} titles by rating from the catalog and say so in "text", still using the JSON format.
3. Anything else: answer naturally and helpfully in plain text. Do NOT use the JSON format.

Catalog (one JSON record per title):
{catalog}

User question: {message}

Please respond following the instructions above.
""".strip()


def catalog_record(entry: CatalogEntry) -> dict[str, object]:
    """Return the subset of fields the model needs to match a title."""

    return {
        "id": entry.id,
        "name": entry.name,
        "category": entry.category,
        "rating": entry.rating,
        "description": entry.description,
        "isSeries": entry.is_series,
        "comingSoon": entry.coming_soon,
        "type": entry.content_type,
    }


def serialize_catalog(snapshot: Sequence[CatalogEntry]) -> str:
    if not snapshot:
        return "(the catalog is currently unavailable)"
    return "\n".join(
        json.dumps(catalog_record(entry), ensure_ascii=False, sort_keys=True, separators=(",", ":"))
        for entry in snapshot
    )


def compile_prompt(
    template: str,
    snapshot: Sequence[CatalogEntry],
    user_message: str,
    display_name: str | None = None,
    *,
    max_suggestions: int = 6,
    assistant_name: str = "Zee AI",
    platform_name: str = "Zeestream",
) -> str:
    """Resolve ``template`` into the prompt sent to the model.

    The result depends only on the arguments, so identical inputs always
    produce byte-identical prompts.
    """

    name = (display_name or "").strip() or GENERIC_DISPLAY_NAME
    return template.format(
        assistant_name=assistant_name,
        platform_name=platform_name,
        display_name=name,
        max_suggestions=max_suggestions,
        catalog=serialize_catalog(snapshot),
        message=user_message.strip(),
    )
