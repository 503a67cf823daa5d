"""Turn raw model replies into chat text plus matched catalog entries."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Sequence, Union

from ..models import CatalogEntry, ChatIntent, ChatReply
from ..utils import find_bracketed_names, parse_json_object, strip_span

logger = logging.getLogger(__name__)

SEARCH_TYPES = frozenset({"movies", "search", "movie_search"})
ID_KEYS = ("movie_ids", "movieIds", "ids")
NAME_KEYS = ("movie_names", "movieNames", "names")

DEFAULT_SEARCH_TEXT = "Here are some titles you might like:"
FALLBACK_TEXT = (
    "I couldn't find exact matches for that, but here are some of the "
    "top-rated titles in our collection:"
)
EMPTY_CATALOG_TEXT = (
    "I couldn't find any matching titles, and the catalog isn't available "
    "right now. Please try again in a moment."
)
EMPTY_REPLY_TEXT = "I'm not sure how to respond to that. Can you ask me something else?"


@dataclass(frozen=True, slots=True)
class SearchMarker:
    """The model signalled a catalog search and listed ids and/or names."""

    text: str
    ids: tuple[str, ...] = ()
    names: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class PlainText:
    text: str


@dataclass(frozen=True, slots=True)
class MalformedModelOutput:
    """A structured block was present but could not be used."""

    text: str
    reason: str


ModelOutput = Union[SearchMarker, PlainText, MalformedModelOutput]


class ResponseInterpreter:
    """Classifies model output and resolves search results against a snapshot."""

    def __init__(
        self,
        *,
        max_suggestions: int = 6,
        assistant_name: str = "Zee AI",
        platform_name: str = "Zeestream",
    ):
        if max_suggestions < 1:
            raise ValueError("max_suggestions must be positive")
        self.max_suggestions = max_suggestions
        assistant = assistant_name.casefold()
        platform = platform_name.casefold()
        self._identity_phrases = (
            f"i am {assistant}",
            f"i'm {assistant}",
            f"i’m {assistant}",
            f"{assistant}, your",
            f"assistant for {platform}",
        )

    def interpret(
        self,
        raw_text: str,
        snapshot: Sequence[CatalogEntry],
        display_name: str | None = None,
    ) -> ChatReply:
        output = self.classify(raw_text)

        if isinstance(output, SearchMarker):
            matched = self.resolve(output, snapshot)
            text = output.text or DEFAULT_SEARCH_TEXT
            if not matched:
                matched = self.fallback(snapshot)
                text = self._fallback_text(display_name, has_entries=bool(matched))
                logger.info(
                    "No catalog matches for %s ids / %s names; offering %s top-rated titles",
                    len(output.ids),
                    len(output.names),
                    len(matched),
                )
            return ChatReply(text=text, matched_entries=tuple(matched), intent="search")

        if isinstance(output, MalformedModelOutput):
            logger.warning(
                "Structured model output unusable (%s); treating it as plain text",
                output.reason,
            )

        text = output.text.strip()
        if not text:
            return ChatReply(text=EMPTY_REPLY_TEXT, intent="general")
        return ChatReply(text=text, intent=self.tag_intent(text))

    def classify(self, raw_text: str | None) -> ModelOutput:
        text = raw_text or ""
        if not text.strip():
            return PlainText("")

        parsed = parse_json_object(text)
        payload = parsed.payload
        if payload is not None:
            kind = str(payload.get("type") or "").strip().lower()
            ids = self._string_list(payload, ID_KEYS)
            names = self._string_list(payload, NAME_KEYS)
            if ids is None and names is None:
                if kind in SEARCH_TYPES:
                    return MalformedModelOutput(text, "search marker without a list of titles")
                return PlainText(text)
            if kind and kind not in SEARCH_TYPES:
                return PlainText(text)
            intro = payload.get("text")
            if isinstance(intro, str) and intro.strip():
                intro_text = intro.strip()
            else:
                intro_text = strip_span(text, parsed.span)
            return SearchMarker(text=intro_text, ids=ids or (), names=names or ())

        if parsed.found:
            return MalformedModelOutput(text, parsed.error or "unparsable structured block")

        bracketed = find_bracketed_names(text)
        if bracketed is not None:
            return SearchMarker(text=strip_span(text, bracketed.span), names=bracketed.values)
        return PlainText(text)

    def resolve(
        self, marker: SearchMarker, snapshot: Sequence[CatalogEntry]
    ) -> list[CatalogEntry]:
        """Map listed ids/names onto snapshot entries, in the order the model gave them."""

        by_id = {entry.id: entry for entry in snapshot}
        by_name: dict[str, CatalogEntry] = {}
        for entry in snapshot:
            by_name.setdefault(entry.name.strip().casefold(), entry)

        resolved: list[CatalogEntry] = []
        seen: set[str] = set()
        for token in (*marker.ids, *marker.names):
            entry = by_id.get(token) or by_name.get(token.casefold())
            if entry is None or entry.id in seen:
                continue
            seen.add(entry.id)
            resolved.append(entry)
            if len(resolved) >= self.max_suggestions:
                break
        return resolved

    def fallback(self, snapshot: Sequence[CatalogEntry]) -> list[CatalogEntry]:
        """Top entries by rating; ties go to the most recent upload, then snapshot order."""

        ranked = sorted(
            enumerate(snapshot),
            key=lambda pair: (-pair[1].rating, -pair[1].upload_date.timestamp(), pair[0]),
        )
        return [entry for _, entry in ranked[: self.max_suggestions]]

    def tag_intent(self, text: str) -> ChatIntent:
        lowered = text.casefold()
        if any(phrase in lowered for phrase in self._identity_phrases):
            return "identity"
        return "general"

    @staticmethod
    def _fallback_text(display_name: str | None, *, has_entries: bool) -> str:
        base = FALLBACK_TEXT if has_entries else EMPTY_CATALOG_TEXT
        name = (display_name or "").strip()
        if name:
            return f"Sorry {name}, {base}"
        return base

    @staticmethod
    def _string_list(payload: Mapping[str, Any], keys: Sequence[str]) -> tuple[str, ...] | None:
        for key in keys:
            if key not in payload:
                continue
            value = payload[key]
            if not isinstance(value, list):
                return None
            cleaned: list[str] = []
            for item in value:
                if isinstance(item, bool) or not isinstance(item, (str, int)):
                    continue
                token = str(item).strip()
                if token:
                    cleaned.append(token)
            return tuple(cleaned)
        return None
