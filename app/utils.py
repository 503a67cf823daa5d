"""Utility helpers for the Zeestream service."""

from __future__ import annotations

import json
import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


JSON_FENCE_RE = re.compile(r"```[ \t]*(json)?[ \t]*\n?(.*?)```", re.DOTALL | re.IGNORECASE)
JSON_OBJECT_START_RE = re.compile(r'\{\s*"[^"\n]*"\s*:')
BRACKETED_NAMES_RE = re.compile(
    r'\[\s*"(?:[^"\\]|\\.)*"(?:\s*,\s*"(?:[^"\\]|\\.)*")*\s*\]'
)
FRACTION_RE = re.compile(r"(\.\d{6})\d+")
_JSON_DECODER = json.JSONDecoder()

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True, slots=True)
class JsonParseResult:
    """Outcome of looking for a JSON object inside free-form model text.

    ``found`` tells whether anything JSON-shaped was present at all, so a
    caller can tell "plain prose" apart from "a broken structured block".
    """

    found: bool = False
    payload: dict[str, Any] | None = None
    error: str | None = None
    span: tuple[int, int] | None = None

    @property
    def ok(self) -> bool:
        return self.payload is not None


@dataclass(frozen=True, slots=True)
class BracketedList:
    """A ``["A", "B"]`` style list of strings embedded in prose."""

    values: tuple[str, ...]
    span: tuple[int, int]


def slugify(value: str) -> str:
    """Return a URL-friendly slug."""

    value = unicodedata.normalize("NFKD", value)
    value = value.encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value)
    value = value.strip("-")
    value = re.sub(r"-+", "-", value)
    return value.lower() or "untitled"


def parse_json_object(content: str) -> JsonParseResult:
    """Locate and parse the first JSON object in a model response.

    A fenced block wins. Otherwise decoding starts at the first ``{"key":``
    opening and stops where that object ends, so trailing prose (even prose
    with braces) is left alone. An opening that never closes is reported as
    a broken block rather than ignored.
    """

    for match in JSON_FENCE_RE.finditer(content):
        body = match.group(2).strip()
        if match.group(1) or body.startswith("{"):
            return _decode_object(body, match.span())

    opening = JSON_OBJECT_START_RE.search(content)
    if opening is None:
        return JsonParseResult()
    start = opening.start()
    try:
        decoded, end = _JSON_DECODER.raw_decode(content, start)
    except json.JSONDecodeError as exc:
        return JsonParseResult(
            found=True,
            error=f"Invalid JSON payload: {exc.msg}",
            span=(start, len(content)),
        )
    return JsonParseResult(found=True, payload=decoded, span=(start, end))


def _decode_object(payload: str, span: tuple[int, int]) -> JsonParseResult:
    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError as exc:
        return JsonParseResult(found=True, error=f"Invalid JSON payload: {exc.msg}", span=span)
    if not isinstance(decoded, dict):
        return JsonParseResult(found=True, error="JSON payload is not an object", span=span)
    return JsonParseResult(found=True, payload=decoded, span=span)


def _brace_depth(content: str, position: int) -> int:
    depth = 0
    for char in content[:position]:
        if char == "{":
            depth += 1
        elif char == "}" and depth:
            depth -= 1
    return depth


def find_bracketed_names(content: str) -> BracketedList | None:
    """Return the first bracketed list of quoted names outside any ``{`` block."""

    for match in BRACKETED_NAMES_RE.finditer(content):
        if _brace_depth(content, match.start()):
            continue
        try:
            decoded = json.loads(match.group(0))
        except json.JSONDecodeError:
            continue
        values = tuple(str(value).strip() for value in decoded if str(value).strip())
        if values:
            return BracketedList(values=values, span=match.span())
    return None


def strip_span(content: str, span: tuple[int, int] | None) -> str:
    """Remove ``span`` from ``content`` and tidy the surrounding whitespace."""

    if span is None:
        return content.strip()
    start, end = span
    remainder = f"{content[:start].rstrip()} {content[end:].lstrip()}"
    return remainder.strip()


def coerce_datetime(value: object) -> datetime | None:
    """Convert the timestamp shapes found in stored documents into aware datetimes."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds > 100_000_000_000:
            seconds /= 1000
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
            nanos = value.get("nanoseconds", value.get("_nanoseconds")) or 0
            return datetime.fromtimestamp(seconds + float(nanos) / 1e9, tz=timezone.utc)
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        text = FRACTION_RE.sub(r"\1", text.replace("Z", "+00:00"))
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return coerce_datetime(parsed)
    return None
