"""Integration helpers for the Gemini generative-language API."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

import httpx

from ..config import Settings
from ..errors import ModelUnavailable, SessionNotStarted

logger = logging.getLogger(__name__)


class ConversationSession:
    """Append-only exchange history kept across the turns of one chat visit.

    Callers only ever send prompts into it; the history itself is owned by
    :class:`GeminiClient`.
    """

    def __init__(self) -> None:
        self.id = uuid.uuid4().hex
        self._history: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def exchange_count(self) -> int:
        return len(self._history) // 2

    def close(self) -> None:
        self._closed = True


class GeminiClient:
    """Client responsible for talking to the ``generateContent`` endpoint."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    def start_session(self) -> ConversationSession:
        session = ConversationSession()
        logger.info("Started conversation session %s", session.id)
        return session

    async def send(self, session: ConversationSession | None, prompt: str) -> str:
        """Send ``prompt`` within ``session`` and return the model's full reply."""

        if session is None or session.closed:
            raise SessionNotStarted("Conversation session used before start or after close")

        async with session._lock:
            user_turn = {"role": "user", "parts": [{"text": prompt}]}
            text = await self._generate([*session._history, user_turn])
            session._history.append(user_turn)
            session._history.append({"role": "model", "parts": [{"text": text}]})
            return text

    async def _generate(self, contents: list[dict[str, Any]]) -> str:
        api_key = self._settings.gemini_api_key
        if not api_key:
            raise ModelUnavailable("Gemini API key is not configured")

        payload = {
            "contents": contents,
            "generationConfig": {"temperature": 0.7, "topP": 0.95},
        }
        path = f"/models/{self._settings.gemini_model}:generateContent"
        try:
            response = await self._client.post(path, params={"key": api_key}, json=payload)
        except httpx.HTTPError as exc:
            raise ModelUnavailable(f"Gemini request failed: {exc.__class__.__name__}") from exc

        if response.status_code >= 400:
            raise ModelUnavailable(
                f"Gemini returned HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ModelUnavailable("Gemini returned an unreadable response") from exc

        candidates = data.get("candidates") if isinstance(data, dict) else None
        if not candidates:
            feedback = data.get("promptFeedback") if isinstance(data, dict) else None
            raise ModelUnavailable(f"Gemini returned no candidates ({feedback or 'no feedback'})")
        if not isinstance(candidates, list) or not isinstance(candidates[0], dict):
            raise ModelUnavailable("Gemini returned an unexpected candidate shape")
        content = candidates[0].get("content")
        if not isinstance(content, dict):
            raise ModelUnavailable("Gemini candidate has no content")
        parts = content.get("parts")
        if not isinstance(parts, list):
            raise ModelUnavailable("Gemini content has no parts")
        texts: list[str] = []
        for part in parts:
            if not isinstance(part, dict) or not isinstance(part.get("text"), str):
                raise ModelUnavailable("Gemini returned a non-text part")
            texts.append(part["text"])
        text = "".join(texts)
        logger.debug("Raw Gemini reply: %s", text)
        return text
