"""Tests for the chat turn pipeline."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from app.config import Settings
from app.errors import ChatBusy, SnapshotUnavailable
from app.models import CatalogEntry
from app.services.catalog import CatalogSnapshotLoader
from app.services.chat import (
    APOLOGY_TEXT,
    SNAPSHOT_NOTICE,
    ChatService,
    TurnStatus,
)
from app.services.firestore import FirestoreClient
from app.services.gemini import GeminiClient
from app.services.governor import InteractionGovernor
from app.services.identity import AuthenticatedUser
from app.services.interpreter import ResponseInterpreter

NOVA = CatalogEntry(id="m1", name="Nova", slug="nova", rating=9)
USER = AuthenticatedUser(uid="u1", email="ann@example.com", display_name="Ann")


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def build_settings(**overrides: Any) -> Settings:
    base = {"GEMINI_API_KEY": "gemini-key"}
    base.update(overrides)
    return Settings(_env_file=None, **base)  # type: ignore[arg-type]


class StubLoader:
    def __init__(self, snapshot: list[CatalogEntry] | None = None, fail: bool = False):
        self.snapshot = snapshot if snapshot is not None else [NOVA]
        self.fail = fail
        self.calls = 0

    async def load_snapshot(self, max_entries: int | None = None) -> list[CatalogEntry]:
        self.calls += 1
        if self.fail:
            raise SnapshotUnavailable("The query requires an index")
        return list(self.snapshot)


class ScriptedModel:
    """Serves queued replies; ``None`` simulates a network failure."""

    def __init__(self, *replies: str | None):
        self.replies = list(replies)
        self.prompts: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.prompts.append(body["contents"][-1]["parts"][0]["text"])
        text = self.replies.pop(0) if self.replies else "Happy to help!"
        if text is None:
            raise httpx.ConnectError("network down", request=request)
        return httpx.Response(
            200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]}
        )


def build_service(
    http_client: httpx.AsyncClient,
    loader: StubLoader | None = None,
    clock: Any = None,
    **overrides: Any,
) -> ChatService:
    settings = build_settings(**overrides)
    kwargs: dict[str, Any] = {}
    if clock is not None:
        kwargs["clock"] = clock
    return ChatService(
        settings,
        loader or StubLoader(),  # type: ignore[arg-type]
        GeminiClient(settings, http_client),
        ResponseInterpreter(max_suggestions=settings.chat_max_suggestions),
        InteractionGovernor(settings.anonymous_query_limit),
        **kwargs,
    )


def mock_client(model: ScriptedModel) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.MockTransport(model), base_url="https://gemini.example.com/v1beta"
    )


@pytest.mark.anyio("asyncio")
async def test_start_session_seeds_welcome_message() -> None:
    loader = StubLoader()
    async with mock_client(ScriptedModel()) as http_client:
        service = build_service(http_client, loader)
        state = await service.start_session()

    assert loader.calls == 1
    assert state.snapshot == (NOVA,)
    assert state.notice is None
    assert [message.sender for message in state.messages] == ["assistant"]
    assert "Zee AI" in state.messages[0].text
    assert service.get_session(state.id) is state


@pytest.mark.anyio("asyncio")
async def test_snapshot_failure_sets_notice_and_empty_context() -> None:
    async with mock_client(ScriptedModel()) as http_client:
        service = build_service(http_client, StubLoader(fail=True))
        state = await service.start_session()

    assert state.snapshot == ()
    assert state.notice == SNAPSHOT_NOTICE


@pytest.mark.anyio("asyncio")
async def test_completed_turn_appends_messages_and_counts() -> None:
    model = ScriptedModel(json.dumps({"type": "movies", "text": "Try:", "movie_ids": ["m1"]}))
    async with mock_client(model) as http_client:
        service = build_service(http_client)
        state = await service.start_session()
        outcome = await service.handle_turn(state.id, "recommend a movie")

    assert outcome.status is TurnStatus.COMPLETED
    assert outcome.query_count == 1
    assert outcome.remaining_queries == 4
    user_message, assistant_message = outcome.messages
    assert user_message.sender == "user"
    assert assistant_message.intent == "search"
    assert assistant_message.matched_entries == [NOVA]
    assert len(state.messages) == 3
    assert "User question: recommend a movie" in model.prompts[0]
    assert "movie lover" in model.prompts[0]


@pytest.mark.anyio("asyncio")
async def test_signed_in_display_name_reaches_prompt() -> None:
    model = ScriptedModel("Hi Ann!")
    async with mock_client(model) as http_client:
        service = build_service(http_client)
        state = await service.start_session()
        outcome = await service.handle_turn(state.id, "hello", USER)

    assert outcome.remaining_queries is None
    assert "You are talking with Ann." in model.prompts[0]


@pytest.mark.anyio("asyncio")
async def test_sixth_anonymous_turn_is_denied_without_model_call() -> None:
    model = ScriptedModel()
    async with mock_client(model) as http_client:
        service = build_service(http_client)
        state = await service.start_session()
        for _ in range(5):
            outcome = await service.handle_turn(state.id, "another one")
            assert outcome.status is TurnStatus.COMPLETED
        message_count = len(state.messages)

        denied = await service.handle_turn(state.id, "one more")
        allowed = await service.handle_turn(state.id, "signed in now", USER)

    assert denied.status is TurnStatus.QUOTA_EXCEEDED
    assert denied.messages == []
    assert denied.query_count == 5
    assert denied.to_payload()["loginRequired"] is True
    assert len(model.prompts) == 6
    assert allowed.status is TurnStatus.COMPLETED
    assert len(state.messages) == message_count + 2


@pytest.mark.anyio("asyncio")
async def test_model_failure_apologises_without_consuming_quota() -> None:
    model = ScriptedModel(None, "Back online!")
    async with mock_client(model) as http_client:
        service = build_service(http_client)
        state = await service.start_session()
        failed = await service.handle_turn(state.id, "recommend a movie")
        recovered = await service.handle_turn(state.id, "recommend a movie")

    assert failed.status is TurnStatus.DEGRADED
    assert failed.query_count == 0
    assert [message.text for message in failed.messages][-1] == APOLOGY_TEXT
    assert sum(message.text == APOLOGY_TEXT for message in state.messages) == 1
    assert recovered.status is TurnStatus.COMPLETED
    assert recovered.query_count == 1
    assert state.conversation.exchange_count == 1


@pytest.mark.anyio("asyncio")
async def test_blank_messages_and_busy_sessions_are_rejected() -> None:
    async with mock_client(ScriptedModel()) as http_client:
        service = build_service(http_client)
        state = await service.start_session()

        with pytest.raises(ValueError):
            await service.handle_turn(state.id, "   ")

        await state.conversation._lock.acquire()
        try:
            with pytest.raises(ChatBusy):
                await service.handle_turn(state.id, "hello")
        finally:
            state.conversation._lock.release()

    assert state.query_count == 0


@pytest.mark.anyio("asyncio")
async def test_end_session_is_idempotent() -> None:
    async with mock_client(ScriptedModel()) as http_client:
        service = build_service(http_client)
        state = await service.start_session()

        assert service.end_session(state.id) is True
        assert service.end_session(state.id) is False
        assert state.conversation.closed
        with pytest.raises(KeyError):
            service.get_session(state.id)


@pytest.mark.anyio("asyncio")
async def test_idle_sessions_are_pruned_on_next_start() -> None:
    now = {"value": 0.0}
    async with mock_client(ScriptedModel()) as http_client:
        service = build_service(
            http_client, clock=lambda: now["value"], CHAT_SESSION_IDLE_SECONDS=60
        )
        stale = await service.start_session()
        now["value"] = 120.0
        fresh = await service.start_session()

    with pytest.raises(KeyError):
        service.get_session(stale.id)
    assert service.get_session(fresh.id) is fresh


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize(
    "body",
    [
        {"candidates": ["oops"]},
        {"candidates": [{"content": "oops"}]},
        {"candidates": [{"content": {"parts": [{"text": None}]}}]},
    ],
)
async def test_malformed_model_body_degrades_the_turn(body: dict[str, Any]) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=body))
    async with httpx.AsyncClient(
        transport=transport, base_url="https://gemini.example.com/v1beta"
    ) as http_client:
        service = build_service(http_client)
        state = await service.start_session()
        outcome = await service.handle_turn(state.id, "recommend a movie")

    assert outcome.status is TurnStatus.DEGRADED
    assert outcome.query_count == 0
    assert outcome.messages[-1].text == APOLOGY_TEXT


@pytest.mark.anyio("asyncio")
async def test_unconfigured_store_starts_chat_with_notice() -> None:
    settings = build_settings(FIREBASE_PROJECT_ID=None)
    async with mock_client(ScriptedModel()) as http_client:
        service = build_service(
            http_client,
            CatalogSnapshotLoader(settings, FirestoreClient(settings, http_client)),  # type: ignore[arg-type]
        )
        state = await service.start_session()

    assert state.notice == SNAPSHOT_NOTICE
    assert state.snapshot == ()
    assert len(state.messages) == 1
