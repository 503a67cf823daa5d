"""Coordinates the movie assistant's chat turns."""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator

from ..config import Settings
from ..errors import ChatBusy, ModelUnavailable, SnapshotUnavailable
from ..models import CatalogEntry, ChatMessage
from .catalog import CatalogSnapshotLoader
from .gemini import ConversationSession, GeminiClient
from .governor import Admission, InteractionGovernor
from .identity import AuthenticatedUser
from .interpreter import ResponseInterpreter
from .prompts import SYSTEM_INSTRUCTION, compile_prompt

logger = logging.getLogger(__name__)

WELCOME_TEXT = (
    "Hi! I'm {assistant_name}, your movie assistant. I can help you find movies, "
    "answer questions about our collection, or recommend something to watch. "
    "What would you like to know?"
)
DEGRADED_WELCOME_TEXT = (
    "Hi! I'm {assistant_name}. I can't reach our catalog right now, "
    "but I'm happy to chat about movies."
)
SNAPSHOT_NOTICE = "We couldn't load the catalog, so recommendations may be limited."
APOLOGY_TEXT = "I'm sorry, I'm having trouble with the AI right now. Please try again later."


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    DEGRADED = "degraded"
    QUOTA_EXCEEDED = "quota_exceeded"


@dataclass
class ChatSessionState:
    """Everything one chat page visit keeps in memory."""

    id: str
    conversation: ConversationSession
    snapshot: tuple[CatalogEntry, ...]
    messages: list[ChatMessage] = field(default_factory=list)
    query_count: int = 0
    notice: str | None = None
    last_active_at: float = 0.0
    _message_ids: Iterator[int] = field(
        default_factory=lambda: itertools.count(1), repr=False
    )

    def next_message_id(self) -> str:
        return str(next(self._message_ids))

    def to_payload(self, *, query_limit: int, remaining_queries: int | None) -> dict[str, object]:
        return {
            "sessionId": self.id,
            "messages": [message.to_payload() for message in self.messages],
            "queryCount": self.query_count,
            "queryLimit": query_limit,
            "remainingQueries": remaining_queries,
            "notice": self.notice,
            "busy": self.conversation.busy,
        }


@dataclass
class TurnOutcome:
    status: TurnStatus
    messages: list[ChatMessage]
    query_count: int
    remaining_queries: int | None

    def to_payload(self) -> dict[str, object]:
        return {
            "status": self.status.value,
            "messages": [message.to_payload() for message in self.messages],
            "queryCount": self.query_count,
            "remainingQueries": self.remaining_queries,
            "loginRequired": self.status is TurnStatus.QUOTA_EXCEEDED,
        }


class ChatService:
    """Runs the governor → prompt → model → interpreter pipeline per turn."""

    def __init__(
        self,
        settings: Settings,
        loader: CatalogSnapshotLoader,
        gemini: GeminiClient,
        interpreter: ResponseInterpreter,
        governor: InteractionGovernor,
        *,
        template: str = SYSTEM_INSTRUCTION,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings
        self._loader = loader
        self._gemini = gemini
        self._interpreter = interpreter
        self._governor = governor
        self._template = template
        self._clock = clock
        self._sessions: dict[str, ChatSessionState] = {}

    @property
    def governor(self) -> InteractionGovernor:
        return self._governor

    async def start_session(self) -> ChatSessionState:
        """Load the catalog context and open a fresh conversation."""

        self._prune_idle_sessions()
        notice: str | None = None
        try:
            snapshot = await self._loader.load_snapshot()
        except SnapshotUnavailable as exc:
            logger.warning("Chat starting without catalog context: %s", exc)
            snapshot = []
            notice = SNAPSHOT_NOTICE

        conversation = self._gemini.start_session()
        state = ChatSessionState(
            id=conversation.id,
            conversation=conversation,
            snapshot=tuple(snapshot),
            notice=notice,
            last_active_at=self._clock(),
        )
        greeting = DEGRADED_WELCOME_TEXT if notice else WELCOME_TEXT
        state.messages.append(
            ChatMessage(
                id=state.next_message_id(),
                text=greeting.format(assistant_name=self._settings.assistant_name),
                sender="assistant",
                intent="general",
            )
        )
        self._sessions[state.id] = state
        return state

    def get_session(self, session_id: str) -> ChatSessionState:
        state = self._sessions.get(session_id)
        if state is None:
            raise KeyError(f"Chat session {session_id} not found")
        return state

    def end_session(self, session_id: str) -> bool:
        state = self._sessions.pop(session_id, None)
        if state is None:
            return False
        state.conversation.close()
        logger.info("Closed chat session %s after %s queries", session_id, state.query_count)
        return True

    def stop(self) -> None:
        for session_id in list(self._sessions):
            self.end_session(session_id)

    def remaining_queries(self, state: ChatSessionState, user: AuthenticatedUser | None) -> int | None:
        return self._governor.remaining(user is not None, state.query_count)

    async def handle_turn(
        self,
        session_id: str,
        text: str,
        user: AuthenticatedUser | None = None,
    ) -> TurnOutcome:
        """Run one chat turn; external failures become a degraded reply."""

        state = self.get_session(session_id)
        message_text = text.strip()
        if not message_text:
            raise ValueError("Message text must not be empty")
        if state.conversation.busy:
            raise ChatBusy(f"Chat session {session_id} already has a turn in flight")

        state.last_active_at = self._clock()
        authenticated = user is not None
        if self._governor.admit(authenticated, state.query_count) is Admission.DENY:
            logger.info("Quota reached for anonymous chat session %s", session_id)
            return TurnOutcome(
                status=TurnStatus.QUOTA_EXCEEDED,
                messages=[],
                query_count=state.query_count,
                remaining_queries=0,
            )

        user_message = ChatMessage(id=state.next_message_id(), text=message_text, sender="user")
        state.messages.append(user_message)

        display_name = user.display_name if user else None
        prompt = compile_prompt(
            self._template,
            state.snapshot,
            message_text,
            display_name,
            max_suggestions=self._interpreter.max_suggestions,
            assistant_name=self._settings.assistant_name,
            platform_name=self._settings.app_name,
        )
        logger.debug("Prompt for session %s:\n%s", session_id, prompt)

        try:
            raw_text = await self._gemini.send(state.conversation, prompt)
        except ModelUnavailable as exc:
            logger.warning("Model unavailable for chat session %s: %s", session_id, exc)
            apology = ChatMessage(
                id=state.next_message_id(),
                text=APOLOGY_TEXT,
                sender="assistant",
                intent="general",
            )
            state.messages.append(apology)
            return TurnOutcome(
                status=TurnStatus.DEGRADED,
                messages=[user_message, apology],
                query_count=state.query_count,
                remaining_queries=self.remaining_queries(state, user),
            )

        state.query_count += 1
        reply = self._interpreter.interpret(raw_text, state.snapshot, display_name)
        assistant_message = ChatMessage.from_reply(reply, message_id=state.next_message_id())
        state.messages.append(assistant_message)
        logger.info(
            "Chat session %s turn %s answered (%s, %s titles)",
            session_id,
            state.query_count,
            reply.intent,
            len(reply.matched_entries),
        )
        return TurnOutcome(
            status=TurnStatus.COMPLETED,
            messages=[user_message, assistant_message],
            query_count=state.query_count,
            remaining_queries=self.remaining_queries(state, user),
        )

    def _prune_idle_sessions(self) -> None:
        cutoff = self._clock() - self._settings.chat_session_idle_seconds
        for session_id, state in list(self._sessions.items()):
            if state.last_active_at < cutoff and not state.conversation.busy:
                self.end_session(session_id)
