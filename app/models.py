"""Pydantic models describing catalog entries and chat messages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Mapping

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .utils import EPOCH, coerce_datetime, slugify

ContentType = Literal["original", "translated"]
Sender = Literal["user", "assistant"]
ChatIntent = Literal["search", "general", "identity"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Comment(BaseModel):
    """A single viewer comment attached to a catalog entry."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    author_id: str = Field(
        validation_alias=AliasChoices("author_id", "authorId", "userId"),
        serialization_alias="authorId",
    )
    author_label: str = Field(
        default="",
        validation_alias=AliasChoices("author_label", "authorLabel", "userEmail"),
        serialization_alias="authorLabel",
    )
    text: str = Field(default="", validation_alias=AliasChoices("text", "content"))
    posted_at: datetime = Field(
        default=EPOCH,
        validation_alias=AliasChoices("posted_at", "postedAt", "timestamp"),
        serialization_alias="postedAt",
    )

    @field_validator("posted_at", mode="before")
    @classmethod
    def _coerce_posted_at(cls, value: object) -> datetime:
        return coerce_datetime(value) or EPOCH

    def to_document(self) -> dict[str, object]:
        """Return the stored representation used by the catalog documents."""

        return {
            "id": self.id,
            "userId": self.author_id,
            "userEmail": self.author_label,
            "content": self.text,
            "timestamp": self.posted_at,
        }


class CatalogEntry(BaseModel):
    """Fully populated, immutable view of a movie or series document."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    name: str
    slug: str
    category: str = ""
    content_type: ContentType = Field(default="original", alias="type")
    is_series: bool = Field(default=False, alias="isSeries")
    rating: float = 0.0
    upload_date: datetime = Field(default=EPOCH, alias="uploadDate")
    release_date: datetime | None = Field(default=None, alias="releaseDate")
    coming_soon: bool = Field(default=False, alias="comingSoon")
    description: str = ""
    watch_url: str = Field(default="", alias="watchUrl")
    download_url: str | None = Field(default=None, alias="downloadUrl")
    trailer_url: str | None = Field(default=None, alias="trailerUrl")
    thumbnail_url: str = Field(default="", alias="thumbnailUrl")
    translator: str | None = None
    relationship: str | None = None
    likes: tuple[str, ...] = ()
    comments: tuple[Comment, ...] = ()

    @field_validator("rating", mode="before")
    @classmethod
    def _clamp_rating(cls, value: object) -> float:
        if isinstance(value, bool):
            return 0.0
        try:
            rating = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return 0.0
        if rating != rating:
            return 0.0
        return max(0.0, min(10.0, rating))

    @field_validator("upload_date", mode="before")
    @classmethod
    def _coerce_upload_date(cls, value: object) -> datetime:
        return coerce_datetime(value) or EPOCH

    @field_validator("release_date", mode="before")
    @classmethod
    def _coerce_release_date(cls, value: object) -> datetime | None:
        return coerce_datetime(value)

    @field_validator("content_type", mode="before")
    @classmethod
    def _normalise_content_type(cls, value: object) -> str:
        text = str(value or "").strip().lower()
        return text if text in {"original", "translated"} else "original"

    @field_validator("likes", mode="before")
    @classmethod
    def _dedupe_likes(cls, value: object) -> tuple[str, ...]:
        if not isinstance(value, (list, tuple, set, frozenset)):
            return ()
        seen: dict[str, None] = {}
        for user_id in value:
            if isinstance(user_id, str) and user_id:
                seen.setdefault(user_id, None)
        return tuple(seen)

    @property
    def like_count(self) -> int:
        return len(self.likes)

    def liked_by(self, user_id: str) -> bool:
        return user_id in self.likes

    @classmethod
    def from_document(
        cls,
        document_id: str,
        data: Mapping[str, Any],
        *,
        placeholder_thumbnail: str,
        create_time: datetime | None = None,
    ) -> "CatalogEntry":
        """Normalise a raw stored document into a catalog entry.

        Optional fields resolve to explicit defaults so downstream code never
        has to branch on missing values.
        """

        name = str(data.get("name") or "").strip() or "Untitled"
        raw_comments = data.get("comments")
        comments: list[Comment] = []
        if isinstance(raw_comments, list):
            for index, raw in enumerate(raw_comments):
                if not isinstance(raw, Mapping):
                    continue
                comment_data = dict(raw)
                comment_data.setdefault("id", f"{document_id}-comment-{index}")
                comment_data.setdefault("userId", "")
                comments.append(Comment.model_validate(comment_data))

        upload_date = coerce_datetime(data.get("uploadDate")) or create_time or EPOCH
        payload: dict[str, Any] = {
            "id": document_id,
            "name": name,
            "slug": str(data.get("slug") or "").strip() or slugify(name),
            "category": str(data.get("category") or "").strip(),
            "type": data.get("type"),
            "isSeries": bool(data.get("isSeries", False)),
            "rating": data.get("rating"),
            "uploadDate": upload_date,
            "releaseDate": data.get("releaseDate"),
            "comingSoon": bool(data.get("comingSoon", False)),
            "description": str(data.get("description") or ""),
            "watchUrl": str(data.get("watchUrl") or ""),
            "downloadUrl": data.get("downloadUrl") or None,
            "trailerUrl": data.get("trailerUrl") or None,
            "thumbnailUrl": str(data.get("thumbnailUrl") or "").strip() or placeholder_thumbnail,
            "translator": data.get("translator") or None,
            "relationship": data.get("relationship") or None,
            "likes": data.get("likes") or (),
            "comments": tuple(comments),
        }
        return cls.model_validate(payload)

    def to_payload(self) -> dict[str, object]:
        """Return the JSON payload served to the UI."""

        payload = self.model_dump(mode="json", by_alias=True)
        payload["likeCount"] = self.like_count
        return payload


class MoviePage(BaseModel):
    """A page of browse results plus the cursor for the next page."""

    entries: list[CatalogEntry] = Field(default_factory=list)
    next_cursor: str | None = None

    def to_payload(self) -> dict[str, object]:
        return {
            "movies": [entry.to_payload() for entry in self.entries],
            "nextCursor": self.next_cursor,
            "hasMore": self.next_cursor is not None,
        }


@dataclass(frozen=True, slots=True)
class ChatReply:
    """Interpreted model output: reply text, matched entries and intent."""

    text: str
    matched_entries: tuple[CatalogEntry, ...] = field(default=())
    intent: ChatIntent = "general"


class ChatMessage(BaseModel):
    """A message in the in-memory chat transcript."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    text: str
    sender: Sender
    sent_at: datetime = Field(default_factory=_utcnow, alias="sentAt")
    matched_entries: list[CatalogEntry] = Field(
        default_factory=list, alias="matchedEntries"
    )
    intent: ChatIntent | None = None

    @classmethod
    def from_reply(
        cls,
        reply: ChatReply,
        *,
        message_id: str,
        sent_at: datetime | None = None,
    ) -> "ChatMessage":
        return cls(
            id=message_id,
            text=reply.text,
            sender="assistant",
            sent_at=sent_at or _utcnow(),
            matched_entries=list(reply.matched_entries),
            intent=reply.intent,
        )

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "text": self.text,
            "sender": self.sender,
            "sentAt": self.sent_at.isoformat(),
            "matchedEntries": [entry.to_payload() for entry in self.matched_entries],
            "intent": self.intent,
        }
