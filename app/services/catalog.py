"""Catalog reads and writes on top of the document store."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Sequence

from pydantic import ValidationError

from ..config import Settings
from ..errors import CatalogStoreError, SnapshotUnavailable
from ..models import CatalogEntry, Comment, MoviePage
from .firestore import FieldFilter, FirestoreClient, OrderBy, QueryCursor, StoredDocument
from .identity import AuthenticatedUser

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 1_000
SEARCH_RESULT_LIMIT = 5
HERO_LIMIT = 10
ROW_LIMIT = 12


def _entries_from_documents(
    documents: Sequence[StoredDocument], *, placeholder_thumbnail: str
) -> list[CatalogEntry]:
    entries: list[CatalogEntry] = []
    for document in documents:
        try:
            entries.append(
                CatalogEntry.from_document(
                    document.id,
                    document.data,
                    placeholder_thumbnail=placeholder_thumbnail,
                    create_time=document.create_time,
                )
            )
        except ValidationError as exc:
            logger.warning("Skipping unreadable catalog document %s: %s", document.id, exc)
    return entries


class CatalogSnapshotLoader:
    """Loads the bounded catalog snapshot handed to the chat assistant."""

    def __init__(self, settings: Settings, store: FirestoreClient):
        self._settings = settings
        self._store = store

    async def load_snapshot(self, max_entries: int | None = None) -> list[CatalogEntry]:
        limit = max_entries if max_entries is not None else self._settings.chat_context_size
        try:
            documents = await self._store.run_query(
                self._settings.movies_collection,
                order_by=OrderBy("likes"),
                limit=limit,
            )
        except CatalogStoreError as exc:
            raise SnapshotUnavailable(str(exc)) from exc
        entries = _entries_from_documents(
            documents, placeholder_thumbnail=self._settings.placeholder_thumbnail_url
        )
        logger.info("Loaded catalog snapshot with %s entries", len(entries))
        return entries


class CatalogService:
    """Browse, search, like and comment operations over the movie catalog."""

    def __init__(self, settings: Settings, store: FirestoreClient):
        self._settings = settings
        self._store = store
        self._collection = settings.movies_collection

    def _to_entries(self, documents: Sequence[StoredDocument]) -> list[CatalogEntry]:
        return _entries_from_documents(
            documents, placeholder_thumbnail=self._settings.placeholder_thumbnail_url
        )

    async def list_movies(
        self,
        *,
        category: str | None = None,
        content_type: str | None = None,
        is_series: bool | None = None,
        coming_soon: bool | None = None,
        cursor: str | None = None,
        page_size: int | None = None,
    ) -> MoviePage:
        """Return one page of the catalog grid, newest uploads first."""

        size = page_size or self._settings.movies_per_page
        filters: list[FieldFilter] = []
        if category:
            filters.append(FieldFilter("category", category))
        if content_type:
            filters.append(FieldFilter("type", content_type))
        if is_series is not None:
            filters.append(FieldFilter("isSeries", is_series))
        if coming_soon is not None:
            filters.append(FieldFilter("comingSoon", coming_soon))

        order_by = OrderBy("uploadDate")
        start_after = QueryCursor.decode(cursor) if cursor else None
        documents = await self._store.run_query(
            self._collection,
            filters=filters,
            order_by=order_by,
            limit=size,
            start_after=start_after,
        )
        next_cursor = None
        if documents and len(documents) == size:
            next_cursor = QueryCursor.after(documents[-1], order_by).encode()
        return MoviePage(entries=self._to_entries(documents), next_cursor=next_cursor)

    async def home_sections(self) -> dict[str, object]:
        """Return the rows shown on the landing page."""

        queries: dict[str, tuple[list[FieldFilter], OrderBy, int]] = {
            "hero": ([], OrderBy("uploadDate"), HERO_LIMIT),
            "popular": ([], OrderBy("likes"), ROW_LIMIT),
            "comingSoon": (
                [FieldFilter("comingSoon", True)],
                OrderBy("releaseDate", descending=False),
                ROW_LIMIT,
            ),
        }
        for category in self._settings.home_categories:
            queries[f"category:{category}"] = (
                [FieldFilter("category", category)],
                OrderBy("uploadDate"),
                ROW_LIMIT,
            )

        keys = list(queries)
        results = await asyncio.gather(
            *(
                self._store.run_query(
                    self._collection, filters=filters, order_by=order_by, limit=limit
                )
                for filters, order_by, limit in queries.values()
            ),
            return_exceptions=True,
        )

        sections: dict[str, list[CatalogEntry]] = {}
        for key, result in zip(keys, results):
            if isinstance(result, BaseException):
                logger.warning("Home section %s failed to load: %s", key, result)
                continue
            entries = self._to_entries(result)
            if entries:
                sections[key] = entries

        return {
            "hero": sections.get("hero", []),
            "popular": sections.get("popular", []),
            "comingSoon": sections.get("comingSoon", []),
            "categories": {
                category: sections[f"category:{category}"]
                for category in self._settings.home_categories
                if f"category:{category}" in sections
            },
        }

    async def get_by_slug(self, slug: str) -> CatalogEntry | None:
        documents = await self._store.run_query(
            self._collection, filters=[FieldFilter("slug", slug)], limit=1
        )
        entries = self._to_entries(documents)
        return entries[0] if entries else None

    async def get_entry(self, entry_id: str) -> CatalogEntry | None:
        document = await self._store.get_document(self._collection, entry_id)
        if document is None:
            return None
        entries = self._to_entries([document])
        return entries[0] if entries else None

    async def suggestions_for(self, entry: CatalogEntry) -> list[CatalogEntry]:
        """Return popular titles from the same category, excluding ``entry``."""

        if not entry.category:
            return []
        documents = await self._store.run_query(
            self._collection,
            filters=[FieldFilter("category", entry.category)],
            order_by=OrderBy("likes"),
            limit=ROW_LIMIT + 1,
        )
        suggestions = [item for item in self._to_entries(documents) if item.id != entry.id]
        return suggestions[:ROW_LIMIT]

    async def search(self, term: str) -> list[CatalogEntry]:
        """Prefix search on the display name (case-sensitive, like the store)."""

        cleaned = term.strip()
        if not cleaned:
            return []
        documents = await self._store.run_query(
            self._collection,
            filters=[
                FieldFilter("name", cleaned, op="GREATER_THAN_OR_EQUAL"),
                FieldFilter("name", cleaned + "\uf8ff", op="LESS_THAN_OR_EQUAL"),
            ],
            limit=SEARCH_RESULT_LIMIT,
        )
        return self._to_entries(documents)

    async def toggle_like(
        self, entry_id: str, user: AuthenticatedUser, *, id_token: str | None = None
    ) -> CatalogEntry:
        """Add or remove the user's like with a read-modify-write of ``likes``."""

        entry = await self.get_entry(entry_id)
        if entry is None:
            raise KeyError(f"Movie {entry_id} not found")
        if entry.liked_by(user.uid):
            likes = [user_id for user_id in entry.likes if user_id != user.uid]
        else:
            likes = [*entry.likes, user.uid]
        await self._store.update_fields(
            self._collection, entry_id, {"likes": likes}, id_token=id_token
        )
        logger.info("Toggled like by %s on %s (%s likes)", user.uid, entry_id, len(likes))
        return entry.model_copy(update={"likes": tuple(likes)})

    async def add_comment(
        self,
        entry_id: str,
        user: AuthenticatedUser,
        text: str,
        *,
        id_token: str | None = None,
    ) -> Comment:
        """Prepend a comment and rewrite the whole ``comments`` array."""

        cleaned = text.strip()
        if not cleaned:
            raise ValueError("Comment text must not be empty")
        if len(cleaned) > MAX_COMMENT_LENGTH:
            raise ValueError(f"Comment text must be at most {MAX_COMMENT_LENGTH} characters")

        entry = await self.get_entry(entry_id)
        if entry is None:
            raise KeyError(f"Movie {entry_id} not found")

        comment = Comment(
            id=uuid.uuid4().hex,
            author_id=user.uid,
            author_label=user.label,
            text=cleaned,
            posted_at=datetime.now(timezone.utc),
        )
        comments = [comment, *entry.comments]
        await self._store.update_fields(
            self._collection,
            entry_id,
            {"comments": [item.to_document() for item in comments]},
            id_token=id_token,
        )
        return comment
