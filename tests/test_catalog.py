"""Tests for catalog browsing, likes, comments and the chat snapshot loader."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Sequence

import httpx
import pytest

from app.config import Settings
from app.errors import CatalogStoreError, SnapshotUnavailable
from app.services.catalog import CatalogService, CatalogSnapshotLoader
from app.services.firestore import (
    FieldFilter,
    FirestoreClient,
    OrderBy,
    QueryCursor,
    StoredDocument,
    encode_value,
)
from app.services.identity import AuthenticatedUser


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def build_settings(**overrides: Any) -> Settings:
    base = {"FIREBASE_PROJECT_ID": "demo", "HOME_CATEGORIES": "action,drama"}
    base.update(overrides)
    return Settings(_env_file=None, **base)  # type: ignore[arg-type]


def stored(doc_id: str, **fields: Any) -> StoredDocument:
    raw = {key: encode_value(value) for key, value in fields.items()}
    return StoredDocument.from_payload(
        {"name": f"projects/demo/databases/(default)/documents/movies/{doc_id}", "fields": raw}
    )


class FakeStore:
    """In-memory stand-in for :class:`FirestoreClient`."""

    def __init__(self, documents: Sequence[StoredDocument] = ()) -> None:
        self.documents = {document.id: document for document in documents}
        self.queries: list[dict[str, Any]] = []
        self.updates: list[tuple[str, str, dict[str, Any], str | None]] = []
        self.fail_with: Exception | None = None
        self.failing_categories: set[str] = set()

    async def run_query(
        self,
        collection: str,
        *,
        filters: Sequence[FieldFilter] = (),
        order_by: OrderBy | None = None,
        limit: int,
        start_after: QueryCursor | None = None,
        id_token: str | None = None,
    ) -> list[StoredDocument]:
        self.queries.append(
            {
                "collection": collection,
                "filters": list(filters),
                "order_by": order_by,
                "limit": limit,
                "start_after": start_after,
            }
        )
        if self.fail_with is not None:
            raise self.fail_with
        for item in filters:
            if item.field == "category" and item.value in self.failing_categories:
                raise CatalogStoreError("row failed", 500)
        matches = [
            document
            for document in self.documents.values()
            if all(self._matches(document, item) for item in filters)
        ]
        return matches[:limit]

    @staticmethod
    def _matches(document: StoredDocument, item: FieldFilter) -> bool:
        value = document.data.get(item.field)
        if item.op == "EQUAL":
            return value == item.value
        if item.op == "GREATER_THAN_OR_EQUAL":
            return isinstance(value, str) and value >= item.value
        if item.op == "LESS_THAN_OR_EQUAL":
            return isinstance(value, str) and value <= item.value
        raise AssertionError(f"unexpected operator {item.op}")

    async def get_document(
        self, collection: str, document_id: str, *, id_token: str | None = None
    ) -> StoredDocument | None:
        return self.documents.get(document_id)

    async def update_fields(
        self,
        collection: str,
        document_id: str,
        fields: dict[str, Any],
        *,
        id_token: str | None = None,
    ) -> StoredDocument:
        self.updates.append((collection, document_id, fields, id_token))
        current = self.documents[document_id]
        data = {**current.data, **fields}
        self.documents[document_id] = stored(document_id, **data)
        return self.documents[document_id]


USER = AuthenticatedUser(uid="u1", email="ann@example.com", display_name="Ann")


@pytest.mark.anyio("asyncio")
async def test_snapshot_loader_is_bounded_and_ordered_by_likes() -> None:
    store = FakeStore([stored(f"m{i}", name=f"Movie {i}") for i in range(30)])
    loader = CatalogSnapshotLoader(build_settings(CHAT_CONTEXT_SIZE=20), store)  # type: ignore[arg-type]

    snapshot = await loader.load_snapshot()

    assert len(snapshot) == 20
    assert store.queries[0]["limit"] == 20
    assert store.queries[0]["order_by"] == OrderBy("likes")


@pytest.mark.anyio("asyncio")
async def test_snapshot_loader_reports_store_failure() -> None:
    store = FakeStore()
    store.fail_with = CatalogStoreError("offline")
    loader = CatalogSnapshotLoader(build_settings(), store)  # type: ignore[arg-type]

    with pytest.raises(SnapshotUnavailable):
        await loader.load_snapshot()


@pytest.mark.anyio("asyncio")
async def test_list_movies_returns_cursor_only_for_full_pages() -> None:
    store = FakeStore(
        [stored(f"m{i}", name=f"Movie {i}", category="action") for i in range(3)]
    )
    service = CatalogService(build_settings(), store)  # type: ignore[arg-type]

    full = await service.list_movies(category="action", page_size=3)
    partial = await service.list_movies(category="action", page_size=5)

    assert [entry.id for entry in full.entries] == ["m0", "m1", "m2"]
    assert full.next_cursor is not None
    assert QueryCursor.decode(full.next_cursor).values[-1]["referenceValue"].endswith("/m2")
    assert partial.next_cursor is None
    assert store.queries[0]["filters"] == [FieldFilter("category", "action")]
    assert store.queries[0]["order_by"] == OrderBy("uploadDate")


@pytest.mark.anyio("asyncio")
async def test_list_movies_rejects_bad_cursor() -> None:
    service = CatalogService(build_settings(), FakeStore())  # type: ignore[arg-type]

    with pytest.raises(ValueError):
        await service.list_movies(cursor="!!!")


@pytest.mark.anyio("asyncio")
async def test_home_sections_omit_failing_and_empty_rows() -> None:
    store = FakeStore(
        [
            stored("m1", name="Heat", category="action"),
            stored("m2", name="Soon", category="drama", comingSoon=True),
        ]
    )
    store.failing_categories.add("drama")
    service = CatalogService(build_settings(), store)  # type: ignore[arg-type]

    sections = await service.home_sections()

    assert [entry.id for entry in sections["hero"]] == ["m1", "m2"]
    assert [entry.id for entry in sections["comingSoon"]] == ["m2"]
    assert list(sections["categories"]) == ["action"]


@pytest.mark.anyio("asyncio")
async def test_suggestions_exclude_the_entry_itself() -> None:
    store = FakeStore(
        [
            stored("m1", name="Heat", slug="heat", category="action"),
            stored("m2", name="Ronin", slug="ronin", category="action"),
            stored("m3", name="Amelie", category="romance"),
        ]
    )
    service = CatalogService(build_settings(), store)  # type: ignore[arg-type]

    entry = await service.get_by_slug("heat")
    assert entry is not None
    suggestions = await service.suggestions_for(entry)

    assert [item.id for item in suggestions] == ["m2"]


@pytest.mark.anyio("asyncio")
async def test_search_is_a_name_prefix_query() -> None:
    store = FakeStore(
        [stored("m1", name="Heat"), stored("m2", name="Heathers"), stored("m3", name="heat")]
    )
    service = CatalogService(build_settings(), store)  # type: ignore[arg-type]

    results = await service.search(" Heat ")

    assert [entry.id for entry in results] == ["m1", "m2"]
    assert await service.search("   ") == []


@pytest.mark.anyio("asyncio")
async def test_toggle_like_adds_then_removes() -> None:
    store = FakeStore([stored("m1", name="Heat", likes=["u2"])])
    service = CatalogService(build_settings(), store)  # type: ignore[arg-type]

    liked = await service.toggle_like("m1", USER, id_token="tok")
    unliked = await service.toggle_like("m1", USER, id_token="tok")

    assert liked.likes == ("u2", "u1")
    assert unliked.likes == ("u2",)
    assert store.updates[0] == ("movies", "m1", {"likes": ["u2", "u1"]}, "tok")


@pytest.mark.anyio("asyncio")
async def test_toggle_like_missing_entry() -> None:
    service = CatalogService(build_settings(), FakeStore())  # type: ignore[arg-type]

    with pytest.raises(KeyError):
        await service.toggle_like("nope", USER)


@pytest.mark.anyio("asyncio")
async def test_add_comment_prepends_and_rewrites_array() -> None:
    earlier = {
        "id": "c0",
        "userId": "u2",
        "userEmail": "bob@example.com",
        "content": "First!",
        "timestamp": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    store = FakeStore([stored("m1", name="Heat", comments=[earlier])])
    service = CatalogService(build_settings(), store)  # type: ignore[arg-type]

    comment = await service.add_comment("m1", USER, "  Loved it  ")

    assert comment.text == "Loved it"
    assert comment.author_label == "Ann"
    written = store.updates[0][2]["comments"]
    assert [item["id"] for item in written] == [comment.id, "c0"]
    assert written[0]["userId"] == "u1"


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize("text", ["", "   ", "x" * 1001])
async def test_add_comment_validates_text(text: str) -> None:
    store = FakeStore([stored("m1", name="Heat")])
    service = CatalogService(build_settings(), store)  # type: ignore[arg-type]

    with pytest.raises(ValueError):
        await service.add_comment("m1", USER, text)
    assert store.updates == []


@pytest.mark.anyio("asyncio")
async def test_snapshot_loader_without_project_id_is_unavailable() -> None:
    settings = build_settings(FIREBASE_PROJECT_ID=None)
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        base_url="https://firestore.example.com/v1",
    ) as http_client:
        loader = CatalogSnapshotLoader(settings, FirestoreClient(settings, http_client))
        with pytest.raises(SnapshotUnavailable):
            await loader.load_snapshot()
