"""Thin client for the Firestore REST API backing the catalog."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

import httpx

from ..config import Settings
from ..errors import CatalogStoreError
from ..utils import coerce_datetime

logger = logging.getLogger(__name__)


def decode_value(value: Mapping[str, Any]) -> Any:
    """Convert a typed Firestore value into a plain Python value."""

    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "timestampValue" in value:
        return coerce_datetime(value["timestampValue"])
    if "stringValue" in value:
        return str(value["stringValue"])
    if "referenceValue" in value:
        return str(value["referenceValue"])
    if "bytesValue" in value:
        return str(value["bytesValue"])
    if "geoPointValue" in value:
        return dict(value["geoPointValue"])
    if "arrayValue" in value:
        return [decode_value(item) for item in value["arrayValue"].get("values", [])]
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    return None


def decode_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {key: decode_value(raw) for key, raw in fields.items()}


def encode_value(value: Any) -> dict[str, Any]:
    """Convert a Python value into its typed Firestore representation."""

    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        stamp = value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        return {"timestampValue": stamp}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, Mapping):
        return {"mapValue": {"fields": encode_fields(value)}}
    if isinstance(value, (list, tuple, set, frozenset)):
        return {"arrayValue": {"values": [encode_value(item) for item in value]}}
    raise TypeError(f"Unsupported Firestore value type: {type(value).__name__}")


def encode_fields(data: Mapping[str, Any]) -> dict[str, Any]:
    return {str(key): encode_value(item) for key, item in data.items()}


@dataclass(frozen=True, slots=True)
class FieldFilter:
    """A single ``where`` predicate."""

    field: str
    value: Any
    op: str = "EQUAL"

    def to_payload(self) -> dict[str, Any]:
        return {
            "fieldFilter": {
                "field": {"fieldPath": self.field},
                "op": self.op,
                "value": encode_value(self.value),
            }
        }


@dataclass(frozen=True, slots=True)
class OrderBy:
    field: str
    descending: bool = True

    @property
    def direction(self) -> str:
        return "DESCENDING" if self.descending else "ASCENDING"


@dataclass(slots=True)
class StoredDocument:
    """A document returned by the store with decoded fields."""

    name: str
    data: dict[str, Any]
    raw_fields: dict[str, Any]
    create_time: datetime | None = None
    update_time: datetime | None = None

    @property
    def id(self) -> str:
        return self.name.rsplit("/", 1)[-1]

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "StoredDocument":
        raw_fields = dict(payload.get("fields") or {})
        return cls(
            name=str(payload.get("name") or ""),
            data=decode_fields(raw_fields),
            raw_fields=raw_fields,
            create_time=coerce_datetime(payload.get("createTime")),
            update_time=coerce_datetime(payload.get("updateTime")),
        )


@dataclass(frozen=True, slots=True)
class QueryCursor:
    """Opaque "last seen" position used to continue an ordered query."""

    values: tuple[dict[str, Any], ...]

    @classmethod
    def after(cls, document: StoredDocument, order_by: OrderBy | None) -> "QueryCursor":
        values: list[dict[str, Any]] = []
        if order_by is not None:
            values.append(document.raw_fields.get(order_by.field, {"nullValue": None}))
        values.append({"referenceValue": document.name})
        return cls(values=tuple(values))

    def encode(self) -> str:
        raw = json.dumps({"v": list(self.values)}, separators=(",", ":"), sort_keys=True)
        return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")

    @classmethod
    def decode(cls, token: str) -> "QueryCursor":
        padded = token + "=" * (-len(token) % 4)
        try:
            raw = base64.urlsafe_b64decode(padded.encode("ascii"))
            data = json.loads(raw.decode("utf-8"))
        except (ValueError, UnicodeError, binascii.Error) as exc:
            raise ValueError("Invalid pagination cursor") from exc
        values = data.get("v") if isinstance(data, dict) else None
        if not isinstance(values, list) or not all(isinstance(v, dict) for v in values):
            raise ValueError("Invalid pagination cursor")
        return cls(values=tuple(values))


class FirestoreClient:
    """Wrapper around the Firestore documents REST endpoints."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    def _documents_path(self) -> str:
        if not self._settings.firebase_project_id:
            raise CatalogStoreError("FIREBASE_PROJECT_ID is not configured")
        return self._settings.firestore_documents_path

    def _params(self) -> list[tuple[str, str]]:
        if self._settings.firebase_api_key:
            return [("key", self._settings.firebase_api_key)]
        return []

    @staticmethod
    def _headers(id_token: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if id_token:
            headers["Authorization"] = f"Bearer {id_token}"
        return headers

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
        """Execute a structured query against a top-level collection."""

        structured: dict[str, Any] = {
            "from": [{"collectionId": collection}],
            "limit": max(int(limit), 1),
        }
        if len(filters) == 1:
            structured["where"] = filters[0].to_payload()
        elif filters:
            structured["where"] = {
                "compositeFilter": {
                    "op": "AND",
                    "filters": [item.to_payload() for item in filters],
                }
            }

        orders: list[dict[str, Any]] = []
        if order_by is not None:
            orders.append(
                {"field": {"fieldPath": order_by.field}, "direction": order_by.direction}
            )
        if start_after is not None:
            direction = order_by.direction if order_by is not None else "ASCENDING"
            orders.append({"field": {"fieldPath": "__name__"}, "direction": direction})
            structured["startAt"] = {"values": list(start_after.values), "before": False}
        if orders:
            structured["orderBy"] = orders

        path = f"{self._documents_path()}:runQuery"
        payload = await self._request(
            "POST",
            path,
            json={"structuredQuery": structured},
            id_token=id_token,
            context=f"query on {collection}",
        )
        rows = payload if isinstance(payload, list) else [payload]
        documents: list[StoredDocument] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            if "error" in row:
                raise CatalogStoreError(self._error_message(row), None)
            document = row.get("document")
            if isinstance(document, dict):
                documents.append(StoredDocument.from_payload(document))
        return documents

    async def get_document(
        self, collection: str, document_id: str, *, id_token: str | None = None
    ) -> StoredDocument | None:
        path = f"{self._documents_path()}/{collection}/{document_id}"
        try:
            payload = await self._request(
                "GET", path, id_token=id_token, context=f"read of {collection}/{document_id}"
            )
        except CatalogStoreError as exc:
            if exc.status_code == 404:
                return None
            raise
        return StoredDocument.from_payload(payload)

    async def update_fields(
        self,
        collection: str,
        document_id: str,
        fields: Mapping[str, Any],
        *,
        id_token: str | None = None,
    ) -> StoredDocument:
        """Replace the given top-level fields of an existing document."""

        path = f"{self._documents_path()}/{collection}/{document_id}"
        params = self._params()
        params.extend(("updateMask.fieldPaths", name) for name in fields)
        params.append(("currentDocument.exists", "true"))
        payload = await self._request(
            "PATCH",
            path,
            params=params,
            json={"fields": encode_fields(fields)},
            id_token=id_token,
            context=f"update of {collection}/{document_id}",
        )
        return StoredDocument.from_payload(payload)

    async def create_document(
        self,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        *,
        id_token: str | None = None,
    ) -> StoredDocument:
        path = f"{self._documents_path()}/{collection}"
        params = self._params()
        params.append(("documentId", document_id))
        payload = await self._request(
            "POST",
            path,
            params=params,
            json={"fields": encode_fields(data)},
            id_token=id_token,
            context=f"create of {collection}/{document_id}",
        )
        return StoredDocument.from_payload(payload)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: list[tuple[str, str]] | None = None,
        json: Any = None,
        id_token: str | None = None,
        context: str,
    ) -> Any:
        try:
            response = await self._client.request(
                method,
                path,
                params=params if params is not None else self._params(),
                json=json,
                headers=self._headers(id_token),
            )
        except httpx.HTTPError as exc:
            logger.warning("Catalog store %s failed: %s", context, exc)
            raise CatalogStoreError(f"Catalog store unreachable: {exc}") from exc

        if response.status_code >= 400:
            message = self._error_message(self._safe_json(response)) or response.text
            logger.warning(
                "Catalog store %s rejected (%s): %s", context, response.status_code, message
            )
            raise CatalogStoreError(message, response.status_code)

        payload = self._safe_json(response)
        if payload is None:
            raise CatalogStoreError(f"Catalog store returned an unreadable {context} response")
        return payload

    @staticmethod
    def _safe_json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    @staticmethod
    def _error_message(payload: Any) -> str:
        if isinstance(payload, list):
            payload = next((row for row in payload if isinstance(row, dict)), None)
        if not isinstance(payload, dict):
            return ""
        error = payload.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error.get("status") or "")
        return str(error or "")
