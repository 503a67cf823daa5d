"""Exception types shared across the Zeestream services."""

from __future__ import annotations


class ZeestreamError(Exception):
    """Base class for failures caused by an external collaborator."""


class CatalogStoreError(ZeestreamError):
    """The document store rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SnapshotUnavailable(ZeestreamError):
    """The catalog snapshot used as chat context could not be loaded."""


class ModelUnavailable(ZeestreamError):
    """The language model call failed (network, quota, bad response)."""


class IdentityError(ZeestreamError):
    """The identity provider refused or failed an authentication request."""

    def __init__(self, code: str, status_code: int = 400, message: str | None = None):
        super().__init__(message or code)
        self.code = code
        self.status_code = status_code


class ChatBusy(ZeestreamError):
    """A chat turn is already in flight for the session."""


class SessionNotStarted(RuntimeError):
    """A conversation handle was used before start or after it was closed."""
