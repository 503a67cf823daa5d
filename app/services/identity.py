"""Helpers for the Firebase Identity Toolkit REST API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping
from urllib.parse import urlencode

import httpx

from ..config import Settings
from ..errors import CatalogStoreError, IdentityError
from .firestore import FirestoreClient

logger = logging.getLogger(__name__)

UNAUTHORIZED_CODES = frozenset(
    {
        "EMAIL_NOT_FOUND",
        "INVALID_PASSWORD",
        "INVALID_LOGIN_CREDENTIALS",
        "INVALID_ID_TOKEN",
        "INVALID_IDP_RESPONSE",
        "TOKEN_EXPIRED",
        "USER_DISABLED",
        "USER_NOT_FOUND",
    }
)


@dataclass(frozen=True, slots=True)
class AuthenticatedUser:
    """The identity attached to a request once its token is verified."""

    uid: str
    email: str | None = None
    display_name: str | None = None
    photo_url: str | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.email or self.uid

    def to_payload(self) -> dict[str, object]:
        return {
            "uid": self.uid,
            "email": self.email,
            "displayName": self.display_name,
            "photoUrl": self.photo_url,
        }


@dataclass(frozen=True, slots=True)
class AuthSession:
    user: AuthenticatedUser
    id_token: str
    refresh_token: str | None = None
    expires_in: int | None = None

    def to_payload(self) -> dict[str, object]:
        return {
            "user": self.user.to_payload(),
            "idToken": self.id_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in,
        }


class IdentityClient:
    """Wrapper around the email/password, OAuth and token lookup endpoints."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        data = await self._post(
            "/accounts:signInWithPassword",
            {"email": email, "password": password, "returnSecureToken": True},
        )
        return self._session_from_payload(data)

    async def sign_up(
        self, email: str, password: str, display_name: str | None = None
    ) -> AuthSession:
        data = await self._post(
            "/accounts:signUp",
            {"email": email, "password": password, "returnSecureToken": True},
        )
        session = self._session_from_payload(data)
        if display_name:
            await self._post(
                "/accounts:update",
                {"idToken": session.id_token, "displayName": display_name},
            )
            user = AuthenticatedUser(
                uid=session.user.uid,
                email=session.user.email,
                display_name=display_name,
                photo_url=session.user.photo_url,
            )
            session = AuthSession(
                user=user,
                id_token=session.id_token,
                refresh_token=session.refresh_token,
                expires_in=session.expires_in,
            )
        return session

    async def sign_in_with_oauth(
        self,
        provider_id: str,
        *,
        request_uri: str,
        id_token: str | None = None,
        access_token: str | None = None,
    ) -> AuthSession:
        """Exchange a provider credential (e.g. Google) for a session."""

        if not (id_token or access_token):
            raise IdentityError("MISSING_CREDENTIAL", 400, "An id or access token is required")
        post_body: dict[str, str] = {"providerId": provider_id}
        if id_token:
            post_body["id_token"] = id_token
        if access_token:
            post_body["access_token"] = access_token
        data = await self._post(
            "/accounts:signInWithIdp",
            {
                "postBody": urlencode(post_body),
                "requestUri": request_uri,
                "returnSecureToken": True,
                "returnIdpCredential": True,
            },
        )
        return self._session_from_payload(data)

    async def send_password_reset(self, email: str) -> None:
        await self._post(
            "/accounts:sendOobCode", {"requestType": "PASSWORD_RESET", "email": email}
        )

    async def lookup(self, id_token: str) -> AuthenticatedUser:
        """Resolve an id token into the user it belongs to."""

        data = await self._post("/accounts:lookup", {"idToken": id_token})
        users = data.get("users") or []
        if not users or not isinstance(users[0], dict):
            raise IdentityError("USER_NOT_FOUND", 401)
        return self._user_from_payload(users[0])

    async def _post(self, path: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        if not self._settings.firebase_api_key:
            raise IdentityError("IDENTITY_NOT_CONFIGURED", 503, "FIREBASE_API_KEY is not configured")
        try:
            response = await self._client.post(
                path, params={"key": self._settings.firebase_api_key}, json=dict(payload)
            )
        except httpx.HTTPError as exc:
            logger.warning("Identity provider request %s failed: %s", path, exc)
            raise IdentityError("IDENTITY_UNAVAILABLE", 503, str(exc)) from exc

        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400:
            raise self._error_from_payload(data, response.status_code)
        if not isinstance(data, dict):
            raise IdentityError("IDENTITY_UNAVAILABLE", 503, "Unreadable identity response")
        return data

    @staticmethod
    def _error_from_payload(data: Any, status_code: int) -> IdentityError:
        message = ""
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            message = str(data["error"].get("message") or "")
        code = message.split(" ", 1)[0].strip() or "IDENTITY_ERROR"
        if code in UNAUTHORIZED_CODES:
            status = 401
        elif code == "EMAIL_EXISTS":
            status = 409
        elif code.startswith("TOO_MANY_ATTEMPTS"):
            status = 429
        elif status_code >= 500:
            status = 503
        else:
            status = 400
        return IdentityError(code, status, message or code)

    @staticmethod
    def _user_from_payload(data: Mapping[str, Any]) -> AuthenticatedUser:
        uid = str(data.get("localId") or "")
        if not uid:
            raise IdentityError("USER_NOT_FOUND", 401)
        return AuthenticatedUser(
            uid=uid,
            email=data.get("email") or None,
            display_name=data.get("displayName") or None,
            photo_url=data.get("photoUrl") or None,
        )

    def _session_from_payload(self, data: Mapping[str, Any]) -> AuthSession:
        id_token = data.get("idToken")
        if not id_token:
            raise IdentityError("IDENTITY_UNAVAILABLE", 503, "Identity response missing token")
        try:
            expires_in = int(data.get("expiresIn")) if data.get("expiresIn") else None
        except (TypeError, ValueError):
            expires_in = None
        return AuthSession(
            user=self._user_from_payload(data),
            id_token=str(id_token),
            refresh_token=data.get("refreshToken") or None,
            expires_in=expires_in,
        )


class AccountService:
    """Signs users in and makes sure each one has a profile document."""

    def __init__(
        self, settings: Settings, identity: IdentityClient, store: FirestoreClient
    ):
        self._settings = settings
        self._identity = identity
        self._store = store

    @property
    def identity(self) -> IdentityClient:
        return self._identity

    async def sign_in(self, email: str, password: str) -> AuthSession:
        session = await self._identity.sign_in_with_password(email, password)
        await self.ensure_profile(session)
        return session

    async def sign_up(
        self, email: str, password: str, display_name: str | None = None
    ) -> AuthSession:
        session = await self._identity.sign_up(email, password, display_name)
        await self.ensure_profile(session)
        return session

    async def sign_in_with_oauth(self, provider_id: str, **credentials: Any) -> AuthSession:
        session = await self._identity.sign_in_with_oauth(provider_id, **credentials)
        await self.ensure_profile(session)
        return session

    async def ensure_profile(self, session: AuthSession) -> None:
        """Create ``users/{uid}`` with defaults when it does not exist yet."""

        user = session.user
        collection = self._settings.users_collection
        try:
            existing = await self._store.get_document(
                collection, user.uid, id_token=session.id_token
            )
            if existing is not None:
                return
            default_name = user.email.split("@", 1)[0] if user.email else "New User"
            await self._store.create_document(
                collection,
                user.uid,
                {
                    "uid": user.uid,
                    "email": user.email,
                    "displayName": user.display_name or default_name,
                    "photoURL": user.photo_url or self._settings.default_avatar_url,
                    "createdAt": datetime.now(timezone.utc),
                    "likedMovies": [],
                    "role": "user",
                },
                id_token=session.id_token,
            )
            logger.info("Created profile document for user %s", user.uid)
        except CatalogStoreError as exc:
            if exc.status_code == 409:
                return
            logger.warning("Could not ensure profile document for %s: %s", user.uid, exc)
