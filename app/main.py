"""Entry point for the FastAPI-powered Zeestream backend."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from .config import settings
from .errors import CatalogStoreError, ChatBusy, IdentityError
from .services.catalog import CatalogService, CatalogSnapshotLoader
from .services.chat import ChatService, TurnStatus
from .services.firestore import FirestoreClient
from .services.gemini import GeminiClient
from .services.governor import InteractionGovernor
from .services.identity import AccountService, AuthenticatedUser, IdentityClient
from .services.interpreter import ResponseInterpreter

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


class SignInRequest(BaseModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)


class SignUpRequest(SignInRequest):
    display_name: str | None = Field(default=None, alias="displayName")


class OAuthRequest(BaseModel):
    provider_id: str = Field(default="google.com", alias="providerId")
    request_uri: str = Field(default="http://localhost", alias="requestUri")
    id_token: str | None = Field(default=None, alias="idToken")
    access_token: str | None = Field(default=None, alias="accessToken")


class PasswordResetRequest(BaseModel):
    email: str = Field(min_length=3)


class CommentRequest(BaseModel):
    text: str


class ChatMessageRequest(BaseModel):
    text: str


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    firestore_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.firestore_api_url),
            timeout=httpx.Timeout(20.0, connect=10.0),
        )
    )
    identity_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.identity_api_url),
            timeout=httpx.Timeout(15.0, connect=5.0),
        )
    )
    gemini_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.gemini_api_url),
            timeout=httpx.Timeout(settings.model_timeout_seconds, connect=10.0),
        )
    )

    store = FirestoreClient(settings, firestore_http)
    identity = IdentityClient(settings, identity_http)
    chat_service = ChatService(
        settings,
        CatalogSnapshotLoader(settings, store),
        GeminiClient(settings, gemini_http),
        ResponseInterpreter(
            max_suggestions=settings.chat_max_suggestions,
            assistant_name=settings.assistant_name,
            platform_name=settings.app_name,
        ),
        InteractionGovernor(settings.anonymous_query_limit),
    )

    fastapi_app.state.catalog_service = CatalogService(settings, store)
    fastapi_app.state.account_service = AccountService(settings, identity, store)
    fastapi_app.state.chat_service = chat_service

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        chat_service.stop()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Movie streaming catalog with an AI movie assistant",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_catalog_service(app: FastAPI) -> CatalogService:
    service = getattr(app.state, "catalog_service", None)
    if not isinstance(service, CatalogService):
        raise RuntimeError("Catalog service not initialised")
    return service


def get_account_service(app: FastAPI) -> AccountService:
    service = getattr(app.state, "account_service", None)
    if not isinstance(service, AccountService):
        raise RuntimeError("Account service not initialised")
    return service


def get_chat_service(app: FastAPI) -> ChatService:
    service = getattr(app.state, "chat_service", None)
    if not isinstance(service, ChatService):
        raise RuntimeError("Chat service not initialised")
    return service


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _parse_flag(raw: str | None, name: str) -> bool | None:
    if raw is None or raw == "":
        return None
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes"}:
        return True
    if lowered in {"0", "false", "no"}:
        return False
    raise HTTPException(status_code=400, detail=f"Invalid boolean for {name}")


def _validation_detail(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.exception_handler(CatalogStoreError)
    async def _catalog_store_error(_: Request, exc: CatalogStoreError) -> JSONResponse:
        logger.warning("Catalog store request failed: %s", exc)
        return JSONResponse({"detail": "Catalog store unavailable"}, status_code=502)

    @fastapi_app.exception_handler(IdentityError)
    async def _identity_error(_: Request, exc: IdentityError) -> JSONResponse:
        return JSONResponse(
            {"detail": str(exc), "code": exc.code}, status_code=exc.status_code
        )

    async def _optional_user(request: Request) -> AuthenticatedUser | None:
        token = _bearer_token(request)
        if token is None:
            return None
        accounts = get_account_service(fastapi_app)
        return await accounts.identity.lookup(token)

    async def _required_user(request: Request) -> tuple[AuthenticatedUser, str]:
        token = _bearer_token(request)
        if token is None:
            raise HTTPException(status_code=401, detail="Sign in required")
        accounts = get_account_service(fastapi_app)
        return await accounts.identity.lookup(token), token

    async def _json_body(request: Request, model: type[BaseModel]) -> Any:
        try:
            payload = await request.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload")
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=_validation_detail(exc)) from exc

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/movies")
    async def list_movies(
        category: str | None = None,
        content_type: str | None = Query(default=None, alias="type"),
        series: str | None = None,
        coming_soon: str | None = Query(default=None, alias="comingSoon"),
        cursor: str | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        service = get_catalog_service(fastapi_app)
        if limit is not None and not 1 <= limit <= 100:
            raise HTTPException(status_code=400, detail="limit must be between 1 and 100")
        try:
            page = await service.list_movies(
                category=category,
                content_type=content_type,
                is_series=_parse_flag(series, "series"),
                coming_soon=_parse_flag(coming_soon, "comingSoon"),
                cursor=cursor,
                page_size=limit,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return page.to_payload()

    @fastapi_app.get("/api/home")
    async def home() -> dict[str, Any]:
        sections = await get_catalog_service(fastapi_app).home_sections()
        return {
            "hero": [entry.to_payload() for entry in sections["hero"]],
            "popular": [entry.to_payload() for entry in sections["popular"]],
            "comingSoon": [entry.to_payload() for entry in sections["comingSoon"]],
            "categories": {
                category: [entry.to_payload() for entry in entries]
                for category, entries in sections["categories"].items()
            },
        }

    @fastapi_app.get("/api/search")
    async def search(q: str = "") -> dict[str, Any]:
        results = await get_catalog_service(fastapi_app).search(q)
        return {"query": q, "results": [entry.to_payload() for entry in results]}

    @fastapi_app.get("/api/movies/{slug}")
    async def movie_detail(slug: str) -> dict[str, Any]:
        service = get_catalog_service(fastapi_app)
        entry = await service.get_by_slug(slug)
        if entry is None:
            raise HTTPException(status_code=404, detail="Movie not found")
        suggestions = await service.suggestions_for(entry)
        return {
            "movie": entry.to_payload(),
            "suggestions": [item.to_payload() for item in suggestions],
        }

    @fastapi_app.post("/api/movies/{movie_id}/like")
    async def toggle_like(movie_id: str, request: Request) -> dict[str, Any]:
        user, token = await _required_user(request)
        try:
            entry = await get_catalog_service(fastapi_app).toggle_like(
                movie_id, user, id_token=token
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Movie not found") from exc
        return {
            "movieId": entry.id,
            "liked": entry.liked_by(user.uid),
            "likeCount": entry.like_count,
        }

    @fastapi_app.post("/api/movies/{movie_id}/comments", status_code=201)
    async def add_comment(movie_id: str, request: Request) -> dict[str, Any]:
        user, token = await _required_user(request)
        body: CommentRequest = await _json_body(request, CommentRequest)
        try:
            comment = await get_catalog_service(fastapi_app).add_comment(
                movie_id, user, body.text, id_token=token
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Movie not found") from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return comment.model_dump(mode="json", by_alias=True)

    @fastapi_app.post("/api/auth/sign-in")
    async def sign_in(request: Request) -> dict[str, Any]:
        body: SignInRequest = await _json_body(request, SignInRequest)
        session = await get_account_service(fastapi_app).sign_in(body.email, body.password)
        return session.to_payload()

    @fastapi_app.post("/api/auth/sign-up", status_code=201)
    async def sign_up(request: Request) -> dict[str, Any]:
        body: SignUpRequest = await _json_body(request, SignUpRequest)
        session = await get_account_service(fastapi_app).sign_up(
            body.email, body.password, body.display_name
        )
        return session.to_payload()

    @fastapi_app.post("/api/auth/oauth")
    async def oauth_sign_in(request: Request) -> dict[str, Any]:
        body: OAuthRequest = await _json_body(request, OAuthRequest)
        session = await get_account_service(fastapi_app).sign_in_with_oauth(
            body.provider_id,
            request_uri=body.request_uri,
            id_token=body.id_token,
            access_token=body.access_token,
        )
        return session.to_payload()

    @fastapi_app.post("/api/auth/password-reset", status_code=202)
    async def password_reset(request: Request) -> dict[str, str]:
        body: PasswordResetRequest = await _json_body(request, PasswordResetRequest)
        await get_account_service(fastapi_app).identity.send_password_reset(body.email)
        return {"status": "sent"}

    @fastapi_app.get("/api/auth/me")
    async def current_user(request: Request) -> dict[str, Any]:
        user, _ = await _required_user(request)
        return user.to_payload()

    @fastapi_app.post("/api/chat/sessions", status_code=201)
    async def start_chat(request: Request) -> dict[str, Any]:
        user = await _optional_user(request)
        service = get_chat_service(fastapi_app)
        state = await service.start_session()
        return state.to_payload(
            query_limit=service.governor.limit,
            remaining_queries=service.remaining_queries(state, user),
        )

    @fastapi_app.get("/api/chat/sessions/{session_id}")
    async def get_chat(session_id: str, request: Request) -> dict[str, Any]:
        user = await _optional_user(request)
        service = get_chat_service(fastapi_app)
        try:
            state = service.get_session(session_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Chat session not found") from exc
        return state.to_payload(
            query_limit=service.governor.limit,
            remaining_queries=service.remaining_queries(state, user),
        )

    @fastapi_app.post("/api/chat/sessions/{session_id}/messages")
    async def send_chat_message(session_id: str, request: Request) -> JSONResponse:
        user = await _optional_user(request)
        body: ChatMessageRequest = await _json_body(request, ChatMessageRequest)
        service = get_chat_service(fastapi_app)
        try:
            outcome = await service.handle_turn(session_id, body.text, user)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Chat session not found") from exc
        except ChatBusy as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        status_code = 429 if outcome.status is TurnStatus.QUOTA_EXCEEDED else 200
        return JSONResponse(outcome.to_payload(), status_code=status_code)

    @fastapi_app.delete("/api/chat/sessions/{session_id}", status_code=204)
    async def end_chat(session_id: str) -> None:
        if not get_chat_service(fastapi_app).end_session(session_id):
            raise HTTPException(status_code=404, detail="Chat session not found")


app = create_app()
