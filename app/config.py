"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_HOME_CATEGORIES: tuple[str, ...] = (
    "action",
    "comedy",
    "drama",
    "thriller",
    "horror",
    "romance",
)


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Zeestream", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    firebase_project_id: str | None = Field(default=None, alias="FIREBASE_PROJECT_ID")
    firebase_api_key: str | None = Field(default=None, alias="FIREBASE_API_KEY")
    firestore_api_url: HttpUrl = Field(
        default="https://firestore.googleapis.com/v1", alias="FIRESTORE_API_URL"
    )
    identity_api_url: HttpUrl = Field(
        default="https://identitytoolkit.googleapis.com/v1", alias="IDENTITY_API_URL"
    )
    movies_collection: str = Field(default="movies", alias="MOVIES_COLLECTION")
    users_collection: str = Field(default="users", alias="USERS_COLLECTION")

    gemini_api_key: str | None = Field(default=None, alias="GEMINI_API_KEY")
    gemini_model: str = Field(default="gemini-1.5-flash", alias="GEMINI_MODEL")
    gemini_api_url: HttpUrl = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        alias="GEMINI_API_URL",
    )
    model_timeout_seconds: float = Field(
        default=60.0, alias="MODEL_TIMEOUT", ge=5, le=300
    )

    chat_context_size: int = Field(
        default=20, alias="CHAT_CONTEXT_SIZE", ge=1, le=500
    )
    chat_max_suggestions: int = Field(
        default=6, alias="CHAT_MAX_SUGGESTIONS", ge=1, le=50
    )
    anonymous_query_limit: int = Field(
        default=5, alias="ANONYMOUS_QUERY_LIMIT", ge=0, le=1_000
    )
    chat_session_idle_seconds: int = Field(
        default=3_600, alias="CHAT_SESSION_IDLE_SECONDS", ge=60
    )
    assistant_name: str = Field(default="Zee AI", alias="ASSISTANT_NAME")

    movies_per_page: int = Field(default=12, alias="MOVIES_PER_PAGE", ge=1, le=100)
    home_categories: tuple[str, ...] = Field(
        default=DEFAULT_HOME_CATEGORIES, alias="HOME_CATEGORIES"
    )
    placeholder_thumbnail_url: str = Field(
        default="https://placehold.co/300x450?text=Zeestream",
        alias="PLACEHOLDER_THUMBNAIL_URL",
    )
    default_avatar_url: str = Field(
        default=(
            "https://res.cloudinary.com/ddjprb8uw/image/upload/"
            "v1752570172/femaleavatar_dq6pk4.jpg"
        ),
        alias="DEFAULT_AVATAR_URL",
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("home_categories", mode="before")
    @classmethod
    def _parse_home_categories(cls, value: object) -> tuple[str, ...]:
        """Normalise home page category rows from environment values."""

        if value is None:
            return DEFAULT_HOME_CATEGORIES
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError("HOME_CATEGORIES must be a string or iterable of strings")

        cleaned: list[str] = []
        for entry in raw_values:
            slug = entry.replace("_", "-").replace(" ", "-").lower()
            slug = "-".join(filter(None, slug.split("-")))
            if slug and slug not in cleaned:
                cleaned.append(slug)
        if not cleaned:
            return DEFAULT_HOME_CATEGORIES
        return tuple(cleaned)

    @property
    def firestore_documents_path(self) -> str:
        """Return the REST path prefix for documents in the default database."""

        if not self.firebase_project_id:
            raise RuntimeError("FIREBASE_PROJECT_ID is required to reach the catalog store")
        return f"/projects/{self.firebase_project_id}/databases/(default)/documents"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
