"""
Session store configuration using Pydantic and Pydantic Settings.

``StoreOptions`` is the immutable option set a store is opened with. Process
level configuration can be set via environment variables (``SESSIONS_``
prefix) or a .env file and converted with ``Settings.to_store_options()``.
"""

from datetime import timedelta
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from sqlite_sessions.core.exceptions import ConfigInvalidError
from sqlite_sessions.core.security import validate_secret_key

# Placeholder key so the store works out of the box. Every store opened with it
# logs a warning; production deployments must supply their own key.
DEFAULT_SECRET_KEY = "insecure-default-session-key-CHANGE-ME-before-deploying"

DEFAULT_KDF_ITERATIONS = 300_000

SameSite = Literal["lax", "strict", "none"]


def build_database_url(storage_location: str) -> str:
    """Turn a SQLite file path or a SQLAlchemy URL into a database URL"""
    if "://" in storage_location:
        return storage_location
    return f"sqlite:///{storage_location}"


class StoreOptions(BaseModel):
    """Options a session store is opened with. Immutable once created."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Cookie attributes
    path: str = "/"
    domain: Optional[str] = None
    http_only: bool = True
    secure: bool = False
    same_site: Optional[SameSite] = "lax"
    max_age: int = Field(default=3600, ge=0)
    session_cookie_name: str = Field(default="session-id", min_length=1)

    # Storage and key material
    storage_location: str = Field(default="./sessions.sqlite", min_length=1)
    secret_key: str = DEFAULT_SECRET_KEY
    kdf_iterations: int = Field(default=DEFAULT_KDF_ITERATIONS, ge=100_000, le=10_000_000)

    # Reclaimer
    cleanup_interval: timedelta = timedelta(minutes=5)

    @field_validator("secret_key", mode="before")
    @classmethod
    def decode_secret_key(cls, value: Any) -> Any:
        if isinstance(value, (bytes, bytearray)):
            return bytes(value).decode("utf-8")
        return value

    @field_validator("secret_key")
    @classmethod
    def check_secret_key(cls, value: str) -> str:
        validate_secret_key(value)
        return value

    @field_validator("same_site", mode="before")
    @classmethod
    def normalize_same_site(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.lower()
        return value

    @field_validator("cleanup_interval")
    @classmethod
    def check_cleanup_interval(cls, value: timedelta) -> timedelta:
        if value.total_seconds() <= 0:
            raise ValueError("cleanup interval must be positive")
        return value

    @field_validator("storage_location")
    @classmethod
    def check_storage_location(cls, value: str) -> str:
        try:
            url = make_url(build_database_url(value))
        except ArgumentError as e:
            raise ValueError(f"unrecognized storage location: {e}") from e
        if url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:"):
            raise ValueError("in-memory SQLite cannot back a persistent session store")
        return value

    @classmethod
    def build(cls, **kwargs: Any) -> "StoreOptions":
        """
        Create options, reporting validation problems as ConfigInvalidError.

        Raises:
            ConfigInvalidError: If any option is missing or out of range
        """
        try:
            return cls(**kwargs)
        except ValidationError as e:
            raise ConfigInvalidError(f"Invalid session store options: {e}") from e

    @property
    def database_url(self) -> str:
        return build_database_url(self.storage_location)

    @property
    def uses_default_secret_key(self) -> bool:
        return self.secret_key == DEFAULT_SECRET_KEY


class Settings(BaseSettings):
    """Process settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="SESSIONS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = "SQLite Sessions"
    debug: bool = False
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"
    json_logging: bool = True

    # Store options
    path: str = "/"
    domain: Optional[str] = None
    http_only: bool = True
    secure: bool = False
    same_site: Optional[str] = "lax"
    max_age: int = 3600
    session_cookie_name: str = "session-id"
    storage_location: str = "./sessions.sqlite"
    secret_key: str = DEFAULT_SECRET_KEY
    kdf_iterations: int = DEFAULT_KDF_ITERATIONS
    cleanup_interval: timedelta = timedelta(minutes=5)

    # Administrative endpoint: disabled unless a token is configured
    admin_token: Optional[str] = None
    admin_rate_limit: str = "30/minute"

    # Optional Redis URL for distributed rate limiting
    redis_url: Optional[str] = None

    def to_store_options(self) -> StoreOptions:
        """
        Build the store options from these settings.

        Raises:
            ConfigInvalidError: If the configured values are invalid
        """
        return StoreOptions.build(
            path=self.path,
            domain=self.domain,
            http_only=self.http_only,
            secure=self.secure,
            same_site=self.same_site or None,
            max_age=self.max_age,
            session_cookie_name=self.session_cookie_name,
            storage_location=self.storage_location,
            secret_key=self.secret_key,
            kdf_iterations=self.kdf_iterations,
            cleanup_interval=self.cleanup_interval,
        )


# Global settings instance
settings = Settings()
