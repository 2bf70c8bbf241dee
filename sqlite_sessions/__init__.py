"""SQLite-backed server-side HTTP sessions."""

from sqlite_sessions.core.config import DEFAULT_SECRET_KEY, StoreOptions
from sqlite_sessions.core.exceptions import (
    AuthenticationFailedError,
    ConfigInvalidError,
    EncodingFailedError,
    MalformedPayloadError,
    SessionNotFoundError,
    SessionStoreError,
    StorageUnavailableError,
)
from sqlite_sessions.core.utils.session_store import Session, SessionStore
from sqlite_sessions.manager import SessionsManager

__version__ = "1.0.0"

__all__ = [
    "DEFAULT_SECRET_KEY",
    "AuthenticationFailedError",
    "ConfigInvalidError",
    "EncodingFailedError",
    "MalformedPayloadError",
    "Session",
    "SessionNotFoundError",
    "SessionStore",
    "SessionStoreError",
    "SessionsManager",
    "StorageUnavailableError",
    "StoreOptions",
]
