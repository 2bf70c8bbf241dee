from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Union

from starlette.requests import Request
from starlette.responses import Response

from sqlite_sessions.core.config import StoreOptions
from sqlite_sessions.core.exceptions import SessionStoreError
from sqlite_sessions.core.utils.session_store import PreDeleteCallback, Session, SessionStore

logger = logging.getLogger(__name__)


class SessionsManager:
    """
    Holds the session store of one hosting application.

    The manager is created and owned by the application (FastAPI keeps it on
    ``app.state``), so tests and multiple apps in one process each get their
    own isolated store.
    """

    def __init__(self) -> None:
        self._store: Optional[SessionStore] = None

    @property
    def initialized(self) -> bool:
        return self._store is not None

    @property
    def store(self) -> SessionStore:
        if self._store is None:
            raise RuntimeError("Session store has not been initialised")
        return self._store

    def initialize(self) -> SessionStore:
        """Open the store with the default options"""
        return self.initialize_with_options(StoreOptions())

    def initialize_with_options(
        self, options: Union[StoreOptions, Mapping[str, Any]], **open_kwargs: Any
    ) -> SessionStore:
        """
        Open the store with caller-supplied options.

        An already open store is closed first; options cannot change on a live store.

        Raises:
            ConfigInvalidError: If the options are invalid
            StorageUnavailableError: If the backing table cannot be opened
        """
        if self._store is not None:
            logger.info("Replacing the open session store with a newly configured one")
            self.close()

        try:
            self._store = SessionStore.open(options, **open_kwargs)
        except SessionStoreError as e:
            logger.error(f"An error occurred while creating the store for sessions: {e}")
            raise
        return self._store

    def get_session(self, request: Request) -> Session:
        return self.store.get(request.cookies)

    def save_session(self, response: Response, session: Session) -> None:
        self.store.save(response, session)

    def delete_session(self, response: Response, session: Session) -> None:
        self.store.delete(response, session)

    def delete_session_by_id(self, session_id: str) -> None:
        self.store.delete_by_id(session_id)

    def set_expired_session_pre_delete_callback(self, callback: Optional[PreDeleteCallback]) -> None:
        self.store.set_pre_delete_callback(callback)

    def close(self) -> None:
        if self._store is not None:
            self._store.close()
            self._store = None
