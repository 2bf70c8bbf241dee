"""Server-side session storage on SQLite.

``SessionStore`` maps signed session-id cookies to rows of the ``sessions``
table. Payloads are sealed with ``SessionCodec``; expired rows are removed by a
background ``Reclaimer``. Lookups fail open: a missing, forged or expired
session yields a fresh one, while storage failures are raised to the caller.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional, Union

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.engine import Engine
from starlette.responses import Response

from sqlite_sessions.core.config import StoreOptions
from sqlite_sessions.core.exceptions import (
    PayloadDecodeError,
    SessionNotFoundError,
    StorageUnavailableError,
)
from sqlite_sessions.core.security import CookieSigner, generate_session_id, mask_session_id
from sqlite_sessions.core.utils.encryption import SessionCodec, get_or_create_salt
from sqlite_sessions.core.utils.reclaimer import Reclaimer
from sqlite_sessions.db.base import Base
from sqlite_sessions.db.models.session_record import SessionRecord
from sqlite_sessions.db.session import (
    create_session_engine,
    create_session_factory,
    get_db_sync,
    sqlite_file_path,
)

logger = logging.getLogger(__name__)

# Attempts at inserting a fresh id before giving up on an id collision
_MAX_INSERT_ATTEMPTS = 3

# Seconds close() waits for an in-flight sweep
_RECLAIMER_STOP_TIMEOUT = 10.0


def utc_now() -> datetime:
    """Current time as a naive UTC datetime, matching the stored columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


Clock = Callable[[], datetime]


@dataclass
class Session:
    """A session as seen by request handlers.

    ``id`` stays None until the session is first saved. ``max_age`` starts at
    the store's option and may be changed per session; saving with
    ``max_age <= 0`` deletes the session.
    """

    name: str
    max_age: int
    values: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    is_new: bool = True
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


PreDeleteCallback = Callable[[Session], None]


class SessionStore:
    """SQLite-backed session store with a background reclaimer."""

    def __init__(
        self,
        options: StoreOptions,
        engine: Engine,
        codec: SessionCodec,
        clock: Optional[Clock] = None,
    ) -> None:
        self.options = options
        self._engine = engine
        self._codec = codec
        self._signer = CookieSigner(options.secret_key)
        self._clock = clock or utc_now
        self._session_factory = create_session_factory(engine)
        # The reclaimer gets its own factory, so its own connections and transactions
        self._reclaimer_session_factory = create_session_factory(engine)
        self._pre_delete_callback: Optional[PreDeleteCallback] = None
        self._closed = False
        self._close_lock = threading.Lock()
        self.reclaimer = Reclaimer(
            self._reclaim_expired,
            interval=options.cleanup_interval.total_seconds(),
        )

    @classmethod
    def open(
        cls,
        options: Union[StoreOptions, Mapping[str, Any], None] = None,
        *,
        clock: Optional[Clock] = None,
        start_reclaimer: bool = True,
    ) -> "SessionStore":
        """
        Validate options, open or create the sessions table and start the reclaimer.

        Args:
            options: Store options, a mapping of option values, or None for defaults
            clock: Source of naive UTC "now" values, for tests
            start_reclaimer: Whether to start the background sweep thread

        Raises:
            ConfigInvalidError: If the options are invalid
            StorageUnavailableError: If the backing table cannot be opened
        """
        if options is None:
            options = StoreOptions()
        elif not isinstance(options, StoreOptions):
            options = StoreOptions.build(**dict(options))

        if options.uses_default_secret_key:
            logger.warning(
                "Session store is using the built-in default secret key; "
                "configure a secret key before deploying"
            )

        database_url = options.database_url
        db_file = sqlite_file_path(database_url)
        engine = None
        try:
            if db_file is not None:
                db_file.parent.mkdir(parents=True, exist_ok=True)
            engine = create_session_engine(database_url)
            Base.metadata.create_all(
                bind=engine,
                tables=[SessionRecord.__table__],
                checkfirst=True,
            )
        except (OSError, SQLAlchemyError) as e:
            if engine is not None:
                engine.dispose()
            logger.error(f"Failed to open session storage: {e}")
            raise StorageUnavailableError(f"Cannot open session storage: {e}") from e

        salt = get_or_create_salt(db_file.parent if db_file is not None else None, options.secret_key)
        codec = SessionCodec(options.secret_key, salt, options.kdf_iterations)

        store = cls(options, engine, codec, clock=clock)
        if start_reclaimer:
            store.reclaimer.start()

        logger.info(
            "Session store opened",
            extra={
                "backend": engine.url.get_backend_name(),
                "cookie_name": options.session_cookie_name,
                "max_age": options.max_age,
                "cleanup_interval_seconds": options.cleanup_interval.total_seconds(),
            },
        )
        return store

    def __enter__(self) -> "SessionStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def engine(self) -> Engine:
        return self._engine

    def close(self) -> None:
        """Stop the reclaimer and release database connections. Idempotent."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self.reclaimer.stop(timeout=_RECLAIMER_STOP_TIMEOUT)
        self._engine.dispose()
        logger.info("Session store closed")

    def _ensure_open(self) -> None:
        if self._closed:
            raise StorageUnavailableError("Session store is closed")

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def new(self, cookie_name: Optional[str] = None) -> Session:
        """Create a fresh, unsaved session"""
        return Session(
            name=cookie_name or self.options.session_cookie_name,
            max_age=self.options.max_age,
        )

    def get(self, request_cookies: Mapping[str, str], cookie_name: Optional[str] = None) -> Session:
        """
        Resolve the session referenced by the request's cookie.

        A missing cookie, a bad signature, an unknown or expired id, or a
        payload that fails verification all yield a new empty session.

        Args:
            request_cookies: Cookies sent with the request
            cookie_name: Cookie to read, defaults to the configured name

        Raises:
            StorageUnavailableError: If the table cannot be read
        """
        self._ensure_open()
        name = cookie_name or self.options.session_cookie_name

        cookie_value = request_cookies.get(name)
        if not cookie_value:
            return self.new(name)

        try:
            session_id = self._signer.unsign(cookie_value)
        except PayloadDecodeError as e:
            logger.warning(f"Rejected session cookie: {e}")
            return self.new(name)

        session = self._load(session_id, name)
        if session is None:
            return self.new(name)
        return session

    def _load(self, session_id: str, name: str) -> Optional[Session]:
        now = self._clock()
        try:
            with get_db_sync(self._session_factory) as db:
                record = db.scalar(
                    select(SessionRecord).where(
                        SessionRecord.id == session_id,
                        SessionRecord.expires_at > now,
                    )
                )
        except SQLAlchemyError as e:
            logger.error(f"Session lookup failed: {e}")
            raise StorageUnavailableError(f"Session lookup failed: {e}") from e

        if record is None:
            logger.debug("No live session for id %s", mask_session_id(session_id))
            return None

        try:
            values = self._codec.decode(record.payload)
        except PayloadDecodeError as e:
            logger.warning("Discarding session %s: %s", mask_session_id(session_id), e)
            return None

        return Session(
            name=name,
            max_age=self.options.max_age,
            values=values,
            id=record.id,
            is_new=False,
            created_at=record.created_at,
            expires_at=record.expires_at,
        )

    def save(self, response: Response, session: Session) -> None:
        """
        Persist the session and set its cookie on the response.

        The cookie is written only after the record is committed. A new session
        without values is not persisted, and a session with ``max_age <= 0`` is
        deleted instead.

        Raises:
            EncodingFailedError: If the values cannot be serialized
            StorageUnavailableError: If the record cannot be written
        """
        self._ensure_open()
        if session.max_age <= 0:
            self.delete(response, session)
            return

        if session.id is None and not session.values:
            logger.debug("Not persisting empty new session")
            return

        payload = self._codec.encode(session.values)
        now = self._clock()
        expires_at = now + timedelta(seconds=session.max_age)

        if session.id is None or not self._update(session.id, payload, now, expires_at):
            if session.id is not None:
                logger.info(
                    "Session %s vanished before save; reissuing under a new id",
                    mask_session_id(session.id),
                )
            session.id = self._insert_new(payload, now, expires_at)
            session.created_at = now

        session.is_new = False
        session.expires_at = expires_at
        self._set_cookie(response, session.name, self._signer.sign(session.id), session.max_age)

    def _update(self, session_id: str, payload: str, now: datetime, expires_at: datetime) -> bool:
        try:
            with get_db_sync(self._session_factory) as db:
                result = db.execute(
                    update(SessionRecord)
                    .where(SessionRecord.id == session_id)
                    .values(payload=payload, expires_at=expires_at, modified_at=now)
                )
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Session update failed: {e}")
            raise StorageUnavailableError(f"Session update failed: {e}") from e
        return result.rowcount > 0

    def _insert_new(self, payload: str, now: datetime, expires_at: datetime) -> str:
        for _ in range(_MAX_INSERT_ATTEMPTS):
            session_id = generate_session_id()
            try:
                with get_db_sync(self._session_factory) as db:
                    db.add(
                        SessionRecord(
                            id=session_id,
                            payload=payload,
                            expires_at=expires_at,
                            created_at=now,
                            modified_at=now,
                        )
                    )
                    db.commit()
                return session_id
            except IntegrityError:
                logger.warning("Session id collision on insert; generating a new id")
            except SQLAlchemyError as e:
                logger.error(f"Session insert failed: {e}")
                raise StorageUnavailableError(f"Session insert failed: {e}") from e
        raise StorageUnavailableError("Could not allocate a unique session id")

    def delete(self, response: Response, session: Session) -> None:
        """
        Remove the session's record and expire its cookie.

        Deleting a session that has no record is not an error.

        Raises:
            StorageUnavailableError: If the record cannot be removed
        """
        self._ensure_open()
        if session.id is not None:
            self._delete_row(session.id)

        response.delete_cookie(
            session.name,
            path=self.options.path,
            domain=self.options.domain,
            secure=self.options.secure,
            httponly=self.options.http_only,
            samesite=self.options.same_site,
        )
        session.values.clear()
        session.id = None
        session.is_new = True
        session.expires_at = None

    def delete_by_id(self, session_id: str) -> None:
        """
        Remove a session without an HTTP context.

        Raises:
            SessionNotFoundError: If no record has this id
            StorageUnavailableError: If the record cannot be removed
        """
        self._ensure_open()
        if not self._delete_row(session_id):
            raise SessionNotFoundError(session_id)
        logger.info("Deleted session %s by id", mask_session_id(session_id))

    def _delete_row(self, session_id: str) -> bool:
        try:
            with get_db_sync(self._session_factory) as db:
                result = db.execute(delete(SessionRecord).where(SessionRecord.id == session_id))
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Session delete failed: {e}")
            raise StorageUnavailableError(f"Session delete failed: {e}") from e
        return result.rowcount > 0

    def _set_cookie(self, response: Response, name: str, value: str, max_age: int) -> None:
        response.set_cookie(
            name,
            value,
            max_age=max_age,
            path=self.options.path,
            domain=self.options.domain,
            secure=self.options.secure,
            httponly=self.options.http_only,
            samesite=self.options.same_site,
        )

    # ------------------------------------------------------------------
    # Reclaimer
    # ------------------------------------------------------------------

    def set_pre_delete_callback(self, callback: Optional[PreDeleteCallback]) -> None:
        """
        Register the function called just before an expired session is reclaimed.

        The callback runs on the reclaimer thread, once per record, with the
        decoded session, while the store holds the write lock on the record:
        saves from other threads wait until the record is gone, and the
        callback itself must not write to the store. Any state it touches must
        be thread-safe. Pass None to remove it.
        """
        self._pre_delete_callback = callback

    def sweep(self) -> Optional[int]:
        """
        Run one reclaimer sweep in the calling thread.

        Returns:
            Number of reclaimed records, or None if skipped because another
            sweep is in progress or the sweep failed
        """
        self._ensure_open()
        return self.reclaimer.run_once()

    def _reclaim_expired(self, stop_event: threading.Event) -> int:
        now = self._clock()
        with get_db_sync(self._reclaimer_session_factory) as db:
            expired_ids = list(
                db.scalars(select(SessionRecord.id).where(SessionRecord.expires_at <= now))
            )

        reclaimed = 0
        for index, session_id in enumerate(expired_ids):
            if stop_event.is_set():
                logger.info(
                    "Sweep interrupted by shutdown; %d expired session(s) left",
                    len(expired_ids) - index,
                )
                break
            if self._reclaim_one(session_id, now):
                reclaimed += 1
        return reclaimed

    def _reclaim_one(self, session_id: str, now: datetime) -> bool:
        # The no-op claim takes the write lock before the callback runs. A
        # concurrent save lands either before the claim, which then matches
        # nothing, or after the delete, which makes it reissue the session.
        try:
            with get_db_sync(self._reclaimer_session_factory) as db:
                claimed = db.execute(
                    update(SessionRecord)
                    .where(
                        SessionRecord.id == session_id,
                        SessionRecord.expires_at <= now,
                    )
                    .values(modified_at=SessionRecord.modified_at)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount == 0:
                    return False

                record = db.scalar(
                    select(SessionRecord).where(
                        SessionRecord.id == session_id,
                        SessionRecord.expires_at <= now,
                    )
                )
                if record is None:
                    return False

                self._notify_pre_delete(record)

                result = db.execute(
                    delete(SessionRecord).where(
                        SessionRecord.id == session_id,
                        SessionRecord.expires_at <= now,
                    )
                )
                db.commit()
        except SQLAlchemyError as e:
            logger.warning(
                "Could not reclaim session %s: %s",
                mask_session_id(session_id),
                e,
            )
            return False
        return result.rowcount > 0

    def _notify_pre_delete(self, record: SessionRecord) -> None:
        callback = self._pre_delete_callback
        if callback is None:
            return

        try:
            values = self._codec.decode(record.payload)
        except PayloadDecodeError as e:
            logger.warning(
                "Expired session %s has an unreadable payload (%s); skipping callback",
                mask_session_id(record.id),
                e,
            )
            return

        session = Session(
            name=self.options.session_cookie_name,
            max_age=self.options.max_age,
            values=values,
            id=record.id,
            is_new=False,
            created_at=record.created_at,
            expires_at=record.expires_at,
        )
        try:
            callback(session)
        except Exception:
            logger.exception("Pre-delete callback failed for session %s", mask_session_id(record.id))
