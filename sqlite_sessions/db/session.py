from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

# Milliseconds a connection waits for a competing SQLite writer before failing
SQLITE_BUSY_TIMEOUT_MS = 5000


def is_sqlite(url: URL) -> bool:
    return url.get_backend_name() == "sqlite"


def sqlite_file_path(database_url: str) -> Optional[Path]:
    """Return the database file of a file-backed SQLite URL, else None"""
    url = make_url(database_url)
    if not is_sqlite(url) or url.database in (None, "", ":memory:"):
        return None
    return Path(url.database)


# Determine database-specific connection arguments
def get_connect_args(url: URL) -> Dict[str, Any]:
    """Get database-specific connection arguments"""
    if is_sqlite(url):
        # Request threads and the reclaimer thread share pooled connections
        return {"check_same_thread": False}
    # PostgreSQL and other databases don't need special args
    return {}


def _configure_sqlite(engine: Engine) -> None:
    """
    Put pysqlite connections in WAL mode and let SQLAlchemy emit BEGIN.

    The pysqlite driver defers BEGIN until the first write, so a transaction
    that starts with a SELECT would not read from a single snapshot. Taking over
    BEGIN makes every transaction, including the reclaimer's read-then-delete,
    see one consistent view of the table.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        finally:
            cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN")


def create_session_engine(database_url: str) -> Engine:
    """Create the engine backing one session store"""
    url = make_url(database_url)
    engine = create_engine(url, connect_args=get_connect_args(url))
    if is_sqlite(url):
        _configure_sqlite(engine)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to the given engine"""
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@contextmanager
def get_db_sync(factory: sessionmaker) -> Generator[Session, None, None]:
    """Get a synchronous DB session with proper resource management"""
    db = factory()
    try:
        yield db
    finally:
        db.close()
