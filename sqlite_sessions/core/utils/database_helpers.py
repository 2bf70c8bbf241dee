"""
Database helper utilities for the session store.

Provides health and metadata checks used by the health endpoint and the
database setup script.
"""

import logging
from typing import Any, Dict

from sqlalchemy import func, inspect, select, text
from sqlalchemy.engine import Engine

from sqlite_sessions.db.models.session_record import SessionRecord

logger = logging.getLogger(__name__)


def get_database_type(engine: Engine) -> str:
    """
    Get the database type of an engine.

    Returns:
        str: Database type ('sqlite', 'postgresql', etc.)
    """
    return engine.url.get_backend_name()


def get_database_info(engine: Engine) -> Dict[str, Any]:
    """
    Get database connection information and metadata.

    Returns:
        Dict containing database type, connection status, and metadata
    """
    db_type = get_database_type(engine)
    info: Dict[str, Any] = {
        "type": db_type,
        "connected": False,
        "tables": [],
        "version": None,
        "session_count": None,
        "error": None,
    }

    try:
        with engine.connect() as conn:
            info["connected"] = True

            if db_type == "sqlite":
                info["version"] = conn.execute(text("SELECT sqlite_version()")).scalar()
            elif db_type == "postgresql":
                version_str = conn.execute(text("SELECT version()")).scalar()
                info["version"] = version_str.split()[1] if version_str else "unknown"

            info["tables"] = inspect(conn).get_table_names()
            if SessionRecord.__tablename__ in info["tables"]:
                info["session_count"] = conn.execute(
                    select(func.count()).select_from(SessionRecord)
                ).scalar()

    except Exception as e:
        logger.error(f"Database connection error: {e}")
        info["error"] = str(e)

    return info


def check_database_health(engine: Engine) -> Dict[str, Any]:
    """
    Perform database health check.

    Returns:
        Dict containing health status and metrics
    """
    health: Dict[str, Any] = {
        "status": "healthy",
        "database_type": get_database_type(engine),
        "connected": False,
        "session_count": None,
        "last_error": None,
    }

    db_info = get_database_info(engine)
    health["connected"] = db_info["connected"]
    health["session_count"] = db_info["session_count"]

    if db_info["error"]:
        health["status"] = "unhealthy"
        health["last_error"] = db_info["error"]
    elif SessionRecord.__tablename__ not in db_info["tables"]:
        health["status"] = "warning"
        health["last_error"] = "Sessions table not found - database may need initialization"

    return health
