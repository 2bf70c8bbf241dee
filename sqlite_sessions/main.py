import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from sqlite_sessions import __version__
from sqlite_sessions.api import sessions
from sqlite_sessions.core.config import Settings, settings
from sqlite_sessions.core.exceptions import SessionNotFoundError, StorageUnavailableError
from sqlite_sessions.core.limiter import limiter
from sqlite_sessions.core.logging_config import CorrelationIdMiddleware
from sqlite_sessions.core.utils.database_helpers import check_database_health
from sqlite_sessions.manager import SessionsManager

logger = logging.getLogger(__name__)


async def _session_not_found_handler(request: Request, exc: SessionNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": "Session not found"})


async def _storage_unavailable_handler(request: Request, exc: StorageUnavailableError) -> JSONResponse:
    logger.error(f"Session storage unavailable: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Session storage unavailable"})


def create_app(
    manager: Optional[SessionsManager] = None,
    app_settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the FastAPI application around a session manager.

    The store is opened on startup from ``app_settings`` unless the given
    manager is already initialised, and closed on shutdown.
    """
    app_settings = app_settings or settings
    manager = manager or SessionsManager()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if not manager.initialized:
            manager.initialize_with_options(app_settings.to_store_options())
        try:
            yield
        finally:
            manager.close()

    app = FastAPI(
        title=app_settings.app_name,
        description="Server-side HTTP sessions persisted in SQLite",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.sessions_manager = manager
    app.state.settings = app_settings

    # Attach limiter to app.state for access in route decorators
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(SessionNotFoundError, _session_not_found_handler)
    app.add_exception_handler(StorageUnavailableError, _storage_unavailable_handler)

    app.add_middleware(CorrelationIdMiddleware)

    app.include_router(sessions.router)
    if app_settings.admin_token:
        app.include_router(sessions.admin_router)
    else:
        logger.info("No admin token configured; administrative session routes disabled")

    @app.get("/health", tags=["health"])
    def health() -> dict:
        store = manager.store
        database = check_database_health(store.engine)
        status = "healthy" if database["status"] == "healthy" and store.reclaimer.running else "degraded"
        return {
            "status": status,
            "version": __version__,
            "database": database,
            "reclaimer": {
                "state": store.reclaimer.state.value,
                "sweeps_completed": store.reclaimer.sweeps_completed,
                "sweeps_failed": store.reclaimer.sweeps_failed,
                "ticks_skipped": store.reclaimer.ticks_skipped,
            },
        }

    return app
