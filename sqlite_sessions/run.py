#!/usr/bin/env python3
"""Run the session service"""
import uvicorn

from sqlite_sessions.core.config import settings
from sqlite_sessions.core.logging_config import init_application_logging

if __name__ == "__main__":
    init_application_logging()
    uvicorn.run(
        "sqlite_sessions.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )
