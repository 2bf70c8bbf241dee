"""
Rate limiter configuration module.

This module creates the SlowAPI rate limiter instance that can be imported
by route modules without circular import issues.
"""

import logging
from typing import Optional

from slowapi import Limiter
from slowapi.util import get_remote_address

from sqlite_sessions.core.config import settings

# Initialize logging
logger = logging.getLogger(__name__)


def get_limiter_storage(redis_url: Optional[str]) -> Optional[str]:
    """
    Get the storage backend for rate limiting.

    Returns the Redis URL if configured and well formed, otherwise None
    (in-memory storage).
    """
    if not redis_url:
        return None
    if not redis_url.startswith(("redis://", "rediss://")):
        logger.warning("Invalid redis_url format. Using in-memory storage instead.")
        return None
    logger.info("Using Redis backend for rate limiting")
    return redis_url


def create_limiter(redis_url: Optional[str] = None) -> Limiter:
    """
    Create and configure the SlowAPI rate limiter.

    In-memory storage is suitable for single-instance deployments, while Redis
    is required when several instances share the session database.

    Returns:
        Configured Limiter instance
    """
    storage_uri = get_limiter_storage(redis_url)

    if storage_uri:
        return Limiter(
            key_func=get_remote_address,
            storage_uri=storage_uri,
            default_limits=[],  # No default limits - apply explicitly per endpoint
        )
    logger.debug("Using in-memory storage for rate limiting")
    return Limiter(
        key_func=get_remote_address,
        default_limits=[],  # No default limits - apply explicitly per endpoint
    )


def admin_rate_limit() -> str:
    """Current limit for administrative endpoints, read per request"""
    return settings.admin_rate_limit


# Create the rate limiter instance - this is the single instance used throughout the app
limiter = create_limiter(settings.redis_url)
