"""
Security utilities for session identifiers and cookie values.

Session ids are drawn from the ``secrets`` module. The cookie carries the id
together with an HMAC-SHA256 signature keyed from the store's secret key, so a
forged or modified cookie is rejected before the table is consulted.
"""

import hashlib
import hmac
import logging
import secrets

from sqlite_sessions.core.exceptions import AuthenticationFailedError

logger = logging.getLogger(__name__)

# 32 random bytes = 256 bits of entropy per session id
SESSION_ID_BYTES = 32
MIN_SECRET_KEY_LENGTH = 32

_SIGNATURE_SEPARATOR = ":"
_SIGNING_CONTEXT = b"sqlite-sessions/cookie-signature/v1"


def generate_session_id() -> str:
    """
    Generate a new opaque session identifier.

    Returns:
        A URL-safe random string suitable for a primary key and a cookie value
    """
    return secrets.token_urlsafe(SESSION_ID_BYTES)


def validate_secret_key(secret_key: str) -> None:
    """
    Validate that a secret key meets security requirements.

    Args:
        secret_key: The secret key to validate

    Raises:
        ValueError: If the secret key doesn't meet requirements
    """
    if not secret_key:
        raise ValueError("secret key cannot be empty")

    if len(secret_key) < MIN_SECRET_KEY_LENGTH:
        raise ValueError(
            f"secret key must be at least {MIN_SECRET_KEY_LENGTH} characters long"
        )

    # Check for sufficient entropy (at least 8 different characters)
    unique_chars = len(set(secret_key.lower()))
    if unique_chars < 8:
        raise ValueError("secret key has insufficient entropy (too repetitive)")


def mask_session_id(session_id: str) -> str:
    """Shorten a session id for log output"""
    if not session_id:
        return ""
    if len(session_id) > 8:
        return session_id[:6] + "****"
    return "****"


class CookieSigner:
    """Signs and verifies session-id cookie values."""

    def __init__(self, secret_key: str):
        # Signing key is derived from the secret, never the secret itself
        self._key = hmac.new(
            secret_key.encode("utf-8"), _SIGNING_CONTEXT, hashlib.sha256
        ).digest()

    def _signature(self, session_id: str) -> str:
        return hmac.new(self._key, session_id.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign(self, session_id: str) -> str:
        """Return the cookie value for a session id"""
        return f"{session_id}{_SIGNATURE_SEPARATOR}{self._signature(session_id)}"

    def unsign(self, cookie_value: str) -> str:
        """
        Verify a cookie value and extract the session id.

        Args:
            cookie_value: Raw value of the session cookie

        Returns:
            The session id carried by the cookie

        Raises:
            AuthenticationFailedError: If the value is malformed or the signature is wrong
        """
        session_id, separator, signature = cookie_value.rpartition(_SIGNATURE_SEPARATOR)
        if not separator or not session_id or not signature:
            raise AuthenticationFailedError("Session cookie is not signed")

        expected = self._signature(session_id)
        if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("ascii")):
            raise AuthenticationFailedError("Session cookie signature mismatch")

        return session_id
