"""
Exception hierarchy for the session store.

Validity problems (forged cookies, corrupt or expired payloads) are handled
inside the store and turned into a fresh session. Infrastructure and
configuration problems are raised to the caller as one of these types.
"""

from typing import Optional


class SessionStoreError(Exception):
    """Base class for all session store errors"""
    pass


class ConfigInvalidError(SessionStoreError):
    """Raised when store options are missing or out of range"""
    pass


class StorageUnavailableError(SessionStoreError):
    """Raised when the backing table cannot be opened, read or written"""
    pass


class EncodingFailedError(SessionStoreError):
    """Raised when session values cannot be serialized or sealed"""
    pass


class PayloadDecodeError(SessionStoreError):
    """Base class for payloads and cookies that cannot be trusted"""
    pass


class AuthenticationFailedError(PayloadDecodeError):
    """Raised when an authentication tag or signature does not verify"""
    pass


class MalformedPayloadError(PayloadDecodeError):
    """Raised when an authenticated payload does not hold a session mapping"""
    pass


class SessionNotFoundError(SessionStoreError):
    """Raised by administrative deletes for an id with no stored record"""

    def __init__(self, session_id: str, message: Optional[str] = None):
        self.session_id = session_id
        super().__init__(message or "Session not found")
