"""
Encryption utilities for session payloads.

Session values are serialized to JSON and sealed with Fernet (AES-CBC plus an
HMAC-SHA256 tag). The Fernet key is derived from the store's secret key with
PBKDF2, salted per deployment, so payloads cannot be read or forged without
the secret.
"""

import base64
import functools
import hashlib
import json
import logging
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, Optional, Union

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from sqlite_sessions.core.config import DEFAULT_KDF_ITERATIONS
from sqlite_sessions.core.exceptions import (
    AuthenticationFailedError,
    EncodingFailedError,
    MalformedPayloadError,
)

logger = logging.getLogger(__name__)

SALT_FILE_NAME = ".session_salt"
SALT_LENGTH = 16


def _fallback_salt(secret_key: str) -> bytes:
    """Deterministic salt for deployments without a writable database directory"""
    return hashlib.sha256(b"sqlite-sessions-salt:" + secret_key.encode("utf-8")).digest()[:SALT_LENGTH]


def get_or_create_salt(salt_dir: Optional[Path], secret_key: str) -> bytes:
    """
    Get the deployment salt for key derivation, creating it on first use.

    The salt lives beside the SQLite database so every process sharing the
    database derives the same key.

    Args:
        salt_dir: Directory holding the salt file, None for non-file databases
        secret_key: Secret key, used for the deterministic fallback salt

    Returns:
        16-byte salt for PBKDF2 key derivation
    """
    if salt_dir is None:
        return _fallback_salt(secret_key)

    salt_file = salt_dir / SALT_FILE_NAME

    try:
        salt = salt_file.read_bytes()
        if len(salt) == SALT_LENGTH:
            return salt
        logger.warning("Invalid session salt file %s, regenerating", salt_file)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not read session salt file: %s; using fallback salt", e)
        return _fallback_salt(secret_key)

    salt = secrets.token_bytes(SALT_LENGTH)
    temp_path = None
    try:
        salt_dir.mkdir(parents=True, exist_ok=True)
        # Write the complete salt to a temp file, then publish it atomically
        temp_fd, temp_path = tempfile.mkstemp(dir=str(salt_dir), prefix=".salt_tmp_")
        try:
            os.write(temp_fd, salt)
        finally:
            os.close(temp_fd)
        os.chmod(temp_path, 0o600)

        try:
            os.link(temp_path, salt_file)
            logger.info("Created new session salt file at %s", salt_file)
            return salt
        except FileExistsError:
            existing = salt_file.read_bytes()
            if len(existing) == SALT_LENGTH:
                logger.debug("Using session salt created by another process")
                return existing
            os.replace(temp_path, salt_file)
            temp_path = None
            logger.info("Replaced corrupted session salt file at %s", salt_file)
            return salt
    except OSError as e:
        logger.warning("Could not persist session salt: %s; using fallback salt", e)
        return _fallback_salt(secret_key)
    finally:
        if temp_path is not None:
            try:
                os.unlink(temp_path)
            except OSError:
                pass


@functools.lru_cache(maxsize=32)
def _derive_fernet_key(secret_key: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret_key.encode("utf-8")))


class SessionCodec:
    """Serializes, seals and verifies session payloads."""

    def __init__(self, secret_key: str, salt: bytes, iterations: int = DEFAULT_KDF_ITERATIONS):
        self.cipher = Fernet(_derive_fernet_key(secret_key, salt, iterations))

    def encode(self, values: dict[str, Any]) -> str:
        """
        Seal session values for storage.

        Args:
            values: Mapping of session keys to JSON-serializable values

        Returns:
            Fernet token (URL-safe base64 string)

        Raises:
            EncodingFailedError: If the values cannot be serialized
        """
        try:
            json_data = json.dumps(values, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            logger.error(
                "Failed to encode session values",
                extra={"error_type": type(e).__name__},
            )
            raise EncodingFailedError(f"Session values are not serializable: {e}") from e

        return self.cipher.encrypt(json_data.encode("utf-8")).decode("utf-8")

    def decode(self, token: Union[str, bytes]) -> dict[str, Any]:
        """
        Verify and open a sealed payload.

        The authentication tag is checked before any content is parsed.

        Raises:
            AuthenticationFailedError: If the token was modified or forged
            MalformedPayloadError: If the verified content is not a JSON object
        """
        try:
            decrypted_bytes = self.cipher.decrypt(token)
        except (InvalidToken, TypeError, ValueError) as e:
            raise AuthenticationFailedError("Session payload failed authentication") from e

        try:
            values = json.loads(decrypted_bytes.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedPayloadError("Session payload is not valid JSON") from e

        if not isinstance(values, dict):
            raise MalformedPayloadError("Session payload is not a mapping")

        return values
