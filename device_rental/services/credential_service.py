from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
from datetime import datetime
from typing import Callable, Protocol

from sqlalchemy.orm import Session

from device_rental.models.credential_models import AdminCredential


ADMIN_CREDENTIAL_KEY = "admin"
MIN_PASSWORD_LENGTH = 4
AUTH_LOGGER = logging.getLogger("device_rental.auth")


class InvalidCredentialsError(RuntimeError):
    pass


class CredentialVerifier(Protocol):
    def verify(self, secret: str) -> bool:
        ...


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


class StoredHashVerifier:
    """Checks a secret against the salted digest kept in the credential store."""

    def __init__(self, session_factory: Callable[[], Session], credential_key: str = ADMIN_CREDENTIAL_KEY):
        self._session_factory = session_factory
        self.credential_key = credential_key

    def verify(self, secret: str) -> bool:
        candidate = secret or ""
        if not candidate:
            return False
        with self._session_factory() as db:
            row = db.get(AdminCredential, self.credential_key)
            stored_hash = row.PasswordHash if row else None
            stored_salt = row.PasswordSalt if row else None
        if not stored_hash or not stored_salt:
            AUTH_LOGGER.error("No password hash stored for credential key=%s", self.credential_key)
            return False
        return hmac.compare_digest(_password_hash(candidate, stored_salt), stored_hash)


def set_admin_password(
    db: Session,
    password: str,
    credential_key: str = ADMIN_CREDENTIAL_KEY,
    now: datetime | None = None,
) -> AdminCredential:
    password = password or ""
    if len(password.strip()) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")

    salt = secrets.token_hex(16)
    row = db.get(AdminCredential, credential_key)
    if row is None:
        row = AdminCredential(CredentialKey=credential_key)
        db.add(row)
    row.PasswordSalt = salt
    row.PasswordHash = _password_hash(password, salt)
    row.PasswordUpdatedAt = int(time.time())
    if now is not None:
        row.UpdatedAt = now
    db.commit()
    return row


def require_valid_credential(verifier: CredentialVerifier, secret: str | None, action: str) -> None:
    if not verifier.verify(secret or ""):
        AUTH_LOGGER.warning("Credential rejected action=%s", action)
        raise InvalidCredentialsError("Invalid credentials.")
