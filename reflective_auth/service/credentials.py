from __future__ import annotations

import secrets
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from reflective_auth.logging import email_hash, get_logger
from reflective_auth.service.errors import (
    AccountDeactivated,
    InvalidCredentials,
    store_unavailable_on_error,
)
from reflective_auth.storage.models import Identity, normalize_email

logger = get_logger(__name__)


class IdentityStore(Protocol):
    def create_identity(self, identity: Identity) -> Identity: ...

    def save_identity(self, identity: Identity) -> Identity: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def connect(self) -> None: ...

    def ping(self) -> None: ...

    def close(self) -> None: ...


class CredentialVerifier:
    """Checks an email/password pair against the identity store.

    Unknown emails and wrong passwords raise the same error after the same
    amount of argon2 work; the account status is only revealed to a caller
    who knows the password.
    """

    def __init__(self, store: IdentityStore, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when the identity is absent
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash_password(self, password: str) -> str:
        return self._hasher.hash(password)

    def _matches(self, stored_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    def verify(self, email: str, password: str) -> Identity:
        email = normalize_email(email)
        with store_unavailable_on_error():
            identity = self.store.get_identity_by_email(email)
        if identity is None:
            self._matches(self._dummy_hash, password)
            logger.info("credential_check_failed", email_hash=email_hash(email))
            raise InvalidCredentials()
        if not self._matches(identity.password_hash, password):
            logger.info(
                "credential_check_failed",
                email_hash=email_hash(email),
                identity_id=identity.id,
            )
            raise InvalidCredentials()
        if not identity.is_active:
            logger.warning("credential_check_inactive", identity_id=identity.id)
            raise AccountDeactivated()
        return identity
