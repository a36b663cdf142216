from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

from reflective_auth.logging import email_hash, get_logger
from reflective_auth.service.challenges import ChallengeIssuer, ChallengeVerifier
from reflective_auth.service.credentials import CredentialVerifier, IdentityStore
from reflective_auth.service.email import CodeSender
from reflective_auth.service.errors import (
    AccountDeactivated,
    ConflictError,
    NotEligible,
    RateLimitedError,
    TokenInvalid,
    ValidationError,
    store_unavailable_on_error,
)
from reflective_auth.service.tokens import SessionTokenIssuer
from reflective_auth.storage.challenge_store import ChallengeStore
from reflective_auth.storage.errors import ConstraintViolation
from reflective_auth.storage.models import Identity, normalize_email

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_CODE_RE = re.compile(r"^[0-9]{6}$")
MAX_EMAIL_LENGTH = 254
MIN_PASSWORD_LENGTH = 6
MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 100

# Requests per minute, per email address
DEFAULT_RATE_LIMITS = {"login": 10, "verify": 10, "resend": 3}


@dataclass(frozen=True)
class ChallengeIssued:
    """Outcome of a step that mailed a code; the caller must verify it next."""

    email: str
    expires_at: float
    expires_in_seconds: int


def _validate_email(email: Any) -> str:
    if not isinstance(email, str):
        raise ValidationError("email is required", detail={"field": "email"})
    normalized = normalize_email(email)
    if len(normalized) > MAX_EMAIL_LENGTH or not _EMAIL_RE.match(normalized):
        raise ValidationError("invalid email format", detail={"field": "email"})
    return normalized


def _validate_code(code: Any) -> str:
    if not isinstance(code, str) or not _CODE_RE.match(code):
        raise ValidationError(
            "verification code must be exactly 6 digits", detail={"field": "code"}
        )
    return code


def _validate_name(name: Any) -> str:
    if not isinstance(name, str):
        raise ValidationError("name is required", detail={"field": "name"})
    name = name.strip()
    if not MIN_NAME_LENGTH <= len(name) <= MAX_NAME_LENGTH:
        raise ValidationError(
            f"name must be between {MIN_NAME_LENGTH} and {MAX_NAME_LENGTH} characters",
            detail={"field": "name"},
        )
    return name


class AuthService:
    """Login, emailed two-factor verification and session token checks.

    Every login ends in a challenge; a session token is only minted by
    :meth:`verify_challenge`. Identities created before two-factor was
    mandatory are enrolled on their next login.
    """

    def __init__(
        self,
        store: IdentityStore,
        challenge_store: ChallengeStore,
        sender: CodeSender,
        *,
        credentials: CredentialVerifier,
        issuer: ChallengeIssuer,
        verifier: ChallengeVerifier,
        tokens: SessionTokenIssuer,
        rate_limits: Optional[Mapping[str, int]] = None,
    ) -> None:
        self.store = store
        self.challenge_store = challenge_store
        self.sender = sender
        self.credentials = credentials
        self.issuer = issuer
        self.verifier = verifier
        self.tokens = tokens
        self.rate_limits = {**DEFAULT_RATE_LIMITS, **(rate_limits or {})}
        self.logger = logger

    async def check_rate_limit(self, action: str, email: str) -> None:
        limit = self.rate_limits.get(action)
        if not limit:
            return
        with store_unavailable_on_error():
            allowed = await self.challenge_store.check_rate_limit(
                f"{action}:{email}", limit, 60
            )
        if not allowed:
            self.logger.warning(
                "rate_limit_exceeded", action=action, email_hash=email_hash(email)
            )
            raise RateLimitedError(
                "too many requests, please wait before trying again",
                detail={"retry_after_seconds": 60},
            )

    def _issued(self, identity: Identity, expires_at: float) -> ChallengeIssued:
        return ChallengeIssued(
            email=identity.email,
            expires_at=expires_at,
            expires_in_seconds=self.issuer.ttl_seconds,
        )

    async def login(self, email: str, password: str) -> ChallengeIssued:
        email = _validate_email(email)
        if not isinstance(password, str) or not password:
            raise ValidationError("password is required", detail={"field": "password"})
        await self.check_rate_limit("login", email)
        identity = await asyncio.to_thread(self.credentials.verify, email, password)

        if not identity.two_factor_enabled:
            identity.two_factor_enabled = True
            identity.two_factor_prompted = True
            with store_unavailable_on_error():
                identity = self.store.save_identity(identity)
            self.logger.info("two_factor_enrolled_on_login", identity_id=identity.id)

        challenge = await self.issuer.issue(identity)
        self.logger.info("login_challenge_sent", identity_id=identity.id)
        return self._issued(identity, challenge.expires_at)

    async def verify_challenge(self, email: str, code: str) -> Tuple[dict, str]:
        email = _validate_email(email)
        code = _validate_code(code)
        await self.check_rate_limit("verify", email)
        identity = await self.verifier.verify(email, code)
        if not identity.is_active:
            raise AccountDeactivated()
        token = self.tokens.issue(identity)
        self.logger.info("login_completed", identity_id=identity.id)
        return identity.summary(), token

    async def resend_challenge(self, email: str) -> ChallengeIssued:
        email = _validate_email(email)
        await self.check_rate_limit("resend", email)
        with store_unavailable_on_error():
            identity = self.store.get_identity_by_email(email)
        if identity is None or not identity.two_factor_enabled or not identity.is_active:
            self.logger.info("resend_not_eligible", email_hash=email_hash(email))
            raise NotEligible()
        challenge = await self.issuer.issue(identity)
        return self._issued(identity, challenge.expires_at)

    async def verify_token(self, token: Optional[str]) -> Identity:
        claims = self.tokens.verify(token)
        with store_unavailable_on_error():
            identity = self.store.get_identity(claims.subject)
        if identity is None:
            self.logger.warning("session_token_unknown_subject", sub=claims.subject)
            raise TokenInvalid("unknown_subject")
        if not identity.is_active:
            raise AccountDeactivated()
        return identity

    async def register(self, name: str, email: str, password: str) -> ChallengeIssued:
        name = _validate_name(name)
        email = _validate_email(email)
        if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        with store_unavailable_on_error():
            existing = self.store.get_identity_by_email(email)
        if existing is not None:
            raise ConflictError("email already registered", detail={"field": "email"})

        password_hash = await asyncio.to_thread(self.credentials.hash_password, password)
        candidate = Identity.new(
            email,
            password_hash,
            name=name,
            two_factor_enabled=True,
            two_factor_prompted=True,
        )
        try:
            with store_unavailable_on_error():
                identity = self.store.create_identity(candidate)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.logger.info(
            "identity_registered", identity_id=identity.id, email_hash=email_hash(email)
        )

        await asyncio.to_thread(self.sender.send_welcome, identity.email, identity.name)
        challenge = await self.issuer.issue(identity)
        return self._issued(identity, challenge.expires_at)

    async def two_factor_status(self, identity: Identity) -> dict:
        return {
            "two_factor_enabled": identity.two_factor_enabled,
            "two_factor_prompted": identity.two_factor_prompted,
        }

    async def update_profile(self, identity: Identity, name: str) -> dict:
        identity.name = _validate_name(name)
        with store_unavailable_on_error():
            updated = self.store.save_identity(identity)
        self.logger.info("profile_updated", identity_id=updated.id)
        return updated.summary()
