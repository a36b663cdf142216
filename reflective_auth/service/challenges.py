from __future__ import annotations

import asyncio
import hmac
import secrets
import time
from datetime import datetime, timezone
from typing import Callable

from reflective_auth.logging import email_hash, get_logger
from reflective_auth.service.credentials import IdentityStore
from reflective_auth.service.email import CodeSender, DeliveryError
from reflective_auth.service.errors import (
    ChallengeNotFound,
    DeliveryFailed,
    InvalidCode,
    LockedOut,
    StoreUnavailable,
    store_unavailable_on_error,
)
from reflective_auth.storage.challenge_store import ChallengeStore
from reflective_auth.storage.errors import StoreError
from reflective_auth.storage.models import Challenge, Identity, normalize_email

logger = get_logger(__name__)

CODE_LENGTH = 6
DEFAULT_TTL_SECONDS = 600
DEFAULT_MAX_ATTEMPTS = 3


def generate_code() -> str:
    """Uniform 6-digit code in [100000, 999999], as a string."""
    return f"{secrets.randbelow(900000) + 100000:0{CODE_LENGTH}d}"


def challenge_key(email: str) -> str:
    return f"2fa:{normalize_email(email)}"


class ChallengeIssuer:
    """Creates (or replaces) the pending challenge for an identity and mails the code."""

    def __init__(
        self,
        store: ChallengeStore,
        sender: CodeSender,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        code_factory: Callable[[], str] = generate_code,
    ) -> None:
        self.store = store
        self.sender = sender
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._code_factory = code_factory

    async def issue(self, identity: Identity) -> Challenge:
        now = self._clock()
        challenge = Challenge(
            code=self._code_factory(),
            identity_id=identity.id,
            issued_at=now,
            expires_at=now + self.ttl_seconds,
        )
        key = challenge_key(identity.email)
        try:
            await self.store.set(key, challenge.to_record(), self.ttl_seconds)
        except StoreError as exc:
            raise StoreUnavailable(backend=exc.backend) from exc

        try:
            await asyncio.to_thread(
                self.sender.send_verification_code, identity.email, challenge.code
            )
        except DeliveryError as exc:
            logger.error(
                "challenge_delivery_failed",
                identity_id=identity.id,
                error=str(exc),
            )
            await self._rollback(key, identity)
            raise DeliveryFailed(backend="smtp") from exc

        logger.info(
            "challenge_issued",
            identity_id=identity.id,
            email_hash=email_hash(identity.email),
            expires_at=challenge.expires_at,
        )
        return challenge

    async def _rollback(self, key: str, identity: Identity) -> None:
        try:
            await self.store.delete(key)
        except StoreError as exc:
            logger.error(
                "challenge_rollback_failed",
                identity_id=identity.id,
                backend=exc.backend,
            )


class ChallengeVerifier:
    """Checks a submitted code against the pending challenge.

    A challenge is consumed by its first correct submission, by reaching
    ``max_attempts`` failures, or by expiring. On success the identity's
    ``last_login_at`` is updated and the identity is returned.
    """

    def __init__(
        self,
        store: ChallengeStore,
        identities: IdentityStore,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.identities = identities
        self.max_attempts = max_attempts
        self._clock = clock

    async def verify(self, email: str, submitted_code: str) -> Identity:
        key = challenge_key(email)
        with store_unavailable_on_error():
            record = await self.store.get(key)
        if record is None:
            raise ChallengeNotFound()
        challenge = Challenge.from_record(record)

        if challenge.is_expired(self._clock()):
            with store_unavailable_on_error():
                await self.store.delete(key)
            logger.info("challenge_expired", identity_id=challenge.identity_id)
            raise ChallengeNotFound()

        if challenge.failed_attempts >= self.max_attempts:
            with store_unavailable_on_error():
                await self.store.delete(key)
            logger.warning("challenge_locked_out", identity_id=challenge.identity_id)
            raise LockedOut()

        if not hmac.compare_digest(challenge.code.encode(), submitted_code.encode()):
            with store_unavailable_on_error():
                failures = await self.store.increment_field(key, "failed_attempts")
            if failures is None:
                raise ChallengeNotFound()
            logger.info(
                "challenge_code_mismatch",
                identity_id=challenge.identity_id,
                failed_attempts=failures,
            )
            if failures >= self.max_attempts:
                # The failure that reaches the limit locks the challenge out
                with store_unavailable_on_error():
                    await self.store.delete(key)
                logger.warning("challenge_locked_out", identity_id=challenge.identity_id)
                if failures > self.max_attempts:
                    # Lost a race with the submission that reached the limit
                    raise LockedOut()
            raise InvalidCode(attempts_remaining=max(self.max_attempts - failures, 0))

        with store_unavailable_on_error():
            consumed = await self.store.delete(key)
        if not consumed:
            # A concurrent submission already used this code
            raise ChallengeNotFound()

        with store_unavailable_on_error():
            identity = self.identities.get_identity(challenge.identity_id)
            if identity is None or identity.email != normalize_email(email):
                identity = self.identities.get_identity_by_email(email)
            if identity is None:
                raise ChallengeNotFound()
            identity.last_login_at = datetime.now(timezone.utc)
            identity = self.identities.save_identity(identity)
        logger.info("challenge_verified", identity_id=identity.id)
        return identity
