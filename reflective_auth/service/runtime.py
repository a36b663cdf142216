from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from reflective_auth.config import ChallengeStoreMode, Settings, get_settings
from reflective_auth.logging import get_logger
from reflective_auth.service.auth import AuthService
from reflective_auth.service.challenges import ChallengeIssuer, ChallengeVerifier
from reflective_auth.service.credentials import CredentialVerifier, IdentityStore
from reflective_auth.service.email import CodeSender, EmailService
from reflective_auth.service.tokens import SessionTokenIssuer
from reflective_auth.storage.challenge_store import ChallengeStore, MemoryChallengeStore
from reflective_auth.storage.memory import MemoryStore
from reflective_auth.storage.postgres import PostgresStore
from reflective_auth.storage.redis_cache import RedisChallengeStore

logger = get_logger(__name__)

SWEEP_INTERVAL_SECONDS = 60.0


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Owns the process's store clients and the services built on them.

    Construction only wires objects together; network resources are opened
    by :meth:`connect` and released by :meth:`close`, which the FastAPI
    lifespan calls once each. Any collaborator can be passed in, which is how
    tests run without Postgres, Redis or SMTP.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[IdentityStore] = None,
        challenges: Optional[ChallengeStore] = None,
        email: Optional[CodeSender] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            challenge_store=self.settings.challenge_store.value,
            test_mode=self.settings.test_mode,
        )

        self.store = store if store is not None else self._build_identity_store()
        self.challenges = (
            challenges if challenges is not None else self._build_challenge_store(clock)
        )
        self.email = email if email is not None else self._build_email()

        self.credentials = CredentialVerifier(self.store)
        self.tokens = SessionTokenIssuer(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ttl_minutes=self.settings.token_ttl_minutes,
            leeway_seconds=self.settings.token_clock_skew_seconds,
            clock=clock,
        )
        self.auth = AuthService(
            self.store,
            self.challenges,
            self.email,
            credentials=self.credentials,
            issuer=ChallengeIssuer(
                self.challenges,
                self.email,
                ttl_seconds=self.settings.challenge_ttl_seconds,
                clock=clock,
            ),
            verifier=ChallengeVerifier(
                self.challenges,
                self.store,
                max_attempts=self.settings.challenge_max_attempts,
                clock=clock,
            ),
            tokens=self.tokens,
            rate_limits={
                "login": self.settings.login_rate_limit_per_minute,
                "verify": self.settings.verify_rate_limit_per_minute,
                "resend": self.settings.resend_rate_limit_per_minute,
            },
        )
        self._sweep_task: Optional[asyncio.Task] = None

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            challenge_store_type=type(self.challenges).__name__,
            email_configured=getattr(self.email, "is_configured", True),
        )

    def _build_identity_store(self) -> IdentityStore:
        if self.settings.use_memory_store:
            return MemoryStore(fs_root=self.settings.shared_fs_root)
        return PostgresStore(self.settings.database_url)

    def _build_challenge_store(self, clock: Callable[[], float]) -> ChallengeStore:
        if self.settings.challenge_store == ChallengeStoreMode.MEMORY:
            logger.warning(
                "challenge_store_in_memory",
                message="challenges are not shared between processes",
            )
            return MemoryChallengeStore(clock=clock)
        return RedisChallengeStore(
            self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
        )

    def _build_email(self) -> EmailService:
        return EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            timeout=self.settings.smtp_timeout,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            code_ttl_minutes=max(self.settings.challenge_ttl_seconds // 60, 1),
            dev_mode=self.settings.email_dev_mode,
        )

    async def connect(self) -> None:
        """Open store connections; raises if a store is unreachable."""
        try:
            await asyncio.to_thread(self.store.connect)
            await self.challenges.connect()
        except Exception as exc:
            logger.error(
                "runtime_connect_failed",
                error_type=type(exc).__name__,
                redis_url=_mask_url_password(self.settings.redis_url),
            )
            # Release whatever opened before the failure
            await self._close_stores()
            raise
        if isinstance(self.challenges, MemoryChallengeStore):
            self._sweep_task = asyncio.create_task(self._sweep_loop(self.challenges))
        logger.info("runtime_connected")

    async def _sweep_loop(self, challenges: MemoryChallengeStore) -> None:
        while True:
            await asyncio.sleep(SWEEP_INTERVAL_SECONDS)
            challenges.sweep_expired()

    async def close(self) -> None:
        """Release store connections. Errors are logged so every resource is closed."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        await self._close_stores()
        logger.info("runtime_closed")

    async def _close_stores(self) -> None:
        try:
            await self.challenges.close()
        except Exception as exc:
            logger.warning("challenge_store_close_failed", error_type=type(exc).__name__)
        try:
            await asyncio.to_thread(self.store.close)
        except Exception as exc:
            logger.warning("identity_store_close_failed", error_type=type(exc).__name__)

    async def ping(self) -> dict:
        """Check both stores; used by the health endpoint."""
        status = {}
        for name, check in (
            ("identity_store", lambda: asyncio.to_thread(self.store.ping)),
            ("challenge_store", self.challenges.ping),
        ):
            try:
                await check()
                status[name] = "ok"
            except Exception as exc:
                logger.warning("health_check_failed", component=name, error_type=type(exc).__name__)
                status[name] = "unavailable"
        return status
