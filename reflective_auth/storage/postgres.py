from __future__ import annotations

import contextlib
from typing import Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from reflective_auth.logging import email_hash, get_logger, sanitize_error_message
from reflective_auth.storage.common import identity_from_row
from reflective_auth.storage.errors import ConstraintViolation, StoreError
from reflective_auth.storage.models import Identity, normalize_email


class PostgresStore:
    """Postgres-backed identity store.

    The pool is created closed; :meth:`connect` opens it and makes sure the
    ``identity`` table exists, :meth:`close` releases it.
    """

    def __init__(
        self,
        dsn: str,
        *,
        connect_timeout: float = 3.0,
        statement_timeout_ms: int = 3000,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.connect_timeout = connect_timeout
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=connect_timeout,
            open=False,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(connect_timeout)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable",
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise StoreError(
                "identity store unavailable", backend="postgres"
            ) from exc

    def connect(self) -> None:
        try:
            self.pool.open(wait=True, timeout=self.connect_timeout)
        except PoolTimeout as exc:
            raise StoreError(
                "identity store unavailable", backend="postgres", operation="connect"
            ) from exc
        self._ensure_schema()

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def _ensure_schema(self) -> None:
        """Create the ``identity`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS identity (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL DEFAULT '',
                    password_hash TEXT NOT NULL,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
                    two_factor_prompted BOOLEAN NOT NULL DEFAULT FALSE,
                    last_login_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def create_identity(self, identity: Identity) -> Identity:
        email = normalize_email(identity.email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO identity (id, email, name, password_hash, is_active,
                                          two_factor_enabled, two_factor_prompted,
                                          last_login_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        identity.id,
                        email,
                        identity.name,
                        identity.password_hash,
                        identity.is_active,
                        identity.two_factor_enabled,
                        identity.two_factor_prompted,
                        identity.last_login_at,
                        identity.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        self.logger.info(
            "identity_created", identity_id=identity.id, email_hash=email_hash(email)
        )
        return identity_from_row(row)

    def save_identity(self, identity: Identity) -> Identity:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE identity
                    SET email = %s,
                        name = %s,
                        password_hash = %s,
                        is_active = %s,
                        two_factor_enabled = %s,
                        two_factor_prompted = %s,
                        last_login_at = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        normalize_email(identity.email),
                        identity.name,
                        identity.password_hash,
                        identity.is_active,
                        identity.two_factor_enabled,
                        identity.two_factor_prompted,
                        identity.last_login_at,
                        identity.id,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if not row:
            raise ConstraintViolation("identity not found", {"id": identity.id})
        return identity_from_row(row)

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM identity WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return identity_from_row(row) if row else None

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM identity WHERE id = %s", (identity_id,)
                ).fetchone()
        except errors.InvalidTextRepresentation:
            # Not a UUID; cannot exist
            return None
        return identity_from_row(row) if row else None
