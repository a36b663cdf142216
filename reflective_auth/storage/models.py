from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Emails are unique case-insensitively; stores only see this form."""
    return email.strip().lower()


@dataclass
class Identity:
    id: str
    email: str
    password_hash: str
    name: str = ""
    is_active: bool = True
    two_factor_enabled: bool = False
    two_factor_prompted: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        name: str = "",
        two_factor_enabled: bool = False,
        two_factor_prompted: bool = False,
        is_active: bool = True,
    ) -> "Identity":
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            password_hash=password_hash,
            name=name,
            is_active=is_active,
            two_factor_enabled=two_factor_enabled,
            two_factor_prompted=two_factor_prompted,
        )

    def summary(self) -> Dict[str, Any]:
        """Public view of the identity; never includes the password hash."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "created_at": self.created_at.isoformat(),
            "two_factor_enabled": self.two_factor_enabled,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
        }


@dataclass
class Challenge:
    """One pending emailed code. Timestamps are epoch seconds."""

    code: str
    identity_id: str
    issued_at: float
    expires_at: float
    failed_attempts: int = 0

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_record(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "identity_id": self.identity_id,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
            "failed_attempts": self.failed_attempts,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Challenge":
        # Redis hands back strings for every field; the code stays a string
        return cls(
            code=str(record["code"]),
            identity_id=str(record.get("identity_id", "")),
            issued_at=float(record["issued_at"]),
            expires_at=float(record["expires_at"]),
            failed_attempts=int(record.get("failed_attempts", 0)),
        )
