"""Row conversion helpers shared between the memory and postgres identity stores."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from reflective_auth.storage.models import Identity


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict row or attribute row, tolerating absence."""
    if row is None:
        return default
    if isinstance(row, dict):
        return row.get(key, default)
    return getattr(row, key, default)


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Accept datetimes or ISO strings; always return an aware UTC datetime."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        value = raw
    else:
        value = datetime.fromisoformat(str(raw))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def identity_from_row(row: Any) -> Identity:
    created_at = parse_timestamp(safe_row_value(row, "created_at"))
    return Identity(
        id=str(safe_row_value(row, "id")),
        email=str(safe_row_value(row, "email")),
        password_hash=str(safe_row_value(row, "password_hash")),
        name=safe_row_value(row, "name") or "",
        is_active=bool(safe_row_value(row, "is_active", True)),
        two_factor_enabled=bool(safe_row_value(row, "two_factor_enabled", False)),
        two_factor_prompted=bool(safe_row_value(row, "two_factor_prompted", False)),
        last_login_at=parse_timestamp(safe_row_value(row, "last_login_at")),
        created_at=created_at or datetime.now(timezone.utc),
    )


def identity_to_row(identity: Identity) -> Dict[str, Any]:
    return {
        "id": identity.id,
        "email": identity.email,
        "password_hash": identity.password_hash,
        "name": identity.name,
        "is_active": identity.is_active,
        "two_factor_enabled": identity.two_factor_enabled,
        "two_factor_prompted": identity.two_factor_prompted,
        "last_login_at": identity.last_login_at.isoformat() if identity.last_login_at else None,
        "created_at": identity.created_at.isoformat(),
    }
