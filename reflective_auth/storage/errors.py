from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreError(Exception):
    """Raised when a backing store cannot be reached or times out.

    ``backend`` names the store (``redis``, ``postgres``...) for server-side
    logs; it is never rendered into a response.
    """

    def __init__(self, message: str, *, backend: str, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.operation = operation


__all__ = ["ConstraintViolation", "StoreError"]
