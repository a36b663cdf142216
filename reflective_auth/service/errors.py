from __future__ import annotations

import contextlib
from typing import Iterator, Optional

from reflective_auth.storage.errors import StoreError

# Generic message for infrastructure failures; internal detail stays in logs
TRY_AGAIN_MESSAGE = "service temporarily unavailable, please try again"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every outcome of the authentication flow that is not a success is one of
    these. ``error_code`` is the stable code rendered in the error envelope;
    ``kind`` names the exact outcome for logs and callers that need to tell,
    e.g., an expired token from a forged one.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(ServiceError):
    """Malformed input such as an email or code of the wrong shape (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Unknown email or wrong password; deliberately indistinguishable."""

    error_code = "invalid_credentials"

    def __init__(self) -> None:
        super().__init__("invalid email or password")


class AccountDeactivated(ServiceError):
    status_code = 403
    error_code = "account_deactivated"

    def __init__(self) -> None:
        super().__init__("account is deactivated")


class ChallengeNotFound(ServiceError):
    """No live challenge: never issued, expired, consumed, or locked out."""

    status_code = 400
    error_code = "challenge_not_found"

    def __init__(self) -> None:
        super().__init__(
            "no verification code found, please request a new code",
            detail={"action": "request_new_code"},
        )


class InvalidCode(AuthenticationError):
    error_code = "invalid_code"

    def __init__(self, attempts_remaining: Optional[int] = None) -> None:
        detail: dict = {"action": "request_new_code" if attempts_remaining == 0 else "retry"}
        if attempts_remaining is not None:
            detail["attempts_remaining"] = attempts_remaining
        super().__init__("invalid verification code", detail=detail)


class LockedOut(ServiceError):
    status_code = 423
    error_code = "locked_out"

    def __init__(self) -> None:
        super().__init__(
            "too many failed attempts, please request a new code",
            detail={"action": "request_new_code"},
        )


class NotEligible(ServiceError):
    """Resend requested for an unknown identity or one without two-factor."""

    status_code = 400
    error_code = "not_eligible"

    def __init__(self) -> None:
        super().__init__("two-factor verification is not available for this account")


class TokenExpired(AuthenticationError):
    def __init__(self) -> None:
        super().__init__("unauthorized")


class TokenInvalid(AuthenticationError):
    def __init__(self, reason: str = "invalid") -> None:
        super().__init__("unauthorized")
        self.reason = reason


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class InfrastructureError(ServiceError):
    """A collaborator failed; callers only ever see a generic retry message."""

    status_code = 503

    def __init__(self, *, backend: Optional[str] = None) -> None:
        super().__init__(TRY_AGAIN_MESSAGE)
        self.backend = backend


class StoreUnavailable(InfrastructureError):
    error_code = "store_unavailable"


class DeliveryFailed(InfrastructureError):
    error_code = "delivery_failed"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


@contextlib.contextmanager
def store_unavailable_on_error() -> Iterator[None]:
    """Re-raise store failures as :class:`StoreUnavailable`."""
    try:
        yield
    except StoreError as exc:
        raise StoreUnavailable(backend=exc.backend) from exc


__all__ = [
    "TRY_AGAIN_MESSAGE",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "AccountDeactivated",
    "ChallengeNotFound",
    "InvalidCode",
    "LockedOut",
    "NotEligible",
    "TokenExpired",
    "TokenInvalid",
    "ConflictError",
    "RateLimitedError",
    "InfrastructureError",
    "StoreUnavailable",
    "DeliveryFailed",
    "ServerError",
    "store_unavailable_on_error",
]
