from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "account_deactivated",
    "challenge_not_found",
    "invalid_code",
    "locked_out",
    "not_eligible",
    "store_unavailable",
    "delivery_failed",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_name(value: str) -> str:
    value = _normalize_unicode(value).strip()
    if len(value) < 2:
        raise ValueError("name must be at least 2 characters")
    if len(value) > 100:
        raise ValueError("name must be at most 100 characters")
    return value


class RegisterRequest(BaseModel):
    name: str = Field(..., max_length=200)
    email: str
    password: str = Field(..., min_length=6, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _validate_register_name(cls, value: str) -> str:
        return _validate_name(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyChallengeRequest(BaseModel):
    """Second login step. Older clients send the code as ``token``."""

    email: str
    code: Optional[str] = Field(default=None, max_length=10)
    token: Optional[str] = Field(default=None, max_length=10)

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: str) -> str:
        return _validate_email(value)

    @model_validator(mode="after")
    def _normalize_code(self):
        if self.code is None:
            self.code = self.token
        self.token = None
        if self.code is None:
            raise ValueError("code is required")
        self.code = self.code.strip()
        return self


class ResendChallengeRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenVerifyRequest(BaseModel):
    token: str = Field(..., max_length=4096)


class ProfileUpdateRequest(BaseModel):
    name: str = Field(..., max_length=200)

    @field_validator("name")
    @classmethod
    def _validate_profile_name(cls, value: str) -> str:
        return _validate_name(value)


class ChallengeSentResponse(BaseModel):
    requires_2fa: bool = True
    email: str
    expires_in_seconds: int
    message: str


class IdentityResponse(BaseModel):
    id: str
    name: str
    email: str
    created_at: datetime
    two_factor_enabled: bool
    last_login_at: Optional[datetime] = None


class SessionResponse(BaseModel):
    user: IdentityResponse
    token: str
    token_type: str = "bearer"
    expires_in_seconds: int


class TwoFactorStatusResponse(BaseModel):
    two_factor_enabled: bool = Field(..., description="Whether login requires an emailed code")
    two_factor_prompted: bool = Field(..., description="Whether the user has been enrolled")


class TokenVerifyResponse(BaseModel):
    valid: bool
    user: IdentityResponse
