from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from reflective_auth.api.schemas import (
    ChallengeSentResponse,
    Envelope,
    IdentityResponse,
    LoginRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    ResendChallengeRequest,
    SessionResponse,
    TokenVerifyRequest,
    TokenVerifyResponse,
    TwoFactorStatusResponse,
    VerifyChallengeRequest,
)
from reflective_auth.logging import get_correlation_id, get_logger
from reflective_auth.service.auth import ChallengeIssued
from reflective_auth.service.runtime import Runtime
from reflective_auth.storage.models import Identity

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _ok(data: Any) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    return envelope


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_identity(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> Identity:
    token = _bearer_token(authorization)
    if not token:
        raise _http_error("unauthorized", "unauthorized", status_code=401)
    return await runtime.auth.verify_token(token)


def _challenge_sent(issued: ChallengeIssued, message: str) -> ChallengeSentResponse:
    return ChallengeSentResponse(
        email=issued.email,
        expires_in_seconds=issued.expires_in_seconds,
        message=message,
    )


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    """Create an account with two-factor enabled and mail the first code.

    Raises:
        409: If the email is already registered
        503: If the code could not be stored or delivered
    """
    issued = await runtime.auth.register(body.name, body.email, body.password)
    return _ok(
        _challenge_sent(
            issued,
            "Account created. Please check your email for the verification code.",
        )
    )


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, runtime: Runtime = Depends(get_runtime)):
    """Check the password and mail a verification code. Never returns a token.

    Raises:
        401: If credentials are invalid
        403: If the account is deactivated
        429: If rate limit exceeded for this email
    """
    issued = await runtime.auth.login(body.email, body.password)
    return _ok(
        _challenge_sent(issued, "Verification code sent to your email address.")
    )


@router.post("/verify-2fa", response_model=Envelope)
async def verify_two_factor(
    body: VerifyChallengeRequest, runtime: Runtime = Depends(get_runtime)
):
    """Exchange a mailed code for a session token.

    Raises:
        400: No pending code (expired, used, or never sent)
        401: Wrong code; ``details.attempts_remaining`` says how many tries are left
        423: Too many wrong codes; a new code must be requested
    """
    summary, token = await runtime.auth.verify_challenge(body.email, body.code)
    return _ok(
        SessionResponse(
            user=IdentityResponse(**summary),
            token=token,
            expires_in_seconds=runtime.tokens.ttl_seconds,
        )
    )


@router.post("/resend-2fa-code", response_model=Envelope)
async def resend_two_factor_code(
    body: ResendChallengeRequest, runtime: Runtime = Depends(get_runtime)
):
    issued = await runtime.auth.resend_challenge(body.email)
    return _ok(_challenge_sent(issued, "New verification code sent to your email."))


@router.get("/2fa-status", response_model=Envelope)
async def two_factor_status(
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
):
    status = await runtime.auth.two_factor_status(identity)
    return _ok(TwoFactorStatusResponse(**status))


@router.get("/me", response_model=Envelope)
async def me(identity: Identity = Depends(get_current_identity)):
    return _ok(IdentityResponse(**identity.summary()))


@router.put("/profile", response_model=Envelope)
async def update_profile(
    body: ProfileUpdateRequest,
    identity: Identity = Depends(get_current_identity),
    runtime: Runtime = Depends(get_runtime),
):
    summary = await runtime.auth.update_profile(identity, body.name)
    return _ok(IdentityResponse(**summary))


@router.post("/logout", response_model=Envelope)
async def logout(identity: Identity = Depends(get_current_identity)):
    """Acknowledge a logout. Tokens are stateless; the client discards its copy."""
    logger.info("logout", identity_id=identity.id)
    return _ok({"message": "Logged out successfully"})


@router.post("/verify-token", response_model=Envelope)
async def verify_token(body: TokenVerifyRequest, runtime: Runtime = Depends(get_runtime)):
    identity = await runtime.auth.verify_token(body.token)
    return _ok(TokenVerifyResponse(valid=True, user=IdentityResponse(**identity.summary())))
