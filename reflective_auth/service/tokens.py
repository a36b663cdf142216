from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from reflective_auth.logging import get_logger
from reflective_auth.service.errors import TokenExpired, TokenInvalid
from reflective_auth.storage.models import Identity

logger = get_logger(__name__)

DEFAULT_TTL_MINUTES = 7 * 24 * 60
_REQUIRED_CLAIMS = ("sub", "iat", "exp", "iss", "aud", "jti")


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    issued_at: int
    expires_at: int
    jti: str


class SessionTokenIssuer:
    """Stateless HS256 session tokens.

    Tokens carry ``sub``/``iat``/``exp``/``iss``/``aud``/``jti``. Verification
    distinguishes an expired token from every other failure so the two show
    up separately in logs; callers answer both with the same 401.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl_minutes: int = DEFAULT_TTL_MINUTES,
        leeway_seconds: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("a signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_minutes * 60
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self._secret, signing_input.encode("utf-8", "surrogatepass"), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(self, identity: Identity) -> str:
        now = int(self._clock())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": identity.id,
            "iat": now,
            "exp": now + self.ttl_seconds,
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload)

    def _invalid(self, reason: str) -> TokenInvalid:
        logger.warning("session_token_invalid", reason=reason)
        return TokenInvalid(reason)

    def verify(self, token: Optional[str]) -> TokenClaims:
        if not token:
            raise self._invalid("missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise self._invalid("malformed") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise self._invalid("malformed_header") from None
        # Only HS256 is accepted; "none" and asymmetric algorithms are rejected
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise self._invalid("algorithm")

        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogatepass")):
            raise self._invalid("signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise self._invalid("malformed_payload") from None
        if not isinstance(payload, dict) or any(c not in payload for c in _REQUIRED_CLAIMS):
            raise self._invalid("missing_claims")
        if payload.get("iss") != self.issuer:
            raise self._invalid("issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise self._invalid("audience")

        try:
            exp = int(payload["exp"])
            iat = int(payload["iat"])
        except (TypeError, ValueError):
            raise self._invalid("malformed_claims") from None
        if not isinstance(payload["sub"], str) or not payload["sub"]:
            raise self._invalid("subject")
        if exp <= self._clock() - self.leeway_seconds:
            logger.info("session_token_expired", sub=payload["sub"])
            raise TokenExpired()

        return TokenClaims(
            subject=payload["sub"],
            issued_at=iat,
            expires_at=exp,
            jti=str(payload["jti"]),
        )
