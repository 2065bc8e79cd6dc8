"""Compact HS256 tokens and the typed issuer/verifier built on them.

Wire format::

    base64url(json(header)) "." base64url(json(payload)) "." base64url(HMAC-SHA256)

with no ``=`` padding. Every issued token carries a ``kind`` discriminant so a
password-reset or refresh token can never be replayed where an access token
is expected.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from klearkarma.logging import get_logger

logger = get_logger(__name__)

ALGORITHM = "HS256"
DEFAULT_HEADER = {"alg": ALGORITHM, "typ": "JWT"}


class TokenError(Exception):
    """Base class for token failures. Callers that do not care collapse these to 401."""

    reason = "invalid_token"


class MalformedTokenError(TokenError):
    """Not a token: wrong segment count, bad base64 or bad JSON."""

    reason = "malformed"


class SignatureInvalidError(TokenError):
    reason = "signature_invalid"


class TokenExpiredError(TokenError):
    reason = "expired"


class TokenNotYetValidError(TokenError):
    reason = "not_yet_valid"


class InvalidClaimsError(TokenError):
    reason = "invalid_claims"


class WrongTokenKindError(TokenError):
    reason = "wrong_kind"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


@dataclass(frozen=True)
class DecodedToken:
    header: Dict[str, Any]
    payload: Dict[str, Any]


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(segment + padding)
    except (binascii.Error, ValueError) as exc:
        raise MalformedTokenError("segment is not base64url") from exc


def _split(token: str) -> tuple[str, str, str]:
    if not isinstance(token, str):
        raise MalformedTokenError("token must be a string")
    parts = token.split(".")
    if len(parts) != 3:
        raise MalformedTokenError("token must have exactly three segments")
    return parts[0], parts[1], parts[2]


def _sign(signing_input: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return _encode_segment(digest)


def _json_segment(segment: str) -> Dict[str, Any]:
    try:
        value = json.loads(_decode_segment(segment))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedTokenError("segment is not JSON") from exc
    if not isinstance(value, dict):
        raise MalformedTokenError("segment is not a JSON object")
    return value


def encode(header: Mapping[str, Any], payload: Mapping[str, Any], secret: str) -> str:
    header_enc = _encode_segment(json.dumps(dict(header), separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(dict(payload), separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(signing_input, secret)}"


def decode(token: str) -> DecodedToken:
    """Parse header and payload WITHOUT checking the signature.

    For logging and introspection only, never for authorization decisions.
    """
    header_b64, payload_b64, _ = _split(token)
    return DecodedToken(header=_json_segment(header_b64), payload=_json_segment(payload_b64))


def verify_signature(token: str, secret: str) -> bool:
    """Recompute the HMAC over the first two segments; constant-time compare.

    Raises ``MalformedTokenError`` when the token is not three segments, so
    "not a token" stays distinguishable from "bad signature".
    """
    header_b64, payload_b64, sig_b64 = _split(token)
    expected = _sign(f"{header_b64}.{payload_b64}", secret)
    return hmac.compare_digest(expected.encode(), sig_b64.encode())


@dataclass(frozen=True)
class TokenConfig:
    """Immutable signing configuration, injected at construction time."""

    secret: str
    issuer: str = "klear-karma-api"
    audience: str = "klear-karma-app"
    ttl_seconds: Mapping[TokenKind, int] = field(
        default_factory=lambda: {
            TokenKind.ACCESS: 24 * 60 * 60,
            TokenKind.REFRESH: 30 * 24 * 60 * 60,
            TokenKind.PASSWORD_RESET: 60 * 60,
            TokenKind.EMAIL_VERIFICATION: 24 * 60 * 60,
        }
    )
    clock_skew_seconds: int = 60

    def __post_init__(self) -> None:
        if not self.secret:
            raise ValueError("token signing secret must not be empty")

    @classmethod
    def from_settings(cls, settings) -> "TokenConfig":
        return cls(
            secret=settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl_seconds={
                TokenKind.ACCESS: settings.access_token_ttl_seconds,
                TokenKind.REFRESH: settings.refresh_token_ttl_seconds,
                TokenKind.PASSWORD_RESET: settings.password_reset_ttl_seconds,
                TokenKind.EMAIL_VERIFICATION: settings.email_verification_ttl_seconds,
            },
            clock_skew_seconds=settings.clock_skew_seconds,
        )


# Claims each kind may carry besides the registered ones.
_KIND_CLAIMS = {
    TokenKind.ACCESS: {"sub", "email", "role", "permissions", "verified"},
    TokenKind.REFRESH: {"sub"},
    TokenKind.PASSWORD_RESET: {"sub"},
    TokenKind.EMAIL_VERIFICATION: {"sub", "email"},
}


class TokenService:
    """Issue and verify typed, expiring tokens."""

    def __init__(self, config: TokenConfig, *, clock: Callable[[], float] = time.time) -> None:
        self.config = config
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    def issue(
        self,
        kind: TokenKind,
        claims: Mapping[str, Any],
        *,
        ttl_seconds: Optional[int] = None,
    ) -> str:
        kind = TokenKind(kind)
        if "sub" not in claims:
            raise ValueError("token claims must include 'sub'")
        unexpected = set(claims) - _KIND_CLAIMS[kind]
        if unexpected:
            raise ValueError(f"claims {sorted(unexpected)} not allowed in {kind.value} token")
        ttl = ttl_seconds if ttl_seconds is not None else self.config.ttl_seconds[kind]
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")
        now = self.now()
        payload = {
            **claims,
            "kind": kind.value,
            "iat": now,
            "exp": now + ttl,
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "jti": str(uuid.uuid4()),
        }
        return encode(DEFAULT_HEADER, payload, self.config.secret)

    def verify(self, token: str, expected_kind: Optional[TokenKind] = None) -> Dict[str, Any]:
        """Return the payload of a valid token or raise a ``TokenError`` subclass.

        Checks run in order: structure, algorithm and signature, expiry,
        issued-at skew, issuer/audience, kind.
        """
        decoded = decode(token)
        if decoded.header.get("alg") != ALGORITHM:
            raise SignatureInvalidError(f"unsupported algorithm {decoded.header.get('alg')!r}")
        if not verify_signature(token, self.config.secret):
            raise SignatureInvalidError("signature mismatch")

        payload = decoded.payload
        now = self.now()
        exp = payload.get("exp")
        iat = payload.get("iat")
        if not isinstance(exp, (int, float)) or not isinstance(iat, (int, float)):
            raise InvalidClaimsError("exp and iat must be numeric")
        if now > exp:
            raise TokenExpiredError("token expired")
        if iat > now + self.config.clock_skew_seconds:
            raise TokenNotYetValidError("token issued in the future")
        if payload.get("iss") != self.config.issuer:
            raise InvalidClaimsError("issuer mismatch")
        if payload.get("aud") != self.config.audience:
            raise InvalidClaimsError("audience mismatch")
        if not payload.get("sub"):
            raise InvalidClaimsError("missing subject")
        if expected_kind is not None and payload.get("kind") != TokenKind(expected_kind).value:
            raise WrongTokenKindError(
                f"expected {TokenKind(expected_kind).value} token, got {payload.get('kind')!r}"
            )
        return payload

    def issue_pair(self, user) -> Dict[str, Any]:
        """Access plus refresh token for ``user``."""
        access = self.issue(
            TokenKind.ACCESS,
            {
                "sub": user.id,
                "email": user.email,
                "role": user.role.value,
                "permissions": [p.value for p in user.permissions],
                "verified": user.verified,
            },
        )
        refresh = self.issue(TokenKind.REFRESH, {"sub": user.id})
        return {
            "access_token": access,
            "refresh_token": refresh,
            "token_type": "bearer",
            "expires_in": self.config.ttl_seconds[TokenKind.ACCESS],
        }

    def issue_password_reset(self, user_id: str) -> str:
        return self.issue(TokenKind.PASSWORD_RESET, {"sub": user_id})

    def issue_email_verification(self, user_id: str, email: str) -> str:
        return self.issue(TokenKind.EMAIL_VERIFICATION, {"sub": user_id, "email": email})


__all__ = [
    "ALGORITHM",
    "DecodedToken",
    "InvalidClaimsError",
    "MalformedTokenError",
    "SignatureInvalidError",
    "TokenConfig",
    "TokenError",
    "TokenExpiredError",
    "TokenKind",
    "TokenNotYetValidError",
    "TokenService",
    "WrongTokenKindError",
    "decode",
    "encode",
    "verify_signature",
]
