from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from clinicrecords.logging import get_logger
from clinicrecords.service.errors import InvalidTokenError

if TYPE_CHECKING:
    from clinicrecords.storage.models import Session, User

logger = get_logger(__name__)

SIGNING_ALGORITHM = "HS256"
MIN_SECRET_LENGTH = 32


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenConfig:
    access_secret: bytes
    refresh_secret: bytes
    access_ttl: timedelta
    refresh_ttl: timedelta
    issuer: str

    def __repr__(self) -> str:
        return (
            f"TokenConfig(access_ttl={self.access_ttl!r}, "
            f"refresh_ttl={self.refresh_ttl!r}, issuer={self.issuer!r})"
        )

    def validate(self) -> None:
        """Reject unusable signing material; called once at startup."""
        for label, secret in (("access", self.access_secret), ("refresh", self.refresh_secret)):
            if not secret or len(secret) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{label} token secret must be at least {MIN_SECRET_LENGTH} bytes"
                )
        if hmac.compare_digest(self.access_secret, self.refresh_secret):
            raise ValueError("access and refresh token secrets must differ")
        if self.access_ttl <= timedelta(0) or self.refresh_ttl <= timedelta(0):
            raise ValueError("token TTLs must be positive")
        if not self.issuer:
            raise ValueError("token issuer must be set")

    def secret_for(self, token_type: TokenType) -> bytes:
        if token_type is TokenType.ACCESS:
            return self.access_secret
        return self.refresh_secret

    def ttl_for(self, token_type: TokenType) -> timedelta:
        if token_type is TokenType.ACCESS:
            return self.access_ttl
        return self.refresh_ttl


@dataclass(frozen=True)
class Claims:
    user_id: str
    role: str
    token_type: TokenType
    issuer: str
    issued_at: datetime
    not_before: datetime
    expires_at: datetime
    token_id: str

    @property
    def subject(self) -> str:
        return self.user_id


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(signing_input: str, secret: bytes) -> bytes:
    return hmac.new(secret, signing_input.encode("utf-8"), hashlib.sha256).digest()


def encode_jwt(payload: dict[str, Any], secret: bytes) -> str:
    if not secret:
        raise ValueError("signing secret is empty")
    header = {"alg": SIGNING_ALGORITHM, "typ": "JWT"}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_encode_segment(_sign(signing_input, secret))}"


def issue_token(
    token_type: TokenType,
    user: "User",
    secret: bytes,
    ttl: timedelta,
    issuer: str,
) -> str:
    now = int(time.time())
    payload = {
        "iss": issuer,
        "sub": user.id,
        "uid": user.id,
        "role": getattr(user.role, "value", user.role),
        "type": token_type.value,
        "iat": now,
        "nbf": now,
        "exp": now + int(ttl.total_seconds()),
        "jti": str(uuid.uuid4()),
    }
    return encode_jwt(payload, secret)


def generate_tokens(session: "Session", user: "User", config: TokenConfig) -> tuple[str, str]:
    """Mint an access/refresh pair and bind the refresh token to ``session``."""
    access_token = issue_token(
        TokenType.ACCESS, user, config.access_secret, config.access_ttl, config.issuer
    )
    refresh_token = issue_token(
        TokenType.REFRESH, user, config.refresh_secret, config.refresh_ttl, config.issuer
    )
    session.refresh_token = refresh_token
    return access_token, refresh_token


def _timestamp(payload: dict[str, Any], name: str, *, required: bool) -> Optional[float]:
    raw = payload.get(name)
    if raw is None:
        if required:
            raise InvalidTokenError(f"missing {name} claim")
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise InvalidTokenError(f"malformed {name} claim")
    return float(raw)


def _to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def validate_token(
    token: str,
    expected_type: TokenType,
    secret: bytes,
    *,
    issuer: Optional[str] = None,
    leeway_seconds: int = 0,
) -> Claims:
    """Verify algorithm, signature, temporal claims and token type.

    Every failure raises ``InvalidTokenError``; the specific cause is only
    available on its ``reason`` attribute.
    """
    try:
        return _validate(token, TokenType(expected_type), secret, issuer, leeway_seconds)
    except InvalidTokenError as exc:
        logger.info("token_rejected", reason=exc.reason, expected_type=str(expected_type))
        raise


def _validate(
    token: str,
    expected_type: TokenType,
    secret: bytes,
    issuer: Optional[str],
    leeway_seconds: int,
) -> Claims:
    if not isinstance(token, str) or not token:
        raise InvalidTokenError("empty token")
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
    except ValueError:
        raise InvalidTokenError("token must have three segments") from None

    # Only HS256 is accepted; "none" and asymmetric algorithms are rejected outright
    try:
        header = json.loads(_decode_segment(header_b64))
    except (ValueError, binascii.Error):
        raise InvalidTokenError("header decode failed") from None
    if not isinstance(header, dict) or header.get("alg") != SIGNING_ALGORITHM:
        alg = header.get("alg") if isinstance(header, dict) else None
        raise InvalidTokenError(f"unexpected signing method: {alg!r}")

    try:
        signature = _decode_segment(sig_b64)
    except (ValueError, binascii.Error):
        raise InvalidTokenError("signature decode failed") from None
    expected_sig = _sign(f"{header_b64}.{payload_b64}", secret)
    if not hmac.compare_digest(expected_sig, signature):
        raise InvalidTokenError("signature mismatch")

    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, binascii.Error):
        raise InvalidTokenError("payload decode failed") from None
    if not isinstance(payload, dict):
        raise InvalidTokenError("payload is not an object")

    now = time.time()
    exp = _timestamp(payload, "exp", required=True)
    if exp <= now - leeway_seconds:
        raise InvalidTokenError("token expired")
    nbf = _timestamp(payload, "nbf", required=False)
    if nbf is not None and nbf > now + leeway_seconds:
        raise InvalidTokenError("token not yet valid")
    iat = _timestamp(payload, "iat", required=False)

    if payload.get("type") != expected_type.value:
        raise InvalidTokenError(
            f"token type {payload.get('type')!r} does not match {expected_type.value!r}"
        )
    if issuer is not None and payload.get("iss") != issuer:
        raise InvalidTokenError("issuer mismatch")

    user_id = payload.get("uid") or payload.get("sub")
    role = payload.get("role")
    if not isinstance(user_id, str) or not user_id:
        raise InvalidTokenError("missing subject")
    if not isinstance(role, str) or not role:
        raise InvalidTokenError("missing role")

    return Claims(
        user_id=user_id,
        role=role,
        token_type=expected_type,
        issuer=str(payload.get("iss") or ""),
        issued_at=_to_datetime(iat if iat is not None else exp),
        not_before=_to_datetime(nbf if nbf is not None else (iat if iat is not None else exp)),
        expires_at=_to_datetime(exp),
        token_id=str(payload.get("jti") or ""),
    )


__all__ = [
    "SIGNING_ALGORITHM",
    "MIN_SECRET_LENGTH",
    "TokenType",
    "TokenConfig",
    "Claims",
    "encode_jwt",
    "issue_token",
    "generate_tokens",
    "validate_token",
]
