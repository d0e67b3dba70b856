"""Tests for HS256 token issuance and validation.

Every rejection must surface as the same opaque ``InvalidTokenError`` while
carrying a specific internal reason.
"""

import base64
import json
import time
from datetime import timedelta
from unittest.mock import patch

import pytest

from clinicrecords.service.errors import InvalidTokenError
from clinicrecords.service.tokens import (
    TokenConfig,
    TokenType,
    encode_jwt,
    generate_tokens,
    issue_token,
    validate_token,
)
from clinicrecords.storage.models import Role, Session, User, utcnow


@pytest.fixture
def user():
    return User.new("doc@example.com", "Doc", Role.DOCTOR)


def _b64(obj) -> str:
    return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")


def test_generate_tokens_binds_refresh_to_session(user, token_config):
    session = Session.new(user.id, "pytest", "127.0.0.1", utcnow() + timedelta(hours=1))
    access, refresh = generate_tokens(session, user, token_config)
    assert session.refresh_token == refresh
    assert access != refresh

    claims = validate_token(
        access, TokenType.ACCESS, token_config.access_secret, issuer=token_config.issuer
    )
    assert claims.user_id == user.id
    assert claims.subject == user.id
    assert claims.role == "doctor"
    assert claims.token_type is TokenType.ACCESS
    assert claims.expires_at > claims.issued_at
    assert claims.token_id


def test_access_and_refresh_are_not_interchangeable(user, token_config):
    session = Session.new(user.id, None, None, utcnow() + timedelta(hours=1))
    access, refresh = generate_tokens(session, user, token_config)

    with pytest.raises(InvalidTokenError):
        validate_token(refresh, TokenType.ACCESS, token_config.access_secret)
    with pytest.raises(InvalidTokenError):
        validate_token(access, TokenType.REFRESH, token_config.refresh_secret)
    # Right secret, wrong declared type
    with pytest.raises(InvalidTokenError) as excinfo:
        validate_token(refresh, TokenType.ACCESS, token_config.refresh_secret)
    assert "type" in excinfo.value.reason


def test_wrong_secret_rejected(user, token_config):
    token = issue_token(
        TokenType.ACCESS, user, token_config.access_secret, timedelta(minutes=5), "clinicrecords"
    )
    with pytest.raises(InvalidTokenError) as excinfo:
        validate_token(token, TokenType.ACCESS, b"x" * 40)
    assert excinfo.value.reason == "signature mismatch"
    assert excinfo.value.message == "invalid token"


def test_expired_token_rejected(user, token_config):
    token = issue_token(
        TokenType.ACCESS, user, token_config.access_secret, timedelta(minutes=5), "clinicrecords"
    )
    with patch("clinicrecords.service.tokens.time.time", return_value=time.time() + 3600):
        with pytest.raises(InvalidTokenError) as excinfo:
            validate_token(token, TokenType.ACCESS, token_config.access_secret)
    assert excinfo.value.reason == "token expired"


def test_alg_none_rejected(user, token_config):
    now = int(time.time())
    header = _b64({"alg": "none", "typ": "JWT"})
    payload = _b64({"uid": user.id, "role": "admin", "type": "access", "exp": now + 60})
    with pytest.raises(InvalidTokenError) as excinfo:
        validate_token(f"{header}.{payload}.", TokenType.ACCESS, token_config.access_secret)
    assert "signing method" in excinfo.value.reason


def test_tampered_payload_rejected(user, token_config):
    token = issue_token(
        TokenType.ACCESS, user, token_config.access_secret, timedelta(minutes=5), "clinicrecords"
    )
    header, _, signature = token.split(".")
    forged = _b64({"uid": user.id, "role": "admin", "type": "access", "exp": int(time.time()) + 60})
    with pytest.raises(InvalidTokenError):
        validate_token(f"{header}.{forged}.{signature}", TokenType.ACCESS, token_config.access_secret)


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!.??.##"])
def test_malformed_tokens_rejected(token, token_config):
    with pytest.raises(InvalidTokenError):
        validate_token(token, TokenType.ACCESS, token_config.access_secret)


def test_issuer_mismatch_rejected(user, token_config):
    token = encode_jwt(
        {
            "iss": "someone-else",
            "uid": user.id,
            "role": "doctor",
            "type": "access",
            "exp": int(time.time()) + 60,
        },
        token_config.access_secret,
    )
    with pytest.raises(InvalidTokenError) as excinfo:
        validate_token(token, TokenType.ACCESS, token_config.access_secret, issuer="clinicrecords")
    assert excinfo.value.reason == "issuer mismatch"


def test_rejection_is_logged_with_reason(token_config):
    with patch("clinicrecords.service.tokens.logger") as mock_logger:
        with pytest.raises(InvalidTokenError):
            validate_token("a.b", TokenType.ACCESS, token_config.access_secret)
    mock_logger.info.assert_called_once()
    assert mock_logger.info.call_args.kwargs["reason"] == "token must have three segments"


def test_token_config_validate_rejects_weak_material():
    good = b"a" * 32
    with pytest.raises(ValueError):
        TokenConfig(b"short", b"b" * 32, timedelta(minutes=1), timedelta(days=1), "x").validate()
    with pytest.raises(ValueError):
        TokenConfig(good, good, timedelta(minutes=1), timedelta(days=1), "x").validate()
    with pytest.raises(ValueError):
        TokenConfig(good, b"b" * 32, timedelta(0), timedelta(days=1), "x").validate()
    TokenConfig(good, b"b" * 32, timedelta(minutes=1), timedelta(days=1), "x").validate()


def test_token_config_repr_hides_secrets(token_config):
    assert token_config.access_secret.decode() not in repr(token_config)
