"""Integration tests for the HTTP auth flow.

Tests the complete flow through the FastAPI app:
- Registration and one-time key
- Key+PIN login and token claims
- Lockout after repeated failures
- Bearer-protected user lookup
- Per-IP rate limiting
"""

import pytest
from fastapi.testclient import TestClient

from clinicrecords.app import create_app
from clinicrecords.config import Settings
from clinicrecords.service.tokens import TokenType, validate_token
from clinicrecords.storage.models import MAX_FAILED_ATTEMPTS


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as test_client:
        yield test_client


def _register(client, email="doc@example.com", role="doctor"):
    response = client.post(
        "/auth/register", json={"email": email, "name": "Dr Example", "role": role}
    )
    assert response.status_code == 201
    return response.json()["data"]


def _login(client, email, key, pin="0000"):
    return client.post("/auth/login", json={"email": email, "key": key, "pin": pin})


class TestRegistration:
    def test_register_returns_user_and_key(self, client):
        data = _register(client)
        assert data["key"]
        assert data["user"]["email"] == "doc@example.com"
        assert data["user"]["role"] == "doctor"
        assert "key_credential" not in data["user"]
        assert "pin_credential" not in data["user"]

    def test_register_strips_bidi_and_zero_width_characters(self, client):
        response = client.post(
            "/auth/register",
            json={
                "email": "doc\u200b@example.com",
                "name": "Dr \u202eelpmaxE\u202c \u2066Who\u2069",
                "role": "doctor",
            },
        )
        assert response.status_code == 201
        user = response.json()["data"]["user"]
        assert user["email"] == "doc@example.com"
        assert user["name"] == "Dr elpmaxE Who"

    def test_register_duplicate_email(self, client):
        _register(client)
        response = client.post(
            "/auth/register",
            json={"email": "DOC@example.com", "name": "Again", "role": "nurse"},
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "email_taken"

    @pytest.mark.parametrize(
        "payload",
        [
            {"email": "not-an-email", "name": "X", "role": "doctor"},
            {"email": "x@example.com", "name": "X", "role": "janitor"},
            {"email": "x@example.com", "name": "   ", "role": "doctor"},
            {"email": "x@example.com", "role": "doctor"},
        ],
    )
    def test_register_validation_errors(self, client, payload):
        response = client.post("/auth/register", json=payload)
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"


class TestLogin:
    def test_register_then_login_yields_doctor_access_token(self, client, settings):
        data = _register(client)
        response = _login(client, "doc@example.com", data["key"])

        assert response.status_code == 200
        body = response.json()["data"]
        assert "refresh_token" not in body
        claims = validate_token(
            body["access_token"],
            TokenType.ACCESS,
            settings.access_token_secret.encode(),
            issuer=settings.jwt_issuer,
        )
        assert claims.role == "doctor"
        assert claims.token_type is TokenType.ACCESS
        assert claims.user_id == data["user"]["id"]

    def test_wrong_key_is_invalid_credentials(self, client):
        _register(client)
        response = _login(client, "doc@example.com", "not-the-key")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_unknown_email_looks_like_wrong_credentials(self, client):
        response = _login(client, "ghost@example.com", "whatever")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_malformed_pin_is_validation_error(self, client):
        data = _register(client)
        response = _login(client, "doc@example.com", data["key"], pin="12a4")
        assert response.status_code == 400

    def test_lockout_after_repeated_wrong_pins(self, client):
        data = _register(client)
        statuses = [
            _login(client, "doc@example.com", data["key"], pin="9999").status_code
            for _ in range(MAX_FAILED_ATTEMPTS)
        ]
        assert statuses == [401] * (MAX_FAILED_ATTEMPTS - 1) + [403]

        response = _login(client, "doc@example.com", data["key"])
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_locked"


class TestUserLookup:
    def test_get_user_requires_bearer(self, client):
        data = _register(client)
        response = client.get(f"/auth/users/{data['user']['id']}")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_get_user_with_token(self, client):
        data = _register(client)
        token = _login(client, "doc@example.com", data["key"]).json()["data"]["access_token"]
        headers = {"Authorization": f"Bearer {token}"}

        response = client.get(f"/auth/users/{data['user']['id']}", headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["user"]["id"] == data["user"]["id"]

        missing = client.get(
            "/auth/users/00000000-0000-0000-0000-000000000000", headers=headers
        )
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "not_found"

        malformed = client.get("/auth/users/not-a-uuid", headers=headers)
        assert malformed.status_code == 400

    def test_forged_token_rejected(self, client):
        data = _register(client)
        response = client.get(
            f"/auth/users/{data['user']['id']}",
            headers={"Authorization": "Bearer a.b.c"},
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"
        assert response.json()["error"]["message"] == "invalid token"


class TestRateLimiting:
    def test_requests_beyond_burst_get_429(self):
        settings = Settings(
            access_token_secret="rl-access-secret-0123456789abcdefghijklmn",
            refresh_token_secret="rl-refresh-secret-0123456789abcdefghijklm",
            rate_limit_rps=0.01,
            rate_limit_burst=2,
        )
        with TestClient(create_app(settings)) as client:
            assert client.get("/healthz").status_code == 200
            assert client.get("/healthz").status_code == 200
            # Rejected before authentication runs
            response = client.get("/auth/users/whatever")
            assert response.status_code == 429
            body = response.json()
            assert body["error"]["code"] == "rate_limited"
            assert "Retry-After" in response.headers

    def test_429_carries_security_and_cors_headers(self):
        settings = Settings(
            access_token_secret="rl-access-secret-0123456789abcdefghijklmn",
            refresh_token_secret="rl-refresh-secret-0123456789abcdefghijklm",
            rate_limit_rps=0.01,
            rate_limit_burst=1,
            cors_allow_origins=["http://localhost:3000"],
        )
        headers = {"Origin": "http://localhost:3000", "X-Request-ID": "req-429"}
        with TestClient(create_app(settings)) as client:
            assert client.get("/healthz", headers=headers).status_code == 200
            response = client.get("/healthz", headers=headers)
        assert response.status_code == 429
        assert response.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"
        assert "Retry-After" in response.headers["Access-Control-Expose-Headers"]
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "Content-Security-Policy" in response.headers
        assert response.headers["X-Request-ID"] == "req-429"
        body = response.json()
        assert body["error"]["code"] == "rate_limited"
        assert body["request_id"] == "req-429"

    def test_forwarded_for_ignored_unless_trusted(self):
        settings = Settings(
            access_token_secret="rl-access-secret-0123456789abcdefghijklmn",
            refresh_token_secret="rl-refresh-secret-0123456789abcdefghijklm",
            rate_limit_rps=0.01,
            rate_limit_burst=1,
        )
        with TestClient(create_app(settings)) as client:
            assert client.get("/healthz", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 200
            response = client.get("/healthz", headers={"X-Forwarded-For": "2.2.2.2"})
            assert response.status_code == 429

    def test_forwarded_for_used_when_trusted(self):
        settings = Settings(
            access_token_secret="rl-access-secret-0123456789abcdefghijklmn",
            refresh_token_secret="rl-refresh-secret-0123456789abcdefghijklm",
            rate_limit_rps=0.01,
            rate_limit_burst=1,
            trust_forwarded_for=True,
        )
        with TestClient(create_app(settings)) as client:
            assert client.get("/healthz", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 200
            assert client.get("/healthz", headers={"X-Forwarded-For": "2.2.2.2"}).status_code == 200
            assert client.get("/healthz", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 429
