"""Integration tests for the portal authentication API.

Tests the complete auth flow including:
- Customer and supplier registration
- Login with device fingerprint
- Token refresh and reuse detection
- Logout
- Authenticated requests and password change
- Error envelopes and rate limits
"""

import pytest
from fastapi.testclient import TestClient

from quoteauth import app as app_module
from quoteauth.service.runtime import reset_runtime_for_tests

TEST_PASSWORD = "TestPassword123"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def customer(client):
    """Register a customer bound to fp-one and return the response data."""
    response = client.post(
        "/v1/customer/auth/register",
        json={
            "email": "buyer@example.com",
            "password": TEST_PASSWORD,
            "device_fingerprint": "fp-one",
            "browser_info": {"ua": "Firefox", "screen": "1920x1080"},
        },
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _login(client, fingerprint="fp-one", password=TEST_PASSWORD, portal="customer"):
    return client.post(
        f"/v1/{portal}/auth/login",
        json={
            "email": "buyer@example.com",
            "password": password,
            "device_fingerprint": fingerprint,
        },
    )


class TestRegisterFlow:
    """Tests for registration endpoints."""

    def test_customer_register_returns_tokens(self, client, customer):
        """Test that customer registration signs the caller in."""
        assert customer["account"]["status"] == "active"
        assert customer["account"]["role"] == "customer"
        assert customer["access_token"]
        assert customer["refresh_token"]
        assert customer["device_binding"] == "bound_new"

    def test_register_rejects_duplicate_email(self, client, customer):
        """Test that a second registration is a 409 conflict."""
        response = client.post(
            "/v1/customer/auth/register",
            json={
                "email": "buyer@example.com",
                "password": TEST_PASSWORD,
                "device_fingerprint": "fp-two",
            },
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_register_validates_email_format(self, client):
        """Test that malformed emails are rejected."""
        response = client.post(
            "/v1/customer/auth/register",
            json={"email": "invalid-email", "password": TEST_PASSWORD, "device_fingerprint": "fp"},
        )

        assert response.status_code == 422

    def test_register_validates_password_strength(self, client):
        """Test that weak passwords are rejected with weak_password."""
        response = client.post(
            "/v1/customer/auth/register",
            json={"email": "buyer@example.com", "password": "weak", "device_fingerprint": "fp"},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "weak_password"

    def test_admin_portal_registration_forbidden(self, client):
        """Test that staff accounts cannot self-register."""
        response = client.post(
            "/v1/admin/auth/register",
            json={"email": "ops@example.com", "password": TEST_PASSWORD},
        )

        assert response.status_code == 403

    def test_unknown_portal_is_rejected(self, client):
        """Test that only the three portals are routable."""
        response = client.post(
            "/v1/partner/auth/register",
            json={"email": "x@example.com", "password": TEST_PASSWORD},
        )

        assert response.status_code == 422

    def test_supplier_verifies_email(self, client):
        """Test the supplier pending to active path."""
        response = client.post(
            "/v1/supplier/auth/register",
            json={"email": "vendor@example.com", "password": TEST_PASSWORD},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["account"]["status"] == "pending"
        assert data["access_token"] is None
        assert data["verification_token"]

        verified = client.post(
            "/v1/supplier/auth/verify-email", json={"token": data["verification_token"]}
        )
        assert verified.status_code == 200
        assert verified.json()["data"]["status"] == "active"
        assert verified.json()["data"]["email_verified"] is True

    def test_resend_verification_answers_alike(self, client):
        """Test that resend looks the same for known and unknown addresses."""
        client.post(
            "/v1/supplier/auth/register",
            json={"email": "vendor@example.com", "password": TEST_PASSWORD},
        )

        known = client.post(
            "/v1/supplier/auth/resend-verification", json={"email": "vendor@example.com"}
        )
        unknown = client.post(
            "/v1/supplier/auth/resend-verification", json={"email": "nobody@example.com"}
        )

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"]["accepted"] is True
        assert unknown.json()["data"] == {"accepted": True}
        token = known.json()["data"]["verification_token"]
        verified = client.post("/v1/supplier/auth/verify-email", json={"token": token})
        assert verified.json()["data"]["status"] == "active"


class TestLoginFlow:
    """Tests for login."""

    def test_login_with_bound_device(self, client, customer):
        """Test that the registered device logs in."""
        response = _login(client)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["device_binding"] == "bound_existing"
        assert data["token_type"] == "bearer"
        assert response.headers["X-RateLimit-Limit"]

    def test_login_from_other_device(self, client, customer):
        """Test that a second device is refused with device_mismatch."""
        response = _login(client, fingerprint="fp-two")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "device_mismatch"

    def test_login_wrong_password(self, client, customer):
        """Test that a wrong password is invalid_credentials."""
        response = _login(client, password="WrongPassword1")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_login_at_wrong_portal(self, client, customer):
        """Test that customers cannot use the supplier portal."""
        response = _login(client, portal="supplier")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_lockout_returns_429(self, client, customer):
        """Test that repeated failures lock the email."""
        for _ in range(5):
            assert _login(client, password="WrongPassword1").status_code == 401

        response = _login(client)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "too_many_attempts"

    def test_login_rate_limit(self, client, customer, monkeypatch):
        """Test that the per-IP login bucket returns rate_limited."""
        monkeypatch.setenv("LOGIN_RATE_LIMIT_PER_MINUTE", "2")
        reset_runtime_for_tests()

        codes = [_login(client).status_code for _ in range(3)]

        assert codes[:2] == [200, 200]
        assert codes[2] == 429


class TestTokenFlow:
    """Tests for refresh, logout and authenticated calls."""

    def test_refresh_rotates(self, client, customer):
        """Test that refresh returns a new pair."""
        response = client.post(
            "/v1/customer/auth/refresh",
            json={"refresh_token": customer["refresh_token"], "device_fingerprint": "fp-one"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["refresh_token"] != customer["refresh_token"]

    def test_refresh_fingerprint_from_header(self, client, customer):
        """Test that the fingerprint header is accepted on refresh."""
        response = client.post(
            "/v1/customer/auth/refresh",
            json={"refresh_token": customer["refresh_token"]},
            headers={"X-Device-Fingerprint": "fp-one"},
        )

        assert response.status_code == 200

    def test_refresh_at_other_portal_is_invalid(self, client, customer):
        """Test that a customer refresh token is refused at the supplier portal."""
        response = client.post(
            "/v1/supplier/auth/refresh",
            json={"refresh_token": customer["refresh_token"], "device_fingerprint": "fp-one"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"

    def test_refresh_reuse_is_reported(self, client, customer):
        """Test that replaying a rotated token returns token_reused."""
        body = {"refresh_token": customer["refresh_token"], "device_fingerprint": "fp-one"}
        first = client.post("/v1/customer/auth/refresh", json=body)
        assert first.status_code == 200

        replay = client.post("/v1/customer/auth/refresh", json=body)
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "token_reused"

        successor = client.post(
            "/v1/customer/auth/refresh",
            json={
                "refresh_token": first.json()["data"]["refresh_token"],
                "device_fingerprint": "fp-one",
            },
        )
        assert successor.status_code == 401

    def test_logout_then_refresh_fails(self, client, customer):
        """Test that logout revokes the refresh token."""
        response = client.post(
            "/v1/customer/auth/logout", json={"refresh_token": customer["refresh_token"]}
        )
        assert response.status_code == 200
        assert response.json()["data"]["revoked"] is True

        refreshed = client.post(
            "/v1/customer/auth/refresh",
            json={"refresh_token": customer["refresh_token"], "device_fingerprint": "fp-one"},
        )
        assert refreshed.status_code == 401
        assert refreshed.json()["error"]["code"] == "token_invalid"

    def test_me_requires_bound_device(self, client, customer):
        """Test that authenticated calls verify the fingerprint header."""
        headers = {"Authorization": f"Bearer {customer['access_token']}"}

        ok = client.get(
            "/v1/customer/auth/me", headers={**headers, "X-Device-Fingerprint": "fp-one"}
        )
        assert ok.status_code == 200
        assert ok.json()["data"]["portal"] == "customer"

        mismatch = client.get(
            "/v1/customer/auth/me", headers={**headers, "X-Device-Fingerprint": "fp-two"}
        )
        assert mismatch.status_code == 401
        assert mismatch.json()["error"]["code"] == "device_mismatch"

    def test_me_rejects_missing_token(self, client):
        """Test that a missing bearer token is unauthorized."""
        response = client.get("/v1/customer/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_me_rejects_other_portal(self, client, customer):
        """Test that a customer token is not valid at the supplier portal."""
        response = client.get(
            "/v1/supplier/auth/me",
            headers={
                "Authorization": f"Bearer {customer['access_token']}",
                "X-Device-Fingerprint": "fp-one",
            },
        )

        assert response.status_code == 403

    def test_change_password_revokes_refresh_tokens(self, client, customer):
        """Test that a password change signs out every session."""
        response = client.post(
            "/v1/customer/auth/change-password",
            json={"old_password": TEST_PASSWORD, "new_password": "NewPassword456"},
            headers={
                "Authorization": f"Bearer {customer['access_token']}",
                "X-Device-Fingerprint": "fp-one",
            },
        )
        assert response.status_code == 200
        assert response.json()["data"]["revoked_tokens"] == 1

        assert _login(client, password="NewPassword456").status_code == 200


class TestServiceSurface:
    """Tests for headers and health."""

    def test_responses_carry_request_id_and_no_store(self, client, customer):
        """Test that token responses are marked uncacheable."""
        response = _login(client)

        assert response.headers["X-Request-ID"]
        assert "no-store" in response.headers["Cache-Control"]
        assert response.headers["API-Version"] == app_module.__version__

    def test_request_id_is_propagated(self, client):
        """Test that a caller-supplied request id is echoed back."""
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_healthz(self, client):
        """Test that health reports the memory store and filesystem."""
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"
