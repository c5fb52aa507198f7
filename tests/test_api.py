"""HTTP surface: envelopes, cookie delivery and transparent refresh."""

import time

import pytest
from fastapi.testclient import TestClient

from gatekeeper.api.middleware import ACCESS_TOKEN_HEADER, REFRESH_TOKEN_HEADER
from gatekeeper.app import create_app
from gatekeeper.service.events import EventName
from gatekeeper.service.tokens import TokenService

PASSWORD = "CorrectHorse1!"


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime=runtime))


def _signup(client, email="alice@example.com"):
    response = client.post("/v1/auth/signup", json={"email": email, "password": PASSWORD})
    assert response.status_code == 201
    return response.json()["data"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestAuthRoutes:
    def test_signup_returns_tokens(self, client):
        data = _signup(client)
        assert data["user"]["email"] == "alice@example.com"
        assert data["user"]["roles"] == ["user"]
        assert data["tokens"]["token_type"] == "bearer"
        assert data["session_id"]

    def test_duplicate_signup_conflict(self, client):
        _signup(client)
        response = client.post(
            "/v1/auth/signup", json={"email": "alice@example.com", "password": PASSWORD}
        )
        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "email_already_exists"

    def test_login_and_me(self, client):
        _signup(client)
        response = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
        )
        assert response.status_code == 200
        tokens = response.json()["data"]["tokens"]

        me = client.get("/v1/auth/me", headers=_bearer(tokens["access_token"]))
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "alice@example.com"

    def test_bad_credentials_envelope(self, client):
        _signup(client)
        response = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": "wrong-one"}
        )
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "invalid_credentials"
        assert error["details"]["domain"] == "credentials"

    def test_me_requires_token(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"

    def test_validation_error(self, client):
        response = client.post("/v1/auth/signup", json={"email": "not-an-email", "password": PASSWORD})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_refresh_then_logout(self, client):
        tokens = _signup(client)["tokens"]
        refreshed = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refreshed.status_code == 200
        new_tokens = refreshed.json()["data"]["tokens"]
        assert new_tokens["refresh_token"] != tokens["refresh_token"]

        reused = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert reused.status_code == 401

        logout = client.post("/v1/auth/logout", headers=_bearer(new_tokens["access_token"]))
        assert logout.json()["data"] == {"status": "logged_out"}
        after = client.get("/v1/auth/me", headers=_bearer(new_tokens["access_token"]))
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "session_not_found"

    def test_refresh_requires_token(self, client):
        response = client.post("/v1/auth/refresh")
        assert response.status_code == 400
        assert response.json()["error"]["details"]["missing"] == ["refresh_token"]

    def test_sessions_listing_marks_current(self, client):
        first = _signup(client)
        client.post("/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
        response = client.get("/v1/auth/sessions", headers=_bearer(first["tokens"]["access_token"]))
        sessions = response.json()["data"]
        assert len(sessions) == 2
        current = [s for s in sessions if s["is_current"]]
        assert [s["id"] for s in current] == [first["session_id"]]

    def test_revoke_session_is_idempotent(self, client):
        first = _signup(client)
        second = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
        ).json()["data"]
        headers = _bearer(first["tokens"]["access_token"])
        for _ in range(2):
            response = client.delete(f"/v1/auth/sessions/{second['session_id']}", headers=headers)
            assert response.status_code == 200
            assert response.json()["data"]["status"] == "revoked"

        bob = _signup(client, email="bob@example.com")
        foreign = client.delete(f"/v1/auth/sessions/{bob['session_id']}", headers=headers)
        assert foreign.status_code == 401
        assert foreign.json()["error"]["code"] == "session_not_found"
        bob_me = client.get("/v1/auth/me", headers=_bearer(bob["tokens"]["access_token"]))
        assert bob_me.status_code == 200

    def test_forgot_password_never_reveals_accounts(self, client):
        response = client.post("/v1/auth/password/forgot", json={"email": "ghost@example.com"})
        assert response.status_code == 200
        assert response.json()["data"] == {"status": "sent"}


class TestCookieDelivery:
    @pytest.fixture
    def cookie_client(self, runtime_factory):
        return TestClient(create_app(runtime=runtime_factory(token_delivery="cookie")))

    def test_tokens_only_in_cookies(self, cookie_client):
        data = _signup(cookie_client)
        assert data["tokens"] is None
        assert cookie_client.cookies.get("accessToken")
        assert cookie_client.cookies.get("refreshToken")

        me = cookie_client.get("/v1/auth/me")
        assert me.status_code == 200

    def test_refresh_from_cookie(self, cookie_client):
        _signup(cookie_client)
        old_refresh = cookie_client.cookies.get("refreshToken")
        response = cookie_client.post("/v1/auth/refresh")
        assert response.status_code == 200
        assert cookie_client.cookies.get("refreshToken") != old_refresh


class TestTransparentRefresh:
    def _expired_access(self, runtime, data):
        stale = TokenService(runtime.settings, clock=lambda: time.time() - 3600)
        return stale.generate_access_token(
            {"sub": data["user"]["id"], "sessionId": data["session_id"]}
        )

    def test_expired_access_token_rotated(self, client, runtime):
        data = _signup(client)
        headers = {
            **_bearer(self._expired_access(runtime, data)),
            REFRESH_TOKEN_HEADER: data["tokens"]["refresh_token"],
        }
        response = client.get("/v1/auth/me", headers=headers)
        assert response.status_code == 200
        fresh = response.headers[ACCESS_TOKEN_HEADER]
        assert response.headers[REFRESH_TOKEN_HEADER] != data["tokens"]["refresh_token"]
        assert client.get("/v1/auth/me", headers=_bearer(fresh)).status_code == 200

    def test_expired_without_refresh_token(self, client, runtime):
        data = _signup(client)
        response = client.get("/v1/auth/me", headers=_bearer(self._expired_access(runtime, data)))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_expired"

    def test_valid_access_token_untouched(self, client):
        data = _signup(client)
        headers = {
            **_bearer(data["tokens"]["access_token"]),
            REFRESH_TOKEN_HEADER: data["tokens"]["refresh_token"],
        }
        response = client.get("/v1/auth/me", headers=headers)
        assert response.status_code == 200
        assert ACCESS_TOKEN_HEADER not in response.headers


class TestMfaOverHttp:
    @pytest.fixture
    def mfa_runtime(self, runtime_factory):
        return runtime_factory(mfa_enabled=True, mfa_required=True)

    def test_challenge_flow(self, mfa_runtime):
        client = TestClient(create_app(runtime=mfa_runtime))
        seen = []
        mfa_runtime.events.subscribe(seen.append)
        _signup(client)

        login = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
        )
        challenge = login.json()["data"]
        assert challenge["requires_mfa"] is True
        assert challenge["methods"] == ["email"]

        sent = client.post(
            "/v1/auth/2fa/send",
            json={"method": "email", "challenge_token": challenge["challenge_token"]},
        )
        assert sent.status_code == 200
        assert "code" not in sent.json()["data"]

        mfa_runtime.events.drain()
        codes = [e.payload["code"] for e in seen if e.name == EventName.TWO_FACTOR_CODE_SENT]
        verified = client.post(
            "/v1/auth/2fa/verify",
            json={
                "challenge_token": challenge["challenge_token"],
                "code": codes[-1],
                "method": "email",
            },
        )
        assert verified.status_code == 200
        tokens = verified.json()["data"]["tokens"]
        status = client.get("/v1/auth/mfa/status", headers=_bearer(tokens["access_token"]))
        assert status.json()["data"]["required"] is True

    def test_pending_session_blocked_from_me(self, mfa_runtime):
        client = TestClient(create_app(runtime=mfa_runtime))
        data = _signup(client)
        response = client.get("/v1/auth/me", headers=_bearer(data["tokens"]["access_token"]))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "mfa_required"
