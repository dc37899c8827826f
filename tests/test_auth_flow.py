"""
tests/test_auth_flow.py -- End-to-end tests for the auth API and the session gate.

These tests run through the real ASGI stack (middleware, routing, dependency
injection, response models) with an isolated in-memory store and a recording
notifier. The client does not follow redirects so Location headers can be
asserted directly.

Coverage:
  - register -> wrong code -> right code -> private route allowed
  - login errors: bad credentials, unverified (403 with user_id)
  - resend cooldown -> 429 with Retry-After
  - private route without / with bad cookie -> 302 to login with redirect_uri
  - logout revokes the session server-side and clears the cookie
  - session status endpoint and explicit refresh
  - session listing and revocation with ownership check
  - CORS preflight to a private path is answered by CORSMiddleware
  - a user-store outage behind a valid cookie is a 503, not a 401
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from api.main import app
from auth.routing import RouteClassifier
from auth.tokens import SESSION_COOKIE

from conftest import PASSWORD, ApiHarness, register_and_verify


def _register(api: ApiHarness, email: str = "alice@example.com") -> str:
    resp = api.client.post(
        "/api/v1/auth/register",
        json={"name": "Alice", "email": email, "password": PASSWORD, "confirm_password": PASSWORD},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["user_id"]


class TestRegistrationAndVerification:
    def test_full_signup_flow(self, api: ApiHarness) -> None:
        """Register, fail once, verify, then reach a private route with the issued cookie."""
        user_id = _register(api)
        assert api.notifier.sent[0][0] == "alice@example.com"
        code = api.notifier.last_code()

        wrong = "10000" if code != "10000" else "10001"
        resp = api.client.post("/api/v1/auth/verify", json={"user_id": user_id, "code": wrong})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "mismatch"

        resp = api.client.post(
            "/api/v1/auth/verify",
            json={"user_id": user_id, "code": [int(d) for d in code], "redirect_uri": "/dashboard/reports"},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "success"
        assert body["user_id"] == user_id
        assert body["redirect_to"] == "/dashboard/reports"
        assert resp.headers["cache-control"] == "no-store"
        assert SESSION_COOKIE in resp.cookies

        resp = api.client.get("/api/v1/dashboard")
        assert resp.status_code == 200
        data = resp.json()
        assert data["user"]["user_id"] == user_id
        assert data["user"]["email_verified_at"] is not None
        assert data["active_sessions"] == 1
        assert data["sessions"][0]["current"] is True

    def test_register_validation_error(self, api: ApiHarness) -> None:
        resp = api.client.post(
            "/api/v1/auth/register",
            json={"name": "A", "email": "a@example.com", "password": "password", "confirm_password": "password"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"
        assert "uppercase" in resp.json()["error"]["message"]

    def test_register_duplicate_email(self, api: ApiHarness) -> None:
        _register(api)
        resp = api.client.post(
            "/api/v1/auth/register",
            json={"name": "B", "email": "ALICE@example.com", "password": PASSWORD, "confirm_password": PASSWORD},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_register_delivery_failure_still_creates_account(self, api: ApiHarness) -> None:
        api.notifier.fail = True
        resp = api.client.post(
            "/api/v1/auth/register",
            json={"name": "Bob", "email": "bob@example.com", "password": PASSWORD, "confirm_password": PASSWORD},
        )
        assert resp.status_code == 201
        assert resp.json()["status"] == "delivery_error"
        assert api.store.get_by_id(resp.json()["user_id"]) is not None

    def test_verify_rejects_malformed_code(self, api: ApiHarness) -> None:
        user_id = _register(api)
        resp = api.client.post("/api/v1/auth/verify", json={"user_id": user_id, "code": "12ab5"})
        assert resp.status_code == 422

    def test_verify_rejects_non_ascii_digits(self, api: ApiHarness) -> None:
        user_id = _register(api)
        arabic_indic = "\u0661\u0662\u0663\u0664\u0665"
        resp = api.client.post("/api/v1/auth/verify", json={"user_id": user_id, "code": arabic_indic})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_resend_within_cooldown(self, api: ApiHarness) -> None:
        user_id = _register(api)
        resp = api.client.post("/api/v1/auth/verify/resend", json={"user_id": user_id})
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "throttled"
        assert 0 < int(resp.headers["retry-after"]) <= 300

    def test_resend_for_unknown_user(self, api: ApiHarness) -> None:
        resp = api.client.post("/api/v1/auth/verify/resend", json={"user_id": "nope"})
        assert resp.status_code == 404


class TestLogin:
    def test_login_unverified_returns_user_id(self, api: ApiHarness) -> None:
        user_id = _register(api)
        resp = api.client.post("/api/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
        assert resp.status_code == 403
        error = resp.json()["error"]
        assert error["code"] == "unverified"
        assert error["user_id"] == user_id
        assert SESSION_COOKIE not in resp.cookies

    def test_login_bad_credentials_are_generic(self, api: ApiHarness) -> None:
        register_and_verify(api)
        api.client.cookies.clear()
        wrong = api.client.post("/api/v1/auth/login", json={"email": "alice@example.com", "password": "Wrong1234"})
        unknown = api.client.post("/api/v1/auth/login", json={"email": "eve@example.com", "password": "Wrong1234"})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()

    def test_login_sets_cookie(self, api: ApiHarness) -> None:
        user_id = register_and_verify(api)
        api.client.cookies.clear()
        resp = api.client.post("/api/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
        assert resp.status_code == 200
        assert resp.json()["user_id"] == user_id
        assert resp.json()["redirect_to"] == "/dashboard"
        set_cookie = resp.headers["set-cookie"]
        assert "HttpOnly" in set_cookie
        assert "SameSite=strict" in set_cookie

    def test_login_ignores_offsite_redirect(self, api: ApiHarness) -> None:
        register_and_verify(api)
        resp = api.client.post(
            "/api/v1/auth/login",
            json={"email": "alice@example.com", "password": PASSWORD, "redirect_uri": "//evil.example/x"},
        )
        assert resp.json()["redirect_to"] == "/dashboard"


class TestGate:
    def test_private_route_without_cookie_redirects(self, api: ApiHarness) -> None:
        resp = api.client.get("/api/v1/dashboard")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/auth/login?redirect_uri=/api/v1/dashboard"

    def test_redirect_keeps_query_for_return(self, api: ApiHarness) -> None:
        resp = api.client.get("/api/v1/dashboard?tab=sessions")
        location = urlparse(resp.headers["location"])
        assert location.path == "/auth/login"
        assert parse_qs(location.query)["redirect_uri"] == ["/api/v1/dashboard?tab=sessions"]

    def test_private_route_with_bad_cookie_redirects_and_clears(self, api: ApiHarness) -> None:
        api.client.cookies.set(SESSION_COOKIE, "garbage")
        resp = api.client.get("/api/v1/auth/me")
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("/auth/login")
        assert f'{SESSION_COOKIE}=""' in resp.headers["set-cookie"]

    def test_public_routes_are_not_gated(self, api: ApiHarness) -> None:
        assert api.client.get("/api/v1/health").status_code == 200
        assert api.client.get("/api/v1/auth/session").json() == {
            "status": "invalid",
            "user_id": None,
            "expires_at": None,
        }

    def test_me_with_valid_cookie(self, api: ApiHarness) -> None:
        user_id = register_and_verify(api)
        resp = api.client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        assert resp.json()["user_id"] == user_id
        assert resp.json()["email"] == "alice@example.com"

    def test_cors_preflight_to_private_path_is_not_redirected(self, api: ApiHarness) -> None:
        resp = api.client.options(
            "/api/v1/auth/sessions/abc",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "DELETE",
            },
        )
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "http://localhost:3000"
        assert "location" not in resp.headers

    def test_host_and_cors_checks_wrap_the_gate(self) -> None:
        # user_middleware is outermost first.
        names = [
            m.kwargs["dispatch"].__name__ if "dispatch" in m.kwargs else m.cls.__name__ for m in app.user_middleware
        ]
        assert names.index("TrustedHostMiddleware") < names.index("session_gate")
        assert names.index("CORSMiddleware") < names.index("session_gate")
        assert names.index("session_gate") < names.index("SlowAPIMiddleware")

    def test_user_store_outage_is_503(self, api: ApiHarness) -> None:
        register_and_verify(api)
        error = OperationalError("SELECT", {}, Exception("database is locked"))
        with patch.object(api.store, "get_by_id", side_effect=error):
            resp = api.client.get("/api/v1/auth/me")
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "storage_error"
        assert resp.headers["retry-after"] == "5"

    def test_ungated_route_validates_cookie_once(self, api: ApiHarness, monkeypatch: pytest.MonkeyPatch) -> None:
        register_and_verify(api)
        monkeypatch.setattr(app.state.gate, "classifier", RouteClassifier.from_lists(["/"], []))
        sessions = app.state.sessions
        with patch.object(sessions, "validate", wraps=sessions.validate) as validate:
            resp = api.client.get("/api/v1/auth/sessions")
        assert resp.status_code == 200
        assert [s["current"] for s in resp.json()] == [True]
        assert validate.call_count == 1


class TestLogoutAndSessions:
    def test_logout_revokes_session_server_side(self, api: ApiHarness) -> None:
        register_and_verify(api)
        token = api.client.cookies.get(SESSION_COOKIE)

        resp = api.client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert f'{SESSION_COOKIE}=""' in resp.headers["set-cookie"]

        # Replaying the old cookie must not work after logout.
        api.client.cookies.set(SESSION_COOKIE, token)
        resp = api.client.get("/api/v1/dashboard")
        assert resp.status_code == 302

    def test_logout_without_cookie(self, api: ApiHarness) -> None:
        resp = api.client.post("/api/v1/auth/logout")
        assert resp.status_code == 200

    def test_session_status_and_refresh(self, api: ApiHarness) -> None:
        user_id = register_and_verify(api)
        status = api.client.get("/api/v1/auth/session").json()
        assert status["status"] == "success"
        assert status["user_id"] == user_id

        resp = api.client.put("/api/v1/auth/session/refresh")
        assert resp.status_code == 200
        assert resp.json()["status"] == "success"
        assert resp.json()["expires_at"] >= status["expires_at"]
        assert SESSION_COOKIE in resp.cookies
        assert api.client.get("/api/v1/auth/session").json()["status"] == "success"

    def test_list_and_revoke_sessions(self, api: ApiHarness) -> None:
        user_id = register_and_verify(api)
        current = api.client.cookies.get(SESSION_COOKIE)

        # A second login creates a second session.
        api.client.post("/api/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
        second = api.client.cookies.get(SESSION_COOKIE)
        assert second != current

        listed = api.client.get("/api/v1/auth/sessions").json()
        assert len(listed) == 2
        assert sum(1 for s in listed if s["current"]) == 1
        other = next(s for s in listed if not s["current"])

        resp = api.client.delete(f"/api/v1/auth/sessions/{other['id']}")
        assert resp.status_code == 204
        assert len(api.client.get("/api/v1/auth/sessions").json()) == 1
        assert api.store.list_sessions(user_id, include_revoked=True)[0].user_id == user_id

        resp = api.client.delete(f"/api/v1/auth/sessions/{other['id']}")
        assert resp.status_code == 404

    def test_cannot_revoke_someone_elses_session(self, api: ApiHarness) -> None:
        register_and_verify(api, email="bob@example.com", name="Bob")
        bob_session = api.client.get("/api/v1/auth/sessions").json()[0]["id"]

        api.client.cookies.clear()
        register_and_verify(api, email="carol@example.com", name="Carol")
        resp = api.client.delete(f"/api/v1/auth/sessions/{bob_session}")
        assert resp.status_code == 404
        assert not api.store.get_session(bob_session).is_revoked
