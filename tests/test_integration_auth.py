"""Integration tests for the HTTP auth surface.

Tests the complete flow including:
- Refresh cookie rotation
- SSO ticket issue and consume across devices
- Current-user lookup via sid or session_token
- Logout
- Route guard redirects
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from chatgate import app as app_module
from chatgate.service.codec import encode_segment
from chatgate.service.runtime import get_runtime


@pytest.fixture
def client(desktop_headers):
    """Create a test client that presents the desktop browser headers."""
    return TestClient(app_module.app, headers=desktop_headers, follow_redirects=False)


@pytest.fixture
def phone_client(phone_headers):
    return TestClient(app_module.app, headers=phone_headers, follow_redirects=False)


@pytest.fixture
def grant(desktop_headers):
    """Log u1 in from the desktop device."""
    return asyncio.run(
        get_runtime().auth.establish_session("u1", "alice", "Alice", desktop_headers)
    )


def _set_cookies(client, **cookies):
    for name, value in cookies.items():
        client.cookies.set(name, value)


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_lifespan_starts_and_stops(self, desktop_headers):
        with TestClient(app_module.app, headers=desktop_headers) as managed:
            assert managed.get("/healthz").status_code == 200

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_generated(self, client):
        assert client.get("/healthz").headers["X-Request-ID"]

    def test_security_headers(self, client):
        response = client.get("/api/users/me")

        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]


class TestRefresh:
    def test_refresh_sets_new_cookie_pair(self, client, grant, desktop_headers):
        _set_cookies(client, refresh_token=grant.refresh_token)

        response = client.get("/api/auth/refresh")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.cookies.get("session_token")
        assert response.cookies.get("refresh_token")
        claims = get_runtime().auth.verify_access(
            response.cookies.get("session_token"), desktop_headers
        )
        assert claims.subject == "u1"

    def test_refresh_from_other_device_rejected(self, phone_client, grant):
        _set_cookies(phone_client, refresh_token=grant.refresh_token)

        response = phone_client.get("/api/auth/refresh")

        assert response.status_code == 401
        assert response.json() == {"success": False}
        assert "set-cookie" not in response.headers

    def test_refresh_without_cookie_rejected(self, client):
        response = client.get("/api/auth/refresh")

        assert response.status_code == 401
        assert response.json() == {"success": False}

    def test_access_token_cannot_refresh(self, client, grant):
        _set_cookies(client, refresh_token=grant.access_token)

        assert client.get("/api/auth/refresh").status_code == 401


class TestSsoIssue:
    def test_issue_returns_ticket(self, client, grant):
        _set_cookies(client, session_token=grant.access_token)

        response = client.get(
            "/api/sso/issue",
            params={"aud": "chat.example", "redirect": "https://chat.example/api/sso/consume"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        payload = get_runtime().auth.codec.verify(data["token"])
        assert payload["purpose"] == "sso"
        assert payload["aud"] == "chat.example"
        assert data["url"].startswith("https://chat.example/api/sso/consume?sso=")

    def test_issue_without_session_rejected(self, client):
        response = client.get("/api/sso/issue")

        assert response.status_code == 401
        assert response.json() == {"success": False}


class TestSsoConsume:
    def _ticket(self, client, grant):
        _set_cookies(client, session_token=grant.access_token)
        token = client.get("/api/sso/issue").json()["token"]
        client.cookies.clear()
        return token

    def test_consume_sets_session_and_redirects_to_next(self, client, grant, desktop_headers):
        ticket = self._ticket(client, grant)

        response = client.get("/api/sso/consume", params={"token": ticket, "next": "/home"})

        assert response.status_code == 307
        assert response.headers["location"] == "http://testserver/home"
        session_token = response.cookies.get("session_token")
        assert get_runtime().auth.verify_access(session_token, desktop_headers).subject == "u1"

    def test_consume_accepts_sso_param(self, client, grant):
        ticket = self._ticket(client, grant)

        response = client.get("/api/sso/consume", params={"sso": ticket})

        assert response.status_code == 307
        assert response.headers["location"] == "http://testserver/"
        assert response.cookies.get("session_token")

    def test_other_device_sent_to_fallback(self, client, phone_client, grant):
        ticket = self._ticket(client, grant)

        response = phone_client.get("/api/sso/consume", params={"token": ticket})

        assert response.status_code == 307
        assert response.headers["location"] == "http://testserver/mini"
        assert "session_token" not in response.cookies

    def test_garbage_ticket_sent_to_root(self, client):
        response = client.get("/api/sso/consume", params={"token": "not-a-ticket"})

        assert response.status_code == 307
        assert response.headers["location"] == "http://testserver/"
        assert "session_token" not in response.cookies

    def test_replayed_ticket_sent_to_root(self, client, grant):
        ticket = self._ticket(client, grant)
        client.get("/api/sso/consume", params={"token": ticket})
        client.cookies.clear()

        response = client.get("/api/sso/consume", params={"token": ticket, "next": "/home"})

        assert response.headers["location"] == "http://testserver/"
        assert "session_token" not in response.cookies

    def test_offsite_next_ignored(self, client, grant):
        ticket = self._ticket(client, grant)

        response = client.get(
            "/api/sso/consume", params={"token": ticket, "next": "//evil.example/"}
        )

        assert response.headers["location"] == "http://testserver/"


class TestCurrentUser:
    def test_me_via_session_token(self, client, grant):
        _set_cookies(client, session_token=grant.access_token)

        response = client.get("/api/users/me")

        assert response.status_code == 200
        user = response.json()["user"]
        assert user["_id"] == "u1"
        assert user["username"] == "alice"
        assert user["session_id"] == grant.session.id

    def test_me_via_sid(self, client, grant):
        _set_cookies(client, sid=grant.session.id)

        response = client.get("/api/users/me")

        assert response.status_code == 200
        assert response.json()["user"]["_id"] == "u1"

    def test_sid_from_other_device_rejected(self, phone_client, grant):
        _set_cookies(phone_client, sid=grant.session.id)

        response = phone_client.get("/api/users/me")

        assert response.status_code == 401
        assert response.json() == {"success": False}

    def test_me_without_credentials(self, client):
        response = client.get("/api/users/me")

        assert response.status_code == 401
        assert response.json() == {"success": False}


class TestLogout:
    def test_logout_revokes_and_clears_cookies(self, client, grant):
        _set_cookies(
            client,
            sid=grant.session.id,
            session_token=grant.access_token,
            refresh_token=grant.refresh_token,
        )

        response = client.post("/api/auth/logout")

        assert response.status_code == 200
        assert response.json()["success"] is True
        cleared = " ".join(response.headers.get_list("set-cookie")).lower()
        for name in ("session_token", "refresh_token", "sid"):
            assert f"{name}=" in cleared
        assert "max-age=0" in cleared
        assert get_runtime().auth.store.get_session(grant.session.id) is None

    def test_logout_from_other_device_keeps_session(self, phone_client, grant):
        _set_cookies(phone_client, sid=grant.session.id)

        response = phone_client.post("/api/auth/logout")

        assert response.status_code == 200
        assert get_runtime().auth.store.get_session(grant.session.id) is not None


def _nested_header_token(depth):
    return f"{encode_segment(('[' * depth + ']' * depth).encode())}.e30.sig"


class TestRouteGuard:
    def test_protected_path_without_session_redirects_to_root(self, client):
        response = client.get("/home")

        assert response.status_code == 307
        assert response.headers["location"] == "http://testserver/"

    def test_guard_redirect_carries_security_headers(self, client):
        response = client.get("/api/conversations/abc")

        assert response.status_code == 307
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
        assert "no-store" in response.headers["Cache-Control"]
        assert response.headers["X-Request-ID"]

    def test_landing_redirect_carries_security_headers(self, client, grant):
        _set_cookies(client, session_token=grant.access_token)

        response = client.get("/")

        assert response.status_code == 307
        assert response.headers["X-Frame-Options"] == "DENY"

    @pytest.mark.parametrize("depth", [1000, 3000])
    def test_nested_header_cookie_redirects_instead_of_failing(self, client, depth):
        _set_cookies(client, session_token=_nested_header_token(depth))

        response = client.get("/home")

        assert response.status_code == 307
        assert response.headers["location"] == "http://testserver/"

    def test_nested_header_ticket_rejected(self, client):
        response = client.get(
            "/api/sso/consume", params={"sso": _nested_header_token(100_000)}
        )

        assert response.status_code == 307
        assert response.headers["location"] == "http://testserver/"
        assert "session_token" not in response.cookies

    def test_protected_api_prefix(self, client):
        response = client.get("/api/conversations/abc")

        assert response.status_code == 307
        assert response.headers["location"] == "http://testserver/"

    def test_root_with_session_redirects_to_landing(self, client, grant):
        _set_cookies(client, session_token=grant.access_token)

        response = client.get("/")

        assert response.status_code == 307
        assert response.headers["location"] == "http://testserver/home"

    def test_refresh_token_is_not_a_session(self, client, grant):
        _set_cookies(client, session_token=grant.refresh_token)

        assert client.get("/home").status_code == 307
        assert client.get("/").status_code == 404

    def test_protected_path_with_session_passes_through(self, client, grant):
        _set_cookies(client, session_token=grant.access_token)

        # No page is mounted at /home; passing the guard means reaching routing
        assert client.get("/home").status_code == 404

    def test_unprotected_lookalike_path(self, client):
        assert client.get("/homework").status_code == 404
