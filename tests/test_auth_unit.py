"""Unit tests for the auth facade.

Tests for:
- Session establishment and resolution with device binding
- Cookie-based authentication (sid first, then session_token)
- Refresh rotation policy selection from settings
- SSO issue/redeem through request headers
- Logout
"""

import pytest

from chatgate.config import RefreshRotation
from chatgate.service.auth import AuthService
from chatgate.service.fingerprint import fingerprint
from chatgate.service.sso import RedeemOutcome
from chatgate.storage.memory import MemorySessionStore


@pytest.fixture
def memory_store():
    return MemorySessionStore()


@pytest.fixture
def auth_service(memory_store, settings, clock):
    return AuthService(memory_store, settings, clock=clock)


async def _login(auth_service, headers):
    return await auth_service.establish_session("u1", "alice", "Alice", headers)


class TestEstablishSession:
    async def test_creates_bound_session_and_tokens(self, auth_service, memory_store, desktop_headers):
        grant = await _login(auth_service, desktop_headers)

        assert memory_store.get_session(grant.session.id) is grant.session
        assert grant.session.device_fingerprint == fingerprint(desktop_headers)
        claims = auth_service.verify_access(grant.access_token, desktop_headers)
        assert claims.subject == "u1"
        assert claims.session_id == grant.session.id
        assert auth_service.codec.verify(grant.refresh_token)["purpose"] == "refresh"

    async def test_session_ttl_from_settings(self, memory_store, settings, clock, desktop_headers):
        service = AuthService(
            memory_store, settings.model_copy(update={"session_ttl_days": 1}), clock=clock
        )
        grant = await _login(service, desktop_headers)

        assert (grant.session.expires_at - grant.session.created_at).days == 1


class TestResolveSession:
    async def test_same_device_resolves_and_touches(self, auth_service, desktop_headers):
        grant = await _login(auth_service, desktop_headers)
        before = grant.session.last_seen_at

        sess = auth_service.resolve_session(grant.session.id, desktop_headers)

        assert sess.id == grant.session.id
        assert sess.last_seen_at >= before

    async def test_other_device_rejected(self, auth_service, desktop_headers, phone_headers):
        grant = await _login(auth_service, desktop_headers)

        assert auth_service.resolve_session(grant.session.id, phone_headers) is None

    async def test_revoked_session_rejected(self, auth_service, desktop_headers):
        grant = await _login(auth_service, desktop_headers)
        await auth_service.logout(grant.session.id)

        assert auth_service.resolve_session(grant.session.id, desktop_headers) is None

    def test_missing_sid(self, auth_service, desktop_headers):
        assert auth_service.resolve_session(None, desktop_headers) is None
        assert auth_service.resolve_session("unknown", desktop_headers) is None


class TestAuthenticate:
    async def test_sid_takes_precedence(self, auth_service, desktop_headers):
        grant = await _login(auth_service, desktop_headers)

        principal = auth_service.authenticate(
            {"sid": grant.session.id, "session_token": grant.access_token}, desktop_headers
        )

        assert principal.via == "session"
        assert principal.user_id == "u1"
        assert principal.username == "alice"
        assert principal.session_id == grant.session.id

    async def test_sid_alone_is_enough(self, auth_service, desktop_headers):
        grant = await _login(auth_service, desktop_headers)

        principal = auth_service.authenticate({"sid": grant.session.id}, desktop_headers)

        assert principal.user_id == "u1"
        assert principal.username == ""

    async def test_falls_back_to_access_token(self, auth_service, desktop_headers):
        grant = await _login(auth_service, desktop_headers)

        principal = auth_service.authenticate(
            {"sid": "stale", "session_token": grant.access_token}, desktop_headers
        )

        assert principal.via == "access_token"
        assert principal.user_id == "u1"

    async def test_access_token_bound_to_device(self, auth_service, desktop_headers, phone_headers):
        grant = await _login(auth_service, desktop_headers)

        assert auth_service.authenticate({"session_token": grant.access_token}, phone_headers) is None

    async def test_refresh_token_cannot_authenticate(self, auth_service, desktop_headers):
        grant = await _login(auth_service, desktop_headers)

        assert auth_service.authenticate({"session_token": grant.refresh_token}, desktop_headers) is None

    def test_no_cookies(self, auth_service, desktop_headers):
        assert auth_service.authenticate({}, desktop_headers) is None


class TestRefreshAccess:
    async def test_stateless_by_default(self, auth_service, desktop_headers):
        grant = await _login(auth_service, desktop_headers)

        assert auth_service.lifecycle.one_time_refresh is False
        assert await auth_service.refresh_access(grant.refresh_token, desktop_headers) is not None
        assert await auth_service.refresh_access(grant.refresh_token, desktop_headers) is not None

    async def test_one_time_from_settings(self, memory_store, settings, clock, desktop_headers):
        service = AuthService(
            memory_store,
            settings.model_copy(update={"refresh_rotation": RefreshRotation.ONE_TIME}),
            clock=clock,
        )
        grant = await _login(service, desktop_headers)

        assert await service.refresh_access(grant.refresh_token, desktop_headers) is not None
        assert await service.refresh_access(grant.refresh_token, desktop_headers) is None

    async def test_other_device_rejected(self, auth_service, desktop_headers, phone_headers):
        grant = await _login(auth_service, desktop_headers)

        assert await auth_service.refresh_access(grant.refresh_token, phone_headers) is None


class TestSso:
    async def test_issue_and_redeem_across_hosts(self, auth_service, desktop_headers):
        grant = await _login(auth_service, desktop_headers)
        issued = auth_service.issue_sso_ticket(
            grant.access_token,
            "b.example",
            desktop_headers,
            host="a.example",
            redirect="https://b.example/api/sso/consume",
        )

        result = await auth_service.redeem_sso_ticket(
            issued.ticket, "/home", desktop_headers, "b.example"
        )

        assert issued.url.startswith("https://b.example/api/sso/consume?sso=")
        assert result.outcome is RedeemOutcome.SUCCESS
        assert auth_service.verify_access(result.session_token, desktop_headers).subject == "u1"

    async def test_redeem_from_other_device_goes_to_fallback(
        self, auth_service, desktop_headers, phone_headers
    ):
        grant = await _login(auth_service, desktop_headers)
        issued = auth_service.issue_sso_ticket(
            grant.access_token, None, desktop_headers, host="a.example"
        )

        result = await auth_service.redeem_sso_ticket(issued.ticket, None, phone_headers, "a.example")

        assert result.outcome is RedeemOutcome.DEVICE_MISMATCH
        assert result.redirect_to == auth_service.settings.sso_fallback_path

    async def test_ticket_bound_to_issuing_request(
        self, auth_service, desktop_headers, phone_headers
    ):
        grant = await _login(auth_service, desktop_headers)
        issued = auth_service.issue_sso_ticket(
            grant.access_token, None, phone_headers, host="a.example"
        )

        assert auth_service.codec.verify(issued.ticket)["fp"] == fingerprint(phone_headers)
        desktop = await auth_service.redeem_sso_ticket(issued.ticket, None, desktop_headers, "a.example")
        assert desktop.outcome is RedeemOutcome.DEVICE_MISMATCH

    async def test_issue_requires_access_token(self, auth_service, desktop_headers):
        grant = await _login(auth_service, desktop_headers)

        assert auth_service.issue_sso_ticket(None, None, desktop_headers, host="a.example") is None
        assert auth_service.issue_sso_ticket(
            grant.refresh_token, None, desktop_headers, host="a.example"
        ) is None


class TestLogout:
    async def test_logout_revokes_store_session(self, auth_service, memory_store, desktop_headers):
        grant = await _login(auth_service, desktop_headers)

        await auth_service.logout(grant.session.id)

        assert memory_store.get_session(grant.session.id) is None
        assert memory_store.list_user_sessions("u1") == []

    async def test_logout_without_sid_is_noop(self, auth_service):
        await auth_service.logout(None)
