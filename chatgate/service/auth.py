from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, List, Mapping, Optional, Protocol

from chatgate.config import RefreshRotation, Settings
from chatgate.logging import get_logger
from chatgate.service.claims import AccessClaims
from chatgate.service.codec import TokenCodec
from chatgate.service.fingerprint import fingerprint
from chatgate.service.guard import RouteGuard
from chatgate.service.lifecycle import TokenLedger, TokenLifecycle, TokenPair
from chatgate.service.sso import RedeemResult, SsoExchange, SsoTicket
from chatgate.storage.memory import MemoryTokenLedger
from chatgate.storage.models import Principal, Session
from chatgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

SESSION_COOKIE = "session_token"
REFRESH_COOKIE = "refresh_token"
SID_COOKIE = "sid"


class SessionStore(Protocol):
    def create_session(
        self,
        user_id: str,
        *,
        device_fingerprint: str,
        ip: str | None = None,
        device_name: str = "web",
        ttl_days: int = 7,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str) -> None: ...

    def revoke_session(self, session_id: str) -> None: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...


@dataclass(frozen=True)
class LoginGrant:
    session: Session
    access_token: str
    refresh_token: str


class AuthService:
    """Token and session handling behind the HTTP routes.

    ``cache`` is optional: when Redis is reachable it doubles as the
    consumed-token ledger and mirrors live sessions; otherwise an in-process
    ledger is used.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        ledger: Optional[TokenLedger] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self.ledger: TokenLedger = ledger or cache or MemoryTokenLedger(clock)
        self.logger = logger

        self.codec = TokenCodec(
            settings.jwt_secret,
            default_ttl_seconds=settings.access_token_ttl_seconds,
            clock=clock,
            leeway_seconds=settings.clock_skew_leeway_seconds,
        )
        self.lifecycle = TokenLifecycle(
            self.codec,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            ledger=self.ledger,
            one_time_refresh=settings.refresh_rotation is RefreshRotation.ONE_TIME,
        )
        self.sso = SsoExchange(
            self.codec,
            self.lifecycle,
            ticket_ttl_seconds=settings.sso_ticket_ttl_seconds,
            ledger=self.ledger,
            single_use=settings.sso_single_use,
            fallback_path=settings.sso_fallback_path,
            root_path=settings.root_path,
        )
        self.route_guard = RouteGuard(
            self.codec,
            protected_prefixes=settings.protected_prefixes,
            root_path=settings.root_path,
            landing_path=settings.landing_path,
        )

    def verify_access(
        self, cookie_value: Optional[str], headers: Mapping[str, str]
    ) -> Optional[AccessClaims]:
        return self.lifecycle.verify_access(cookie_value, fingerprint(headers))

    async def refresh_access(
        self, refresh_cookie_value: Optional[str], headers: Mapping[str, str]
    ) -> Optional[TokenPair]:
        return await self.lifecycle.refresh(refresh_cookie_value, fingerprint(headers))

    def issue_sso_ticket(
        self,
        access_cookie_value: Optional[str],
        target_audience: Optional[str],
        headers: Mapping[str, str],
        *,
        host: str,
        redirect: Optional[str] = None,
    ) -> Optional[SsoTicket]:
        return self.sso.issue_ticket(
            access_cookie_value,
            fingerprint(headers),
            audience=target_audience,
            default_audience=host,
            redirect=redirect,
        )

    async def redeem_sso_ticket(
        self,
        ticket: Optional[str],
        next_path: Optional[str],
        headers: Mapping[str, str],
        hostname: str,
    ) -> RedeemResult:
        return await self.sso.redeem_ticket(
            ticket, fingerprint(headers), hostname, next_path
        )

    async def establish_session(
        self,
        user_id: str,
        username: str,
        name: str,
        headers: Mapping[str, str],
        *,
        ip: Optional[str] = None,
        device_name: str = "web",
    ) -> LoginGrant:
        """Open a store session for an already-verified user and mint its tokens."""
        fp = fingerprint(headers)
        session = self.store.create_session(
            user_id,
            device_fingerprint=fp,
            ip=ip,
            device_name=device_name,
            ttl_days=self.settings.session_ttl_days,
        )
        if self.cache:
            await self.cache.cache_session(session.id, user_id, session.expires_at)
        pair = self.lifecycle.issue_pair(
            user_id, username, name, fp, session_id=session.id
        )
        self.logger.info("session_established", user_id=user_id, session_id=session.id)
        return LoginGrant(
            session=session,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
        )

    def resolve_session(
        self, session_id: Optional[str], headers: Mapping[str, str]
    ) -> Optional[Session]:
        if not session_id:
            return None
        sess = self.store.get_session(session_id)
        if not sess:
            return None
        if sess.device_fingerprint != fingerprint(headers):
            self.logger.warning("session_fingerprint_mismatch", session_id=session_id)
            return None
        self.store.touch_session(sess.id)
        return sess

    def authenticate(
        self, cookies: Mapping[str, str], headers: Mapping[str, str]
    ) -> Optional[Principal]:
        """Resolve the caller from ``sid`` first, then from ``session_token``."""
        sid = cookies.get(SID_COOKIE)
        if sid:
            sess = self.resolve_session(sid, headers)
            if sess:
                # The store has no profile fields; borrow them from the access token
                claims = self.verify_access(cookies.get(SESSION_COOKIE), headers)
                same_user = claims is not None and claims.subject == sess.user_id
                return Principal(
                    user_id=sess.user_id,
                    username=claims.username if same_user else "",
                    name=claims.name if same_user else "",
                    session_id=sess.id,
                    via="session",
                )
        claims = self.verify_access(cookies.get(SESSION_COOKIE), headers)
        if claims is None:
            return None
        return Principal(
            user_id=claims.subject,
            username=claims.username,
            name=claims.name,
            session_id=claims.session_id,
            via="access_token",
            extra=dict(claims.extra),
        )

    async def logout(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        self.store.revoke_session(session_id)
        if self.cache:
            try:
                await self.cache.revoke_session(session_id)
            except Exception as exc:
                # Store revocation already happened; the mirror expires on its own
                self.logger.warning(
                    "session_cache_revoke_failed", session_id=session_id, error=str(exc)
                )
