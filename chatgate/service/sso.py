"""Cross-origin session handoff through short-lived SSO tickets.

Origin A mints a ticket from its local access token with :meth:`SsoExchange.issue_ticket`
and sends the browser to origin B with ``?sso=<ticket>``. Origin B calls
:meth:`SsoExchange.redeem_ticket`, which either mints a local access token or
routes the browser to the root (bad ticket) or the fallback path (the ticket is
fine but was minted on another device).
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import quote

from chatgate.logging import get_logger
from chatgate.service.claims import SsoClaims, TokenPurpose, expect_purpose, parse_claims
from chatgate.service.codec import TokenCodec
from chatgate.service.errors import TokenError, TokenFailure
from chatgate.service.lifecycle import TokenLedger, TokenLifecycle

logger = get_logger(__name__)

SSO_QUERY_PARAM = "sso"


class RedeemOutcome(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    DEVICE_MISMATCH = "device_mismatch"


@dataclass(frozen=True)
class SsoTicket:
    ticket: str
    url: Optional[str] = None


@dataclass(frozen=True)
class RedeemResult:
    outcome: RedeemOutcome
    redirect_to: str
    session_token: Optional[str] = None
    claims: Optional[SsoClaims] = None

    @property
    def ok(self) -> bool:
        return self.outcome is RedeemOutcome.SUCCESS


def compose_redirect(redirect: str, ticket: str) -> str:
    separator = "&" if "?" in redirect else "?"
    return f"{redirect}{separator}{SSO_QUERY_PARAM}={quote(ticket, safe='')}"


def safe_next_path(next_path: Optional[str], default: str = "/") -> str:
    """Keep ``next_path`` only if it is a path on the redeeming origin."""
    if not next_path or not next_path.startswith("/"):
        return default
    # "//host" and "/\host" are protocol-relative in browsers
    if next_path.startswith("//") or next_path.startswith("/\\"):
        return default
    return next_path


class SsoExchange:
    def __init__(
        self,
        codec: TokenCodec,
        lifecycle: TokenLifecycle,
        *,
        ticket_ttl_seconds: int = 60,
        ledger: Optional[TokenLedger] = None,
        single_use: bool = True,
        fallback_path: str = "/mini",
        root_path: str = "/",
    ) -> None:
        if single_use and ledger is None:
            raise ValueError("single-use SSO tickets require a token ledger")
        self.codec = codec
        self.lifecycle = lifecycle
        self.ticket_ttl_seconds = ticket_ttl_seconds
        self.ledger = ledger
        self.single_use = single_use
        self.fallback_path = fallback_path
        self.root_path = root_path

    def issue_ticket(
        self,
        access_token: Optional[str],
        fingerprint: str,
        *,
        audience: Optional[str] = None,
        default_audience: str,
        redirect: Optional[str] = None,
    ) -> Optional[SsoTicket]:
        """Mint a ticket for the holder of ``access_token``.

        The ticket carries the fingerprint of the *issuing* request; the
        redeeming request must present the same one.
        """
        access = self.lifecycle.verify_access(access_token)
        if access is None:
            return None
        ticket = self.codec.sign(
            {
                "purpose": TokenPurpose.SSO.value,
                "sub": access.subject,
                "username": access.username,
                "name": access.name,
                "aud": audience or default_audience,
                "jti": secrets.token_urlsafe(16),
                "fp": fingerprint,
            },
            self.ticket_ttl_seconds,
        )
        logger.info("sso_ticket_issued", user_id=access.subject, aud=audience or default_audience)
        url = compose_redirect(redirect, ticket) if redirect else None
        return SsoTicket(ticket=ticket, url=url)

    def _reject(self, kind: TokenFailure) -> RedeemResult:
        logger.warning("sso_redeem_rejected", reason=kind.value)
        if kind is TokenFailure.FINGERPRINT_MISMATCH:
            return RedeemResult(RedeemOutcome.DEVICE_MISMATCH, self.fallback_path)
        return RedeemResult(RedeemOutcome.REJECTED, self.root_path)

    async def redeem_ticket(
        self,
        ticket: Optional[str],
        fingerprint: str,
        hostname: str,
        next_path: Optional[str] = None,
    ) -> RedeemResult:
        if not ticket:
            return self._reject(TokenFailure.MALFORMED)
        payload = self.codec.verify(ticket)
        if payload is None:
            return RedeemResult(RedeemOutcome.REJECTED, self.root_path)
        try:
            claims = expect_purpose(parse_claims(payload), TokenPurpose.SSO)
            if claims.audience and claims.audience != hostname:
                raise TokenError(TokenFailure.AUDIENCE_MISMATCH)
            if not claims.fingerprint or claims.fingerprint != fingerprint:
                raise TokenError(TokenFailure.FINGERPRINT_MISMATCH)
            if self.single_use:
                if not claims.token_id:
                    raise TokenError(TokenFailure.MALFORMED, "ticket has no jti")
                ttl = self.ticket_ttl_seconds + self.codec.leeway_seconds
                if not await self.ledger.claim_token(f"sso:{claims.token_id}", ttl):
                    raise TokenError(TokenFailure.REPLAYED)
        except TokenError as exc:
            return self._reject(exc.kind)

        session_token = self.lifecycle.issue_access(
            claims.subject, claims.username, claims.name, fingerprint
        )
        logger.info("sso_ticket_redeemed", user_id=claims.subject, hostname=hostname)
        return RedeemResult(
            RedeemOutcome.SUCCESS,
            safe_next_path(next_path, self.root_path),
            session_token=session_token,
            claims=claims,
        )
