from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from chatgate.logging import get_logger
from chatgate.service.claims import (
    AccessClaims,
    RefreshClaims,
    TokenPurpose,
    expect_purpose,
    parse_claims,
)
from chatgate.service.codec import TokenCodec
from chatgate.service.errors import TokenError, TokenFailure

logger = get_logger(__name__)


class TokenLedger(Protocol):
    """Short-lived store of consumed token ids.

    ``claim_token`` is an atomic set-if-absent: it returns True for the first
    caller and False for every later caller until the entry expires.
    """

    async def claim_token(self, token_id: str, ttl_seconds: int) -> bool: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


class TokenLifecycle:
    """Issues access/refresh tokens and rotates refresh tokens.

    With ``one_time_refresh`` off (the default), rotation is stateless: the
    presented refresh token stays valid until its own ``exp``. With it on, the
    presented token's ``jti`` is claimed in ``ledger`` before a new pair is
    issued, so each refresh token can be exchanged exactly once.
    """

    def __init__(
        self,
        codec: TokenCodec,
        *,
        refresh_ttl_seconds: int,
        ledger: Optional[TokenLedger] = None,
        one_time_refresh: bool = False,
    ) -> None:
        if one_time_refresh and ledger is None:
            raise ValueError("one_time_refresh requires a token ledger")
        self.codec = codec
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.ledger = ledger
        self.one_time_refresh = one_time_refresh

    @staticmethod
    def _identity(user_id: str, username: str, name: str, fingerprint: str) -> Dict[str, Any]:
        return {"sub": user_id, "username": username, "name": name, "fp": fingerprint}

    def issue_access(
        self,
        user_id: str,
        username: str,
        name: str,
        fingerprint: str,
        *,
        session_id: Optional[str] = None,
    ) -> str:
        claims = {"_id": user_id, **self._identity(user_id, username, name, fingerprint)}
        if session_id:
            claims["sid"] = session_id
        return self.codec.sign(claims)

    def issue_refresh(
        self, user_id: str, username: str, name: str, fingerprint: str
    ) -> str:
        claims = {
            "purpose": TokenPurpose.REFRESH.value,
            **self._identity(user_id, username, name, fingerprint),
            "jti": uuid.uuid4().hex,
        }
        return self.codec.sign(claims, self.refresh_ttl_seconds)

    def issue_pair(
        self,
        user_id: str,
        username: str,
        name: str,
        fingerprint: str,
        *,
        session_id: Optional[str] = None,
    ) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access(
                user_id, username, name, fingerprint, session_id=session_id
            ),
            refresh_token=self.issue_refresh(user_id, username, name, fingerprint),
        )

    def verify_access(
        self, token: Optional[str], fingerprint: Optional[str] = None
    ) -> Optional[AccessClaims]:
        payload = self.codec.verify(token)
        if payload is None:
            return None
        try:
            claims = expect_purpose(parse_claims(payload), TokenPurpose.ACCESS)
            if fingerprint is not None and claims.fingerprint is not None:
                if claims.fingerprint != fingerprint:
                    raise TokenError(TokenFailure.FINGERPRINT_MISMATCH)
        except TokenError as exc:
            logger.warning("access_token_rejected", reason=exc.kind.value)
            return None
        return claims

    def _check_refresh(self, payload: Dict[str, Any], fingerprint: str) -> RefreshClaims:
        claims = expect_purpose(parse_claims(payload), TokenPurpose.REFRESH)
        if not claims.fingerprint or claims.fingerprint != fingerprint:
            raise TokenError(TokenFailure.FINGERPRINT_MISMATCH)
        if self.one_time_refresh and not claims.token_id:
            raise TokenError(TokenFailure.MALFORMED, "refresh token has no jti")
        return claims

    async def refresh(
        self, refresh_token: Optional[str], request_fingerprint: str
    ) -> Optional[TokenPair]:
        """Exchange a refresh token for a fresh access/refresh pair, or None."""
        payload = self.codec.verify(refresh_token)
        if payload is None:
            return None
        try:
            claims = self._check_refresh(payload, request_fingerprint)
            if self.one_time_refresh:
                # Entry must outlive the token itself
                remaining = claims.expires_at - self.codec.now() + self.codec.leeway_seconds
                if not await self.ledger.claim_token(f"refresh:{claims.token_id}", remaining):
                    raise TokenError(TokenFailure.REPLAYED)
        except TokenError as exc:
            logger.warning("refresh_rejected", reason=exc.kind.value)
            return None
        pair = self.issue_pair(
            claims.subject, claims.username, claims.name, request_fingerprint
        )
        logger.info(
            "refresh_rotated",
            user_id=claims.subject,
            policy="one_time" if self.one_time_refresh else "stateless",
        )
        return pair
