"""Typed views over verified token payloads.

A payload is decoded and validated once by :func:`parse_claims`, which returns
exactly one of :class:`AccessClaims`, :class:`RefreshClaims` or
:class:`SsoClaims`. Downstream code branches on the type (or on ``purpose``)
instead of re-checking individual payload fields.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from chatgate.service.errors import TokenError, TokenFailure


class TokenPurpose(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    SSO = "sso"


# Claims lifted into typed fields; anything else lands in ``extra``
_KNOWN_CLAIMS = {
    "_id",
    "sub",
    "iat",
    "exp",
    "username",
    "name",
    "fp",
    "purpose",
    "aud",
    "jti",
    "sid",
}


@dataclass(frozen=True)
class BaseClaims:
    subject: str
    issued_at: int
    expires_at: int
    username: str = ""
    name: str = ""
    fingerprint: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    purpose = TokenPurpose.ACCESS

    def identity(self) -> Dict[str, str]:
        """Display identity, safe to echo back to the owning client."""
        return {"_id": self.subject, "username": self.username, "name": self.name}


@dataclass(frozen=True)
class AccessClaims(BaseClaims):
    session_id: Optional[str] = None

    purpose = TokenPurpose.ACCESS


@dataclass(frozen=True)
class RefreshClaims(BaseClaims):
    token_id: Optional[str] = None

    purpose = TokenPurpose.REFRESH


@dataclass(frozen=True)
class SsoClaims(BaseClaims):
    audience: Optional[str] = None
    token_id: Optional[str] = None

    purpose = TokenPurpose.SSO


Claims = Union[AccessClaims, RefreshClaims, SsoClaims]


def _optional_str(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise TokenError(TokenFailure.MALFORMED, f"claim {key} must be a string")
    return value


def _int_claim(payload: Dict[str, Any], key: str) -> int:
    value = payload.get(key)
    # bool is an int subclass and never a valid timestamp
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TokenError(TokenFailure.MALFORMED, f"claim {key} must be numeric")
    return int(value)


def _purpose_of(payload: Dict[str, Any]) -> TokenPurpose:
    raw = payload.get("purpose")
    if raw is None:
        return TokenPurpose.ACCESS
    try:
        return TokenPurpose(raw)
    except ValueError as exc:
        raise TokenError(TokenFailure.MALFORMED, f"unknown purpose {raw!r}") from exc


def parse_claims(payload: Dict[str, Any]) -> Claims:
    """Turn a verified payload into its typed claims variant.

    Raises:
        TokenError: MISSING_SUBJECT when neither ``sub`` nor ``_id`` names a
            subject, MALFORMED for any other shape problem.
    """
    if not isinstance(payload, dict):
        raise TokenError(TokenFailure.MALFORMED, "payload must be an object")
    purpose = _purpose_of(payload)
    subject = _optional_str(payload, "sub") or _optional_str(payload, "_id")
    if not subject:
        raise TokenError(TokenFailure.MISSING_SUBJECT)
    common = dict(
        subject=subject,
        issued_at=_int_claim(payload, "iat"),
        expires_at=_int_claim(payload, "exp"),
        username=_optional_str(payload, "username") or "",
        name=_optional_str(payload, "name") or "",
        fingerprint=_optional_str(payload, "fp"),
        extra={k: v for k, v in payload.items() if k not in _KNOWN_CLAIMS},
    )
    if purpose is TokenPurpose.REFRESH:
        return RefreshClaims(token_id=_optional_str(payload, "jti"), **common)
    if purpose is TokenPurpose.SSO:
        return SsoClaims(
            audience=_optional_str(payload, "aud"),
            token_id=_optional_str(payload, "jti"),
            **common,
        )
    return AccessClaims(session_id=_optional_str(payload, "sid"), **common)


def expect_purpose(claims: Claims, purpose: TokenPurpose) -> Claims:
    """Return ``claims`` unchanged if it has ``purpose``; raise WRONG_PURPOSE otherwise."""
    if claims.purpose is not purpose:
        raise TokenError(
            TokenFailure.WRONG_PURPOSE,
            f"expected {purpose.value} token, got {claims.purpose.value}",
        )
    return claims


__all__ = [
    "TokenPurpose",
    "BaseClaims",
    "AccessClaims",
    "RefreshClaims",
    "SsoClaims",
    "Claims",
    "parse_claims",
    "expect_purpose",
]
