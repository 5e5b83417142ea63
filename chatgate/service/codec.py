from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Dict, Mapping, Optional

from chatgate.logging import get_logger
from chatgate.service.errors import SigningKeyUnavailable, TokenError, TokenFailure

logger = get_logger(__name__)

ALGORITHM = "HS256"
# Browsers cap a cookie at 4096 bytes; nothing we issue comes close
MAX_TOKEN_LENGTH = 4096
_HEADER = {"alg": ALGORITHM, "typ": "JWT"}


def encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _encode_json(obj: Mapping[str, Any]) -> str:
    return encode_segment(json.dumps(obj, separators=(",", ":")).encode())


def _decode_json(segment: str) -> Any:
    try:
        return json.loads(decode_segment(segment))
    except (binascii.Error, ValueError, RecursionError) as exc:
        # json.JSONDecodeError and UnicodeDecodeError are both ValueError;
        # RecursionError comes from deeply nested arrays or objects
        raise TokenError(TokenFailure.MALFORMED, "segment is not base64url JSON") from exc


class TokenCodec:
    """Signs and verifies compact HS256 tokens.

    The header is pinned to ``{"alg":"HS256","typ":"JWT"}``; tokens whose header
    names any other algorithm (including ``none``) are refused before the
    signature is even looked at. ``iat``/``exp`` live in the signed payload, so a
    token's lifetime cannot be extended without re-signing.
    """

    def __init__(
        self,
        secret: str,
        *,
        default_ttl_seconds: int,
        clock: Callable[[], float] = time.time,
        leeway_seconds: int = 0,
    ) -> None:
        self._secret = secret.encode() if secret else b""
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self.leeway_seconds = leeway_seconds

    def now(self) -> int:
        return int(self._clock())

    def _signature(self, signing_input: str) -> str:
        if not self._secret:
            raise SigningKeyUnavailable()
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return encode_segment(digest)

    def sign(self, claims: Mapping[str, Any], ttl_seconds: Optional[int] = None) -> str:
        """Stamp ``iat``/``exp`` onto a copy of ``claims`` and sign it.

        Omitting ``ttl_seconds`` applies the default (access token) policy.
        """
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")
        issued_at = self.now()
        payload: Dict[str, Any] = dict(claims)
        payload["iat"] = issued_at
        payload["exp"] = issued_at + ttl
        signing_input = f"{_encode_json(_HEADER)}.{_encode_json(payload)}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def decode(self, token: str) -> Dict[str, Any]:
        """Verify ``token`` and return its payload.

        Raises:
            TokenError: with kind MALFORMED, BAD_ALGORITHM, BAD_SIGNATURE or EXPIRED.
            SigningKeyUnavailable: when no secret is configured.
        """
        if not isinstance(token, str):
            raise TokenError(TokenFailure.MALFORMED, "token must be a string")
        if len(token) > MAX_TOKEN_LENGTH:
            raise TokenError(TokenFailure.MALFORMED, "token too long")
        parts = token.split(".")
        if len(parts) != 3:
            raise TokenError(TokenFailure.MALFORMED, "expected three segments")
        header_b64, payload_b64, sig_b64 = parts

        header = _decode_json(header_b64)
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            alg = header.get("alg") if isinstance(header, dict) else None
            raise TokenError(TokenFailure.BAD_ALGORITHM, f"unexpected alg {alg!r}")

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenError(TokenFailure.BAD_SIGNATURE)

        payload = _decode_json(payload_b64)
        if not isinstance(payload, dict):
            raise TokenError(TokenFailure.MALFORMED, "payload must be an object")
        exp = payload.get("exp")
        if exp is not None:
            if isinstance(exp, bool) or not isinstance(exp, (int, float)):
                raise TokenError(TokenFailure.MALFORMED, "exp must be numeric")
            if self.now() > exp + self.leeway_seconds:
                raise TokenError(TokenFailure.EXPIRED)
        return payload

    def verify(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        """Return the payload of a valid token, or None.

        Every failure kind collapses to None so callers cannot tell an expired
        token from a forged one.
        """
        if not token:
            return None
        try:
            return self.decode(token)
        except TokenError as exc:
            logger.warning("token_rejected", reason=exc.kind.value)
            return None
