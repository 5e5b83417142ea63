from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from chatgate.service.claims import TokenPurpose, expect_purpose, parse_claims
from chatgate.service.codec import TokenCodec
from chatgate.service.errors import TokenError


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    redirect_to: Optional[str] = None


ALLOW = GuardDecision(allowed=True)


def path_under(path: str, prefix: str) -> bool:
    """Segment-aware prefix match: ``/home/x`` is under ``/home``, ``/homework`` is not."""
    if prefix == "/":
        return True
    return path == prefix or path.startswith(prefix + "/")


class RouteGuard:
    """Redirects unauthenticated requests away from protected paths.

    Only access tokens count as a session; refresh tokens and SSO tickets
    presented as ``session_token`` are treated as absent.
    """

    def __init__(
        self,
        codec: TokenCodec,
        *,
        protected_prefixes: Iterable[str],
        root_path: str = "/",
        landing_path: str = "/home",
    ) -> None:
        self.codec = codec
        self.protected_prefixes = tuple(protected_prefixes)
        self.root_path = root_path
        self.landing_path = landing_path

    def is_protected(self, path: str) -> bool:
        return any(path_under(path, prefix) for prefix in self.protected_prefixes)

    def _has_session(self, token: Optional[str]) -> bool:
        payload = self.codec.verify(token)
        if payload is None:
            return False
        try:
            expect_purpose(parse_claims(payload), TokenPurpose.ACCESS)
        except TokenError:
            return False
        return True

    def decide(self, path: str, token: Optional[str]) -> GuardDecision:
        if self.is_protected(path):
            if not self._has_session(token):
                return GuardDecision(allowed=False, redirect_to=self.root_path)
            return ALLOW
        if path == self.root_path and token and self._has_session(token):
            return GuardDecision(allowed=False, redirect_to=self.landing_path)
        return ALLOW
