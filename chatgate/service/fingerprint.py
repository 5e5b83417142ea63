from __future__ import annotations

import hashlib
from typing import Mapping, Optional

FINGERPRINT_HEADERS = ("user-agent", "accept-language")


def _header(headers: Mapping[str, str], name: str) -> str:
    value: Optional[str] = headers.get(name)
    if value is None:
        # Plain dicts are case-sensitive; Starlette Headers are not
        for key, candidate in headers.items():
            if key.lower() == name:
                value = candidate
                break
    return value or ""


def fingerprint(headers: Mapping[str, str]) -> str:
    """Hex SHA-256 of ``user-agent|accept-language``; missing headers count as ''.

    A binding factor for tokens, not a device identity: both headers are
    client-controlled.
    """
    canonical = "|".join(_header(headers, name) for name in FINGERPRINT_HEADERS)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def fingerprint_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """The subset of ``headers`` the fingerprint is derived from."""
    return {name: _header(headers, name) for name in FINGERPRINT_HEADERS}
