from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - validation_error (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Fatal misconfiguration, e.g. no signing key."""
    error_code = "server_error"


class SigningKeyUnavailable(ConfigurationError):
    """Raised when a token must be signed but no secret is configured."""

    def __init__(self, message: str = "signing key unavailable") -> None:
        super().__init__(message)


class TokenFailure(str, Enum):
    """Why a token was refused. Logged, never returned to clients."""

    MALFORMED = "malformed"
    BAD_ALGORITHM = "bad_algorithm"
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"
    WRONG_PURPOSE = "wrong_purpose"
    FINGERPRINT_MISMATCH = "fingerprint_mismatch"
    AUDIENCE_MISMATCH = "audience_mismatch"
    MISSING_SUBJECT = "missing_subject"
    REPLAYED = "replayed"


class TokenError(Exception):
    """A token failed decoding or one of the purpose/binding checks."""

    def __init__(self, kind: TokenFailure, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind

    def __str__(self) -> str:
        return f"{self.kind.value}: {super().__str__()}"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ServerError",
    "ConfigurationError",
    "SigningKeyUnavailable",
    "TokenFailure",
    "TokenError",
]
