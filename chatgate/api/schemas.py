from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "not_found",
    "conflict",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error body with a stable ``code`` value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Base response shape: every body carries ``success``."""

    success: bool
    error: Optional[ErrorBody] = None


class UserPublic(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id")
    username: str = ""
    name: str = ""
    session_id: Optional[str] = None


class UserResponse(Envelope):
    success: bool = True
    user: UserPublic


class SsoIssueResponse(Envelope):
    success: bool = True
    token: str
    url: Optional[str] = None


class HealthResponse(BaseModel):
    status: str = "ok"
