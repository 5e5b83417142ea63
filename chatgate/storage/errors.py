from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A session write broke a foreign key or uniqueness constraint.

    ``detail`` carries the offending columns, e.g. ``{"user_id": ...}``.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["ConstraintViolation"]
