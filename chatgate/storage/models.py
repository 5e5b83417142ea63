from __future__ import annotations

import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | str) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class Session:
    id: str
    user_id: str
    device_fingerprint: str
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    device_name: str = "web"
    ip: Optional[str] = None
    is_revoked: bool = False

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        device_fingerprint: str,
        ttl_days: int = 7,
        ip: str | None = None,
        device_name: str = "web",
        now: datetime | None = None,
    ) -> "Session":
        now = now or _utcnow()
        return cls(
            # 32 random bytes, 64 hex chars
            id=secrets.token_hex(32),
            user_id=user_id,
            device_fingerprint=device_fingerprint,
            created_at=now,
            last_seen_at=now,
            expires_at=now + timedelta(days=ttl_days),
            device_name=device_name,
            ip=ip,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return _as_utc(self.expires_at) <= (now or _utcnow())

    def is_active(self, now: datetime | None = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("created_at", "last_seen_at", "expires_at"):
            data[key] = _as_utc(data[key]).isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            device_fingerprint=data["device_fingerprint"],
            created_at=_as_utc(data["created_at"]),
            last_seen_at=_as_utc(data.get("last_seen_at") or data["created_at"]),
            expires_at=_as_utc(data["expires_at"]),
            device_name=data.get("device_name") or "web",
            ip=data.get("ip"),
            is_revoked=bool(data.get("is_revoked", False)),
        )


@dataclass(frozen=True)
class Principal:
    """The authenticated caller resolved from cookies."""

    user_id: str
    username: str = ""
    name: str = ""
    session_id: Optional[str] = None
    via: str = "access_token"
    extra: Dict[str, Any] = field(default_factory=dict)
