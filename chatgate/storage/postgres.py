from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from chatgate.logging import get_logger
from chatgate.storage.errors import ConstraintViolation
from chatgate.storage.models import Session


_MAX_SESSION_CACHE_SIZE = 10000

_SESSION_COLUMNS = (
    "id, user_id, device_fingerprint, device_name, ip, created_at, "
    "last_seen_at, expires_at, is_revoked"
)

SESSION_SCHEMA = """
CREATE TABLE IF NOT EXISTS auth_session (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    device_fingerprint TEXT NOT NULL,
    device_name TEXT NOT NULL DEFAULT 'web',
    ip TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_seen_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    expires_at TIMESTAMPTZ NOT NULL,
    is_revoked BOOLEAN NOT NULL DEFAULT FALSE
)
"""


class PostgresSessionStore:
    """Postgres-backed session store over the ``auth_session`` table."""

    def __init__(
        self,
        dsn: str,
        *,
        pool: ConnectionPool | None = None,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.sessions: dict[str, Session] = {}
        self._session_lock = threading.Lock()
        if ensure_schema:
            self._ensure_session_table()

    def _connect(self):
        return self.pool.connection()

    def _ensure_session_table(self) -> None:
        with self._connect() as conn:
            conn.execute(SESSION_SCHEMA)

    def _cache_session(self, session: Session) -> Session:
        with self._session_lock:
            # Evict the ~10% of entries closest to expiry when full
            if len(self.sessions) >= _MAX_SESSION_CACHE_SIZE:
                soonest = sorted(self.sessions.values(), key=lambda s: s.expires_at)
                for old in soonest[: max(1, _MAX_SESSION_CACHE_SIZE // 10)]:
                    self.sessions.pop(old.id, None)
            self.sessions[session.id] = session
            return session

    def _update_cached_session(self, session_id: str, **updates: Any) -> None:
        with self._session_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            for field, value in updates.items():
                setattr(sess, field, value)

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            device_fingerprint=row["device_fingerprint"],
            device_name=row.get("device_name") or "web",
            ip=row.get("ip"),
            created_at=row["created_at"],
            last_seen_at=row.get("last_seen_at") or row["created_at"],
            expires_at=row["expires_at"],
            is_revoked=bool(row.get("is_revoked", False)),
        )

    def create_session(
        self,
        user_id: str,
        *,
        device_fingerprint: str,
        ip: str | None = None,
        device_name: str = "web",
        ttl_days: int = 7,
    ) -> Session:
        sess = Session.new(
            user_id,
            device_fingerprint=device_fingerprint,
            ttl_days=ttl_days,
            ip=ip,
            device_name=device_name,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, device_fingerprint, device_name, ip, created_at, last_seen_at, expires_at, is_revoked)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.device_fingerprint,
                        sess.device_name,
                        sess.ip,
                        sess.created_at,
                        sess.last_seen_at,
                        sess.expires_at,
                        sess.is_revoked,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session id collision", {"id": sess.id})
        self.logger.info("session_created", user_id=user_id, session_id=sess.id)
        return self._cache_session(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE id = %s",
                (session_id,),
            ).fetchone()
        if not row:
            with self._session_lock:
                self.sessions.pop(session_id, None)
            return None
        sess = self._cache_session(self._row_to_session(row))
        if not sess.is_active():
            return None
        return sess

    def touch_session(self, session_id: str) -> None:
        now = datetime.now(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_seen_at = %s WHERE id = %s",
                (now, session_id),
            )
        self._update_cached_session(session_id, last_seen_at=now)

    def revoke_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET is_revoked = TRUE WHERE id = %s",
                (session_id,),
            )
        self._update_cached_session(session_id, is_revoked=True)
        self.logger.info("session_revoked", session_id=session_id)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM auth_session
                WHERE user_id = %s AND is_revoked = FALSE
                ORDER BY last_seen_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def close(self) -> None:
        self.pool.close()
