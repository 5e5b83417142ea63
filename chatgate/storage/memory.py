from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from chatgate.logging import get_logger
from chatgate.storage.models import Session


class MemorySessionStore:
    """In-process session store for development and tests.

    When ``fs_root`` is given, every mutation is mirrored to
    ``fs_root/state/sessions.json`` and reloaded on start.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can re-enter from within a locked mutation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "sessions.json"

    def create_session(
        self,
        user_id: str,
        *,
        device_fingerprint: str,
        ip: str | None = None,
        device_name: str = "web",
        ttl_days: int = 7,
    ) -> Session:
        with self._data_lock:
            sess = Session.new(
                user_id,
                device_fingerprint=device_fingerprint,
                ttl_days=ttl_days,
                ip=ip,
                device_name=device_name,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
        self.logger.info("session_created", user_id=user_id, session_id=sess.id)
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None or not sess.is_active():
                return None
            return sess

    def touch_session(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.last_seen_at = datetime.now(timezone.utc)
            self._persist_state()

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.is_revoked = True
            self._persist_state()
        self.logger.info("session_revoked", session_id=session_id)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            live = [
                sess
                for sess in self.sessions.values()
                if sess.user_id == user_id and not sess.is_revoked
            ]
        return sorted(live, key=lambda s: s.last_seen_at, reverse=True)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"sessions": [s.to_dict() for s in self.sessions.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist session state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.sessions = {
            s["id"]: Session.from_dict(s) for s in data.get("sessions", [])
        }
        return True


class MemoryTokenLedger:
    """Consumed-token ledger kept in a dict; entries expire after their TTL."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._consumed: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _sweep(self, now: float) -> None:
        stale = [key for key, expires in self._consumed.items() if expires <= now]
        for key in stale:
            del self._consumed[key]

    async def claim_token(self, token_id: str, ttl_seconds: int) -> bool:
        now = self._clock()
        with self._lock:
            self._sweep(now)
            if token_id in self._consumed:
                return False
            self._consumed[token_id] = now + max(1, int(ttl_seconds))
            return True

    def __len__(self) -> int:
        with self._lock:
            self._sweep(self._clock())
            return len(self._consumed)
