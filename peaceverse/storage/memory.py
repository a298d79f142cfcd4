from __future__ import annotations

import json
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from peaceverse.logging import get_logger
from peaceverse.storage.errors import ConstraintViolation
from peaceverse.storage.models import Role, UserAccount, UserPage, utcnow

_DATETIME_FIELDS = (
    "email_otp_expiry",
    "phone_otp_expiry",
    "last_login",
    "created_at",
    "updated_at",
)


class MemoryStore:
    """In-process credential store with an optional JSON snapshot on disk.

    Used for tests and single-process development. All access goes through
    one re-entrant lock; callers receive copies so that a mutation is only
    visible after ``save_user``.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserAccount] = {}
        self._email_index: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "users.json"

    @staticmethod
    def _copy(user: UserAccount) -> UserAccount:
        return UserAccount(**user.__dict__)

    # lookups
    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        with self._data_lock:
            user_id = self._email_index.get(email)
            return self.get_user(user_id) if user_id else None

    def list_users(
        self, *, search: Optional[str] = None, offset: int = 0, limit: int = 10
    ) -> UserPage:
        needle = (search or "").strip().lower()
        with self._data_lock:
            matches = [
                u
                for u in self.users.values()
                if not needle or needle in u.email.lower() or needle in u.role.value
            ]
            matches.sort(key=lambda u: u.created_at, reverse=True)
            page = [self._copy(u) for u in matches[offset : offset + limit]]
            return UserPage(items=page, total=len(matches))

    def list_unverified_before(self, cutoff: datetime) -> List[UserAccount]:
        with self._data_lock:
            return [
                self._copy(u)
                for u in self.users.values()
                if not u.is_email_verified
                and not u.is_phone_verified
                and u.created_at < cutoff
            ]

    # mutations
    def create_user(self, user: UserAccount) -> UserAccount:
        with self._data_lock:
            if user.email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.users[user.id] = self._copy(user)
            self._email_index[user.email] = user.id
            self._persist_state()
            return self._copy(user)

    def save_user(self, user: UserAccount) -> UserAccount:
        with self._data_lock:
            existing = self.users.get(user.id)
            if existing is None:
                raise KeyError(user.id)
            owner = self._email_index.get(user.email)
            if owner and owner != user.id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user.updated_at = utcnow()
            if existing.email != user.email:
                self._email_index.pop(existing.email, None)
                self._email_index[user.email] = user.id
            self.users[user.id] = self._copy(user)
            self._persist_state()
            return self._copy(user)

    def delete_user(self, user_id: str) -> bool:
        return self.delete_users([user_id]) == 1

    def delete_users(self, user_ids: Iterable[str]) -> int:
        deleted = 0
        with self._data_lock:
            for user_id in set(user_ids):
                user = self.users.pop(user_id, None)
                if user is None:
                    continue
                self._email_index.pop(user.email, None)
                deleted += 1
            if deleted:
                self._persist_state()
        return deleted

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # snapshot
    @staticmethod
    def _serialize_user(user: UserAccount) -> Dict[str, Any]:
        data = dict(user.__dict__)
        data["role"] = user.role.value
        for name in _DATETIME_FIELDS:
            value = data.get(name)
            data[name] = value.isoformat() if value else None
        return data

    @staticmethod
    def _deserialize_user(data: Dict[str, Any]) -> UserAccount:
        payload = dict(data)
        payload["role"] = Role(payload.get("role", Role.USER.value))
        for name in _DATETIME_FIELDS:
            raw = payload.get(name)
            payload[name] = datetime.fromisoformat(raw) if raw else None
        if payload.get("created_at") is None:
            payload["created_at"] = utcnow()
        if payload.get("updated_at") is None:
            payload["updated_at"] = payload["created_at"]
        return UserAccount(**payload)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self._email_index = {u.email: u.id for u in self.users.values()}
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True


class MemoryRevocationStore:
    """Process-local refresh-session whitelist with the RedisCache interface.

    Entries expire lazily against ``clock`` (seconds, monotonic by default).
    The lock is never held across an await.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, Tuple[str, float]] = {}
        self._user_sessions: Dict[str, set[str]] = {}
        self._rate_windows: Dict[str, Tuple[int, float]] = {}

    def _live(self, jti: str) -> Optional[str]:
        entry = self._sessions.get(jti)
        if entry is None:
            return None
        user_id, expires_at = entry
        if self._clock() >= expires_at:
            self._drop(jti)
            return None
        return user_id

    def _drop(self, jti: str) -> Optional[str]:
        entry = self._sessions.pop(jti, None)
        if entry is None:
            return None
        user_id = entry[0]
        jtis = self._user_sessions.get(user_id)
        if jtis is not None:
            jtis.discard(jti)
            if not jtis:
                self._user_sessions.pop(user_id, None)
        return user_id

    def _prune(self, now: float) -> None:
        """Drop expired sessions and closed rate windows; caller holds the lock."""
        for jti in [j for j, (_, exp) in self._sessions.items() if now >= exp]:
            self._drop(jti)
        for key in [k for k, (_, end) in self._rate_windows.items() if now >= end]:
            del self._rate_windows[key]

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def store_refresh_session(
        self, jti: str, user_id: str, ttl_seconds: int
    ) -> None:
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._drop(jti)
            self._sessions[jti] = (user_id, now + max(1, int(ttl_seconds)))
            self._user_sessions.setdefault(user_id, set()).add(jti)

    async def get_refresh_session(self, jti: str) -> Optional[str]:
        with self._lock:
            return self._live(jti)

    async def revoke_refresh_session(self, jti: str) -> bool:
        with self._lock:
            return self._drop(jti) is not None

    async def pop_refresh_session(self, jti: str) -> Optional[str]:
        with self._lock:
            user_id = self._live(jti)
            if user_id is not None:
                self._drop(jti)
            return user_id

    async def revoke_user_refresh_sessions(
        self, user_id: str, except_jti: Optional[str] = None
    ) -> int:
        with self._lock:
            jtis = list(self._user_sessions.get(user_id, ()))
            revoked = 0
            for jti in jtis:
                if except_jti and jti == except_jti:
                    continue
                if self._live(jti) is None:
                    continue
                self._drop(jti)
                revoked += 1
            return revoked

    async def hit_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        with self._lock:
            now = self._clock()
            self._prune(now)
            count, window_end = self._rate_windows.get(key, (0, 0.0))
            if now >= window_end:
                count, window_end = 0, now + window_seconds
            count += 1
            self._rate_windows[key] = (count, window_end)
            return count <= limit

    def live_sessions(self, user_id: str) -> List[str]:
        """Live jtis for a user."""
        with self._lock:
            return [jti for jti in list(self._user_sessions.get(user_id, ())) if self._live(jti)]

    async def close(self) -> None:
        return None
