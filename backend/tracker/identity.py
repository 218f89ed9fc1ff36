"""Per-visit session and per-client user identity.

Two storage scopes back the identities: a persistent one (survives restarts)
holding the user, and a visit-scoped one holding the session. Storage
problems never reach the caller; the failing scope is replaced by an
in-memory store for the rest of the page load.
"""
from __future__ import annotations

import json
import logging
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

SESSION_KEY = "monitor_session"
USER_KEY = "monitor_user"


class StorageError(Exception):
    """Raised by storage backends that cannot read or write."""


class KeyValueStorage(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...


class MemoryStorage:
    def __init__(self) -> None:
        self._items: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        self._items[key] = value


class FileStorage:
    """JSON file holding a flat string mapping."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    def _load(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            items = json.loads(self._path.read_text(encoding="utf-8"))
        except ValueError as exc:
            raise StorageError(f"Corrupt storage file {self._path}") from exc
        if not isinstance(items, dict):
            raise StorageError(f"Corrupt storage file {self._path}")
        return items

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        items = self._load()
        items[key] = value
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(items), encoding="utf-8")


def generate_id() -> str:
    raw = secrets.token_hex(6)
    return "-".join(raw[i:i + 4] for i in range(0, 12, 4))


def _now_ms(clock: Callable[[], float]) -> int:
    return int(clock() * 1000)


@dataclass
class SessionState:
    id: str
    started_at: int
    last_activity: int
    page_views: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "startedAt": self.started_at,
            "lastActivity": self.last_activity,
            "pageViews": self.page_views,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, object]) -> "SessionState":
        return cls(
            id=str(raw["id"]),
            started_at=int(raw["startedAt"]),
            last_activity=int(raw["lastActivity"]),
            page_views=int(raw.get("pageViews", 0)),
        )


@dataclass
class UserState:
    id: str
    first_seen: int
    total_sessions: int = 0
    total_events: int = 0
    last_seen: Optional[int] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "firstSeen": self.first_seen,
            "totalSessions": self.total_sessions,
            "totalEvents": self.total_events,
            "lastSeen": self.last_seen,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, object]) -> "UserState":
        last_seen = raw.get("lastSeen")
        return cls(
            id=str(raw["id"]),
            first_seen=int(raw["firstSeen"]),
            total_sessions=int(raw.get("totalSessions", 0)),
            total_events=int(raw.get("totalEvents", 0)),
            last_seen=int(last_seen) if last_seen is not None else None,
        )


_STORAGE_ERRORS = (OSError, StorageError, ValueError, KeyError, TypeError)


class IdentityStore:
    def __init__(
        self,
        persistent: Optional[KeyValueStorage] = None,
        visit: Optional[KeyValueStorage] = None,
        session_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = generate_id,
    ) -> None:
        self._scopes: Dict[str, KeyValueStorage] = {
            USER_KEY: persistent if persistent is not None else MemoryStorage(),
            SESSION_KEY: visit if visit is not None else MemoryStorage(),
        }
        self._session_timeout_ms = int(session_timeout * 60_000)
        self._clock = clock
        self._id_factory = id_factory

    def _fallback(self, key: str, exc: Exception) -> None:
        logger.debug("Storage for %s unavailable, using memory fallback: %s", key, exc)
        self._scopes[key] = MemoryStorage()

    def _read(self, key: str) -> Optional[Dict[str, object]]:
        try:
            raw = self._scopes[key].get(key)
            return json.loads(raw) if raw else None
        except _STORAGE_ERRORS as exc:
            self._fallback(key, exc)
            return None

    def _write(self, key: str, value: Dict[str, object]) -> None:
        try:
            self._scopes[key].set(key, json.dumps(value))
        except _STORAGE_ERRORS as exc:
            self._fallback(key, exc)
            self._scopes[key].set(key, json.dumps(value))

    def get_or_create_session(self) -> SessionState:
        """Reuse the stored session unless it has been idle past the timeout."""
        now = _now_ms(self._clock)
        session: Optional[SessionState] = None
        raw = self._read(SESSION_KEY)
        if raw is not None:
            try:
                session = SessionState.from_dict(raw)
            except _STORAGE_ERRORS as exc:
                logger.debug("Discarding unreadable session: %s", exc)

        if session is None or now - session.last_activity > self._session_timeout_ms:
            session = SessionState(id=self._id_factory(), started_at=now, last_activity=now)

        session.last_activity = now
        session.page_views += 1
        self._write(SESSION_KEY, session.to_dict())
        return session

    def get_or_create_user(self) -> UserState:
        now = _now_ms(self._clock)
        user: Optional[UserState] = None
        raw = self._read(USER_KEY)
        if raw is not None:
            try:
                user = UserState.from_dict(raw)
            except _STORAGE_ERRORS as exc:
                logger.debug("Discarding unreadable user: %s", exc)

        if user is None:
            user = UserState(id=self._id_factory(), first_seen=now)

        user.total_sessions += 1
        user.last_seen = now
        self._write(USER_KEY, user.to_dict())
        return user

    def save_user(self, user: UserState) -> None:
        self._write(USER_KEY, user.to_dict())
