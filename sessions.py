"""
Session store

Sessions are kept server side and addressed by an opaque session id. Code
outside this module only uses the get/set/delete capability of SessionStore,
so the in-process MemorySessionStore can be replaced by a shared store
without touching the auth layer.
"""
import logging
import os
import time
from typing import Any, Callable, Dict, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", str(60 * 60 * 24)))  # 1 day


class SessionStore:
    """Implementations raise StoreUnavailable when their backing store cannot be reached."""

    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def set(self, session_id: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    def delete(self, session_id: str) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def prune(self) -> int:
        return 0


class MemorySessionStore(SessionStore):
    """Process-local store; every entry expires ``ttl`` seconds after it was set."""

    def __init__(self, ttl: int = SESSION_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(session_id)
        if entry is None:
            return None
        expires_at, data = entry
        if expires_at <= self._clock():
            self._entries.pop(session_id, None)
            return None
        return dict(data)

    def set(self, session_id: str, data: Dict[str, Any]) -> None:
        self._entries[session_id] = (self._clock() + self.ttl, dict(data))

    def delete(self, session_id: str) -> None:
        self._entries.pop(session_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def prune(self) -> int:
        """Drop expired entries and return how many were removed."""
        now = self._clock()
        expired = [sid for sid, (expires_at, _) in list(self._entries.items()) if expires_at <= now]
        for sid in expired:
            self._entries.pop(sid, None)
        if expired:
            logger.debug("Pruned %d expired sessions", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


session_store = MemorySessionStore()


def get_sessions() -> SessionStore:
    return session_store
