"""In-process coordination store.

Implements the same contract as ``RedisStore`` for participants that share
one interpreter (threads), and backs the test suite. Sessions expire on a
monotonic deadline; ``expire_session`` ends one immediately to simulate a
participant dying.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass

from .exceptions import InvalidArgumentError, InvalidSessionError
from .store import DELETE_BEHAVIOR, KVEntry, KVResult

logger = logging.getLogger(__name__)


@dataclass
class _Record:
    value: str
    modify_index: int
    session: str | None = None


@dataclass
class _Session:
    name: str
    ttl: float
    deadline: float


class MemoryStore:
    """Thread-safe coordination store held in process memory.

    Usage:
        >>> store = MemoryStore()
        >>> store.put('service/app/lock/.lock', '{}', cas=0)
        True
        >>> store.put('service/app/lock/.lock', '{}', cas=0)
        False

    Args:
        max_changes: Number of recent mutations kept for blocking reads
    """

    _MAX_CHANGES = 1000

    def __init__(self, *, max_changes: int = _MAX_CHANGES) -> None:
        self._records: dict[str, _Record] = {}
        self._sessions: dict[str, _Session] = {}
        # (index, key) of recent mutations, oldest first
        self._changes: deque[tuple[int, str]] = deque(maxlen=max_changes)
        self._index = 0
        self._cond = threading.Condition()

    @property
    def index(self) -> int:
        with self._cond:
            return self._index

    def _bump(self, key: str) -> int:
        self._index += 1
        self._changes.append((self._index, key))
        self._cond.notify_all()
        return self._index

    def _alive(self, session_id: str | None) -> bool:
        if session_id is None:
            return True
        session = self._sessions.get(session_id)
        return session is not None and session.deadline > time.monotonic()

    def _purge(self) -> None:
        """Delete expired sessions and every key bound to a dead session."""
        now = time.monotonic()
        for session_id, session in list(self._sessions.items()):
            if session.deadline <= now:
                logger.debug("Session %s (%s) expired", session_id, session.name)
                del self._sessions[session_id]
        for key, record in list(self._records.items()):
            if not self._alive(record.session):
                del self._records[key]
                self._bump(key)

    # Sessions

    def create_session(
        self, name: str, *, ttl: float, behavior: str = DELETE_BEHAVIOR
    ) -> str:
        if behavior != DELETE_BEHAVIOR:
            raise InvalidArgumentError(f"Unsupported session behavior: {behavior!r}")
        session_id = str(uuid.uuid4())
        with self._cond:
            self._sessions[session_id] = _Session(name, ttl, time.monotonic() + ttl)
        logger.debug("Created session %s (%s) with ttl %ss", session_id, name, ttl)
        return session_id

    def renew_session(self, session_id: str) -> bool:
        with self._cond:
            if not self._alive(session_id):
                return False
            session = self._sessions[session_id]
            session.deadline = time.monotonic() + session.ttl
            return True

    def destroy_session(self, session_id: str) -> None:
        with self._cond:
            self._sessions.pop(session_id, None)
            self._purge()

    def expire_session(self, session_id: str) -> None:
        """End a session as if its holder had died."""
        self.destroy_session(session_id)

    # Keys

    def acquire(self, key: str, session_id: str, value: str) -> bool:
        if not value:
            raise InvalidArgumentError("Value cannot be empty or None")
        with self._cond:
            self._purge()
            if not self._alive(session_id):
                raise InvalidSessionError(session_id)
            record = self._records.get(key)
            if record is not None and record.session not in (None, session_id):
                return False
            self._records[key] = _Record(value, self._bump(key), session_id)
            return True

    def get(
        self,
        key: str,
        *,
        recurse: bool = False,
        index: int = 0,
        wait: float | None = None,
    ) -> KVResult:
        with self._cond:
            if wait is not None and index > 0:
                deadline = time.monotonic() + wait
                while not self._changed_since(key, recurse, index):
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    self._cond.wait(remaining)
            self._purge()
            entries = tuple(
                KVEntry(k, r.value, r.modify_index, r.session)
                for k, r in sorted(self._records.items())
                if k == key or (recurse and k.startswith(key))
            )
            return KVResult(index=self._index, entries=entries)

    def _changed_since(self, key: str, recurse: bool, index: int) -> bool:
        if self._changes and self._changes[0][0] > index + 1:
            # older changes were dropped, assume one of them matched
            return True
        for idx, changed in reversed(self._changes):
            if idx <= index:
                break
            if changed == key or (recurse and changed.startswith(key)):
                return True
        return False

    def put(self, key: str, value: str, *, cas: int | None = None) -> bool:
        with self._cond:
            self._purge()
            record = self._records.get(key)
            if cas is not None:
                current = 0 if record is None else record.modify_index
                if current != cas:
                    return False
            session = None if record is None else record.session
            self._records[key] = _Record(value, self._bump(key), session)
            return True

    def delete(self, key: str) -> bool:
        with self._cond:
            if self._records.pop(key, None) is None:
                return False
            self._bump(key)
            return True

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} keys={len(self._records)} index={self.index}>"
        )
