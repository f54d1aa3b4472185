"""Coordination store contract.

A coordination store offers sessions with liveness semantics, key-value
reads and writes with compare-and-swap on a modify index, and long-poll
blocking reads. ``RedisStore`` and ``MemoryStore`` implement it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

# The only session behaviour supported: keys bound to a session are deleted
# once the session is gone.
DELETE_BEHAVIOR = "delete"


@dataclass(frozen=True)
class KVEntry:
    """A single key as returned by a read."""

    key: str
    value: str
    modify_index: int
    session: str | None = None


@dataclass(frozen=True)
class KVResult:
    """Entries returned by a read, with the store index observed by the read."""

    index: int
    entries: tuple[KVEntry, ...] = field(default_factory=tuple)

    def __bool__(self) -> bool:
        return bool(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)


@runtime_checkable
class CoordinationStore(Protocol):
    """Operations the semaphore needs from a coordination store."""

    def create_session(
        self, name: str, *, ttl: float, behavior: str = DELETE_BEHAVIOR
    ) -> str:
        """Create a session and return its id.

        Raises:
            SessionCreationError: If the store will not issue a session
        """
        ...

    def renew_session(self, session_id: str) -> bool:
        """Extend the session TTL; ``False`` if the session is already gone."""
        ...

    def destroy_session(self, session_id: str) -> None:
        """Destroy a session; a no-op for unknown or expired sessions."""
        ...

    def acquire(self, key: str, session_id: str, value: str) -> bool:
        """Write ``key`` bound to ``session_id``.

        Returns False if another live session holds the key.

        Raises:
            InvalidArgumentError: If ``value`` is empty
            InvalidSessionError: If the session does not exist
        """
        ...

    def get(
        self,
        key: str,
        *,
        recurse: bool = False,
        index: int = 0,
        wait: float | None = None,
    ) -> KVResult:
        """Read ``key`` (or every key under it when ``recurse``).

        With ``wait`` and a non-zero ``index`` the call blocks until a key
        under ``key`` changes after ``index`` or ``wait`` seconds elapse.
        """
        ...

    def put(self, key: str, value: str, *, cas: int | None = None) -> bool:
        """Write ``key``; with ``cas`` only if its modify index equals ``cas``.

        ``cas=0`` creates the key only if it does not exist.
        """
        ...

    def delete(self, key: str) -> bool:
        """Delete ``key``; ``False`` if it did not exist."""
        ...
