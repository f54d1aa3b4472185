"""Semaphore state: the lock document and point-in-time snapshots of the prefix.

The lock document is the only persisted format::

    {"Holders": {"<session-id>": true, ...}, "Limit": 3}

Holders are encoded sorted and deduplicated with sorted JSON keys, so two
documents with the same membership always serialize to the same text.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .exceptions import InvalidArgumentError

if TYPE_CHECKING:
    from .store import CoordinationStore, KVResult

logger = logging.getLogger(__name__)


def _encode(value) -> str:
    return json.dumps(value, sort_keys=True)


@dataclass(frozen=True)
class LockDocument:
    """Contents of the lock metadata key."""

    limit: int
    holders: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def build(cls, limit: int, holders: Iterable[str]) -> LockDocument:
        return cls(limit=limit, holders=frozenset(holders))

    def encode(self) -> str:
        return _encode(
            {
                "Limit": self.limit,
                "Holders": {holder: True for holder in sorted(self.holders)},
            }
        )

    @classmethod
    def decode(cls, raw: str | bytes) -> LockDocument:
        """Parse a stored document.

        Raises:
            ValueError: If ``raw`` is not a lock document
        """
        if isinstance(raw, bytes):
            raw = raw.decode()
        content = json.loads(raw)
        if not isinstance(content, dict):
            raise ValueError("Lock document must be an object")
        limit = content.get("Limit")
        if not isinstance(limit, int) or isinstance(limit, bool):
            raise ValueError(f"Lock document has an invalid Limit: {limit!r}")
        holders = content.get("Holders")
        if holders is None:
            holders = {}
        elif not isinstance(holders, dict):
            raise ValueError("Lock document Holders must be an object")
        return cls(limit=limit, holders=frozenset(holders))


@dataclass(frozen=True)
class SemaphoreSnapshot:
    """One read of the semaphore prefix.

    Attributes:
        index: Store index the read observed, where blocking reads resume
        lock_modify_index: Modify index of the lock key, 0 if it is absent
        document: Decoded lock document, None if absent or invalid
        contenders: Session ids with a live contender key
    """

    index: int = 0
    lock_modify_index: int = 0
    document: LockDocument | None = None
    contenders: frozenset[str] = field(default_factory=frozenset)

    @property
    def holders(self) -> frozenset[str]:
        if self.document is None:
            return frozenset()
        return self.document.holders

    def holds(self, session_id: str) -> bool:
        return session_id in self.holders


def is_under_prefix(key: str, prefix: str) -> bool:
    """Return True if a recursive read of ``prefix`` returns ``key``."""
    return key.startswith(prefix) and key != prefix


class StateFetcher:
    """Reads the lock key and every contender key under a prefix in one call.

    Raises:
        InvalidArgumentError: If ``lock_key`` is not under ``prefix``
    """

    def __init__(self, store: CoordinationStore, *, prefix: str, lock_key: str) -> None:
        if not is_under_prefix(lock_key, prefix):
            raise InvalidArgumentError(
                f"Lock key {lock_key!r} must be under prefix {prefix!r}"
            )
        self._store = store
        self.prefix = prefix
        self.lock_key = lock_key

    def fetch(self) -> SemaphoreSnapshot:
        return self.decode(self._store.get(self.prefix, recurse=True))

    def decode(self, result: KVResult) -> SemaphoreSnapshot:
        """Split a prefix read into the lock entry and contender ids."""
        if not result:
            return SemaphoreSnapshot(index=result.index)
        contenders = frozenset(
            entry.key.rsplit("/", 1)[-1]
            for entry in result
            if entry.key != self.lock_key
        )
        entry = next((e for e in result if e.key == self.lock_key), None)
        if entry is None:
            return SemaphoreSnapshot(index=result.index, contenders=contenders)
        try:
            document = LockDocument.decode(entry.value)
        except ValueError as e:
            logger.warning("Ignoring invalid lock document at %s: %s", self.lock_key, e)
            document = None
        return SemaphoreSnapshot(
            index=result.index,
            lock_modify_index=entry.modify_index,
            document=document,
            contenders=contenders,
        )
