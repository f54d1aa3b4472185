"""Distributed counting semaphore over a key-value coordination store.

Participants register a session-bound contender key under the semaphore's
prefix and agree on holders through a lock document written with
compare-and-swap. Holders whose session died are pruned before anyone new is
admitted, so at most ``limit`` live participants hold the semaphore.

Example usage:

    >>> from kv_semaphore import RedisStore, Semaphore, lock
    >>>
    >>> store = RedisStore.from_url('redis://localhost:6379/0')
    >>> sem = Semaphore(name='backup', limit=3, store=store)
    >>>
    >>> with sem:
    ...     # Critical section with limited concurrency (max 3)
    ...     pass

Scoped acquisition in one call:

    >>> lock('backup', 3, work=run_backup, store=store)
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version
from typing import Final

from .exceptions import (
    ContenderLostError,
    ContenderRegistrationError,
    InvalidArgumentError,
    InvalidSessionError,
    SemaphoreError,
    SemaphoreReleasedError,
    SessionCreationError,
    StoreError,
)
from .memory_store import MemoryStore
from .reconciler import AdmissionStatus, Reconciliation, reconcile
from .redis_store import RedisStore
from .renewal import RenewalLoop
from .retry import RetryOutcome, RetryPolicy
from .semaphore import Semaphore, lock
from .state import LockDocument, SemaphoreSnapshot
from .store import CoordinationStore, KVEntry, KVResult

__all__: Final[tuple[str, ...]] = (
    "AdmissionStatus",
    "ContenderLostError",
    "ContenderRegistrationError",
    "CoordinationStore",
    "InvalidArgumentError",
    "InvalidSessionError",
    "KVEntry",
    "KVResult",
    "LockDocument",
    "MemoryStore",
    "Reconciliation",
    "RedisStore",
    "RenewalLoop",
    "RetryOutcome",
    "RetryPolicy",
    "Semaphore",
    "SemaphoreError",
    "SemaphoreReleasedError",
    "SemaphoreSnapshot",
    "SessionCreationError",
    "StoreError",
    "lock",
    "reconcile",
)

try:
    __version__ = version("kv-semaphore")
except PackageNotFoundError:
    __version__ = "unknown"
