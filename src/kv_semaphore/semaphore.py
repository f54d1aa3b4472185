"""Distributed counting semaphore over a key-value coordination store.

This module composes sessions, contender keys, state snapshots, holder set
reconciliation and compare-and-swap writes into a semaphore that at most
``limit`` participants hold at once.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from pottery import ContextTimer

from .exceptions import (
    ContenderLostError,
    InvalidArgumentError,
    SemaphoreReleasedError,
)
from .reconciler import AdmissionStatus, reconcile, remove_holder
from .registrar import ContenderRegistrar
from .renewal import RenewalLoop
from .retry import TRANSIENT_ERRORS
from .session import SessionManager
from .state import SemaphoreSnapshot, StateFetcher, is_under_prefix
from .writer import LockWriter

if TYPE_CHECKING:
    from .retry import RetryPolicy
    from .session import Session
    from .store import CoordinationStore

logger = logging.getLogger(__name__)


class Semaphore:
    """Distributed semaphore coordinated through a key-value store.

    Each instance owns one store session and one contender key, and covers a
    single acquire/release span. Holders are recorded in a lock document
    updated only through compare-and-swap; dead holders (whose contender key
    vanished with their session) are pruned before anyone is admitted.

    Usage:
        >>> from kv_semaphore import RedisStore
        >>> store = RedisStore.from_url('redis://localhost:6379/0')
        >>> sem = Semaphore(name='backup', limit=2, store=store)
        >>> sem.lock()
        True
        >>> try:
        ...     # Critical section with limited concurrency
        ...     pass
        ... finally:
        ...     sem.release()

        >>> # Or block until acquired, renewing while inside
        >>> with Semaphore(name='backup', limit=2, store=store):
        ...     pass

    Args:
        name: Session name, also used in the default prefix
        limit: Number of participants that may hold the semaphore
        prefix: Store key prefix (default: ``service/<name>/lock/``)
        lock: Key of the lock document, under ``prefix`` (default: ``<prefix>.lock``)
        store: Coordination store (default: ``RedisStore`` on localhost)
        session_ttl: Seconds a session survives without a heartbeat
        wait: Seconds a single renewal blocking read may wait
        session_retry: Retry policy for session creation
        register_retry: Retry policy for contender registration
    """

    _POLL_INTERVAL = 0.1  # seconds between acquire attempts
    _SESSION_TTL = 15.0
    _WAIT = 30.0
    _RELEASE_ATTEMPTS = 5
    _RENEWAL_STOP_TIMEOUT = 1.0  # cap on joining the renewal thread

    def __init__(
        self,
        *,
        name: str,
        limit: int = 3,
        prefix: str | None = None,
        lock: str | None = None,
        store: CoordinationStore | None = None,
        session_ttl: float = _SESSION_TTL,
        wait: float = _WAIT,
        session_retry: RetryPolicy | None = None,
        register_retry: RetryPolicy | None = None,
    ) -> None:
        if not name:
            raise InvalidArgumentError("Semaphore name cannot be empty")
        if limit < 1:
            raise ValueError("Semaphore limit must be positive")

        if store is None:
            from .redis_store import RedisStore

            store = RedisStore()

        self._name = name
        self._limit = limit
        self._store = store
        self._wait = wait

        self._prefix = prefix if prefix is not None else f"service/{name}/lock/"
        if not self._prefix.endswith("/"):
            self._prefix += "/"
        self._lock_key = lock if lock is not None else f"{self._prefix}.lock"
        if not is_under_prefix(self._lock_key, self._prefix):
            raise InvalidArgumentError(
                f"Lock key {self._lock_key!r} must be under prefix {self._prefix!r}"
            )

        # Guards the snapshot and status shared with the renewal thread
        self._mutex = threading.RLock()
        self._snapshot = SemaphoreSnapshot()
        self._status: AdmissionStatus | None = None
        self._registered = False
        self._released = False
        self._renewal: RenewalLoop | None = None

        self._sessions = SessionManager(
            store, ttl=session_ttl, retry_policy=session_retry
        )
        self._session = self._sessions.create(name)

        self._registrar = ContenderRegistrar(
            store,
            prefix=self._prefix,
            session=self._session,
            retry_policy=register_retry,
        )
        self._fetcher = StateFetcher(
            store, prefix=self._prefix, lock_key=self._lock_key
        )
        self._writer = LockWriter(store, lock_key=self._lock_key)

    @property
    def name(self) -> str:
        return self._name

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def lock_key(self) -> str:
        return self._lock_key

    @property
    def limit(self) -> int:
        """Limit in effect, adopted from the lock document once one exists."""
        return self._limit

    @property
    def session(self) -> Session:
        return self._session

    @property
    def contender_key(self) -> str:
        return self._registrar.key

    @property
    def status(self) -> AdmissionStatus | None:
        """Status of the last committed reconciliation, None before the first."""
        return self._status

    @property
    def snapshot(self) -> SemaphoreSnapshot:
        """Most recent snapshot of the prefix."""
        return self._snapshot

    @property
    def released(self) -> bool:
        return self._released

    def _check_open(self) -> None:
        if self._released:
            raise SemaphoreReleasedError(self._name)

    def lock(self) -> bool:
        """Register as a contender and try once to obtain a slot.

        Returns:
            True if this participant holds the semaphore
        """
        self._check_open()
        with self._mutex:
            if not self._registered:
                self._registrar.register()
                self._registered = True
            return self._cycle()

    def try_lock(self) -> bool:
        """Run one fetch, reconcile and write cycle.

        Returns:
            True if this participant holds the semaphore after the cycle
        """
        self._check_open()
        with self._mutex:
            return self._cycle()

    def locked(self) -> bool:
        """Return True if the lock document currently lists this participant.

        Always reads the store; the answer is never cached.
        """
        with self._mutex:
            return self._refresh().holds(self._session.id)

    def acquire(self, *, blocking: bool = True, timeout: float = -1) -> bool:
        """Obtain a slot, polling until it is granted.

        Args:
            blocking: If True, keep trying until the semaphore is held
            timeout: Maximum time to wait in seconds (-1 for no timeout)

        Returns:
            True if the semaphore is held, False on timeout

        Raises:
            ContenderLostError: If this participant's contender key is gone
        """
        self._check_open()
        if not self._registered:
            acquired = self.lock()
            if not blocking:
                return acquired
        elif not blocking:
            return self.try_lock()

        with ContextTimer() as timer:
            while timeout == -1 or timer.elapsed() / 1000 < timeout:
                if self.locked():
                    return True
                self.try_lock()
                if self._status is AdmissionStatus.LOST:
                    raise ContenderLostError(self._registrar.key, self._session.id)
                time.sleep(self._POLL_INTERVAL)
            return False

    def renew(self) -> RenewalLoop:
        """Start keeping membership current in a background thread.

        Returns:
            The running renewal loop; the same loop if one is already running
        """
        with self._mutex:
            self._check_open()
            if self._renewal is None or not self._renewal.is_alive():
                self._renewal = RenewalLoop(
                    self._store,
                    prefix=self._prefix,
                    on_change=self._renewal_cycle,
                    index=self._snapshot.index,
                    wait=self._wait,
                ).start()
            return self._renewal

    def release(self) -> bool:
        """Give up the slot and tear down the contender key and session.

        The renewal loop is signalled first so it cannot re-admit this
        participant. Releasing twice is a no-op.

        Returns:
            True if this participant is no longer listed as a holder
        """
        # signal only; deregistering below wakes a loop parked in a long poll
        self._stop_renewal(timeout=0)

        with self._mutex:
            if self._released:
                return True
            self._released = True
            # a loop started after the signal above
            self._stop_renewal(timeout=0)
            released = False
            try:
                released = self._release_slot()
            finally:
                if self._registered:
                    try:
                        self._registrar.deregister()
                    except TRANSIENT_ERRORS as e:
                        logger.warning(
                            "Could not delete contender key %s: %s",
                            self._registrar.key,
                            e,
                        )
                self._sessions.destroy(self._session)
                self._log_lock(locked=released, end_string="released")
        self._stop_renewal()
        return released

    def _stop_renewal(self, timeout: float = _RENEWAL_STOP_TIMEOUT) -> None:
        if self._renewal is not None:
            self._renewal.stop(timeout=timeout)

    def _renewal_cycle(self) -> bool:
        with self._mutex:
            if self._renewal is None or self._renewal.stopped:
                return False
            return self._cycle()

    def _refresh(self) -> SemaphoreSnapshot:
        snapshot = self._fetcher.fetch()
        document = snapshot.document
        if document is not None and document.limit != self._limit:
            logger.warning(
                "Limit in lock document (%d) and configured limit (%d) do not "
                "match, using limit from lock document",
                document.limit,
                self._limit,
            )
            self._limit = document.limit
        self._snapshot = snapshot
        return snapshot

    def _cycle(self) -> bool:
        """Fetch, reconcile and write once; the mutex must be held."""
        if self._released:
            return False

        snapshot = self._refresh()
        result = reconcile(snapshot, self._session.id, self._limit)
        if result.reset:
            logger.debug("No live holders on %s", self._prefix)
        if result.status is AdmissionStatus.LOST and self._status is not None:
            if self._status.holding:
                logger.warning(
                    "Contender key %s is gone, semaphore lost", self._registrar.key
                )

        written = self._writer.write(
            self._limit,
            result.holders,
            snapshot.document,
            snapshot.lock_modify_index,
        )
        if written:
            self._status = result.status
        locked = written and result.status.holding
        self._log_lock(locked=locked)
        return locked

    def _release_slot(self) -> bool:
        for _ in range(self._RELEASE_ATTEMPTS):
            snapshot = self._refresh()
            if snapshot.document is None:
                return True
            holders = remove_holder(snapshot, self._session.id)
            if self._writer.write(
                self._limit, holders, snapshot.document, snapshot.lock_modify_index
            ):
                return True
        return False

    def _log_lock(self, *, locked: bool, end_string: str = "obtained") -> None:
        text = "successfully" if locked else "could not be"
        logger.info("Lock %s %s", text, end_string)

    def __enter__(self) -> Semaphore:
        """Block until acquired and keep the slot renewed."""
        try:
            self.acquire()
            self.renew()
        except BaseException:
            self.release()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Stop renewing and release the slot."""
        self.release()

    def __repr__(self) -> str:
        status = self._status.value if self._status is not None else None
        return (
            f"<{self.__class__.__name__} "
            f"name={self._name!r} "
            f"prefix={self._prefix!r} "
            f"limit={self._limit} "
            f"status={status}>"
        )


def lock(
    name: str,
    limit: int = 3,
    work: Callable[[], object] | None = None,
    **options,
) -> Semaphore:
    """Create a semaphore and try to lock it; with ``work``, hold it around it.

    Without ``work`` the semaphore is returned after one acquisition attempt
    and the caller owns its release. With ``work`` the call blocks until the
    semaphore is held, renews it while ``work`` runs, and releases it on every
    exit path.

    Args:
        name: Semaphore name
        limit: Number of participants that may hold the semaphore
        work: Callable to run while holding the semaphore
        **options: Extra ``Semaphore`` keyword arguments

    Returns:
        The semaphore instance
    """
    try:
        semaphore = Semaphore(name=name, limit=limit, **options)
        if work is None:
            semaphore.lock()
        else:
            with semaphore:
                work()
        return semaphore
    except BaseException:
        logger.exception("Semaphore %s failed", name)
        raise
