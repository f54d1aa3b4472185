"""Background loop keeping a participant's holder membership current."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .store import CoordinationStore

logger = logging.getLogger(__name__)


class RenewalLoop:
    """Watches the semaphore prefix and re-runs acquisition on every change.

    Each iteration is a blocking read of the prefix starting at the last
    index seen. When the store reports a newer index, ``on_change`` runs one
    acquisition cycle. Errors are logged and treated as "no change"; the loop
    only ends through ``stop``.

    Args:
        store: The coordination store
        prefix: Semaphore key prefix to watch
        on_change: Acquisition cycle to run after a change
        index: Store index the caller last observed
        wait: Seconds a single blocking read may wait
        error_delay: Seconds to pause after an error
    """

    _WAIT = 30.0
    _ERROR_DELAY = 1.0
    _STOP_TIMEOUT = 1.0

    def __init__(
        self,
        store: CoordinationStore,
        *,
        prefix: str,
        on_change: Callable[[], object],
        index: int = 0,
        wait: float = _WAIT,
        error_delay: float = _ERROR_DELAY,
    ) -> None:
        self._store = store
        self._prefix = prefix
        self._on_change = on_change
        self._index = index
        self._wait = wait
        self._error_delay = error_delay
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"renewal-{prefix}", daemon=True
        )

    @property
    def stopped(self) -> bool:
        """True once ``stop`` has been requested."""
        return self._stopped.is_set()

    @property
    def index(self) -> int:
        return self._index

    def start(self) -> RenewalLoop:
        self._thread.start()
        return self

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        while not self._stopped.is_set():
            if self._changed():
                if self._stopped.is_set():
                    return
                try:
                    self._on_change()
                except Exception:
                    logger.exception("Renewal cycle on %s failed", self._prefix)
                    self._stopped.wait(self._error_delay)

    def _changed(self) -> bool:
        """Block until the prefix changes or the wait elapses.

        Returns:
            True if the store reported a newer index
        """
        logger.debug("Watching %s for changes", self._prefix)
        try:
            result = self._store.get(
                self._prefix, recurse=True, index=self._index, wait=self._wait
            )
        except Exception as e:
            logger.error("Watching %s failed: %s", self._prefix, e)
            self._stopped.wait(self._error_delay)
            return False

        if result.index == self._index:
            if not self._index:
                # nothing to block on in an empty store
                self._stopped.wait(self._error_delay)
            return False
        if result.index < self._index:
            # store index went backwards (store reset), start over
            logger.warning(
                "Index on %s went backwards (%d < %d)",
                self._prefix,
                result.index,
                self._index,
            )
        self._index = result.index
        logger.info("Changes on %s detected", self._prefix)
        return True

    def stop(self, timeout: float = _STOP_TIMEOUT) -> bool:
        """Stop the loop, waiting at most ``timeout`` seconds for it to exit.

        Safe to call more than once.

        Returns:
            True if the loop thread has exited
        """
        self._stopped.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        return not self._thread.is_alive()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"prefix={self._prefix!r} "
            f"index={self._index} "
            f"running={self.is_alive()}>"
        )
