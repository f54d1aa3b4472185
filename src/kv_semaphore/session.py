"""Store sessions and the heartbeat that keeps them alive."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from .exceptions import SessionCreationError
from .retry import TRANSIENT_ERRORS, RetryPolicy
from .store import DELETE_BEHAVIOR

if TYPE_CHECKING:
    from .store import CoordinationStore

logger = logging.getLogger(__name__)


class Session:
    """A store session plus the daemon thread extending its TTL.

    The heartbeat extends the session every ``ttl / 3`` seconds. When the
    store reports the session gone the heartbeat stops; keys bound to the
    session have been deleted by then.
    """

    def __init__(
        self, *, session_id: str, name: str, store: CoordinationStore, ttl: float
    ) -> None:
        self.id = session_id
        self.name = name
        self.ttl = ttl
        self._store = store
        self._stopped = threading.Event()
        self._lapsed = threading.Event()
        self._heartbeat: threading.Thread | None = None

    @property
    def lapsed(self) -> bool:
        """True once the store has reported the session gone."""
        return self._lapsed.is_set()

    @property
    def destroyed(self) -> bool:
        return self._stopped.is_set()

    def start_heartbeat(self) -> None:
        if self._heartbeat is not None:
            return
        self._heartbeat = threading.Thread(
            target=self._beat,
            name=f"session-heartbeat-{self.id}",
            daemon=True,
        )
        self._heartbeat.start()

    def _beat(self) -> None:
        interval = self.ttl / 3
        while not self._stopped.wait(interval):
            try:
                alive = self._store.renew_session(self.id)
            except TRANSIENT_ERRORS as e:
                logger.warning("Could not renew session %s: %s", self.id, e)
                continue
            if not alive:
                logger.warning("Session %s (%s) lapsed", self.id, self.name)
                self._lapsed.set()
                return

    def stop_heartbeat(self, timeout: float | None = None) -> None:
        self._stopped.set()
        heartbeat = self._heartbeat
        if heartbeat is not None and heartbeat is not threading.current_thread():
            heartbeat.join(timeout)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} id={self.id!r} name={self.name!r}>"


class SessionManager:
    """Creates and destroys sessions on a coordination store.

    Args:
        store: The coordination store issuing sessions
        ttl: Session TTL in seconds
        retry_policy: Policy for transient session creation failures
    """

    _SESSION_TTL = 15.0

    def __init__(
        self,
        store: CoordinationStore,
        *,
        ttl: float = _SESSION_TTL,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        if ttl <= 0:
            raise ValueError("Session ttl must be positive")
        self._store = store
        self._ttl = ttl
        self._retry_policy = retry_policy or RetryPolicy()

    def create(self, name: str) -> Session:
        """Create a session whose bound keys are deleted when it ends.

        Raises:
            SessionCreationError: If the store keeps failing after retries
        """
        outcome = self._retry_policy.attempt(
            self._store.create_session, name, ttl=self._ttl, behavior=DELETE_BEHAVIOR
        )
        if not outcome.ok:
            error = outcome.error
            if isinstance(error, SessionCreationError):
                raise error
            raise SessionCreationError(
                name, f"gave up after {outcome.attempts} attempts: {error}"
            ) from error

        session = Session(
            session_id=outcome.value, name=name, store=self._store, ttl=self._ttl
        )
        session.start_heartbeat()
        logger.debug("Session %s created for %s", session.id, name)
        return session

    def destroy(self, session: Session) -> None:
        """Destroy ``session``; safe to call on a session that is already gone."""
        session.stop_heartbeat(timeout=1.0)
        try:
            self._store.destroy_session(session.id)
        except TRANSIENT_ERRORS as e:
            logger.warning("Could not destroy session %s: %s", session.id, e)
        logger.debug("Session %s destroyed", session.id)
