"""Contender keys: one session-bound key per participant under the prefix."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .exceptions import ContenderRegistrationError, InvalidArgumentError
from .retry import RetryPolicy

if TYPE_CHECKING:
    from .session import Session
    from .store import CoordinationStore

logger = logging.getLogger(__name__)


class ContenderRegistrar:
    """Registers a participant as alive and interested in the semaphore.

    The contender key is ``<prefix><session-id>``. It disappears with the
    session, so ``deregister`` only makes the departure visible sooner.

    Args:
        store: The coordination store
        prefix: Semaphore key prefix, ending with ``/``
        session: Session the key is bound to
        retry_policy: Policy for transient failures, unbounded by default
    """

    def __init__(
        self,
        store: CoordinationStore,
        *,
        prefix: str,
        session: Session,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._session = session
        self._retry_policy = retry_policy or RetryPolicy.unbounded()
        self.key = f"{prefix}{session.id}"

    def register(self, value: str | None = "none") -> str:
        """Acquire the contender key and return it.

        Raises:
            InvalidArgumentError: If ``value`` is None or empty
            ContenderRegistrationError: If the store refuses the key
        """
        if not value:
            raise InvalidArgumentError("Value cannot be empty or None")

        acquired = self._retry_policy.call(
            self._store.acquire, self.key, self._session.id, value
        )
        if not acquired:
            raise ContenderRegistrationError(self.key, self._session.id)
        logger.debug("Registered contender key %s", self.key)
        return self.key

    def deregister(self) -> bool:
        """Delete the contender key; False if it was already gone."""
        deleted = self._store.delete(self.key)
        logger.debug("Deregistered contender key %s (existed: %s)", self.key, deleted)
        return deleted
