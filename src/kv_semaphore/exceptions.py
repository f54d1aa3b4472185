"""Exceptions for kv-semaphore."""

from __future__ import annotations


class SemaphoreError(Exception):
    """Base exception for semaphore errors."""

    pass


class InvalidArgumentError(SemaphoreError, ValueError):
    """Raised when an argument is rejected before reaching the store.

    Subclasses ValueError so callers treating bad input the stdlib way keep
    working.
    """

    pass


class StoreError(SemaphoreError):
    """Raised when the coordination store fails transiently."""

    pass


class SessionCreationError(SemaphoreError):
    """Raised when the coordination store will not issue a session."""

    def __init__(self, name: str, reason: str = "") -> None:
        self.name = name
        self.reason = reason
        message = f"Could not create session '{name}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class InvalidSessionError(SemaphoreError):
    """Raised when a store operation names a session that does not exist."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' does not exist")


class ContenderRegistrationError(SemaphoreError):
    """Raised when the store refuses to bind a contender key to a session."""

    def __init__(self, key: str, session_id: str) -> None:
        self.key = key
        self.session_id = session_id
        super().__init__(
            f"Contender key '{key}' could not be acquired by session '{session_id}'"
        )


class ContenderLostError(SemaphoreError):
    """Raised when a participant's contender key vanished while it waited.

    The key goes away with its session, so the participant can no longer be
    admitted; it is not re-registered automatically.
    """

    def __init__(self, key: str, session_id: str) -> None:
        self.key = key
        self.session_id = session_id
        super().__init__(f"Contender key '{key}' of session '{session_id}' is gone")


class SemaphoreReleasedError(SemaphoreError):
    """Raised when a released semaphore is asked to lock or renew again.

    A semaphore instance covers exactly one acquire/release span.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Semaphore '{name}' has already been released")
