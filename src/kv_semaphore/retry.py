"""Bounded retry policy for store calls that must succeed before any progress.

Session creation and contender registration go through a ``RetryPolicy``;
everything else relies on re-observation instead of retries.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from pottery import QuorumNotAchieved
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    stop_never,
    wait_exponential,
)

from .exceptions import SessionCreationError, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    StoreError,
    SessionCreationError,
    QuorumNotAchieved,
    RedisConnectionError,
    RedisTimeoutError,
)


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    """Result of running a callable under a ``RetryPolicy``."""

    value: T | None = None
    error: BaseException | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, or raise the error that ended the retries."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential-backoff retry configuration.

    Args:
        max_attempts: Total attempts before giving up, ``None`` for no limit
        initial_wait: Seconds to wait after the first failure
        max_wait: Upper bound in seconds for a single wait
        retry_on: Exception classes considered transient
    """

    max_attempts: int | None = 5
    initial_wait: float = 0.1
    max_wait: float = 2.0
    retry_on: tuple[type[BaseException], ...] = TRANSIENT_ERRORS

    def __post_init__(self) -> None:
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1 or None")

    @classmethod
    def unbounded(cls, **kwargs) -> RetryPolicy:
        """Policy that keeps retrying transient errors forever."""
        return cls(max_attempts=None, **kwargs)

    def is_retryable(self, error: BaseException) -> bool:
        return isinstance(error, self.retry_on)

    def attempt(self, func: Callable[..., T], *args, **kwargs) -> RetryOutcome[T]:
        """Call ``func`` until it succeeds, fails permanently, or attempts run out.

        Non-retryable errors end the loop on the first occurrence. The error
        is returned inside the outcome rather than raised.
        """
        retrying = Retrying(
            stop=(
                stop_never
                if self.max_attempts is None
                else stop_after_attempt(self.max_attempts)
            ),
            wait=wait_exponential(multiplier=self.initial_wait, max=self.max_wait),
            retry=retry_if_exception(self.is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            value = retrying(func, *args, **kwargs)
        except Exception as e:
            return RetryOutcome(
                error=e, attempts=retrying.statistics.get("attempt_number", 1)
            )
        return RetryOutcome(
            value=value, attempts=retrying.statistics.get("attempt_number", 1)
        )

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Like ``attempt`` but raises the final error."""
        return self.attempt(func, *args, **kwargs).unwrap()
