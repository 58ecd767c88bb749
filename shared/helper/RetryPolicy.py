"""Retry policy shared by every external call site."""

import logging
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from shared.models.config import PerformanceProfile
from shared.models.errors import TransientError

T = TypeVar("T")


class RetryPolicy:
    """Exponential backoff with jitter, retrying only TransientError.

    The wait before retry ``n`` (1-based) is ``base * 2^(n-1)`` seconds capped at
    ``max_delay``, plus a random jitter in ``[0, jitter]``. After ``max_retries``
    retries the last TransientError is re-raised unchanged.
    """

    def __init__(
        self,
        logger: logging.Logger,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 0.0,
    ) -> None:
        self.logging = logger
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    @classmethod
    def from_profile(cls, logger: logging.Logger, profile: PerformanceProfile) -> "RetryPolicy":
        return cls(
            logger=logger,
            max_retries=profile.max_retries,
            base_delay=profile.retry_base_delay_ms / 1000,
            max_delay=profile.retry_max_delay_ms / 1000,
            jitter=profile.retry_jitter_ms / 1000,
        )

    def _log_before_sleep(self, description: str) -> Callable[[RetryCallState], None]:
        def _log(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            wait = retry_state.next_action.sleep if retry_state.next_action else 0
            self.logging.warning(
                "%s failed (attempt %d/%d): %s. Retrying in %.2fs.",
                description,
                retry_state.attempt_number,
                self.max_retries + 1,
                exc,
                wait,
            )
        return _log

    def _build(self, description: str) -> AsyncRetrying:
        wait = wait_exponential(multiplier=self.base_delay, max=self.max_delay)
        if self.jitter > 0:
            wait = wait + wait_random(0, self.jitter)
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait,
            retry=retry_if_exception_type(TransientError),
            before_sleep=self._log_before_sleep(description),
            reraise=True,
        )

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, description: str = "request", **kwargs: Any) -> T:
        """Await ``func(*args, **kwargs)`` under this policy.

        Args:
            func: Coroutine function to call.
            description: Label used in retry log lines.

        Returns:
            The result of the first successful attempt.

        Raises:
            TransientError: If every attempt failed transiently.
            Exception: Any non-transient error, raised immediately.
        """
        async for attempt in self._build(description):
            with attempt:
                return await func(*args, **kwargs)
        raise RuntimeError("unreachable")  # pragma: no cover
