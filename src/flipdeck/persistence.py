"""Review persistence port plus the retry and dispatch plumbing around it.

The study session hands every accepted response to a ``ReviewPersistence``
through a dispatcher and never waits for the outcome. Failures end up in the
log, not in the session.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0
DEFAULT_MULTIPLIER = 2.0

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    sqlite3.OperationalError,
    ConnectionError,
    TimeoutError,
)


class ReviewPersistence(Protocol):
    def save(
        self,
        card_id: str,
        was_correct: bool,
        response_time_ms: int,
        new_difficulty: float,
        new_next_review_date: datetime,
    ) -> Any: ...


class Dispatcher(Protocol):
    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any: ...


class RetryingReviewStore:
    """Wrap a store with bounded exponential backoff.

    Only errors listed in ``retry_on`` are retried; anything else is raised
    straight to the dispatcher. ``save`` returns False once attempts run out.
    """

    def __init__(
        self,
        inner: ReviewPersistence,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        multiplier: float = DEFAULT_MULTIPLIER,
        retry_on: tuple[type[BaseException], ...] = RETRYABLE_ERRORS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.inner = inner
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.retry_on = retry_on
        self._sleep = sleep

    def delays(self) -> list[float]:
        """Backoff delays slept between attempts, in order."""
        result: list[float] = []
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            result.append(min(delay, self.max_delay))
            delay *= self.multiplier
        return result

    def save(
        self,
        card_id: str,
        was_correct: bool,
        response_time_ms: int,
        new_difficulty: float,
        new_next_review_date: datetime,
    ) -> bool:
        waits = self.delays()
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.inner.save(
                    card_id,
                    was_correct,
                    response_time_ms,
                    new_difficulty,
                    new_next_review_date,
                )
                return True
            except self.retry_on as exc:
                if attempt == self.max_attempts:
                    logger.error(
                        "Giving up saving review for card %s after %s attempts: %s",
                        card_id,
                        attempt,
                        exc,
                    )
                    return False
                wait = waits[attempt - 1]
                logger.warning(
                    "Saving review for card %s failed (attempt %s/%s), retrying in %.1fs: %s",
                    card_id,
                    attempt,
                    self.max_attempts,
                    wait,
                    exc,
                )
                self._sleep(wait)
        return False


def _log_failure(future: Future[Any]) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("Review persistence task failed", exc_info=exc)


class BackgroundDispatcher:
    """Run persistence calls on a worker thread, fire-and-forget."""

    def __init__(self, max_workers: int = 1) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="flipdeck-persist"
        )

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future[Any]:
        future = self._executor.submit(fn, *args, **kwargs)
        future.add_done_callback(_log_failure)
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class InlineDispatcher:
    """Run persistence calls immediately; failures are logged, not raised."""

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> None:
        try:
            fn(*args, **kwargs)
        except Exception:
            logger.exception("Review persistence task failed")


__all__ = [
    "BackgroundDispatcher",
    "Dispatcher",
    "InlineDispatcher",
    "RETRYABLE_ERRORS",
    "RetryingReviewStore",
    "ReviewPersistence",
]
