from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone

import pytest

from flipdeck.persistence import BackgroundDispatcher, InlineDispatcher, RetryingReviewStore

DUE = datetime(2024, 6, 1, tzinfo=timezone.utc)


class FlakyStore:
    def __init__(self, failures: int, error: BaseException | None = None) -> None:
        self.failures = failures
        self.error = error or sqlite3.OperationalError("database is locked")
        self.attempts = 0
        self.saved: list[str] = []

    def save(self, card_id, was_correct, response_time_ms, new_difficulty, new_next_review_date):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise self.error
        self.saved.append(card_id)


@pytest.fixture
def sleeps() -> list[float]:
    return []


def test_retries_with_exponential_backoff_then_succeeds(sleeps):
    inner = FlakyStore(failures=2)
    store = RetryingReviewStore(inner, sleep=sleeps.append)

    assert store.save("a", True, 1200, 2.6, DUE) is True

    assert inner.attempts == 3
    assert inner.saved == ["a"]
    assert sleeps == [1.0, 2.0]


def test_gives_up_after_max_attempts(sleeps, caplog):
    inner = FlakyStore(failures=10, error=ConnectionError("offline"))
    store = RetryingReviewStore(inner, max_attempts=4, initial_delay=0.5, sleep=sleeps.append)

    with caplog.at_level(logging.WARNING, logger="flipdeck.persistence"):
        assert store.save("a", False, 900, 1.7, DUE) is False

    assert inner.attempts == 4
    assert sleeps == [0.5, 1.0, 2.0]
    assert "Giving up saving review for card a after 4 attempts" in caplog.text


def test_non_retryable_errors_propagate(sleeps):
    inner = FlakyStore(failures=1, error=LookupError("Unknown card: a"))
    store = RetryingReviewStore(inner, sleep=sleeps.append)

    with pytest.raises(LookupError):
        store.save("a", True, 100, 2.6, DUE)
    assert sleeps == []


def test_delays_are_capped():
    store = RetryingReviewStore(FlakyStore(0), max_attempts=6, initial_delay=1.0, max_delay=10.0)

    assert store.delays() == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        RetryingReviewStore(FlakyStore(0), max_attempts=0)


def test_inline_dispatcher_logs_and_swallows_failures(caplog):
    def boom() -> None:
        raise RuntimeError("save failed")

    with caplog.at_level(logging.ERROR, logger="flipdeck.persistence"):
        InlineDispatcher().submit(boom)

    assert "Review persistence task failed" in caplog.text


def test_background_dispatcher_runs_work_off_the_caller_thread():
    dispatcher = BackgroundDispatcher()
    store = FlakyStore(failures=0)
    try:
        future = dispatcher.submit(store.save, "a", True, 10, 2.6, DUE)
        future.result(timeout=5)
    finally:
        dispatcher.shutdown()

    assert store.saved == ["a"]


def test_background_dispatcher_logs_failed_tasks(caplog):
    dispatcher = BackgroundDispatcher()

    def boom() -> None:
        raise ConnectionError("offline")

    with caplog.at_level(logging.ERROR, logger="flipdeck.persistence"):
        future = dispatcher.submit(boom)
        dispatcher.shutdown(wait=True)

    assert isinstance(future.exception(), ConnectionError)
    assert "Review persistence task failed" in caplog.text
