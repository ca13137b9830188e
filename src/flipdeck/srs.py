"""Difficulty model: maps a card and a know/learning verdict to its next schedule.

Every function here is pure. Persisted values can be malformed (legacy
integer encodings, blanks, strings), so inputs are normalised and clamped
rather than rejected.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Iterable

from .models import Card

DEFAULT_DIFFICULTY = 2.5
MIN_DIFFICULTY = 1.3
MAX_DIFFICULTY = 5.0
CORRECT_STEP = 0.1
INCORRECT_STEP = -0.8

# Stored difficulties above this are the old integer encoding (2.5 -> 250).
LEGACY_THRESHOLD = 10
LEGACY_SCALE = 100

FIRST_INTERVAL_DAYS = 1
SECOND_INTERVAL_DAYS = 6
MAX_INTERVAL_DAYS = 365
RELEARN_DELAY = timedelta(days=1)


@dataclass(frozen=True, slots=True)
class ReviewOutcome:
    difficulty: float
    next_review_date: datetime
    interval_days: int
    review_count: int
    correct_count: int


def normalize_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _clamp(value: float) -> float:
    return max(MIN_DIFFICULTY, min(MAX_DIFFICULTY, value))


def normalize_difficulty(raw: object) -> float:
    """Return a usable difficulty in ``[MIN_DIFFICULTY, MAX_DIFFICULTY]``.

    ``None``, zero, NaN and anything that is not a number fall back to
    ``DEFAULT_DIFFICULTY``; legacy integers (``350``) are scaled down.
    """
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_DIFFICULTY
    if math.isnan(value) or value == 0:
        return DEFAULT_DIFFICULTY
    if value > LEGACY_THRESHOLD:
        value = value / LEGACY_SCALE
    return _clamp(value)


def to_storage_difficulty(difficulty: float) -> int:
    """Encode a difficulty the way the cards table stores it."""
    return int(round(normalize_difficulty(difficulty) * LEGACY_SCALE))


def _safe_count(value: object) -> int:
    try:
        return max(0, int(value))  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return 0


def _correct_interval_days(correct_count: int, difficulty: float) -> int:
    if correct_count <= 1:
        return FIRST_INTERVAL_DAYS
    if correct_count == 2:
        return SECOND_INTERVAL_DAYS
    interval = SECOND_INTERVAL_DAYS
    for _ in range(3, correct_count + 1):
        interval = int(round(interval * difficulty))
        if interval >= MAX_INTERVAL_DAYS:
            return MAX_INTERVAL_DAYS
    return interval


def apply_response(card: Card, was_correct: bool, now: datetime) -> ReviewOutcome:
    """Compute the card's next difficulty and due date for one response.

    A correct answer nudges difficulty up by ``CORRECT_STEP`` and walks the
    SM-2 interval ladder (1 day, 6 days, then ``previous * difficulty``).
    A miss drops difficulty by ``INCORRECT_STEP`` towards the floor and
    makes the card due again after ``RELEARN_DELAY``.
    """
    moment = normalize_datetime(now)
    current = normalize_difficulty(card.difficulty)
    review_count = _safe_count(card.review_count) + 1
    correct_count = _safe_count(card.correct_count)

    if was_correct:
        difficulty = _clamp(round(current + CORRECT_STEP, 2))
        correct_count += 1
        interval_days = _correct_interval_days(correct_count, difficulty)
        next_review_date = moment + timedelta(days=interval_days)
    else:
        difficulty = _clamp(round(current + INCORRECT_STEP, 2))
        interval_days = 0
        next_review_date = moment + RELEARN_DELAY

    return ReviewOutcome(
        difficulty=difficulty,
        next_review_date=next_review_date,
        interval_days=interval_days,
        review_count=review_count,
        correct_count=correct_count,
    )


def apply_outcome(card: Card, outcome: ReviewOutcome) -> Card:
    return replace(
        card,
        difficulty=outcome.difficulty,
        next_review_date=outcome.next_review_date,
        review_count=outcome.review_count,
        correct_count=outcome.correct_count,
    )


def is_due(card: Card, now: datetime) -> bool:
    return normalize_datetime(card.next_review_date) <= normalize_datetime(now)


def due_cards(cards: Iterable[Card], now: datetime) -> list[Card]:
    return [card for card in cards if is_due(card, now)]


def count_due(cards: Iterable[Card], now: datetime) -> int:
    return len(due_cards(cards, now))


__all__ = [
    "CORRECT_STEP",
    "DEFAULT_DIFFICULTY",
    "INCORRECT_STEP",
    "MAX_DIFFICULTY",
    "MAX_INTERVAL_DAYS",
    "MIN_DIFFICULTY",
    "RELEARN_DELAY",
    "ReviewOutcome",
    "apply_outcome",
    "apply_response",
    "count_due",
    "due_cards",
    "is_due",
    "normalize_datetime",
    "normalize_difficulty",
    "to_storage_difficulty",
]
