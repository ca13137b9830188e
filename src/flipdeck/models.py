from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, cast

SessionStatus = Literal["idle", "in_progress", "completed"]
StudyMode = Literal["normal", "shuffle", "learning", "starred"]

SESSION_STATUSES: tuple[SessionStatus, ...] = ("idle", "in_progress", "completed")
STUDY_MODES: tuple[StudyMode, ...] = ("normal", "shuffle", "learning", "starred")


@dataclass(frozen=True, slots=True)
class Card:
    """Scheduling state of one flashcard.

    ``content`` carries front/back text, media and anything else the caller
    fetched; nothing in the scheduling core looks inside it.
    """

    id: str
    difficulty: float
    next_review_date: datetime
    review_count: int = 0
    correct_count: int = 0
    content: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True, slots=True)
class SessionStats:
    total_cards: int
    current_index: int
    know_count: int
    learning_count: int
    start_time: datetime
    learning_card_ids: tuple[str, ...] = ()

    @property
    def answered(self) -> int:
        return self.know_count + self.learning_count


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """One undo unit, captured before a response is applied."""

    card_index: int
    was_correct: bool
    previous_difficulty: float
    previous_next_review_date: datetime
    previous_review_count: int
    previous_correct_count: int
    previous_stats: SessionStats


@dataclass(frozen=True, slots=True)
class SessionSummary:
    know_count: int
    learning_count: int
    duration_ms: int
    learning_card_ids: tuple[str, ...]

    @property
    def total(self) -> int:
        return self.know_count + self.learning_count

    @property
    def accuracy_pct(self) -> int:
        if self.total == 0:
            return 0
        return round(self.know_count * 100 / self.total)


@dataclass(frozen=True, slots=True)
class StudyProgress:
    percentage: int
    remaining: int
    is_complete: bool


def ensure_study_mode(value: str) -> StudyMode:
    """Normalise and validate a study mode string."""

    normalized = value.strip().lower()
    if normalized not in STUDY_MODES:
        raise ValueError(f"Unsupported study mode: {value}")
    return cast(StudyMode, normalized)


__all__ = [
    "Card",
    "HistoryEntry",
    "SESSION_STATUSES",
    "STUDY_MODES",
    "SessionStats",
    "SessionStatus",
    "SessionSummary",
    "StudyMode",
    "StudyProgress",
    "ensure_study_mode",
]
