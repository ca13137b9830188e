"""Flipdeck: spaced-repetition scheduling and study sessions for flashcard decks."""

from .models import Card, HistoryEntry, SessionStats, SessionSummary
from .scheduler import StudyOptions, order_cards
from .session import (
    DuplicateResponseError,
    EmptySessionError,
    InvalidStateError,
    StudySession,
)
from .srs import apply_response, normalize_difficulty

__all__ = [
    "Card",
    "DuplicateResponseError",
    "EmptySessionError",
    "HistoryEntry",
    "InvalidStateError",
    "SessionStats",
    "SessionSummary",
    "StudyOptions",
    "StudySession",
    "apply_response",
    "normalize_difficulty",
    "order_cards",
]
