"""Study session state machine.

A session moves ``idle -> in_progress -> completed``. The whole session is a
single immutable ``SessionState`` value and every operation is a pure
function returning the next state, so the machine can be driven and
inspected without any UI. ``StudySession`` wraps those functions with a
lock, a clock and the persistence hand-off.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Iterable, Sequence

from .models import Card, HistoryEntry, SessionStats, SessionStatus, SessionSummary, StudyProgress
from .persistence import BackgroundDispatcher, Dispatcher, ReviewPersistence
from .scheduler import resolve_start_index
from .srs import ReviewOutcome, apply_outcome, apply_response, normalize_datetime

logger = logging.getLogger(__name__)


class SessionError(RuntimeError):
    """Base class for study session errors."""


class EmptySessionError(SessionError, ValueError):
    """Raised when a session is started without any cards."""


class InvalidStateError(SessionError):
    """Raised when an operation is not allowed in the session's current state."""


class DuplicateResponseError(InvalidStateError):
    """Raised when a response targets a card that is no longer current."""


@dataclass(frozen=True, slots=True)
class SessionState:
    status: SessionStatus = "idle"
    cards: tuple[Card, ...] = ()
    stats: SessionStats | None = None
    is_flipped: bool = False
    history: tuple[HistoryEntry, ...] = ()
    starred: tuple[str, ...] = ()
    card_started_at: datetime | None = None
    start_index: int = 0
    summary: SessionSummary | None = None

    @property
    def current_index(self) -> int:
        return self.stats.current_index if self.stats is not None else 0

    @property
    def current_card(self) -> Card | None:
        if self.status != "in_progress" or self.stats is None:
            return None
        index = self.stats.current_index
        if 0 <= index < len(self.cards):
            return self.cards[index]
        return None


@dataclass(frozen=True, slots=True)
class ResponseOutcome:
    card_id: str
    was_correct: bool
    response_time_ms: int
    review: ReviewOutcome
    stats: SessionStats
    summary: SessionSummary | None = None


def _ordered_unique(values: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(values))


def _elapsed_ms(since: datetime | None, now: datetime) -> int:
    if since is None:
        return 0
    return max(0, int((now - normalize_datetime(since)).total_seconds() * 1000))


def start_session(
    state: SessionState,
    cards: Sequence[Card],
    *,
    now: datetime,
    start_index: int = 0,
    starred: Iterable[str] | None = None,
) -> SessionState:
    ordered = tuple(cards)
    if not ordered:
        raise EmptySessionError("Cannot start a study session without cards")
    moment = normalize_datetime(now)
    index = resolve_start_index(start_index, len(ordered))
    stats = SessionStats(
        total_cards=len(ordered),
        current_index=index,
        know_count=0,
        learning_count=0,
        start_time=moment,
    )
    return SessionState(
        status="in_progress",
        cards=ordered,
        stats=stats,
        starred=state.starred if starred is None else _ordered_unique(starred),
        card_started_at=moment,
        start_index=index,
    )


def flip_card(state: SessionState) -> SessionState:
    if state.status != "in_progress":
        return state
    return replace(state, is_flipped=not state.is_flipped)


def respond_to_card(
    state: SessionState, was_correct: bool, *, now: datetime
) -> tuple[SessionState, ResponseOutcome]:
    """Apply a know/learning verdict to the current card and advance."""
    if state.status != "in_progress" or state.stats is None:
        raise InvalidStateError(f"Cannot respond while the session is {state.status}")
    stats = state.stats
    index = stats.current_index
    if not 0 <= index < stats.total_cards:
        raise InvalidStateError(f"Card index {index} is outside the session")

    moment = normalize_datetime(now)
    card = state.cards[index]
    review = apply_response(card, was_correct, moment)
    entry = HistoryEntry(
        card_index=index,
        was_correct=was_correct,
        previous_difficulty=card.difficulty,
        previous_next_review_date=card.next_review_date,
        previous_review_count=card.review_count,
        previous_correct_count=card.correct_count,
        previous_stats=stats,
    )
    cards = state.cards[:index] + (apply_outcome(card, review),) + state.cards[index + 1 :]

    learning_ids = stats.learning_card_ids
    if not was_correct and card.id not in learning_ids:
        learning_ids = learning_ids + (card.id,)

    is_last = index + 1 == stats.total_cards
    updated_stats = replace(
        stats,
        current_index=index if is_last else index + 1,
        know_count=stats.know_count + (1 if was_correct else 0),
        learning_count=stats.learning_count + (0 if was_correct else 1),
        learning_card_ids=learning_ids,
    )
    summary = None
    if is_last:
        summary = SessionSummary(
            know_count=updated_stats.know_count,
            learning_count=updated_stats.learning_count,
            duration_ms=_elapsed_ms(stats.start_time, moment),
            learning_card_ids=_ordered_unique(learning_ids),
        )

    next_state = replace(
        state,
        status="completed" if is_last else "in_progress",
        cards=cards,
        stats=updated_stats,
        is_flipped=False,
        history=state.history + (entry,),
        card_started_at=moment,
        summary=summary,
    )
    outcome = ResponseOutcome(
        card_id=card.id,
        was_correct=was_correct,
        response_time_ms=_elapsed_ms(state.card_started_at, moment),
        review=review,
        stats=updated_stats,
        summary=summary,
    )
    return next_state, outcome


def undo_last(state: SessionState, *, now: datetime) -> SessionState:
    """Roll back the latest response, or step back one card without history.

    With history the card's schedule and the stats snapshot are restored
    exactly. Without history (only possible after starting at an offset)
    the index moves back one card and the stats are left alone.
    """
    if state.status == "idle" or state.stats is None:
        return state
    moment = normalize_datetime(now)

    if state.history:
        entry = state.history[-1]
        card = state.cards[entry.card_index]
        restored = replace(
            card,
            difficulty=entry.previous_difficulty,
            next_review_date=entry.previous_next_review_date,
            review_count=entry.previous_review_count,
            correct_count=entry.previous_correct_count,
        )
        index = entry.card_index
        return replace(
            state,
            status="in_progress",
            cards=state.cards[:index] + (restored,) + state.cards[index + 1 :],
            stats=entry.previous_stats,
            is_flipped=False,
            history=state.history[:-1],
            card_started_at=moment,
            summary=None,
        )

    if state.status == "in_progress" and state.stats.current_index > 0:
        stats = replace(state.stats, current_index=state.stats.current_index - 1)
        return replace(state, stats=stats, is_flipped=False, card_started_at=moment)
    return state


def toggle_star(state: SessionState, card_id: str) -> SessionState:
    if card_id in state.starred:
        starred = tuple(value for value in state.starred if value != card_id)
    else:
        starred = state.starred + (card_id,)
    return replace(state, starred=starred)


def restart_session(state: SessionState, *, now: datetime) -> SessionState:
    if state.status == "idle" or state.stats is None:
        raise InvalidStateError("Cannot restart a session that was never started")
    moment = normalize_datetime(now)
    stats = SessionStats(
        total_cards=len(state.cards),
        current_index=0,
        know_count=0,
        learning_count=0,
        start_time=moment,
    )
    return replace(
        state,
        status="in_progress",
        stats=stats,
        is_flipped=False,
        history=(),
        card_started_at=moment,
        summary=None,
    )


def session_progress(state: SessionState) -> StudyProgress:
    if state.stats is None:
        return StudyProgress(percentage=0, remaining=0, is_complete=False)
    total = state.stats.total_cards
    if state.status == "completed":
        return StudyProgress(percentage=100, remaining=0, is_complete=True)
    index = state.stats.current_index
    return StudyProgress(
        percentage=round(index * 100 / total) if total else 0,
        remaining=total - index,
        is_complete=False,
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StudySession:
    """One live study session bound to a persistence port.

    Transitions run under a short per-session lock so that two rapid
    ``respond`` calls cannot both count against the same card. Passing
    ``expected_card_id`` lets a caller name the card it is answering; a
    response for a card that is no longer current is rejected.
    """

    def __init__(
        self,
        persistence: ReviewPersistence | None = None,
        *,
        dispatcher: Dispatcher | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._persistence = persistence
        if dispatcher is None and persistence is not None:
            dispatcher = BackgroundDispatcher()
        self._dispatcher = dispatcher
        self._clock = clock
        self._lock = threading.Lock()
        self._state = SessionState()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> SessionStatus:
        return self._state.status

    @property
    def stats(self) -> SessionStats | None:
        return self._state.stats

    @property
    def current_card(self) -> Card | None:
        return self._state.current_card

    @property
    def is_flipped(self) -> bool:
        return self._state.is_flipped

    @property
    def starred(self) -> tuple[str, ...]:
        return self._state.starred

    @property
    def history_size(self) -> int:
        return len(self._state.history)

    @property
    def summary(self) -> SessionSummary | None:
        return self._state.summary

    @property
    def progress(self) -> StudyProgress:
        return session_progress(self._state)

    def is_starred(self, card_id: str) -> bool:
        return card_id in self._state.starred

    def _started_stats(self) -> SessionStats:
        stats = self._state.stats
        if stats is None:
            raise InvalidStateError("Session has no stats; it was never started")
        return stats

    def start(
        self,
        ordered_cards: Sequence[Card],
        *,
        start_index: int = 0,
        starred: Iterable[str] | None = None,
    ) -> SessionStats:
        with self._lock:
            self._state = start_session(
                self._state,
                ordered_cards,
                now=self._clock(),
                start_index=start_index,
                starred=starred,
            )
            stats = self._started_stats()
        logger.debug("Started session with %s cards at index %s", stats.total_cards, stats.current_index)
        return stats

    def flip(self) -> bool:
        with self._lock:
            self._state = flip_card(self._state)
            return self._state.is_flipped

    def respond(
        self, was_correct: bool, *, expected_card_id: str | None = None
    ) -> SessionStats | SessionSummary:
        with self._lock:
            if expected_card_id is not None:
                current = self._state.current_card
                if current is None or current.id != expected_card_id:
                    logger.warning(
                        "Rejecting response for card %s; current card is %s",
                        expected_card_id,
                        current.id if current is not None else None,
                    )
                    raise DuplicateResponseError(
                        f"Card {expected_card_id} is not the current card"
                    )
            self._state, outcome = respond_to_card(self._state, was_correct, now=self._clock())

        self._forward(outcome)
        if outcome.summary is not None:
            logger.debug(
                "Session completed: %s known, %s learning",
                outcome.summary.know_count,
                outcome.summary.learning_count,
            )
            return outcome.summary
        return outcome.stats

    def _forward(self, outcome: ResponseOutcome) -> None:
        if self._persistence is None or self._dispatcher is None:
            return
        try:
            self._dispatcher.submit(
                self._persistence.save,
                outcome.card_id,
                outcome.was_correct,
                outcome.response_time_ms,
                outcome.review.difficulty,
                outcome.review.next_review_date,
            )
        except RuntimeError:
            logger.exception("Could not dispatch review for card %s", outcome.card_id)

    def undo(self) -> bool:
        """Undo the latest response. Returns False when nothing changed."""
        with self._lock:
            before = self._state
            self._state = undo_last(before, now=self._clock())
            changed = self._state is not before
        if changed:
            logger.debug("Undo moved session to index %s", self._state.current_index)
        return changed

    def toggle_star(self, card_id: str) -> bool:
        with self._lock:
            self._state = toggle_star(self._state, card_id)
            return card_id in self._state.starred

    def restart_session(self) -> SessionStats:
        with self._lock:
            self._state = restart_session(self._state, now=self._clock())
            return self._started_stats()


__all__ = [
    "DuplicateResponseError",
    "EmptySessionError",
    "InvalidStateError",
    "ResponseOutcome",
    "SessionError",
    "SessionState",
    "StudySession",
    "flip_card",
    "respond_to_card",
    "restart_session",
    "session_progress",
    "start_session",
    "toggle_star",
    "undo_last",
]
