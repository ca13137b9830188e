"""Tests for the study session reducer and the StudySession facade."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone

import pytest

from flipdeck import srs
from flipdeck.models import Card, SessionStats, SessionSummary
from flipdeck.persistence import InlineDispatcher
from flipdeck.session import (
    DuplicateResponseError,
    EmptySessionError,
    InvalidStateError,
    SessionState,
    StudySession,
    respond_to_card,
    start_session,
)

START = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingStore:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def save(self, card_id, was_correct, response_time_ms, new_difficulty, new_next_review_date):
        self.calls.append((card_id, was_correct, response_time_ms, new_difficulty, new_next_review_date))


class FailingStore:
    def save(self, *args):
        raise ConnectionError("database unreachable")


class DeferredDispatcher:
    """Queue submitted work without running it."""

    def __init__(self) -> None:
        self.pending: list[tuple] = []

    def submit(self, fn, /, *args, **kwargs):
        self.pending.append((fn, args, kwargs))

    def run_all(self) -> None:
        for fn, args, kwargs in self.pending:
            fn(*args, **kwargs)
        self.pending.clear()


def _cards(*ids: str) -> list[Card]:
    return [
        Card(id=card_id, difficulty=2.5, next_review_date=START - timedelta(days=1))
        for card_id in ids
    ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session(clock) -> StudySession:
    return StudySession(clock=clock)


class TestStart:
    def test_empty_pool_is_rejected(self, session):
        with pytest.raises(EmptySessionError):
            session.start([])
        assert session.status == "idle"

    def test_empty_session_error_is_a_value_error(self, session):
        with pytest.raises(ValueError):
            session.start([])

    def test_start_initialises_stats(self, session):
        stats = session.start(_cards("a", "b", "c"))

        assert session.status == "in_progress"
        assert stats == SessionStats(
            total_cards=3,
            current_index=0,
            know_count=0,
            learning_count=0,
            start_time=START,
        )
        assert session.current_card.id == "a"
        assert session.history_size == 0

    def test_start_at_an_offset(self, session):
        stats = session.start(_cards("a", "b", "c"), start_index=2)

        assert stats.current_index == 2
        assert session.current_card.id == "c"

    def test_out_of_range_offset_starts_at_the_beginning(self, session):
        stats = session.start(_cards("a", "b"), start_index=9)

        assert stats.current_index == 0

    def test_starred_cards_from_caller_are_kept(self, session):
        session.start(_cards("a", "b"), starred=["b", "b", "x"])

        assert session.starred == ("b", "x")


class TestFlip:
    def test_flip_toggles_only_the_answer_flag(self, session):
        session.start(_cards("a", "b"))
        stats = session.stats

        assert session.flip() is True
        assert session.flip() is False
        assert session.flip() is True
        assert session.stats == stats

    def test_flip_before_start_is_a_no_op(self, session):
        assert session.flip() is False
        assert session.status == "idle"

    def test_responding_resets_the_flip(self, session):
        session.start(_cards("a", "b"))
        session.flip()

        session.respond(True)

        assert session.is_flipped is False


class TestRespond:
    def test_correct_response_advances_and_reschedules(self, session, clock):
        session.start(_cards("a", "b"))
        clock.advance(seconds=4)

        stats = session.respond(True)

        assert isinstance(stats, SessionStats)
        assert stats.current_index == 1
        assert stats.know_count == 1
        assert stats.learning_count == 0
        updated = session.state.cards[0]
        assert updated.difficulty == pytest.approx(2.6)
        assert updated.next_review_date == clock.now + timedelta(days=1)
        assert updated.review_count == 1
        assert updated.correct_count == 1

    def test_incorrect_response_records_learning_card(self, session):
        session.start(_cards("a", "b", "c"))

        stats = session.respond(False)

        assert stats.learning_count == 1
        assert stats.learning_card_ids == ("a",)
        assert session.state.cards[0].difficulty == pytest.approx(1.7)

    def test_two_correct_answers_complete_the_session(self, session, clock):
        session.start(_cards("a", "b"))
        clock.advance(seconds=3)
        session.respond(True)
        clock.advance(seconds=2)

        summary = session.respond(True)

        assert isinstance(summary, SessionSummary)
        assert session.status == "completed"
        assert summary.know_count == 2
        assert summary.learning_count == 0
        assert summary.duration_ms == 5000
        assert summary.learning_card_ids == ()
        assert session.summary == summary
        assert session.current_card is None

    def test_summary_lists_missed_cards_in_order(self, session):
        session.start(_cards("a", "b", "c"))
        session.respond(False)
        session.respond(True)

        summary = session.respond(False)

        assert summary.learning_card_ids == ("a", "c")
        assert summary.accuracy_pct == 33

    def test_respond_after_completion_is_rejected(self, session):
        session.start(_cards("a"))
        session.respond(True)
        stats = session.stats

        with pytest.raises(InvalidStateError):
            session.respond(True)
        assert session.stats == stats

    def test_respond_before_start_is_rejected(self, session):
        with pytest.raises(InvalidStateError):
            session.respond(True)

    def test_stats_match_accepted_responses(self, session):
        session.start(_cards("a", "b", "c", "d", "e"))
        accepted = 0
        for step, was_correct in enumerate([True, False, True, False]):
            session.respond(was_correct)
            accepted += 1
            if step == 1:
                session.undo()
                accepted -= 1
            assert session.stats.know_count + session.stats.learning_count == accepted


class TestDuplicateResponses:
    def test_stale_card_id_is_rejected(self, session):
        session.start(_cards("a", "b", "c"))
        session.respond(True, expected_card_id="a")

        with pytest.raises(DuplicateResponseError):
            session.respond(True, expected_card_id="a")

        assert session.stats.know_count == 1
        assert session.stats.current_index == 1

    def test_duplicate_error_is_an_invalid_state_error(self, session):
        session.start(_cards("a"))

        with pytest.raises(InvalidStateError):
            session.respond(True, expected_card_id="nope")

    def test_concurrent_responses_to_one_card_count_once(self, session):
        session.start(_cards("a", "b", "c"))
        barrier = threading.Barrier(8)
        accepted: list[bool] = []
        rejected: list[bool] = []

        def answer() -> None:
            barrier.wait()
            try:
                session.respond(True, expected_card_id="a")
                accepted.append(True)
            except DuplicateResponseError:
                rejected.append(True)

        threads = [threading.Thread(target=answer) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(accepted) == 1
        assert len(rejected) == 7
        assert session.stats.know_count == 1
        assert session.stats.current_index == 1


class TestUndo:
    def test_undo_restores_card_and_stats_exactly(self, session, clock):
        session.start(_cards("a", "b", "c"))
        session.respond(True)
        before_stats = session.stats
        before_card = session.state.cards[1]
        clock.advance(minutes=1)

        session.respond(False)
        assert session.undo() is True

        assert session.stats == before_stats
        assert session.state.cards[1] == before_card
        assert session.current_card.id == "b"
        assert session.history_size == 1
        assert session.is_flipped is False

    def test_undo_restores_raw_legacy_difficulty(self, session):
        card = Card(id="legacy", difficulty=350, next_review_date=START)
        session.start([card, *_cards("b")])

        session.respond(True)
        session.undo()

        assert session.state.cards[0].difficulty == 350

    def test_undo_reopens_a_completed_session(self, session):
        session.start(_cards("a", "b"))
        session.respond(True)
        session.respond(False)

        session.undo()

        assert session.status == "in_progress"
        assert session.summary is None
        assert session.stats.current_index == 1
        assert session.stats.learning_count == 0
        assert session.stats.learning_card_ids == ()

    def test_undo_with_no_history_at_the_first_card_is_a_no_op(self, session):
        session.start(_cards("a", "b"))
        state = session.state

        assert session.undo() is False
        assert session.state is state

    def test_undo_before_start_is_a_no_op(self, session):
        assert session.undo() is False
        assert session.status == "idle"

    def test_undo_without_history_steps_back_below_the_start_offset(self, session):
        session.start(_cards("a", "b", "c"), start_index=2)

        assert session.undo() is True
        assert session.stats.current_index == 1
        assert session.undo() is True
        assert session.stats.current_index == 0
        assert session.undo() is False
        assert session.stats.know_count == 0
        assert session.stats.learning_count == 0

    def test_step_back_leaves_recorded_stats_alone(self, session):
        session.start(_cards("a", "b", "c"), start_index=1)
        session.respond(False)
        session.undo()

        assert session.stats.current_index == 1

        session.undo()

        assert session.stats.current_index == 0
        assert session.history_size == 0

    def test_history_never_exceeds_responses(self, session):
        session.start(_cards("a", "b", "c"))
        for _ in range(3):
            session.respond(True)
        for _ in range(5):
            session.undo()

        assert session.history_size == 0
        assert session.stats.current_index == 0


class TestStars:
    def test_toggle_star_flips_membership(self, session):
        assert session.toggle_star("a") is True
        assert session.is_starred("a")
        assert session.toggle_star("a") is False
        assert not session.is_starred("a")

    def test_responses_never_change_stars(self, session):
        session.start(_cards("a", "b"))
        session.toggle_star("b")
        session.respond(False)
        session.respond(True)
        session.undo()

        assert session.starred == ("b",)

    def test_starring_a_card_outside_the_session_is_allowed(self, session):
        session.start(_cards("a"))
        session.respond(True)

        session.toggle_star("elsewhere")

        assert session.starred == ("elsewhere",)


class TestRestart:
    def test_restart_resets_stats_and_history_but_keeps_order_and_stars(self, session, clock):
        session.start(_cards("c", "a", "b"), start_index=1)
        session.toggle_star("a")
        session.respond(False)
        session.respond(True)
        order = [card.id for card in session.state.cards]
        clock.advance(minutes=3)

        stats = session.restart_session()

        assert session.status == "in_progress"
        assert stats.current_index == 0
        assert stats.know_count == 0
        assert stats.learning_count == 0
        assert stats.learning_card_ids == ()
        assert stats.start_time == clock.now
        assert session.history_size == 0
        assert [card.id for card in session.state.cards] == order
        assert session.starred == ("a",)

    def test_restart_after_completion(self, session):
        session.start(_cards("a"))
        session.respond(True)

        session.restart_session()

        assert session.status == "in_progress"
        assert session.summary is None
        assert session.current_card.id == "a"

    def test_restart_before_start_is_rejected(self, session):
        with pytest.raises(InvalidStateError):
            session.restart_session()

    def test_transition_without_stats_raises_instead_of_returning_none(self, session, monkeypatch):
        from flipdeck import session as session_module

        session.start(_cards("a"))
        monkeypatch.setattr(session_module, "restart_session", lambda state, *, now: SessionState())

        with pytest.raises(InvalidStateError):
            session.restart_session()


class TestProgress:
    def test_progress_tracks_position(self, session):
        session.start(_cards("a", "b", "c", "d"))
        assert session.progress.percentage == 0

        session.respond(True)

        assert session.progress.percentage == 25
        assert session.progress.remaining == 3

        session.respond(True)
        session.respond(True)
        session.respond(True)

        assert session.progress.is_complete is True
        assert session.progress.remaining == 0


class TestPersistence:
    def test_each_response_is_forwarded_once(self, clock):
        store = RecordingStore()
        session = StudySession(store, dispatcher=InlineDispatcher(), clock=clock)
        session.start(_cards("a", "b"))
        clock.advance(seconds=2.5)

        session.respond(True)
        clock.advance(seconds=1)
        session.respond(False)

        assert store.calls == [
            ("a", True, 2500, pytest.approx(2.6), START + timedelta(seconds=2.5, days=1)),
            ("b", False, 1000, pytest.approx(1.7), START + timedelta(seconds=3.5) + srs.RELEARN_DELAY),
        ]

    def test_respond_does_not_wait_for_persistence(self, clock):
        store = RecordingStore()
        dispatcher = DeferredDispatcher()
        session = StudySession(store, dispatcher=dispatcher, clock=clock)
        session.start(_cards("a", "b"))

        stats = session.respond(True)

        assert stats.current_index == 1
        assert store.calls == []
        dispatcher.run_all()
        assert [call[0] for call in store.calls] == ["a"]

    def test_persistence_failures_never_reach_the_session(self, clock, caplog):
        session = StudySession(FailingStore(), dispatcher=InlineDispatcher(), clock=clock)
        session.start(_cards("a", "b"))

        with caplog.at_level(logging.ERROR, logger="flipdeck.persistence"):
            session.respond(True)
            summary = session.respond(False)

        assert isinstance(summary, SessionSummary)
        assert summary.know_count == 1
        assert "Review persistence task failed" in caplog.text

    def test_undo_does_not_issue_persistence_calls(self, clock):
        store = RecordingStore()
        session = StudySession(store, dispatcher=InlineDispatcher(), clock=clock)
        session.start(_cards("a", "b"))
        session.respond(True)

        session.undo()

        assert len(store.calls) == 1


class TestReducer:
    def test_transitions_return_new_states(self):
        idle = SessionState()
        started = start_session(idle, _cards("a", "b"), now=START)

        after, outcome = respond_to_card(started, False, now=START + timedelta(seconds=1))

        assert idle.status == "idle"
        assert started.current_index == 0
        assert started.history == ()
        assert after.current_index == 1
        assert len(after.history) == 1
        assert outcome.card_id == "a"
        assert outcome.response_time_ms == 1000
        assert outcome.summary is None

    def test_history_entry_captures_pre_response_values(self):
        started = start_session(SessionState(), _cards("a", "b"), now=START)

        after, _ = respond_to_card(started, True, now=START)

        entry = after.history[-1]
        assert entry.card_index == 0
        assert entry.was_correct is True
        assert entry.previous_difficulty == 2.5
        assert entry.previous_next_review_date == START - timedelta(days=1)
        assert entry.previous_stats == started.stats
