from __future__ import annotations

import logging
import os
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from fastapi import FastAPI, Form, HTTPException, Request, status
from fastapi.responses import JSONResponse

from .db import SqliteReviewStore, init_db, list_deck_cards
from .models import Card, SessionStats, SessionSummary
from .persistence import BackgroundDispatcher, RetryingReviewStore
from .scheduler import options_for_mode, order_cards
from .session import EmptySessionError, InvalidStateError, StudySession

logger = logging.getLogger(__name__)

# Ensure the database schema exists even when lifespan hooks are not triggered (e.g. in tests).
init_db()

_dispatcher = BackgroundDispatcher()
_store = RetryingReviewStore(SqliteReviewStore())


MAX_SESSIONS = int(os.environ.get("FLIPDECK_MAX_SESSIONS", "256"))


@dataclass(slots=True)
class _ActiveSession:
    deck_id: str
    session: StudySession
    # Learning ids this session replaced when it completed, restored if undo reopens it.
    replaced_learning: tuple[str, ...] | None = None
    published_learning: tuple[str, ...] | None = None


_SESSIONS: OrderedDict[str, _ActiveSession] = OrderedDict()
_LAST_LEARNING: dict[str, tuple[str, ...]] = {}
_STARRED: dict[str, tuple[str, ...]] = {}


def _register(session_id: str, active: _ActiveSession) -> None:
    _SESSIONS[session_id] = active
    while len(_SESSIONS) > MAX_SESSIONS:
        evicted, _ = _SESSIONS.popitem(last=False)
        logger.info("Evicted session %s (limit %s)", evicted, MAX_SESSIONS)


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    yield
    _dispatcher.shutdown(wait=True)


app = FastAPI(title="Flipdeck", lifespan=lifespan)


@app.exception_handler(EmptySessionError)
async def _empty_session(_: Request, exc: EmptySessionError) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=status.HTTP_404_NOT_FOUND)


@app.exception_handler(InvalidStateError)
async def _invalid_state(_: Request, exc: InvalidStateError) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=status.HTTP_409_CONFLICT)


def _card_payload(card: Card | None) -> dict[str, Any] | None:
    if card is None:
        return None
    return {
        "id": card.id,
        "front": card.content.get("front", ""),
        "back": card.content.get("back", ""),
        "difficulty": card.difficulty,
        "next_review_date": card.next_review_date.isoformat(),
        "review_count": card.review_count,
        "correct_count": card.correct_count,
    }


def _stats_payload(stats: SessionStats | None) -> dict[str, Any] | None:
    if stats is None:
        return None
    return {
        "total_cards": stats.total_cards,
        "current_index": stats.current_index,
        "know_count": stats.know_count,
        "learning_count": stats.learning_count,
        "start_time": stats.start_time.isoformat(),
        "learning_card_ids": list(stats.learning_card_ids),
    }


def _summary_payload(summary: SessionSummary | None) -> dict[str, Any] | None:
    if summary is None:
        return None
    return {
        "know_count": summary.know_count,
        "learning_count": summary.learning_count,
        "duration_ms": summary.duration_ms,
        "learning_card_ids": list(summary.learning_card_ids),
        "accuracy_pct": summary.accuracy_pct,
    }


def _session_payload(session_id: str, active: _ActiveSession) -> dict[str, Any]:
    session = active.session
    progress = session.progress
    return {
        "session_id": session_id,
        "deck_id": active.deck_id,
        "status": session.status,
        "current_card": _card_payload(session.current_card),
        "is_flipped": session.is_flipped,
        "stats": _stats_payload(session.stats),
        "progress": {
            "percentage": progress.percentage,
            "remaining": progress.remaining,
            "is_complete": progress.is_complete,
        },
        "starred": list(session.starred),
        "can_undo": session.history_size > 0 or session.state.current_index > 0,
        "summary": _summary_payload(session.summary),
    }


def _get_active(session_id: str) -> _ActiveSession:
    active = _SESSIONS.get(session_id)
    if active is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown session")
    _SESSIONS.move_to_end(session_id)
    return active


@app.post("/decks/{deck_id}/sessions", status_code=status.HTTP_201_CREATED)
def create_session(
    deck_id: str,
    mode: str = "normal",
    start: int = 1,
    cards: str | None = None,
) -> dict[str, Any]:
    """Order a deck's cards and open a session on them.

    ``start`` is 1-based like the card counter shown to users; ``cards`` is
    a comma-separated id list restricting the session.
    """
    card_ids = [value for value in cards.split(",") if value] if cards else None
    try:
        options = options_for_mode(
            mode,
            learning_ids=_LAST_LEARNING.get(deck_id, ()),
            starred_ids=_STARRED.get(deck_id, ()),
            card_ids=card_ids,
            start_index=start - 1,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    now = datetime.now(timezone.utc)
    ordered = order_cards(list_deck_cards(deck_id), now, options)
    if not ordered:
        raise EmptySessionError(f"Nothing to study in deck {deck_id}")

    session = StudySession(_store, dispatcher=_dispatcher)
    session.start(ordered, start_index=options.start_index, starred=_STARRED.get(deck_id, ()))
    session_id = uuid.uuid4().hex
    active = _ActiveSession(deck_id=deck_id, session=session)
    _register(session_id, active)
    logger.info("Opened session %s on deck %s (%s cards, mode %s)", session_id, deck_id, len(ordered), mode)
    return _session_payload(session_id, active)


@app.get("/sessions/{session_id}")
def get_session(session_id: str) -> dict[str, Any]:
    return _session_payload(session_id, _get_active(session_id))


@app.post("/sessions/{session_id}/flip")
def flip(session_id: str) -> dict[str, Any]:
    active = _get_active(session_id)
    active.session.flip()
    return _session_payload(session_id, active)


@app.post("/sessions/{session_id}/respond/{verdict}")
def respond(
    session_id: str,
    verdict: Literal["know", "learning"],
    card_id: str = Form(...),
) -> dict[str, Any]:
    """Answer the card the client is showing.

    ``card_id`` must name the current card, so a repeated submit is rejected
    with 409 instead of answering the next card.
    """
    active = _get_active(session_id)
    result = active.session.respond(verdict == "know", expected_card_id=card_id)
    if isinstance(result, SessionSummary):
        active.replaced_learning = _LAST_LEARNING.get(active.deck_id)
        active.published_learning = result.learning_card_ids
        _LAST_LEARNING[active.deck_id] = result.learning_card_ids
    return _session_payload(session_id, active)


@app.post("/sessions/{session_id}/undo")
def undo(session_id: str) -> dict[str, Any]:
    active = _get_active(session_id)
    was_completed = active.session.status == "completed"
    active.session.undo()
    if was_completed and active.session.status != "completed":
        _withdraw_learning(active)
    return _session_payload(session_id, active)


def _withdraw_learning(active: _ActiveSession) -> None:
    # Another session may have completed on the same deck since.
    if active.published_learning is None:
        return
    if _LAST_LEARNING.get(active.deck_id) == active.published_learning:
        if active.replaced_learning is None:
            _LAST_LEARNING.pop(active.deck_id, None)
        else:
            _LAST_LEARNING[active.deck_id] = active.replaced_learning
    active.replaced_learning = None
    active.published_learning = None


@app.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
def close_session(session_id: str) -> None:
    if _SESSIONS.pop(session_id, None) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown session")
    logger.info("Closed session %s", session_id)


@app.post("/sessions/{session_id}/restart")
def restart(session_id: str) -> dict[str, Any]:
    active = _get_active(session_id)
    active.session.restart_session()
    return _session_payload(session_id, active)


@app.post("/sessions/{session_id}/star/{card_id}")
def star(session_id: str, card_id: str) -> dict[str, Any]:
    active = _get_active(session_id)
    active.session.toggle_star(card_id)
    _STARRED[active.deck_id] = active.session.starred
    return _session_payload(session_id, active)


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=os.environ.get("FLIPDECK_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    uvicorn.run("flipdeck.app:app", host="127.0.0.1", port=8000, reload=True)


if __name__ == "__main__":
    main()
