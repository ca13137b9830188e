from __future__ import annotations

import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from .models import Card
from .srs import normalize_datetime, normalize_difficulty, to_storage_difficulty

PACKAGE_ROOT = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_ROOT.parent.parent
DATA_DIR = PROJECT_ROOT / "data"
DEFAULT_DB_PATH = DATA_DIR / "flipdeck.db"
DB_PATH = Path(os.environ.get("FLIPDECK_DB_PATH", DEFAULT_DB_PATH))

logger = logging.getLogger(__name__)


@contextmanager
def connect(path: Path | None = None) -> Iterator[sqlite3.Connection]:
    """Yield a SQLite connection with foreign keys enforced."""

    connection = _open_connection(path)
    try:
        yield connection
        connection.commit()
    finally:
        connection.close()


def _open_connection(path: Path | None = None) -> sqlite3.Connection:
    db_path = Path(path or DB_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(db_path)
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA foreign_keys = ON")
    return connection


def now_iso(value: datetime | None = None) -> str:
    """Return a UTC timestamp (seconds precision) as ISO 8601."""

    return normalize_datetime(value or datetime.now(timezone.utc)).isoformat(timespec="seconds")


def _parse_timestamp(value: Any, fallback: datetime) -> datetime:
    if not value:
        return fallback
    try:
        return normalize_datetime(datetime.fromisoformat(str(value)))
    except ValueError:
        logger.warning("Unreadable timestamp %r, using %s", value, fallback.isoformat())
        return fallback


def init_db(path: Path | None = None) -> None:
    """Initialise the database schema if tables are missing."""

    with connect(path) as connection:
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS cards (
                id TEXT PRIMARY KEY,
                deck_id TEXT NOT NULL,
                front TEXT NOT NULL,
                back TEXT NOT NULL,
                difficulty INTEGER NOT NULL DEFAULT 250,
                next_review_date TEXT NOT NULL,
                review_count INTEGER NOT NULL DEFAULT 0,
                correct_count INTEGER NOT NULL DEFAULT 0,
                position INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS study_responses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                card_id TEXT NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
                deck_id TEXT NOT NULL,
                was_correct INTEGER NOT NULL,
                response_time_ms INTEGER NOT NULL,
                difficulty_before INTEGER NOT NULL,
                difficulty_after INTEGER NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_cards_deck ON cards(deck_id, position)"
        )


def _row_to_card(row: sqlite3.Row | None) -> Card | None:
    if row is None:
        return None
    created_at = _parse_timestamp(row["created_at"], datetime.now(timezone.utc))
    return Card(
        id=row["id"],
        difficulty=normalize_difficulty(row["difficulty"]),
        next_review_date=_parse_timestamp(row["next_review_date"], created_at),
        review_count=max(0, int(row["review_count"] or 0)),
        correct_count=max(0, int(row["correct_count"] or 0)),
        content={
            "deck_id": row["deck_id"],
            "front": row["front"],
            "back": row["back"],
        },
    )


def _clean(text: str | None) -> str:
    return (text or "").strip()


def insert_card(
    deck_id: str,
    front: str,
    back: str,
    *,
    card_id: str | None = None,
    difficulty: Any = None,
    next_review_date: datetime | None = None,
    now: datetime | None = None,
) -> Card:
    trimmed_front = _clean(front)
    trimmed_back = _clean(back)
    if not deck_id:
        raise ValueError("deck_id must not be empty")
    if not trimmed_front:
        raise ValueError("front must not be empty")
    if not trimmed_back:
        raise ValueError("back must not be empty")

    timestamp = now_iso(now)
    due_at = now_iso(next_review_date) if next_review_date is not None else timestamp
    new_id = card_id or uuid.uuid4().hex
    with connect() as connection:
        (position,) = connection.execute(
            "SELECT COALESCE(MAX(position), -1) + 1 FROM cards WHERE deck_id = ?",
            (deck_id,),
        ).fetchone()
        connection.execute(
            """
            INSERT INTO cards (
                id, deck_id, front, back, difficulty, next_review_date,
                review_count, correct_count, position, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, 0, 0, ?, ?, ?)
            """,
            (
                new_id,
                deck_id,
                trimmed_front,
                trimmed_back,
                to_storage_difficulty(difficulty),
                due_at,
                int(position),
                timestamp,
                timestamp,
            ),
        )
    card = fetch_card(new_id)
    if card is None:  # pragma: no cover - defensive
        raise RuntimeError("Failed to read card after insert")
    return card


def fetch_card(card_id: str) -> Card | None:
    with connect() as connection:
        row = connection.execute("SELECT * FROM cards WHERE id = ?", (card_id,)).fetchone()
    return _row_to_card(row)


def list_deck_cards(deck_id: str) -> list[Card]:
    """Return a deck's cards in fetch order (insertion order)."""

    with connect() as connection:
        rows = connection.execute(
            "SELECT * FROM cards WHERE deck_id = ? ORDER BY position, created_at",
            (deck_id,),
        ).fetchall()
    return [card for card in map(_row_to_card, rows) if card is not None]


def list_responses(card_id: str | None = None) -> list[dict[str, Any]]:
    query = "SELECT * FROM study_responses"
    params: tuple[Any, ...] = ()
    if card_id is not None:
        query += " WHERE card_id = ?"
        params = (card_id,)
    with connect() as connection:
        rows = connection.execute(query + " ORDER BY id", params).fetchall()
    return [dict(row) for row in rows]


class SqliteReviewStore:
    """Persist study responses into the local cards database."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path

    def save(
        self,
        card_id: str,
        was_correct: bool,
        response_time_ms: int,
        new_difficulty: float,
        new_next_review_date: datetime,
    ) -> None:
        difficulty_after = to_storage_difficulty(new_difficulty)
        timestamp = now_iso()
        with connect(self.path) as connection:
            row = connection.execute(
                "SELECT deck_id, difficulty FROM cards WHERE id = ?", (card_id,)
            ).fetchone()
            if row is None:
                raise LookupError(f"Unknown card: {card_id}")
            difficulty_before = to_storage_difficulty(row["difficulty"])
            connection.execute(
                """
                UPDATE cards
                SET difficulty = ?,
                    next_review_date = ?,
                    review_count = review_count + 1,
                    correct_count = correct_count + ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    difficulty_after,
                    now_iso(new_next_review_date),
                    1 if was_correct else 0,
                    timestamp,
                    card_id,
                ),
            )
            connection.execute(
                """
                INSERT INTO study_responses (
                    card_id, deck_id, was_correct, response_time_ms,
                    difficulty_before, difficulty_after, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    card_id,
                    row["deck_id"],
                    int(was_correct),
                    max(0, int(response_time_ms)),
                    difficulty_before,
                    difficulty_after,
                    timestamp,
                ),
            )
        logger.debug("Saved review for card %s (correct=%s)", card_id, was_correct)


__all__ = [
    "DB_PATH",
    "SqliteReviewStore",
    "connect",
    "fetch_card",
    "init_db",
    "insert_card",
    "list_deck_cards",
    "list_responses",
    "now_iso",
]
