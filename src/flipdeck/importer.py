from __future__ import annotations

import argparse
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Sequence

import yaml

from .db import fetch_card, init_db, insert_card
from .srs import normalize_datetime

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DeckFile:
    deck_id: str
    cards: list[dict[str, Any]] = field(default_factory=list)


def _parse_due(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return normalize_datetime(value)
    try:
        return normalize_datetime(datetime.fromisoformat(str(value)))
    except ValueError:
        logger.warning("Ignoring unreadable next_review_date %r", value)
        return None


def load_deck_file(path: Path) -> DeckFile:
    """Parse a YAML deck file: ``deck`` id plus a list of ``cards``."""

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"{path}: invalid YAML ({exc})") from exc
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")

    deck_id = str(raw.get("deck") or path.stem)
    entries = raw.get("cards") or []
    if not isinstance(entries, list):
        raise ValueError(f"{path}: 'cards' must be a list")

    cards: list[dict[str, Any]] = []
    for position, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            raise ValueError(f"{path}: card #{position} must be a mapping")
        cards.append(entry)
    return DeckFile(deck_id=deck_id, cards=cards)


def import_deck(deck: DeckFile) -> dict[str, int]:
    """Insert a deck's cards, skipping ids that already exist."""

    counts = {"inserted": 0, "skipped": 0}
    for entry in deck.cards:
        card_id = entry.get("id")
        if card_id is not None and fetch_card(str(card_id)) is not None:
            counts["skipped"] += 1
            continue
        insert_card(
            deck.deck_id,
            str(entry.get("front", "")),
            str(entry.get("back", "")),
            card_id=str(card_id) if card_id is not None else None,
            difficulty=entry.get("difficulty"),
            next_review_date=_parse_due(entry.get("next_review_date")),
        )
        counts["inserted"] += 1
    return counts


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Import YAML flashcard decks into the database")
    parser.add_argument("paths", nargs="+", type=Path, help="YAML deck files")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    logging.basicConfig(
        level=os.environ.get("FLIPDECK_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    args = _parse_args(argv)
    init_db()

    totals = {"inserted": 0, "skipped": 0}
    for path in args.paths:
        deck = load_deck_file(path)
        counts = import_deck(deck)
        logger.info(
            "Imported deck %s from %s (inserted: %s, skipped: %s)",
            deck.deck_id,
            path,
            counts["inserted"],
            counts["skipped"],
        )
        for key, value in counts.items():
            totals[key] += value
    print(
        "Processed {files} decks (inserted: {ins}, skipped: {skip})".format(
            files=len(args.paths),
            ins=totals["inserted"],
            skip=totals["skipped"],
        )
    )


if __name__ == "__main__":
    main()
