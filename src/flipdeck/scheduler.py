"""Card ordering for a study session."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from .models import Card, StudyMode, ensure_study_mode
from .srs import normalize_datetime, normalize_difficulty

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StudyOptions:
    shuffle: bool = False
    restrict_to_ids: frozenset[str] | None = None
    start_index: int = 0  # applied by the session, never changes the order


def options_for_mode(
    mode: StudyMode | str,
    *,
    learning_ids: Iterable[str] = (),
    starred_ids: Iterable[str] = (),
    card_ids: Iterable[str] | None = None,
    start_index: int = 0,
) -> StudyOptions:
    """Translate a study mode into scheduler options.

    ``card_ids`` is an explicit selection and wins over the mode's own
    restriction.
    """
    study_mode = ensure_study_mode(mode)
    restrict: frozenset[str] | None = None
    if study_mode == "learning":
        restrict = frozenset(learning_ids)
    elif study_mode == "starred":
        restrict = frozenset(starred_ids)
    if card_ids is not None:
        restrict = frozenset(card_ids)
    return StudyOptions(
        shuffle=study_mode == "shuffle",
        restrict_to_ids=restrict,
        start_index=start_index,
    )


def _priority_key(now: datetime, position: int, card: Card) -> tuple[float, float, int]:
    overdue = (now - normalize_datetime(card.next_review_date)).total_seconds()
    return (-overdue, normalize_difficulty(card.difficulty), position)


def order_cards(
    cards: Sequence[Card],
    now: datetime,
    options: StudyOptions | None = None,
    *,
    rng: random.Random | None = None,
) -> list[Card]:
    """Return the presentation order for ``cards``.

    Longest-overdue cards come first, then harder (lower difficulty) cards,
    then the original fetch order. With ``shuffle`` the priority order is
    replaced by a uniform random permutation.
    """
    opts = options or StudyOptions()
    pool = list(cards)
    if opts.restrict_to_ids is not None:
        wanted = opts.restrict_to_ids
        pool = [card for card in pool if card.id in wanted]

    if opts.shuffle:
        (rng or random).shuffle(pool)
        return pool

    moment = normalize_datetime(now)
    ranked = sorted(enumerate(pool), key=lambda item: _priority_key(moment, item[0], item[1]))
    return [card for _, card in ranked]


def resolve_start_index(start_index: int, total_cards: int) -> int:
    """Clamp a requested start offset to the ordered sequence."""
    if 0 <= start_index < total_cards:
        return start_index
    if start_index != 0:
        logger.warning(
            "Ignoring start index %s for a session of %s cards", start_index, total_cards
        )
    return 0


__all__ = [
    "StudyOptions",
    "options_for_mode",
    "order_cards",
    "resolve_start_index",
]
