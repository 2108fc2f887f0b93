"""Deck, piles, and move legality."""

from __future__ import annotations

import random
from enum import Enum
from typing import Iterable, Mapping, Optional

MIN_CARD = 2
MAX_CARD = 99
HAND_SIZE = 6
DECADE = 10


class PileKind(str, Enum):
    ASCENDING = "ascending"
    DESCENDING = "descending"


# pile id -> (kind, sentinel start value)
PILES: dict[str, tuple[PileKind, int]] = {
    "up1": (PileKind.ASCENDING, 1),
    "up2": (PileKind.ASCENDING, 1),
    "down1": (PileKind.DESCENDING, 100),
    "down2": (PileKind.DESCENDING, 100),
}


def fresh_piles() -> dict[str, int]:
    """Pile tops reset to their sentinel values."""
    return {pile_id: start for pile_id, (_kind, start) in PILES.items()}


def pile_kind(pile_id: str) -> Optional[PileKind]:
    entry = PILES.get(pile_id)
    return entry[0] if entry else None


def new_deck() -> list[int]:
    """Return a uniformly shuffled permutation of MIN_CARD..MAX_CARD."""
    cards = list(range(MIN_CARD, MAX_CARD + 1))
    random.shuffle(cards)
    return cards


def can_play(card: int, kind: PileKind, top: int) -> bool:
    """Ascending piles take higher cards, descending piles lower ones.

    A card exactly one decade back (top - 10 ascending, top + 10 descending)
    is always accepted.
    """
    if kind == PileKind.ASCENDING:
        return card > top or card == top - DECADE
    return card < top or card == top + DECADE


def min_plays_required(deck_size: int) -> int:
    return 2 if deck_size > 0 else 1


def any_legal_move(hand: Iterable[int], piles: Mapping[str, int]) -> bool:
    for card in hand:
        for pile_id, top in piles.items():
            if can_play(card, PILES[pile_id][0], top):
                return True
    return False


class Deck:
    """Draw pile with pop-from-the-end semantics."""

    def __init__(self, cards: Optional[list[int]] = None) -> None:
        self._cards: list[int] = list(cards) if cards is not None else []

    @classmethod
    def shuffled(cls) -> Deck:
        return cls(new_deck())

    def draw(self, n: int = 1) -> list[int]:
        """Draw up to n cards; fewer are returned if the deck runs short."""
        drawn: list[int] = []
        while len(drawn) < n and self._cards:
            drawn.append(self._cards.pop())
        return drawn

    def __len__(self) -> int:
        return len(self._cards)

    def to_list(self) -> list[int]:
        return list(self._cards)

    @classmethod
    def from_list(cls, cards: list[int]) -> Deck:
        return cls(cards)
