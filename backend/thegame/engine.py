"""Room state machine for the cooperative climbing-card game.

Owns the authoritative per-room state: lobby formation, the start-player
vote, card plays, turn rotation, pile pings, and the latched win/lose
outcome.  Methods validate completely before touching any field, so a
raised ``GameError`` always leaves the room as it was.
"""

from __future__ import annotations

import logging
import random
import time
from enum import Enum
from typing import Any, Iterable, Optional

from thegame import errors
from thegame.cards import (
    HAND_SIZE,
    PILES,
    Deck,
    any_legal_move,
    can_play,
    fresh_piles,
    min_plays_required,
    pile_kind,
)

logger = logging.getLogger(__name__)

MIN_PLAYERS = 2
MAX_PLAYERS = 4

# Seconds a pile ping stays visible before it is cleared.
PING_TTL_SECONDS = 4.0


class RoomStatus(str, Enum):
    WAITING = "waiting"
    CHOOSING_START = "choosing_start"
    PLAYING = "playing"
    WIN = "win"
    LOSE = "lose"

    @property
    def is_terminal(self) -> bool:
        return self in (RoomStatus.WIN, RoomStatus.LOSE)


class StartPreference(str, Enum):
    CAN = "can"
    NOT = "not"

    @classmethod
    def parse(cls, value: Any) -> StartPreference:
        if value == "can":
            return cls.CAN
        if value in ("not", "cannot"):
            return cls.NOT
        raise errors.ValidationError(f"Unknown start preference: {value!r}")


class PingKind(str, Enum):
    HAVE = "have"
    DONT = "dont"


class PlayerState:
    """A seated player.  ``connection_id`` is owned by the transport."""

    def __init__(
        self,
        token: str,
        name: str,
        connected: bool = True,
        connection_id: Optional[str] = None,
    ) -> None:
        self.token = token
        self.name = name
        self.hand: list[int] = []
        self.connected = connected
        self.connection_id = connection_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "name": self.name,
            "hand": list(self.hand),
            "connected": self.connected,
            "connection_id": self.connection_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlayerState:
        ps = cls(data["token"], data["name"], data["connected"], data["connection_id"])
        ps.hand = list(data["hand"])
        return ps

    def public_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "connected": self.connected,
            "hand_count": len(self.hand),
        }


class StartVote:
    """Pre-game vote on who takes the first turn.

    A token has voted once it appears in ``prefs``; re-votes overwrite.
    """

    def __init__(self) -> None:
        self.prefs: dict[str, StartPreference] = {}

    def cast(self, token: str, pref: StartPreference) -> None:
        self.prefs[token] = pref

    def has_voted(self, token: str) -> bool:
        return token in self.prefs

    def is_complete(self, tokens: Iterable[str]) -> bool:
        tokens = list(tokens)
        return bool(tokens) and all(t in self.prefs for t in tokens)

    def pick_starter(self, tokens: Iterable[str]) -> str:
        """Random volunteer if anyone said they can start, else anyone."""
        tokens = list(tokens)
        volunteers = [t for t in tokens if self.prefs.get(t) == StartPreference.CAN]
        return random.choice(volunteers or tokens)

    def clear(self) -> None:
        self.prefs = {}

    def to_dict(self) -> dict[str, Any]:
        return {"prefs": {t: p.value for t, p in self.prefs.items()}}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StartVote:
        vote = cls()
        vote.prefs = {t: StartPreference(p) for t, p in data["prefs"].items()}
        return vote


class Room:
    """A single game room and everything dealt into it."""

    def __init__(self, code: str, max_players: int = MIN_PLAYERS) -> None:
        if not code:
            raise errors.ValidationError("Room code is required")
        if not MIN_PLAYERS <= max_players <= MAX_PLAYERS:
            raise errors.ValidationError(
                f"max_players must be between {MIN_PLAYERS} and {MAX_PLAYERS}"
            )
        self.code = code
        self.max_players = max_players
        self.status = RoomStatus.WAITING
        self.deck = Deck()
        self.piles: dict[str, int] = fresh_piles()
        # Insertion order is join order and drives turn rotation.
        self.players: dict[str, PlayerState] = {}
        self.turn_token: Optional[str] = None
        self.played_this_turn: dict[str, int] = {}
        self.start_vote = StartVote()
        # pile id -> {"kind": ..., "ts": ...}
        self.pile_pings: dict[str, dict[str, Any]] = {}
        self.updated_at: float = time.time()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def is_full(self) -> bool:
        return len(self.players) >= self.max_players

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def connected_tokens(self) -> list[str]:
        return [t for t, p in self.players.items() if p.connected]

    def hand_for(self, token: str) -> list[int]:
        p = self.players.get(token)
        return list(p.hand) if p else []

    def _require_player(self, token: str) -> PlayerState:
        p = self.players.get(token)
        if p is None:
            raise errors.ValidationError("Unknown player", errors.UNKNOWN_PLAYER)
        return p

    def _require_status(self, status: RoomStatus) -> None:
        if self.status != status:
            raise errors.RuleViolation(
                f"Room is {self.status.value}, not {status.value}",
                errors.WRONG_STATUS,
            )

    # ------------------------------------------------------------------
    # Seating and reconnection
    # ------------------------------------------------------------------

    def seat(self, token: str, name: str = "", connection_id: Optional[str] = None) -> bool:
        """Seat a new player or reattach a known one.

        Returns True when a new seat was taken.  A known token is never
        capacity-checked and never re-dealt.
        """
        if not token:
            raise errors.ValidationError("Player token is required")

        existing = self.players.get(token)
        if existing is not None:
            if name:
                existing.name = name
            existing.connected = True
            existing.connection_id = connection_id
            self._rescue_stalled_turn()
            logger.info("Player reconnected: room=%s token=%s", self.code, token)
            return False

        if self.is_full:
            raise errors.CapacityError("Room is full")

        self.players[token] = PlayerState(token, name, True, connection_id)
        logger.info(
            "Player seated: room=%s token=%s (%d/%d)",
            self.code, token, len(self.players), self.max_players,
        )
        self._start_choosing_if_ready()
        return True

    def disconnect(self, token: str, connection_id: Optional[str] = None) -> bool:
        """Mark a player disconnected; hand and seat persist.

        When ``connection_id`` is given it must match the player's current
        connection, so a superseded socket closing is ignored.
        """
        p = self.players.get(token)
        if p is None:
            return False
        if connection_id is not None and p.connection_id != connection_id:
            return False

        p.connected = False
        p.connection_id = None
        logger.info("Player disconnected: room=%s token=%s", self.code, token)

        if self.status == RoomStatus.PLAYING and self.turn_token == token:
            self.played_this_turn[token] = 0
            self.turn_token = self._next_connected(token)
        self.evaluate_outcome()
        return True

    def _rescue_stalled_turn(self) -> None:
        if self.status != RoomStatus.PLAYING or self.turn_token is None:
            return
        holder = self.players.get(self.turn_token)
        if holder is not None and not holder.connected:
            self.played_this_turn[self.turn_token] = 0
            self.turn_token = self._next_connected(self.turn_token)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _start_choosing_if_ready(self) -> bool:
        if self.status != RoomStatus.WAITING or not self.is_full:
            return False

        self.deck = Deck.shuffled()
        self.piles = fresh_piles()
        self.turn_token = None
        self.played_this_turn = {}
        self.pile_pings = {}
        self.start_vote.clear()
        for p in self.players.values():
            p.hand = self.deck.draw(HAND_SIZE)

        self.status = RoomStatus.CHOOSING_START
        logger.info("Dealt room %s: %d cards left in deck", self.code, len(self.deck))
        return True

    def cast_start_vote(self, token: str, pref: Any) -> Optional[str]:
        """Record a start preference.  Returns the starter once resolved."""
        self._require_status(RoomStatus.CHOOSING_START)
        self._require_player(token)
        preference = StartPreference.parse(pref)

        self.start_vote.cast(token, preference)
        if not self.start_vote.is_complete(self.players):
            return None

        starter = self.start_vote.pick_starter(self.players)
        self.status = RoomStatus.PLAYING
        self.turn_token = starter
        self.played_this_turn = {}
        logger.info("Room %s started, first turn: %s", self.code, starter)
        return starter

    def rematch(self) -> None:
        """Back to the lobby with the same seats; deal again if full."""
        self.status = RoomStatus.WAITING
        self.deck = Deck()
        self.piles = fresh_piles()
        self.turn_token = None
        self.played_this_turn = {}
        self.pile_pings = {}
        self.start_vote.clear()
        for p in self.players.values():
            p.hand = []
        logger.info("Rematch in room %s", self.code)
        self._start_choosing_if_ready()

    # ------------------------------------------------------------------
    # Play
    # ------------------------------------------------------------------

    def play_card(self, token: str, card: Any, pile_id: str) -> None:
        self._require_status(RoomStatus.PLAYING)
        if self.turn_token != token:
            raise errors.RuleViolation("Not your turn", errors.NOT_YOUR_TURN)
        p = self._require_player(token)

        if isinstance(card, bool) or not isinstance(card, int):
            raise errors.ValidationError("Card must be a number", errors.INVALID_CARD)
        if card not in p.hand:
            raise errors.ValidationError("Card is not in your hand", errors.INVALID_CARD)
        kind = pile_kind(pile_id)
        if kind is None:
            raise errors.ValidationError(f"Unknown pile: {pile_id!r}", errors.INVALID_PILE)
        if not can_play(card, kind, self.piles[pile_id]):
            raise errors.RuleViolation(
                f"{card} cannot go on {pile_id} ({self.piles[pile_id]})",
                errors.ILLEGAL_MOVE,
            )

        self.piles[pile_id] = card
        p.hand.remove(card)
        self.played_this_turn[token] = self.played_this_turn.get(token, 0) + 1
        self.evaluate_outcome()

    def end_turn(self, token: str) -> None:
        """Refill the holder's hand and pass the turn on.

        Rejected while fewer than the required cards were played, unless the
        holder has no legal move left (pass rule).
        """
        self._require_status(RoomStatus.PLAYING)
        if self.turn_token != token:
            raise errors.RuleViolation("Not your turn", errors.NOT_YOUR_TURN)
        p = self._require_player(token)

        required = min_plays_required(len(self.deck))
        played = self.played_this_turn.get(token, 0)
        if played < required and any_legal_move(p.hand, self.piles):
            raise errors.MustPlayMore(required)

        p.hand.extend(self.deck.draw(HAND_SIZE - len(p.hand)))
        self.played_this_turn[token] = 0

        if self.evaluate_outcome() is None:
            self.turn_token = self._next_connected(token)

    def _next_connected(self, token: str) -> str:
        """Next connected token after ``token`` in join order, wrapping.

        Falls back to ``token`` itself when nobody else is connected.
        """
        tokens = list(self.players)
        if token not in tokens:
            return tokens[0] if tokens else token
        idx = tokens.index(token)
        n = len(tokens)
        for offset in range(1, n):
            cand = tokens[(idx + offset) % n]
            if self.players[cand].connected:
                return cand
        return token

    def evaluate_outcome(self) -> Optional[RoomStatus]:
        """Latch WIN or LOSE.  Returns the status only when it was just set.

        Skipped outside ``playing`` (so terminal rooms are never re-judged)
        and while nobody is connected.
        """
        if self.status != RoomStatus.PLAYING:
            return None

        hands_empty = all(not p.hand for p in self.players.values())
        if not self.deck and hands_empty:
            self.status = RoomStatus.WIN
            logger.info("Room %s won", self.code)
            return self.status

        connected = [p for p in self.players.values() if p.connected]
        if not connected:
            return None
        if not any(any_legal_move(p.hand, self.piles) for p in connected):
            self.status = RoomStatus.LOSE
            logger.info("Room %s lost: no legal moves left", self.code)
            return self.status
        return None

    # ------------------------------------------------------------------
    # Pile pings
    # ------------------------------------------------------------------

    def ping_pile(self, pile_id: str, kind: Any, now: Optional[float] = None) -> float:
        """Overwrite the ping on a pile.  Returns its timestamp."""
        if pile_id not in PILES:
            raise errors.ValidationError(f"Unknown pile: {pile_id!r}", errors.INVALID_PILE)
        try:
            ping_kind = PingKind(kind)
        except ValueError:
            raise errors.ValidationError(f"Unknown ping kind: {kind!r}") from None
        ts = time.time() if now is None else now
        self.pile_pings[pile_id] = {"kind": ping_kind.value, "ts": ts}
        return ts

    def clear_ping(self, pile_id: str, ts: float) -> bool:
        """Compare-and-clear: only removes the ping stamped with ``ts``."""
        ping = self.pile_pings.get(pile_id)
        if ping is None or ping["ts"] != ts:
            return False
        del self.pile_pings[pile_id]
        return True

    def expire_pings(self, now: Optional[float] = None) -> list[str]:
        """Drop every ping older than PING_TTL_SECONDS."""
        now = time.time() if now is None else now
        expired = [
            pile_id
            for pile_id, ping in self.pile_pings.items()
            if now - ping["ts"] >= PING_TTL_SECONDS
        ]
        for pile_id in expired:
            del self.pile_pings[pile_id]
        return expired

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def public_state(self) -> dict[str, Any]:
        """Everything every client may see.  Hands are reported as counts."""
        return {
            "room": self.code,
            "status": self.status.value,
            "max_players": self.max_players,
            "piles": dict(self.piles),
            "deck_count": len(self.deck),
            "turn_token": self.turn_token,
            "played_this_turn": dict(self.played_this_turn),
            "min_plays": min_plays_required(len(self.deck)),
            "pile_pings": {k: dict(v) for k, v in self.pile_pings.items()},
            "start": {
                "voted": [t for t in self.players if self.start_vote.has_voted(t)],
                "prefs": self.start_vote.to_dict()["prefs"],
            },
            "players": {t: p.public_dict() for t, p in self.players.items()},
        }

    # ------------------------------------------------------------------
    # Serialization (for store persistence)
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "max_players": self.max_players,
            "status": self.status.value,
            "deck": self.deck.to_list(),
            "piles": dict(self.piles),
            "players": [p.to_dict() for p in self.players.values()],
            "turn_token": self.turn_token,
            "played_this_turn": dict(self.played_this_turn),
            "start_vote": self.start_vote.to_dict(),
            "pile_pings": {k: dict(v) for k, v in self.pile_pings.items()},
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Room:
        room = cls(data["code"], data["max_players"])
        room.status = RoomStatus(data["status"])
        room.deck = Deck.from_list(data["deck"])
        room.piles = dict(data["piles"])
        room.players = {}
        for p in data["players"]:
            ps = PlayerState.from_dict(p)
            room.players[ps.token] = ps
        room.turn_token = data["turn_token"]
        room.played_this_turn = dict(data["played_this_turn"])
        room.start_vote = StartVote.from_dict(data["start_vote"])
        room.pile_pings = {k: dict(v) for k, v in data["pile_pings"].items()}
        room.updated_at = data["updated_at"]
        return room
