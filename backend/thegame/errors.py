"""Game error taxonomy.

Every error carries a stable wire ``code`` that clients can switch on, plus a
human-readable message. Raising any of these implies the room was not mutated.
"""

from __future__ import annotations

from typing import Optional

INVALID_INPUT = "INVALID_INPUT"
INVALID_CARD = "INVALID_CARD"
INVALID_PILE = "INVALID_PILE"
UNKNOWN_PLAYER = "UNKNOWN_PLAYER"
NOT_YOUR_TURN = "NOT_YOUR_TURN"
ILLEGAL_MOVE = "ILLEGAL_MOVE"
WRONG_STATUS = "WRONG_STATUS"
MUST_PLAY_MORE = "MUST_PLAY_MORE"
NOT_FOUND = "NOT_FOUND"
FULL = "FULL"
SERVER_ERROR = "SERVER_ERROR"


class GameError(Exception):
    """Base exception for game-related errors."""

    default_code = SERVER_ERROR

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        self.code = code or self.default_code
        self.message = message
        super().__init__(f"[{self.code}] {message}")

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(GameError):
    """Malformed input: bad pile id, non-numeric card, card not in hand."""

    default_code = INVALID_INPUT


class RuleViolation(GameError):
    """Well-formed request the rules do not allow right now."""

    default_code = ILLEGAL_MOVE


class MustPlayMore(RuleViolation):
    default_code = MUST_PLAY_MORE

    def __init__(self, required: int) -> None:
        self.required = required
        noun = "card" if required == 1 else "cards"
        super().__init__(f"You must play at least {required} {noun} this turn")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "required": self.required}


class NotFound(GameError):
    default_code = NOT_FOUND


class CapacityError(GameError):
    default_code = FULL


class InfrastructureFailure(GameError):
    """The backing store could not be reached."""

    default_code = SERVER_ERROR
