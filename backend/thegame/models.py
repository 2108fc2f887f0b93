"""Pydantic models for inbound events, REST requests, and player stats."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class _Event(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


# --- Inbound WebSocket events ---


class CreateEvent(_Event):
    room: str = Field(..., min_length=1, max_length=32)
    max_players: int = Field(default=2, ge=2, le=4)


class JoinEvent(_Event):
    room: str = Field(..., min_length=1, max_length=32)
    token: str = Field(..., min_length=1, max_length=64)
    name: str = Field(default="", max_length=20)


class StartPrefEvent(_Event):
    room: str = Field(..., min_length=1, max_length=32)
    token: str = Field(..., min_length=1, max_length=64)
    pref: Literal["can", "not", "cannot"]


class PlayEvent(_Event):
    room: str = Field(..., min_length=1, max_length=32)
    token: str = Field(..., min_length=1, max_length=64)
    card: int
    pile: str


class EndTurnEvent(_Event):
    room: str = Field(..., min_length=1, max_length=32)
    token: str = Field(..., min_length=1, max_length=64)


class PilePingEvent(_Event):
    room: str = Field(..., min_length=1, max_length=32)
    pile: str
    kind: Literal["have", "dont"]


class RematchEvent(_Event):
    room: str = Field(..., min_length=1, max_length=32)


# --- REST ---


class CreateRoomRequest(CreateEvent):
    pass


class CreateRoomResponse(BaseModel):
    room: str
    created: bool
    state: dict


# --- Stats ---


class PlayerStats(BaseModel):
    games_played: int = 0
    wins: int = 0
    losses: int = 0
