"""Game manager — serialized load / mutate / save of rooms.

Every operation that changes a room runs under that room's lock, so events
for the same room never interleave between load and save.  Rooms that reach
a final outcome have their players' stats recorded exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from typing import Any, Callable, Optional, TypeVar

from thegame import errors
from thegame.engine import Room
from thegame.models import PlayerStats
from thegame.stats import StatsTracker
from thegame.store import RoomStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GameManager:
    def __init__(
        self,
        store: RoomStore,
        stats: Optional[StatsTracker] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.stats = stats or StatsTracker(store)
        self._clock = clock
        # An entry lives only while some coroutine holds or waits on it.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _get_lock(self, code: str) -> asyncio.Lock:
        lock = self._locks.get(code)
        if lock is None:
            lock = self._locks[code] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _load(self, code: str) -> Optional[Room]:
        data = await self.store.load_room(code)
        if data is None:
            return None
        return Room.from_dict(data)

    async def _load_existing(self, code: str) -> Room:
        room = await self._load(code)
        if room is None:
            raise errors.NotFound("Room does not exist (create it first)")
        return room

    async def _save(self, room: Room) -> None:
        room.updated_at = self._clock()
        await self.store.store_room(room.code, room.to_dict())

    async def _mutate(self, code: str, action: Callable[[Room], T]) -> tuple[Room, T]:
        """Apply ``action`` to the stored room under its lock.

        If the action raises, nothing is saved.  Stats are recorded when the
        action moved the room into a final status.
        """
        async with self._get_lock(code):
            room = await self._load_existing(code)
            room.expire_pings(self._clock())
            was_terminal = room.is_terminal

            result = action(room)

            await self._save(room)
            if room.is_terminal and not was_terminal:
                logger.info("Room %s finished: %s", code, room.status.value)
                await self.stats.record_outcome(list(room.players), room.status)
        return room, result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_room(self, code: str) -> Optional[Room]:
        room = await self._load(code)
        if room is not None:
            room.expire_pings(self._clock())
        return room

    async def get_stats(self, token: str) -> PlayerStats:
        return await self.stats.get(token)

    async def list_room_codes(self) -> list[str]:
        return await self.store.list_room_codes()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_room(self, code: str, max_players: int = 2) -> tuple[Room, bool]:
        """Create the room if absent.  Returns (room, created)."""
        async with self._get_lock(code):
            existing = await self._load(code)
            if existing is not None:
                return existing, False
            room = Room(code, max_players)
            await self._save(room)
        logger.info("Room created: %s (max %d players)", code, max_players)
        return room, True

    async def join(
        self, code: str, token: str, name: str = "", connection_id: Optional[str] = None
    ) -> Room:
        room, _ = await self._mutate(code, lambda r: r.seat(token, name, connection_id))
        return room

    async def cast_start_vote(self, code: str, token: str, pref: Any) -> Room:
        room, _ = await self._mutate(code, lambda r: r.cast_start_vote(token, pref))
        return room

    async def play(self, code: str, token: str, card: Any, pile_id: str) -> Room:
        room, _ = await self._mutate(code, lambda r: r.play_card(token, card, pile_id))
        return room

    async def end_turn(self, code: str, token: str) -> Room:
        room, _ = await self._mutate(code, lambda r: r.end_turn(token))
        return room

    async def ping_pile(self, code: str, pile_id: str, kind: Any) -> tuple[Room, float]:
        now = self._clock()
        return await self._mutate(code, lambda r: r.ping_pile(pile_id, kind, now))

    async def expire_ping(self, code: str, pile_id: str, ts: float) -> Optional[Room]:
        """Clear a ping if it is still the one stamped ``ts``.

        Returns the room when something was cleared, else None.
        """
        async with self._get_lock(code):
            room = await self._load(code)
            if room is None or not room.clear_ping(pile_id, ts):
                return None
            await self._save(room)
        return room

    async def rematch(self, code: str) -> Room:
        room, _ = await self._mutate(code, lambda r: r.rematch())
        return room

    async def disconnect(
        self, code: str, token: str, connection_id: Optional[str] = None
    ) -> Optional[Room]:
        """Mark a player's connection gone.  Missing rooms are ignored."""
        async with self._get_lock(code):
            room = await self._load(code)
            if room is None:
                return None
            was_terminal = room.is_terminal
            if not room.disconnect(token, connection_id):
                return None
            await self._save(room)
            if room.is_terminal and not was_terminal:
                await self.stats.record_outcome(list(room.players), room.status)
        return room

    async def reclaim_if_idle(self, code: str, grace_seconds: float) -> bool:
        """Delete a room nobody has been connected to for ``grace_seconds``."""
        async with self._get_lock(code):
            room = await self._load(code)
            if room is None:
                return False
            if room.connected_tokens():
                return False
            if self._clock() - room.updated_at < grace_seconds:
                return False
            await self.store.delete_room(code)
        logger.info("Reclaimed idle room %s", code)
        return True
