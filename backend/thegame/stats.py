"""Per-player win/loss counters.

Stats are keyed by player token and stored apart from rooms with a longer
expiry, so they survive rematches and room expiry.  Updates for a token are
serialized so two rooms finishing at once cannot lose an increment.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Iterable

from thegame.engine import RoomStatus
from thegame.models import PlayerStats
from thegame.store import RoomStore

logger = logging.getLogger(__name__)


class StatsTracker:
    def __init__(self, store: RoomStore) -> None:
        self._store = store
        # An entry lives only while some coroutine holds or waits on it.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _get_lock(self, token: str) -> asyncio.Lock:
        lock = self._locks.get(token)
        if lock is None:
            lock = self._locks[token] = asyncio.Lock()
        return lock

    async def get(self, token: str) -> PlayerStats:
        data = await self._store.load_stats(token)
        if data is None:
            return PlayerStats()
        return PlayerStats.model_validate(data)

    async def record_outcome(self, tokens: Iterable[str], outcome: RoomStatus) -> None:
        """Count one finished game for every token seated at the latch."""
        if not outcome.is_terminal:
            raise ValueError(f"Not a final outcome: {outcome.value}")

        for token in tokens:
            async with self._get_lock(token):
                stats = await self.get(token)
                stats.games_played += 1
                if outcome == RoomStatus.WIN:
                    stats.wins += 1
                else:
                    stats.losses += 1
                await self._store.store_stats(token, stats.model_dump())
            logger.debug("Stats updated for %s: %s", token, stats)
