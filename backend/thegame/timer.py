"""Pile ping expiry — background task that clears pings after PING_TTL_SECONDS.

Expiry is a compare-and-clear against the ping's timestamp, so a newer ping
on the same pile is never erased by the older one's deadline.  Rooms also
drop stale pings on every load, so pings still expire after a restart.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Optional

from thegame.engine import PING_TTL_SECONDS

if TYPE_CHECKING:
    from thegame.game_manager import GameManager
    from thegame.ws_manager import ConnectionManager

logger = logging.getLogger(__name__)

# How often the timer loop checks for expired pings (seconds)
TICK_INTERVAL = 0.5


class PingTimer:
    """Tracks ping deadlines and clears them from a single asyncio loop."""

    def __init__(self) -> None:
        self._task: asyncio.Task | None = None
        # (room code, pile id) -> (deadline, ping timestamp)
        self._deadlines: dict[tuple[str, str], tuple[float, float]] = {}
        self._game_manager: Optional[GameManager] = None
        self._manager: Optional[ConnectionManager] = None

    def set_game_manager(self, game_manager: "GameManager") -> None:
        self._game_manager = game_manager

    def set_manager(self, manager: "ConnectionManager") -> None:
        """Inject the WebSocket connection manager (avoids circular import)."""
        self._manager = manager

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("Ping timer started")

    def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("Ping timer stopped")

    def schedule(self, code: str, pile_id: str, ts: float) -> None:
        """Register expiry for the ping stamped ``ts``, replacing any older one."""
        self._deadlines[(code, pile_id)] = (ts + PING_TTL_SECONDS, ts)

    def pending(self) -> dict[tuple[str, str], tuple[float, float]]:
        return dict(self._deadlines)

    async def run_due(self, now: float | None = None) -> int:
        """Expire every ping whose deadline has passed.  Returns how many cleared."""
        now = time.time() if now is None else now
        due = [
            (key, ts)
            for key, (deadline, ts) in list(self._deadlines.items())
            if now >= deadline
        ]
        cleared = 0
        for (code, pile_id), ts in due:
            if self._deadlines.get((code, pile_id), (None, None))[1] == ts:
                del self._deadlines[(code, pile_id)]
            try:
                if await self._expire(code, pile_id, ts):
                    cleared += 1
            except Exception:
                logger.exception("Ping expiry error for room %s", code)
        return cleared

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(TICK_INTERVAL)
                await self.run_due()
        except asyncio.CancelledError:
            pass

    async def _expire(self, code: str, pile_id: str, ts: float) -> bool:
        if self._game_manager is None:
            return False
        room = await self._game_manager.expire_ping(code, pile_id, ts)
        if room is None:
            return False
        logger.debug("Ping expired: room=%s pile=%s", code, pile_id)
        if self._manager is not None:
            await self._manager.broadcast_state(room)
        return True


# Singleton
ping_timer = PingTimer()
