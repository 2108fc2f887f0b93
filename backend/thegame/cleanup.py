"""Idle room cleanup — background task that reclaims abandoned rooms.

A room is reclaimed once none of its players has been connected for
EMPTY_ROOM_GRACE_SECONDS since its last write.  Rooms with anyone connected
are never touched; every stored room also expires on its own after
ROOM_TTL_SECONDS without writes.  Player stats live under separate keys and
are not affected.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from thegame.game_manager import GameManager

logger = logging.getLogger(__name__)

# How often the cleanup loop runs (seconds).
CLEANUP_INTERVAL: float = float(os.getenv("CLEANUP_INTERVAL_SECONDS", "300"))

# How long a room with nobody connected is kept (seconds).
EMPTY_ROOM_GRACE: float = float(os.getenv("EMPTY_ROOM_GRACE_SECONDS", "1800"))


async def cleanup_idle_rooms(
    game_manager: "GameManager", grace_seconds: float = EMPTY_ROOM_GRACE
) -> dict[str, list[str]]:
    """Scan all rooms and delete idle ones.

    Returns a dict with 'deleted' (codes removed) and 'kept' (codes that
    were checked but retained).
    """
    deleted: list[str] = []
    kept: list[str] = []

    for code in await game_manager.list_room_codes():
        try:
            if await game_manager.reclaim_if_idle(code, grace_seconds):
                deleted.append(code)
            else:
                kept.append(code)
        except Exception:
            logger.exception("Error checking room %s for cleanup", code)
            kept.append(code)

    return {"deleted": deleted, "kept": kept}


class RoomCleaner:
    """Background asyncio task that periodically reclaims idle rooms."""

    def __init__(self) -> None:
        self._task: asyncio.Task | None = None
        self._game_manager: Optional[GameManager] = None

    def set_game_manager(self, game_manager: "GameManager") -> None:
        self._game_manager = game_manager

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("Room cleaner started (interval=%ds)", int(CLEANUP_INTERVAL))

    def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("Room cleaner stopped")

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(CLEANUP_INTERVAL)
                if self._game_manager is None:
                    continue
                try:
                    result = await cleanup_idle_rooms(self._game_manager)
                    if result["deleted"]:
                        logger.info(
                            "Cleanup pass: reclaimed %d room(s): %s",
                            len(result["deleted"]),
                            ", ".join(result["deleted"]),
                        )
                    else:
                        logger.debug("Cleanup pass: nothing to reclaim")
                except Exception:
                    logger.exception("Cleanup pass failed")
        except asyncio.CancelledError:
            pass


# Singleton
room_cleaner = RoomCleaner()
