"""WebSocket connection registry and room broadcasts.

Each socket gets a connection id when it is accepted.  Joining binds the
socket to a (room, token) pair; a newer socket for the same pair replaces
the older one.  Sends are fire-and-forget: a failed send stops further sends
to that socket, and the disconnect is reported when its receive loop ends.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Optional

from fastapi import WebSocket

from thegame.engine import Room
from thegame.models import PlayerStats

logger = logging.getLogger(__name__)


def make_message(msg_type: str, data: Any) -> str:
    return json.dumps({"type": msg_type, "data": data})


class ClientConnection:
    """Wraps a single WebSocket connection with metadata."""

    __slots__ = ("ws", "id", "room", "token", "connected_at")

    def __init__(self, ws: WebSocket) -> None:
        self.ws = ws
        self.id = uuid.uuid4().hex
        self.room: Optional[str] = None
        self.token: Optional[str] = None
        self.connected_at = time.time()

    async def send(self, text: str) -> bool:
        """Send text, returning False on failure."""
        try:
            await self.ws.send_text(text)
            return True
        except Exception:
            return False


class ConnectionManager:
    """Tracks sockets per room and token."""

    def __init__(self) -> None:
        # room code -> {token -> ClientConnection}
        self._rooms: dict[str, dict[str, ClientConnection]] = {}

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def connect(self, ws: WebSocket) -> ClientConnection:
        await ws.accept()
        conn = ClientConnection(ws)
        logger.info("WS connect: conn=%s", conn.id)
        return conn

    async def bind(self, code: str, token: str, conn: ClientConnection) -> None:
        """Attach a socket to a seat, closing any older socket for it."""
        if conn.room is not None and (conn.room, conn.token) != (code, token):
            self.unbind(conn)

        seats = self._rooms.setdefault(code, {})
        old = seats.get(token)
        if old is not None and old is not conn:
            old.room = None
            old.token = None
            try:
                await old.ws.close(code=4001, reason="Replaced by new connection")
            except Exception:
                logger.debug("Failed closing replaced socket for %s in %s", token, code, exc_info=True)
        seats[token] = conn
        conn.room = code
        conn.token = token

    def unbind(self, conn: ClientConnection) -> Optional[tuple[str, str]]:
        """Detach a socket.  Returns the (room, token) it held, if any."""
        code, token = conn.room, conn.token
        conn.room = None
        conn.token = None
        if code is None or token is None:
            return None
        self._drop(conn, code, token)
        logger.info("WS disconnect: room=%s token=%s conn=%s", code, token, conn.id)
        return code, token

    def _drop(self, conn: ClientConnection, code: str, token: str) -> None:
        seats = self._rooms.get(code)
        if seats is not None and seats.get(token) is conn:
            del seats[token]
            if not seats:
                del self._rooms[code]

    def _drop_dead(self, conn: ClientConnection) -> None:
        """Stop sending to a socket whose send failed.

        The connection keeps its (room, token) so the endpoint still reports
        the disconnect when its receive loop ends.
        """
        if conn.room is not None and conn.token is not None:
            self._drop(conn, conn.room, conn.token)
            logger.debug("Dropped dead socket: room=%s token=%s conn=%s", conn.room, conn.token, conn.id)

    def get_connected_tokens(self, code: str) -> set[str]:
        return set(self._rooms.get(code, {}))

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send_to_token(self, code: str, token: str, message: str) -> None:
        conn = self._rooms.get(code, {}).get(token)
        if conn is not None and not await conn.send(message):
            self._drop_dead(conn)

    async def broadcast(self, code: str, message: str) -> None:
        for conn in list(self._rooms.get(code, {}).values()):
            if not await conn.send(message):
                self._drop_dead(conn)

    async def broadcast_state(self, room: Room) -> None:
        await self.broadcast(room.code, make_message("state", room.public_state()))

    async def push_private(
        self,
        room: Room,
        get_stats: Callable[[str], Awaitable[PlayerStats]],
    ) -> None:
        """Send every bound player their own hand and stats."""
        for token in self.get_connected_tokens(room.code):
            if token not in room.players:
                continue
            await self.send_to_token(room.code, token, make_message("hand", room.hand_for(token)))
            try:
                stats = await get_stats(token)
            except Exception:
                logger.debug("Failed to load stats for %s", token, exc_info=True)
                continue
            await self.send_to_token(room.code, token, make_message("stats", stats.model_dump()))


manager = ConnectionManager()
