"""FastAPI application — WebSocket event endpoint plus a few REST routes."""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from thegame import errors
from thegame.cleanup import room_cleaner
from thegame.engine import Room
from thegame.game_manager import GameManager
from thegame.models import (
    CreateEvent,
    CreateRoomRequest,
    CreateRoomResponse,
    EndTurnEvent,
    JoinEvent,
    PilePingEvent,
    PlayerStats,
    PlayEvent,
    RematchEvent,
    StartPrefEvent,
)
from thegame.store import REDIS_URL, RedisStore
from thegame.timer import ping_timer
from thegame.ws_manager import ClientConnection, make_message, manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = RedisStore(REDIS_URL)
    game_manager = GameManager(store)
    app.state.game_manager = game_manager

    ping_timer.set_game_manager(game_manager)
    ping_timer.set_manager(manager)
    ping_timer.start()
    room_cleaner.set_game_manager(game_manager)
    room_cleaner.start()
    yield
    room_cleaner.stop()
    ping_timer.stop()
    await store.close()


app = FastAPI(title="The Game API", lifespan=lifespan)

# ---------- Rate Limiting ----------

_rate_limit_enabled = os.getenv("RATE_LIMIT_ENABLED", "1") != "0"

limiter = Limiter(
    key_func=get_remote_address,
    enabled=_rate_limit_enabled,
)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Please slow down."},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _game_manager() -> GameManager:
    return app.state.game_manager


# ---------- REST endpoints ----------


def _http_error(e: errors.GameError) -> HTTPException:
    if isinstance(e, errors.NotFound):
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, errors.InfrastructureFailure):
        return HTTPException(status_code=503, detail=e.message)
    return HTTPException(status_code=400, detail=e.message)


@app.get("/", response_class=PlainTextResponse)
async def health():
    return "OK"


@app.post("/api/rooms", response_model=CreateRoomResponse)
@limiter.limit("10/minute")
async def create_room(request: Request, req: CreateRoomRequest):
    try:
        room, created = await _game_manager().create_room(req.room, req.max_players)
    except errors.GameError as e:
        raise _http_error(e)
    await manager.broadcast_state(room)
    return CreateRoomResponse(room=room.code, created=created, state=room.public_state())


@app.get("/api/rooms/{code}")
@limiter.limit("30/minute")
async def get_room(request: Request, code: str):
    try:
        room = await _game_manager().get_room(code.strip())
    except errors.GameError as e:
        raise _http_error(e)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return room.public_state()


@app.get("/api/stats/{token}", response_model=PlayerStats)
@limiter.limit("30/minute")
async def get_stats(request: Request, token: str):
    try:
        return await _game_manager().get_stats(token.strip())
    except errors.GameError as e:
        raise _http_error(e)


# ---------- WebSocket ----------


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    conn = await manager.connect(ws)
    try:
        while True:
            raw = await ws.receive_text()
            await _handle_message(conn, raw)
    except WebSocketDisconnect:
        pass
    finally:
        binding = manager.unbind(conn)
        if binding is not None:
            # Runs to completion even if this handler is cancelled.
            task = asyncio.ensure_future(_report_disconnect(conn.id, *binding))
            _disconnect_tasks.add(task)
            task.add_done_callback(_disconnect_tasks.discard)
            await asyncio.shield(task)


_disconnect_tasks: set[asyncio.Task] = set()


async def _report_disconnect(conn_id: str, code: str, token: str) -> None:
    try:
        room = await _game_manager().disconnect(code, token, conn_id)
        if room is not None:
            await _publish(room)
    except Exception:
        logger.warning("Error handling disconnect for %s in %s", token, code, exc_info=True)


def _parse_message(raw: str) -> tuple[str, dict[str, Any]]:
    try:
        msg = json.loads(raw)
        msg_type = msg["type"]
        payload = msg.get("data") or {}
    except (json.JSONDecodeError, AttributeError, KeyError, TypeError):
        raise errors.ValidationError("Malformed message") from None
    if not isinstance(payload, dict):
        raise errors.ValidationError("Malformed message")
    return msg_type, payload


def _field_error(exc: PydanticValidationError) -> errors.ValidationError:
    fields = {str(err["loc"][0]) for err in exc.errors() if err["loc"]}
    if "card" in fields:
        return errors.ValidationError("Card must be a number", errors.INVALID_CARD)
    if "pile" in fields:
        return errors.ValidationError("Unknown pile", errors.INVALID_PILE)
    return errors.ValidationError(f"Invalid fields: {', '.join(sorted(fields))}")


async def _handle_message(conn: ClientConnection, raw: str) -> None:
    """Parse, validate, and dispatch one client event.

    Errors go back to the sender only; the socket stays open.
    """
    try:
        msg_type, payload = _parse_message(raw)
        entry = EVENT_HANDLERS.get(msg_type)
        if entry is None:
            raise errors.ValidationError(f"Unknown event: {msg_type!r}")
        model, handler = entry
        try:
            event = model.model_validate(payload)
        except PydanticValidationError as exc:
            raise _field_error(exc) from None
        await handler(conn, event)
    except errors.GameError as e:
        await conn.send(make_message("error_msg", e.to_dict()))
    except Exception:
        logger.exception("Unhandled error processing event on conn %s", conn.id)
        await conn.send(
            make_message("error_msg", errors.InfrastructureFailure("Server error").to_dict())
        )


# ---------- Event handlers ----------


async def _on_create(conn: ClientConnection, ev: CreateEvent) -> None:
    room, _created = await _game_manager().create_room(ev.room, ev.max_players)
    await manager.broadcast_state(room)
    if conn.room != room.code:
        await conn.send(make_message("state", room.public_state()))


async def _on_join(conn: ClientConnection, ev: JoinEvent) -> None:
    room = await _game_manager().join(ev.room, ev.token, ev.name, conn.id)
    await manager.bind(room.code, ev.token, conn)
    await _publish(room)


async def _on_start_pref(conn: ClientConnection, ev: StartPrefEvent) -> None:
    room = await _game_manager().cast_start_vote(ev.room, ev.token, ev.pref)
    await _publish(room)


async def _on_play(conn: ClientConnection, ev: PlayEvent) -> None:
    room = await _game_manager().play(ev.room, ev.token, ev.card, ev.pile)
    await _publish(room)


async def _on_end_turn(conn: ClientConnection, ev: EndTurnEvent) -> None:
    room = await _game_manager().end_turn(ev.room, ev.token)
    await _publish(room)


async def _on_pile_ping(conn: ClientConnection, ev: PilePingEvent) -> None:
    room, ts = await _game_manager().ping_pile(ev.room, ev.pile, ev.kind)
    ping_timer.schedule(room.code, ev.pile, ts)
    await manager.broadcast_state(room)


async def _on_rematch(conn: ClientConnection, ev: RematchEvent) -> None:
    room = await _game_manager().rematch(ev.room)
    await _publish(room)


EVENT_HANDLERS: dict[
    str, tuple[type[BaseModel], Callable[[ClientConnection, Any], Awaitable[None]]]
] = {
    "create": (CreateEvent, _on_create),
    "join": (JoinEvent, _on_join),
    "startPref": (StartPrefEvent, _on_start_pref),
    "play": (PlayEvent, _on_play),
    "endTurn": (EndTurnEvent, _on_end_turn),
    "pilePing": (PilePingEvent, _on_pile_ping),
    "rematch": (RematchEvent, _on_rematch),
}


# ---------- Helpers ----------


async def _publish(room: Room) -> None:
    """Public state to the whole room, then each player's hand and stats."""
    await manager.broadcast_state(room)
    await manager.push_private(room, _game_manager().get_stats)
