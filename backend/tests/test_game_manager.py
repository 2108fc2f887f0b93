"""Tests for game_manager — serialized room operations on an in-memory store."""

from __future__ import annotations

import asyncio
import gc
from unittest.mock import AsyncMock, patch

import pytest

from thegame import errors
from thegame.engine import PING_TTL_SECONDS, Room, RoomStatus
from thegame.game_manager import GameManager
from thegame.models import PlayerStats
from thegame.store import MemoryStore


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class YieldingStore(MemoryStore):
    """Gives the event loop a chance to interleave between load and save."""

    async def load_room(self, code):
        data = await super().load_room(code)
        await asyncio.sleep(0)
        return data

    async def store_room(self, code, data):
        await asyncio.sleep(0)
        await super().store_room(code, data)


def _make_gm(store=None, clock=None) -> GameManager:
    return GameManager(store or MemoryStore(), clock=clock or FakeClock())


async def _seated(gm: GameManager, code: str = "R1", n: int = 2) -> Room:
    await gm.create_room(code, n)
    room = None
    for i in range(n):
        room = await gm.join(code, f"t{i}", f"Player{i}", f"c{i}")
    return room


async def _playing(gm: GameManager, code: str = "R1", starter: str = "t0", n: int = 2) -> Room:
    await _seated(gm, code, n)
    room = None
    with patch("thegame.engine.random.choice", return_value=starter):
        for i in range(n):
            room = await gm.cast_start_vote(code, f"t{i}", "can")
    return room


async def _rewrite(gm: GameManager, code: str, **fields) -> None:
    """Force stored state, e.g. hands={"t0": [50]}, deck=[], piles={...}."""
    data = await gm.store.load_room(code)
    if "hands" in fields:
        for p in data["players"]:
            if p["token"] in fields["hands"]:
                p["hand"] = list(fields["hands"][p["token"]])
    if "deck" in fields:
        data["deck"] = list(fields["deck"])
    if "piles" in fields:
        data["piles"] = dict(fields["piles"])
    await gm.store.store_room(code, data)


STUCK_PILES = {"up1": 90, "up2": 90, "down1": 10, "down2": 10}


# ---------------------------------------------------------------------------
# Create / join
# ---------------------------------------------------------------------------

class TestCreateRoom:
    async def test_creates_once(self):
        gm = _make_gm()
        room, created = await gm.create_room("R1", 3)
        assert created
        assert room.max_players == 3
        assert room.status == RoomStatus.WAITING

        again, created = await gm.create_room("R1", 4)
        assert not created
        assert again.max_players == 3

    async def test_invalid_size(self):
        gm = _make_gm()
        with pytest.raises(errors.ValidationError):
            await gm.create_room("R1", 5)
        assert await gm.get_room("R1") is None

    async def test_listed(self):
        gm = _make_gm()
        await gm.create_room("A", 2)
        await gm.create_room("B", 2)
        assert sorted(await gm.list_room_codes()) == ["A", "B"]


class TestJoin:
    async def test_join_missing_room(self):
        gm = _make_gm()
        with pytest.raises(errors.NotFound) as exc:
            await gm.join("nope", "t0", "Alice")
        assert exc.value.code == errors.NOT_FOUND
        assert await gm.get_room("nope") is None

    async def test_filling_deals(self):
        gm = _make_gm()
        room = await _seated(gm)
        assert room.status == RoomStatus.CHOOSING_START
        stored = await gm.get_room("R1")
        assert stored.deck.to_list() == room.deck.to_list()
        assert len(stored.players["t1"].hand) == 6

    async def test_full_room_rejects_newcomer(self):
        gm = _make_gm()
        await _seated(gm)
        before = (await gm.store.load_room("R1"))
        with pytest.raises(errors.CapacityError) as exc:
            await gm.join("R1", "t9", "Eve")
        assert exc.value.code == errors.FULL
        assert await gm.store.load_room("R1") == before

    async def test_rejoin_keeps_hand(self):
        gm = _make_gm()
        room = await _seated(gm)
        hand = room.players["t0"].hand
        await gm.disconnect("R1", "t0", "c0")
        room = await gm.join("R1", "t0", "", "c0b")
        assert room.players["t0"].connected
        assert room.players["t0"].hand == hand

    async def test_save_stamps_updated_at(self):
        clock = FakeClock(5000.0)
        gm = _make_gm(clock=clock)
        await gm.create_room("R1", 2)
        clock.now = 5100.0
        room = await gm.join("R1", "t0", "Alice")
        assert room.updated_at == 5100.0


# ---------------------------------------------------------------------------
# Play
# ---------------------------------------------------------------------------

class TestPlay:
    async def test_full_scenario(self):
        gm = _make_gm()
        await gm.create_room("R1", 2)
        await gm.join("R1", "t0", "A")
        await gm.join("R1", "t1", "B")
        await gm.cast_start_vote("R1", "t0", "can")
        with patch("thegame.engine.random.choice", return_value="t0"):
            room = await gm.cast_start_vote("R1", "t1", "not")
        assert room.status == RoomStatus.PLAYING
        assert room.turn_token == "t0"

        await _rewrite(gm, "R1", hands={"t0": [5, 3, 60, 70, 80, 90]})
        room = await gm.play("R1", "t0", 5, "up1")
        assert room.piles["up1"] == 5

        with pytest.raises(errors.RuleViolation) as exc:
            await gm.play("R1", "t0", 3, "up1")
        assert exc.value.code == errors.ILLEGAL_MOVE

    async def test_error_leaves_store_untouched(self):
        gm = _make_gm()
        await _playing(gm, starter="t0")
        before = await gm.store.load_room("R1")
        with pytest.raises(errors.RuleViolation):
            await gm.end_turn("R1", "t1")
        with pytest.raises(errors.MustPlayMore):
            await gm.end_turn("R1", "t0")
        assert await gm.store.load_room("R1") == before

    async def test_end_turn_advances(self):
        gm = _make_gm()
        await _playing(gm, starter="t0")
        await _rewrite(gm, "R1", hands={"t0": [10, 20, 30]})
        await gm.play("R1", "t0", 10, "up1")
        await gm.play("R1", "t0", 20, "up1")
        room = await gm.end_turn("R1", "t0")
        assert room.turn_token == "t1"
        assert len(room.players["t0"].hand) == 6

    async def test_rematch(self):
        gm = _make_gm()
        await _playing(gm)
        room = await gm.rematch("R1")
        assert room.status == RoomStatus.CHOOSING_START
        assert room.turn_token is None


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class TestSerialization:
    async def test_concurrent_joins_never_overfill(self):
        gm = _make_gm(store=YieldingStore())
        await gm.create_room("R1", 2)
        results = await asyncio.gather(
            *(gm.join("R1", f"t{i}", f"P{i}") for i in range(4)),
            return_exceptions=True,
        )
        ok = [r for r in results if isinstance(r, Room)]
        full = [r for r in results if isinstance(r, errors.CapacityError)]
        assert len(ok) == 2
        assert len(full) == 2
        room = await gm.get_room("R1")
        assert len(room.players) == 2
        assert room.status == RoomStatus.CHOOSING_START

    async def test_concurrent_plays_apply_once(self):
        gm = _make_gm(store=YieldingStore())
        await _playing(gm, starter="t0")
        await _rewrite(gm, "R1", hands={"t0": [50, 60]})
        results = await asyncio.gather(
            gm.play("R1", "t0", 50, "up1"),
            gm.play("R1", "t0", 50, "up2"),
            return_exceptions=True,
        )
        assert sum(isinstance(r, Room) for r in results) == 1
        assert sum(isinstance(r, errors.ValidationError) for r in results) == 1
        room = await gm.get_room("R1")
        assert room.players["t0"].hand == [60]
        assert room.played_this_turn["t0"] == 1

    async def test_missing_rooms_leave_no_locks(self):
        gm = _make_gm()
        for i in range(20):
            with pytest.raises(errors.NotFound):
                await gm.join(f"nope{i}", "t0", "A")
            with pytest.raises(errors.NotFound):
                await gm.ping_pile(f"nope{i}", "up1", "have")
        gc.collect()
        assert len(gm._locks) == 0

    async def test_lock_dropped_after_use(self):
        clock = FakeClock()
        gm = _make_gm(clock=clock)
        await gm.create_room("R1", 2)
        clock.now += 120
        assert await gm.reclaim_if_idle("R1", 60)
        gc.collect()
        assert "R1" not in gm._locks

    async def test_rooms_do_not_share_a_lock(self):
        gm = _make_gm()
        assert gm._get_lock("A") is not gm._get_lock("B")
        assert gm._get_lock("A") is gm._get_lock("A")


# ---------------------------------------------------------------------------
# Outcome and stats
# ---------------------------------------------------------------------------

class TestOutcomeStats:
    async def test_win_records_stats_once(self):
        gm = _make_gm()
        await _playing(gm, starter="t0")
        await _rewrite(gm, "R1", hands={"t0": [50], "t1": []}, deck=[])
        room = await gm.play("R1", "t0", 50, "up1")
        assert room.status == RoomStatus.WIN

        for token in ("t0", "t1"):
            assert await gm.get_stats(token) == PlayerStats(games_played=1, wins=1)

        # further events on a finished room do not count again
        await gm.join("R1", "t0", "")
        await gm.ping_pile("R1", "up1", "have")
        assert (await gm.get_stats("t0")).games_played == 1

    async def test_lose_records_losses(self):
        gm = _make_gm()
        await _playing(gm, starter="t0")
        await _rewrite(
            gm, "R1",
            piles={**STUCK_PILES, "up1": 1},
            hands={"t0": [50], "t1": [30]},
            deck=[],
        )
        room = await gm.play("R1", "t0", 50, "up1")
        assert room.status == RoomStatus.LOSE
        for token in ("t0", "t1"):
            assert await gm.get_stats(token) == PlayerStats(games_played=1, losses=1)

    async def test_rematch_then_second_game(self):
        gm = _make_gm()
        await _playing(gm, starter="t0")
        await _rewrite(gm, "R1", hands={"t0": [50], "t1": []}, deck=[])
        await gm.play("R1", "t0", 50, "up1")

        await gm.rematch("R1")
        await _rewrite(gm, "R1", hands={"t0": [50], "t1": []}, deck=[])
        with patch("thegame.engine.random.choice", return_value="t0"):
            await gm.cast_start_vote("R1", "t0", "can")
            await gm.cast_start_vote("R1", "t1", "can")
        await gm.play("R1", "t0", 50, "up1")
        assert (await gm.get_stats("t1")).wins == 2

    async def test_disconnect_can_latch_loss(self):
        gm = _make_gm()
        await _playing(gm, starter="t0")
        await _rewrite(gm, "R1", piles=STUCK_PILES, hands={"t0": [50], "t1": [95]}, deck=[40])
        room = await gm.disconnect("R1", "t1", "c1")
        assert room.status == RoomStatus.LOSE
        assert (await gm.get_stats("t1")).losses == 1

    async def test_stats_survive_room_deletion(self):
        gm = _make_gm()
        await _playing(gm, starter="t0")
        await _rewrite(gm, "R1", hands={"t0": [50], "t1": []}, deck=[])
        await gm.play("R1", "t0", 50, "up1")
        await gm.store.delete_room("R1")
        assert (await gm.get_stats("t0")).wins == 1


# ---------------------------------------------------------------------------
# Disconnect
# ---------------------------------------------------------------------------

class TestDisconnect:
    async def test_missing_room_ignored(self):
        gm = _make_gm()
        assert await gm.disconnect("nope", "t0") is None

    async def test_stale_connection_ignored(self):
        gm = _make_gm()
        await _seated(gm)
        await gm.join("R1", "t0", "", "newer")
        assert await gm.disconnect("R1", "t0", "c0") is None
        assert (await gm.get_room("R1")).players["t0"].connected

    async def test_holder_disconnect_passes_turn(self):
        gm = _make_gm()
        await _playing(gm, starter="t0")
        room = await gm.disconnect("R1", "t0", "c0")
        assert room.turn_token == "t1"
        assert not room.players["t0"].connected


# ---------------------------------------------------------------------------
# Pings
# ---------------------------------------------------------------------------

class TestPings:
    async def test_ping_stamped_with_clock(self):
        clock = FakeClock(2000.0)
        gm = _make_gm(clock=clock)
        await gm.create_room("R1", 2)
        room, ts = await gm.ping_pile("R1", "down1", "have")
        assert ts == 2000.0
        assert room.pile_pings["down1"] == {"kind": "have", "ts": 2000.0}

    async def test_ping_missing_room(self):
        gm = _make_gm()
        with pytest.raises(errors.NotFound):
            await gm.ping_pile("nope", "up1", "have")

    async def test_expire_matching_ping(self):
        gm = _make_gm()
        await gm.create_room("R1", 2)
        _, ts = await gm.ping_pile("R1", "up1", "have")
        room = await gm.expire_ping("R1", "up1", ts)
        assert room is not None
        assert room.pile_pings == {}

    async def test_stale_expiry_keeps_newer_ping(self):
        clock = FakeClock(100.0)
        gm = _make_gm(clock=clock)
        await gm.create_room("R1", 2)
        _, first = await gm.ping_pile("R1", "up1", "have")
        clock.now = 102.0
        _, second = await gm.ping_pile("R1", "up1", "dont")

        assert await gm.expire_ping("R1", "up1", first) is None
        room = await gm.get_room("R1")
        assert room.pile_pings["up1"] == {"kind": "dont", "ts": second}

    async def test_old_pings_dropped_on_load(self):
        clock = FakeClock(100.0)
        gm = _make_gm(clock=clock)
        await gm.create_room("R1", 2)
        await gm.ping_pile("R1", "up1", "have")
        clock.now = 100.0 + PING_TTL_SECONDS
        room = await gm.get_room("R1")
        assert room.pile_pings == {}

    async def test_expire_missing_room(self):
        gm = _make_gm()
        assert await gm.expire_ping("nope", "up1", 1.0) is None


# ---------------------------------------------------------------------------
# Idle reclaim
# ---------------------------------------------------------------------------

class TestReclaim:
    async def test_connected_room_kept(self):
        clock = FakeClock()
        gm = _make_gm(clock=clock)
        await gm.create_room("R1", 2)
        await gm.join("R1", "t0", "A")
        clock.now += 10_000
        assert not await gm.reclaim_if_idle("R1", 60)

    async def test_recently_empty_room_kept(self):
        clock = FakeClock()
        gm = _make_gm(clock=clock)
        await gm.create_room("R1", 2)
        clock.now += 30
        assert not await gm.reclaim_if_idle("R1", 60)

    async def test_idle_empty_room_deleted(self):
        clock = FakeClock()
        gm = _make_gm(clock=clock)
        await gm.create_room("R1", 2)
        await gm.join("R1", "t0", "A", "c0")
        await gm.disconnect("R1", "t0", "c0")
        clock.now += 61
        assert await gm.reclaim_if_idle("R1", 60)
        assert await gm.get_room("R1") is None

    async def test_missing_room(self):
        gm = _make_gm()
        assert not await gm.reclaim_if_idle("nope", 60)


# ---------------------------------------------------------------------------
# Infrastructure failures
# ---------------------------------------------------------------------------

class TestStoreFailure:
    async def test_load_failure_propagates(self):
        store = MemoryStore()
        gm = _make_gm(store=store)
        await gm.create_room("R1", 2)
        with patch.object(
            store, "get", new_callable=AsyncMock,
            side_effect=errors.InfrastructureFailure("Store unavailable"),
        ):
            with pytest.raises(errors.InfrastructureFailure) as exc:
                await gm.join("R1", "t0", "A")
        assert exc.value.code == errors.SERVER_ERROR
        room = await gm.get_room("R1")
        assert room.players == {}

    async def test_lock_released_after_failure(self):
        store = MemoryStore()
        gm = _make_gm(store=store)
        await gm.create_room("R1", 2)
        with patch.object(
            store, "set", new_callable=AsyncMock,
            side_effect=errors.InfrastructureFailure("Store unavailable"),
        ):
            with pytest.raises(errors.InfrastructureFailure):
                await gm.join("R1", "t0", "A")
        assert not gm._get_lock("R1").locked()
        room = await gm.join("R1", "t0", "A")
        assert "t0" in room.players
