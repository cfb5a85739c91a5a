import asyncio

import pytest

from startgrid_core import (
    AssignmentSession,
    CursorHome,
    DuplicateSubscription,
    ErrorKind,
    MemoryStore,
    NextPickPolicy,
    Phase,
    SessionConfig,
    check_health,
)
from startgrid_core.types import CURRENT_SELECTION, START_POSITION, TEAMS


def _team(number, time="", name=None):
    return {"number": number, "pilot_name": name or f"Pilot {number}", "time": time}


THREE = [_team(1, "01:00:00"), _team(2, "02:00:00"), _team(3, "03:00:00")]


async def _seed(store, teams=THREE):
    for row in teams:
        await store.insert_team(row)


async def _noop(event):
    return None


def _numbers(snapshot):
    return [s.number for s in snapshot.slots]


async def _started(store, owner, config=None):
    session = AssignmentSession(store, config, owner=owner)
    outcome = await session.start()
    assert outcome.ok, outcome.error
    return session


def test_start_offers_top_ranked_competitor():
    async def run():
        store = MemoryStore()
        await _seed(store)
        session = await _started(store, "a")
        snap = session.snapshot()
        assert snap.selecting.number == 1
        assert snap.cursor == 1
        assert snap.phase is Phase.OFFERING
        await store.settle()
        assert store.writes(CURRENT_SELECTION) == 1
        await session.stop()

    asyncio.run(run())


def test_lowest_ranked_policy_offers_slowest_first():
    async def run():
        store = MemoryStore()
        await _seed(store)
        config = SessionConfig(next_pick=NextPickPolicy.LOWEST_RANKED)
        session = await _started(store, "a", config)
        assert session.snapshot().selecting.number == 3
        await session.stop()

    asyncio.run(run())


def test_empty_roster_stays_idle():
    async def run():
        store = MemoryStore()
        session = await _started(store, "a")
        assert session.phase is Phase.IDLE
        assert store.writes(CURRENT_SELECTION) == 0
        outcome = await session.reset_all()
        assert outcome.ok
        assert outcome.snapshot.phase is Phase.IDLE
        assert outcome.snapshot.selecting is None
        await session.stop()

    asyncio.run(run())


def test_confirm_places_and_auto_advances():
    async def run():
        store = MemoryStore()
        await _seed(store)
        session = await _started(store, "a")
        outcome = await session.confirm_current_selection()
        assert outcome.ok
        assert _numbers(outcome.snapshot)[:2] == [1, None]
        assert outcome.snapshot.selecting.number == 2
        assert outcome.snapshot.cursor == 1
        await store.settle()
        assert session.snapshot().selecting.number == 2
        rows = await store.fetch_start_positions("default")
        assert [(r["position"], r["team_number"]) for r in rows] == [(1, 1)]
        await session.stop()

    asyncio.run(run())


def test_confirm_into_occupied_slot_is_rejected_locally():
    async def run():
        store = MemoryStore()
        await _seed(store)
        session = await _started(store, "a")
        await session.confirm_current_selection()
        # cursor went back to 1, which is now taken
        outcome = await session.confirm_current_selection()
        assert not outcome.ok
        assert outcome.error.kind is ErrorKind.ALREADY_OCCUPIED
        assert outcome.error.user_visible
        assert store.writes(START_POSITION, "insert") == 1
        await session.stop()

    asyncio.run(run())


def test_full_run_with_first_empty_cursor_home():
    async def run():
        store = MemoryStore()
        await _seed(store)
        config = SessionConfig(cursor_home=CursorHome.FIRST_EMPTY)
        session = await _started(store, "a", config)
        for _ in range(3):
            outcome = await session.confirm_current_selection()
            assert outcome.ok
        await store.settle()
        snap = session.snapshot()
        assert _numbers(snap)[:4] == [1, 2, 3, None]
        assert snap.phase is Phase.DONE
        assert snap.selecting is None

        outcome = await session.confirm_current_selection()
        assert outcome.error.kind is ErrorKind.UNKNOWN_COMPETITOR
        await session.stop()

    asyncio.run(run())


def test_full_run_moving_the_cursor():
    async def run():
        store = MemoryStore()
        await _seed(store)
        session = await _started(store, "a")
        assert (await session.confirm_current_selection()).ok
        assert (await session.move_cursor(1)).ok
        assert (await session.confirm_current_selection()).ok
        assert (await session.move_cursor(2)).ok
        assert (await session.confirm_current_selection()).ok
        await store.settle()
        snap = session.snapshot()
        assert _numbers(snap)[:3] == [1, 2, 3]
        assert snap.phase is Phase.DONE
        await session.stop()

    asyncio.run(run())


def test_cursor_moves_are_clamped_and_range_checked():
    async def run():
        store = MemoryStore()
        await _seed(store)
        session = await _started(store, "a", SessionConfig(slot_count=4))
        assert (await session.move_cursor(-3)).snapshot.cursor == 1
        assert (await session.move_cursor(9)).snapshot.cursor == 4
        outcome = await session.set_cursor(5)
        assert outcome.error.kind is ErrorKind.OUT_OF_RANGE
        assert outcome.error.message == "position 5 outside [1, 4]"
        assert not outcome.error.user_visible
        assert outcome.snapshot.cursor == 4
        await session.stop()

    asyncio.run(run())


def test_unchanged_selection_does_not_write():
    async def run():
        store = MemoryStore()
        await _seed(store)
        session = await _started(store, "a")
        await store.settle()
        before = store.writes(CURRENT_SELECTION)
        assert await session.cursor.set_selecting(session.cursor.selecting) is False
        assert (await session.set_cursor(1)).ok
        assert (await session.move_cursor(-1)).ok
        await store.settle()
        assert store.writes(CURRENT_SELECTION) == before
        await session.stop()

    asyncio.run(run())


def test_second_client_sees_placements_and_cursor():
    async def run():
        store = MemoryStore()
        await _seed(store)
        a = await _started(store, "a")
        b = await _started(store, "b")
        assert b.snapshot().selecting.number == 1

        await a.confirm_current_selection()
        await store.settle()
        assert _numbers(b.snapshot())[0] == 1
        assert b.snapshot().selecting.number == 2

        await b.set_cursor(3)
        await store.settle()
        assert a.snapshot().cursor == 3
        assert a.snapshot().selecting.number == 2
        await a.stop()
        await b.stop()

    asyncio.run(run())


def test_concurrent_confirms_on_same_slot():
    async def run():
        store = MemoryStore()
        await _seed(store)
        a = await _started(store, "a")
        b = await _started(store, "b")
        await store.settle()

        store.pause_delivery()
        won = await b.confirm_current_selection()
        lost = await a.confirm_current_selection()
        assert won.ok
        assert not lost.ok
        assert lost.error.kind is ErrorKind.ALREADY_OCCUPIED
        # the losing client re-read the table instead of keeping its placement
        assert _numbers(lost.snapshot)[0] == 1
        assert lost.snapshot.pending_positions == ()

        store.resume_delivery()
        await store.settle()
        assert a.snapshot().slots == b.snapshot().slots
        assert a.snapshot().selecting.number == 2
        assert b.snapshot().selecting.number == 2
        rows = await store.fetch_start_positions("default")
        assert len(rows) == 1
        await a.stop()
        await b.stop()

    asyncio.run(run())


def test_confirm_of_competitor_placed_elsewhere():
    async def run():
        store = MemoryStore()
        await _seed(store)
        a = await _started(store, "a")
        b = await _started(store, "b")
        await store.settle()

        store.pause_delivery()
        assert (await b.confirm_current_selection()).ok
        await a.move_cursor(1)
        lost = await a.confirm_current_selection()
        assert lost.error.kind is ErrorKind.ALREADY_PLACED
        assert _numbers(lost.snapshot)[:2] == [1, None]

        store.resume_delivery()
        await store.settle()
        for session in (a, b):
            snap = session.snapshot()
            assert _numbers(snap)[:2] == [1, None]
            assert snap.selecting.number == 2
            assert snap.cursor == 1
        await a.stop()
        await b.stop()

    asyncio.run(run())


def test_offline_confirm_keeps_local_placement_until_retry():
    async def run():
        store = MemoryStore()
        await _seed(store)
        session = await _started(store, "a")
        store.online = False
        outcome = await session.confirm_current_selection()
        assert not outcome.ok
        assert outcome.error.kind is ErrorKind.REMOTE_UNAVAILABLE
        assert outcome.error.retryable
        assert _numbers(outcome.snapshot)[0] == 1
        assert outcome.snapshot.pending_positions == (1,)

        outcome = await session.retry_pending()
        assert outcome.error.kind is ErrorKind.REMOTE_UNAVAILABLE
        assert outcome.snapshot.pending_positions == (1,)

        store.online = True
        outcome = await session.retry_pending()
        assert outcome.ok
        assert outcome.snapshot.pending_positions == ()
        assert outcome.snapshot.selecting.number == 2
        rows = await store.fetch_start_positions("default")
        assert [(r["position"], r["team_number"]) for r in rows] == [(1, 1)]
        await store.settle()
        assert _numbers(session.snapshot())[0] == 1
        await session.stop()

    asyncio.run(run())


def test_retry_rejected_when_competitor_was_placed_elsewhere():
    async def run():
        store = MemoryStore()
        await _seed(store)
        a = await _started(store, "a")
        b = await _started(store, "b")
        await store.settle()

        store.online = False
        offline = await a.confirm_current_selection()
        assert offline.snapshot.pending_positions == (1,)
        store.online = True

        store.pause_delivery()
        assert (await b.set_cursor(2)).ok
        assert (await b.confirm_current_selection()).ok
        outcome = await a.retry_pending()
        assert not outcome.ok
        assert outcome.error.kind is ErrorKind.ALREADY_PLACED
        assert outcome.snapshot.pending_positions == ()
        assert _numbers(outcome.snapshot)[:2] == [None, 1]

        store.resume_delivery()
        await store.settle()
        for session in (a, b):
            snap = session.snapshot()
            assert _numbers(snap)[:2] == [None, 1]
            assert snap.selecting.number == 2
        rows = await store.fetch_start_positions("default")
        assert [(r["position"], r["team_number"]) for r in rows] == [(2, 1)]
        await a.stop()
        await b.stop()

    asyncio.run(run())


def test_clearing_roster_returns_every_client_to_idle():
    async def run():
        store = MemoryStore()
        await _seed(store)
        a = await _started(store, "a")
        b = await _started(store, "b")
        await a.confirm_current_selection()
        await store.settle()

        outcome = await a.clear_roster()
        assert outcome.ok
        assert outcome.snapshot.phase is Phase.IDLE
        await store.settle()
        for session in (a, b):
            snap = session.snapshot()
            assert snap.phase is Phase.IDLE
            assert snap.selecting is None
            assert snap.competitors == ()
            assert all(not s.occupied for s in snap.slots)
        row = await store.fetch_selection(1)
        assert row["selecting_competitor_id"] is None
        assert await store.fetch_start_positions("default") == []
        await a.stop()
        await b.stop()

    asyncio.run(run())


def test_slow_store_counts_as_unavailable():
    async def run():
        store = MemoryStore(latency=0.2)
        session = AssignmentSession(store, SessionConfig(remote_timeout=0.05), owner="a")
        outcome = await session.start()
        assert not outcome.ok
        assert outcome.error.kind is ErrorKind.REMOTE_UNAVAILABLE
        assert not session.started
        assert store.subscription_count() == 0

    asyncio.run(run())


def test_reset_all_reoffers_top_competitor():
    async def run():
        store = MemoryStore()
        await _seed(store)
        a = await _started(store, "a")
        b = await _started(store, "b")
        await a.confirm_current_selection()
        await a.move_cursor(1)
        await a.confirm_current_selection()
        await store.settle()

        outcome = await a.reset_all()
        assert outcome.ok
        assert all(not s.occupied for s in outcome.snapshot.slots)
        assert outcome.snapshot.selecting.number == 1
        assert outcome.snapshot.cursor == 1
        await store.settle()
        for session in (a, b):
            snap = session.snapshot()
            assert all(not s.occupied for s in snap.slots)
            assert snap.selecting.number == 1
            assert snap.phase is Phase.OFFERING
        assert await store.fetch_start_positions("default") == []
        await a.stop()
        await b.stop()

    asyncio.run(run())


def test_vacate_frees_slot_everywhere():
    async def run():
        store = MemoryStore()
        await _seed(store)
        a = await _started(store, "a")
        b = await _started(store, "b")
        await a.confirm_current_selection()
        await store.settle()
        outcome = await b.vacate(1)
        assert outcome.ok
        await store.settle()
        assert not a.snapshot().slots[0].occupied
        assert a.snapshot().selecting.number == 2
        await a.stop()
        await b.stop()

    asyncio.run(run())


def test_preview_never_writes():
    async def run():
        store = MemoryStore()
        await _seed(store)
        session = await _started(store, "a")
        await session.confirm_current_selection()
        await store.settle()
        writes = len(store.write_log)

        preview = session.preview(1)
        assert [s.number for s in preview[:3]] == [2, 1, None]
        moves = session.preview_moves(1)
        assert [m.position for m in moves] == [1, 2]
        assert _numbers(session.snapshot())[:2] == [1, None]
        assert len(store.write_log) == writes
        await session.stop()

    asyncio.run(run())


def test_subscriptions_are_not_duplicated():
    async def run():
        store = MemoryStore()
        await _seed(store)
        session = await _started(store, "a")
        assert store.subscription_count("a") == 3

        session.replication.subscribe()
        assert (await session.start()).ok
        assert store.subscription_count("a") == 3
        with pytest.raises(DuplicateSubscription):
            store.subscribe(TEAMS, _noop, owner="a")

        await session.stop()
        await session.stop()
        assert store.subscription_count("a") == 0
        assert not session.started

    asyncio.run(run())


def test_session_context_manager():
    async def run():
        store = MemoryStore()
        await _seed(store)
        async with AssignmentSession(store, owner="a") as session:
            assert session.started
            assert store.subscription_count("a") == 3
        assert store.subscription_count("a") == 0

    asyncio.run(run())


def test_operations_require_started_session():
    async def run():
        session = AssignmentSession(MemoryStore(), owner="a")
        with pytest.raises(RuntimeError):
            await session.confirm_current_selection()

    asyncio.run(run())


def test_roster_edits_reach_other_clients():
    async def run():
        store = MemoryStore()
        await _seed(store)
        a = await _started(store, "a")
        b = await _started(store, "b")

        outcome = await a.add_competitor(_team(4, "00:30:00"))
        assert outcome.ok
        # the offer in progress stands even though #4 now ranks first
        assert outcome.snapshot.selecting.number == 1
        await store.settle()
        assert b.snapshot().competitors[0].number == 4

        dup = await a.add_competitor(_team(4))
        assert dup.error.kind is ErrorKind.DUPLICATE_COMPETITOR
        bad = await a.add_competitor({"number": 5, "time": "later"})
        assert bad.error.kind is ErrorKind.INVALID_ROW

        assert (await a.update_competitor(_team(4, "00:30:00", name="Renamed"))).ok
        await store.settle()
        assert b.registry.get(4).pilot_name == "Renamed"

        assert (await a.remove_competitor(4)).ok
        await store.settle()
        assert 4 not in b.registry
        missing = await a.remove_competitor(4)
        assert missing.error.kind is ErrorKind.UNKNOWN_COMPETITOR
        await a.stop()
        await b.stop()

    asyncio.run(run())


def test_removing_placed_competitor_frees_its_slot():
    async def run():
        store = MemoryStore()
        await _seed(store)
        a = await _started(store, "a")
        b = await _started(store, "b")
        await a.confirm_current_selection()
        await store.settle()

        assert (await a.remove_competitor(1)).ok
        await store.settle()
        for session in (a, b):
            snap = session.snapshot()
            assert not snap.slots[0].occupied
            assert [c.number for c in snap.competitors] == [2, 3]
            assert snap.selecting.number == 2
        await a.stop()
        await b.stop()

    asyncio.run(run())


def test_snapshot_as_dict():
    async def run():
        store = MemoryStore()
        await _seed(store)
        session = await _started(store, "a", SessionConfig(slot_count=3))
        await session.confirm_current_selection()
        data = session.snapshot().as_dict()
        assert data["sessionId"] == "default"
        assert data["phase"] == "offering"
        assert data["selectingCompetitor"] == 2
        assert data["slots"] == [
            {"position": 1, "competitor": 1},
            {"position": 2, "competitor": None},
            {"position": 3, "competitor": None},
        ]
        assert data["competitors"] == [1, 2, 3]
        await session.stop()

    asyncio.run(run())


def test_health_check():
    async def run():
        store = MemoryStore()
        status = await check_health(store)
        assert status.is_online
        assert status.error is None
        assert status.latency_ms >= 0

        store.online = False
        status = await check_health(store)
        assert not status.is_online
        assert status.error == "store offline"

        slow = MemoryStore(latency=0.2)
        status = await check_health(slow, timeout=0.05)
        assert not status.is_online

    asyncio.run(run())
