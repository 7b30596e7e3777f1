"""
Concurrency and race condition tests.

Every runner uses its own session, as separate processes would.
"""

import asyncio

import pytest

from controlgate.db.repositories import DispatchRepository, LeaseRepository, NotificationRepository
from controlgate.engine.board import TaskBoard
from controlgate.engine.dispatch import DispatchLaneManager
from controlgate.engine.leases import LeaseCoordinator
from controlgate.models import LaneStatus


@pytest.mark.asyncio
async def test_concurrent_claim_only_one_runner(session, session_factory, make_agent):
    """Two concurrent claims should run a lane only once."""
    alice = await make_agent("alice")
    task = await TaskBoard(session).create_task("Race", assignee_ids=[alice.id])
    await DispatchLaneManager(session).enqueue(task.id, "user")
    await session.commit()

    async def claim(runner_id: str):
        async with session_factory() as s:
            result = await DispatchLaneManager(s).claim_next(runner_id)
            await s.commit()
            return result

    claims = await asyncio.gather(*(claim(f"runner-{i}") for i in range(4)))

    won = [c for c in claims if c is not None]
    assert len(won) == 1
    assert won[0].lane.runner.startswith("runner-")


@pytest.mark.asyncio
async def test_concurrent_enqueue_creates_one_active_lane(session, session_factory, make_agent):
    """Two processes enqueueing the same (task, target) share one lane."""
    alice = await make_agent("alice")
    task = await TaskBoard(session).create_task("Twice", assignee_ids=[alice.id])
    await session.commit()

    async def enqueue(requested_by: str):
        async with session_factory() as s:
            lane_id = await DispatchLaneManager(s).enqueue(
                task.id, requested_by, target_agent_id=alice.id
            )
            await s.commit()
            return lane_id

    lane_ids = await asyncio.gather(enqueue("user"), enqueue("hq"))

    assert lane_ids[0] == lane_ids[1]
    async with session_factory() as s:
        active = await DispatchRepository(s).list_active_for_task(task.id)
    assert [lane.id for lane in active] == [lane_ids[0]]


@pytest.mark.asyncio
async def test_active_lane_index_rejects_duplicate_insert(session, make_agent):
    alice = await make_agent("alice")
    task = await TaskBoard(session).create_task("Dup", assignee_ids=[alice.id])
    lanes = DispatchRepository(session)

    first = await lanes.create(task.id, "user", target_agent_id=alice.id)
    second = await lanes.create(task.id, "hq", target_agent_id=alice.id)
    default = await lanes.create(task.id, "user")
    default_again = await lanes.create(task.id, "hq")

    assert first is not None
    assert second is None
    assert default is not None
    assert default_again is None

    # A finished lane frees the slot for a new one
    await lanes.transition(first.id, [LaneStatus.PENDING], LaneStatus.COMPLETED)
    assert await lanes.create(task.id, "user", target_agent_id=alice.id) is not None


@pytest.mark.asyncio
async def test_concurrent_notification_claim_only_one_runner(session, session_factory, make_agent):
    alice = await make_agent("alice")
    note = await NotificationRepository(session).create(target_agent_id=alice.id, content="ping")
    await session.commit()

    async def claim(runner_id: str) -> bool:
        async with session_factory() as s:
            won = await NotificationRepository(s).claim(note.id, runner_id, 60_000)
            await s.commit()
            return won

    results = await asyncio.gather(*(claim(f"runner-{i}") for i in range(4)))

    assert results.count(True) == 1


@pytest.mark.asyncio
async def test_concurrent_lease_acquire_single_owner(session_factory):
    """Only one of several contenders becomes leader."""

    async def acquire(owner: str):
        async with session_factory() as s:
            result = await LeaseCoordinator(s).acquire("watcher:leader", owner, 15_000)
            await s.commit()
            return result

    results = await asyncio.gather(*(acquire(f"node-{i}") for i in range(4)))

    winners = [r for r in results if r.acquired]
    assert len(winners) == 1

    async with session_factory() as s:
        lease = await LeaseRepository(s).get("watcher:leader")
    assert lease.owner == winners[0].owner
