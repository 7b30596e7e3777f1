"""
Dispatch lane manager tests.

Covers idempotent enqueue, claim-time settling of unclaimable lanes, and
task reconciliation when lanes finish or are cancelled.
"""

from uuid import uuid4

import pytest

from controlgate.db.repositories import (
    ActivityRepository,
    DispatchRepository,
    NotificationRepository,
    TaskRepository,
)
from controlgate.engine.board import TaskBoard
from controlgate.engine.dispatch import DispatchLaneManager
from controlgate.engine.errors import (
    AgentNotFound,
    LaneNotFound,
    PlanningApprovalRequired,
    TaskArchived,
    TaskNotFound,
)
from controlgate.models import ActivityType, LaneStatus, PlanningStatus, TaskStatus


@pytest.mark.asyncio
async def test_enqueue_same_idempotency_key_returns_same_lane(session, make_agent):
    """Repeating an enqueue with the same key never creates a second lane."""
    alice = await make_agent("alice")
    task = await TaskBoard(session).create_task("Write docs", assignee_ids=[alice.id])
    manager = DispatchLaneManager(session)

    first = await manager.enqueue(task.id, "user", idempotency_key="req-1")
    second = await manager.enqueue(task.id, "user", idempotency_key="req-1")
    await session.commit()

    assert first == second
    lanes = await DispatchRepository(session).list_for_task(task.id)
    assert len(lanes) == 1
    assert lanes[0].idempotency_key == f"req-1:{alice.id}"
    assert lanes[0].status == LaneStatus.PENDING


@pytest.mark.asyncio
async def test_enqueue_reuses_active_lane_without_key(session, make_agent):
    alice = await make_agent("alice")
    task = await TaskBoard(session).create_task("Write docs", assignee_ids=[alice.id])
    manager = DispatchLaneManager(session)

    first = await manager.enqueue(task.id, "user")
    second = await manager.enqueue(task.id, "hq")

    assert first == second
    assert len(await DispatchRepository(session).list_for_task(task.id)) == 1


@pytest.mark.asyncio
async def test_enqueue_one_lane_per_assignee(session, make_agent):
    alice = await make_agent("alice")
    bob = await make_agent("bob")
    task = await TaskBoard(session).create_task("Pair on it", assignee_ids=[alice.id, bob.id])

    await DispatchLaneManager(session).enqueue(task.id, "user", idempotency_key="k")
    await session.commit()

    lanes = await DispatchRepository(session).list_for_task(task.id)
    assert {lane.target_agent_id for lane in lanes} == {alice.id, bob.id}

    refreshed = await TaskRepository(session).get(task.id)
    assert refreshed.status == TaskStatus.IN_PROGRESS
    requested = await ActivityRepository(session).list(
        task_id=task.id, type=ActivityType.DISPATCH_REQUESTED
    )
    assert len(requested) == 1


@pytest.mark.asyncio
async def test_enqueue_rejects_missing_archived_and_unapproved(session, make_agent):
    board = TaskBoard(session)
    manager = DispatchLaneManager(session)

    with pytest.raises(TaskNotFound):
        await manager.enqueue(uuid4(), "user")

    archived = await board.create_task("Old")
    await board.update_task(archived.id, status=TaskStatus.ARCHIVED)
    with pytest.raises(TaskArchived):
        await manager.enqueue(archived.id, "user")

    planning = await board.create_task("Needs plan", planning_status=PlanningStatus.QUESTIONS)
    with pytest.raises(PlanningApprovalRequired):
        await manager.enqueue(planning.id, "user")

    approved = await board.create_task("Planned", planning_status=PlanningStatus.APPROVED)
    with pytest.raises(AgentNotFound):
        await manager.enqueue(approved.id, "user", target_agent_id=uuid4())


@pytest.mark.asyncio
async def test_claim_stamps_runner_and_resolved_target(session, make_agent):
    """Unassigned tasks fall back to the configured fallback agent."""
    main = await make_agent("main")
    task = await TaskBoard(session).create_task("Triage")
    manager = DispatchLaneManager(session)
    lane_id = await manager.enqueue(task.id, "user")

    claim = await manager.claim_next("runner-a")
    await session.commit()

    assert claim is not None
    assert claim.lane_id == lane_id
    assert claim.agent.id == main.id
    assert claim.lane.status == LaneStatus.RUNNING
    assert claim.lane.runner == "runner-a"
    assert claim.lane.target_agent_id == main.id
    assert claim.lane.started_at is not None

    # Nothing else is claimable
    assert await manager.claim_next("runner-b") is None


@pytest.mark.asyncio
async def test_claim_cancels_lane_of_archived_task(session, make_agent):
    alice = await make_agent("alice")
    board = TaskBoard(session)
    task = await board.create_task("Drop me", assignee_ids=[alice.id])
    manager = DispatchLaneManager(session)
    lane_id = await manager.enqueue(task.id, "user")
    await board.update_task(task.id, status=TaskStatus.ARCHIVED)

    assert await manager.claim_next("runner-a") is None

    lane = await manager.get(lane_id)
    assert lane.status == LaneStatus.CANCELLED
    assert "archived" in lane.error
    assert lane.finished_at is not None


@pytest.mark.asyncio
async def test_claim_fails_lane_when_no_agent_has_a_session(session, make_agent):
    ghost = await make_agent("ghost", session_key=None)
    task = await TaskBoard(session).create_task("Nobody home", assignee_ids=[ghost.id])
    manager = DispatchLaneManager(session)
    lane_id = await manager.enqueue(task.id, "user")

    assert await manager.claim_next("runner-a") is None

    lane = await manager.get(lane_id)
    assert lane.status == LaneStatus.FAILED
    assert (await TaskRepository(session).get(task.id)).status == TaskStatus.BLOCKED


@pytest.mark.asyncio
async def test_complete_moves_task_to_review(session, make_agent):
    alice = await make_agent("alice")
    task = await TaskBoard(session).create_task("Ship it", assignee_ids=[alice.id])
    manager = DispatchLaneManager(session)
    await manager.enqueue(task.id, "user")
    claim = await manager.claim_next("runner-a")

    assert await manager.complete(claim.lane_id, run_id="run-1", result_preview="all good")
    # Terminal lanes stay terminal
    assert not await manager.complete(claim.lane_id, run_id="run-2")
    assert not await manager.fail(claim.lane_id, "late failure")

    lane = await manager.get(claim.lane_id)
    assert lane.status == LaneStatus.COMPLETED
    assert lane.run_id == "run-1"
    assert lane.result_preview == "all good"
    assert (await TaskRepository(session).get(task.id)).status == TaskStatus.REVIEW


@pytest.mark.asyncio
async def test_fail_blocks_task_and_notifies_assignees(session, make_agent):
    alice = await make_agent("alice")
    task = await TaskBoard(session).create_task("Break it", assignee_ids=[alice.id])
    manager = DispatchLaneManager(session)
    await manager.enqueue(task.id, "user")
    claim = await manager.claim_next("runner-a")

    assert await manager.fail(claim.lane_id, "x" * 6000)

    lane = await manager.get(claim.lane_id)
    assert lane.status == LaneStatus.FAILED
    assert len(lane.error) == 5000
    assert (await TaskRepository(session).get(task.id)).status == TaskStatus.BLOCKED

    notes = await NotificationRepository(session).list_for_agent(alice.id)
    assert any(n.content.startswith('Dispatch failed for "Break it"') for n in notes)


@pytest.mark.asyncio
async def test_task_stays_in_progress_while_another_lane_is_active(session, make_agent):
    alice = await make_agent("alice")
    bob = await make_agent("bob")
    task = await TaskBoard(session).create_task("Team effort", assignee_ids=[alice.id, bob.id])
    manager = DispatchLaneManager(session)
    await manager.enqueue(task.id, "user")

    first = await manager.claim_next("runner-a")
    second = await manager.claim_next("runner-a")
    assert {first.agent.id, second.agent.id} == {alice.id, bob.id}

    await manager.complete(first.lane_id)
    assert (await TaskRepository(session).get(task.id)).status == TaskStatus.IN_PROGRESS

    await manager.fail(second.lane_id, "boom")
    assert (await TaskRepository(session).get(task.id)).status == TaskStatus.BLOCKED


@pytest.mark.asyncio
async def test_done_task_is_not_reopened_by_a_late_success(session, make_agent):
    alice = await make_agent("alice")
    board = TaskBoard(session)
    task = await board.create_task("Already done", assignee_ids=[alice.id])
    manager = DispatchLaneManager(session)
    await manager.enqueue(task.id, "user")
    claim = await manager.claim_next("runner-a")
    await board.update_task(task.id, status=TaskStatus.DONE)

    await manager.complete(claim.lane_id)

    assert (await TaskRepository(session).get(task.id)).status == TaskStatus.DONE


@pytest.mark.asyncio
async def test_cancel_for_task_moves_in_progress_task_to_review(session, make_agent):
    alice = await make_agent("alice")
    bob = await make_agent("bob")
    task = await TaskBoard(session).create_task("Stop", assignee_ids=[alice.id, bob.id])
    manager = DispatchLaneManager(session)
    await manager.enqueue(task.id, "user")
    claim = await manager.claim_next("runner-a")

    cancelled = await manager.cancel_for_task(task.id)

    assert cancelled == 2
    assert await manager.should_cancel(claim.lane_id)
    for lane in await manager.list_for_task(task.id):
        assert lane.status == LaneStatus.CANCELLED
        assert lane.error.startswith("Stopped manually at ")
    assert (await TaskRepository(session).get(task.id)).status == TaskStatus.REVIEW

    # Nothing left to cancel
    assert await manager.cancel_for_task(task.id) == 0


@pytest.mark.asyncio
async def test_cancel_single_lane(session, make_agent):
    alice = await make_agent("alice")
    task = await TaskBoard(session).create_task("Stop one", assignee_ids=[alice.id])
    manager = DispatchLaneManager(session)
    lane_id = await manager.enqueue(task.id, "user")

    assert await manager.cancel(lane_id, reason="changed my mind")
    assert not await manager.cancel(lane_id)
    assert (await manager.get(lane_id)).error == "changed my mind"

    with pytest.raises(LaneNotFound):
        await manager.cancel(uuid4())


@pytest.mark.asyncio
async def test_cancel_single_lane_keeps_task_in_progress_while_others_run(session, make_agent):
    alice = await make_agent("alice")
    bob = await make_agent("bob")
    task = await TaskBoard(session).create_task("Split", assignee_ids=[alice.id, bob.id])
    manager = DispatchLaneManager(session)
    await manager.enqueue(task.id, "user")
    first, second = await manager.list_for_task(task.id)

    await manager.cancel(first.id)
    assert (await TaskRepository(session).get(task.id)).status == TaskStatus.IN_PROGRESS

    await manager.cancel(second.id)
    assert (await TaskRepository(session).get(task.id)).status == TaskStatus.REVIEW
