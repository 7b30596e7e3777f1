"""
Scheduler tests.

Ticks are driven by hand with a fake clock; spawned work is awaited with drain().
"""

import asyncio

import pytest

from controlgate.db.repositories import LeaseRepository, NotificationRepository, SettingsRepository
from controlgate.engine.board import TaskBoard
from controlgate.engine.dispatch import DispatchLaneManager
from controlgate.models import LaneStatus
from controlgate.observability.metrics import metrics
from controlgate.tasks.scheduler import Scheduler
from controlgate.transport import FakeTransport


class GatedTransport(FakeTransport):
    """Holds every send until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def send(self, agent_id, session_key, prompt, timeout_seconds=None):
        await self.gate.wait()
        return await super().send(agent_id, session_key, prompt, timeout_seconds)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_scheduler(transport, session_factory, config, clock):
    def _make(runner_id: str = "node-a", via=None, **overrides):
        settings = config.model_copy(update=overrides) if overrides else config
        return Scheduler(
            via or transport, session_factory, settings, runner_id=runner_id, clock=clock
        )

    return _make


async def _set_automation(session_factory, **changes):
    async with session_factory() as s:
        await SettingsRepository(s).update_automation_config(**changes)
        await s.commit()


async def _lane_status(session_factory, lane_id):
    async with session_factory() as s:
        return (await DispatchLaneManager(s).get(lane_id)).status


@pytest.mark.asyncio
async def test_tick_runs_lanes_and_delivers_notifications(
    session, session_factory, make_agent, make_scheduler, transport
):
    alice = await make_agent("alice")
    task = await TaskBoard(session).create_task("Do it", assignee_ids=[alice.id])
    lane_id = await DispatchLaneManager(session).enqueue(task.id, "user")
    await session.commit()
    scheduler = make_scheduler()

    await scheduler.tick()
    await scheduler.drain(timeout=10)

    assert await _lane_status(session_factory, lane_id) == LaneStatus.COMPLETED
    async with session_factory() as s:
        notes = await NotificationRepository(s).list_for_agent(alice.id)
    assert notes and all(n.delivered for n in notes)
    assert any(p.startswith('New task assigned: "Do it"') for _, _, p in transport.sent)
    assert scheduler.active_dispatches == set()
    assert scheduler.active_notifications == {}
    assert metrics.snapshot()["histograms"]["scheduler.tick"]["count"] == 1


@pytest.mark.asyncio
async def test_only_one_scheduler_is_leader(session_factory, make_scheduler, clock):
    first = make_scheduler("node-a")
    second = make_scheduler("node-b")

    await first.tick()
    await second.tick()

    assert first.is_leader
    assert not second.is_leader

    await first.release_lease()
    clock.advance(10)
    await second.tick()
    await first.drain(timeout=10)
    await second.drain(timeout=10)

    assert second.is_leader
    async with session_factory() as s:
        lease = await LeaseRepository(s).get(first.settings.leader_lease_key)
    assert lease.owner == "node-b"


@pytest.mark.asyncio
async def test_lease_renewal_is_throttled(session_factory, make_scheduler, clock):
    scheduler = make_scheduler()

    await scheduler.tick()
    async with session_factory() as s:
        first_expiry = (await LeaseRepository(s).get(scheduler.settings.leader_lease_key)).expires_at

    await scheduler.tick()
    async with session_factory() as s:
        unchanged = (await LeaseRepository(s).get(scheduler.settings.leader_lease_key)).expires_at
    assert unchanged == first_expiry

    clock.advance(scheduler.settings.lease_renew_interval_ms / 1000.0)
    await scheduler.tick()
    await scheduler.drain(timeout=10)
    async with session_factory() as s:
        renewed = (await LeaseRepository(s).get(scheduler.settings.leader_lease_key)).expires_at
    assert renewed >= first_expiry


@pytest.mark.asyncio
async def test_disabled_flags_skip_work(
    session, session_factory, make_agent, make_scheduler, transport
):
    alice = await make_agent("alice")
    task = await TaskBoard(session).create_task("Wait", assignee_ids=[alice.id])
    lane_id = await DispatchLaneManager(session).enqueue(task.id, "user")
    await session.commit()
    await _set_automation(
        session_factory,
        auto_dispatch_enabled=False,
        notification_delivery_enabled=False,
        heartbeat_enabled=False,
    )
    scheduler = make_scheduler()

    await scheduler.tick()
    await scheduler.drain(timeout=10)

    assert transport.sent == []
    assert not scheduler.is_leader
    assert await _lane_status(session_factory, lane_id) == LaneStatus.PENDING


@pytest.mark.asyncio
async def test_disabling_heartbeat_releases_leadership(session_factory, make_scheduler, clock):
    scheduler = make_scheduler()
    await scheduler.tick()
    assert scheduler.is_leader

    await _set_automation(session_factory, heartbeat_enabled=False)
    clock.advance(scheduler.settings.automation_refresh_seconds)
    await scheduler.tick()
    await scheduler.drain(timeout=10)

    assert not scheduler.is_leader
    async with session_factory() as s:
        assert await LeaseRepository(s).get(scheduler.settings.leader_lease_key) is None


@pytest.mark.asyncio
async def test_notification_slots_capped_by_batch_size(
    session, make_agent, make_scheduler
):
    for name in ("alice", "bob", "carol"):
        agent = await make_agent(name)
        await NotificationRepository(session).create(target_agent_id=agent.id, content="ping")
    await session.commit()
    gated = GatedTransport()
    scheduler = make_scheduler(via=gated, notification_concurrency=5)

    started = await scheduler.fill_notification_slots(batch_size=2)

    assert started == 2
    assert len(scheduler.active_notifications) == 2
    assert len(set(scheduler.active_notifications.values())) == 2
    gated.gate.set()
    await scheduler.drain(timeout=10)
    assert scheduler.active_notifications == {}


@pytest.mark.asyncio
async def test_dispatch_slots_capped_by_concurrency(session, make_agent, make_scheduler):
    alice = await make_agent("alice")
    board = TaskBoard(session)
    manager = DispatchLaneManager(session)
    for title in ("one", "two", "three"):
        task = await board.create_task(title, assignee_ids=[alice.id])
        await manager.enqueue(task.id, "user")
    await session.commit()
    gated = GatedTransport()
    scheduler = make_scheduler(via=gated, dispatch_concurrency=2)

    started = await scheduler.fill_dispatch_slots()

    assert started == 2
    assert len(scheduler.active_dispatches) == 2
    gated.gate.set()
    await scheduler.drain(timeout=10)
    assert scheduler.active_dispatches == set()


@pytest.mark.asyncio
async def test_start_and_stop(make_scheduler, session_factory):
    scheduler = make_scheduler(poll_interval_seconds=0.01)

    await scheduler.start()
    await scheduler.stop(drain_timeout=5)

    assert not scheduler.is_leader
    async with session_factory() as s:
        assert await LeaseRepository(s).get(scheduler.settings.leader_lease_key) is None


@pytest.mark.asyncio
async def test_crashing_work_frees_its_slot(
    session, session_factory, make_agent, make_scheduler, transport, monkeypatch
):
    alice = await make_agent("alice")
    bob = await make_agent("bob")
    board = TaskBoard(session)
    manager = DispatchLaneManager(session)
    task = await board.create_task("Crash", assignee_ids=[alice.id])
    await manager.enqueue(task.id, "user")
    await session.commit()
    scheduler = make_scheduler()

    async def explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(scheduler.executor, "execute", explode)
    monkeypatch.setattr(scheduler.notifier, "deliver", explode)

    await scheduler.tick()
    await scheduler.drain(timeout=10)

    assert scheduler.active_dispatches == set()
    assert scheduler.active_notifications == {}
    assert metrics.counter_value("scheduler.errors") == 2

    # The next tick still claims and runs new work
    monkeypatch.undo()
    follow_up = await board.create_task("Recover", assignee_ids=[bob.id])
    lane_id = await manager.enqueue(follow_up.id, "user")
    await session.commit()

    await scheduler.tick()
    await scheduler.drain(timeout=10)

    assert await _lane_status(session_factory, lane_id) == LaneStatus.COMPLETED
    assert any(key == "agent:bob:main" for _, key, _ in transport.sent)
    assert scheduler.active_dispatches == set()
    assert scheduler.active_notifications == {}


@pytest.mark.asyncio
async def test_store_outage_does_not_break_tick(transport, config, clock):
    def unavailable_store():
        raise ConnectionError("database is down")

    scheduler = Scheduler(transport, unavailable_store, config, runner_id="node-a", clock=clock)

    await scheduler.tick()

    # lease, dispatch and notification stages each fail on their own
    assert metrics.counter_value("scheduler.errors") == 3
    assert not scheduler.is_leader
    assert scheduler.active_dispatches == set()
    assert scheduler.active_notifications == {}
    assert metrics.snapshot()["histograms"]["scheduler.tick"]["count"] == 1
