"""
Dispatch executor tests.

Model fallback on rate limits, transient retries and lane outcome recording.
"""

import pytest

from controlgate.db.repositories import ActivityRepository, SettingsRepository, TaskRepository
from controlgate.engine.board import TaskBoard
from controlgate.engine.dispatch import DispatchLaneManager
from controlgate.engine.errors import RateLimitError, TransientTransportError
from controlgate.engine.executor import (
    PROBE_DISPATCH_RESULT,
    PROBE_DISPATCH_STARTED,
    DispatchExecutor,
    run_error_detail,
)
from controlgate.engine.mentions import MentionRouter
from controlgate.models import ActivityType, Agent, AgentLevel, LaneStatus, TaskStatus
from controlgate.observability.metrics import metrics
from controlgate.transport.base import NON_JSON_OUTPUT, TransportResult

THINKING = "anthropic/claude-opus-4"
FALLBACK = "openai/gpt-4o"
CONFIGURED = "kimi-coding/kimi-for-coding"

RATE_LIMITED = TransportResult(run_id="r", status="error", response_text="HTTP 429 Too Many Requests")


class RecordingSleep:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def executor(transport, session_factory, config, sleep):
    return DispatchExecutor(transport, session_factory, config, sleep=sleep)


@pytest.fixture
def claim_lane(session, make_agent):
    async def _claim(**agent_values):
        agent_values.setdefault("thinking_model", THINKING)
        agent_values.setdefault("fallback_model", FALLBACK)
        agent_values.setdefault("role", "writer")
        alice = await make_agent("alice", **agent_values)
        task = await TaskBoard(session).create_task(
            "Write report",
            description="Summarize the quarter.",
            assignee_ids=[alice.id],
            tags=["docs", "q3"],
        )
        manager = DispatchLaneManager(session)
        await manager.enqueue(task.id, "user", prompt="Focus on the summary")
        claim = await manager.claim_next("runner-a")
        await session.commit()
        return claim

    return _claim


async def _lane(session_factory, lane_id):
    async with session_factory() as s:
        return await DispatchLaneManager(s).get(lane_id)


async def _task_status(session_factory, task_id):
    async with session_factory() as s:
        return (await TaskRepository(s).get(task_id)).status


def test_run_error_detail():
    assert run_error_detail(TransportResult(status="ok", response_text="done")) == ""
    assert run_error_detail(TransportResult(status="error", summary="boom")) == "error boom"
    assert run_error_detail(TransportResult(status="ok", response_text="HTTP 401 unauthorized"))
    # Unparseable CLI output with a zero exit is not a failure
    assert run_error_detail(TransportResult(status="error", summary=NON_JSON_OUTPUT)) == ""


def test_model_plan_dedupes_and_skips_cooling_providers(transport, config):
    clock_now = [0.0]
    executor = DispatchExecutor(transport, config=config, clock=lambda: clock_now[0])
    agent = Agent.model_construct(thinking_model=f" {THINKING} ", fallback_model=THINKING)

    plan = executor.build_model_plan(agent)
    assert plan == [THINKING, CONFIGURED]

    executor.mark_provider_cooldown("anthropic")
    assert executor.pick_initial_model(plan) == CONFIGURED
    assert executor.pick_next_model(plan, {CONFIGURED}) is None

    clock_now[0] += config.provider_cooldown_seconds
    assert executor.provider_cooldown_remaining("anthropic") == 0.0
    assert executor.pick_initial_model(plan) == THINKING


@pytest.mark.asyncio
async def test_success_completes_lane_and_moves_task_to_review(
    executor, transport, session_factory, claim_lane
):
    claim = await claim_lane()

    outcome = await executor.execute(claim, "runner-a")

    assert outcome == "completed"
    assert transport.models == [("alice", THINKING)]
    assert transport.sent[0][:2] == ("alice", "agent:alice:main")
    lane = await _lane(session_factory, claim.lane_id)
    assert lane.status == LaneStatus.COMPLETED
    assert lane.run_id == "fake-run"
    assert lane.result_preview == "done"
    assert await _task_status(session_factory, claim.task.id) == TaskStatus.REVIEW

    async with session_factory() as s:
        started = await SettingsRepository(s).get(PROBE_DISPATCH_STARTED)
        result = await SettingsRepository(s).get(PROBE_DISPATCH_RESULT)
    assert started["lane_id"] == str(claim.lane_id)
    assert started["mode"] == "single_lane"
    assert result["status"] == "success"
    assert result["run_id"] == "fake-run"


@pytest.mark.asyncio
async def test_rate_limit_falls_back_to_next_model(
    executor, transport, session_factory, claim_lane
):
    claim = await claim_lane()
    transport.push(RATE_LIMITED)

    outcome = await executor.execute(claim, "runner-a")

    assert outcome == "completed"
    assert transport.models == [("alice", THINKING), ("alice", FALLBACK)]
    assert len(transport.sent) == 2
    assert executor.provider_cooldown_remaining("anthropic") > 0
    assert metrics.counter_value("dispatch.provider_cooldown") == 1

    async with session_factory() as s:
        updates = await ActivityRepository(s).list(
            task_id=claim.task.id, type=ActivityType.SUBAGENT_UPDATE
        )
    assert any(
        a.message == f"alice: Rate limit detected on anthropic; retrying lane on {FALLBACK}."
        for a in updates
    )


@pytest.mark.asyncio
async def test_raised_rate_limit_error_also_falls_back(executor, transport, claim_lane):
    claim = await claim_lane()
    transport.push(RateLimitError("rate limit exceeded for requests per minute"))

    assert await executor.execute(claim, "runner-a") == "completed"
    assert [m for _, m in transport.models] == [THINKING, FALLBACK]


@pytest.mark.asyncio
async def test_rate_limit_on_every_model_fails_lane(
    executor, transport, session_factory, claim_lane
):
    claim = await claim_lane()
    transport.push(RATE_LIMITED, RATE_LIMITED, RATE_LIMITED)

    outcome = await executor.execute(claim, "runner-a")

    assert outcome == "failed"
    assert [m for _, m in transport.models] == [THINKING, FALLBACK, CONFIGURED]
    lane = await _lane(session_factory, claim.lane_id)
    assert lane.status == LaneStatus.FAILED
    assert "429" in lane.error
    assert await _task_status(session_factory, claim.task.id) == TaskStatus.BLOCKED


@pytest.mark.asyncio
async def test_transient_errors_are_retried(executor, transport, sleep, session_factory, claim_lane):
    claim = await claim_lane()
    transport.push(
        TransientTransportError("session file locked"),
        TransientTransportError("gateway timeout"),
    )

    outcome = await executor.execute(claim, "runner-a")

    assert outcome == "completed"
    assert len(transport.sent) == 3
    assert sleep.calls == [0.0, 0.0]
    assert metrics.counter_value("dispatch.transient_retry") == 2
    # Retries stay on the same model
    assert transport.models == [("alice", THINKING)]


@pytest.mark.asyncio
async def test_transient_errors_exhaust_attempts(executor, transport, session_factory, claim_lane):
    claim = await claim_lane()
    transport.push(*(TransientTransportError("session file locked") for _ in range(3)))

    outcome = await executor.execute(claim, "runner-a")

    assert outcome == "failed"
    assert len(transport.sent) == 3
    lane = await _lane(session_factory, claim.lane_id)
    assert lane.error == "session file locked"


@pytest.mark.asyncio
async def test_execution_error_in_reply_fails_without_fallback(
    executor, transport, session_factory, claim_lane
):
    claim = await claim_lane()
    transport.push(TransportResult(run_id="r1", status="ok", response_text="HTTP 401 unauthorized"))

    outcome = await executor.execute(claim, "runner-a")

    assert outcome == "failed"
    assert len(transport.sent) == 1
    lane = await _lane(session_factory, claim.lane_id)
    assert lane.status == LaneStatus.FAILED
    assert lane.error == "HTTP 401 unauthorized"

    async with session_factory() as s:
        result = await SettingsRepository(s).get(PROBE_DISPATCH_RESULT)
    assert result["status"] == "failed"
    assert result["error"] == "HTTP 401 unauthorized"


@pytest.mark.asyncio
async def test_cancelled_lane_is_not_executed(executor, transport, session_factory, claim_lane):
    claim = await claim_lane()
    async with session_factory() as s:
        await DispatchLaneManager(s).cancel(claim.lane_id)
        await s.commit()

    outcome = await executor.execute(claim, "runner-a")

    assert outcome == "cancelled"
    assert transport.sent == []
    async with session_factory() as s:
        result = await SettingsRepository(s).get(PROBE_DISPATCH_RESULT)
    assert result["status"] == "cancelled"


@pytest.mark.asyncio
async def test_prompt_carries_task_context(executor, session, make_agent):
    alice = await make_agent("alice", role="writer")
    bob = await make_agent("bob")
    task = await TaskBoard(session).create_task(
        "Write report",
        description="Summarize the quarter.",
        assignee_ids=[alice.id, bob.id],
        tags=["docs", "q3"],
    )
    await MentionRouter(session).post_message(f"task:{task.id}", "Please   include charts")
    await MentionRouter(session).post_message(
        f"task:{task.id}", "On it", from_agent_id=bob.id
    )
    manager = DispatchLaneManager(session)
    await manager.enqueue(task.id, "user", target_agent_id=alice.id, prompt="Focus on the summary")
    claim = await manager.claim_next("runner-a")

    prompt = executor.build_prompt(claim)

    lines = prompt.splitlines()
    assert lines[0] == f"You are alice (writer, {AgentLevel.SPC.value})."
    assert "Task: Write report" in lines
    assert "Priority: medium" in lines
    assert "Tags: docs, q3" in lines
    assert "Summarize the quarter." in lines
    assert "Focus on the summary" in lines
    assert "Collaborators assigned on this task: bob." in lines
    assert "USER/HQ: Please include charts" in lines
    assert "AGENT: On it" in lines
    assert lines.index("USER/HQ: Please include charts") < lines.index("AGENT: On it")


@pytest.mark.asyncio
async def test_prompt_without_thread(executor, claim_lane):
    claim = await claim_lane()

    prompt = executor.build_prompt(claim)

    assert prompt.endswith("Recent task thread context:\nNo prior thread messages.")
    assert "Collaborators assigned on this task: none." in prompt
