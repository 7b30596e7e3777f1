"""Dispatch lane manager - claim-based execution queue for tasks."""

import logging
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from controlgate.config import Settings, settings as default_settings
from controlgate.db.repositories import (
    ActivityRepository,
    AgentRepository,
    DispatchRepository,
    MessageRepository,
    NotificationRepository,
    TaskRepository,
)
from controlgate.engine.errors import (
    AgentNotFound,
    LaneNotFound,
    PlanningApprovalRequired,
    TaskArchived,
    TaskNotFound,
)
from controlgate.models import (
    ActivityType,
    Agent,
    DispatchClaim,
    DispatchLane,
    LaneStatus,
    Task,
    TaskStatus,
    ThreadMessage,
)
from controlgate.observability.metrics import metrics
from controlgate.utils.text import truncate
from controlgate.utils.time import iso, utc_now

logger = logging.getLogger(__name__)

LANE_ERROR_MAX_CHARS = 5000
ACTIVITY_ERROR_MAX_CHARS = 500
NOTIFY_ERROR_MAX_CHARS = 240
RESULT_PREVIEW_MAX_CHARS = 800

_ACTIVE = (LaneStatus.PENDING, LaneStatus.RUNNING)


class DispatchLaneManager:
    """Enqueue, claim and resolve dispatch lanes, reconciling the parent task.

    At most one pending/running lane exists per (task, target agent). Lanes
    move pending -> running -> completed/failed, or to cancelled from either
    active state; every move is a conditional update so terminal lanes stay
    terminal and a lane is claimed by exactly one runner.
    """

    def __init__(self, session: AsyncSession, config: Settings | None = None):
        self.session = session
        self.settings = config or default_settings
        self.lanes = DispatchRepository(session)
        self.tasks = TaskRepository(session)
        self.agents = AgentRepository(session)
        self.messages = MessageRepository(session)
        self.notifications = NotificationRepository(session)
        self.activities = ActivityRepository(session)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        task_id: UUID,
        requested_by: str,
        target_agent_id: UUID | None = None,
        prompt: str | None = None,
        idempotency_key: str | None = None,
    ) -> UUID:
        """Create (or reuse) lanes for a task and return the first lane id."""
        task = await self.tasks.get(task_id)
        if not task:
            raise TaskNotFound(str(task_id))
        self._ensure_dispatchable(task)

        if target_agent_id is not None:
            if not await self.agents.get(target_agent_id):
                raise AgentNotFound(str(target_agent_id))
            targets: list[UUID | None] = [target_agent_id]
        elif task.assignee_ids:
            targets = list(task.assignee_ids)
        else:
            targets = [None]

        first_lane_id: UUID | None = None
        created: list[DispatchLane] = []
        for target in targets:
            lane_key = (
                f"{idempotency_key}:{target or 'default'}" if idempotency_key else None
            )
            lane = await self.lanes.get_by_idempotency_key(lane_key) if lane_key else None
            if lane is None:
                lane = await self.lanes.find_active(task_id, target)
            if lane is None:
                lane = await self.lanes.create(
                    task_id=task_id,
                    requested_by=requested_by,
                    target_agent_id=target,
                    prompt=prompt,
                    idempotency_key=lane_key,
                )
                if lane is None:
                    # A concurrent enqueue inserted first; reuse its lane
                    if lane_key:
                        lane = await self.lanes.get_by_idempotency_key(lane_key)
                    if lane is None:
                        lane = await self.lanes.find_active(task_id, target)
                else:
                    created.append(lane)
            if first_lane_id is None and lane is not None:
                first_lane_id = lane.id

        if created:
            await self.tasks.set_status(task_id, TaskStatus.IN_PROGRESS)
            await self.activities.log(
                ActivityType.DISPATCH_REQUESTED,
                f'Dispatch requested for "{task.title}" ({len(created)} lane(s))',
                task_id=task_id,
                details={
                    "requested_by": requested_by,
                    "lane_ids": [str(lane.id) for lane in created],
                },
            )
            metrics.inc_counter("dispatch.enqueued", len(created))
            logger.info(f"Enqueued {len(created)} dispatch lane(s) for task {task_id}")

        return first_lane_id

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    async def claim_next(self, runner_id: str) -> DispatchClaim | None:
        """Claim the oldest claimable pending lane, settling unclaimable ones on the way."""
        pending = await self.lanes.list_pending(limit=self.settings.dispatch_claim_batch_size)
        for lane in pending:
            claim = await self._try_claim(lane, runner_id)
            if claim:
                metrics.inc_counter("dispatch.claimed")
                return claim
        return None

    async def _try_claim(self, lane: DispatchLane, runner_id: str) -> DispatchClaim | None:
        task = await self.tasks.get(lane.task_id)
        if not task:
            await self.lanes.transition(
                lane.id, [LaneStatus.PENDING], LaneStatus.FAILED, error="Task no longer exists"
            )
            logger.warning(f"Failed dispatch lane {lane.id}: task {lane.task_id} is gone")
            return None

        if not task.is_dispatchable():
            reason = self._undispatchable_reason(task)
            if await self.lanes.transition(
                lane.id, [LaneStatus.PENDING], LaneStatus.CANCELLED, error=reason
            ):
                await self.activities.log(
                    ActivityType.DISPATCH_CANCELLED,
                    f'Cancelled dispatch for "{task.title}": {reason}',
                    task_id=task.id,
                    details={"lane_id": str(lane.id)},
                )
            return None

        agent = await self._resolve_target(lane, task)
        if agent is None:
            await self.fail(lane.id, "No agent with a usable session could be resolved for dispatch")
            return None

        if lane.target_agent_id != agent.id:
            duplicate = await self.lanes.find_active(task.id, agent.id)
            if duplicate and duplicate.id != lane.id:
                await self.lanes.transition(
                    lane.id,
                    [LaneStatus.PENDING],
                    LaneStatus.CANCELLED,
                    error=f"Superseded by dispatch lane {duplicate.id} for {agent.name}",
                )
                return None

        won = await self.lanes.transition(
            lane.id,
            [LaneStatus.PENDING],
            LaneStatus.RUNNING,
            runner=runner_id,
            started_at=utc_now(),
            target_agent_id=agent.id,
        )
        if not won:
            return None

        if task.status != TaskStatus.IN_PROGRESS:
            task = await self.tasks.set_status(task.id, TaskStatus.IN_PROGRESS)

        thread = await self.messages.recent_for_task(task.id, self.settings.thread_context_limit)
        collaborators = await self.agents.get_many(
            a for a in task.assignee_ids if a != agent.id
        )
        await self.activities.log(
            ActivityType.DISPATCH_STARTED,
            f'{agent.name} started "{task.title}"',
            task_id=task.id,
            agent_id=agent.id,
            details={"lane_id": str(lane.id), "runner": runner_id},
        )
        logger.info(f"Runner {runner_id} claimed dispatch lane {lane.id} for {agent.name}")

        return DispatchClaim(
            lane=await self.lanes.get(lane.id),
            task=task,
            agent=agent,
            thread=[
                ThreadMessage(
                    id=m.id,
                    from_agent_id=m.from_agent_id,
                    from_user=m.from_user,
                    content=m.content,
                    created_at=m.created_at,
                )
                for m in thread
            ],
            collaborators=collaborators,
        )

    async def _resolve_target(self, lane: DispatchLane, task: Task) -> Agent | None:
        """Explicit target, else first assignee, else the configured fallback agent."""
        if lane.target_agent_id:
            agent = await self.agents.get(lane.target_agent_id)
        elif task.assignee_ids:
            agent = await self.agents.get(task.assignee_ids[0])
        else:
            agent = await self.agents.get_by_name(self.settings.fallback_agent_name)
        if agent and agent.has_session():
            return agent
        return None

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def complete(
        self,
        lane_id: UUID,
        run_id: str | None = None,
        result_preview: str | None = None,
    ) -> bool:
        """Mark a running lane completed and reconcile its task."""
        done = await self.lanes.transition(
            lane_id,
            [LaneStatus.RUNNING],
            LaneStatus.COMPLETED,
            run_id=run_id,
            result_preview=truncate(result_preview, RESULT_PREVIEW_MAX_CHARS) or None,
            error=None,
        )
        if not done:
            return False

        lane = await self.lanes.get(lane_id)
        task = await self.tasks.get(lane.task_id)
        if task:
            await self._reconcile(task, succeeded=True)
            await self.activities.log(
                ActivityType.DISPATCH_COMPLETED,
                f'Dispatch completed for "{task.title}"',
                task_id=task.id,
                agent_id=lane.target_agent_id,
                details={"lane_id": str(lane.id), "run_id": run_id},
            )
        metrics.inc_counter("dispatch.completed")
        return True

    async def fail(self, lane_id: UUID, error: str) -> bool:
        """Fail a pending or running lane, reconcile its task and notify assignees."""
        message = (error or "").strip() or "Dispatch failed"
        failed = await self.lanes.transition(
            lane_id,
            list(_ACTIVE),
            LaneStatus.FAILED,
            error=truncate(message, LANE_ERROR_MAX_CHARS),
        )
        if not failed:
            return False

        lane = await self.lanes.get(lane_id)
        task = await self.tasks.get(lane.task_id)
        metrics.inc_counter("dispatch.failed")
        logger.warning(f"Dispatch lane {lane_id} failed: {truncate(message, 200)}")
        if not task:
            return True

        await self._reconcile(task, succeeded=False)
        await self.activities.log(
            ActivityType.DISPATCH_FAILED,
            f'Dispatch failed for "{task.title}"',
            task_id=task.id,
            agent_id=lane.target_agent_id,
            details={"lane_id": str(lane.id), "error": truncate(message, ACTIVITY_ERROR_MAX_CHARS)},
        )
        summary = truncate(message, NOTIFY_ERROR_MAX_CHARS)
        for assignee_id in task.assignee_ids:
            await self.notifications.create(
                target_agent_id=assignee_id,
                content=f'Dispatch failed for "{task.title}": {summary}',
                source_task_id=task.id,
            )
        return True

    async def _reconcile(self, task: Task, succeeded: bool) -> None:
        """Derive the task status from all of its lanes after one finished."""
        if task.status == TaskStatus.ARCHIVED:
            return
        if await self.lanes.list_active_for_task(task.id):
            status = TaskStatus.IN_PROGRESS
        elif succeeded:
            status = TaskStatus.DONE if task.status == TaskStatus.DONE else TaskStatus.REVIEW
        else:
            status = TaskStatus.BLOCKED
        if status != task.status:
            await self.tasks.set_status(task.id, status)
            logger.info(f"Task {task.id} reconciled {task.status.value} -> {status.value}")

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(self, lane_id: UUID, reason: str | None = None) -> bool:
        """Cancel one active lane. The task moves to review only once no lane is left active."""
        lane = await self.lanes.get(lane_id)
        if not lane:
            raise LaneNotFound(str(lane_id))
        reason = reason or f"Stopped manually at {iso(utc_now())}"
        if not await self.lanes.transition(
            lane_id, list(_ACTIVE), LaneStatus.CANCELLED, error=reason
        ):
            return False
        await self._after_cancel(lane.task_id, 1, reason)
        return True

    async def cancel_for_task(self, task_id: UUID, reason: str | None = None) -> int:
        """Cancel every pending/running lane of a task; returns how many were cancelled.

        An in-progress task moves to review once no lane is left active.
        """
        if not await self.tasks.get(task_id):
            raise TaskNotFound(str(task_id))
        reason = reason or f"Stopped manually at {iso(utc_now())}"
        cancelled = 0
        for lane in await self.lanes.list_active_for_task(task_id):
            if await self.lanes.transition(
                lane.id, list(_ACTIVE), LaneStatus.CANCELLED, error=reason
            ):
                cancelled += 1
        if cancelled:
            await self._after_cancel(task_id, cancelled, reason)
        return cancelled

    async def _after_cancel(self, task_id: UUID, count: int, reason: str) -> None:
        metrics.inc_counter("dispatch.cancelled", count)
        task = await self.tasks.get(task_id)
        if not task:
            return
        await self.activities.log(
            ActivityType.DISPATCH_CANCELLED,
            f"Cancelled {count} active dispatch lane(s)",
            task_id=task_id,
            details={"reason": truncate(reason, ACTIVITY_ERROR_MAX_CHARS)},
        )
        if task.status in (TaskStatus.IN_PROGRESS, TaskStatus.TESTING):
            if not await self.lanes.list_active_for_task(task_id):
                await self.tasks.set_status(task_id, TaskStatus.REVIEW)

    async def should_cancel(self, lane_id: UUID) -> bool:
        """True once a claimed lane has been cancelled (or otherwise left running)."""
        lane = await self.lanes.get(lane_id)
        return lane is None or lane.status != LaneStatus.RUNNING

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, lane_id: UUID) -> DispatchLane:
        lane = await self.lanes.get(lane_id)
        if not lane:
            raise LaneNotFound(str(lane_id))
        return lane

    async def list_for_task(self, task_id: UUID, limit: int = 20) -> list[DispatchLane]:
        return await self.lanes.list_for_task(task_id, limit)

    def _ensure_dispatchable(self, task: Task) -> None:
        if task.status == TaskStatus.ARCHIVED:
            raise TaskArchived(str(task.id))
        if task.planning_status.requires_approval():
            raise PlanningApprovalRequired(str(task.id), task.planning_status.value)

    @staticmethod
    def _undispatchable_reason(task: Task) -> str:
        if task.status == TaskStatus.ARCHIVED:
            return "Task is archived"
        return f"Task requires planning approval (planning status: {task.planning_status.value})"
