"""Task board - task and agent bookkeeping that feeds the dispatch lanes."""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from controlgate.db.repositories import (
    ActivityRepository,
    AgentRepository,
    NotificationRepository,
    TaskRepository,
)
from controlgate.engine.errors import AgentNotFound, TaskNotFound
from controlgate.engine.mentions import SubscriptionTracker
from controlgate.models import (
    ActivityType,
    Agent,
    AgentLevel,
    PlanningStatus,
    SubscriptionReason,
    Task,
    TaskPriority,
    TaskStatus,
)
from controlgate.utils.time import utc_now

logger = logging.getLogger(__name__)

_UPDATABLE = {
    "title",
    "description",
    "status",
    "priority",
    "assignee_ids",
    "tags",
    "planning_status",
}


class TaskBoard:
    """Creates and edits tasks, keeping subscriptions and notifications in step."""

    def __init__(self, session: AsyncSession):
        self.tasks = TaskRepository(session)
        self.agents = AgentRepository(session)
        self.notifications = NotificationRepository(session)
        self.activities = ActivityRepository(session)
        self.tracker = SubscriptionTracker(session)

    async def register_agent(
        self,
        name: str,
        role: str = "",
        level: AgentLevel = AgentLevel.SPC,
        session_key: str | None = None,
        thinking_model: str | None = None,
        fallback_model: str | None = None,
    ) -> Agent:
        agent = await self.agents.create(
            name=name,
            role=role,
            level=level,
            session_key=session_key,
            thinking_model=thinking_model,
            fallback_model=fallback_model,
        )
        logger.info(f"Registered agent {agent.name} ({agent.id})")
        return agent

    async def create_task(
        self,
        title: str,
        description: str = "",
        priority: TaskPriority = TaskPriority.MEDIUM,
        assignee_ids: list[UUID] | None = None,
        tags: list[str] | None = None,
        planning_status: PlanningStatus = PlanningStatus.NONE,
        created_by: str = "user",
    ) -> Task:
        assignees = await self._existing_agents(assignee_ids or [])
        task = await self.tasks.create(
            title=title,
            description=description,
            priority=priority,
            assignee_ids=assignees,
            tags=tags,
            planning_status=planning_status,
            status=TaskStatus.ASSIGNED if assignees else TaskStatus.INBOX,
            created_by=created_by,
        )
        await self.activities.log(
            ActivityType.TASK_CREATED,
            f'Task created: "{task.title}"',
            task_id=task.id,
            details={"created_by": created_by},
        )
        for agent_id in assignees:
            await self.tracker.subscribe(task.id, agent_id, SubscriptionReason.ASSIGNED)
            await self.notifications.create(
                target_agent_id=agent_id,
                content=f'New task assigned: "{task.title}"',
                source_task_id=task.id,
            )
        return task

    async def update_task(self, task_id: UUID, **changes: Any) -> Task:
        """Apply changes; unknown fields and None values are ignored."""
        task = await self.tasks.get(task_id)
        if not task:
            raise TaskNotFound(str(task_id))

        values = {k: v for k, v in changes.items() if k in _UPDATABLE and v is not None}

        added: list[UUID] = []
        if "assignee_ids" in values:
            assignees = await self._existing_agents(values["assignee_ids"])
            values["assignee_ids"] = assignees
            added = [a for a in assignees if a not in task.assignee_ids]
            if "status" not in values:
                if assignees and task.status == TaskStatus.INBOX:
                    values["status"] = TaskStatus.ASSIGNED
                elif not assignees and task.status == TaskStatus.ASSIGNED:
                    values["status"] = TaskStatus.INBOX

        completing = values.get("status") == TaskStatus.DONE and task.status != TaskStatus.DONE
        if completing and task.completed_at is None:
            values["completed_at"] = utc_now()

        updated = await self.tasks.update(task_id, **values)

        for agent_id in added:
            await self.tracker.subscribe(task_id, agent_id, SubscriptionReason.ASSIGNED)
            await self.notifications.create(
                target_agent_id=agent_id,
                content=f'You were assigned to "{updated.title}" by Mission Control.',
                source_task_id=task_id,
            )

        if completing:
            await self.activities.log(
                ActivityType.TASK_COMPLETED,
                f'Task completed: "{updated.title}"',
                task_id=task_id,
            )
        elif values:
            await self.activities.log(
                ActivityType.TASK_UPDATED,
                f'Task updated: "{updated.title}"',
                task_id=task_id,
                details={"fields": sorted(values)},
            )
        return updated

    async def get_task(self, task_id: UUID) -> Task:
        task = await self.tasks.get(task_id)
        if not task:
            raise TaskNotFound(str(task_id))
        return task

    async def get_agent(self, agent_id: UUID) -> Agent:
        agent = await self.agents.get(agent_id)
        if not agent:
            raise AgentNotFound(str(agent_id))
        return agent

    async def _existing_agents(self, agent_ids: list[UUID]) -> list[UUID]:
        """Known agent ids, deduplicated; unknown ids raise AgentNotFound."""
        unique = list(dict.fromkeys(agent_ids))
        found = {a.id for a in await self.agents.get_many(unique)}
        for agent_id in unique:
            if agent_id not in found:
                raise AgentNotFound(str(agent_id))
        return unique
