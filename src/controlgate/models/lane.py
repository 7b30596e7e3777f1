"""Dispatch lane models."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from controlgate.models.agent import Agent
from controlgate.models.enums import LaneStatus
from controlgate.models.task import Task


class DispatchLane(BaseModel):
    """One execution request for a task against one target agent."""

    id: UUID
    task_id: UUID
    target_agent_id: Optional[UUID] = None
    requested_by: str
    prompt: Optional[str] = None
    idempotency_key: Optional[str] = None
    status: LaneStatus = LaneStatus.PENDING
    runner: Optional[str] = None
    run_id: Optional[str] = None
    result_preview: Optional[str] = None
    error: Optional[str] = None
    requested_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def is_active(self) -> bool:
        return self.status in LaneStatus.active_states()


class ThreadMessage(BaseModel):
    """Thread message captured at claim time."""

    id: UUID
    from_agent_id: Optional[UUID] = None
    from_user: Optional[str] = None
    content: str
    created_at: datetime


class DispatchClaim(BaseModel):
    """Everything an executor needs, snapshotted when the lane was claimed."""

    lane: DispatchLane
    task: Task
    agent: Agent
    thread: list[ThreadMessage] = Field(default_factory=list)
    collaborators: list[Agent] = Field(default_factory=list)

    @property
    def lane_id(self) -> UUID:
        return self.lane.id

    @property
    def session_key(self) -> str:
        return self.agent.session_key or ""
