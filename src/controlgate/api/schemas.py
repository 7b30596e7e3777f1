"""API request/response schemas."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from controlgate.models import (
    ActivityType,
    AgentLevel,
    AgentStatus,
    LaneStatus,
    PlanningStatus,
    TaskPriority,
    TaskStatus,
)


# ============================================================================
# Health
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    instance_id: str


# ============================================================================
# Agents
# ============================================================================


class RegisterAgentRequest(BaseModel):
    """Register agent request."""

    name: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_]+$")
    role: str = ""
    level: AgentLevel = AgentLevel.SPC
    session_key: Optional[str] = Field(None, description="Agent runtime session, agent:<id>:...")
    thinking_model: Optional[str] = None
    fallback_model: Optional[str] = None


class UpdateAgentRequest(BaseModel):
    """Update agent request. Omitted fields are left unchanged."""

    role: Optional[str] = None
    status: Optional[AgentStatus] = None
    session_key: Optional[str] = None
    thinking_model: Optional[str] = None
    fallback_model: Optional[str] = None


class AgentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    role: str
    level: AgentLevel
    status: AgentStatus
    session_key: Optional[str]
    thinking_model: Optional[str]
    fallback_model: Optional[str]
    created_at: datetime
    updated_at: datetime


# ============================================================================
# Tasks
# ============================================================================


class CreateTaskRequest(BaseModel):
    """Create task request."""

    title: str = Field(..., min_length=1)
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    assignee_ids: list[UUID] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    planning_status: PlanningStatus = PlanningStatus.NONE
    created_by: str = "user"


class UpdateTaskRequest(BaseModel):
    """Update task request. Omitted fields are left unchanged."""

    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assignee_ids: Optional[list[UUID]] = None
    tags: Optional[list[str]] = None
    planning_status: Optional[PlanningStatus] = None


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str
    status: TaskStatus
    priority: TaskPriority
    assignee_ids: list[UUID]
    tags: list[str]
    planning_status: PlanningStatus
    created_by: str
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


# ============================================================================
# Dispatch lanes
# ============================================================================


class EnqueueDispatchRequest(BaseModel):
    """Enqueue dispatch request."""

    requested_by: str = Field("user", description="Who asked for the run")
    target_agent_id: Optional[UUID] = Field(None, description="Run only this agent")
    prompt: Optional[str] = Field(None, description="Dispatch note included in the agent prompt")
    idempotency_key: Optional[str] = Field(None, max_length=200)


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class CancelDispatchResponse(BaseModel):
    cancelled: int


class CancelLaneResponse(BaseModel):
    lane_id: UUID
    cancelled: bool


class LaneResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    task_id: UUID
    target_agent_id: Optional[UUID]
    requested_by: str
    status: LaneStatus
    runner: Optional[str]
    run_id: Optional[str]
    result_preview: Optional[str]
    error: Optional[str]
    requested_at: datetime
    started_at: Optional[datetime]
    finished_at: Optional[datetime]


class EnqueueDispatchResponse(BaseModel):
    lane_id: Optional[UUID]
    lanes: list[LaneResponse]


# ============================================================================
# Messages
# ============================================================================


class PostMessageRequest(BaseModel):
    """Post message request. Omit from_agent_id for human messages."""

    channel: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    from_agent_id: Optional[UUID] = None
    from_user: Optional[str] = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    channel: str
    task_id: Optional[UUID]
    from_agent_id: Optional[UUID]
    from_user: Optional[str]
    content: str
    mentions: list[str]
    created_at: datetime


class PostMessageResponse(BaseModel):
    message: MessageResponse
    notified_agent_ids: list[UUID]
    subscribed_agent_ids: list[UUID]


class ActivityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: ActivityType
    task_id: Optional[UUID]
    agent_id: Optional[UUID]
    message: str
    details: Optional[dict[str, Any]]
    created_at: datetime


# ============================================================================
# Automation & Ops
# ============================================================================


class AutomationConfigRequest(BaseModel):
    """Partial automation config update."""

    auto_dispatch_enabled: Optional[bool] = None
    notification_delivery_enabled: Optional[bool] = None
    notification_batch_size: Optional[int] = Field(None, ge=1, le=50)
    heartbeat_enabled: Optional[bool] = None


class AutomationConfigResponse(BaseModel):
    auto_dispatch_enabled: bool
    notification_delivery_enabled: bool
    notification_batch_size: int
    heartbeat_enabled: bool


class LeaseHealth(BaseModel):
    key: str
    owner: Optional[str]
    expires_at: Optional[datetime]
    healthy: bool


class OpsOverviewResponse(BaseModel):
    """Operational snapshot of the control plane."""

    lanes: dict[str, int]
    tasks: dict[str, int]
    notifications: dict[str, int]
    leader: LeaseHealth
    probes: dict[str, Any]
    metrics: dict[str, Any]
