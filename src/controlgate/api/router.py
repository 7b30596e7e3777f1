"""REST API router."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from controlgate.api.deps import get_db_session, verify_api_key
from controlgate.api.schemas import (
    ActivityResponse,
    AgentResponse,
    AutomationConfigRequest,
    AutomationConfigResponse,
    CancelDispatchResponse,
    CancelLaneResponse,
    CancelRequest,
    CreateTaskRequest,
    EnqueueDispatchRequest,
    EnqueueDispatchResponse,
    HealthResponse,
    LaneResponse,
    LeaseHealth,
    MessageResponse,
    OpsOverviewResponse,
    PostMessageRequest,
    PostMessageResponse,
    RegisterAgentRequest,
    TaskResponse,
    UpdateAgentRequest,
    UpdateTaskRequest,
)
from controlgate.config import settings
from controlgate.db.repositories import (
    ActivityRepository,
    AgentRepository,
    DispatchRepository,
    MessageRepository,
    NotificationRepository,
    SettingsRepository,
    TaskRepository,
)
from controlgate.engine.board import TaskBoard
from controlgate.engine.dispatch import DispatchLaneManager
from controlgate.engine.errors import (
    AgentNotFound,
    ControlGateError,
    LaneNotFound,
    TaskNotFound,
    TaskStateError,
)
from controlgate.engine.executor import PROBE_DISPATCH_RESULT, PROBE_DISPATCH_STARTED
from controlgate.engine.leases import LeaseCoordinator
from controlgate.engine.mentions import MentionRouter
from controlgate.models import ActivityType, TaskStatus
from controlgate.observability.metrics import metrics
from controlgate.utils.time import utc_now

router = APIRouter(prefix="/v1", dependencies=[Depends(verify_api_key)])


def _http_error(error: ControlGateError) -> HTTPException:
    if isinstance(error, (TaskNotFound, AgentNotFound, LaneNotFound)):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, TaskStateError):
        return HTTPException(status_code=409, detail=error.message)
    return HTTPException(status_code=400, detail=error.message)


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(status="healthy", version="0.1.0", instance_id=settings.instance_id)


# ============================================================================
# Agents
# ============================================================================


@router.post("/agents", response_model=AgentResponse, status_code=201)
async def register_agent(
    request: RegisterAgentRequest,
    session: AsyncSession = Depends(get_db_session),
):
    """Register an agent."""
    agents = AgentRepository(session)
    if await agents.get_by_name(request.name):
        raise HTTPException(status_code=409, detail=f"Agent {request.name} already exists")
    agent = await TaskBoard(session).register_agent(**request.model_dump())
    await session.commit()
    return AgentResponse.model_validate(agent)


@router.get("/agents", response_model=list[AgentResponse])
async def list_agents(session: AsyncSession = Depends(get_db_session)):
    """List agents."""
    return [AgentResponse.model_validate(a) for a in await AgentRepository(session).list()]


@router.patch("/agents/{agent_id}", response_model=AgentResponse)
async def update_agent(
    agent_id: UUID,
    request: UpdateAgentRequest,
    session: AsyncSession = Depends(get_db_session),
):
    """Update an agent's session, models or status."""
    agent = await AgentRepository(session).update(agent_id, **request.model_dump(exclude_none=True))
    if not agent:
        raise HTTPException(status_code=404, detail=f"Agent not found: {agent_id}")
    await session.commit()
    return AgentResponse.model_validate(agent)


# ============================================================================
# Tasks
# ============================================================================


@router.post("/tasks", response_model=TaskResponse, status_code=201)
async def create_task(
    request: CreateTaskRequest,
    session: AsyncSession = Depends(get_db_session),
):
    """Create a task; assignees are subscribed and notified."""
    try:
        task = await TaskBoard(session).create_task(**request.model_dump())
    except ControlGateError as e:
        raise _http_error(e)
    await session.commit()
    return TaskResponse.model_validate(task)


@router.get("/tasks", response_model=list[TaskResponse])
async def list_tasks(
    status: Optional[TaskStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    session: AsyncSession = Depends(get_db_session),
):
    """List tasks, most recently updated first."""
    tasks = await TaskRepository(session).list(status=status, limit=limit)
    return [TaskResponse.model_validate(t) for t in tasks]


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(
    task_id: UUID,
    session: AsyncSession = Depends(get_db_session),
):
    """Get a task."""
    try:
        task = await TaskBoard(session).get_task(task_id)
    except ControlGateError as e:
        raise _http_error(e)
    return TaskResponse.model_validate(task)


@router.patch("/tasks/{task_id}", response_model=TaskResponse)
async def update_task(
    task_id: UUID,
    request: UpdateTaskRequest,
    session: AsyncSession = Depends(get_db_session),
):
    """Update a task."""
    try:
        task = await TaskBoard(session).update_task(task_id, **request.model_dump(exclude_none=True))
    except ControlGateError as e:
        raise _http_error(e)
    await session.commit()
    return TaskResponse.model_validate(task)


# ============================================================================
# Dispatch lanes
# ============================================================================


@router.post("/tasks/{task_id}/dispatch", response_model=EnqueueDispatchResponse, status_code=202)
async def enqueue_dispatch(
    task_id: UUID,
    request: EnqueueDispatchRequest,
    session: AsyncSession = Depends(get_db_session),
):
    """
    Request execution of a task.

    One lane per target agent. Repeating the call with the same idempotency
    key, or while a lane for the same target is still active, returns the
    existing lane instead of creating another.
    """
    manager = DispatchLaneManager(session)
    try:
        lane_id = await manager.enqueue(
            task_id,
            requested_by=request.requested_by,
            target_agent_id=request.target_agent_id,
            prompt=request.prompt,
            idempotency_key=request.idempotency_key,
        )
    except ControlGateError as e:
        raise _http_error(e)
    await session.commit()
    lanes = await manager.list_for_task(task_id)
    return EnqueueDispatchResponse(
        lane_id=lane_id,
        lanes=[LaneResponse.model_validate(lane) for lane in lanes if lane.is_active()],
    )


@router.post("/tasks/{task_id}/dispatch/cancel", response_model=CancelDispatchResponse)
async def cancel_task_dispatch(
    task_id: UUID,
    request: CancelRequest | None = None,
    session: AsyncSession = Depends(get_db_session),
):
    """Cancel every pending/running lane of a task."""
    try:
        cancelled = await DispatchLaneManager(session).cancel_for_task(
            task_id, reason=request.reason if request else None
        )
    except ControlGateError as e:
        raise _http_error(e)
    await session.commit()
    return CancelDispatchResponse(cancelled=cancelled)


@router.get("/tasks/{task_id}/lanes", response_model=list[LaneResponse])
async def list_task_lanes(
    task_id: UUID,
    limit: int = Query(20, ge=1, le=100),
    session: AsyncSession = Depends(get_db_session),
):
    """List a task's dispatch lanes, newest first."""
    lanes = await DispatchLaneManager(session).list_for_task(task_id, limit)
    return [LaneResponse.model_validate(lane) for lane in lanes]


@router.get("/lanes/{lane_id}", response_model=LaneResponse)
async def get_lane(
    lane_id: UUID,
    session: AsyncSession = Depends(get_db_session),
):
    """Get a dispatch lane."""
    try:
        lane = await DispatchLaneManager(session).get(lane_id)
    except ControlGateError as e:
        raise _http_error(e)
    return LaneResponse.model_validate(lane)


@router.post("/lanes/{lane_id}/cancel", response_model=CancelLaneResponse)
async def cancel_lane(
    lane_id: UUID,
    request: CancelRequest | None = None,
    session: AsyncSession = Depends(get_db_session),
):
    """Cancel one lane. Terminal lanes are left untouched (cancelled=false)."""
    try:
        cancelled = await DispatchLaneManager(session).cancel(
            lane_id, reason=request.reason if request else None
        )
    except ControlGateError as e:
        raise _http_error(e)
    await session.commit()
    return CancelLaneResponse(lane_id=lane_id, cancelled=cancelled)


# ============================================================================
# Messages & Activity
# ============================================================================


@router.post("/messages", response_model=PostMessageResponse, status_code=201)
async def post_message(
    request: PostMessageRequest,
    session: AsyncSession = Depends(get_db_session),
):
    """Post to HQ or a task thread and route its mentions."""
    if request.from_agent_id and not await AgentRepository(session).get(request.from_agent_id):
        raise HTTPException(status_code=404, detail=f"Agent not found: {request.from_agent_id}")
    posted = await MentionRouter(session).post_message(
        request.channel,
        request.content,
        from_agent_id=request.from_agent_id,
        from_user=request.from_user,
    )
    await session.commit()
    return PostMessageResponse(
        message=MessageResponse.model_validate(posted.message),
        notified_agent_ids=posted.notified_agent_ids,
        subscribed_agent_ids=posted.subscribed_agent_ids,
    )


@router.get("/messages", response_model=list[MessageResponse])
async def list_messages(
    channel: str = Query(...),
    limit: int = Query(50, ge=1, le=200),
    session: AsyncSession = Depends(get_db_session),
):
    """List a channel's messages, newest first."""
    messages = await MessageRepository(session).list_for_channel(channel, limit)
    return [MessageResponse.model_validate(m) for m in messages]


@router.get("/activities", response_model=list[ActivityResponse])
async def list_activities(
    task_id: Optional[UUID] = Query(None),
    type: Optional[ActivityType] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    session: AsyncSession = Depends(get_db_session),
):
    """Activity feed, newest first."""
    activities = await ActivityRepository(session).list(task_id=task_id, type=type, limit=limit)
    return [ActivityResponse.model_validate(a) for a in activities]


# ============================================================================
# Automation & Ops
# ============================================================================


@router.get("/automation", response_model=AutomationConfigResponse)
async def get_automation_config(session: AsyncSession = Depends(get_db_session)):
    """Current automation flags."""
    config = await SettingsRepository(session).get_automation_config()
    return AutomationConfigResponse(**config.model_dump())


@router.put("/automation", response_model=AutomationConfigResponse)
async def update_automation_config(
    request: AutomationConfigRequest,
    session: AsyncSession = Depends(get_db_session),
):
    """Update automation flags. Schedulers pick changes up on their next refresh."""
    config = await SettingsRepository(session).update_automation_config(**request.model_dump())
    await session.commit()
    return AutomationConfigResponse(**config.model_dump())


@router.get("/ops/overview", response_model=OpsOverviewResponse)
async def ops_overview(session: AsyncSession = Depends(get_db_session)):
    """Queue depths, leader lease health, last dispatch probes and metrics."""
    store = SettingsRepository(session)
    lease = await LeaseCoordinator(session).get(settings.leader_lease_key)
    leader = LeaseHealth(
        key=settings.leader_lease_key,
        owner=lease.owner if lease else None,
        expires_at=lease.expires_at if lease else None,
        healthy=bool(lease and lease.owner and not lease.is_expired(utc_now())),
    )
    return OpsOverviewResponse(
        lanes=await DispatchRepository(session).count_by_status(),
        tasks=await TaskRepository(session).count_by_status(),
        notifications=await NotificationRepository(session).count_pending(),
        leader=leader,
        probes={
            "last_dispatch_started": await store.get(PROBE_DISPATCH_STARTED),
            "last_dispatch_result": await store.get(PROBE_DISPATCH_RESULT),
        },
        metrics=metrics.snapshot(),
    )
