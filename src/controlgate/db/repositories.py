"""Database repositories for ControlGate entities."""

from datetime import datetime, timedelta
from typing import Any, Iterable
from uuid import UUID, uuid4

from sqlalchemy import Table, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from controlgate.db.tables import (
    ActivityTable,
    AgentTable,
    DispatchLaneTable,
    LeaseTable,
    MessageTable,
    NotificationTable,
    SettingTable,
    SubscriptionTable,
    TaskTable,
)
from controlgate.models import (
    AUTOMATION_CONFIG_KEY,
    Activity,
    ActivityType,
    Agent,
    AgentLevel,
    AgentStatus,
    AutomationConfig,
    DispatchLane,
    LaneStatus,
    Lease,
    LeaseResult,
    Message,
    Notification,
    PlanningStatus,
    Subscription,
    SubscriptionReason,
    Task,
    TaskPriority,
    TaskStatus,
)
from controlgate.utils.time import ms_from_now, utc_now


def _insert(session: AsyncSession, table: Table | type):
    """Dialect-specific INSERT so ON CONFLICT DO NOTHING is available."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(table)
    return sqlite_insert(table)


def _uuid_list(values: Iterable[Any]) -> list[UUID]:
    return [v if isinstance(v, UUID) else UUID(str(v)) for v in values]


class AgentRepository:
    """Repository for agent operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        name: str,
        role: str = "",
        level: AgentLevel = AgentLevel.SPC,
        status: AgentStatus = AgentStatus.IDLE,
        session_key: str | None = None,
        thinking_model: str | None = None,
        fallback_model: str | None = None,
    ) -> Agent:
        """Register an agent."""
        now = utc_now()
        row = AgentTable(
            id=uuid4(),
            name=name,
            role=role,
            level=level,
            status=status,
            session_key=session_key,
            thinking_model=thinking_model,
            fallback_model=fallback_model,
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def get(self, agent_id: UUID) -> Agent | None:
        row = await self.session.get(AgentTable, agent_id)
        return self._row_to_model(row) if row else None

    async def get_many(self, agent_ids: Iterable[UUID]) -> list[Agent]:
        """Fetch agents preserving the order of `agent_ids`; unknown ids are dropped."""
        ids = list(agent_ids)
        if not ids:
            return []
        result = await self.session.execute(select(AgentTable).where(AgentTable.id.in_(ids)))
        by_id = {row.id: self._row_to_model(row) for row in result.scalars().all()}
        return [by_id[i] for i in ids if i in by_id]

    async def get_by_name(self, name: str) -> Agent | None:
        """Case-insensitive name lookup."""
        result = await self.session.execute(
            select(AgentTable).where(func.lower(AgentTable.name) == name.strip().lower())
        )
        row = result.scalars().first()
        return self._row_to_model(row) if row else None

    async def list(self, include_blocked: bool = True) -> list[Agent]:
        query = select(AgentTable).order_by(AgentTable.created_at.asc())
        if not include_blocked:
            query = query.where(AgentTable.status != AgentStatus.BLOCKED)
        result = await self.session.execute(query)
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def update(self, agent_id: UUID, **values: Any) -> Agent | None:
        row = await self.session.get(AgentTable, agent_id)
        if not row:
            return None
        for field, value in values.items():
            setattr(row, field, value)
        row.updated_at = utc_now()
        await self.session.flush()
        return self._row_to_model(row)

    def _row_to_model(self, row: AgentTable) -> Agent:
        """Convert database row to model."""
        return Agent(
            id=row.id,
            name=row.name,
            role=row.role,
            level=row.level,
            status=row.status,
            session_key=row.session_key,
            thinking_model=row.thinking_model,
            fallback_model=row.fallback_model,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class TaskRepository:
    """Repository for task operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        title: str,
        description: str = "",
        priority: TaskPriority = TaskPriority.MEDIUM,
        assignee_ids: list[UUID] | None = None,
        tags: list[str] | None = None,
        planning_status: PlanningStatus = PlanningStatus.NONE,
        status: TaskStatus = TaskStatus.INBOX,
        created_by: str = "user",
    ) -> Task:
        """Create a new task."""
        now = utc_now()
        row = TaskTable(
            id=uuid4(),
            title=title,
            description=description,
            status=status,
            priority=priority,
            assignee_ids=[str(a) for a in (assignee_ids or [])],
            tags=list(tags or []),
            planning_status=planning_status,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def get(self, task_id: UUID) -> Task | None:
        row = await self.session.get(TaskTable, task_id)
        return self._row_to_model(row) if row else None

    async def list(self, status: TaskStatus | None = None, limit: int = 50) -> list[Task]:
        query = select(TaskTable).order_by(TaskTable.updated_at.desc()).limit(limit)
        if status:
            query = query.where(TaskTable.status == status)
        result = await self.session.execute(query)
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def update(self, task_id: UUID, **values: Any) -> Task | None:
        """Apply field changes and bump updated_at."""
        row = await self.session.get(TaskTable, task_id)
        if not row:
            return None
        now = utc_now()
        for field, value in values.items():
            if field == "assignee_ids":
                value = [str(a) for a in value]
            setattr(row, field, value)
        if values.get("status") == TaskStatus.IN_PROGRESS and row.started_at is None:
            row.started_at = now
        row.updated_at = now
        await self.session.flush()
        return self._row_to_model(row)

    async def set_status(self, task_id: UUID, status: TaskStatus) -> Task | None:
        return await self.update(task_id, status=status)

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(TaskTable.status, func.count()).group_by(TaskTable.status)
        )
        return {status.value: count for status, count in result.all()}

    def _row_to_model(self, row: TaskTable) -> Task:
        """Convert database row to model."""
        return Task(
            id=row.id,
            title=row.title,
            description=row.description,
            status=row.status,
            priority=row.priority,
            assignee_ids=_uuid_list(row.assignee_ids or []),
            tags=list(row.tags or []),
            planning_status=row.planning_status,
            created_by=row.created_by,
            started_at=row.started_at,
            completed_at=row.completed_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class DispatchRepository:
    """Repository for dispatch lane operations.

    Every status change is a conditional UPDATE on the current status, so two
    processes racing for the same lane cannot both win and terminal lanes
    never move again.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        task_id: UUID,
        requested_by: str,
        target_agent_id: UUID | None = None,
        prompt: str | None = None,
        idempotency_key: str | None = None,
    ) -> DispatchLane | None:
        """Insert a pending lane.

        Returns None when another lane already owns `idempotency_key` or is
        already pending/running for the same (task, target).
        """
        lane_id = uuid4()
        stmt = (
            _insert(self.session, DispatchLaneTable)
            .values(
                id=lane_id,
                task_id=task_id,
                target_agent_id=target_agent_id,
                requested_by=requested_by,
                prompt=prompt,
                idempotency_key=idempotency_key,
                status=LaneStatus.PENDING,
                requested_at=utc_now(),
            )
            .on_conflict_do_nothing()
            .returning(DispatchLaneTable.id)
        )
        result = await self.session.execute(stmt)
        if result.scalar_one_or_none() is None:
            return None
        return await self.get(lane_id)

    async def get(self, lane_id: UUID) -> DispatchLane | None:
        result = await self.session.execute(
            select(DispatchLaneTable)
            .where(DispatchLaneTable.id == lane_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def get_by_idempotency_key(self, key: str) -> DispatchLane | None:
        result = await self.session.execute(
            select(DispatchLaneTable)
            .where(DispatchLaneTable.idempotency_key == key)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def find_active(self, task_id: UUID, target_agent_id: UUID | None) -> DispatchLane | None:
        """Return the pending/running lane for (task, target), if any."""
        target_clause = (
            DispatchLaneTable.target_agent_id.is_(None)
            if target_agent_id is None
            else DispatchLaneTable.target_agent_id == target_agent_id
        )
        result = await self.session.execute(
            select(DispatchLaneTable)
            .where(
                DispatchLaneTable.task_id == task_id,
                target_clause,
                DispatchLaneTable.status.in_(list(LaneStatus.active_states())),
            )
            .order_by(DispatchLaneTable.requested_at.asc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def list_pending(self, limit: int = 20) -> list[DispatchLane]:
        """Oldest pending lanes first; locked rows are skipped on PostgreSQL."""
        result = await self.session.execute(
            select(DispatchLaneTable)
            .where(DispatchLaneTable.status == LaneStatus.PENDING)
            .order_by(DispatchLaneTable.requested_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def has_pending(self) -> bool:
        result = await self.session.execute(
            select(DispatchLaneTable.id)
            .where(DispatchLaneTable.status == LaneStatus.PENDING)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def list_for_task(self, task_id: UUID, limit: int | None = None) -> list[DispatchLane]:
        query = (
            select(DispatchLaneTable)
            .where(DispatchLaneTable.task_id == task_id)
            .order_by(DispatchLaneTable.requested_at.desc())
            .execution_options(populate_existing=True)
        )
        if limit:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def list_active_for_task(self, task_id: UUID) -> list[DispatchLane]:
        result = await self.session.execute(
            select(DispatchLaneTable)
            .where(
                DispatchLaneTable.task_id == task_id,
                DispatchLaneTable.status.in_(list(LaneStatus.active_states())),
            )
            .order_by(DispatchLaneTable.requested_at.asc())
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def transition(
        self,
        lane_id: UUID,
        from_states: Iterable[LaneStatus],
        to_state: LaneStatus,
        **values: Any,
    ) -> bool:
        """Move a lane to `to_state` only if it is currently in `from_states`."""
        if to_state.is_terminal():
            values.setdefault("finished_at", utc_now())
        result = await self.session.execute(
            update(DispatchLaneTable)
            .where(
                DispatchLaneTable.id == lane_id,
                DispatchLaneTable.status.in_(list(from_states)),
            )
            .values(status=to_state, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(DispatchLaneTable.status, func.count()).group_by(DispatchLaneTable.status)
        )
        counts = {status.value: 0 for status in LaneStatus}
        counts.update({status.value: count for status, count in result.all()})
        return counts

    def _row_to_model(self, row: DispatchLaneTable) -> DispatchLane:
        """Convert database row to model."""
        return DispatchLane(
            id=row.id,
            task_id=row.task_id,
            target_agent_id=row.target_agent_id,
            requested_by=row.requested_by,
            prompt=row.prompt,
            idempotency_key=row.idempotency_key,
            status=row.status,
            runner=row.runner,
            run_id=row.run_id,
            result_preview=row.result_preview,
            error=row.error,
            requested_at=row.requested_at,
            started_at=row.started_at,
            finished_at=row.finished_at,
        )


class NotificationRepository:
    """Repository for notification operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        target_agent_id: UUID,
        content: str,
        source_task_id: UUID | None = None,
        source_message_id: UUID | None = None,
    ) -> Notification:
        row = NotificationTable(
            id=uuid4(),
            target_agent_id=target_agent_id,
            content=content,
            source_task_id=source_task_id,
            source_message_id=source_message_id,
            delivered=False,
            attempts=0,
            created_at=utc_now(),
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def get(self, notification_id: UUID) -> Notification | None:
        result = await self.session.execute(
            select(NotificationTable)
            .where(NotificationTable.id == notification_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    def _claimable(self, now: datetime, claim_ttl_ms: int):
        """Undelivered, live, and not under an unexpired claim."""
        stale_before = now - timedelta(milliseconds=claim_ttl_ms)
        return (
            NotificationTable.delivered.is_(False),
            NotificationTable.dead_lettered_at.is_(None),
            or_(
                NotificationTable.claimed_at.is_(None),
                NotificationTable.claimed_at <= stale_before,
            ),
        )

    async def list_claimable(
        self,
        claim_ttl_ms: int,
        limit: int = 50,
        now: datetime | None = None,
        exclude_session_keys: Iterable[str] = (),
    ) -> list[Notification]:
        """Oldest claimable notifications, skipping targets on excluded sessions.

        Targets without an agent row or session key are always listed so the
        delivery engine can fail them.
        """
        now = now or utc_now()
        query = (
            select(NotificationTable)
            .outerjoin(AgentTable, AgentTable.id == NotificationTable.target_agent_id)
            .where(*self._claimable(now, claim_ttl_ms))
        )
        excluded = sorted(set(exclude_session_keys))
        if excluded:
            query = query.where(
                or_(AgentTable.session_key.is_(None), AgentTable.session_key.not_in(excluded))
            )
        result = await self.session.execute(
            query.order_by(NotificationTable.created_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def claim(
        self,
        notification_id: UUID,
        runner_id: str,
        claim_ttl_ms: int,
        now: datetime | None = None,
    ) -> bool:
        """Claim one notification; the availability predicate is re-checked atomically."""
        now = now or utc_now()
        result = await self.session.execute(
            update(NotificationTable)
            .where(NotificationTable.id == notification_id, *self._claimable(now, claim_ttl_ms))
            .values(claimed_by=runner_id, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def mark_delivered(self, notification_id: UUID) -> bool:
        result = await self.session.execute(
            update(NotificationTable)
            .where(
                NotificationTable.id == notification_id,
                NotificationTable.delivered.is_(False),
            )
            .values(
                delivered=True,
                delivered_at=utc_now(),
                error=None,
                claimed_by=None,
                claimed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def mark_attempt_failed(
        self,
        notification_id: UUID,
        error: str,
        max_attempts: int | None = None,
    ) -> Notification | None:
        """Record a failed attempt and release the claim.

        Dead-letters the notification once `max_attempts` is reached.
        """
        current = await self.get(notification_id)
        if not current or current.delivered:
            return current
        attempts = current.attempts + 1
        values: dict[str, Any] = {
            "attempts": attempts,
            "error": error,
            "claimed_by": None,
            "claimed_at": None,
        }
        if max_attempts is not None and attempts >= max_attempts:
            values["dead_lettered_at"] = utc_now()
        await self.session.execute(
            update(NotificationTable)
            .where(
                NotificationTable.id == notification_id,
                NotificationTable.delivered.is_(False),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return await self.get(notification_id)

    async def release_claim(self, notification_id: UUID, runner_id: str) -> bool:
        """Drop our claim without counting an attempt."""
        result = await self.session.execute(
            update(NotificationTable)
            .where(
                NotificationTable.id == notification_id,
                NotificationTable.claimed_by == runner_id,
                NotificationTable.delivered.is_(False),
            )
            .values(claimed_by=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def list_for_agent(
        self, agent_id: UUID, undelivered_only: bool = False, limit: int = 50
    ) -> list[Notification]:
        query = (
            select(NotificationTable)
            .where(NotificationTable.target_agent_id == agent_id)
            .order_by(NotificationTable.created_at.desc())
            .limit(limit)
        )
        if undelivered_only:
            query = query.where(NotificationTable.delivered.is_(False))
        result = await self.session.execute(query)
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def list_for_message(self, message_id: UUID) -> list[Notification]:
        result = await self.session.execute(
            select(NotificationTable)
            .where(NotificationTable.source_message_id == message_id)
            .order_by(NotificationTable.created_at.asc())
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def count_pending(self) -> dict[str, int]:
        undelivered = await self.session.execute(
            select(func.count()).where(
                NotificationTable.delivered.is_(False),
                NotificationTable.dead_lettered_at.is_(None),
            )
        )
        dead = await self.session.execute(
            select(func.count()).where(NotificationTable.dead_lettered_at.is_not(None))
        )
        return {"undelivered": undelivered.scalar_one(), "dead_lettered": dead.scalar_one()}

    def _row_to_model(self, row: NotificationTable) -> Notification:
        """Convert database row to model."""
        return Notification(
            id=row.id,
            target_agent_id=row.target_agent_id,
            content=row.content,
            source_task_id=row.source_task_id,
            source_message_id=row.source_message_id,
            delivered=row.delivered,
            delivered_at=row.delivered_at,
            error=row.error,
            attempts=row.attempts,
            claimed_by=row.claimed_by,
            claimed_at=row.claimed_at,
            dead_lettered_at=row.dead_lettered_at,
            created_at=row.created_at,
        )


class LeaseRepository:
    """Repository for named leases."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: str) -> Lease | None:
        result = await self.session.execute(
            select(LeaseTable)
            .where(LeaseTable.key == key)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def acquire(self, key: str, owner: str, ttl_ms: int) -> LeaseResult:
        """Take or extend `key` for `owner`.

        Succeeds if the row is missing, expired, ownerless, or already ours.
        """
        now = utc_now()
        expires_at = ms_from_now(ttl_ms, now)

        result = await self.session.execute(
            update(LeaseTable)
            .where(
                LeaseTable.key == key,
                or_(
                    LeaseTable.owner.is_(None),
                    LeaseTable.owner == owner,
                    LeaseTable.expires_at <= now,
                ),
            )
            .values(owner=owner, expires_at=expires_at, renewed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount > 0:
            return LeaseResult(acquired=True, owner=owner, expires_at=expires_at)

        inserted = await self.session.execute(
            _insert(self.session, LeaseTable)
            .values(key=key, owner=owner, expires_at=expires_at, renewed_at=now)
            .on_conflict_do_nothing(index_elements=["key"])
            .returning(LeaseTable.key)
        )
        if inserted.scalar_one_or_none() is not None:
            return LeaseResult(acquired=True, owner=owner, expires_at=expires_at)

        current = await self.get(key)
        return LeaseResult(
            acquired=False,
            owner=current.owner if current else None,
            expires_at=current.expires_at if current else None,
        )

    async def release(self, key: str, owner: str) -> bool:
        """Delete the lease only if `owner` holds it."""
        result = await self.session.execute(
            delete(LeaseTable).where(LeaseTable.key == key, LeaseTable.owner == owner)
        )
        return result.rowcount > 0

    def _row_to_model(self, row: LeaseTable) -> Lease:
        """Convert database row to model."""
        return Lease(
            key=row.key,
            owner=row.owner,
            expires_at=row.expires_at,
            renewed_at=row.renewed_at,
        )


class SubscriptionRepository:
    """Repository for task thread subscriptions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, task_id: UUID, agent_id: UUID) -> Subscription | None:
        result = await self.session.execute(
            select(SubscriptionTable).where(
                SubscriptionTable.task_id == task_id,
                SubscriptionTable.agent_id == agent_id,
            )
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def subscribe(
        self, task_id: UUID, agent_id: UUID, reason: SubscriptionReason
    ) -> tuple[Subscription, bool]:
        """Idempotently subscribe; returns (subscription, created)."""
        existing = await self.get(task_id, agent_id)
        if existing:
            return existing, False
        inserted = await self.session.execute(
            _insert(self.session, SubscriptionTable)
            .values(
                id=uuid4(),
                task_id=task_id,
                agent_id=agent_id,
                reason=reason,
                created_at=utc_now(),
            )
            .on_conflict_do_nothing(index_elements=["task_id", "agent_id"])
            .returning(SubscriptionTable.id)
        )
        created = inserted.scalar_one_or_none() is not None
        return await self.get(task_id, agent_id), created

    async def list_for_task(self, task_id: UUID) -> list[Subscription]:
        result = await self.session.execute(
            select(SubscriptionTable)
            .where(SubscriptionTable.task_id == task_id)
            .order_by(SubscriptionTable.created_at.asc())
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def list_for_agent(self, agent_id: UUID) -> list[Subscription]:
        result = await self.session.execute(
            select(SubscriptionTable)
            .where(SubscriptionTable.agent_id == agent_id)
            .order_by(SubscriptionTable.created_at.asc())
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    def _row_to_model(self, row: SubscriptionTable) -> Subscription:
        return Subscription(
            id=row.id,
            task_id=row.task_id,
            agent_id=row.agent_id,
            reason=row.reason,
            created_at=row.created_at,
        )


class MessageRepository:
    """Repository for HQ and task-thread messages."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        channel: str,
        content: str,
        task_id: UUID | None = None,
        from_agent_id: UUID | None = None,
        from_user: str | None = None,
        mentions: list[str] | None = None,
    ) -> Message:
        row = MessageTable(
            id=uuid4(),
            channel=channel,
            task_id=task_id,
            from_agent_id=from_agent_id,
            from_user=from_user,
            content=content,
            mentions=list(mentions or []),
            created_at=utc_now(),
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def recent_for_task(self, task_id: UUID, limit: int) -> list[Message]:
        """Last `limit` thread messages, oldest first."""
        if limit <= 0:
            return []
        result = await self.session.execute(
            select(MessageTable)
            .where(MessageTable.task_id == task_id)
            .order_by(MessageTable.created_at.desc())
            .limit(limit)
        )
        rows = list(result.scalars().all())
        rows.reverse()
        return [self._row_to_model(r) for r in rows]

    async def list_for_channel(self, channel: str, limit: int = 50) -> list[Message]:
        result = await self.session.execute(
            select(MessageTable)
            .where(MessageTable.channel == channel)
            .order_by(MessageTable.created_at.desc())
            .limit(limit)
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def next_unhandled_human(self, channel: str) -> Message | None:
        """Oldest human message on `channel` the HQ responder has not taken yet."""
        result = await self.session.execute(
            select(MessageTable)
            .where(
                MessageTable.channel == channel,
                MessageTable.from_agent_id.is_(None),
                MessageTable.handled_at.is_(None),
            )
            .order_by(MessageTable.created_at.asc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def mark_handled(self, message_id: UUID) -> bool:
        result = await self.session.execute(
            update(MessageTable)
            .where(MessageTable.id == message_id, MessageTable.handled_at.is_(None))
            .values(handled_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def _row_to_model(self, row: MessageTable) -> Message:
        return Message(
            id=row.id,
            channel=row.channel,
            task_id=row.task_id,
            from_agent_id=row.from_agent_id,
            from_user=row.from_user,
            content=row.content,
            mentions=list(row.mentions or []),
            handled_at=row.handled_at,
            created_at=row.created_at,
        )


class ActivityRepository:
    """Repository for the activity feed."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def log(
        self,
        type: ActivityType,
        message: str,
        task_id: UUID | None = None,
        agent_id: UUID | None = None,
        details: dict[str, Any] | None = None,
    ) -> Activity:
        row = ActivityTable(
            id=uuid4(),
            type=type,
            task_id=task_id,
            agent_id=agent_id,
            message=message,
            details=details,
            created_at=utc_now(),
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def list(
        self,
        task_id: UUID | None = None,
        type: ActivityType | None = None,
        limit: int = 50,
    ) -> list[Activity]:
        query = select(ActivityTable).order_by(ActivityTable.created_at.desc()).limit(limit)
        if task_id:
            query = query.where(ActivityTable.task_id == task_id)
        if type:
            query = query.where(ActivityTable.type == type)
        result = await self.session.execute(query)
        return [self._row_to_model(r) for r in result.scalars().all()]

    def _row_to_model(self, row: ActivityTable) -> Activity:
        return Activity(
            id=row.id,
            type=row.type,
            task_id=row.task_id,
            agent_id=row.agent_id,
            message=row.message,
            details=row.details,
            created_at=row.created_at,
        )


class SettingsRepository:
    """Repository for key/value settings."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: str) -> Any:
        row = await self.session.get(SettingTable, key)
        return row.value if row else None

    async def set(self, key: str, value: Any) -> None:
        row = await self.session.get(SettingTable, key)
        if row:
            row.value = value
            row.updated_at = utc_now()
        else:
            self.session.add(SettingTable(key=key, value=value, updated_at=utc_now()))
        await self.session.flush()

    async def get_automation_config(self) -> AutomationConfig:
        return AutomationConfig.from_stored(await self.get(AUTOMATION_CONFIG_KEY))

    async def update_automation_config(self, **changes: Any) -> AutomationConfig:
        """Merge `changes` (None values ignored) into the stored config."""
        current = await self.get_automation_config()
        merged = current.model_dump()
        merged.update({k: v for k, v in changes.items() if v is not None})
        config = AutomationConfig(**merged)
        await self.set(AUTOMATION_CONFIG_KEY, config.model_dump())
        return config
