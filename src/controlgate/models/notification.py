"""Notification models."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class Notification(BaseModel):
    """One pending cross-agent message."""

    id: UUID
    target_agent_id: UUID
    content: str
    source_task_id: Optional[UUID] = None
    source_message_id: Optional[UUID] = None
    delivered: bool = False
    delivered_at: Optional[datetime] = None
    error: Optional[str] = None
    attempts: int = 0
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    dead_lettered_at: Optional[datetime] = None
    created_at: datetime


class NotificationClaim(BaseModel):
    """A claimed notification together with its resolved target session."""

    notification: Notification
    agent_name: Optional[str] = None
    session_key: Optional[str] = None

    @property
    def notification_id(self) -> UUID:
        return self.notification.id
