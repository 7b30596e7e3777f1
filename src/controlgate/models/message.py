"""Message and activity models."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from controlgate.models.enums import ActivityType


class Message(BaseModel):
    """A message posted to HQ or a task thread."""

    id: UUID
    channel: str
    task_id: Optional[UUID] = None
    from_agent_id: Optional[UUID] = None
    from_user: Optional[str] = None
    content: str
    mentions: list[str] = Field(default_factory=list)
    handled_at: Optional[datetime] = None
    created_at: datetime

    @property
    def is_human(self) -> bool:
        return self.from_agent_id is None


class PostedMessage(BaseModel):
    """Result of routing one inbound message."""

    message: Message
    notified_agent_ids: list[UUID] = Field(default_factory=list)
    subscribed_agent_ids: list[UUID] = Field(default_factory=list)


class Activity(BaseModel):
    id: UUID
    type: ActivityType
    task_id: Optional[UUID] = None
    agent_id: Optional[UUID] = None
    message: str
    details: Optional[dict[str, Any]] = None
    created_at: datetime
