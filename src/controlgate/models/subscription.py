"""Subscription model."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from controlgate.models.enums import SubscriptionReason


class Subscription(BaseModel):
    id: UUID
    task_id: UUID
    agent_id: UUID
    reason: SubscriptionReason
    created_at: datetime
