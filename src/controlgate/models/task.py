"""Task model - board item executed through dispatch lanes."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from controlgate.models.enums import PlanningStatus, TaskPriority, TaskStatus


class Task(BaseModel):
    """Task as seen by the control plane."""

    id: UUID
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.INBOX
    priority: TaskPriority = TaskPriority.MEDIUM
    assignee_ids: list[UUID] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    planning_status: PlanningStatus = PlanningStatus.NONE
    created_by: str = "user"

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def thread_channel(self) -> str:
        return f"task:{self.id}"

    def is_dispatchable(self) -> bool:
        """Archived tasks and unapproved plans never run."""
        return (
            self.status != TaskStatus.ARCHIVED
            and not self.planning_status.requires_approval()
        )
