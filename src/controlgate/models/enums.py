"""ControlGate enumerations."""

from enum import Enum


class TaskStatus(str, Enum):
    """Task board column."""

    INBOX = "inbox"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    TESTING = "testing"
    REVIEW = "review"
    DONE = "done"
    BLOCKED = "blocked"
    ARCHIVED = "archived"


class TaskPriority(str, Enum):
    """Task priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class PlanningStatus(str, Enum):
    """Planning gate on a task."""

    NONE = "none"
    QUESTIONS = "questions"
    READY = "ready"
    APPROVED = "approved"

    def requires_approval(self) -> bool:
        """Check if the plan still waits on a human decision."""
        return self in (PlanningStatus.QUESTIONS, PlanningStatus.READY)


class LaneStatus(str, Enum):
    """Dispatch lane lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def active_states(cls) -> set["LaneStatus"]:
        """Return states that still occupy a (task, target) slot."""
        return {cls.PENDING, cls.RUNNING}

    @classmethod
    def terminal_states(cls) -> set["LaneStatus"]:
        """Return terminal states."""
        return {cls.COMPLETED, cls.FAILED, cls.CANCELLED}

    def is_terminal(self) -> bool:
        """Check if status is terminal."""
        return self in self.terminal_states()


class AgentStatus(str, Enum):
    """Agent availability."""

    IDLE = "idle"
    ACTIVE = "active"
    BLOCKED = "blocked"
    OFFLINE = "offline"


class AgentLevel(str, Enum):
    """Agent seniority."""

    LEAD = "LEAD"
    INT = "INT"
    SPC = "SPC"


class SubscriptionReason(str, Enum):
    """Why an agent follows a task thread."""

    ASSIGNED = "assigned"
    MENTIONED = "mentioned"
    COMMENTED = "commented"
    MANUAL = "manual"


class ActivityType(str, Enum):
    """Activity feed entry types."""

    TASK_CREATED = "task_created"
    TASK_UPDATED = "task_updated"
    TASK_COMPLETED = "task_completed"
    MESSAGE_SENT = "message_sent"
    DISPATCH_REQUESTED = "dispatch_requested"
    DISPATCH_STARTED = "dispatch_started"
    DISPATCH_COMPLETED = "dispatch_completed"
    DISPATCH_FAILED = "dispatch_failed"
    DISPATCH_CANCELLED = "dispatch_cancelled"
    SUBAGENT_UPDATE = "subagent_update"
