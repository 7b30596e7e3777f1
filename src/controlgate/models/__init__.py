"""ControlGate data models."""

from controlgate.models.agent import Agent
from controlgate.models.automation import AUTOMATION_CONFIG_KEY, AutomationConfig
from controlgate.models.enums import (
    ActivityType,
    AgentLevel,
    AgentStatus,
    LaneStatus,
    PlanningStatus,
    SubscriptionReason,
    TaskPriority,
    TaskStatus,
)
from controlgate.models.lane import DispatchClaim, DispatchLane, ThreadMessage
from controlgate.models.lease import Lease, LeaseResult
from controlgate.models.message import Activity, Message, PostedMessage
from controlgate.models.notification import Notification, NotificationClaim
from controlgate.models.subscription import Subscription
from controlgate.models.task import Task

__all__ = [
    "AUTOMATION_CONFIG_KEY",
    "Activity",
    "ActivityType",
    "Agent",
    "AgentLevel",
    "AgentStatus",
    "AutomationConfig",
    "DispatchClaim",
    "DispatchLane",
    "LaneStatus",
    "Lease",
    "LeaseResult",
    "Message",
    "Notification",
    "NotificationClaim",
    "PlanningStatus",
    "PostedMessage",
    "Subscription",
    "SubscriptionReason",
    "Task",
    "TaskPriority",
    "TaskStatus",
    "ThreadMessage",
]
