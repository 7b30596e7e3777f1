"""ControlGate database layer."""

from controlgate.db.base import Base, get_session, init_db
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

__all__ = [
    "Base",
    "get_session",
    "init_db",
    "ActivityTable",
    "AgentTable",
    "DispatchLaneTable",
    "LeaseTable",
    "MessageTable",
    "NotificationTable",
    "SettingTable",
    "SubscriptionTable",
    "TaskTable",
]
