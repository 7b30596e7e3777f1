"""ControlGate engine - dispatch lanes, leases, notifications and routing.

Component classes live in their own modules (``controlgate.engine.dispatch``,
``controlgate.engine.executor`` and so on); only the error types are
re-exported here so the transport layer can import them without a cycle.
"""

from controlgate.engine.errors import (
    AgentNotFound,
    ControlGateError,
    LaneNotFound,
    PermanentExecutionError,
    PlanningApprovalRequired,
    RateLimitError,
    StoreUnavailable,
    TaskArchived,
    TaskNotFound,
    TaskStateError,
    TransientTransportError,
    TransportError,
    TransportTimeout,
)

__all__ = [
    "AgentNotFound",
    "ControlGateError",
    "LaneNotFound",
    "PermanentExecutionError",
    "PlanningApprovalRequired",
    "RateLimitError",
    "StoreUnavailable",
    "TaskArchived",
    "TaskNotFound",
    "TaskStateError",
    "TransientTransportError",
    "TransportError",
    "TransportTimeout",
]
