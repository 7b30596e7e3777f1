"""ControlGate engine errors."""


class ControlGateError(Exception):
    """Base error for ControlGate operations."""

    def __init__(self, message: str, code: str = "CONTROLGATE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class TaskNotFound(ControlGateError):
    """Task does not exist."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}", "TASK_NOT_FOUND")
        self.task_id = task_id


class AgentNotFound(ControlGateError):
    """Agent does not exist."""

    def __init__(self, agent_id: str):
        super().__init__(f"Agent not found: {agent_id}", "AGENT_NOT_FOUND")
        self.agent_id = agent_id


class LaneNotFound(ControlGateError):
    """Dispatch lane does not exist."""

    def __init__(self, lane_id: str):
        super().__init__(f"Dispatch lane not found: {lane_id}", "LANE_NOT_FOUND")
        self.lane_id = lane_id


class TaskStateError(ControlGateError):
    """Task is in a state that forbids dispatch. Never retried."""

    def __init__(self, message: str, code: str = "TASK_STATE_ERROR"):
        super().__init__(message, code)


class TaskArchived(TaskStateError):
    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} is archived", "TASK_ARCHIVED")
        self.task_id = task_id


class PlanningApprovalRequired(TaskStateError):
    def __init__(self, task_id: str, planning_status: str):
        super().__init__(
            f"Task {task_id} requires planning approval (planning status: {planning_status})",
            "PLANNING_APPROVAL_REQUIRED",
        )
        self.task_id = task_id
        self.planning_status = planning_status


class TransportError(ControlGateError):
    """Agent execution transport call failed."""

    def __init__(self, message: str, code: str = "TRANSPORT_ERROR"):
        super().__init__(message, code)


class TransientTransportError(TransportError):
    """Session locked, gateway timeout and similar. Back off and retry."""

    def __init__(self, message: str):
        super().__init__(message, "TRANSPORT_TRANSIENT")


class RateLimitError(TransportError):
    """Provider rate limit. Cool the provider down and try the next model."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message, "RATE_LIMITED")
        self.provider = provider


class PermanentExecutionError(TransportError):
    """Auth, not-found or 4xx-style failure. Fails the lane terminally."""

    def __init__(self, message: str):
        super().__init__(message, "EXECUTION_FAILED")


class TransportTimeout(TransportError):
    """Transport call exceeded its hard timeout and was killed."""

    def __init__(self, timeout_seconds: float):
        super().__init__(
            f"Agent transport timed out after {timeout_seconds:g}s", "TRANSPORT_TIMEOUT"
        )
        self.timeout_seconds = timeout_seconds


class StoreUnavailable(ControlGateError):
    """Work queue store could not be reached."""

    def __init__(self, message: str = "Store unavailable"):
        super().__init__(message, "STORE_UNAVAILABLE")
