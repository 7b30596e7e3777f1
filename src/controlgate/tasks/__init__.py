"""ControlGate background tasks."""

from controlgate.tasks.scheduler import Scheduler

__all__ = ["Scheduler"]
