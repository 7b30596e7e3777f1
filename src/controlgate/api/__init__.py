"""ControlGate REST API."""

from controlgate.api.router import router

__all__ = ["router"]
