"""Observability helpers for ControlGate."""

from controlgate.observability.metrics import metrics

__all__ = ["metrics"]
