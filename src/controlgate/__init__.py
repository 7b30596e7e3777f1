"""ControlGate - control plane for multi-agent task automation."""

__version__ = "0.1.0"
