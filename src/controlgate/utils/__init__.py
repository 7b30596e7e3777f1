"""ControlGate utilities."""
