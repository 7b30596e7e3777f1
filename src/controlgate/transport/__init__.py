"""Agent execution transports."""

from controlgate.transport.base import AgentTransport, TransportResult, error_from_text
from controlgate.transport.fake import FakeTransport
from controlgate.transport.openclaw import OpenClawTransport

__all__ = [
    "AgentTransport",
    "FakeTransport",
    "OpenClawTransport",
    "TransportResult",
    "error_from_text",
]
