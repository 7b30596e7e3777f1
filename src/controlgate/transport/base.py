"""Agent execution transport port."""

from typing import Optional, Protocol

from pydantic import BaseModel

from controlgate.engine.classify import (
    is_rate_limit_error,
    is_transient_error,
    looks_like_execution_error,
)
from controlgate.engine.errors import (
    PermanentExecutionError,
    RateLimitError,
    TransientTransportError,
    TransportError,
)


NON_JSON_OUTPUT = "non_json_output"


class TransportResult(BaseModel):
    """What an agent turn reported back."""

    run_id: Optional[str] = None
    status: Optional[str] = None
    summary: Optional[str] = None
    response_text: str = ""

    @property
    def status_summary(self) -> str:
        return f"{self.status or ''} {self.summary or ''}".strip()


class AgentTransport(Protocol):
    """Boundary to the out-of-process agent runtime.

    ``send`` raises :class:`~controlgate.engine.errors.TransportError`
    (usually one of its classified subclasses) when the call itself fails.
    A call that ran but reported a failure comes back as a result whose
    status/text the caller inspects.
    """

    async def send(
        self,
        agent_id: str,
        session_key: str,
        prompt: str,
        timeout_seconds: float | None = None,
    ) -> TransportResult: ...

    async def set_model(self, agent_id: str, model: str) -> None: ...


def error_from_text(message: str) -> TransportError:
    """Wrap raw transport error text in the matching error class."""
    if is_rate_limit_error(message):
        return RateLimitError(message)
    if is_transient_error(message):
        return TransientTransportError(message)
    if looks_like_execution_error(message):
        return PermanentExecutionError(message)
    return TransportError(message)
