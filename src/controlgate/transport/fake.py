"""In-memory transport for tests and dry runs."""

from collections import deque
from typing import Callable, Union

from controlgate.transport.base import TransportResult

Outcome = Union[TransportResult, Exception, Callable[[str, str, str], TransportResult]]


class FakeTransport:
    """Scripted transport.

    Queue outcomes with :meth:`push` (results, exceptions to raise, or
    callables); when the queue is empty every call succeeds with
    ``default``. Every call is recorded.
    """

    def __init__(self, default: TransportResult | None = None):
        self.default = default or TransportResult(run_id="fake-run", status="ok", response_text="done")
        self.outcomes: deque[Outcome] = deque()
        self.sent: list[tuple[str, str, str]] = []
        self.models: list[tuple[str, str]] = []

    def push(self, *outcomes: Outcome) -> "FakeTransport":
        self.outcomes.extend(outcomes)
        return self

    async def send(
        self,
        agent_id: str,
        session_key: str,
        prompt: str,
        timeout_seconds: float | None = None,
    ) -> TransportResult:
        self.sent.append((agent_id, session_key, prompt))
        if not self.outcomes:
            return self.default
        outcome = self.outcomes.popleft()
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(agent_id, session_key, prompt)
        return outcome

    async def set_model(self, agent_id: str, model: str) -> None:
        self.models.append((agent_id, model))
