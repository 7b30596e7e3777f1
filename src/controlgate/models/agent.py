"""Agent model."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from controlgate.models.enums import AgentLevel, AgentStatus


class Agent(BaseModel):
    """An execution target reachable through a transport session."""

    id: UUID
    name: str
    role: str = ""
    level: AgentLevel = AgentLevel.SPC
    status: AgentStatus = AgentStatus.IDLE
    session_key: Optional[str] = None
    thinking_model: Optional[str] = None
    fallback_model: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @property
    def runtime_agent_id(self) -> str:
        """Runtime agent id parsed from ``agent:<id>:...`` session keys."""
        return runtime_agent_id(self.session_key)

    def has_session(self) -> bool:
        return bool(self.session_key and self.session_key.strip())


def runtime_agent_id(session_key: Optional[str], default: str = "main") -> str:
    if not session_key:
        return default
    parts = session_key.split(":")
    if len(parts) >= 2 and parts[0] == "agent" and parts[1]:
        return parts[1]
    return default
