"""Lease model - named leadership token."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel


class Lease(BaseModel):
    """Current holder of a named lease."""

    key: str
    owner: Optional[str] = None
    expires_at: datetime
    renewed_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if lease has expired."""
        if now is None:
            now = datetime.now(timezone.utc)
        return now >= self.expires_at


class LeaseResult(BaseModel):
    """Outcome of an acquire attempt; `owner` is the holder either way."""

    acquired: bool
    owner: Optional[str] = None
    expires_at: Optional[datetime] = None
