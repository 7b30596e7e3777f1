"""Lease coordinator - single-leader election over a named lease row."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from controlgate.config import Settings, clamp, settings as default_settings
from controlgate.db.repositories import LeaseRepository
from controlgate.models import Lease, LeaseResult
from controlgate.observability.metrics import metrics

logger = logging.getLogger(__name__)

MIN_LEASE_TTL_MS = 1_000
MAX_LEASE_TTL_MS = 120_000


class LeaseCoordinator:
    """Acquire, renew and release named leases.

    At most one owner holds an unexpired lease per key. Renewal is just a
    repeated :meth:`acquire` by the current owner.
    """

    def __init__(self, session: AsyncSession, config: Settings | None = None):
        self.session = session
        self.settings = config or default_settings
        self.leases = LeaseRepository(session)

    async def acquire(self, key: str, owner: str, ttl_ms: int | None = None) -> LeaseResult:
        ttl = clamp(ttl_ms or self.settings.lease_ttl_ms, MIN_LEASE_TTL_MS, MAX_LEASE_TTL_MS)
        result = await self.leases.acquire(key, owner, ttl)
        if result.acquired:
            metrics.inc_counter("lease.acquired")
        else:
            metrics.inc_counter("lease.contended")
            logger.debug(f"Lease {key} held by {result.owner}; {owner} not acquired")
        return result

    async def release(self, key: str, owner: str) -> bool:
        """Release only if `owner` still holds the lease; stale releases are no-ops."""
        released = await self.leases.release(key, owner)
        if released:
            metrics.inc_counter("lease.released")
            logger.info(f"Lease {key} released by {owner}")
        return released

    async def get(self, key: str) -> Lease | None:
        return await self.leases.get(key)
