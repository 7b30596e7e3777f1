"""
Lease coordinator tests.

At most one owner holds an unexpired lease; renewal is a repeated acquire by
the holder, and an expired lease can be taken over.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from controlgate.config import Settings
from controlgate.db.tables import LeaseTable
from controlgate.engine.leases import LeaseCoordinator
from controlgate.observability.metrics import metrics
from controlgate.utils.time import utc_now

KEY = "watcher:leader"


@pytest.mark.asyncio
async def test_lease_is_exclusive_while_unexpired(session: AsyncSession):
    leases = LeaseCoordinator(session)

    first = await leases.acquire(KEY, "node-a", 15_000)
    second = await leases.acquire(KEY, "node-b", 15_000)

    assert first.acquired
    assert not second.acquired
    assert second.owner == "node-a"
    assert metrics.counter_value("lease.contended") == 1


@pytest.mark.asyncio
async def test_owner_renewal_extends_expiry(session: AsyncSession):
    leases = LeaseCoordinator(session)

    first = await leases.acquire(KEY, "node-a", 5_000)
    renewed = await leases.acquire(KEY, "node-a", 60_000)

    assert renewed.acquired
    assert renewed.expires_at > first.expires_at
    lease = await leases.get(KEY)
    assert lease.owner == "node-a"
    assert not lease.is_expired()


@pytest.mark.asyncio
async def test_expired_lease_can_be_taken_over(session: AsyncSession):
    leases = LeaseCoordinator(session)
    await leases.acquire(KEY, "node-a", 15_000)

    await session.execute(
        update(LeaseTable)
        .where(LeaseTable.key == KEY)
        .values(expires_at=utc_now() - timedelta(seconds=1))
    )

    takeover = await leases.acquire(KEY, "node-b", 15_000)

    assert takeover.acquired
    assert (await leases.get(KEY)).owner == "node-b"
    # The old owner no longer holds it
    assert not (await leases.acquire(KEY, "node-a", 15_000)).acquired


@pytest.mark.asyncio
async def test_release_only_by_owner(session: AsyncSession):
    leases = LeaseCoordinator(session)
    await leases.acquire(KEY, "node-a", 15_000)

    assert not await leases.release(KEY, "node-b")
    assert (await leases.get(KEY)).owner == "node-a"

    assert await leases.release(KEY, "node-a")
    assert await leases.get(KEY) is None
    assert (await leases.acquire(KEY, "node-b", 15_000)).acquired


@pytest.mark.asyncio
async def test_ttl_is_clamped(session: AsyncSession):
    leases = LeaseCoordinator(session)

    result = await leases.acquire(KEY, "node-a", 10)

    remaining = result.expires_at - utc_now()
    assert timedelta(milliseconds=500) < remaining <= timedelta(milliseconds=1_000)


@pytest.mark.asyncio
async def test_default_ttl_comes_from_settings(session: AsyncSession):
    config = Settings(lease_ttl_ms=20_000, _env_file=None)

    result = await LeaseCoordinator(session, config).acquire(KEY, "node-a")

    remaining = result.expires_at - utc_now()
    assert timedelta(milliseconds=15_000) < remaining <= timedelta(milliseconds=20_000)
