"""Notification delivery engine - TTL claims, per-session backoff, dead-letter."""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from controlgate.config import Settings, clamp, settings as default_settings
from controlgate.db.base import get_session_factory, unit_of_work
from controlgate.db.repositories import AgentRepository, NotificationRepository
from controlgate.engine.classify import is_transient_error
from controlgate.engine.errors import TransportError
from controlgate.models import Agent, NotificationClaim
from controlgate.models.agent import runtime_agent_id
from controlgate.observability.metrics import metrics
from controlgate.transport.base import AgentTransport
from controlgate.utils.text import compact, truncate

logger = logging.getLogger(__name__)

MIN_CLAIM_TTL_MS = 5_000
MAX_CLAIM_TTL_MS = 600_000
CANDIDATE_SCAN_LIMIT = 50
NOTIFICATION_ERROR_MAX_CHARS = 500


@dataclass
class SessionBackoff:
    """Consecutive transient failures for one session and when to try again."""

    failures: int = 0
    retry_at: float = 0.0


class NotificationDeliveryEngine:
    """Claims undelivered notifications and pushes them through the transport.

    Backoff state and in-flight sessions live on the instance, so two engines
    in one process (or one per test) never share them. Within this engine a
    session is never attempted twice concurrently.
    """

    def __init__(
        self,
        transport: AgentTransport,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        config: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ):
        self.transport = transport
        self.settings = config or default_settings
        self._session_factory = session_factory
        self._clock = clock
        self._rng = rng
        self.backoff: dict[str, SessionBackoff] = {}
        self.in_flight_sessions: set[str] = set()

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def compute_backoff_ms(self, failures: int) -> int:
        """Delay before retrying after `failures` consecutive transient errors (no jitter)."""
        return min(
            self.settings.session_backoff_base_ms * max(1, failures),
            self.settings.session_backoff_max_ms,
        )

    def is_backing_off(self, session_key: str) -> bool:
        state = self.backoff.get(session_key)
        return state is not None and self._clock() < state.retry_at

    def backing_off_sessions(self) -> set[str]:
        now = self._clock()
        return {key for key, state in self.backoff.items() if now < state.retry_at}

    def record_transient_failure(self, session_key: str) -> int:
        """Advance the session's backoff and return the delay applied (ms, with jitter)."""
        state = self.backoff.setdefault(session_key, SessionBackoff())
        state.failures += 1
        delay_ms = self.compute_backoff_ms(state.failures) + int(
            self._rng() * self.settings.session_backoff_jitter_ms
        )
        state.retry_at = self._clock() + delay_ms / 1000.0
        metrics.inc_counter("notifications.backoff")
        return delay_ms

    def clear_backoff(self, session_key: str) -> None:
        self.backoff.pop(session_key, None)

    # ------------------------------------------------------------------
    # Claim and deliver
    # ------------------------------------------------------------------

    async def claim_next(
        self,
        runner_id: str,
        claim_ttl_ms: int | None = None,
        exclude_sessions: Iterable[str] = (),
    ) -> NotificationClaim | None:
        """Claim the oldest deliverable notification whose session is free."""
        ttl = clamp(
            claim_ttl_ms or self.settings.notification_claim_ttl_ms,
            MIN_CLAIM_TTL_MS,
            MAX_CLAIM_TTL_MS,
        )
        skip = set(exclude_sessions) | self.in_flight_sessions | self.backing_off_sessions()

        async with unit_of_work(self.session_factory) as session:
            notifications = NotificationRepository(session)
            agents = AgentRepository(session)
            known: dict = {}

            candidates = await notifications.list_claimable(
                ttl, limit=CANDIDATE_SCAN_LIMIT, exclude_session_keys=skip
            )
            for candidate in candidates:
                if candidate.target_agent_id not in known:
                    known[candidate.target_agent_id] = await agents.get(candidate.target_agent_id)
                agent: Agent | None = known[candidate.target_agent_id]
                session_key = agent.session_key if agent and agent.has_session() else None

                if session_key and (session_key in skip or self.is_backing_off(session_key)):
                    continue
                if await notifications.claim(candidate.id, runner_id, ttl):
                    metrics.inc_counter("notifications.claimed")
                    return NotificationClaim(
                        notification=candidate,
                        agent_name=agent.name if agent else None,
                        session_key=session_key,
                    )
        return None

    async def deliver(self, claim: NotificationClaim, runner_id: str) -> str:
        """Attempt one delivery. Returns delivered, backoff, failed or dead_lettered."""
        notification = claim.notification
        session_key = claim.session_key
        if not session_key:
            return await self._mark_attempt_failed(
                claim, f"Agent not found or has no session: {notification.target_agent_id}"
            )

        self.in_flight_sessions.add(session_key)
        try:
            text = truncate(
                compact(notification.content), self.settings.notification_message_max_chars
            )
            try:
                await self.transport.send(
                    runtime_agent_id(session_key, self.settings.fallback_agent_name),
                    session_key,
                    text,
                    timeout_seconds=self.settings.notification_timeout_seconds,
                )
            except TransportError as e:
                error_text = e.message
            except OSError as e:
                error_text = str(e) or e.__class__.__name__
            else:
                async with unit_of_work(self.session_factory) as session:
                    await NotificationRepository(session).mark_delivered(notification.id)
                self.clear_backoff(session_key)
                metrics.inc_counter("notifications.delivered")
                logger.info(f"Delivered notification {notification.id} to {claim.agent_name}")
                return "delivered"

            if is_transient_error(error_text):
                delay_ms = self.record_transient_failure(session_key)
                async with unit_of_work(self.session_factory) as session:
                    await NotificationRepository(session).release_claim(notification.id, runner_id)
                logger.warning(
                    f"Transient delivery error for {claim.agent_name} ({session_key}); "
                    f"retrying session in {delay_ms}ms: {truncate(error_text, 200)}"
                )
                return "backoff"

            self.clear_backoff(session_key)
            return await self._mark_attempt_failed(claim, error_text)
        finally:
            self.in_flight_sessions.discard(session_key)

    async def _mark_attempt_failed(self, claim: NotificationClaim, error: str) -> str:
        async with unit_of_work(self.session_factory) as session:
            updated = await NotificationRepository(session).mark_attempt_failed(
                claim.notification.id,
                truncate(error, NOTIFICATION_ERROR_MAX_CHARS),
                max_attempts=self.settings.notification_max_attempts,
            )
        metrics.inc_counter("notifications.failed")
        if updated and updated.dead_lettered_at:
            metrics.inc_counter("notifications.dead_lettered")
            logger.error(
                f"Notification {updated.id} dead-lettered after {updated.attempts} attempts: "
                f"{truncate(error, 200)}"
            )
            return "dead_lettered"
        logger.warning(
            f"Delivery to {claim.agent_name or claim.notification.target_agent_id} failed: "
            f"{truncate(error, 200)}"
        )
        return "failed"

    async def run_cycle(self, runner_id: str, batch_size: int, claim_ttl_ms: int | None = None) -> int:
        """One poll cycle: at most one notification per session, delivered concurrently."""
        claims: list[NotificationClaim] = []
        sessions: set[str] = set()
        while len(claims) < max(1, batch_size):
            claim = await self.claim_next(runner_id, claim_ttl_ms, exclude_sessions=sessions)
            if claim is None:
                break
            claims.append(claim)
            if claim.session_key:
                sessions.add(claim.session_key)

        if claims:
            await asyncio.gather(*(self.deliver(claim, runner_id) for claim in claims))
        return len(claims)
