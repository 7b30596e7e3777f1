"""Scheduler - the single in-process loop that drives lanes, notifications and duties."""

import asyncio
import logging
import time
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from controlgate.config import Settings, settings as default_settings
from controlgate.db.base import get_session_factory, unit_of_work
from controlgate.db.repositories import SettingsRepository
from controlgate.engine.dispatch import DispatchLaneManager
from controlgate.engine.executor import DispatchExecutor
from controlgate.engine.leases import LeaseCoordinator
from controlgate.engine.notifications import NotificationDeliveryEngine
from controlgate.models import AutomationConfig, DispatchClaim, NotificationClaim
from controlgate.observability.metrics import metrics
from controlgate.tasks.duties import HqResponderDuty, ModelSyncDuty
from controlgate.transport.base import AgentTransport

logger = logging.getLogger("controlgate.scheduler")

STOP_TIMEOUT_SECONDS = 10.0


class Scheduler:
    """Periodic tick: refresh automation flags, keep the leader lease, fill slots.

    Dispatch and notification work is claim based, so every process fills its
    own slots; only the HQ responder and model sync are gated on holding the
    leader lease. Ticks never overlap and never raise.
    """

    def __init__(
        self,
        transport: AgentTransport,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        config: Settings | None = None,
        runner_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = config or default_settings
        self.runner_id = runner_id or self.settings.instance_id
        self._session_factory = session_factory
        self._clock = clock

        self.executor = DispatchExecutor(transport, session_factory, self.settings, clock=clock)
        self.notifier = NotificationDeliveryEngine(transport, session_factory, self.settings, clock=clock)
        self.hq_responder = HqResponderDuty(transport, session_factory, self.settings)
        self.model_sync = ModelSyncDuty(transport, session_factory)

        self.active_dispatches: set[UUID] = set()
        self.active_notifications: dict[UUID, Optional[str]] = {}
        self.is_leader = False

        self._work: set[asyncio.Task] = set()
        self._duty_task: Optional[asyncio.Task] = None
        self._ticking = False
        self._automation: Optional[AutomationConfig] = None
        self._automation_loaded_at: Optional[float] = None
        self._lease_checked_at: Optional[float] = None
        self._disabled_logged_at: dict[str, float] = {}
        self._loop_task: Optional[asyncio.Task] = None
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> None:
        if self._ticking:
            return
        self._ticking = True
        try:
            with metrics.timer("scheduler.tick"):
                config = await self.refresh_automation()
                await self._guarded("lease", self.maintain_lease(config))

                if config.auto_dispatch_enabled:
                    await self._guarded("dispatch", self.fill_dispatch_slots())
                else:
                    self._log_disabled("dispatch")

                if config.notification_delivery_enabled:
                    await self._guarded(
                        "notifications",
                        self.fill_notification_slots(config.notification_batch_size),
                    )
                else:
                    self._log_disabled("notification delivery")

                if self.is_leader:
                    self._start_leader_duties()

            metrics.set_gauge("scheduler.dispatch_in_flight", len(self.active_dispatches))
            metrics.set_gauge("scheduler.notifications_in_flight", len(self.active_notifications))
        finally:
            self._ticking = False

    async def _guarded(self, stage: str, work) -> None:
        try:
            await work
        except Exception as e:
            metrics.inc_counter("scheduler.errors")
            logger.error(f"Scheduler {stage} error: {e}", exc_info=True)

    def _log_disabled(self, what: str) -> None:
        now = self._clock()
        last = self._disabled_logged_at.get(what)
        if last is None or now - last >= self.settings.disabled_log_interval_seconds:
            self._disabled_logged_at[what] = now
            logger.info(f"{what} disabled by automation config")

    # ------------------------------------------------------------------
    # Automation config
    # ------------------------------------------------------------------

    async def refresh_automation(self) -> AutomationConfig:
        """Cached automation flags; a failed read keeps the last good value."""
        now = self._clock()
        if (
            self._automation is not None
            and self._automation_loaded_at is not None
            and now - self._automation_loaded_at < self.settings.automation_refresh_seconds
        ):
            return self._automation
        try:
            async with unit_of_work(self.session_factory) as session:
                self._automation = await SettingsRepository(session).get_automation_config()
            self._automation_loaded_at = now
        except Exception as e:
            logger.warning(f"Could not refresh automation config: {e}")
            if self._automation is None:
                return AutomationConfig()
        return self._automation

    # ------------------------------------------------------------------
    # Leader lease
    # ------------------------------------------------------------------

    async def maintain_lease(self, config: AutomationConfig) -> None:
        key = self.settings.leader_lease_key
        if not config.heartbeat_enabled:
            if self.is_leader:
                await self.release_lease()
            return

        now = self._clock()
        interval = self.settings.lease_renew_interval_ms / 1000.0
        if self._lease_checked_at is not None and now - self._lease_checked_at < interval:
            return
        self._lease_checked_at = now

        try:
            async with unit_of_work(self.session_factory) as session:
                result = await LeaseCoordinator(session, self.settings).acquire(
                    key, self.runner_id, self.settings.lease_ttl_ms
                )
        except Exception:
            if self.is_leader:
                logger.warning(f"Lost leadership of {key}: lease renewal failed")
            self.is_leader = False
            raise

        if result.acquired and not self.is_leader:
            logger.info(f"{self.runner_id} became leader for {key}")
        elif not result.acquired and self.is_leader:
            logger.warning(f"{self.runner_id} lost leadership of {key} to {result.owner}")
        self.is_leader = result.acquired
        metrics.set_gauge("scheduler.is_leader", 1 if self.is_leader else 0)

    async def release_lease(self) -> None:
        key = self.settings.leader_lease_key
        try:
            async with unit_of_work(self.session_factory) as session:
                await LeaseCoordinator(session, self.settings).release(key, self.runner_id)
        finally:
            self.is_leader = False
            self._lease_checked_at = None
            metrics.set_gauge("scheduler.is_leader", 0)

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------

    async def fill_dispatch_slots(self) -> int:
        started = 0
        while len(self.active_dispatches) < self.settings.dispatch_concurrency:
            async with unit_of_work(self.session_factory) as session:
                claim = await DispatchLaneManager(session, self.settings).claim_next(self.runner_id)
            if claim is None:
                break
            self.active_dispatches.add(claim.lane_id)
            self._spawn(self._run_dispatch(claim))
            started += 1
        return started

    async def _run_dispatch(self, claim: DispatchClaim) -> None:
        try:
            outcome = await self.executor.execute(claim, self.runner_id)
            logger.info(f"Dispatch lane {claim.lane_id} finished: {outcome}")
        except Exception as e:
            metrics.inc_counter("scheduler.errors")
            logger.error(f"Dispatch lane {claim.lane_id} crashed: {e}", exc_info=True)
        finally:
            self.active_dispatches.discard(claim.lane_id)

    async def fill_notification_slots(self, batch_size: int) -> int:
        limit = min(self.settings.notification_concurrency, max(1, batch_size))
        started = 0
        while len(self.active_notifications) < limit:
            busy = {s for s in self.active_notifications.values() if s}
            claim = await self.notifier.claim_next(self.runner_id, exclude_sessions=busy)
            if claim is None:
                break
            self.active_notifications[claim.notification_id] = claim.session_key
            self._spawn(self._run_notification(claim))
            started += 1
        return started

    async def _run_notification(self, claim: NotificationClaim) -> None:
        try:
            await self.notifier.deliver(claim, self.runner_id)
        except Exception as e:
            metrics.inc_counter("scheduler.errors")
            logger.error(f"Notification {claim.notification_id} delivery crashed: {e}", exc_info=True)
        finally:
            self.active_notifications.pop(claim.notification_id, None)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._work.add(task)
        task.add_done_callback(self._work.discard)
        return task

    # ------------------------------------------------------------------
    # Leader duties
    # ------------------------------------------------------------------

    def _start_leader_duties(self) -> None:
        if self._duty_task is not None and not self._duty_task.done():
            return
        self._duty_task = self._spawn(self.run_leader_duties())

    async def run_leader_duties(self) -> None:
        await self._guarded("hq responder", self.hq_responder.run_once())
        await self._guarded("model sync", self.model_sync.run_once())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight lanes, deliveries and duties; cancel what overruns."""
        pending = set(self._work)
        if not pending:
            return
        done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"Cancelled {len(still_running)} in-flight task(s) at shutdown")
            await asyncio.gather(*still_running, return_exceptions=True)

    async def _loop(self) -> None:
        logger.info(
            f"Scheduler {self.runner_id} started (interval: {self.settings.poll_interval_seconds}s)"
        )
        while not self._shutdown_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.settings.poll_interval_seconds,
                )
            except asyncio.TimeoutError:
                pass
        logger.info("Scheduler loop stopped")

    async def start(self) -> None:
        self._shutdown_event = asyncio.Event()
        self._loop_task = asyncio.create_task(self._loop())

    async def stop(self, drain_timeout: float | None = None) -> None:
        if self._shutdown_event:
            self._shutdown_event.set()

        if self._loop_task:
            try:
                await asyncio.wait_for(self._loop_task, timeout=STOP_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("Scheduler loop did not stop gracefully, cancelling")
                self._loop_task.cancel()
                try:
                    await self._loop_task
                except asyncio.CancelledError:
                    pass

        await self.drain(
            timeout=drain_timeout
            if drain_timeout is not None
            else self.settings.transport_timeout_seconds
        )
        if self.is_leader:
            try:
                await self.release_lease()
            except Exception as e:
                logger.warning(f"Could not release leader lease at shutdown: {e}")

        self._loop_task = None
        self._shutdown_event = None
