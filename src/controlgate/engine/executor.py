"""Dispatch executor - runs a claimed lane through the agent transport."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from controlgate.config import Settings, settings as default_settings
from controlgate.db.base import get_session_factory, unit_of_work
from controlgate.db.repositories import ActivityRepository, SettingsRepository
from controlgate.engine.classify import (
    is_failure_status,
    is_rate_limit_error,
    is_transient_error,
    looks_like_execution_error,
    model_provider,
)
from controlgate.engine.dispatch import DispatchLaneManager
from controlgate.engine.errors import PermanentExecutionError, RateLimitError, TransportError
from controlgate.models import ActivityType, Agent, DispatchClaim
from controlgate.observability.metrics import metrics
from controlgate.transport.base import NON_JSON_OUTPUT, AgentTransport, TransportResult
from controlgate.utils.text import compact, truncate

logger = logging.getLogger(__name__)

PROBE_DISPATCH_STARTED = "probe:last_dispatch_started"
PROBE_DISPATCH_RESULT = "probe:last_dispatch_result"

PREVIEW_MAX_CHARS = 800
THREAD_LINE_MAX_CHARS = 180


def normalize_model(model: str | None) -> str:
    return (model or "").strip()


def run_error_detail(run: TransportResult) -> str:
    """Error text if the run reported a failure, else an empty string."""
    detail = run.response_text or run.status_summary or "Agent runtime reported non-ok status"
    if looks_like_execution_error(detail):
        return detail
    if is_failure_status(run.status) and run.summary != NON_JSON_OUTPUT:
        return detail
    return ""


class DispatchExecutor:
    """Executes claimed dispatch lanes.

    Holds the per-process provider cooldown map: a provider that hit a rate
    limit is skipped when picking models until its cooldown expires.
    """

    def __init__(
        self,
        transport: AgentTransport,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        config: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.transport = transport
        self.settings = config or default_settings
        self._session_factory = session_factory
        self._clock = clock
        self._sleep = sleep
        self.provider_cooldowns: dict[str, float] = {}

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    # ------------------------------------------------------------------
    # Provider cooldown and model plan
    # ------------------------------------------------------------------

    def mark_provider_cooldown(self, provider: str) -> None:
        self.provider_cooldowns[provider] = self._clock() + self.settings.provider_cooldown_seconds
        metrics.inc_counter("dispatch.provider_cooldown")

    def provider_cooldown_remaining(self, provider: str) -> float:
        until = self.provider_cooldowns.get(provider)
        if until is None:
            return 0.0
        remaining = until - self._clock()
        if remaining <= 0:
            self.provider_cooldowns.pop(provider, None)
            return 0.0
        return remaining

    def is_cooling_down(self, model: str) -> bool:
        provider = model_provider(model)
        return bool(provider) and self.provider_cooldown_remaining(provider) > 0

    def build_model_plan(self, agent: Agent) -> list[str]:
        """Thinking model, fallback model, then configured fallbacks, deduplicated."""
        plan: list[str] = []
        candidates = [agent.thinking_model, agent.fallback_model, *self.settings.rate_limit_fallback_models]
        for candidate in candidates:
            model = normalize_model(candidate)
            if model and model not in plan:
                plan.append(model)
        return plan

    def pick_initial_model(self, plan: list[str]) -> str | None:
        for model in plan:
            if not self.is_cooling_down(model):
                return model
        return None

    def pick_next_model(self, plan: list[str], attempted: set[str]) -> str | None:
        for model in plan:
            if model not in attempted and not self.is_cooling_down(model):
                return model
        return None

    # ------------------------------------------------------------------
    # Prompt
    # ------------------------------------------------------------------

    def build_prompt(self, claim: DispatchClaim) -> str:
        task, agent, lane = claim.task, claim.agent, claim.lane
        tags = ", ".join(task.tags) or "none"
        collaborators = ", ".join(a.name for a in claim.collaborators) or "none"
        limit = self.settings.thread_context_limit
        thread = claim.thread[-limit:] if limit else []
        thread_lines = "\n".join(
            f"{'USER/HQ' if m.from_agent_id is None else 'AGENT'}: "
            f"{truncate(compact(m.content), THREAD_LINE_MAX_CHARS)}"
            for m in thread
        )
        description = truncate(
            task.description or "No description provided.", self.settings.description_max_chars
        )
        note = (
            truncate(lane.prompt, self.settings.dispatch_note_max_chars)
            if lane.prompt and lane.prompt.strip()
            else ""
        )

        lines = [
            f"You are {agent.name} ({agent.role or 'agent'}, {agent.level.value}).",
            f"Task: {truncate(task.title, 180)}",
            f"Priority: {task.priority.value}",
            f"Tags: {tags}",
            "Task description:",
            description,
            f"Dispatch note from HQ:\n{note}" if note else "",
            f"Collaborators assigned on this task: {collaborators}.",
            "Your output should include:",
            "1) what you changed or validated,",
            "2) concrete handoff notes for collaborators,",
            "3) blockers (if any) prefixed with BLOCKED:.",
            "Keep it concise and actionable.",
            "Recent task thread context:",
            thread_lines or "No prior thread messages.",
        ]
        prompt = "\n".join(line for line in lines if line)
        return truncate(prompt, self.settings.dispatch_message_max_chars)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, claim: DispatchClaim, runner_id: str) -> str:
        """Run one claimed lane to completion. Never raises.

        Returns completed, failed or cancelled.
        """
        try:
            return await self._execute(claim, runner_id)
        except Exception as e:
            logger.error(f"Dispatch lane {claim.lane_id} crashed: {e}", exc_info=True)
            try:
                async with unit_of_work(self.session_factory) as session:
                    await DispatchLaneManager(session, self.settings).fail(
                        claim.lane_id, f"Dispatcher error: {e}"
                    )
            except Exception as fail_error:
                logger.error(
                    f"Could not record failure for lane {claim.lane_id}: {fail_error}",
                    exc_info=True,
                )
            return "failed"

    async def _execute(self, claim: DispatchClaim, runner_id: str) -> str:
        async with unit_of_work(self.session_factory) as session:
            cancelled = await DispatchLaneManager(session, self.settings).should_cancel(claim.lane_id)
        if cancelled:
            await self._write_probe_result(
                claim, "cancelled", self._clock(), runner_id,
                preview="Dispatch was cancelled before execution.",
            )
            return "cancelled"

        started = self._clock()
        agent_id = claim.agent.runtime_agent_id
        prompt = self.build_prompt(claim)
        plan = self.build_model_plan(claim.agent)
        active_model = self.pick_initial_model(plan) or normalize_model(claim.agent.thinking_model)

        await self._write_probe(
            PROBE_DISPATCH_STARTED,
            {
                "lane_id": str(claim.lane_id),
                "task_id": str(claim.task.id),
                "task_title": truncate(claim.task.title, 140),
                "target_agent_id": agent_id,
                "target_name": claim.agent.name,
                "runner": runner_id,
                "mode": "collaborative_lane" if claim.collaborators else "single_lane",
            },
        )
        await self._log_update(
            claim,
            f"Starting dispatch lane via {agent_id}" + (f" on {active_model}." if active_model else "."),
        )

        try:
            run = await self._run_with_fallback(claim, agent_id, prompt, plan, active_model)
        except Exception as e:
            message = e.message if isinstance(e, TransportError) else str(e)
            await self._log_update(claim, f"Lane failed: {truncate(message, 400)}")
            async with unit_of_work(self.session_factory) as session:
                await DispatchLaneManager(session, self.settings).fail(claim.lane_id, message)
            await self._write_probe_result(
                claim, "failed", started, runner_id, preview="Dispatch lane failed.", error=message
            )
            return "failed"

        preview = truncate(
            run.response_text
            or f"{run.status or 'ok'}" + (f" ({run.summary})" if run.summary else ""),
            PREVIEW_MAX_CHARS,
        )
        await self._log_update(claim, f"Lane finished: {preview}")
        async with unit_of_work(self.session_factory) as session:
            completed = await DispatchLaneManager(session, self.settings).complete(
                claim.lane_id, run_id=run.run_id, result_preview=preview
            )
        if not completed:
            logger.info(f"Lane {claim.lane_id} was no longer running when its run finished")
        await self._write_probe_result(
            claim, "success", started, runner_id, preview=preview, run_id=run.run_id
        )
        return "completed"

    async def _run_with_fallback(
        self,
        claim: DispatchClaim,
        agent_id: str,
        prompt: str,
        plan: list[str],
        active_model: str,
    ) -> TransportResult:
        """Run the turn, switching models while providers report rate limits."""
        attempted: set[str] = set()
        while True:
            if active_model and active_model not in attempted:
                await self._set_model(agent_id, active_model)
            if active_model:
                attempted.add(active_model)

            try:
                run = await self._send_with_retry(agent_id, claim.session_key, prompt)
                detail = run_error_detail(run)
            except RateLimitError as e:
                detail = e.message

            if not detail:
                return run

            if is_rate_limit_error(detail):
                provider = model_provider(active_model)
                if provider:
                    self.mark_provider_cooldown(provider)
                    logger.warning(
                        f"Rate limit on provider={provider} model={active_model}; "
                        f"cooldown {self.settings.provider_cooldown_seconds}s"
                    )
                next_model = self.pick_next_model(plan, attempted)
                if next_model:
                    active_model = next_model
                    await self._log_update(
                        claim,
                        f"Rate limit detected{f' on {provider}' if provider else ''}; "
                        f"retrying lane on {next_model}.",
                    )
                    continue
                raise RateLimitError(detail, provider)

            raise PermanentExecutionError(detail)

    async def _send_with_retry(self, agent_id: str, session_key: str, prompt: str) -> TransportResult:
        attempts = self.settings.transport_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await self.transport.send(
                    agent_id,
                    session_key,
                    prompt,
                    timeout_seconds=self.settings.transport_timeout_seconds,
                )
            except TransportError as e:
                if attempt >= attempts or not is_transient_error(e.message):
                    raise
                metrics.inc_counter("dispatch.transient_retry")
                logger.warning(
                    f"Transient transport error for {agent_id} (attempt {attempt}/{attempts}): "
                    f"{truncate(e.message, 200)}"
                )
                await self._sleep(self.settings.transport_retry_delay_seconds * attempt)
        raise TransportError("Agent run failed without error details")

    async def _set_model(self, agent_id: str, model: str) -> None:
        try:
            await self.transport.set_model(agent_id, model)
        except TransportError as e:
            logger.warning(f"Model set failed agent={agent_id} model={model}: {truncate(e.message, 220)}")

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def _log_update(self, claim: DispatchClaim, update: str) -> None:
        async with unit_of_work(self.session_factory) as session:
            await ActivityRepository(session).log(
                ActivityType.SUBAGENT_UPDATE,
                f"{claim.agent.name}: {update}",
                task_id=claim.task.id,
                agent_id=claim.agent.id,
                details={"lane_id": str(claim.lane_id)},
            )

    async def _write_probe(self, key: str, value: dict[str, Any]) -> None:
        try:
            async with unit_of_work(self.session_factory) as session:
                await SettingsRepository(session).set(key, {"at": time.time(), **value})
        except Exception as e:
            logger.warning(f"Could not write {key}: {e}")

    async def _write_probe_result(
        self,
        claim: DispatchClaim,
        status: str,
        started: float,
        runner_id: str,
        preview: str,
        run_id: str | None = None,
        error: str | None = None,
    ) -> None:
        await self._write_probe(
            PROBE_DISPATCH_RESULT,
            {
                "duration_ms": int((self._clock() - started) * 1000),
                "lane_id": str(claim.lane_id),
                "task_id": str(claim.task.id),
                "task_title": truncate(claim.task.title, 140),
                "target_name": claim.agent.name,
                "status": status,
                "run_id": run_id,
                "final_preview": truncate(preview, 400),
                "error": truncate(error, 800) if error else None,
                "runner": runner_id,
            },
        )
