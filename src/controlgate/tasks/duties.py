"""Leader-gated duties run by the scheduler on the lease holder only."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from controlgate.config import Settings, settings as default_settings
from controlgate.db.base import get_session_factory, unit_of_work
from controlgate.db.repositories import AgentRepository, MessageRepository
from controlgate.engine.errors import TransportError
from controlgate.engine.mentions import HQ_CHANNEL, MentionRouter, parse_mentions
from controlgate.models import Agent, AgentStatus, Message
from controlgate.observability.metrics import metrics
from controlgate.transport.base import AgentTransport
from controlgate.utils.text import truncate

logger = logging.getLogger("controlgate.duties")

TEAM_MENTIONS = frozenset({"all", "everyone", "team"})
HQ_REPLY_MAX_CHARS = 4000


def build_hq_prompt(agent: Agent, message: Message) -> str:
    return (
        f"You are {agent.name}, an AI agent in Mission Control.\n\n"
        f'CONTEXT: A user sent a message in the "HQ" channel.\n'
        f'MESSAGE: "{message.content}"\n\n'
        "INSTRUCTIONS:\n"
        "1. Read the message.\n"
        "2. Reply with your answer only; your reply is posted back to HQ.\n"
        "3. Keep it short. Mention teammates with @name if they need to act."
    )


class HqResponderDuty:
    """Answers human HQ messages by running each mentioned agent.

    A message is taken with a conditional ``handled_at`` update, so even a
    stale leader cannot answer the same message twice.
    """

    def __init__(
        self,
        transport: AgentTransport,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        config: Settings | None = None,
    ):
        self.transport = transport
        self.settings = config or default_settings
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def run_once(self) -> int:
        """Handle the oldest unanswered HQ message. Returns replies posted."""
        async with unit_of_work(self.session_factory) as session:
            messages = MessageRepository(session)
            message = await messages.next_unhandled_human(HQ_CHANNEL)
            if message is None or not await messages.mark_handled(message.id):
                return 0
            targets = await self._resolve_targets(AgentRepository(session), message)

        if not targets:
            logger.debug(f"HQ message {message.id} has no mentions; skipping")
            return 0

        replies = 0
        for agent in targets:
            if await self._answer(agent, message):
                replies += 1
        return replies

    async def _resolve_targets(self, agents: AgentRepository, message: Message) -> list[Agent]:
        mentions = message.mentions or parse_mentions(message.content)
        if any(m in TEAM_MENTIONS for m in mentions):
            candidates = await agents.list(include_blocked=False)
        else:
            candidates = [a for a in [await agents.get_by_name(m) for m in mentions] if a]
        return [a for a in candidates if a.has_session()]

    async def _answer(self, agent: Agent, message: Message) -> bool:
        await self._set_status(agent, AgentStatus.ACTIVE)
        try:
            result = await self.transport.send(
                agent.runtime_agent_id,
                agent.session_key,
                build_hq_prompt(agent, message),
                timeout_seconds=self.settings.transport_timeout_seconds,
            )
        except TransportError as e:
            metrics.inc_counter("hq.reply_failed")
            logger.warning(f"HQ reply from {agent.name} failed: {truncate(e.message, 200)}")
            return False
        finally:
            await self._set_status(agent, AgentStatus.IDLE)

        reply = (result.response_text or "").strip()
        if not reply:
            return False
        async with unit_of_work(self.session_factory) as session:
            await MentionRouter(session).post_message(
                HQ_CHANNEL, truncate(reply, HQ_REPLY_MAX_CHARS), from_agent_id=agent.id
            )
        metrics.inc_counter("hq.replied")
        logger.info(f"{agent.name} replied to HQ message {message.id}")
        return True

    async def _set_status(self, agent: Agent, status: AgentStatus) -> None:
        async with unit_of_work(self.session_factory) as session:
            await AgentRepository(session).update(agent.id, status=status)


class ModelSyncDuty:
    """Pushes changed agent thinking models to the agent runtime."""

    def __init__(
        self,
        transport: AgentTransport,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.transport = transport
        self._session_factory = session_factory
        self.known_models: dict[str, str | None] = {}

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def run_once(self) -> int:
        """Sync every agent whose model changed since the last run. Returns syncs made."""
        async with unit_of_work(self.session_factory) as session:
            agents = await AgentRepository(session).list()

        synced = 0
        for agent in agents:
            current = agent.thinking_model
            if agent.name not in self.known_models:
                self.known_models[agent.name] = current
                continue
            if self.known_models[agent.name] == current:
                continue
            if current:
                try:
                    await self.transport.set_model(agent.runtime_agent_id, current)
                except TransportError as e:
                    logger.warning(
                        f"Model sync for {agent.name} failed: {truncate(e.message, 200)}"
                    )
                    continue
                synced += 1
                logger.info(f"Synced {agent.name} to model {current}")
            self.known_models[agent.name] = current
        return synced
