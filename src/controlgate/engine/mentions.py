"""Mention routing and task-thread subscriptions."""

import logging
import re
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from controlgate.db.repositories import (
    ActivityRepository,
    AgentRepository,
    MessageRepository,
    NotificationRepository,
    SubscriptionRepository,
)
from controlgate.models import (
    ActivityType,
    Agent,
    PostedMessage,
    Subscription,
    SubscriptionReason,
)
from controlgate.observability.metrics import metrics

logger = logging.getLogger(__name__)

HQ_CHANNEL = "hq"
BROADCAST_MENTION = "all"

_MENTION = re.compile(r"@([a-zA-Z0-9_]+)")


def parse_mentions(text: str) -> list[str]:
    """Lower-cased unique mention tokens in order of first appearance."""
    seen: list[str] = []
    for token in _MENTION.findall(text or ""):
        lowered = token.lower()
        if lowered not in seen:
            seen.append(lowered)
    return seen


def task_id_from_channel(channel: str) -> UUID | None:
    """``task:<uuid>`` channels belong to that task's thread."""
    if not channel.startswith("task:"):
        return None
    try:
        return UUID(channel[len("task:"):])
    except ValueError:
        return None


class SubscriptionTracker:
    """Idempotent (task, agent) subscriptions."""

    def __init__(self, session: AsyncSession):
        self.subscriptions = SubscriptionRepository(session)

    async def subscribe(
        self, task_id: UUID, agent_id: UUID, reason: SubscriptionReason
    ) -> Subscription:
        subscription, created = await self.subscriptions.subscribe(task_id, agent_id, reason)
        if created:
            logger.debug(f"Agent {agent_id} subscribed to task {task_id} ({reason.value})")
        return subscription

    async def list_for_task(self, task_id: UUID) -> list[Subscription]:
        return await self.subscriptions.list_for_task(task_id)

    async def list_for_agent(self, agent_id: UUID) -> list[Subscription]:
        return await self.subscriptions.list_for_agent(agent_id)


class MentionRouter:
    """Turns inbound messages into notifications and subscriptions.

    Agent-to-agent chatter only notifies explicit @name mentions; a human
    message in a task thread wakes every subscriber. ``@all`` is honoured
    only from humans so agents cannot start broadcast storms. Agent posts
    in the HQ channel are never routed.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.agents = AgentRepository(session)
        self.messages = MessageRepository(session)
        self.notifications = NotificationRepository(session)
        self.activities = ActivityRepository(session)
        self.tracker = SubscriptionTracker(session)

    async def post_message(
        self,
        channel: str,
        content: str,
        from_agent_id: UUID | None = None,
        task_id: UUID | None = None,
        from_user: str | None = None,
    ) -> PostedMessage:
        """Store a message and fan out its notifications."""
        task_id = task_id or task_id_from_channel(channel)
        mentions = parse_mentions(content)
        if from_agent_id is None:
            from_user = from_user or "user"

        message = await self.messages.create(
            channel=channel,
            content=content,
            task_id=task_id,
            from_agent_id=from_agent_id,
            from_user=from_user,
            mentions=mentions,
        )

        sender = await self.agents.get(from_agent_id) if from_agent_id else None
        sender_name = sender.name if sender else (from_user or "unknown")
        await self.activities.log(
            ActivityType.MESSAGE_SENT,
            f"{sender_name} posted in {channel}",
            task_id=task_id,
            agent_id=from_agent_id,
            details={"channel": channel, "message_id": str(message.id), "mentions": mentions},
        )

        posted = PostedMessage(message=message)
        if from_agent_id and task_id:
            await self._subscribe(posted, task_id, from_agent_id, SubscriptionReason.COMMENTED)

        notified: set[UUID] = set()
        if mentions and (channel != HQ_CHANNEL or message.is_human):
            await self._route_mentions(posted, sender, mentions, notified)

        if message.is_human and task_id:
            for subscription in await self.tracker.list_for_task(task_id):
                if subscription.agent_id in notified:
                    continue
                await self._notify(
                    posted,
                    subscription.agent_id,
                    f"New thread update in {channel}: {content}",
                )
                notified.add(subscription.agent_id)

        return posted

    async def _route_mentions(
        self,
        posted: PostedMessage,
        sender: Agent | None,
        mentions: list[str],
        notified: set[UUID],
    ) -> None:
        message = posted.message
        sender_id = sender.id if sender else None

        if BROADCAST_MENTION in mentions:
            if message.is_human:
                for agent in await self.agents.list(include_blocked=False):
                    if agent.id == sender_id or agent.id in notified:
                        continue
                    await self._notify(
                        posted, agent.id, f"Mentioned in {message.channel}: {message.content}"
                    )
                    notified.add(agent.id)
                    if message.task_id:
                        await self._subscribe(
                            posted, message.task_id, agent.id, SubscriptionReason.MENTIONED
                        )
            else:
                metrics.inc_counter("mentions.broadcast_suppressed")
                logger.info(
                    f"Suppressed @all from agent {sender.name if sender else sender_id} "
                    f"in {message.channel}"
                )

        for name in mentions:
            if name == BROADCAST_MENTION:
                continue
            agent = await self.agents.get_by_name(name)
            if not agent or agent.id == sender_id or agent.id in notified:
                continue
            await self._notify(
                posted, agent.id, f"You were mentioned in {message.channel}: {message.content}"
            )
            notified.add(agent.id)
            if message.task_id:
                await self._subscribe(
                    posted, message.task_id, agent.id, SubscriptionReason.MENTIONED
                )

    async def _notify(self, posted: PostedMessage, agent_id: UUID, content: str) -> None:
        await self.notifications.create(
            target_agent_id=agent_id,
            content=content,
            source_task_id=posted.message.task_id,
            source_message_id=posted.message.id,
        )
        posted.notified_agent_ids.append(agent_id)
        metrics.inc_counter("notifications.created")

    async def _subscribe(
        self,
        posted: PostedMessage,
        task_id: UUID,
        agent_id: UUID,
        reason: SubscriptionReason,
    ) -> None:
        await self.tracker.subscribe(task_id, agent_id, reason)
        if agent_id not in posted.subscribed_agent_ids:
            posted.subscribed_agent_ids.append(agent_id)
