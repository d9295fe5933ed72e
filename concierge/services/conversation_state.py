"""Conversation lifecycle: ACTIVE <-> ESCALATED, anything -> EXPIRED.

EXPIRED is terminal and read-only; new activity from the same customer
opens a new conversation. ``live_mode`` is only ever true while the
conversation is ESCALATED. Expiry is cooperative: it happens when a
conversation is touched after sitting idle, never on a timer.
"""

from __future__ import annotations

import uuid
from datetime import timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from concierge.core.clock import Clock, as_utc, utcnow
from concierge.core.exceptions import (
    ConversationExpiredError,
    ConversationNotFoundError,
    ConversationNotIdleError,
)
from concierge.models.conversation import Conversation, ConversationState
from concierge.models.customer import Customer
from concierge.models.tenant import Tenant
from concierge.services.mailer import Notifier, TemplateKind

logger = structlog.get_logger(__name__)


class ConversationStateMachine:
    """Owns every state transition of a conversation.

    Each transition runs in its own short transaction and locks the
    conversation row (``SELECT ... FOR UPDATE``) so concurrent transitions
    on the same conversation serialize.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier,
        idle_timeout: timedelta = timedelta(minutes=30),
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._idle_timeout = idle_timeout
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def is_idle(self, conversation: Conversation) -> bool:
        return self._clock() - as_utc(conversation.last_activity_at) > self._idle_timeout

    async def get(self, conversation_id: uuid.UUID) -> Conversation:
        async with self._session_factory() as session:
            conversation = await session.get(Conversation, conversation_id)
        if conversation is None:
            raise ConversationNotFoundError()
        return conversation

    async def tenant_of(self, conversation_id: uuid.UUID) -> uuid.UUID:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Customer.tenant_id)
                .join(Conversation, Conversation.customer_id == Customer.id)
                .where(Conversation.id == conversation_id)
            )
            tenant_id = result.scalar_one_or_none()
        if tenant_id is None:
            raise ConversationNotFoundError()
        return tenant_id

    # ------------------------------------------------------------------ #
    # Creation
    # ------------------------------------------------------------------ #

    async def open(self, customer_id: uuid.UUID, title: str | None = None) -> Conversation:
        """Open a new ACTIVE conversation for a customer."""
        now = self._clock()
        async with self._session_factory() as session:
            count = await session.scalar(
                select(func.count(Conversation.id)).where(
                    Conversation.customer_id == customer_id
                )
            )
            conversation = Conversation(
                customer_id=customer_id,
                title=title,
                state=ConversationState.ACTIVE,
                live_mode=False,
                conversation_number=(count or 0) + 1,
                last_activity_at=now,
                created_at=now,
                updated_at=now,
            )
            session.add(conversation)
            await session.commit()
        logger.info(
            "conversation_opened",
            conversation_id=str(conversation.id),
            customer_id=str(customer_id),
            conversation_number=conversation.conversation_number,
        )
        return conversation

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #

    async def _lock(self, session: AsyncSession, conversation_id: uuid.UUID) -> Conversation:
        result = await session.execute(
            select(Conversation).where(Conversation.id == conversation_id).with_for_update()
        )
        conversation = result.scalar_one_or_none()
        if conversation is None:
            raise ConversationNotFoundError()
        return conversation

    @staticmethod
    def _ensure_open(conversation: Conversation) -> None:
        if conversation.state == ConversationState.EXPIRED:
            raise ConversationExpiredError()

    async def escalate(
        self, conversation_id: uuid.UUID, reason: str | None = None
    ) -> Conversation:
        """Hand the conversation to a human operator.

        The tenant owner is notified only on the ACTIVE -> ESCALATED edge;
        escalating an already escalated conversation changes nothing else.
        """
        async with self._session_factory() as session:
            conversation = await self._lock(session, conversation_id)
            self._ensure_open(conversation)
            edge = conversation.state == ConversationState.ACTIVE
            conversation.state = ConversationState.ESCALATED
            conversation.live_mode = True
            conversation.updated_at = self._clock()
            await session.commit()

            owner_email = None
            customer_email = None
            if edge:
                row = (
                    await session.execute(
                        select(Tenant.owner_email, Customer.email)
                        .join(Customer, Customer.tenant_id == Tenant.id)
                        .where(Customer.id == conversation.customer_id)
                    )
                ).one_or_none()
                if row is not None:
                    owner_email, customer_email = row

        if edge:
            logger.info(
                "conversation_escalated",
                conversation_id=str(conversation_id),
                reason=reason,
            )
            self._notifier.notify(
                owner_email,
                TemplateKind.ESCALATION,
                {
                    "conversation_id": str(conversation_id),
                    "title": conversation.title,
                    "customer_email": customer_email,
                    "reason": reason or "customer_request",
                },
            )
        return conversation

    async def hand_back(self, conversation_id: uuid.UUID) -> Conversation:
        """Return the conversation to the assistant."""
        async with self._session_factory() as session:
            conversation = await self._lock(session, conversation_id)
            self._ensure_open(conversation)
            if conversation.state != ConversationState.ACTIVE or conversation.live_mode:
                conversation.state = ConversationState.ACTIVE
                conversation.live_mode = False
                conversation.updated_at = self._clock()
                await session.commit()
                logger.info("conversation_handed_back", conversation_id=str(conversation_id))
        return conversation

    async def expire(self, conversation_id: uuid.UUID) -> Conversation:
        """Close an idle conversation for good.

        Raises ConversationNotIdleError while the idle threshold has not
        passed. Expiring an expired conversation is a no-op.
        """
        async with self._session_factory() as session:
            conversation = await self._lock(session, conversation_id)
            if conversation.state == ConversationState.EXPIRED:
                return conversation
            if not self.is_idle(conversation):
                raise ConversationNotIdleError()
            conversation.state = ConversationState.EXPIRED
            conversation.live_mode = False
            conversation.updated_at = self._clock()
            await session.commit()
        logger.info("conversation_expired", conversation_id=str(conversation_id))
        return conversation

    async def check_expiry(self, conversation_id: uuid.UUID) -> Conversation:
        """Expire the conversation if it has been idle too long; return it."""
        conversation = await self.get(conversation_id)
        if conversation.state != ConversationState.EXPIRED and self.is_idle(conversation):
            return await self.expire(conversation_id)
        return conversation

    async def record_activity(self, conversation_id: uuid.UUID) -> Conversation:
        async with self._session_factory() as session:
            conversation = await self._lock(session, conversation_id)
            self._ensure_open(conversation)
            conversation.last_activity_at = self._clock()
            await session.commit()
        return conversation

    async def set_live_mode(self, conversation_id: uuid.UUID, live: bool) -> Conversation:
        """Operator toggle. Turning live mode on also escalates the conversation."""
        async with self._session_factory() as session:
            conversation = await self._lock(session, conversation_id)
            self._ensure_open(conversation)
            if live:
                conversation.state = ConversationState.ESCALATED
            conversation.live_mode = live
            conversation.updated_at = self._clock()
            await session.commit()
        logger.info(
            "conversation_live_mode_set",
            conversation_id=str(conversation_id),
            live_mode=live,
        )
        return conversation

    async def set_favorite(self, conversation_id: uuid.UUID, is_favorite: bool) -> Conversation:
        async with self._session_factory() as session:
            conversation = await self._lock(session, conversation_id)
            conversation.is_favorite = is_favorite
            await session.commit()
        return conversation
