"""Append-only message log per conversation.

Appends to one conversation are serialized in-process by a lock keyed on
the conversation id, which assigns the next ``sequence``. The
(conversation_id, sequence) unique constraint catches races between
processes; a collision there is retried with the next number.
"""

from __future__ import annotations

import asyncio
import uuid
import weakref

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from concierge.core.clock import Clock, utcnow
from concierge.core.exceptions import DatabaseConnectionError, DuplicateMessageError
from concierge.models.message import Message

logger = structlog.get_logger(__name__)

_MAX_SEQUENCE_ATTEMPTS = 3


class ConversationSequencer:
    """Hands out one asyncio.Lock per conversation.

    Locks are weakly held: once no append is in flight for a conversation
    its lock is dropped.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def lock_for(self, conversation_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock


class MessageStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sequencer: ConversationSequencer | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._sequencer = sequencer or ConversationSequencer()
        self._clock = clock

    async def append(
        self,
        conversation_id: uuid.UUID,
        role: str,
        body: str,
        media_url: str | None = None,
        response_latency_ms: int | None = None,
        responded_within_target: bool | None = None,
        message_id: uuid.UUID | None = None,
    ) -> Message:
        """Persist and commit one message at the end of the conversation.

        ``message_id`` lets a client pick the id up front so it can
        recognise its own message when the fanout copy arrives. Reusing an
        id raises DuplicateMessageError.
        """
        async with self._sequencer.lock_for(conversation_id):
            for attempt in range(_MAX_SEQUENCE_ATTEMPTS):
                async with self._session_factory() as session:
                    if message_id is not None and await session.get(Message, message_id):
                        raise DuplicateMessageError()
                    last = await session.scalar(
                        select(func.max(Message.sequence)).where(
                            Message.conversation_id == conversation_id
                        )
                    )
                    message = Message(
                        id=message_id or uuid.uuid4(),
                        conversation_id=conversation_id,
                        sequence=(last or 0) + 1,
                        role=role,
                        body=body,
                        media_url=media_url,
                        response_latency_ms=response_latency_ms,
                        responded_within_target=responded_within_target,
                        created_at=self._clock(),
                    )
                    session.add(message)
                    try:
                        await session.commit()
                    except IntegrityError:
                        await session.rollback()
                        logger.warning(
                            "message_sequence_collision",
                            conversation_id=str(conversation_id),
                            attempt=attempt + 1,
                        )
                        continue
                return message
        raise DatabaseConnectionError("Could not append message after repeated sequence collisions")

    async def history(self, conversation_id: uuid.UUID) -> list[Message]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.sequence.asc())
            )
            return list(result.scalars().all())

    async def latest(self, conversation_id: uuid.UUID, role: str | None = None) -> Message | None:
        stmt = select(Message).where(Message.conversation_id == conversation_id)
        if role is not None:
            stmt = stmt.where(Message.role == role)
        stmt = stmt.order_by(Message.sequence.desc()).limit(1)
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def mark_seen(self, conversation_id: uuid.UUID) -> int:
        """Flag every unseen message in the conversation as seen."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Message)
                .where(Message.conversation_id == conversation_id, Message.seen.is_(False))
                .values(seen=True)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount
