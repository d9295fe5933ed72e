"""Conversation orchestrator: runs one customer turn end to end.

Turn flow:
  1. Resolve who is talking (session token, or a new anonymous customer).
  2. Resolve the conversation, opening a new one when the old one expired.
  3. Persist and publish the inbound message.
  4. In live mode stop there: a human operator answers.
  5. Otherwise ask the assistant, act on its intent (book, reserve,
     escalate), then persist and publish the reply.

The inbound message is committed before the assistant is called, so an
assistant outage never loses what the customer wrote.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from concierge.core.clock import Clock, as_utc, utcnow
from concierge.core.exceptions import (
    AssistantUnavailableError,
    BookingTimeoutError,
    CustomerNotFoundError,
    InsufficientStockError,
    ProductNotFoundError,
    SlotConflictError,
    SlotNotOfferedError,
)
from concierge.models.conversation import Conversation, ConversationState
from concierge.models.customer import Customer
from concierge.models.message import ROLE_ASSISTANT, ROLE_USER, Message
from concierge.models.tenant import Tenant
from concierge.services.assistant import (
    Assistant,
    AssistantContext,
    AssistantReply,
    BookingIntent,
    ReservationIntent,
    to_langchain_messages,
    window_history,
)
from concierge.services.booking import BookingCoordinator
from concierge.services.conversation_state import ConversationStateMachine
from concierge.services.fanout import FanoutHub
from concierge.services.messages import MessageStore
from concierge.services.reservations import ReservationService
from concierge.services.session_tokens import SessionIdentity, SessionTokenService

logger = structlog.get_logger(__name__)

EMAIL_RE = re.compile(r"[a-zA-Z0-9._-]+@[a-zA-Z0-9._-]+\.[a-zA-Z0-9_-]+")
_TITLE_MAX = 60

FALLBACK_REPLY = (
    "Thanks for your message! We're having trouble answering right now, "
    "but we'll get back to you as soon as possible."
)


def extract_email(content: str) -> str | None:
    match = EMAIL_RE.search(content)
    return match.group(0).lower() if match else None


def derive_title(content: str) -> str:
    """First line of the opening message, whitespace collapsed, at most 60 chars."""
    first_line = next((line for line in content.splitlines() if line.strip()), "")
    title = " ".join(first_line.split())
    if len(title) > _TITLE_MAX:
        title = title[: _TITLE_MAX - 1].rstrip() + "…"
    return title or "New conversation"


def message_event(message: Message) -> dict[str, Any]:
    return {
        "type": "message",
        "message_id": str(message.id),
        "conversation_id": str(message.conversation_id),
        "sequence": message.sequence,
        "role": message.role,
        "body": message.body,
        "media_url": message.media_url,
        "created_at": as_utc(message.created_at).isoformat(),
    }


def state_event(conversation: Conversation) -> dict[str, Any]:
    return {
        "type": "state",
        "conversation_id": str(conversation.id),
        "state": ConversationState(conversation.state).value,
        "live_mode": conversation.live_mode,
    }


@dataclass(frozen=True)
class TurnResult:
    """What the widget needs after one customer turn.

    ``reply`` is None in live mode (a human will answer). ``session_token``
    is set only when a new or refreshed token was issued. ``pending`` is
    True when the assistant could not answer and the customer was told
    someone will follow up. ``message_id`` is the stored id of the
    customer's own message.
    """

    reply: str | None
    conversation_id: uuid.UUID
    session_token: str | None
    live_mode: bool
    pending: bool = False
    media_url: str | None = None
    message_id: uuid.UUID | None = None


class ConversationOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tokens: SessionTokenService,
        state_machine: ConversationStateMachine,
        messages: MessageStore,
        hub: FanoutHub,
        assistant: Assistant,
        bookings: BookingCoordinator,
        reservations: ReservationService,
        history_window: int = 10,
        response_target: timedelta = timedelta(hours=2),
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._tokens = tokens
        self._state = state_machine
        self._messages = messages
        self._hub = hub
        self._assistant = assistant
        self._bookings = bookings
        self._reservations = reservations
        self._history_window = history_window
        self._response_target = response_target
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Customer turn
    # ------------------------------------------------------------------ #

    async def handle_message(
        self,
        tenant: Tenant,
        content: str,
        conversation_id: uuid.UUID | None = None,
        session_token: str | None = None,
        media_url: str | None = None,
        client_message_id: uuid.UUID | None = None,
    ) -> TurnResult:
        identity = self._tokens.validate(session_token)
        customer = await self._resolve_customer(tenant, identity)
        reissue = identity is None or customer.id != identity.customer_id

        email = extract_email(content)
        if email and customer.email is None:
            customer = await self._attach_email(tenant, customer, email)
            reissue = True

        known_customers = {customer.id}
        if identity is not None:
            known_customers.add(identity.customer_id)
        if conversation_id is None and identity is not None:
            conversation_id = _uuid_or_none(identity.attributes.get("conversation_id"))
        conversation = await self._resolve_conversation(
            customer, known_customers, conversation_id, content
        )
        if identity is not None and str(conversation.id) != identity.attributes.get(
            "conversation_id"
        ):
            reissue = True

        conversation = await self._state.record_activity(conversation.id)
        inbound = await self._messages.append(
            conversation.id,
            ROLE_USER,
            content,
            media_url=media_url,
            message_id=client_message_id,
        )
        await self._touch_customer(customer.id)
        await self._hub.publish(str(conversation.id), message_event(inbound))

        token = self._token_for(customer, conversation, session_token, reissue)

        if conversation.live_mode:
            logger.info(
                "turn_routed_to_operator",
                conversation_id=str(conversation.id),
                tenant_id=str(tenant.id),
            )
            return TurnResult(
                reply=None,
                conversation_id=conversation.id,
                session_token=token,
                live_mode=True,
                message_id=inbound.id,
            )

        history = await self._messages.history(conversation.id)
        prior = to_langchain_messages(
            [(m.role, m.body) for m in history if m.id != inbound.id]
        )
        context = await self._build_context(tenant, customer)
        try:
            reply = await self._assistant.respond(
                context, window_history(prior, self._history_window), content
            )
        except AssistantUnavailableError:
            logger.warning(
                "assistant_unavailable_fallback",
                conversation_id=str(conversation.id),
            )
            return TurnResult(
                reply=FALLBACK_REPLY,
                conversation_id=conversation.id,
                session_token=token,
                live_mode=False,
                pending=True,
                message_id=inbound.id,
            )

        text = await self._act_on_reply(tenant, customer, conversation, reply)
        if reply.escalate:
            conversation = await self._state.escalate(conversation.id, reason="assistant")
            await self._hub.publish(str(conversation.id), state_event(conversation))

        outbound = await self._append_reply(
            conversation.id, text, reply.media_url, replying_to=inbound
        )
        await self._hub.publish(str(conversation.id), message_event(outbound))
        return TurnResult(
            reply=text,
            conversation_id=conversation.id,
            session_token=token,
            live_mode=conversation.live_mode,
            media_url=reply.media_url,
            message_id=inbound.id,
        )

    # ------------------------------------------------------------------ #
    # Operator surface
    # ------------------------------------------------------------------ #

    async def send_operator_reply(
        self,
        conversation_id: uuid.UUID,
        body: str,
        media_url: str | None = None,
        client_message_id: uuid.UUID | None = None,
    ) -> Message:
        """Post a human-typed reply. Puts the conversation in live mode."""
        was_live = (await self._state.get(conversation_id)).live_mode
        conversation = await self._state.set_live_mode(conversation_id, True)
        if not was_live:
            await self._hub.publish(str(conversation_id), state_event(conversation))
        last_user = await self._messages.latest(conversation_id, role=ROLE_USER)
        message = await self._append_reply(
            conversation_id,
            body,
            media_url,
            replying_to=last_user,
            message_id=client_message_id,
        )
        await self._hub.publish(str(conversation_id), message_event(message))
        logger.info("operator_reply_sent", conversation_id=str(conversation_id))
        return message

    async def publish_state(self, conversation: Conversation) -> None:
        await self._hub.publish(str(conversation.id), state_event(conversation))

    # ------------------------------------------------------------------ #
    # Identity
    # ------------------------------------------------------------------ #

    async def _resolve_customer(
        self, tenant: Tenant, identity: SessionIdentity | None
    ) -> Customer:
        if identity is not None:
            async with self._session_factory() as session:
                customer = await session.get(Customer, identity.customer_id)
            if customer is not None and customer.tenant_id == tenant.id and customer.is_active:
                return customer
            logger.info("session_identity_discarded", tenant_id=str(tenant.id))

        async with self._session_factory() as session:
            customer = Customer(tenant_id=tenant.id, email=None, created_at=self._clock())
            session.add(customer)
            await session.commit()
        logger.info(
            "anonymous_customer_created",
            customer_id=str(customer.id),
            tenant_id=str(tenant.id),
        )
        return customer

    async def _attach_email(self, tenant: Tenant, customer: Customer, email: str) -> Customer:
        """Record a captured email, merging into the tenant's existing customer."""
        async with self._session_factory() as session:
            existing = (
                await session.execute(
                    select(Customer).where(
                        Customer.tenant_id == tenant.id, Customer.email == email
                    )
                )
            ).scalar_one_or_none()
            if existing is not None and existing.id != customer.id:
                logger.info(
                    "customer_recognised_by_email",
                    customer_id=str(existing.id),
                    tenant_id=str(tenant.id),
                )
                return existing
            current = await session.get(Customer, customer.id)
            if current is None:
                raise CustomerNotFoundError()
            current.email = email
            await session.commit()
        logger.info("customer_email_captured", customer_id=str(customer.id))
        return current

    async def _touch_customer(self, customer_id: uuid.UUID) -> None:
        async with self._session_factory() as session:
            customer = await session.get(Customer, customer_id)
            if customer is None:
                return
            customer.total_interactions = (customer.total_interactions or 0) + 1
            customer.last_active_at = self._clock()
            await session.commit()

    def _token_for(
        self,
        customer: Customer,
        conversation: Conversation,
        presented: str | None,
        reissue: bool,
    ) -> str | None:
        attributes = {
            "email": customer.email,
            "name": customer.name,
            "conversation_id": str(conversation.id),
        }
        if reissue:
            return self._tokens.issue(
                customer.id, attributes, tenant_id=customer.tenant_id
            ).token
        refreshed = self._tokens.refresh_if_needed(presented) if presented else None
        return refreshed.token if refreshed else None

    # ------------------------------------------------------------------ #
    # Conversation
    # ------------------------------------------------------------------ #

    async def _resolve_conversation(
        self,
        customer: Customer,
        known_customers: set[uuid.UUID],
        conversation_id: uuid.UUID | None,
        content: str,
    ) -> Conversation:
        conversation: Conversation | None = None
        if conversation_id is not None:
            async with self._session_factory() as session:
                found = await session.get(Conversation, conversation_id)
                if found is not None and found.customer_id in known_customers:
                    if found.customer_id != customer.id:
                        found.customer_id = customer.id
                        await session.commit()
                    conversation = found
            if conversation is not None:
                conversation = await self._state.check_expiry(conversation.id)

        if conversation is None or conversation.state == ConversationState.EXPIRED:
            conversation = await self._state.open(customer.id, derive_title(content))
        return conversation

    async def _build_context(self, tenant: Tenant, customer: Customer) -> AssistantContext:
        config = tenant.config or {}
        return AssistantContext(
            company_name=config.get("company_name", tenant.name),
            persona_name=config.get("persona_name", "Assistant"),
            persona_description=config.get(
                "persona_description", "A friendly front-desk assistant."
            ),
            product_names=await self._reservations.active_product_names(tenant.id),
            customer_email=customer.email,
            today=self._clock().date(),
        )

    # ------------------------------------------------------------------ #
    # Intents
    # ------------------------------------------------------------------ #

    async def _act_on_reply(
        self,
        tenant: Tenant,
        customer: Customer,
        conversation: Conversation,
        reply: AssistantReply,
    ) -> str:
        if reply.booking_intent is not None:
            return await self._book(tenant, customer, reply.booking_intent, reply.text)
        if reply.reservation_intent is not None:
            return await self._reserve(tenant, customer, reply.reservation_intent, reply.text)
        return reply.text

    async def _book(
        self, tenant: Tenant, customer: Customer, intent: BookingIntent, text: str
    ) -> str:
        email = intent.email or customer.email
        if not email:
            return "I can book that for you. What email should I send the confirmation to?"
        when = f"{intent.date.isoformat()} at {intent.slot}"
        try:
            await self._bookings.book(tenant.id, customer.id, intent.date, intent.slot, email)
        except (SlotConflictError, SlotNotOfferedError) as e:
            logger.info(
                "turn_booking_rejected",
                code=e.code,
                date=intent.date.isoformat(),
                slot=intent.slot,
            )
            slots = await self._bookings.list_available_slots(tenant.id, intent.date)
            lead = (
                f"Sorry, {when} was just taken."
                if isinstance(e, SlotConflictError)
                else f"Sorry, we don't offer {when}."
            )
            if not slots:
                return f"{lead} There are no open times left that day. Would another date work?"
            return f"{lead} Open times that day: {', '.join(slots)}. Which one would you like?"
        except BookingTimeoutError:
            return "I couldn't confirm that booking just now. Please try again in a moment."
        confirmation = f"You're booked for {when}. A confirmation is on its way to {email}."
        return f"{text}\n\n{confirmation}" if text else confirmation

    async def _reserve(
        self, tenant: Tenant, customer: Customer, intent: ReservationIntent, text: str
    ) -> str:
        products = await self._reservations.find_products(tenant.id, intent.product_name)
        if not products:
            return f"I couldn't find \"{intent.product_name}\" in our catalog."
        product = products[0]
        try:
            reservation = await self._reservations.reserve(
                tenant.id, customer.id, product.id, intent.quantity
            )
        except InsufficientStockError:
            return f"Sorry, we don't have {intent.quantity} of {product.name} in stock right now."
        except ProductNotFoundError:
            return f"I couldn't find \"{intent.product_name}\" in our catalog."
        expires = as_utc(reservation.expires_at).date().isoformat()
        confirmation = (
            f"I've reserved {reservation.quantity} x {product.name} "
            f"(total {reservation.total_price}). The hold lasts until {expires}."
        )
        return f"{text}\n\n{confirmation}" if text else confirmation

    # ------------------------------------------------------------------ #
    # Replies
    # ------------------------------------------------------------------ #

    async def _append_reply(
        self,
        conversation_id: uuid.UUID,
        body: str,
        media_url: str | None,
        replying_to: Message | None,
        message_id: uuid.UUID | None = None,
    ) -> Message:
        latency_ms = None
        within_target = None
        if replying_to is not None:
            elapsed = self._clock() - as_utc(replying_to.created_at)
            latency_ms = max(0, int(elapsed.total_seconds() * 1000))
            within_target = elapsed <= self._response_target
        return await self._messages.append(
            conversation_id,
            ROLE_ASSISTANT,
            body,
            media_url=media_url,
            response_latency_ms=latency_ms,
            responded_within_target=within_target,
            message_id=message_id,
        )


def _uuid_or_none(value: Any) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None
