"""Integration tests for full customer turns through the orchestrator.

Tests:
  - first contact creates an anonymous customer, a conversation and a token
  - inbound and reply messages are persisted in order and published
  - live mode routes the turn to the operator without calling the assistant
  - an assistant outage still persists the inbound message
  - email capture and recognition of returning customers
  - idle conversations expire and the next turn opens a new one
  - booking, reservation and escalation intents
  - operator replies and response-latency metrics
  - a Redis outage never aborts a turn
  - client-chosen message ids let a sender skip its own fanout echo
  - concurrent turns keep message sequences gapless
"""

from __future__ import annotations

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from concierge.core.exceptions import DuplicateMessageError, RedisConnectionError
from concierge.models.conversation import ConversationState
from concierge.models.customer import Customer
from concierge.models.message import ROLE_ASSISTANT, ROLE_USER
from concierge.services.assistant import AssistantReply, BookingIntent, ReservationIntent
from concierge.services.fanout import RedisFanoutRelay
from concierge.services.mailer import TemplateKind
from concierge.services.orchestrator import FALLBACK_REPLY
from tests.conftest import BOOKING_DAY


async def _turn(harness, content: str, **kwargs):
    return await harness.orchestrator.handle_message(harness.tenant, content, **kwargs)


async def _as_pat(harness):
    """First turn from the seeded customer, recognised by email."""
    return await _turn(harness, "Hi, this is pat@example.com")


class TestFirstContact:
    @pytest.mark.asyncio
    async def test_anonymous_visitor_gets_token_and_reply(self, harness) -> None:
        result = await _turn(harness, "Do you have parking?")

        assert result.reply == "echo: Do you have parking?"
        assert result.live_mode is False
        assert result.session_token is not None

        identity = harness.tokens.validate(result.session_token)
        assert identity.tenant_id == harness.tenant.id
        assert identity.attributes["conversation_id"] == str(result.conversation_id)
        assert identity.attributes["email"] is None

        async with harness.session_factory() as session:
            customer = await session.get(Customer, identity.customer_id)
        assert customer.email is None
        assert customer.total_interactions == 1

        conversation = await harness.state.get(result.conversation_id)
        assert conversation.title == "Do you have parking?"
        assert conversation.customer_id == identity.customer_id

    @pytest.mark.asyncio
    async def test_messages_persisted_in_order(self, harness) -> None:
        result = await _turn(harness, "Hello")
        history = await harness.messages.history(result.conversation_id)

        assert [(m.sequence, m.role, m.body) for m in history] == [
            (1, ROLE_USER, "Hello"),
            (2, ROLE_ASSISTANT, "echo: Hello"),
        ]

    @pytest.mark.asyncio
    async def test_follow_up_turn_reuses_conversation_and_publishes(self, harness) -> None:
        first = await _turn(harness, "Hello")
        subscription = harness.hub.new_subscription()
        await harness.hub.subscribe(str(first.conversation_id), subscription)

        second = await _turn(harness, "Are you open?", session_token=first.session_token)

        assert second.conversation_id == first.conversation_id
        assert second.session_token is None
        events = subscription.drain_nowait()
        assert [(e["type"], e["role"], e["sequence"]) for e in events] == [
            ("message", ROLE_USER, 3),
            ("message", ROLE_ASSISTANT, 4),
        ]
        context, history, latest = harness.assistant.calls[-1]
        assert latest == "Are you open?"
        assert [m.content for m in history] == ["Hello", "echo: Hello"]
        assert context.company_name == "Acme Dental"
        assert context.persona_name == "Ada"

    @pytest.mark.asyncio
    async def test_foreign_conversation_id_is_ignored(self, harness) -> None:
        pat = await _as_pat(harness)

        stranger = await _turn(harness, "Hello", conversation_id=pat.conversation_id)

        assert stranger.conversation_id != pat.conversation_id
        assert len(await harness.messages.history(pat.conversation_id)) == 2

    @pytest.mark.asyncio
    async def test_invalid_token_starts_fresh(self, harness) -> None:
        result = await _turn(harness, "Hello", session_token="not-a-token")
        assert result.session_token is not None
        assert harness.tokens.validate(result.session_token) is not None


class TestIdentity:
    @pytest.mark.asyncio
    async def test_email_captured_for_anonymous_customer(self, harness) -> None:
        first = await _turn(harness, "Hello")
        second = await _turn(
            harness, "Sure, it's New.Person@Example.com", session_token=first.session_token
        )

        assert second.session_token is not None
        identity = harness.tokens.validate(second.session_token)
        assert identity.attributes["email"] == "new.person@example.com"
        async with harness.session_factory() as session:
            customer = await session.get(Customer, identity.customer_id)
        assert customer.email == "new.person@example.com"

    @pytest.mark.asyncio
    async def test_known_email_switches_to_existing_customer(self, harness) -> None:
        first = await _turn(harness, "Hello")
        second = await _turn(
            harness, "I'm pat@example.com", session_token=first.session_token
        )

        identity = harness.tokens.validate(second.session_token)
        assert identity.customer_id == harness.customer.id
        assert second.conversation_id == first.conversation_id
        conversation = await harness.state.get(second.conversation_id)
        assert conversation.customer_id == harness.customer.id

    @pytest.mark.asyncio
    async def test_email_not_overwritten_once_known(self, harness) -> None:
        pat = await _as_pat(harness)
        await _turn(harness, "send it to other@example.com", session_token=pat.session_token)

        async with harness.session_factory() as session:
            emails = (
                await session.execute(
                    select(Customer.email).where(Customer.tenant_id == harness.tenant.id)
                )
            ).scalars().all()
        assert "other@example.com" not in emails


class TestExpiry:
    @pytest.mark.asyncio
    async def test_idle_conversation_replaced(self, harness) -> None:
        first = await _turn(harness, "Hello")
        harness.clock.advance(minutes=45)

        second = await _turn(harness, "Anyone there?", session_token=first.session_token)

        assert second.conversation_id != first.conversation_id
        old = await harness.state.get(first.conversation_id)
        assert old.state == ConversationState.EXPIRED
        identity = harness.tokens.validate(second.session_token)
        assert identity.attributes["conversation_id"] == str(second.conversation_id)
        new = await harness.state.get(second.conversation_id)
        assert new.conversation_number == 2


class TestLiveMode:
    @pytest.mark.asyncio
    async def test_live_turn_skips_assistant(self, harness) -> None:
        first = await _turn(harness, "Hello")
        await harness.state.set_live_mode(first.conversation_id, True)
        calls_before = len(harness.assistant.calls)

        result = await _turn(harness, "Still there?", session_token=first.session_token)

        assert result.reply is None
        assert result.live_mode is True
        assert len(harness.assistant.calls) == calls_before
        history = await harness.messages.history(first.conversation_id)
        assert history[-1].body == "Still there?"
        assert history[-1].role == ROLE_USER

    @pytest.mark.asyncio
    async def test_assistant_outage_keeps_inbound(self, harness) -> None:
        harness.assistant.unavailable = True

        result = await _turn(harness, "Hello?")

        assert result.reply == FALLBACK_REPLY
        assert result.pending is True
        history = await harness.messages.history(result.conversation_id)
        assert [(m.role, m.body) for m in history] == [(ROLE_USER, "Hello?")]


class TestIntents:
    @pytest.mark.asyncio
    async def test_booking_intent_books_slot(self, harness) -> None:
        pat = await _as_pat(harness)
        harness.assistant.queue(
            AssistantReply(
                text="Great choice.",
                booking_intent=BookingIntent(date=BOOKING_DAY, slot="09:00"),
            )
        )

        result = await _turn(harness, "Monday 9 please", session_token=pat.session_token)
        await harness.notifier.drain()

        assert "You're booked for 2026-10-19 at 09:00" in result.reply
        assert result.reply.startswith("Great choice.")
        assert await harness.bookings.list_available_slots(
            harness.tenant.id, BOOKING_DAY
        ) == ["10:00", "11:00"]
        assert TemplateKind.BOOKING_CONFIRMATION in harness.mailer.kinds()

    @pytest.mark.asyncio
    async def test_taken_slot_relists_availability(self, harness) -> None:
        await harness.bookings.book(
            harness.tenant.id, harness.customer.id, BOOKING_DAY, "09:00", "pat@example.com"
        )
        pat = await _as_pat(harness)
        harness.assistant.queue(
            AssistantReply(
                text="Booking.", booking_intent=BookingIntent(date=BOOKING_DAY, slot="09:00")
            )
        )

        result = await _turn(harness, "Monday 9 please", session_token=pat.session_token)

        assert "just taken" in result.reply
        assert "10:00, 11:00" in result.reply

    @pytest.mark.asyncio
    async def test_booking_without_email_asks_for_one(self, harness) -> None:
        harness.assistant.queue(
            AssistantReply(
                text="Booking.", booking_intent=BookingIntent(date=BOOKING_DAY, slot="09:00")
            )
        )
        result = await _turn(harness, "Book Monday at 9")

        assert "email" in result.reply
        assert await harness.bookings.list_bookings(harness.tenant.id) == []

    @pytest.mark.asyncio
    async def test_reservation_intent_holds_stock(self, harness) -> None:
        pat = await _as_pat(harness)
        harness.assistant.queue(
            AssistantReply(
                text="",
                reservation_intent=ReservationIntent(product_name="whitening", quantity=2),
            )
        )

        result = await _turn(harness, "Hold two kits", session_token=pat.session_token)

        assert "reserved 2 x Whitening Kit" in result.reply
        assert "60.00" in result.reply
        holds = await harness.reservations.pending_for_customer(harness.customer.id)
        assert [h.quantity for h in holds] == [2]

    @pytest.mark.asyncio
    async def test_reservation_of_unknown_product(self, harness) -> None:
        harness.assistant.queue(
            AssistantReply(
                text="", reservation_intent=ReservationIntent(product_name="toothbrush")
            )
        )
        result = await _turn(harness, "Hold a toothbrush")
        assert "couldn't find" in result.reply

    @pytest.mark.asyncio
    async def test_escalation_signal(self, harness) -> None:
        first = await _as_pat(harness)
        subscription = harness.hub.new_subscription()
        await harness.hub.subscribe(str(first.conversation_id), subscription)
        harness.assistant.queue(AssistantReply(text="Connecting you.", escalate=True))

        result = await _turn(harness, "I want a refund", session_token=first.session_token)
        await harness.notifier.drain()

        assert result.live_mode is True
        assert result.reply == "Connecting you."
        conversation = await harness.state.get(first.conversation_id)
        assert conversation.state == ConversationState.ESCALATED
        assert harness.mailer.kinds() == [TemplateKind.ESCALATION]
        types = [e["type"] for e in subscription.drain_nowait()]
        assert types == ["message", "state", "message"]


class TestOperatorReply:
    @pytest.mark.asyncio
    async def test_operator_reply_goes_live_and_records_latency(self, harness) -> None:
        first = await _turn(harness, "Hello")
        subscription = harness.hub.new_subscription()
        await harness.hub.subscribe(str(first.conversation_id), subscription)
        harness.clock.advance(minutes=5)

        message = await harness.orchestrator.send_operator_reply(
            first.conversation_id, "Hi, Sam here."
        )

        assert message.role == ROLE_ASSISTANT
        assert message.sequence == 3
        assert message.response_latency_ms == 5 * 60 * 1000
        assert message.responded_within_target is True
        conversation = await harness.state.get(first.conversation_id)
        assert conversation.live_mode is True
        assert conversation.state == ConversationState.ESCALATED
        assert [e["type"] for e in subscription.drain_nowait()] == ["state", "message"]

    @pytest.mark.asyncio
    async def test_slow_reply_misses_target(self, harness) -> None:
        first = await _turn(harness, "Hello")
        harness.clock.advance(hours=3)

        message = await harness.orchestrator.send_operator_reply(first.conversation_id, "Sorry!")

        assert message.responded_within_target is False

    @pytest.mark.asyncio
    async def test_assistant_reply_records_latency(self, harness) -> None:
        result = await _turn(harness, "Hello")
        reply = await harness.messages.latest(result.conversation_id, role=ROLE_ASSISTANT)
        assert reply.response_latency_ms == 0
        assert reply.responded_within_target is True


class TestFanout:
    @pytest.mark.asyncio
    async def test_redis_outage_does_not_abort_turn(self, harness) -> None:
        redis = MagicMock()
        redis.publish = AsyncMock(side_effect=RedisConnectionError("Redis PUBLISH failed"))
        harness.hub.attach_relay(RedisFanoutRelay(harness.hub, redis, node_id="node-a"))

        result = await _turn(harness, "hello")

        assert result.reply == "echo: hello"
        assert len(harness.assistant.calls) == 1
        assert redis.publish.await_count == 2
        history = await harness.messages.history(result.conversation_id)
        assert [m.role for m in history] == [ROLE_USER, ROLE_ASSISTANT]

    @pytest.mark.asyncio
    async def test_client_chosen_id_suppresses_own_echo(self, harness) -> None:
        first = await _turn(harness, "Hello")
        widget = harness.hub.new_subscription()
        await harness.hub.subscribe(str(first.conversation_id), widget)
        client_id = uuid.uuid4()
        widget.remember(str(client_id))

        result = await _turn(
            harness,
            "Are you open?",
            session_token=first.session_token,
            client_message_id=client_id,
        )

        assert result.message_id == client_id
        events = widget.drain_nowait()
        assert [(e["role"], e["body"]) for e in events] == [
            (ROLE_ASSISTANT, "echo: Are you open?")
        ]
        inbound = await harness.messages.latest(first.conversation_id, role=ROLE_USER)
        assert inbound.id == client_id

    @pytest.mark.asyncio
    async def test_server_assigns_id_when_client_sends_none(self, harness) -> None:
        result = await _turn(harness, "Hello")
        inbound = await harness.messages.latest(result.conversation_id, role=ROLE_USER)
        assert result.message_id == inbound.id

    @pytest.mark.asyncio
    async def test_reused_client_id_is_rejected(self, harness) -> None:
        client_id = uuid.uuid4()
        first = await _turn(harness, "Hello", client_message_id=client_id)

        with pytest.raises(DuplicateMessageError):
            await _turn(
                harness,
                "Hello again",
                session_token=first.session_token,
                client_message_id=client_id,
            )

    @pytest.mark.asyncio
    async def test_operator_reply_keeps_client_id(self, harness) -> None:
        first = await _turn(harness, "Hello")
        dashboard = harness.hub.new_subscription()
        await harness.hub.subscribe(str(first.conversation_id), dashboard)
        client_id = uuid.uuid4()
        dashboard.remember(str(client_id))

        message = await harness.orchestrator.send_operator_reply(
            first.conversation_id, "Hi, Sam here.", client_message_id=client_id
        )

        assert message.id == client_id
        assert [e["type"] for e in dashboard.drain_nowait()] == ["state"]


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_turns_keep_sequences_gapless(self, harness) -> None:
        first = await _turn(harness, "Hello")

        await asyncio.gather(
            *(
                _turn(harness, f"message {i}", session_token=first.session_token)
                for i in range(5)
            )
        )

        history = await harness.messages.history(first.conversation_id)
        assert [m.sequence for m in history] == list(range(1, 13))
        assert sum(1 for m in history if m.role == ROLE_USER) == 6

    @pytest.mark.asyncio
    async def test_concurrent_appends(self, harness) -> None:
        conversation = await harness.state.open(harness.customer.id, "Busy")
        await asyncio.gather(
            *(harness.messages.append(conversation.id, ROLE_USER, str(i)) for i in range(10))
        )
        history = await harness.messages.history(conversation.id)
        assert [m.sequence for m in history] == list(range(1, 11))
