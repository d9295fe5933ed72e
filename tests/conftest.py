"""Shared pytest fixtures for the Concierge test suite.

Provides:
  - MockLLMProvider: LLMProvider returning configurable text
  - RecordingMailer: Mailer that records (or fails) every send
  - ScriptedAssistant: Assistant returning queued replies
  - FakeClock: injectable clock that tests move forward by hand
  - engine / session_factory: file-backed SQLite via aiosqlite
  - harness: every service wired together over that database, with a
    seeded tenant, customer, weekday schedule and product
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncIterator

import pytest
import pytest_asyncio
from langchain_core.messages import BaseMessage
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from concierge.core.exceptions import AssistantUnavailableError, NotificationError
from concierge.core.security import hash_api_key
from concierge.db.postgres import build_engine, build_session_factory, create_all
from concierge.models.availability import WEEKDAYS, AvailabilitySchedule
from concierge.models.customer import Customer
from concierge.models.product import Product
from concierge.models.tenant import Tenant
from concierge.services.assistant import Assistant, AssistantContext, AssistantReply
from concierge.services.booking import BookingCoordinator
from concierge.services.conversation_state import ConversationStateMachine
from concierge.services.fanout import FanoutHub
from concierge.services.llm.base import LLMProvider, LLMResponse
from concierge.services.mailer import Mailer, Notifier, TemplateKind
from concierge.services.messages import ConversationSequencer, MessageStore
from concierge.services.orchestrator import ConversationOrchestrator
from concierge.services.reservations import ReservationService
from concierge.services.session_tokens import SessionTokenService

RAW_API_KEY = "cnc_live_test_key"
TOKEN_SECRET = "test-session-secret"
BOOKING_DAY = date(2026, 10, 19)
SLOTS = ["09:00", "10:00", "11:00"]
START = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock frozen at ``now`` until advanced."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class MockLLMProvider(LLMProvider):
    """Mock LLM provider for testing. Returns configurable responses."""

    def __init__(self, generate_text: str = "Mock response", fail: bool = False) -> None:
        self._generate_text = generate_text
        self._fail = fail
        self.generate_calls: list[dict[str, Any]] = []

    async def generate(
        self,
        prompt: str,
        system_prompt: str,
        max_tokens: int = 600,
        temperature: float = 0.3,
    ) -> LLMResponse:
        self.generate_calls.append(
            {
                "prompt": prompt,
                "system_prompt": system_prompt,
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
        )
        if self._fail:
            raise RuntimeError("provider down")
        return LLMResponse(text=self._generate_text, input_tokens=50, output_tokens=10)


class RecordingMailer(Mailer):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, TemplateKind, dict[str, Any]]] = []

    async def send(
        self, recipient: str, template_kind: TemplateKind, template_data: dict[str, Any]
    ) -> None:
        if self.fail:
            raise NotificationError("mail provider rejected the request")
        self.sent.append((recipient, template_kind, template_data))

    def kinds(self) -> list[TemplateKind]:
        return [kind for _, kind, _ in self.sent]


class ScriptedAssistant(Assistant):
    """Returns queued replies in order; a plain echo once the queue is empty."""

    def __init__(self, *replies: AssistantReply) -> None:
        self.replies = list(replies)
        self.unavailable = False
        self.calls: list[tuple[AssistantContext, list[BaseMessage], str]] = []

    def queue(self, *replies: AssistantReply) -> None:
        self.replies.extend(replies)

    async def respond(
        self,
        context: AssistantContext,
        history: list[BaseMessage],
        latest: str,
    ) -> AssistantReply:
        self.calls.append((context, history, latest))
        if self.unavailable:
            raise AssistantUnavailableError()
        if self.replies:
            return self.replies.pop(0)
        return AssistantReply(text=f"echo: {latest}")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    """File-backed SQLite so concurrent sessions really contend for the database."""
    db_engine = build_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'concierge.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    await create_all(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


@dataclass
class Seed:
    tenant: Tenant
    customer: Customer
    product: Product
    other_tenant: Tenant


async def seed_database(session_factory: async_sessionmaker[AsyncSession]) -> Seed:
    async with session_factory() as session:
        tenant = Tenant(
            name="Acme Dental",
            api_key_hash=hash_api_key(RAW_API_KEY),
            owner_email="owner@acme.test",
            config={"persona_name": "Ada", "company_name": "Acme Dental"},
            is_active=True,
        )
        other_tenant = Tenant(
            name="Other Co",
            api_key_hash=hash_api_key("cnc_live_other"),
            owner_email="owner@other.test",
            config={},
            is_active=True,
        )
        session.add_all([tenant, other_tenant])
        await session.flush()

        customer = Customer(tenant_id=tenant.id, email="pat@example.com", name="Pat")
        schedule = AvailabilitySchedule(
            tenant_id=tenant.id,
            day_of_week=WEEKDAYS[BOOKING_DAY.weekday()],
            time_slots=list(SLOTS),
            is_active=True,
        )
        product = Product(
            tenant_id=tenant.id,
            name="Whitening Kit",
            price=Decimal("40.00"),
            sale_price=Decimal("30.00"),
            stock=5,
            active=True,
        )
        session.add_all([customer, schedule, product])
        await session.commit()
    return Seed(tenant=tenant, customer=customer, product=product, other_tenant=other_tenant)


@pytest_asyncio.fixture
async def seed(session_factory: async_sessionmaker[AsyncSession]) -> Seed:
    return await seed_database(session_factory)


# ---------------------------------------------------------------------------
# Wired services
# ---------------------------------------------------------------------------


@dataclass
class Harness:
    session_factory: async_sessionmaker[AsyncSession]
    clock: FakeClock
    mailer: RecordingMailer
    notifier: Notifier
    hub: FanoutHub
    tokens: SessionTokenService
    state: ConversationStateMachine
    messages: MessageStore
    bookings: BookingCoordinator
    reservations: ReservationService
    assistant: ScriptedAssistant
    orchestrator: ConversationOrchestrator
    seed: Seed

    @property
    def tenant(self) -> Tenant:
        return self.seed.tenant

    @property
    def customer(self) -> Customer:
        return self.seed.customer

    @property
    def product(self) -> Product:
        return self.seed.product


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest_asyncio.fixture
async def harness(
    session_factory: async_sessionmaker[AsyncSession],
    seed: Seed,
    clock: FakeClock,
    mailer: RecordingMailer,
) -> AsyncIterator[Harness]:
    notifier = Notifier(mailer)
    hub = FanoutHub(max_queue=100)
    tokens = SessionTokenService(secret=TOKEN_SECRET, clock=clock)
    state = ConversationStateMachine(
        session_factory, notifier, idle_timeout=timedelta(minutes=30), clock=clock
    )
    messages = MessageStore(session_factory, ConversationSequencer(), clock=clock)
    bookings = BookingCoordinator(session_factory, notifier, timeout_seconds=30)
    reservations = ReservationService(session_factory, hold_days=7, clock=clock)
    assistant = ScriptedAssistant()
    orchestrator = ConversationOrchestrator(
        session_factory=session_factory,
        tokens=tokens,
        state_machine=state,
        messages=messages,
        hub=hub,
        assistant=assistant,
        bookings=bookings,
        reservations=reservations,
        history_window=10,
        response_target=timedelta(hours=2),
        clock=clock,
    )
    yield Harness(
        session_factory=session_factory,
        clock=clock,
        mailer=mailer,
        notifier=notifier,
        hub=hub,
        tokens=tokens,
        state=state,
        messages=messages,
        bookings=bookings,
        reservations=reservations,
        assistant=assistant,
        orchestrator=orchestrator,
        seed=seed,
    )
    await notifier.drain()
