"""Shared FastAPI dependencies: auth, database sessions, service injection.

Every service is created once during the FastAPI lifespan and stored on
app.state. Request handlers retrieve them via Depends(), never by import.
"""

import uuid

from fastapi import Depends, Header, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.core.exceptions import (
    ConversationNotFoundError,
    InvalidAPIKeyError,
    TenantInactiveError,
    TenantNotFoundError,
)
from concierge.core.security import hash_api_key
from concierge.db.postgres import get_async_session
from concierge.models.tenant import Tenant
from concierge.services.booking import BookingCoordinator
from concierge.services.conversation_state import ConversationStateMachine
from concierge.services.fanout import FanoutHub
from concierge.services.messages import MessageStore
from concierge.services.orchestrator import ConversationOrchestrator
from concierge.services.reservations import ReservationService
from concierge.services.session_tokens import SessionTokenService


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

async def get_db(
    session: AsyncSession = Depends(get_async_session),
) -> AsyncSession:
    """Yield an async database session."""
    return session


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

async def tenant_for_api_key(db: AsyncSession, raw_key: str | None) -> Tenant:
    """Resolve an operator API key to its tenant or raise."""
    if not raw_key:
        raise InvalidAPIKeyError()

    result = await db.execute(
        select(Tenant).where(Tenant.api_key_hash == hash_api_key(raw_key))
    )
    tenant = result.scalar_one_or_none()

    if tenant is None:
        raise InvalidAPIKeyError()

    if not tenant.is_active:
        raise TenantInactiveError()

    return tenant


async def get_current_tenant(
    x_api_key: str | None = Header(None, alias="X-API-Key"),
    db: AsyncSession = Depends(get_db),
) -> Tenant:
    """Authenticate an operator and return their tenant from the API key header."""
    return await tenant_for_api_key(db, x_api_key)


async def load_public_tenant(db: AsyncSession, tenant_id: uuid.UUID) -> Tenant:
    """Tenant addressed by a public widget request (no API key)."""
    tenant = await db.get(Tenant, tenant_id)
    if tenant is None:
        raise TenantNotFoundError()
    if not tenant.is_active:
        raise TenantInactiveError()
    return tenant


# ---------------------------------------------------------------------------
# Service singletons, retrieved from app.state (set during lifespan)
# ---------------------------------------------------------------------------

def get_orchestrator(request: Request) -> ConversationOrchestrator:
    return request.app.state.orchestrator


def get_state_machine(request: Request) -> ConversationStateMachine:
    return request.app.state.state_machine


def get_message_store(request: Request) -> MessageStore:
    return request.app.state.message_store


def get_booking_coordinator(request: Request) -> BookingCoordinator:
    return request.app.state.booking_coordinator


def get_reservation_service(request: Request) -> ReservationService:
    return request.app.state.reservation_service


def get_fanout_hub(request: Request) -> FanoutHub:
    return request.app.state.fanout_hub


def get_token_service(request: Request) -> SessionTokenService:
    return request.app.state.token_service


# ---------------------------------------------------------------------------
# Ownership checks
# ---------------------------------------------------------------------------

async def ensure_conversation_owned(
    state_machine: ConversationStateMachine,
    conversation_id: uuid.UUID,
    tenant: Tenant,
) -> None:
    """Conversations of other tenants are reported as not found."""
    if await state_machine.tenant_of(conversation_id) != tenant.id:
        raise ConversationNotFoundError()
