"""Operator dashboard endpoints for conversations.

All routes require the tenant's X-API-Key. Conversations belonging to
other tenants are reported as not found.
"""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.api.deps import (
    ensure_conversation_owned,
    get_current_tenant,
    get_db,
    get_message_store,
    get_orchestrator,
    get_state_machine,
)
from concierge.models.conversation import Conversation, ConversationState
from concierge.models.customer import Customer
from concierge.models.message import ROLE_USER, Message
from concierge.models.tenant import Tenant
from concierge.schemas.conversation import (
    ConversationListItem,
    ConversationResponse,
    FavoriteRequest,
    LiveModeRequest,
    MessageResponse,
    OperatorReplyRequest,
    SeenResponse,
)
from concierge.services.conversation_state import ConversationStateMachine
from concierge.services.messages import MessageStore
from concierge.services.orchestrator import ConversationOrchestrator

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("", response_model=list[ConversationListItem])
async def list_conversations(
    state: ConversationState | None = Query(None),
    favorite: bool | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> list[ConversationListItem]:
    """Tenant conversations, most recently active first."""
    unseen = (
        select(Message.conversation_id, func.count(Message.id).label("unseen"))
        .where(and_(Message.seen.is_(False), Message.role == ROLE_USER))
        .group_by(Message.conversation_id)
        .subquery()
    )
    stmt = (
        select(Conversation, Customer.email, func.coalesce(unseen.c.unseen, 0))
        .join(Customer, Customer.id == Conversation.customer_id)
        .outerjoin(unseen, unseen.c.conversation_id == Conversation.id)
        .where(Customer.tenant_id == tenant.id)
    )
    if state is not None:
        stmt = stmt.where(Conversation.state == state)
    if favorite is not None:
        stmt = stmt.where(Conversation.is_favorite.is_(favorite))
    stmt = stmt.order_by(Conversation.last_activity_at.desc()).limit(limit)

    rows = (await db.execute(stmt)).all()
    return [
        ConversationListItem(
            **ConversationResponse.model_validate(conversation).model_dump(),
            customer_email=email,
            unseen=count,
        )
        for conversation, email, count in rows
    ]


@router.get("/{conversation_id}/messages", response_model=list[MessageResponse])
async def conversation_messages(
    conversation_id: uuid.UUID,
    tenant: Tenant = Depends(get_current_tenant),
    state_machine: ConversationStateMachine = Depends(get_state_machine),
    store: MessageStore = Depends(get_message_store),
) -> list[MessageResponse]:
    """Full transcript in sequence order (also used to resync after reconnect)."""
    await ensure_conversation_owned(state_machine, conversation_id, tenant)
    messages = await store.history(conversation_id)
    return [MessageResponse.model_validate(m) for m in messages]


@router.post("/{conversation_id}/escalate", response_model=ConversationResponse)
async def escalate_conversation(
    conversation_id: uuid.UUID,
    tenant: Tenant = Depends(get_current_tenant),
    state_machine: ConversationStateMachine = Depends(get_state_machine),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
) -> ConversationResponse:
    await ensure_conversation_owned(state_machine, conversation_id, tenant)
    conversation = await state_machine.escalate(conversation_id, reason="operator")
    await orchestrator.publish_state(conversation)
    return ConversationResponse.model_validate(conversation)


@router.post("/{conversation_id}/hand-back", response_model=ConversationResponse)
async def hand_back_conversation(
    conversation_id: uuid.UUID,
    tenant: Tenant = Depends(get_current_tenant),
    state_machine: ConversationStateMachine = Depends(get_state_machine),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
) -> ConversationResponse:
    """Return the conversation to the assistant."""
    await ensure_conversation_owned(state_machine, conversation_id, tenant)
    conversation = await state_machine.hand_back(conversation_id)
    await orchestrator.publish_state(conversation)
    return ConversationResponse.model_validate(conversation)


@router.post("/{conversation_id}/expire", response_model=ConversationResponse)
async def expire_conversation(
    conversation_id: uuid.UUID,
    tenant: Tenant = Depends(get_current_tenant),
    state_machine: ConversationStateMachine = Depends(get_state_machine),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
) -> ConversationResponse:
    """Close an idle conversation. 409 if it is still active."""
    await ensure_conversation_owned(state_machine, conversation_id, tenant)
    conversation = await state_machine.expire(conversation_id)
    await orchestrator.publish_state(conversation)
    return ConversationResponse.model_validate(conversation)


@router.post("/{conversation_id}/live", response_model=ConversationResponse)
async def set_live_mode(
    conversation_id: uuid.UUID,
    body: LiveModeRequest,
    tenant: Tenant = Depends(get_current_tenant),
    state_machine: ConversationStateMachine = Depends(get_state_machine),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
) -> ConversationResponse:
    await ensure_conversation_owned(state_machine, conversation_id, tenant)
    conversation = await state_machine.set_live_mode(conversation_id, body.live_mode)
    await orchestrator.publish_state(conversation)
    return ConversationResponse.model_validate(conversation)


@router.post("/{conversation_id}/favorite", response_model=ConversationResponse)
async def set_favorite(
    conversation_id: uuid.UUID,
    body: FavoriteRequest,
    tenant: Tenant = Depends(get_current_tenant),
    state_machine: ConversationStateMachine = Depends(get_state_machine),
) -> ConversationResponse:
    await ensure_conversation_owned(state_machine, conversation_id, tenant)
    conversation = await state_machine.set_favorite(conversation_id, body.is_favorite)
    return ConversationResponse.model_validate(conversation)


@router.post("/{conversation_id}/seen", response_model=SeenResponse)
async def mark_seen(
    conversation_id: uuid.UUID,
    tenant: Tenant = Depends(get_current_tenant),
    state_machine: ConversationStateMachine = Depends(get_state_machine),
    store: MessageStore = Depends(get_message_store),
) -> SeenResponse:
    await ensure_conversation_owned(state_machine, conversation_id, tenant)
    updated = await store.mark_seen(conversation_id)
    return SeenResponse(conversation_id=conversation_id, updated=updated)


@router.post("/{conversation_id}/messages", response_model=MessageResponse)
async def operator_reply(
    conversation_id: uuid.UUID,
    body: OperatorReplyRequest,
    tenant: Tenant = Depends(get_current_tenant),
    state_machine: ConversationStateMachine = Depends(get_state_machine),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
) -> MessageResponse:
    """Reply as a human. Switches the conversation to live mode."""
    await ensure_conversation_owned(state_machine, conversation_id, tenant)
    message = await orchestrator.send_operator_reply(
        conversation_id,
        body.body,
        media_url=body.media_url,
        client_message_id=body.client_message_id,
    )
    return MessageResponse.model_validate(message)
