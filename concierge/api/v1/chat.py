"""Customer chat endpoint used by the embedded widget."""

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.api.deps import get_db, get_orchestrator, load_public_tenant
from concierge.schemas.chat import ChatMessageRequest, ChatMessageResponse
from concierge.services.orchestrator import ConversationOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


@router.post("/message", response_model=ChatMessageResponse)
async def send_message(
    body: ChatMessageRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
) -> ChatMessageResponse:
    """Run one customer turn and return the reply (if the assistant answered)."""
    tenant = await load_public_tenant(db, body.tenant_id)
    result = await orchestrator.handle_message(
        tenant,
        body.content,
        conversation_id=body.conversation_id,
        session_token=body.session_token,
        media_url=body.media_url,
        client_message_id=body.client_message_id,
    )
    logger.info(
        "chat_turn_complete",
        tenant_id=str(tenant.id),
        conversation_id=str(result.conversation_id),
        live_mode=result.live_mode,
        pending=result.pending,
    )
    return ChatMessageResponse.model_validate(result)
