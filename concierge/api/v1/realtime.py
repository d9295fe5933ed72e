"""WebSocket stream of conversation events.

A customer widget authenticates with its session token (``?token=``); an
operator dashboard with the tenant API key (``X-API-Key`` header or
``?api_key=``). Each connection gets its own fanout subscription.

Client -> server frames:
    {"type": "echo", "message_id": "..."}   the client already shows this message
Server -> client frames are the fanout events ("message" and "state").
"""

import asyncio
import uuid

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from concierge.api.deps import tenant_for_api_key
from concierge.core.exceptions import ConciergeError
from concierge.models.conversation import Conversation
from concierge.services.fanout import FanoutHub, Subscription

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["realtime"])


async def _authorize(websocket: WebSocket, conversation_id: uuid.UUID) -> bool:
    state = websocket.app.state
    async with state.session_factory() as session:
        conversation = await session.get(Conversation, conversation_id)
        if conversation is None:
            return False

        api_key = websocket.headers.get("x-api-key") or websocket.query_params.get("api_key")
        if api_key:
            try:
                tenant = await tenant_for_api_key(session, api_key)
            except ConciergeError:
                return False
            return await state.state_machine.tenant_of(conversation_id) == tenant.id

    identity = state.token_service.validate(websocket.query_params.get("token"))
    return identity is not None and identity.customer_id == conversation.customer_id


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        event = await subscription.get()
        await websocket.send_json(event)


@router.websocket("/ws/conversations/{conversation_id}")
async def conversation_stream(websocket: WebSocket, conversation_id: uuid.UUID) -> None:
    if not await _authorize(websocket, conversation_id):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    hub: FanoutHub = websocket.app.state.fanout_hub
    room_id = str(conversation_id)
    subscription = hub.new_subscription()
    # Subscribe first: events published right after the handshake must reach this client.
    await hub.subscribe(room_id, subscription)
    sender: asyncio.Task | None = None
    try:
        await websocket.accept()
        logger.info(
            "realtime_connected",
            conversation_id=room_id,
            subscription_id=subscription.id,
        )
        sender = asyncio.create_task(_pump(websocket, subscription))
        while True:
            frame = await websocket.receive_json()
            if isinstance(frame, dict) and frame.get("type") == "echo" and frame.get("message_id"):
                subscription.remember(str(frame["message_id"]))
    except WebSocketDisconnect:
        pass
    finally:
        if sender is not None:
            sender.cancel()
        await hub.unsubscribe(room_id, subscription)
        logger.info(
            "realtime_disconnected",
            conversation_id=room_id,
            subscription_id=subscription.id,
        )
