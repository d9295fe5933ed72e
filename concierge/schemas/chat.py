"""Chat request/response schemas."""

import uuid

from pydantic import BaseModel, ConfigDict, Field


class ChatMessageRequest(BaseModel):
    """POST /v1/chat/message request body."""

    tenant_id: uuid.UUID
    content: str = Field(..., min_length=1, max_length=4000)
    conversation_id: uuid.UUID | None = None
    session_token: str | None = None
    media_url: str | None = None
    client_message_id: uuid.UUID | None = None


class ChatMessageResponse(BaseModel):
    """POST /v1/chat/message response body.

    ``reply`` is null while a human operator is handling the conversation.
    ``session_token`` is only present when the client should store a new one.
    ``message_id`` is the stored id of the customer's message; it equals
    ``client_message_id`` when the request supplied one.
    """

    model_config = ConfigDict(from_attributes=True)

    reply: str | None = None
    conversation_id: uuid.UUID
    session_token: str | None = None
    live_mode: bool
    pending: bool = False
    media_url: str | None = None
    message_id: uuid.UUID | None = None
