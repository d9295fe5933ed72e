"""Operator dashboard schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from concierge.models.conversation import ConversationState


class ConversationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    customer_id: uuid.UUID
    title: str | None = None
    state: ConversationState
    live_mode: bool
    is_favorite: bool
    conversation_number: int
    last_activity_at: datetime
    created_at: datetime


class ConversationListItem(ConversationResponse):
    customer_email: str | None = None
    unseen: int = 0


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    conversation_id: uuid.UUID
    sequence: int
    role: str
    body: str
    media_url: str | None = None
    seen: bool
    response_latency_ms: int | None = None
    responded_within_target: bool | None = None
    created_at: datetime


class LiveModeRequest(BaseModel):
    live_mode: bool


class FavoriteRequest(BaseModel):
    is_favorite: bool


class OperatorReplyRequest(BaseModel):
    body: str = Field(..., min_length=1, max_length=4000)
    media_url: str | None = None
    client_message_id: uuid.UUID | None = None


class SeenResponse(BaseModel):
    conversation_id: uuid.UUID
    updated: int
