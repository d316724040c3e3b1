from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.identity import AttributionDisplay
from app.models.message import DeliveryStatus, MessageType, ScreenshotMethod


class SendMessageRequest(BaseModel):
    """Request to send a message into a conversation."""

    conversation_id: int
    content: str | None = Field(default=None, max_length=4000)
    message_type: MessageType = MessageType.TEXT
    media: list[str] = Field(default_factory=list, max_length=10)
    formatting: list[dict] = Field(default_factory=list)
    reply_to_id: int | None = None
    identity_id: int | None = None
    disappear_after_seconds: int | None = Field(default=None, ge=5, le=604800)


class EditMessageRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=4000)
    reason: str | None = Field(default=None, max_length=200)


class ReactionRequest(BaseModel):
    emoji: str = Field(..., min_length=1, max_length=10)


class DeliveryStatusRequest(BaseModel):
    status: DeliveryStatus


class DeleteMessageRequest(BaseModel):
    for_everyone: bool = False
    reason: str | None = Field(default=None, max_length=200)


class ForwardMessageRequest(BaseModel):
    target_conversation_ids: list[int] = Field(..., min_length=1)
    attribution: AttributionDisplay | None = None
    identity_id: int | None = None
    comment: str | None = Field(default=None, max_length=4000)


class ScreenshotRequest(BaseModel):
    method: ScreenshotMethod = ScreenshotMethod.SCREENSHOT


class AttributionRead(BaseModel):
    type: AttributionDisplay
    text: str | None
    show_sender: bool
    sender_alias: str | None
    chain_count: int


class MessageRead(BaseModel):
    """Message as shown to a participant."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    conversation_id: int
    sender_user_id: int
    sender_identity_id: int | None
    sender_identity_deleted: bool
    deleted_sender_alias: str | None
    message_type: MessageType
    content: str | None
    media: list[str]
    formatting: list[dict]
    reply_to_id: int | None
    sent_at: datetime
    is_edited: bool
    edited_at: datetime | None
    delivery_status: DeliveryStatus
    forwarded_from_id: int | None
    forward_chain: int
    is_disappearing: bool
    disappear_at: datetime | None
    auto_delete_at: datetime | None
    is_encrypted: bool
    self_destruct_at: datetime | None
    screenshot_count: int
    is_pinned: bool
    is_deleted: bool
    attribution: AttributionRead | None = None


class MessageListResponse(BaseModel):
    messages: list[MessageRead]
    count: int
    limit: int
    skip: int
