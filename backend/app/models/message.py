from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.models.identity import AttributionDisplay
from app.utils.time import utcnow


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"
    LOCATION = "location"
    CONTACT = "contact"
    STICKER = "sticker"
    GIF = "gif"
    POST_SHARE = "post_share"
    LINK = "link"
    SYSTEM = "system"


class DeliveryStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class ScreenshotMethod(str, Enum):
    SCREENSHOT = "screenshot"
    SCREEN_RECORDING = "screen_recording"
    EXTERNAL_CAMERA = "external_camera"


class Message(SQLModel, table=True):
    """Message with forwarding, disappearing and secret-chat state."""

    __table_args__ = (Index("ix_message_conversation_sent", "conversation_id", "sent_at"),)

    id: int | None = Field(default=None, primary_key=True)
    conversation_id: int = Field(foreign_key="conversation.id", ondelete="CASCADE")
    sender_user_id: int = Field(foreign_key="user.id", index=True)
    sender_identity_id: int | None = Field(
        default=None, foreign_key="identity.id", index=True
    )
    sender_identity_deleted: bool = False
    deleted_sender_alias: str | None = None

    message_type: MessageType = MessageType.TEXT
    content: str | None = Field(default=None, max_length=4000)
    # Ids owned by the media service
    media: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    formatting: list[dict] = Field(default_factory=list, sa_column=Column(JSON))
    reply_to_id: int | None = None

    sent_at: datetime = Field(default_factory=utcnow)
    original_sent_at: datetime = Field(default_factory=utcnow)
    is_edited: bool = False
    edited_at: datetime | None = None
    delivery_status: DeliveryStatus = DeliveryStatus.SENDING
    delivered_at: datetime | None = None

    # Forwarding
    forwarded_from_id: int | None = None
    original_sender_identity_id: int | None = None
    original_sender_alias: str | None = None
    forwarded_by_alias: str | None = None
    forward_chain: int = 0
    attribution_display: AttributionDisplay | None = None
    allow_further_forwarding: bool = True
    require_attribution: bool = False
    preserve_original_sender: bool = True

    # Disappearing and auto-delete deadlines
    is_disappearing: bool = False
    disappear_after_seconds: int | None = None
    disappear_at: datetime | None = Field(default=None, index=True)
    auto_delete_at: datetime | None = Field(default=None, index=True)

    # Secret chat
    is_encrypted: bool = False
    screenshot_count: int = 0
    self_destruct_at: datetime | None = Field(default=None, index=True)

    is_pinned: bool = False
    pinned_at: datetime | None = None
    pinned_by: int | None = None

    is_deleted: bool = False
    deleted_at: datetime | None = None
    deleted_by: int | None = None
    deletion_reason: str | None = None


class MessageReadReceipt(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("message_id", "user_id", name="uq_read_receipt"),)

    id: int | None = Field(default=None, primary_key=True)
    message_id: int = Field(foreign_key="message.id", ondelete="CASCADE", index=True)
    user_id: int = Field(foreign_key="user.id")
    read_at: datetime = Field(default_factory=utcnow)


class MessageReaction(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("message_id", "user_id", name="uq_reaction"),)

    id: int | None = Field(default=None, primary_key=True)
    message_id: int = Field(foreign_key="message.id", ondelete="CASCADE", index=True)
    user_id: int = Field(foreign_key="user.id")
    emoji: str = Field(max_length=10)
    reacted_at: datetime = Field(default_factory=utcnow)


class MessageDeletion(SQLModel, table=True):
    """Delete-for-me marker: the message is hidden from this user only."""

    __table_args__ = (UniqueConstraint("message_id", "user_id", name="uq_deleted_for"),)

    id: int | None = Field(default=None, primary_key=True)
    message_id: int = Field(foreign_key="message.id", ondelete="CASCADE", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    deleted_at: datetime = Field(default_factory=utcnow)


class MessageEdit(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    message_id: int = Field(foreign_key="message.id", ondelete="CASCADE", index=True)
    previous_content: str | None = None
    reason: str | None = Field(default=None, max_length=200)
    edited_at: datetime = Field(default_factory=utcnow)


class ScreenshotLog(SQLModel, table=True):
    """Append-only record of screen captures of a secret-chat message."""

    id: int | None = Field(default=None, primary_key=True)
    message_id: int = Field(foreign_key="message.id", ondelete="CASCADE", index=True)
    user_id: int = Field(foreign_key="user.id")
    method: ScreenshotMethod = ScreenshotMethod.SCREENSHOT
    taken_at: datetime = Field(default_factory=utcnow)
