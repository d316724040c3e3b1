from datetime import datetime
from enum import Enum

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from app.utils.time import utcnow


class ConversationType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"
    SECRET = "secret"
    BROADCAST = "broadcast"


class DisappearingTrigger(str, Enum):
    ON_SEND = "on_send"
    ON_READ = "on_read"


class ParticipantRole(str, Enum):
    MEMBER = "member"
    ADMIN = "admin"
    OWNER = "owner"
    MODERATOR = "moderator"


class Conversation(SQLModel, table=True):
    """Direct, group, secret or broadcast thread."""

    id: int | None = Field(default=None, primary_key=True)
    conversation_type: ConversationType = Field(index=True)
    name: str | None = Field(default=None, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    avatar: str | None = None
    created_by: int = Field(foreign_key="user.id", index=True)

    last_message_id: int | None = None
    last_message_at: datetime | None = Field(default=None, index=True)
    participant_count: int = 0
    peak_participants: int = 0
    total_messages: int = 0

    # Privacy
    auto_delete_messages: bool = False
    auto_delete_hours: int = 24
    disappearing_enabled: bool = False
    disappearing_seconds: int = 86400
    disappearing_trigger: DisappearingTrigger = DisappearingTrigger.ON_SEND

    # Secret chat; the key is wrapped, never stored raw
    encryption_enabled: bool = False
    encryption_key: str | None = None
    key_salt: str | None = None
    key_version: int = 0
    screenshot_notifications: bool = True
    screenshot_blocked: bool = False
    forwarding_disabled: bool = False
    self_destruct_seconds: int = 0

    # Group
    max_participants: int = 256
    admin_only_messaging: bool = False

    is_archived: bool = False
    is_deleted: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Participant(SQLModel, table=True):
    """Membership of a user, speaking as one identity, in a conversation."""

    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_participant_member"),
    )

    id: int | None = Field(default=None, primary_key=True)
    conversation_id: int = Field(
        foreign_key="conversation.id", ondelete="CASCADE", index=True
    )
    user_id: int = Field(foreign_key="user.id", index=True)
    identity_id: int | None = Field(default=None, foreign_key="identity.id", index=True)
    identity_deleted: bool = False
    deleted_identity_alias: str | None = None

    role: ParticipantRole = ParticipantRole.MEMBER
    can_send_messages: bool = True
    can_send_media: bool = True
    can_add_members: bool = False
    can_edit_group_info: bool = False
    can_delete_messages: bool = False

    last_read_message_id: int | None = None
    last_read_at: datetime | None = None
    is_muted: bool = False
    muted_until: datetime | None = None
    auto_delete_my_messages: bool = False
    auto_delete_hours: int | None = None
    messages_sent: int = 0

    joined_at: datetime = Field(default_factory=utcnow)
    left_at: datetime | None = None
