from datetime import datetime
from enum import Enum

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel

from app.utils.time import utcnow


class AutoDeletePreset(str, Enum):
    ONE_DAY = "1_day"
    ONE_WEEK = "1_week"
    ONE_MONTH = "1_month"
    CUSTOM = "custom"


class AttributionDisplay(str, Enum):
    SHOW_ORIGINAL = "show_original"
    SHOW_IMMEDIATE = "show_immediate"
    HIDE_ALL = "hide_all"
    ANONYMOUS = "anonymous"


class IdentityBase(SQLModel):
    """Public identity fields."""

    alias: str = Field(min_length=2, max_length=50)
    display_name: str = Field(max_length=100)
    avatar: str | None = Field(default=None, max_length=500)


class Identity(IdentityBase, table=True):
    """
    Disposable alias a user sends and receives messages as.

    Aliases are stored lowercased and are unique per user among
    non-deleted identities (partial unique index below).
    """

    __table_args__ = (
        Index(
            "uq_identity_user_alias_live",
            "user_id",
            "alias",
            unique=True,
            sqlite_where=text("is_deleted = 0"),
            postgresql_where=text("is_deleted = false"),
        ),
        Index(
            "ix_identity_listing",
            "user_id",
            "is_active",
            "is_deleted",
            "is_default",
            "created_at",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", ondelete="CASCADE", index=True)

    # Lifecycle
    is_default: bool = False
    is_protected: bool = False
    is_active: bool = True
    is_archived: bool = False
    is_deleted: bool = False
    deleted_at: datetime | None = None
    deletion_reason: str | None = None
    expires_at: datetime | None = Field(default=None, index=True)

    # Privacy
    allow_strangers: bool = True
    allow_message_requests: bool = True
    read_receipts_enabled: bool = True
    typing_indicators: bool = True
    online_status: bool = True

    # Auto-delete; effective days is derived and never written by callers
    auto_delete_enabled: bool = False
    auto_delete_preset: AutoDeletePreset | None = None
    auto_delete_custom_days: int | None = None
    auto_delete_effective_days: int = 0

    # Forwarding
    default_attribution: AttributionDisplay = AttributionDisplay.SHOW_ORIGINAL
    allow_others_to_forward: bool = True
    require_attribution: bool = False
    max_forward_chain: int = Field(default=10, ge=1, le=50)
    forward_to_public_channels: bool = True

    # Usage
    messages_sent: int = 0
    messages_received: int = 0
    conversations_started: int = 0
    last_used_at: datetime = Field(default_factory=utcnow)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class IdentityRead(IdentityBase):
    """Identity read schema."""

    id: int
    user_id: int
    is_default: bool
    is_protected: bool
    is_active: bool
    is_archived: bool
    is_deleted: bool
    deleted_at: datetime | None
    expires_at: datetime | None
    auto_delete_enabled: bool
    auto_delete_preset: AutoDeletePreset | None
    auto_delete_custom_days: int | None
    auto_delete_effective_days: int
    default_attribution: AttributionDisplay
    allow_others_to_forward: bool
    require_attribution: bool
    max_forward_chain: int
    messages_sent: int
    messages_received: int
    conversations_started: int
    last_used_at: datetime
    created_at: datetime
    updated_at: datetime
