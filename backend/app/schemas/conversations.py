from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.conversation import (
    ConversationType,
    DisappearingTrigger,
    ParticipantRole,
)


class ParticipantSpec(BaseModel):
    user_id: int
    identity_id: int | None = None


class ConversationPrivacy(BaseModel):
    auto_delete_messages: bool | None = None
    auto_delete_hours: int | None = Field(default=None, ge=1, le=8760)
    disappearing_enabled: bool | None = None
    disappearing_seconds: int | None = Field(default=None, ge=5, le=604800)
    disappearing_trigger: DisappearingTrigger | None = None


class SecretChatSettings(BaseModel):
    encryption_enabled: bool | None = None
    rotate_key: bool = False
    screenshot_notifications: bool | None = None
    screenshot_blocked: bool | None = None
    forwarding_disabled: bool | None = None
    self_destruct_seconds: int | None = Field(default=None, ge=0, le=604800)


class ParticipantSettings(BaseModel):
    mute: bool | None = None
    mute_hours: int | None = Field(default=None, ge=1, le=8760)
    auto_delete_my_messages: bool | None = None
    auto_delete_hours: int | None = Field(default=None, ge=1, le=8760)


class CreateConversationRequest(BaseModel):
    conversation_type: ConversationType = ConversationType.DIRECT
    participants: list[ParticipantSpec] = Field(..., min_length=1)
    identity_id: int | None = None
    name: str | None = Field(default=None, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    privacy: ConversationPrivacy | None = None
    secret: SecretChatSettings | None = None
    max_participants: int = Field(default=256, ge=2, le=1000)
    admin_only_messaging: bool = False


class AddParticipantRequest(BaseModel):
    user_id: int
    identity_id: int | None = None
    role: ParticipantRole = ParticipantRole.MEMBER


class ArchiveConversationRequest(BaseModel):
    archive: bool = True


class ParticipantPermissions(BaseModel):
    can_send_messages: bool | None = None
    can_send_media: bool | None = None
    can_add_members: bool | None = None
    can_edit_group_info: bool | None = None
    can_delete_messages: bool | None = None


class UpdateRoleRequest(BaseModel):
    role: ParticipantRole
    permissions: ParticipantPermissions | None = None


class ParticipantRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    identity_id: int | None
    identity_deleted: bool
    deleted_identity_alias: str | None
    role: ParticipantRole
    can_send_messages: bool
    can_send_media: bool
    can_add_members: bool
    can_edit_group_info: bool
    can_delete_messages: bool
    is_muted: bool
    muted_until: datetime | None
    last_read_message_id: int | None
    last_read_at: datetime | None
    joined_at: datetime
    left_at: datetime | None


class ConversationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    conversation_type: ConversationType
    name: str | None
    description: str | None
    created_by: int
    last_message_id: int | None
    last_message_at: datetime | None
    participant_count: int
    total_messages: int
    auto_delete_messages: bool
    auto_delete_hours: int
    disappearing_enabled: bool
    disappearing_seconds: int
    disappearing_trigger: DisappearingTrigger
    encryption_enabled: bool
    key_version: int
    screenshot_notifications: bool
    screenshot_blocked: bool
    forwarding_disabled: bool
    self_destruct_seconds: int
    admin_only_messaging: bool
    is_archived: bool
    created_at: datetime


class ConversationResponse(BaseModel):
    success: bool = True
    conversation: ConversationRead
    key_fingerprint: str | None = None


class AdminsResponse(BaseModel):
    success: bool = True
    admins: list[ParticipantRead]
    count: int
    breakdown: dict[str, int]


class KeyFingerprintResponse(BaseModel):
    success: bool = True
    conversation_id: int
    key_version: int
    key_fingerprint: str
