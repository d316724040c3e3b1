from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.models.identity import AttributionDisplay, AutoDeletePreset, IdentityRead


class AutoDeleteSettings(BaseModel):
    enabled: bool = False
    preset: AutoDeletePreset | None = None
    custom_days: int | None = Field(default=None, ge=1, le=365)


class PrivacySettings(BaseModel):
    allow_strangers: bool | None = None
    allow_message_requests: bool | None = None
    read_receipts_enabled: bool | None = None
    typing_indicators: bool | None = None
    online_status: bool | None = None


class ForwardingPreferences(BaseModel):
    default_attribution: AttributionDisplay | None = None
    allow_others_to_forward: bool | None = None
    require_attribution: bool | None = None
    max_forward_chain: int | None = Field(default=None, ge=1, le=50)
    forward_to_public_channels: bool | None = None


class CreateIdentityRequest(BaseModel):
    alias: str = Field(..., min_length=2, max_length=50)
    display_name: str | None = Field(default=None, max_length=100)
    avatar: str | None = Field(default=None, max_length=500)
    is_default: bool = False
    expires_at: datetime | None = None
    auto_delete: AutoDeleteSettings | None = None
    privacy: PrivacySettings | None = None
    forwarding: ForwardingPreferences | None = None


class UpdateIdentityRequest(BaseModel):
    display_name: str | None = Field(default=None, max_length=100)
    avatar: str | None = Field(default=None, max_length=500)
    expires_at: datetime | None = None


class CloneIdentityRequest(BaseModel):
    alias: str = Field(..., min_length=2, max_length=50)
    display_name: str | None = Field(default=None, max_length=100)
    copy_settings: bool = True


class ArchiveRequest(BaseModel):
    archive: bool = True


class ProtectionRequest(BaseModel):
    protect: bool


class ProtectionUpdate(BaseModel):
    identity_id: int
    protect: bool


class BulkProtectionRequest(BaseModel):
    updates: list[ProtectionUpdate] = Field(..., min_length=1)


class BulkPrivacyRequest(BaseModel):
    identity_ids: list[int] = Field(..., min_length=1)
    privacy: PrivacySettings


class BulkDeleteRequest(BaseModel):
    identity_ids: list[int] = Field(..., min_length=1)
    deletion_type: Literal["soft", "permanent"] = "soft"
    force: bool = False


class IdentityImportItem(BaseModel):
    alias: str = Field(..., min_length=2, max_length=50)
    display_name: str | None = Field(default=None, max_length=100)
    avatar: str | None = Field(default=None, max_length=500)
    expires_at: datetime | None = None
    auto_delete: AutoDeleteSettings | None = None
    privacy: PrivacySettings | None = None
    forwarding: ForwardingPreferences | None = None


class ImportIdentitiesRequest(BaseModel):
    identities: list[IdentityImportItem] = Field(..., min_length=1)
    overwrite_existing: bool = False


class IdentityResponse(BaseModel):
    success: bool = True
    identity: IdentityRead
    warnings: list[str] = []


class IdentityListResponse(BaseModel):
    success: bool = True
    identities: list[IdentityRead]
    total: int
    limit: int
    skip: int


class DeletionResponse(BaseModel):
    success: bool = True
    deletion_type: Literal["soft", "permanent"]
    restorable: bool
    protection_level: str
    replacement_default: str | None = None
    identity_id: int
    alias: str
    warnings: list[str] = []


class BulkResponse(BaseModel):
    success: bool = True
    processed: list[dict]
    errors: list[dict]
    summary: dict
