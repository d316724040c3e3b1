from app.models.audit import AuditLog, DeletionType, MessageDeletionLog
from app.models.conversation import (
    Conversation,
    ConversationType,
    DisappearingTrigger,
    Participant,
    ParticipantRole,
)
from app.models.identity import (
    AttributionDisplay,
    AutoDeletePreset,
    Identity,
    IdentityRead,
)
from app.models.message import (
    DeliveryStatus,
    Message,
    MessageDeletion,
    MessageEdit,
    MessageReaction,
    MessageReadReceipt,
    MessageType,
    ScreenshotLog,
    ScreenshotMethod,
)
from app.models.user import User, UserRead

__all__ = [
    "User",
    "UserRead",
    "Identity",
    "IdentityRead",
    "AutoDeletePreset",
    "AttributionDisplay",
    "Conversation",
    "ConversationType",
    "DisappearingTrigger",
    "Participant",
    "ParticipantRole",
    "Message",
    "MessageType",
    "DeliveryStatus",
    "MessageReadReceipt",
    "MessageReaction",
    "MessageDeletion",
    "MessageEdit",
    "ScreenshotLog",
    "ScreenshotMethod",
    "AuditLog",
    "MessageDeletionLog",
    "DeletionType",
]
