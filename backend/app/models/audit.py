from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from app.utils.time import utcnow


class DeletionType(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"
    DISAPPEARING = "disappearing"
    SELF_DESTRUCT = "self_destruct"


class AuditLog(SQLModel, table=True):
    """Durable trail of destructive identity operations."""

    id: int | None = Field(default=None, primary_key=True)
    action: str = Field(max_length=64, index=True)
    user_id: int = Field(index=True)
    resource_type: str = Field(max_length=32)
    resource_id: int
    details: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)


class MessageDeletionLog(SQLModel, table=True):
    """Record of a message leaving a conversation, by hand or by a deadline."""

    id: int | None = Field(default=None, primary_key=True)
    message_id: int = Field(index=True)
    conversation_id: int = Field(index=True)
    deleted_by: int | None = None
    deletion_type: DeletionType
    reason: str | None = Field(default=None, max_length=200)
    created_at: datetime = Field(default_factory=utcnow)
