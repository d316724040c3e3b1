"""Single definition of when identities and messages are usable or visible."""

from datetime import datetime

from sqlalchemy import or_
from sqlmodel import col, select

from app.models.identity import Identity
from app.models.message import Message, MessageDeletion


def identity_is_usable(identity: Identity, now: datetime) -> bool:
    return (
        not identity.is_deleted
        and identity.is_active
        and (identity.expires_at is None or identity.expires_at > now)
    )


def usable_identity_clause(now: datetime):
    """SQL form of identity_is_usable, for queries."""
    return (
        Identity.is_deleted == False,  # noqa: E712
        Identity.is_active == True,  # noqa: E712
        or_(col(Identity.expires_at).is_(None), col(Identity.expires_at) > now),
    )


def message_has_expired(message: Message, now: datetime) -> bool:
    return message.disappear_at is not None and message.disappear_at < now


def message_is_visible_to(
    message: Message,
    user_id: int,
    hidden_for: set[int],
    now: datetime,
) -> bool:
    """hidden_for holds the ids of users who deleted the message for themselves."""
    if message.is_deleted:
        return False
    if user_id in hidden_for:
        return False
    if message_has_expired(message, now):
        return False
    if message.self_destruct_at is not None and message.self_destruct_at < now:
        return False
    return True


def visible_message_clause(user_id: int, now: datetime):
    """SQL form of message_is_visible_to."""
    hidden = select(MessageDeletion.message_id).where(MessageDeletion.user_id == user_id)
    return (
        Message.is_deleted == False,  # noqa: E712
        col(Message.id).not_in(hidden),
        or_(col(Message.disappear_at).is_(None), col(Message.disappear_at) >= now),
        or_(col(Message.self_destruct_at).is_(None), col(Message.self_destruct_at) >= now),
    )
