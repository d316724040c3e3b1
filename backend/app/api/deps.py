"""Shared FastAPI dependencies."""

from fastapi import Depends, HTTPException, Request, status
from sqlmodel import Session

from app.core.config import settings
from app.core.db import get_db_session
from app.core.rate_limiter import enforce_rate_limit
from app.core.sessions import get_session
from app.models.user import User
from app.services.conversation_store import ConversationStore
from app.services.identity_store import IdentityStore
from app.services.message_lifecycle import MessageLifecycleManager


def get_current_user(
    request: Request,
    db_session: Session = Depends(get_db_session),
) -> User:
    """
    Get current authenticated user from session cookie.

    Raises:
        HTTPException: If session is invalid or user not found
    """
    session_id = request.cookies.get(settings.SESSION_COOKIE_NAME)

    if not session_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    session_data = get_session(session_id)
    if not session_data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session expired",
        )

    user = db_session.get(User, session_data.user_id)
    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )

    return user


def get_identity_store(db_session: Session = Depends(get_db_session)) -> IdentityStore:
    return IdentityStore(db_session)


def get_conversation_store(
    identities: IdentityStore = Depends(get_identity_store),
) -> ConversationStore:
    return ConversationStore(identities.db, identities)


def get_message_manager(
    conversations: ConversationStore = Depends(get_conversation_store),
) -> MessageLifecycleManager:
    return MessageLifecycleManager(
        conversations.db, conversations.identities, conversations
    )


def limit_search(current_user: User = Depends(get_current_user)) -> None:
    enforce_rate_limit("search", current_user.id)


def limit_alias_check(current_user: User = Depends(get_current_user)) -> None:
    enforce_rate_limit("alias_check", current_user.id)


def limit_bulk(current_user: User = Depends(get_current_user)) -> None:
    enforce_rate_limit("bulk", current_user.id)


def limit_import(current_user: User = Depends(get_current_user)) -> None:
    enforce_rate_limit("import", current_user.id)
