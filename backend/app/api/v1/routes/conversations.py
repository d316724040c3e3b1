"""Conversation routes - membership and per-conversation settings."""

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_conversation_store, get_current_user
from app.models.conversation import ParticipantRole
from app.models.user import User
from app.schemas.conversations import (
    AddParticipantRequest,
    AdminsResponse,
    ArchiveConversationRequest,
    ConversationPrivacy,
    ConversationRead,
    ConversationResponse,
    CreateConversationRequest,
    KeyFingerprintResponse,
    ParticipantRead,
    ParticipantSettings,
    SecretChatSettings,
    UpdateRoleRequest,
)
from app.services.conversation_store import ConversationStore

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.post("", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
def create_conversation(
    create_request: CreateConversationRequest,
    current_user: User = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store),
) -> ConversationResponse:
    conversation, fingerprint = store.create_conversation(
        current_user.id,
        create_request.conversation_type,
        create_request.participants,
        identity_id=create_request.identity_id,
        name=create_request.name,
        description=create_request.description,
        privacy=create_request.privacy,
        secret=create_request.secret,
        max_participants=create_request.max_participants,
        admin_only_messaging=create_request.admin_only_messaging,
    )
    return ConversationResponse(
        conversation=ConversationRead.model_validate(conversation),
        key_fingerprint=fingerprint,
    )


@router.get("", response_model=list[ConversationRead])
def list_conversations(
    include_archived: bool = Query(False),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store),
) -> list[ConversationRead]:
    conversations = store.list_user_conversations(
        current_user.id, include_archived=include_archived, limit=limit, skip=skip
    )
    return [ConversationRead.model_validate(c) for c in conversations]


@router.get("/{conversation_id}", response_model=ConversationResponse)
def get_conversation(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store),
) -> ConversationResponse:
    conversation = store.get_conversation(current_user.id, conversation_id)
    return ConversationResponse(conversation=ConversationRead.model_validate(conversation))


@router.get("/{conversation_id}/participants", response_model=list[ParticipantRead])
def list_participants(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store),
) -> list[ParticipantRead]:
    participants = store.list_participants(current_user.id, conversation_id)
    return [ParticipantRead.model_validate(p) for p in participants]


@router.post(
    "/{conversation_id}/participants",
    response_model=ParticipantRead,
    status_code=status.HTTP_201_CREATED,
)
def add_participant(
    conversation_id: int,
    add_request: AddParticipantRequest,
    current_user: User = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store),
) -> ParticipantRead:
    participant = store.add_participant(
        current_user.id,
        conversation_id,
        add_request.user_id,
        identity_id=add_request.identity_id,
        role=add_request.role,
    )
    return ParticipantRead.model_validate(participant)


@router.delete("/{conversation_id}/participants/{user_id}", response_model=ParticipantRead)
def remove_participant(
    conversation_id: int,
    user_id: int,
    current_user: User = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store),
) -> ParticipantRead:
    participant = store.remove_participant(current_user.id, conversation_id, user_id)
    return ParticipantRead.model_validate(participant)


@router.put("/{conversation_id}/privacy", response_model=ConversationResponse)
def update_privacy(
    conversation_id: int,
    privacy: ConversationPrivacy,
    current_user: User = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store),
) -> ConversationResponse:
    conversation = store.update_privacy_settings(current_user.id, conversation_id, privacy)
    return ConversationResponse(conversation=ConversationRead.model_validate(conversation))


@router.put("/{conversation_id}/secret", response_model=ConversationResponse)
def update_secret_settings(
    conversation_id: int,
    secret: SecretChatSettings,
    current_user: User = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store),
) -> ConversationResponse:
    conversation, fingerprint = store.update_secret_settings(
        current_user.id, conversation_id, secret
    )
    return ConversationResponse(
        conversation=ConversationRead.model_validate(conversation),
        key_fingerprint=fingerprint,
    )


@router.put("/{conversation_id}/settings", response_model=ParticipantRead)
def update_participant_settings(
    conversation_id: int,
    participant_settings: ParticipantSettings,
    current_user: User = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store),
) -> ParticipantRead:
    participant = store.update_participant_settings(
        current_user.id, conversation_id, participant_settings
    )
    return ParticipantRead.model_validate(participant)


@router.put("/{conversation_id}/archive", response_model=ConversationResponse)
def archive_conversation(
    conversation_id: int,
    archive_request: ArchiveConversationRequest,
    current_user: User = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store),
) -> ConversationResponse:
    conversation = store.archive_conversation(
        current_user.id, conversation_id, archive_request.archive
    )
    return ConversationResponse(conversation=ConversationRead.model_validate(conversation))


@router.put("/{conversation_id}/participants/{user_id}/role", response_model=ParticipantRead)
def update_participant_role(
    conversation_id: int,
    user_id: int,
    role_request: UpdateRoleRequest,
    current_user: User = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store),
) -> ParticipantRead:
    participant = store.update_participant_role(
        current_user.id,
        conversation_id,
        user_id,
        role_request.role,
        permissions=role_request.permissions,
    )
    return ParticipantRead.model_validate(participant)


@router.get("/{conversation_id}/admins", response_model=AdminsResponse)
def list_admins(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store),
) -> AdminsResponse:
    admins = store.list_admins(current_user.id, conversation_id)
    return AdminsResponse(
        admins=[ParticipantRead.model_validate(p) for p in admins],
        count=len(admins),
        breakdown={
            role.value: sum(1 for p in admins if p.role == role)
            for role in (ParticipantRole.OWNER, ParticipantRole.ADMIN, ParticipantRole.MODERATOR)
        },
    )


@router.get("/{conversation_id}/key-fingerprint", response_model=KeyFingerprintResponse)
def get_key_fingerprint(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversation_store),
) -> KeyFingerprintResponse:
    fingerprint = store.get_key_fingerprint(current_user.id, conversation_id)
    conversation = store.get_conversation(current_user.id, conversation_id)
    return KeyFingerprintResponse(
        conversation_id=conversation.id,
        key_version=conversation.key_version,
        key_fingerprint=fingerprint,
    )
