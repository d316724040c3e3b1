"""Conversations, memberships and per-conversation settings."""

from collections.abc import Callable
from datetime import datetime, timedelta

from sqlmodel import Session, col, select

from app.core.db import atomic
from app.core.errors import AccessDenied, NotFound, ValidationFailed
from app.core.logger import logger
from app.core.security import (
    generate_conversation_key,
    key_fingerprint,
    unwrap_conversation_key,
    wrap_conversation_key,
)
from app.core.security_utils import sanitize_string
from app.models.audit import AuditLog
from app.models.conversation import (
    Conversation,
    ConversationType,
    Participant,
    ParticipantRole,
)
from app.models.message import Message
from app.schemas.conversations import (
    ConversationPrivacy,
    ParticipantPermissions,
    ParticipantSettings,
    ParticipantSpec,
    SecretChatSettings,
)
from app.services.identity_store import IdentityStore, count_active_memberships
from app.utils.time import utcnow

MODERATOR_ROLES = (ParticipantRole.ADMIN, ParticipantRole.OWNER)


def permissions_for(role: ParticipantRole) -> dict:
    elevated = role in (ParticipantRole.ADMIN, ParticipantRole.OWNER)
    return {
        "can_send_messages": True,
        "can_send_media": True,
        "can_add_members": elevated,
        "can_edit_group_info": elevated,
        "can_delete_messages": elevated or role == ParticipantRole.MODERATOR,
    }


def can_moderate(participant: Participant | None) -> bool:
    if participant is None:
        return False
    return participant.role in MODERATOR_ROLES or participant.can_delete_messages


def check_role_change(
    actor_role: ParticipantRole,
    current_role: ParticipantRole,
    new_role: ParticipantRole,
) -> None:
    """Owners manage every role; admins only move members and demote admins."""
    if actor_role == ParticipantRole.OWNER:
        return
    if actor_role == ParticipantRole.ADMIN:
        if current_role == ParticipantRole.MEMBER and new_role in (
            ParticipantRole.MEMBER,
            ParticipantRole.ADMIN,
            ParticipantRole.MODERATOR,
        ):
            return
        if current_role == ParticipantRole.ADMIN and new_role == ParticipantRole.MEMBER:
            return
        raise AccessDenied("Admins can only promote members or demote admins to members")
    raise AccessDenied("Insufficient permissions to manage roles")


class ConversationStore:
    def __init__(
        self,
        db_session: Session,
        identities: IdentityStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db_session
        self.identities = identities
        self.clock = clock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_participant(
        self, conversation_id: int, user_id: int, active_only: bool = True
    ) -> Participant | None:
        statement = select(Participant).where(
            Participant.conversation_id == conversation_id,
            Participant.user_id == user_id,
        )
        if active_only:
            statement = statement.where(col(Participant.left_at).is_(None))
        return self.db.exec(statement).first()

    def require_participant(self, conversation_id: int, user_id: int) -> Participant:
        participant = self.get_participant(conversation_id, user_id)
        if participant is None:
            raise AccessDenied("You are not a participant in this conversation")
        return participant

    def get_conversation(self, user_id: int, conversation_id: int) -> Conversation:
        conversation = self.db.get(Conversation, conversation_id)
        if conversation is None or conversation.is_deleted:
            raise NotFound("Conversation not found")
        self.require_participant(conversation_id, user_id)
        return conversation

    def list_user_conversations(
        self,
        user_id: int,
        include_archived: bool = False,
        limit: int = 50,
        skip: int = 0,
    ) -> list[Conversation]:
        statement = (
            select(Conversation)
            .join(Participant, Participant.conversation_id == Conversation.id)
            .where(
                Participant.user_id == user_id,
                col(Participant.left_at).is_(None),
                Conversation.is_deleted == False,  # noqa: E712
            )
        )
        if not include_archived:
            statement = statement.where(Conversation.is_archived == False)  # noqa: E712
        statement = (
            statement.order_by(
                col(Conversation.last_message_at).desc(),
                col(Conversation.created_at).desc(),
            )
            .offset(skip)
            .limit(min(max(limit, 1), 100))
        )
        return list(self.db.exec(statement).all())

    def list_participants(self, user_id: int, conversation_id: int) -> list[Participant]:
        self.get_conversation(user_id, conversation_id)
        statement = select(Participant).where(
            Participant.conversation_id == conversation_id,
            col(Participant.left_at).is_(None),
        )
        return list(self.db.exec(statement).all())

    def count_active_memberships(self, identity_id: int) -> int:
        return count_active_memberships(self.db, identity_id)

    def _find_direct(self, user_a: int, user_b: int) -> Conversation | None:
        mine = select(Participant.conversation_id).where(
            Participant.user_id == user_a, col(Participant.left_at).is_(None)
        )
        statement = (
            select(Conversation)
            .join(Participant, Participant.conversation_id == Conversation.id)
            .where(
                Conversation.conversation_type == ConversationType.DIRECT,
                Conversation.is_deleted == False,  # noqa: E712
                Participant.user_id == user_b,
                col(Participant.left_at).is_(None),
                col(Conversation.id).in_(mine),
            )
        )
        return self.db.exec(statement).first()

    # ------------------------------------------------------------------
    # Create and membership
    # ------------------------------------------------------------------

    def create_conversation(
        self,
        user_id: int,
        conversation_type: ConversationType,
        participants: list[ParticipantSpec],
        identity_id: int | None = None,
        name: str | None = None,
        description: str | None = None,
        privacy: ConversationPrivacy | None = None,
        secret: SecretChatSettings | None = None,
        max_participants: int = 256,
        admin_only_messaging: bool = False,
    ) -> tuple[Conversation, str | None]:
        """Returns the conversation and, for a new secret chat, its key fingerprint."""
        others = [spec for spec in participants if spec.user_id != user_id]
        if not others:
            raise ValidationFailed("A conversation needs at least one other participant")
        if len({spec.user_id for spec in others}) != len(others):
            raise ValidationFailed("Duplicate participants")
        if conversation_type == ConversationType.DIRECT and len(others) != 1:
            raise ValidationFailed("Direct conversations have exactly two participants")
        if len(others) + 1 > max_participants:
            raise ValidationFailed(f"At most {max_participants} participants allowed")

        creator_identity = self.identities.get_usable_identity(user_id, identity_id)
        member_identities = [
            self.identities.get_usable_identity(spec.user_id, spec.identity_id)
            for spec in others
        ]

        if conversation_type == ConversationType.DIRECT:
            existing = self._find_direct(user_id, others[0].user_id)
            if existing is not None:
                return existing, None

        now = self.clock()
        conversation = Conversation(
            conversation_type=conversation_type,
            name=sanitize_string(name, 100) if name else None,
            description=sanitize_string(description, 500) if description else None,
            created_by=user_id,
            max_participants=max_participants,
            admin_only_messaging=admin_only_messaging,
            created_at=now,
            updated_at=now,
        )
        self._apply_privacy(conversation, privacy)
        fingerprint = None
        if conversation_type == ConversationType.SECRET:
            secret = secret or SecretChatSettings(encryption_enabled=True)
            if secret.encryption_enabled is None:
                secret = secret.model_copy(update={"encryption_enabled": True})
            fingerprint = self._apply_secret(conversation, secret)

        with atomic(self.db):
            self.db.add(conversation)
            self.db.flush()

            creator_role = (
                ParticipantRole.MEMBER
                if conversation_type == ConversationType.DIRECT
                else ParticipantRole.OWNER
            )
            self._add_member(conversation, user_id, creator_identity.id, creator_role, now)
            for spec, identity in zip(others, member_identities):
                self._add_member(conversation, spec.user_id, identity.id, ParticipantRole.MEMBER, now)

            self.identities.increment_usage(creator_identity, "conversation")

        self.db.refresh(conversation)
        logger.info(
            f"Created {conversation_type.value} conversation {conversation.id} by user {user_id}"
        )
        return conversation, fingerprint

    def _add_member(
        self,
        conversation: Conversation,
        user_id: int,
        identity_id: int,
        role: ParticipantRole,
        now: datetime,
    ) -> Participant:
        participant = self.get_participant(conversation.id, user_id, active_only=False)
        if participant is None:
            participant = Participant(
                conversation_id=conversation.id,
                user_id=user_id,
                identity_id=identity_id,
                role=role,
                joined_at=now,
                **permissions_for(role),
            )
        else:
            participant.left_at = None
            participant.identity_id = identity_id
            participant.identity_deleted = False
            participant.deleted_identity_alias = None
            participant.role = role
            participant.joined_at = now
            for key, value in permissions_for(role).items():
                setattr(participant, key, value)
        self.db.add(participant)

        conversation.participant_count += 1
        conversation.peak_participants = max(
            conversation.peak_participants, conversation.participant_count
        )
        conversation.updated_at = now
        self.db.add(conversation)
        self.db.flush()
        return participant

    def add_participant(
        self,
        user_id: int,
        conversation_id: int,
        new_user_id: int,
        identity_id: int | None = None,
        role: ParticipantRole = ParticipantRole.MEMBER,
    ) -> Participant:
        conversation = self.get_conversation(user_id, conversation_id)
        actor = self.require_participant(conversation_id, user_id)
        if conversation.conversation_type == ConversationType.DIRECT:
            raise ValidationFailed("Cannot add participants to a direct conversation")
        if not (actor.can_add_members or actor.role in MODERATOR_ROLES):
            raise AccessDenied("You cannot add members to this conversation")
        if role == ParticipantRole.OWNER:
            raise ValidationFailed("A conversation has a single owner")
        if self.get_participant(conversation_id, new_user_id) is not None:
            raise ValidationFailed("User is already a participant")
        if conversation.participant_count >= conversation.max_participants:
            raise ValidationFailed("Conversation is full")

        identity = self.identities.get_usable_identity(new_user_id, identity_id)
        with atomic(self.db):
            participant = self._add_member(
                conversation, new_user_id, identity.id, role, self.clock()
            )
        self.db.refresh(participant)
        return participant

    def remove_participant(self, user_id: int, conversation_id: int, target_user_id: int) -> Participant:
        conversation = self.get_conversation(user_id, conversation_id)
        actor = self.require_participant(conversation_id, user_id)
        target = self.get_participant(conversation_id, target_user_id)
        if target is None:
            raise NotFound("Participant not found")
        if target_user_id != user_id and actor.role not in MODERATOR_ROLES:
            raise AccessDenied("Only admins can remove other participants")
        if target.role == ParticipantRole.OWNER and target_user_id != user_id:
            raise AccessDenied("The owner cannot be removed")

        with atomic(self.db):
            now = self.clock()
            target.left_at = now
            self.db.add(target)
            conversation.participant_count = max(0, conversation.participant_count - 1)
            conversation.updated_at = now
            self.db.add(conversation)
        self.db.refresh(target)
        return target

    def update_participant_role(
        self,
        user_id: int,
        conversation_id: int,
        target_user_id: int,
        role: ParticipantRole,
        permissions: ParticipantPermissions | None = None,
    ) -> Participant:
        """
        Change a member's role and reset its permissions to the role's
        defaults, with explicit overrides applied on top.

        Handing OWNER to someone else demotes the current owner to admin.
        """
        conversation = self.get_conversation(user_id, conversation_id)
        if conversation.conversation_type not in (
            ConversationType.GROUP,
            ConversationType.BROADCAST,
        ):
            raise ValidationFailed("Roles only apply to group and broadcast conversations")
        actor = self.require_participant(conversation_id, user_id)
        target = self.get_participant(conversation_id, target_user_id)
        if target is None:
            raise NotFound("Participant not found")
        if target.user_id == actor.user_id:
            raise ValidationFailed("You cannot change your own role")

        check_role_change(actor.role, target.role, role)
        old_role = target.role

        with atomic(self.db):
            now = self.clock()
            if role == ParticipantRole.OWNER:
                actor.role = ParticipantRole.ADMIN
                for key, value in permissions_for(ParticipantRole.ADMIN).items():
                    setattr(actor, key, value)
                self.db.add(actor)

            target.role = role
            overrides = permissions.model_dump(exclude_none=True) if permissions else {}
            for key, value in {**permissions_for(role), **overrides}.items():
                setattr(target, key, value)
            self.db.add(target)

            conversation.updated_at = now
            self.db.add(conversation)
            self.db.add(
                AuditLog(
                    action="PARTICIPANT_ROLE_CHANGE",
                    user_id=user_id,
                    resource_type="participant",
                    resource_id=target.id,
                    details={
                        "conversation_id": conversation_id,
                        "target_user_id": target_user_id,
                        "old_role": old_role.value,
                        "new_role": role.value,
                    },
                    created_at=now,
                )
            )

        self.db.refresh(target)
        logger.info(
            f"Conversation {conversation_id}: user {target_user_id} role "
            f"{old_role.value} -> {role.value} by user {user_id}"
        )
        return target

    def list_admins(self, user_id: int, conversation_id: int) -> list[Participant]:
        """Owners, admins and moderators still in the conversation."""
        self.get_conversation(user_id, conversation_id)
        statement = (
            select(Participant)
            .where(
                Participant.conversation_id == conversation_id,
                col(Participant.left_at).is_(None),
                col(Participant.role).in_(
                    [ParticipantRole.OWNER, ParticipantRole.ADMIN, ParticipantRole.MODERATOR]
                ),
            )
            .order_by(col(Participant.joined_at))
        )
        return list(self.db.exec(statement).all())

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @staticmethod
    def _apply_privacy(conversation: Conversation, privacy: ConversationPrivacy | None) -> None:
        if privacy is None:
            return
        for key, value in privacy.model_dump(exclude_none=True).items():
            setattr(conversation, key, value)

    @staticmethod
    def _apply_secret(conversation: Conversation, secret: SecretChatSettings) -> str | None:
        """Apply secret-chat flags; returns a fingerprint when a new key was issued."""
        values = secret.model_dump(exclude_none=True, exclude={"rotate_key"})
        fingerprint = None
        turning_on = values.get("encryption_enabled") and not conversation.encryption_enabled
        if turning_on or (secret.rotate_key and conversation.encryption_enabled):
            raw_key = generate_conversation_key()
            conversation.encryption_key, conversation.key_salt = wrap_conversation_key(raw_key)
            conversation.key_version += 1
            fingerprint = key_fingerprint(raw_key)
        if values.get("encryption_enabled") is False:
            conversation.encryption_key = None
            conversation.key_salt = None
        for key, value in values.items():
            setattr(conversation, key, value)
        return fingerprint

    def _require_settings_rights(self, conversation: Conversation, participant: Participant) -> None:
        if conversation.conversation_type == ConversationType.DIRECT:
            return
        if not (participant.can_edit_group_info or participant.role in MODERATOR_ROLES):
            raise AccessDenied("Only admins can change conversation settings")

    def update_privacy_settings(
        self, user_id: int, conversation_id: int, privacy: ConversationPrivacy
    ) -> Conversation:
        conversation = self.get_conversation(user_id, conversation_id)
        self._require_settings_rights(conversation, self.require_participant(conversation_id, user_id))
        self._apply_privacy(conversation, privacy)
        conversation.updated_at = self.clock()
        with atomic(self.db):
            self.db.add(conversation)
        self.db.refresh(conversation)
        return conversation

    def update_secret_settings(
        self, user_id: int, conversation_id: int, secret: SecretChatSettings
    ) -> tuple[Conversation, str | None]:
        conversation = self.get_conversation(user_id, conversation_id)
        if conversation.conversation_type != ConversationType.SECRET:
            raise ValidationFailed("Secret chat settings apply to secret conversations only")
        self._require_settings_rights(conversation, self.require_participant(conversation_id, user_id))
        fingerprint = self._apply_secret(conversation, secret)
        conversation.updated_at = self.clock()
        with atomic(self.db):
            self.db.add(conversation)
        self.db.refresh(conversation)
        if fingerprint:
            logger.info(
                f"Conversation {conversation.id} key issued (version {conversation.key_version})"
            )
        return conversation, fingerprint

    def get_key_fingerprint(self, user_id: int, conversation_id: int) -> str:
        """Fingerprint of the current key, for members to compare out of band."""
        conversation = self.get_conversation(user_id, conversation_id)
        if not (conversation.encryption_enabled and conversation.encryption_key):
            raise ValidationFailed("Conversation has no encryption key")
        try:
            raw_key = unwrap_conversation_key(conversation.encryption_key, conversation.key_salt)
        except ValueError:
            logger.error(f"Conversation {conversation_id} key could not be unwrapped")
            raise
        return key_fingerprint(raw_key)

    def update_participant_settings(
        self, user_id: int, conversation_id: int, new_settings: ParticipantSettings
    ) -> Participant:
        self.get_conversation(user_id, conversation_id)
        participant = self.require_participant(conversation_id, user_id)
        now = self.clock()
        if new_settings.mute is True:
            participant.is_muted = True
            participant.muted_until = (
                now + timedelta(hours=new_settings.mute_hours)
                if new_settings.mute_hours
                else None
            )
        elif new_settings.mute is False:
            participant.is_muted = False
            participant.muted_until = None
        if new_settings.auto_delete_my_messages is not None:
            participant.auto_delete_my_messages = new_settings.auto_delete_my_messages
        if new_settings.auto_delete_hours is not None:
            participant.auto_delete_hours = new_settings.auto_delete_hours
        with atomic(self.db):
            self.db.add(participant)
        self.db.refresh(participant)
        return participant

    def archive_conversation(self, user_id: int, conversation_id: int, archive: bool = True) -> Conversation:
        conversation = self.get_conversation(user_id, conversation_id)
        self._require_settings_rights(conversation, self.require_participant(conversation_id, user_id))
        conversation.is_archived = archive
        conversation.updated_at = self.clock()
        with atomic(self.db):
            self.db.add(conversation)
        self.db.refresh(conversation)
        return conversation

    # ------------------------------------------------------------------
    # Hooks used by the message lifecycle, inside its transaction
    # ------------------------------------------------------------------

    def update_last_message(self, conversation: Conversation, message: Message) -> None:
        conversation.last_message_id = message.id
        conversation.last_message_at = message.sent_at
        conversation.total_messages += 1
        conversation.updated_at = message.sent_at
        self.db.add(conversation)

    def update_read_cursor(self, participant: Participant, message: Message) -> None:
        if participant.last_read_message_id is None or participant.last_read_message_id < message.id:
            participant.last_read_message_id = message.id
            participant.last_read_at = self.clock()
            self.db.add(participant)
