"""
Message lifecycle: send, read, edit, react, pin, delete, forward and
screenshot reporting.

Deadlines (auto-delete, disappearing, self-destruct) are stamped on the row
when their triggering event happens; the expiry sweep acts on them later.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

from sqlmodel import Session, col, select

from app.core.config import settings
from app.core.db import atomic
from app.core.errors import (
    AccessDenied,
    AttributionRequired,
    EditWindowExpired,
    ForwardChainExceeded,
    ForwardingDisabled,
    NotFound,
    ValidationFailed,
)
from app.core.logger import logger
from app.core.security_utils import clean_content, sanitize_string
from app.models.audit import DeletionType, MessageDeletionLog
from app.models.conversation import (
    Conversation,
    ConversationType,
    DisappearingTrigger,
    Participant,
)
from app.models.identity import AttributionDisplay, Identity
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
from app.policies import delivery
from app.policies.attribution import Attribution, resolve_attribution
from app.policies.visibility import message_is_visible_to, visible_message_clause
from app.services.conversation_store import MODERATOR_ROLES, ConversationStore, can_moderate
from app.services.identity_store import IdentityStore
from app.utils.time import utcnow

EDITABLE_TYPES = (MessageType.TEXT, MessageType.LINK)
CONTENT_TYPES = (MessageType.TEXT, MessageType.LINK)

ScreenshotNotifier = Callable[[Message, int, ScreenshotMethod], None]


def log_screenshot_notifier(message: Message, user_id: int, method: ScreenshotMethod) -> None:
    logger.info(
        f"Screenshot ({method.value}) of message {message.id} by user {user_id} "
        f"in conversation {message.conversation_id}"
    )


class MessageLifecycleManager:
    def __init__(
        self,
        db_session: Session,
        identities: IdentityStore,
        conversations: ConversationStore,
        notifier: ScreenshotNotifier = log_screenshot_notifier,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db_session
        self.identities = identities
        self.conversations = conversations
        self.notifier = notifier
        self.clock = clock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _hidden_for(self, message_id: int) -> set[int]:
        statement = select(MessageDeletion.user_id).where(
            MessageDeletion.message_id == message_id
        )
        return set(self.db.exec(statement).all())

    def get_message(self, user_id: int, message_id: int) -> tuple[Message, Participant]:
        """A message the user can currently see, with the user's membership."""
        message = self.db.get(Message, message_id)
        if message is None:
            raise NotFound("Message not found")
        participant = self.conversations.require_participant(message.conversation_id, user_id)
        if not message_is_visible_to(
            message, user_id, self._hidden_for(message.id), self.clock()
        ):
            raise NotFound("Message not found")
        return message, participant

    def get_messages(
        self,
        user_id: int,
        conversation_id: int,
        limit: int = 50,
        skip: int = 0,
    ) -> list[Message]:
        self.conversations.get_conversation(user_id, conversation_id)
        statement = (
            select(Message)
            .where(
                Message.conversation_id == conversation_id,
                *visible_message_clause(user_id, self.clock()),
            )
            .order_by(col(Message.sent_at).desc(), col(Message.id).desc())
            .offset(skip)
            .limit(max(1, min(limit, settings.MESSAGE_PAGE_LIMIT)))
        )
        return list(self.db.exec(statement).all())

    def get_unread(
        self,
        user_id: int,
        conversation_id: int | None = None,
        limit: int = 50,
    ) -> list[Message]:
        """Visible messages from others that the user has no read receipt for."""
        if conversation_id is not None:
            self.conversations.get_conversation(user_id, conversation_id)
        joined = select(Participant.conversation_id).where(
            Participant.user_id == user_id, col(Participant.left_at).is_(None)
        )
        read = select(MessageReadReceipt.message_id).where(
            MessageReadReceipt.user_id == user_id
        )
        statement = select(Message).where(
            col(Message.conversation_id).in_(joined),
            Message.sender_user_id != user_id,
            col(Message.id).not_in(read),
            *visible_message_clause(user_id, self.clock()),
        )
        if conversation_id is not None:
            statement = statement.where(Message.conversation_id == conversation_id)
        statement = statement.order_by(
            col(Message.sent_at).desc(), col(Message.id).desc()
        ).limit(max(1, min(limit, settings.MESSAGE_PAGE_LIMIT)))
        return list(self.db.exec(statement).all())

    def _sender_identity(self, user_id: int, participant: Participant, identity_id: int | None) -> Identity:
        if identity_id is None and participant.identity_id is not None:
            identity = self.db.get(Identity, participant.identity_id)
            if identity is not None:
                return self.identities.get_usable_identity(user_id, identity.id)
        return self.identities.get_usable_identity(user_id, identity_id)

    @staticmethod
    def _check_send_rights(
        conversation: Conversation, participant: Participant, has_media: bool
    ) -> None:
        if not participant.can_send_messages:
            raise AccessDenied("You cannot send messages in this conversation")
        if conversation.admin_only_messaging and participant.role not in MODERATOR_ROLES:
            raise AccessDenied("Only admins can send messages in this conversation")
        if has_media and not participant.can_send_media:
            raise AccessDenied("You cannot send media in this conversation")

    def _stamp_deadlines(
        self,
        message: Message,
        conversation: Conversation,
        participant: Participant,
        identity: Identity,
        now: datetime,
        disappear_after_seconds: int | None = None,
    ) -> None:
        """Auto-delete, disappearing and self-destruct deadlines at send time."""
        if participant.auto_delete_my_messages and participant.auto_delete_hours:
            message.auto_delete_at = now + timedelta(hours=participant.auto_delete_hours)
        elif conversation.auto_delete_messages:
            message.auto_delete_at = now + timedelta(hours=conversation.auto_delete_hours)
        elif identity.auto_delete_effective_days > 0:
            message.auto_delete_at = now + timedelta(days=identity.auto_delete_effective_days)

        seconds = None
        if conversation.disappearing_enabled:
            seconds = conversation.disappearing_seconds
        elif disappear_after_seconds:
            seconds = disappear_after_seconds
        if seconds:
            message.is_disappearing = True
            message.disappear_after_seconds = seconds
            if conversation.disappearing_trigger == DisappearingTrigger.ON_SEND:
                message.disappear_at = now + timedelta(seconds=seconds)

        if conversation.conversation_type == ConversationType.SECRET:
            message.is_encrypted = conversation.encryption_enabled
            if conversation.self_destruct_seconds > 0:
                message.self_destruct_at = now + timedelta(
                    seconds=conversation.self_destruct_seconds
                )

    def _record_sent(
        self,
        message: Message,
        conversation: Conversation,
        participant: Participant,
        identity: Identity,
    ) -> None:
        self.conversations.update_last_message(conversation, message)
        participant.messages_sent += 1
        self.db.add(participant)
        self.identities.increment_usage(identity, "sent")

        recipients = self.db.exec(
            select(Identity)
            .join(Participant, Participant.identity_id == Identity.id)
            .where(
                Participant.conversation_id == conversation.id,
                Participant.user_id != participant.user_id,
                col(Participant.left_at).is_(None),
            )
        ).all()
        for recipient in recipients:
            self.identities.increment_usage(recipient, "received")

    # ------------------------------------------------------------------
    # Send / read
    # ------------------------------------------------------------------

    def send_message(
        self,
        user_id: int,
        conversation_id: int,
        content: str | None = None,
        message_type: MessageType = MessageType.TEXT,
        media: list[str] | None = None,
        formatting: list[dict] | None = None,
        reply_to_id: int | None = None,
        identity_id: int | None = None,
        disappear_after_seconds: int | None = None,
    ) -> Message:
        conversation = self.conversations.get_conversation(user_id, conversation_id)
        participant = self.conversations.require_participant(conversation_id, user_id)
        media = list(media or [])
        self._check_send_rights(conversation, participant, bool(media))

        content = clean_content(content)
        if message_type in CONTENT_TYPES and not content:
            raise ValidationFailed("Message content is required")
        if message_type not in CONTENT_TYPES and not content and not media:
            raise ValidationFailed("Message must have content or media")
        if reply_to_id is not None:
            replied = self.db.get(Message, reply_to_id)
            if replied is None or replied.conversation_id != conversation_id:
                raise ValidationFailed("Reply target is not in this conversation")

        identity = self._sender_identity(user_id, participant, identity_id)
        now = self.clock()
        message = Message(
            conversation_id=conversation_id,
            sender_user_id=user_id,
            sender_identity_id=identity.id,
            message_type=message_type,
            content=content,
            media=media,
            formatting=list(formatting or []),
            reply_to_id=reply_to_id,
            sent_at=now,
            original_sent_at=now,
            delivery_status=DeliveryStatus.SENT,
            allow_further_forwarding=identity.allow_others_to_forward,
            require_attribution=identity.require_attribution,
        )
        self._stamp_deadlines(
            message, conversation, participant, identity, now, disappear_after_seconds
        )

        with atomic(self.db):
            self.db.add(message)
            self.db.flush()
            self._record_sent(message, conversation, participant, identity)

        self.db.refresh(message)
        return message

    def mark_read(self, user_id: int, message_id: int) -> Message:
        """Idempotent per user; the first read by a recipient can start the disappearing timer."""
        message, participant = self.get_message(user_id, message_id)
        if message.sender_user_id == user_id:
            return message

        existing = self.db.exec(
            select(MessageReadReceipt).where(
                MessageReadReceipt.message_id == message.id,
                MessageReadReceipt.user_id == user_id,
            )
        ).first()
        if existing is not None:
            return message

        now = self.clock()
        with atomic(self.db):
            self.db.add(MessageReadReceipt(message_id=message.id, user_id=user_id, read_at=now))
            if DeliveryStatus.READ in delivery.TRANSITIONS[message.delivery_status]:
                message.delivery_status = DeliveryStatus.READ
            if message.is_disappearing and message.disappear_at is None:
                message.disappear_at = now + timedelta(seconds=message.disappear_after_seconds)
            self.db.add(message)
            self.conversations.update_read_cursor(participant, message)

        self.db.refresh(message)
        return message

    def update_delivery_status(self, user_id: int, message_id: int, status: DeliveryStatus) -> Message:
        message, _ = self.get_message(user_id, message_id)
        new_status = delivery.advance(message.delivery_status, status)
        if new_status == message.delivery_status:
            return message
        message.delivery_status = new_status
        if new_status == DeliveryStatus.DELIVERED:
            message.delivered_at = self.clock()
        with atomic(self.db):
            self.db.add(message)
        self.db.refresh(message)
        return message

    def read_receipts(self, user_id: int, message_id: int) -> list[MessageReadReceipt]:
        message, _ = self.get_message(user_id, message_id)
        return list(
            self.db.exec(
                select(MessageReadReceipt).where(MessageReadReceipt.message_id == message.id)
            ).all()
        )

    # ------------------------------------------------------------------
    # Reactions, edits, pins
    # ------------------------------------------------------------------

    def add_reaction(self, user_id: int, message_id: int, emoji: str) -> MessageReaction:
        """One reaction per user; reacting again replaces the emoji."""
        message, _ = self.get_message(user_id, message_id)
        emoji = sanitize_string(emoji, max_length=10)
        if not emoji:
            raise ValidationFailed("Emoji is required")

        reaction = self.db.exec(
            select(MessageReaction).where(
                MessageReaction.message_id == message.id,
                MessageReaction.user_id == user_id,
            )
        ).first()
        if reaction is None:
            reaction = MessageReaction(message_id=message.id, user_id=user_id, emoji=emoji)
        reaction.emoji = emoji
        reaction.reacted_at = self.clock()
        with atomic(self.db):
            self.db.add(reaction)
        self.db.refresh(reaction)
        return reaction

    def remove_reaction(self, user_id: int, message_id: int) -> bool:
        message, _ = self.get_message(user_id, message_id)
        reaction = self.db.exec(
            select(MessageReaction).where(
                MessageReaction.message_id == message.id,
                MessageReaction.user_id == user_id,
            )
        ).first()
        if reaction is None:
            return False
        with atomic(self.db):
            self.db.delete(reaction)
        return True

    def list_reactions(self, user_id: int, message_id: int) -> list[MessageReaction]:
        message, _ = self.get_message(user_id, message_id)
        return list(
            self.db.exec(
                select(MessageReaction).where(MessageReaction.message_id == message.id)
            ).all()
        )

    def edit_message(
        self, user_id: int, message_id: int, content: str, reason: str | None = None
    ) -> Message:
        message, _ = self.get_message(user_id, message_id)
        if message.sender_user_id != user_id:
            raise AccessDenied("Only the sender can edit a message")
        if message.message_type not in EDITABLE_TYPES:
            raise ValidationFailed("Only text messages can be edited")
        if message.forwarded_from_id is not None:
            raise ValidationFailed("Forwarded messages cannot be edited")

        now = self.clock()
        window = timedelta(minutes=settings.MESSAGE_EDIT_WINDOW_MINUTES)
        if now - message.sent_at > window:
            raise EditWindowExpired(
                f"Messages can only be edited within {settings.MESSAGE_EDIT_WINDOW_MINUTES} minutes"
            )
        content = clean_content(content)
        if not content:
            raise ValidationFailed("Message content is required")

        with atomic(self.db):
            self.db.add(
                MessageEdit(
                    message_id=message.id,
                    previous_content=message.content,
                    reason=sanitize_string(reason, 200) if reason else None,
                    edited_at=now,
                )
            )
            message.content = content
            message.is_edited = True
            message.edited_at = now
            self.db.add(message)

        self.db.refresh(message)
        return message

    def edit_history(self, user_id: int, message_id: int) -> list[MessageEdit]:
        message, _ = self.get_message(user_id, message_id)
        return list(
            self.db.exec(
                select(MessageEdit)
                .where(MessageEdit.message_id == message.id)
                .order_by(col(MessageEdit.edited_at))
            ).all()
        )

    def pin_message(self, user_id: int, message_id: int, pin: bool = True) -> Message:
        message, participant = self.get_message(user_id, message_id)
        conversation = self.db.get(Conversation, message.conversation_id)
        if conversation.conversation_type != ConversationType.DIRECT and not can_moderate(participant):
            raise AccessDenied("Only admins can pin messages")
        if message.is_pinned == pin:
            return message
        message.is_pinned = pin
        message.pinned_at = self.clock() if pin else None
        message.pinned_by = user_id if pin else None
        with atomic(self.db):
            self.db.add(message)
        self.db.refresh(message)
        return message

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete_for_me(self, user_id: int, message_id: int) -> None:
        message, _ = self.get_message(user_id, message_id)
        with atomic(self.db):
            self.db.add(
                MessageDeletion(message_id=message.id, user_id=user_id, deleted_at=self.clock())
            )

    def delete_for_everyone(self, user_id: int, message_id: int, reason: str | None = None) -> Message:
        """Hide the message for all; the content stays on the row for audit."""
        message, participant = self.get_message(user_id, message_id)
        now = self.clock()
        if message.sender_user_id == user_id:
            window = timedelta(hours=settings.DELETE_FOR_EVERYONE_WINDOW_HOURS)
            if now - message.sent_at > window and not can_moderate(participant):
                raise AccessDenied(
                    f"Messages can only be deleted for everyone within "
                    f"{settings.DELETE_FOR_EVERYONE_WINDOW_HOURS} hours"
                )
        elif not can_moderate(participant):
            raise AccessDenied("Only the sender or a moderator can delete this message")

        reason = sanitize_string(reason, 200) if reason else None
        with atomic(self.db):
            message.is_deleted = True
            message.deleted_at = now
            message.deleted_by = user_id
            message.deletion_reason = reason
            self.db.add(message)
            self.db.add(
                MessageDeletionLog(
                    message_id=message.id,
                    conversation_id=message.conversation_id,
                    deleted_by=user_id,
                    deletion_type=DeletionType.MANUAL,
                    reason=reason,
                    created_at=now,
                )
            )
        self.db.refresh(message)
        return message

    # ------------------------------------------------------------------
    # Forwarding
    # ------------------------------------------------------------------

    def _original_sender_alias(self, message: Message) -> str | None:
        if message.forward_chain > 0:
            return message.original_sender_alias
        if message.sender_identity_id is not None:
            sender = self.db.get(Identity, message.sender_identity_id)
            if sender is not None:
                return sender.alias
        return message.deleted_sender_alias

    def forward_message(
        self,
        user_id: int,
        message_id: int,
        target_conversation_ids: list[int],
        attribution: AttributionDisplay | None = None,
        identity_id: int | None = None,
        comment: str | None = None,
    ) -> list[Message]:
        source, _ = self.get_message(user_id, message_id)
        targets = list(dict.fromkeys(target_conversation_ids))
        if not targets:
            raise ValidationFailed("At least one target conversation is required")
        if len(targets) > settings.FORWARD_TARGET_LIMIT:
            raise ValidationFailed(
                f"Maximum {settings.FORWARD_TARGET_LIMIT} target conversations per forward"
            )

        identity = self.identities.get_usable_identity(user_id, identity_id)
        attribution = attribution or identity.default_attribution

        chain = source.forward_chain + 1
        if chain > identity.max_forward_chain:
            raise ForwardChainExceeded(
                f"Forward chain limit ({identity.max_forward_chain}) exceeded",
                chain=chain,
            )
        source_conversation = self.db.get(Conversation, source.conversation_id)
        if source_conversation.forwarding_disabled:
            raise ForwardingDisabled("Forwarding is disabled in this conversation")
        if not source.allow_further_forwarding:
            raise ForwardingDisabled("This message cannot be forwarded")
        if source.require_attribution and attribution == AttributionDisplay.HIDE_ALL:
            raise AttributionRequired("This message must be forwarded with attribution")

        destinations = []
        for conversation_id in targets:
            conversation = self.conversations.get_conversation(user_id, conversation_id)
            participant = self.conversations.require_participant(conversation_id, user_id)
            self._check_send_rights(conversation, participant, bool(source.media))
            destinations.append((conversation, participant))

        comment = clean_content(comment) if comment else None
        original_identity_id = (
            source.original_sender_identity_id
            if source.forward_chain > 0
            else source.sender_identity_id
        )
        original_alias = self._original_sender_alias(source)
        now = self.clock()
        forwarded: list[Message] = []

        with atomic(self.db):
            for conversation, participant in destinations:
                copy = Message(
                    conversation_id=conversation.id,
                    sender_user_id=user_id,
                    sender_identity_id=identity.id,
                    message_type=source.message_type,
                    content=source.content,
                    media=list(source.media),
                    formatting=list(source.formatting),
                    sent_at=now,
                    original_sent_at=source.original_sent_at,
                    delivery_status=DeliveryStatus.SENT,
                    forwarded_from_id=source.id,
                    original_sender_identity_id=original_identity_id,
                    original_sender_alias=original_alias,
                    forwarded_by_alias=identity.alias,
                    forward_chain=chain,
                    attribution_display=attribution,
                    allow_further_forwarding=source.allow_further_forwarding,
                    require_attribution=source.require_attribution,
                    preserve_original_sender=attribution != AttributionDisplay.HIDE_ALL,
                )
                self._stamp_deadlines(copy, conversation, participant, identity, now)
                self.db.add(copy)
                self.db.flush()
                self._record_sent(copy, conversation, participant, identity)
                forwarded.append(copy)

                if comment:
                    note = Message(
                        conversation_id=conversation.id,
                        sender_user_id=user_id,
                        sender_identity_id=identity.id,
                        content=comment,
                        reply_to_id=copy.id,
                        sent_at=now,
                        original_sent_at=now,
                        delivery_status=DeliveryStatus.SENT,
                        allow_further_forwarding=identity.allow_others_to_forward,
                        require_attribution=identity.require_attribution,
                    )
                    self._stamp_deadlines(note, conversation, participant, identity, now)
                    self.db.add(note)
                    self.db.flush()
                    self._record_sent(note, conversation, participant, identity)

        for copy in forwarded:
            self.db.refresh(copy)
        logger.info(
            f"Message {source.id} forwarded by user {user_id} to {len(forwarded)} "
            f"conversation(s), chain {chain}"
        )
        return forwarded

    def get_attribution(self, user_id: int, message_id: int) -> Attribution | None:
        message, _ = self.get_message(user_id, message_id)
        return resolve_attribution(message)

    # ------------------------------------------------------------------
    # Secret chat
    # ------------------------------------------------------------------

    def report_screenshot(
        self,
        user_id: int,
        message_id: int,
        method: ScreenshotMethod = ScreenshotMethod.SCREENSHOT,
    ) -> dict:
        message, _ = self.get_message(user_id, message_id)
        conversation = self.db.get(Conversation, message.conversation_id)
        if conversation.conversation_type != ConversationType.SECRET:
            raise ValidationFailed("Screenshots are only tracked in secret conversations")

        now = self.clock()
        with atomic(self.db):
            self.db.add(
                ScreenshotLog(message_id=message.id, user_id=user_id, method=method, taken_at=now)
            )
            message.screenshot_count += 1
            self.db.add(message)

        self.db.refresh(message)
        notified = False
        if conversation.screenshot_notifications:
            self.notifier(message, user_id, method)
            notified = True
        return {
            "message_id": message.id,
            "screenshot_count": message.screenshot_count,
            "blocked": conversation.screenshot_blocked,
            "notified": notified,
        }

    def screenshot_log(self, user_id: int, message_id: int) -> list[ScreenshotLog]:
        message, _ = self.get_message(user_id, message_id)
        return list(
            self.db.exec(
                select(ScreenshotLog)
                .where(ScreenshotLog.message_id == message.id)
                .order_by(col(ScreenshotLog.taken_at))
            ).all()
        )
