"""
Identity lifecycle: creation, default and protection management, deletion
and restore.

Every operation that changes caps or the default runs in one transaction
under the owner's write lock (see app.core.db.lock_user), so two requests for
the same user cannot both pass a cap check.
"""

import csv
import io
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func
from sqlmodel import Session, col, select

from app.core.config import settings
from app.core.db import atomic, lock_user
from app.core.errors import (
    AccessDenied,
    AliasConflict,
    AliasTaken,
    LifecycleError,
    LimitExceeded,
    NotFound,
    NotUsable,
    ProtectionSlotsFull,
    ValidationFailed,
)
from app.core.logger import logger
from app.core.security_utils import (
    clean_avatar,
    clean_display_name,
    normalize_alias,
    sanitize_string,
)
from app.models.audit import AuditLog
from app.models.conversation import Conversation, Participant
from app.models.identity import Identity
from app.models.message import Message, MessageReaction
from app.policies import auto_delete, protection
from app.policies.visibility import identity_is_usable, usable_identity_clause
from app.schemas.identities import (
    AutoDeleteSettings,
    ForwardingPreferences,
    IdentityImportItem,
    PrivacySettings,
)
from app.utils.time import to_naive_utc, utcnow

EXPORT_FIELDS = [
    "alias",
    "display_name",
    "is_default",
    "is_protected",
    "is_active",
    "created_at",
    "last_used_at",
    "expires_at",
    "messages_sent",
    "messages_received",
    "conversations_started",
]


@dataclass
class DeletionResult:
    identity_id: int
    alias: str
    deletion_type: str
    restorable: bool
    protection_level: str
    replacement_default: Identity | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class BulkResult:
    processed: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    summary: dict = field(default_factory=dict)


def count_active_memberships(db_session: Session, identity_id: int) -> int:
    statement = select(func.count(Participant.id)).where(
        Participant.identity_id == identity_id,
        col(Participant.left_at).is_(None),
    )
    return db_session.exec(statement).one()


def _check_bulk_size(items: list) -> None:
    if not items:
        raise ValidationFailed("At least one identity is required")
    if len(items) > settings.BULK_OPERATION_LIMIT:
        raise ValidationFailed(
            f"Maximum {settings.BULK_OPERATION_LIMIT} identities per bulk operation"
        )


class IdentityStore:
    def __init__(self, db_session: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db_session
        self.clock = clock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_identity(
        self, user_id: int, identity_id: int, include_deleted: bool = False
    ) -> Identity:
        identity = self.db.get(Identity, identity_id)
        if identity is None or (identity.is_deleted and not include_deleted):
            raise NotFound("Identity not found")
        if identity.user_id != user_id:
            raise AccessDenied("Identity belongs to another user")
        return identity

    def get_usable_identity(self, user_id: int, identity_id: int | None) -> Identity:
        """The requested identity, or the default, if it can be used right now."""
        if identity_id is None:
            identity = self.get_default(user_id)
            if identity is None:
                raise NotUsable("No usable default identity")
            return identity
        identity = self.get_identity(user_id, identity_id)
        if not identity_is_usable(identity, self.clock()):
            raise NotUsable("Identity is inactive or expired")
        return identity

    def get_default(self, user_id: int) -> Identity | None:
        statement = select(Identity).where(
            Identity.user_id == user_id,
            Identity.is_default == True,  # noqa: E712
            *usable_identity_clause(self.clock()),
        )
        return self.db.exec(statement).first()

    def _live_identities(self, user_id: int) -> list[Identity]:
        statement = select(Identity).where(
            Identity.user_id == user_id,
            Identity.is_deleted == False,  # noqa: E712
        )
        return list(self.db.exec(statement).all())

    def _usable_identities(self, user_id: int, exclude_id: int | None = None) -> list[Identity]:
        statement = select(Identity).where(
            Identity.user_id == user_id, *usable_identity_clause(self.clock())
        )
        if exclude_id is not None:
            statement = statement.where(Identity.id != exclude_id)
        return list(self.db.exec(statement).all())

    def _count_live(self, user_id: int) -> int:
        statement = select(func.count(Identity.id)).where(
            Identity.user_id == user_id,
            Identity.is_deleted == False,  # noqa: E712
        )
        return self.db.exec(statement).one()

    def _protected_count(self, user_id: int) -> int:
        statement = select(func.count(Identity.id)).where(
            Identity.user_id == user_id,
            Identity.is_deleted == False,  # noqa: E712
            Identity.is_default == False,  # noqa: E712
            Identity.is_protected == True,  # noqa: E712
        )
        return self.db.exec(statement).one()

    def _alias_in_use(self, user_id: int, alias: str, exclude_id: int | None = None) -> bool:
        statement = select(Identity.id).where(
            Identity.user_id == user_id,
            Identity.alias == alias,
            Identity.is_deleted == False,  # noqa: E712
        )
        if exclude_id is not None:
            statement = statement.where(Identity.id != exclude_id)
        return self.db.exec(statement).first() is not None

    # ------------------------------------------------------------------
    # Default management
    # ------------------------------------------------------------------

    def _transfer_default(self, user_id: int, incoming: Identity, strict: bool) -> None:
        """
        Make incoming the only default of the user.

        strict refuses a transfer that would overflow the protection slots;
        otherwise the outgoing default loses its explicit protection flag.
        """
        outgoing = [
            identity
            for identity in self.db.exec(
                select(Identity).where(
                    Identity.user_id == user_id,
                    Identity.is_default == True,  # noqa: E712
                    Identity.id != incoming.id,
                )
            ).all()
        ]
        protected_count = self._protected_count(user_id)
        for previous in outgoing:
            try:
                protection.check_default_transfer(previous, incoming, protected_count)
            except ProtectionSlotsFull:
                if strict:
                    raise
                logger.warning(
                    f"Identity {previous.id} lost its protection flag when default "
                    f"moved to {incoming.id}"
                )
                previous.is_protected = False
            previous.is_default = False
            previous.updated_at = self.clock()
            self.db.add(previous)

        incoming.is_default = True
        incoming.updated_at = self.clock()
        self.db.add(incoming)
        self.db.flush()

    def ensure_single_default(self, user_id: int) -> Identity | None:
        """
        Keep exactly one default among the user's usable identities.

        Runs inside the caller's transaction.
        """
        usable = self._usable_identities(user_id)
        if not usable:
            return None
        defaults = [identity for identity in usable if identity.is_default]
        if len(defaults) == 1:
            return defaults[0]
        elected = protection.elect_replacement_default(defaults or usable)
        self._transfer_default(user_id, elected, strict=False)
        return elected

    def set_default(self, user_id: int, identity_id: int) -> Identity:
        identity = self.get_identity(user_id, identity_id)
        if not identity_is_usable(identity, self.clock()):
            raise NotUsable("Only an active, unexpired identity can be the default")
        if identity.is_default:
            return identity

        with atomic(self.db):
            lock_user(self.db, user_id)
            self._transfer_default(user_id, identity, strict=True)

        self.db.refresh(identity)
        logger.info(f"Identity {identity.id} is now default for user {user_id}")
        return identity

    # ------------------------------------------------------------------
    # Create / read / update
    # ------------------------------------------------------------------

    def create_identity(
        self,
        user_id: int,
        alias: str,
        display_name: str | None = None,
        avatar: str | None = None,
        is_default: bool = False,
        expires_at: datetime | None = None,
        auto_delete_settings: AutoDeleteSettings | None = None,
        privacy: PrivacySettings | None = None,
        forwarding: ForwardingPreferences | None = None,
    ) -> tuple[Identity, list[str]]:
        now = self.clock()
        alias = normalize_alias(alias)
        display_name = clean_display_name(display_name, fallback=alias)
        avatar = clean_avatar(avatar)
        expires_at = to_naive_utc(expires_at)
        auto_delete.validate_expiry(expires_at, now)

        auto_delete_settings = auto_delete_settings or AutoDeleteSettings()
        days = auto_delete.effective_days(
            auto_delete_settings.enabled,
            auto_delete_settings.preset,
            auto_delete_settings.custom_days,
        )
        check = auto_delete.check_schedule(days, expires_at, now)
        warnings = [check.warning] if check.warning else []

        identity = Identity(
            user_id=user_id,
            alias=alias,
            display_name=display_name,
            avatar=avatar,
            expires_at=expires_at,
            auto_delete_enabled=auto_delete_settings.enabled,
            auto_delete_preset=auto_delete_settings.preset,
            auto_delete_custom_days=auto_delete_settings.custom_days,
            auto_delete_effective_days=days,
            max_forward_chain=settings.DEFAULT_MAX_FORWARD_CHAIN,
            created_at=now,
            updated_at=now,
            last_used_at=now,
        )
        self._apply_privacy(identity, privacy)
        self._apply_forwarding(identity, forwarding)

        with atomic(self.db):
            lock_user(self.db, user_id)
            if self._count_live(user_id) >= settings.MAX_IDENTITIES_PER_USER:
                raise LimitExceeded(
                    f"Maximum {settings.MAX_IDENTITIES_PER_USER} identities allowed per user"
                )
            if self._alias_in_use(user_id, alias):
                raise AliasTaken("Alias already exists")

            self.db.add(identity)
            self.db.flush()

            if is_default:
                self._transfer_default(user_id, identity, strict=True)
            else:
                self.ensure_single_default(user_id)

        self.db.refresh(identity)
        for warning in warnings:
            logger.warning(f"Identity {identity.id}: {warning}")
        logger.info(f"Created identity {identity.id} ({alias}) for user {user_id}")
        return identity, warnings

    def list_identities(
        self,
        user_id: int,
        include_expired: bool = False,
        include_inactive: bool = False,
        limit: int = 50,
        skip: int = 0,
    ) -> tuple[list[Identity], int]:
        now = self.clock()
        limit = max(1, min(limit, settings.IDENTITY_PAGE_LIMIT))
        conditions = [
            Identity.user_id == user_id,
            Identity.is_deleted == False,  # noqa: E712
        ]
        if not include_inactive:
            conditions.append(Identity.is_active == True)  # noqa: E712
        if not include_expired:
            conditions.append(
                (col(Identity.expires_at).is_(None)) | (col(Identity.expires_at) > now)
            )

        total = self.db.exec(select(func.count(Identity.id)).where(*conditions)).one()
        statement = (
            select(Identity)
            .where(*conditions)
            .order_by(col(Identity.is_default).desc(), col(Identity.created_at).desc())
            .offset(skip)
            .limit(limit)
        )
        return list(self.db.exec(statement).all()), total

    def update_identity(self, user_id: int, identity_id: int, changes: dict) -> tuple[Identity, list[str]]:
        """changes holds only the fields the caller actually sent."""
        identity = self.get_identity(user_id, identity_id)
        now = self.clock()
        warnings: list[str] = []

        if "display_name" in changes:
            identity.display_name = clean_display_name(
                changes["display_name"], fallback=identity.alias
            )
        if "avatar" in changes:
            identity.avatar = clean_avatar(changes["avatar"])
        if "expires_at" in changes:
            expires_at = to_naive_utc(changes["expires_at"])
            auto_delete.validate_expiry(expires_at, now)
            check = auto_delete.check_schedule(
                identity.auto_delete_effective_days, expires_at, now
            )
            if check.warning:
                warnings.append(check.warning)
            identity.expires_at = expires_at

        identity.updated_at = now
        with atomic(self.db):
            self.db.add(identity)
        self.db.refresh(identity)
        return identity, warnings

    def update_auto_delete(
        self, user_id: int, identity_id: int, new_settings: AutoDeleteSettings
    ) -> tuple[Identity, list[str]]:
        identity = self.get_identity(user_id, identity_id)
        now = self.clock()
        days = auto_delete.effective_days(
            new_settings.enabled, new_settings.preset, new_settings.custom_days
        )
        check = auto_delete.check_schedule(days, identity.expires_at, now)

        identity.auto_delete_enabled = new_settings.enabled
        identity.auto_delete_preset = new_settings.preset
        identity.auto_delete_custom_days = new_settings.custom_days
        identity.auto_delete_effective_days = days
        identity.updated_at = now
        with atomic(self.db):
            self.db.add(identity)
        self.db.refresh(identity)

        warnings = [check.warning] if check.warning else []
        for warning in warnings:
            logger.warning(f"Identity {identity.id}: {warning}")
        return identity, warnings

    def get_auto_delete(self, user_id: int, identity_id: int) -> dict:
        identity = self.get_identity(user_id, identity_id)
        return {
            "enabled": identity.auto_delete_enabled,
            "preset": identity.auto_delete_preset,
            "custom_days": identity.auto_delete_custom_days,
            "effective_days": identity.auto_delete_effective_days,
            "description": auto_delete.describe(
                identity.auto_delete_enabled,
                identity.auto_delete_preset,
                identity.auto_delete_effective_days,
            ),
            "expires_at": identity.expires_at,
        }

    def update_forwarding_preferences(
        self, user_id: int, identity_id: int, preferences: ForwardingPreferences
    ) -> Identity:
        identity = self.get_identity(user_id, identity_id)
        self._apply_forwarding(identity, preferences)
        identity.updated_at = self.clock()
        with atomic(self.db):
            self.db.add(identity)
        self.db.refresh(identity)
        return identity

    def get_forwarding_preferences(self, user_id: int, identity_id: int) -> dict:
        identity = self.get_identity(user_id, identity_id)
        return {
            "default_attribution": identity.default_attribution,
            "allow_others_to_forward": identity.allow_others_to_forward,
            "require_attribution": identity.require_attribution,
            "max_forward_chain": identity.max_forward_chain,
            "forward_to_public_channels": identity.forward_to_public_channels,
        }

    @staticmethod
    def _apply_privacy(identity: Identity, privacy: PrivacySettings | None) -> None:
        if privacy is None:
            return
        for key, value in privacy.model_dump(exclude_none=True).items():
            setattr(identity, key, value)

    @staticmethod
    def _apply_forwarding(
        identity: Identity, forwarding: ForwardingPreferences | None
    ) -> None:
        if forwarding is None:
            return
        for key, value in forwarding.model_dump(exclude_none=True).items():
            setattr(identity, key, value)

    def increment_usage(self, identity: Identity, kind: str) -> None:
        """Bump a usage counter inside the caller's transaction."""
        if kind == "sent":
            identity.messages_sent += 1
        elif kind == "received":
            identity.messages_received += 1
        elif kind == "conversation":
            identity.conversations_started += 1
        else:
            raise ValueError(f"Unknown usage kind: {kind}")
        identity.last_used_at = self.clock()
        self.db.add(identity)

    def get_identity_stats(
        self,
        user_id: int,
        identity_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict:
        """
        Usage counted from the messages and memberships themselves.

        The optional window bounds sent_at on both ends; memberships are
        counted as they stand now. The stored counters are returned as is.
        """
        identity = self.get_identity(user_id, identity_id)
        start, end = to_naive_utc(start), to_naive_utc(end)
        if start and end and start > end:
            raise ValidationFailed("start must be before end")

        sent = [
            Message.sender_identity_id == identity.id,
            Message.is_deleted == False,  # noqa: E712
        ]
        if start:
            sent.append(col(Message.sent_at) >= start)
        if end:
            sent.append(col(Message.sent_at) <= end)

        by_type = self.db.exec(
            select(Message.message_type, func.count(Message.id))
            .where(*sent)
            .group_by(Message.message_type)
        ).all()
        total_reactions = self.db.exec(
            select(func.count(MessageReaction.id))
            .join(Message, Message.id == MessageReaction.message_id)
            .where(*sent)
        ).one()
        unique_conversations = self.db.exec(
            select(func.count(func.distinct(Message.conversation_id))).where(*sent)
        ).one()
        by_conversation_type = self.db.exec(
            select(Conversation.conversation_type, func.count(Participant.id))
            .join(Conversation, Conversation.id == Participant.conversation_id)
            .where(
                Participant.identity_id == identity.id,
                col(Participant.left_at).is_(None),
            )
            .group_by(Conversation.conversation_type)
        ).all()

        return {
            "identity": identity,
            "usage": {
                "total_messages": sum(count for _, count in by_type),
                "total_reactions": total_reactions,
                "unique_conversations": unique_conversations,
                "message_type_breakdown": {kind.value: count for kind, count in by_type},
                "conversation_type_breakdown": {
                    kind.value: count for kind, count in by_conversation_type
                },
            },
            "stored_stats": {
                "messages_sent": identity.messages_sent,
                "messages_received": identity.messages_received,
                "conversations_started": identity.conversations_started,
                "last_used_at": identity.last_used_at,
            },
        }

    # ------------------------------------------------------------------
    # Archive / clone / search / export
    # ------------------------------------------------------------------

    def archive_identity(self, user_id: int, identity_id: int, archive: bool = True) -> Identity:
        identity = self.get_identity(user_id, identity_id)
        if identity.is_archived == archive:
            return identity

        with atomic(self.db):
            lock_user(self.db, user_id)
            now = self.clock()
            identity.is_archived = archive
            identity.is_active = not archive
            identity.updated_at = now
            self.db.add(identity)
            self.db.flush()

            if archive and identity.is_default:
                replacement = protection.elect_replacement_default(
                    self._usable_identities(user_id, exclude_id=identity.id)
                )
                if replacement is not None:
                    self._transfer_default(user_id, replacement, strict=False)
            elif not archive:
                current = self.get_default(user_id)
                if identity.is_default and current is not None and current.id != identity.id:
                    identity.is_default = False
                    self.db.add(identity)
                    self.db.flush()
                self.ensure_single_default(user_id)

        self.db.refresh(identity)
        logger.info(
            f"Identity {identity.id} {'archived' if archive else 'unarchived'} by user {user_id}"
        )
        return identity

    def clone_identity(
        self,
        user_id: int,
        source_id: int,
        alias: str,
        display_name: str | None = None,
        copy_settings: bool = True,
    ) -> tuple[Identity, list[str]]:
        source = self.get_identity(user_id, source_id)
        if not copy_settings:
            return self.create_identity(
                user_id, alias, display_name=display_name or alias, avatar=source.avatar
            )

        return self.create_identity(
            user_id,
            alias,
            display_name=display_name or f"{source.display_name} (Copy)"[:100],
            avatar=source.avatar,
            auto_delete_settings=AutoDeleteSettings(
                enabled=source.auto_delete_enabled,
                preset=source.auto_delete_preset,
                custom_days=source.auto_delete_custom_days,
            ),
            privacy=PrivacySettings(
                allow_strangers=source.allow_strangers,
                allow_message_requests=source.allow_message_requests,
                read_receipts_enabled=source.read_receipts_enabled,
                typing_indicators=source.typing_indicators,
                online_status=source.online_status,
            ),
            forwarding=ForwardingPreferences(
                default_attribution=source.default_attribution,
                allow_others_to_forward=source.allow_others_to_forward,
                require_attribution=source.require_attribution,
                max_forward_chain=source.max_forward_chain,
                forward_to_public_channels=source.forward_to_public_channels,
            ),
        )

    def bulk_update_privacy(
        self, user_id: int, identity_ids: list[int], privacy: PrivacySettings
    ) -> BulkResult:
        _check_bulk_size(identity_ids)
        result = BulkResult()
        for identity_id in identity_ids:
            try:
                identity = self.get_identity(user_id, identity_id)
                self._apply_privacy(identity, privacy)
                identity.updated_at = self.clock()
                with atomic(self.db):
                    self.db.add(identity)
                result.processed.append({"identity_id": identity_id, "alias": identity.alias})
            except LifecycleError as exc:
                logger.warning(f"Privacy update failed for identity {identity_id}: {exc.message}")
                result.errors.append({"identity_id": identity_id, "error": exc.message})
        result.summary = {"updated": len(result.processed), "errors": len(result.errors)}
        return result

    def search_identities(
        self,
        user_id: int,
        query: str,
        include_inactive: bool = False,
        limit: int = 20,
        skip: int = 0,
    ) -> tuple[list[Identity], int]:
        query = sanitize_string(query, max_length=50).lower()
        if len(query) < settings.SEARCH_MIN_LENGTH:
            raise ValidationFailed(
                f"Search query must be at least {settings.SEARCH_MIN_LENGTH} characters"
            )
        limit = max(1, min(limit, settings.IDENTITY_PAGE_LIMIT))
        conditions = [
            Identity.user_id == user_id,
            Identity.is_deleted == False,  # noqa: E712
            col(Identity.alias).contains(query, autoescape=True)
            | func.lower(Identity.display_name).contains(query, autoescape=True),
        ]
        if not include_inactive:
            conditions.append(Identity.is_active == True)  # noqa: E712

        total = self.db.exec(select(func.count(Identity.id)).where(*conditions)).one()
        statement = (
            select(Identity)
            .where(*conditions)
            .order_by(col(Identity.is_default).desc(), col(Identity.last_used_at).desc())
            .offset(skip)
            .limit(limit)
        )
        return list(self.db.exec(statement).all()), total

    def check_alias_availability(self, user_id: int, alias: str) -> dict:
        try:
            normalized = normalize_alias(alias)
        except ValidationFailed as exc:
            return {"alias": alias, "available": False, "reason": exc.message}
        if self._alias_in_use(user_id, normalized):
            return {"alias": normalized, "available": False, "reason": "Alias already exists"}
        return {"alias": normalized, "available": True}

    def export_identities(self, user_id: int, fmt: str = "json", include_stats: bool = True):
        if fmt not in ("json", "csv"):
            raise ValidationFailed("Export format must be json or csv")
        identities = sorted(self._live_identities(user_id), key=lambda i: i.created_at)

        rows = []
        for identity in identities:
            row = {
                "alias": identity.alias,
                "display_name": identity.display_name,
                "is_default": identity.is_default,
                "is_protected": identity.is_protected,
                "is_active": identity.is_active,
                "created_at": identity.created_at.isoformat(),
                "last_used_at": identity.last_used_at.isoformat(),
                "expires_at": identity.expires_at.isoformat() if identity.expires_at else None,
                "auto_delete": self.get_auto_delete(user_id, identity.id),
                "forwarding": self.get_forwarding_preferences(user_id, identity.id),
            }
            if include_stats:
                row["messages_sent"] = identity.messages_sent
                row["messages_received"] = identity.messages_received
                row["conversations_started"] = identity.conversations_started
            rows.append(row)

        if fmt == "csv":
            buffer = io.StringIO()
            fields = EXPORT_FIELDS if include_stats else EXPORT_FIELDS[:8]
            writer = csv.DictWriter(buffer, fieldnames=fields, extrasaction="ignore")
            writer.writeheader()
            writer.writerows(rows)
            return buffer.getvalue()

        default = next((i for i in identities if i.is_default), None)
        return {
            "export_date": self.clock().isoformat(),
            "user_id": user_id,
            "identities": rows,
            "metadata": {
                "total": len(identities),
                "active": sum(1 for i in identities if i.is_active),
                "protected": sum(1 for i in identities if i.is_protected),
                "default_alias": default.alias if default else None,
            },
        }

    # ------------------------------------------------------------------
    # Protection
    # ------------------------------------------------------------------

    def set_protection(self, user_id: int, identity_id: int, protect: bool) -> Identity:
        identity = self.get_identity(user_id, identity_id)
        with atomic(self.db):
            lock_user(self.db, user_id)
            protection.check_protection_change(
                identity, protect, self._protected_count(user_id)
            )
            if not identity.is_default and identity.is_protected != protect:
                identity.is_protected = protect
                identity.updated_at = self.clock()
                self.db.add(identity)
        self.db.refresh(identity)
        return identity

    def get_protection_status(self, user_id: int) -> dict:
        identities = self._live_identities(user_id)
        protected = [i for i in identities if i.is_protected and not i.is_default]
        default = next((i for i in identities if i.is_default), None)
        available = max(0, settings.MAX_PROTECTED_IDENTITIES - len(protected))
        return {
            "max_protected": settings.MAX_PROTECTED_IDENTITIES,
            "protected_count": len(protected),
            "available_slots": available,
            "default_identity": default,
            "protected_identities": protected,
            "unprotected_identities": [
                i for i in identities if not i.is_protected and not i.is_default
            ],
            "recommendations": protection.protection_recommendations(
                identities, available, self.clock()
            ),
        }

    def bulk_update_protection(self, user_id: int, updates: list[tuple[int, bool]]) -> BulkResult:
        """Unprotect requests run first so they can free slots for the rest."""
        _check_bulk_size(updates)
        result = BulkResult()
        for identity_id, protect in sorted(updates, key=lambda item: item[1]):
            try:
                identity = self.set_protection(user_id, identity_id, protect)
                result.processed.append(
                    {
                        "identity_id": identity_id,
                        "alias": identity.alias,
                        "protected": protection.is_effectively_protected(identity),
                    }
                )
            except LifecycleError as exc:
                logger.warning(f"Protection update failed for identity {identity_id}: {exc.message}")
                result.errors.append({"identity_id": identity_id, "error": exc.message})
        result.summary = {"updated": len(result.processed), "errors": len(result.errors)}
        return result

    # ------------------------------------------------------------------
    # Deletion and restore
    # ------------------------------------------------------------------

    def get_deletion_options(self, user_id: int, identity_id: int) -> dict:
        identity = self.get_identity(user_id, identity_id)
        memberships = count_active_memberships(self.db, identity.id)
        has_replacement = bool(self._usable_identities(user_id, exclude_id=identity.id))
        options = protection.deletion_options(identity, memberships, has_replacement)
        options["identity"] = identity
        protected = self._protected_count(user_id)
        options["protection_slots"] = {
            "used": protected,
            "max": settings.MAX_PROTECTED_IDENTITIES,
            "available": max(0, settings.MAX_PROTECTED_IDENTITIES - protected),
        }
        return options

    def request_deletion(
        self,
        user_id: int,
        identity_id: int,
        permanent: bool = False,
        force: bool = False,
    ) -> DeletionResult:
        identity = self.get_identity(user_id, identity_id, include_deleted=permanent)
        alias = identity.alias

        with atomic(self.db):
            lock_user(self.db, user_id)
            memberships = count_active_memberships(self.db, identity.id)
            replacement = protection.elect_replacement_default(
                self._usable_identities(user_id, exclude_id=identity.id)
            )
            plan = protection.plan_deletion(
                identity,
                permanent=permanent,
                force=force,
                active_memberships=memberships,
                has_replacement=replacement is not None,
            )

            if plan.deletion_type == protection.PERMANENT:
                self._purge_identity(identity, plan)
                replacement = None
            else:
                self._soft_delete(identity, plan)
                if plan.reassign_default:
                    self._transfer_default(user_id, replacement, strict=False)
                else:
                    replacement = None

        if replacement is not None:
            self.db.refresh(replacement)
        logger.info(
            f"Identity {identity_id} {plan.deletion_type}-deleted by user {user_id}"
            + (f", default moved to {replacement.id}" if replacement else "")
        )
        return DeletionResult(
            identity_id=identity_id,
            alias=alias,
            deletion_type=plan.deletion_type,
            restorable=plan.restorable,
            protection_level=plan.protection_level,
            replacement_default=replacement,
            warnings=plan.warnings,
        )

    def _soft_delete(self, identity: Identity, plan: protection.DeletionPlan) -> None:
        now = self.clock()
        identity.is_deleted = True
        identity.deleted_at = now
        identity.deletion_reason = plan.deletion_reason
        identity.is_active = False
        identity.is_default = False
        identity.updated_at = now
        self.db.add(identity)
        self._write_audit(
            "IDENTITY_SOFT_DELETE",
            identity,
            {"alias": identity.alias, "reason": plan.deletion_reason},
        )
        self.db.flush()

    def _purge_identity(self, identity: Identity, plan: protection.DeletionPlan) -> None:
        """Remove the identity and detach every reference to it."""
        participants = self.db.exec(
            select(Participant).where(Participant.identity_id == identity.id)
        ).all()
        for participant in participants:
            participant.identity_id = None
            participant.identity_deleted = True
            participant.deleted_identity_alias = identity.alias
            self.db.add(participant)

        sent = self.db.exec(
            select(Message).where(Message.sender_identity_id == identity.id)
        ).all()
        for message in sent:
            message.sender_identity_id = None
            message.sender_identity_deleted = True
            message.deleted_sender_alias = identity.alias
            self.db.add(message)

        forwarded = self.db.exec(
            select(Message).where(Message.original_sender_identity_id == identity.id)
        ).all()
        for message in forwarded:
            message.original_sender_identity_id = None
            self.db.add(message)

        self._write_audit(
            "IDENTITY_PERMANENT_DELETE",
            identity,
            {
                "alias": identity.alias,
                "reason": plan.deletion_reason,
                "participants_detached": len(participants),
                "messages_detached": len(sent),
            },
        )
        self.db.flush()
        self.db.delete(identity)
        self.db.flush()

    def _write_audit(self, action: str, identity: Identity, details: dict) -> None:
        self.db.add(
            AuditLog(
                action=action,
                user_id=identity.user_id,
                resource_type="identity",
                resource_id=identity.id,
                details=details,
                created_at=self.clock(),
            )
        )

    def bulk_delete(
        self,
        user_id: int,
        identity_ids: list[int],
        permanent: bool = False,
        force: bool = False,
    ) -> BulkResult:
        """
        Delete up to BULK_OPERATION_LIMIT identities, each in its own
        transaction. Defaults go last so a replacement is elected among the
        survivors; a default asked to be purged is soft-deleted instead, even
        when no replacement is left.
        """
        _check_bulk_size(identity_ids)
        result = BulkResult()
        candidates: list[Identity] = []
        for identity_id in dict.fromkeys(identity_ids):
            try:
                candidates.append(
                    self.get_identity(user_id, identity_id, include_deleted=permanent)
                )
            except LifecycleError as exc:
                result.errors.append({"identity_id": identity_id, "error": exc.message})

        soft_deleted = permanently_deleted = 0
        new_default = None
        for identity in sorted(candidates, key=lambda i: i.is_default):
            identity_id, alias = identity.id, identity.alias
            purge, item_force = permanent, force
            if permanent and identity.is_default:
                purge, item_force = False, True
                result.errors.append(
                    {
                        "identity_id": identity_id,
                        "alias": alias,
                        "error": "Default identity cannot be permanently deleted; "
                        "it was soft-deleted instead",
                    }
                )
            try:
                outcome = self.request_deletion(
                    user_id, identity_id, permanent=purge, force=item_force
                )
            except LifecycleError as exc:
                logger.warning(f"Bulk delete failed for identity {identity_id}: {exc.message}")
                result.errors.append({"identity_id": identity_id, "alias": alias, "error": exc.message})
                continue

            if outcome.deletion_type == protection.PERMANENT:
                permanently_deleted += 1
            else:
                soft_deleted += 1
            if outcome.replacement_default is not None:
                new_default = outcome.replacement_default
            result.processed.append(
                {
                    "identity_id": identity_id,
                    "alias": alias,
                    "deletion_type": outcome.deletion_type,
                    "restorable": outcome.restorable,
                }
            )

        result.summary = {
            "requested": len(identity_ids),
            "soft_deleted": soft_deleted,
            "permanently_deleted": permanently_deleted,
            "errors": len(result.errors),
            "new_default": new_default.alias if new_default else None,
        }
        return result

    def restore_identity(self, user_id: int, identity_id: int) -> Identity:
        identity = self.get_identity(user_id, identity_id, include_deleted=True)
        if not identity.is_deleted:
            raise ValidationFailed("Identity is not deleted")

        with atomic(self.db):
            lock_user(self.db, user_id)
            if self._count_live(user_id) >= settings.MAX_IDENTITIES_PER_USER:
                raise LimitExceeded(
                    f"Cannot restore: maximum {settings.MAX_IDENTITIES_PER_USER} "
                    "identities allowed per user"
                )
            if self._alias_in_use(user_id, identity.alias, exclude_id=identity.id):
                raise AliasConflict(
                    "Cannot restore: alias is now used by another identity",
                    alias=identity.alias,
                )
            if (
                identity.is_protected
                and self._protected_count(user_id) >= settings.MAX_PROTECTED_IDENTITIES
            ):
                raise ProtectionSlotsFull(
                    "Cannot restore a protected identity while all protection slots are used"
                )

            now = self.clock()
            identity.is_deleted = False
            identity.deleted_at = None
            identity.deletion_reason = None
            identity.is_active = True
            identity.is_archived = False
            identity.is_default = False
            identity.updated_at = now
            self.db.add(identity)
            self._write_audit("IDENTITY_RESTORE", identity, {"alias": identity.alias})
            self.db.flush()
            self.ensure_single_default(user_id)

        self.db.refresh(identity)
        logger.info(f"Identity {identity.id} restored by user {user_id}")
        return identity

    def list_deleted(self, user_id: int, limit: int = 50, skip: int = 0) -> tuple[list[Identity], int]:
        limit = max(1, min(limit, settings.IDENTITY_PAGE_LIMIT))
        conditions = [
            Identity.user_id == user_id,
            Identity.is_deleted == True,  # noqa: E712
        ]
        total = self.db.exec(select(func.count(Identity.id)).where(*conditions)).one()
        statement = (
            select(Identity)
            .where(*conditions)
            .order_by(col(Identity.deleted_at).desc())
            .offset(skip)
            .limit(limit)
        )
        return list(self.db.exec(statement).all()), total

    def import_identities(
        self,
        user_id: int,
        items: list[IdentityImportItem],
        overwrite_existing: bool = False,
    ) -> dict:
        """Imported identities never take the default unless the user has none."""
        _check_bulk_size(items)
        imported: list[dict] = []
        skipped: list[dict] = []
        errors: list[dict] = []

        for item in items:
            try:
                alias = normalize_alias(item.alias)
                existing = self.db.exec(
                    select(Identity).where(
                        Identity.user_id == user_id,
                        Identity.alias == alias,
                        Identity.is_deleted == False,  # noqa: E712
                    )
                ).first()
                if existing is not None and not overwrite_existing:
                    skipped.append({"alias": alias, "reason": "Alias already exists"})
                    continue
                if existing is not None:
                    self._overwrite_from_import(existing, item)
                    imported.append({"alias": alias, "identity_id": existing.id, "overwritten": True})
                    continue

                identity, _ = self.create_identity(
                    user_id,
                    alias,
                    display_name=item.display_name,
                    avatar=item.avatar,
                    expires_at=item.expires_at,
                    auto_delete_settings=item.auto_delete,
                    privacy=item.privacy,
                    forwarding=item.forwarding,
                )
                imported.append({"alias": alias, "identity_id": identity.id, "overwritten": False})
            except LifecycleError as exc:
                logger.warning(f"Import failed for alias {item.alias}: {exc.message}")
                errors.append({"alias": item.alias, "error": exc.message})

        return {
            "imported": imported,
            "skipped": skipped,
            "errors": errors,
            "summary": {
                "requested": len(items),
                "imported": len(imported),
                "skipped": len(skipped),
                "errors": len(errors),
            },
        }

    def _overwrite_from_import(self, identity: Identity, item: IdentityImportItem) -> None:
        now = self.clock()
        expires_at = to_naive_utc(item.expires_at) if item.expires_at else identity.expires_at
        auto_delete.validate_expiry(expires_at, now)
        days = identity.auto_delete_effective_days
        if item.auto_delete is not None:
            days = auto_delete.effective_days(
                item.auto_delete.enabled, item.auto_delete.preset, item.auto_delete.custom_days
            )
        auto_delete.check_schedule(days, expires_at, now)

        identity.display_name = clean_display_name(item.display_name, fallback=identity.display_name)
        if item.avatar is not None:
            identity.avatar = clean_avatar(item.avatar)
        identity.expires_at = expires_at
        if item.auto_delete is not None:
            identity.auto_delete_enabled = item.auto_delete.enabled
            identity.auto_delete_preset = item.auto_delete.preset
            identity.auto_delete_custom_days = item.auto_delete.custom_days
            identity.auto_delete_effective_days = days
        self._apply_privacy(identity, item.privacy)
        self._apply_forwarding(identity, item.forwarding)
        identity.updated_at = now
        with atomic(self.db):
            self.db.add(identity)
