"""
Periodic sweep that deactivates expired identities and purges messages
whose auto-delete, disappearing or self-destruct deadline has passed.

Every write is conditional on the deadline still holding, so running two
sweeps at once, or the same sweep twice, changes nothing the second time.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import redis
from sqlalchemy import delete, or_, update
from sqlmodel import Session, col, select

from app.core.config import settings
from app.core.db import atomic, engine, lock_user
from app.core.locks import acquire_lock, release_lock
from app.core.logger import logger
from app.models.audit import DeletionType, MessageDeletionLog
from app.models.conversation import Conversation
from app.models.identity import Identity
from app.models.message import (
    Message,
    MessageDeletion,
    MessageEdit,
    MessageReaction,
    MessageReadReceipt,
    ScreenshotLog,
)
from app.services.identity_store import IdentityStore
from app.utils.time import utcnow

SWEEP_LOCK_NAME = "expiry-sweep"
MESSAGE_CHILDREN = (
    MessageReadReceipt,
    MessageReaction,
    MessageDeletion,
    MessageEdit,
    ScreenshotLog,
)


@dataclass
class SweepResult:
    identities_deactivated: int = 0
    messages_purged: int = 0
    errors: int = 0


def _expired_identity_clause(now: datetime):
    return (
        Identity.is_active == True,  # noqa: E712
        Identity.is_deleted == False,  # noqa: E712
        col(Identity.expires_at).is_not(None),
        col(Identity.expires_at) < now,
    )


def _expired_message_clause(now: datetime):
    return or_(
        col(Message.auto_delete_at) < now,
        col(Message.disappear_at) < now,
        col(Message.self_destruct_at) < now,
    )


def deletion_type_for(message: Message, now: datetime) -> DeletionType | None:
    if message.self_destruct_at is not None and message.self_destruct_at < now:
        return DeletionType.SELF_DESTRUCT
    if message.disappear_at is not None and message.disappear_at < now:
        return DeletionType.DISAPPEARING
    if message.auto_delete_at is not None and message.auto_delete_at < now:
        return DeletionType.AUTO
    return None


class ExpiryScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session] = lambda: Session(engine),
        clock: Callable[[], datetime] = utcnow,
        batch_size: int | None = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.batch_size = batch_size or settings.EXPIRY_SWEEP_BATCH_SIZE

    def run_once(self, now: datetime | None = None) -> SweepResult:
        now = now or self.clock()
        result = SweepResult()

        with self.session_factory() as session:
            identity_ids = session.exec(
                select(Identity.id)
                .where(*_expired_identity_clause(now))
                .limit(self.batch_size)
            ).all()
            for identity_id in identity_ids:
                try:
                    if self._deactivate_identity(session, identity_id, now):
                        result.identities_deactivated += 1
                except Exception:
                    logger.exception(f"Sweep could not deactivate identity {identity_id}")
                    result.errors += 1

            message_ids = session.exec(
                select(Message.id)
                .where(_expired_message_clause(now))
                .limit(self.batch_size)
            ).all()
            for message_id in message_ids:
                try:
                    if self._purge_message(session, message_id, now):
                        result.messages_purged += 1
                except Exception:
                    logger.exception(f"Sweep could not purge message {message_id}")
                    result.errors += 1

        if result.identities_deactivated or result.messages_purged or result.errors:
            logger.info(
                f"Expiry sweep: {result.identities_deactivated} identities deactivated, "
                f"{result.messages_purged} messages purged, {result.errors} errors"
            )
        return result

    def _deactivate_identity(self, session: Session, identity_id: int, now: datetime) -> bool:
        with atomic(session):
            identity = session.get(Identity, identity_id)
            if identity is None:
                return False
            lock_user(session, identity.user_id)
            changed = session.exec(
                update(Identity)
                .where(Identity.id == identity_id, *_expired_identity_clause(now))
                .values(is_active=False, updated_at=now)
            ).rowcount
            if not changed:
                return False

            session.refresh(identity)
            if identity.is_default:
                IdentityStore(session, clock=lambda: now).ensure_single_default(
                    identity.user_id
                )
        return True

    def _purge_message(self, session: Session, message_id: int, now: datetime) -> bool:
        with atomic(session):
            message = session.get(Message, message_id)
            if message is None:
                return False
            deletion_type = deletion_type_for(message, now)
            conversation_id = message.conversation_id

            removed = session.exec(
                delete(Message).where(
                    Message.id == message_id, _expired_message_clause(now)
                )
            ).rowcount
            if not removed:
                return False

            for child in MESSAGE_CHILDREN:
                session.exec(delete(child).where(child.message_id == message_id))
            session.exec(
                update(Message)
                .where(Message.reply_to_id == message_id)
                .values(reply_to_id=None)
            )
            session.exec(
                update(Conversation)
                .where(Conversation.last_message_id == message_id)
                .values(last_message_id=None)
            )
            session.add(
                MessageDeletionLog(
                    message_id=message_id,
                    conversation_id=conversation_id,
                    deletion_type=deletion_type,
                    reason="Deadline passed",
                    created_at=now,
                )
            )
        return True

    async def run_forever(self, interval: int | None = None) -> None:
        interval = interval or settings.EXPIRY_SWEEP_INTERVAL_SECONDS
        logger.info(f"Expiry sweep running every {interval}s")
        while True:
            try:
                await self._run_locked()
            except Exception:
                logger.exception("Expiry sweep pass failed")
            await asyncio.sleep(interval)

    async def _run_locked(self) -> SweepResult | None:
        try:
            token = acquire_lock(SWEEP_LOCK_NAME, settings.EXPIRY_SWEEP_LOCK_TTL_SECONDS)
        except redis.RedisError as exc:
            logger.warning(f"Sweep lock unavailable, sweeping without it: {exc}")
            return await asyncio.to_thread(self.run_once)

        if token is None:
            return None
        try:
            return await asyncio.to_thread(self.run_once)
        finally:
            release_lock(SWEEP_LOCK_NAME, token)
