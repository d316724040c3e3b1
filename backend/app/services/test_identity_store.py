import os
import shutil
import tempfile
import threading
import unittest
from datetime import timedelta
from unittest import mock

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from app.core.config import settings
from app.core.db import build_engine, create_db_and_tables, lock_user
from app.core.errors import (
    AccessDenied,
    ActiveUsageConflict,
    AliasConflict,
    AliasTaken,
    LifecycleError,
    LimitExceeded,
    NotFound,
    NotUsable,
    ProtectionSlotsFull,
    ScheduleConflict,
    TransactionFailed,
    ValidationFailed,
)
from app.models.audit import AuditLog
from app.models.conversation import Conversation, ConversationType, Participant
from app.models.identity import AutoDeletePreset, Identity
from app.models.message import Message, MessageReaction
from app.policies.visibility import usable_identity_clause
from app.schemas.identities import AutoDeleteSettings, IdentityImportItem, PrivacySettings
from app.services.identity_store import IdentityStore
from app.utils.testing import FrozenClock, make_user, memory_engine


class IdentityStoreTestCase(unittest.TestCase):

    def setUp(self):
        self.engine = memory_engine()
        self.session = Session(self.engine)
        self.clock = FrozenClock()
        self.store = IdentityStore(self.session, clock=self.clock)
        self.user = make_user(self.session, "owner@example.com")

    def tearDown(self):
        self.session.close()

    def create(self, alias, **kwargs):
        self.clock.advance(seconds=1)
        identity, _ = self.store.create_identity(self.user.id, alias, **kwargs)
        return identity

    def defaults(self):
        return self.session.exec(
            select(Identity).where(
                Identity.user_id == self.user.id,
                Identity.is_default == True,  # noqa: E712
                *usable_identity_clause(self.clock()),
            )
        ).all()


class TestCreateIdentity(IdentityStoreTestCase):

    def test_first_identity_becomes_default(self):
        first = self.create("first")
        second = self.create("second")
        self.assertTrue(first.is_default)
        self.assertFalse(second.is_default)
        self.assertEqual(len(self.defaults()), 1)

    def test_requested_default_replaces_previous(self):
        first = self.create("first")
        second = self.create("second", is_default=True)
        self.session.refresh(first)
        self.assertTrue(second.is_default)
        self.assertFalse(first.is_default)
        self.assertEqual(len(self.defaults()), 1)

    def test_alias_is_normalized_and_unique(self):
        identity = self.create("  Alice_01 ")
        self.assertEqual(identity.alias, "alice_01")
        self.assertEqual(identity.display_name, "alice_01")
        with self.assertRaises(AliasTaken):
            self.create("ALICE_01")

    def test_invalid_alias(self):
        with self.assertRaises(ValidationFailed):
            self.create("no spaces allowed")

    def test_cap_counts_live_identities(self):
        created = [self.create(f"alias{i}") for i in range(settings.MAX_IDENTITIES_PER_USER)]
        with self.assertRaises(LimitExceeded):
            self.create("one_too_many")

        self.store.request_deletion(self.user.id, created[-1].id)
        self.create("one_too_many")
        live = self.store.list_identities(self.user.id, include_inactive=True)[1]
        self.assertEqual(live, settings.MAX_IDENTITIES_PER_USER)

    def test_week_auto_delete_against_three_day_expiry(self):
        with self.assertRaises(ScheduleConflict):
            self.create(
                "shortlived",
                expires_at=self.clock() + timedelta(days=3),
                auto_delete_settings=AutoDeleteSettings(
                    enabled=True, preset=AutoDeletePreset.ONE_WEEK
                ),
            )
        self.assertEqual(self.store.list_identities(self.user.id)[1], 0)

    def test_tight_schedule_warns(self):
        _, warnings = self.store.create_identity(
            self.user.id,
            "tight",
            expires_at=self.clock() + timedelta(days=7, hours=6),
            auto_delete_settings=AutoDeleteSettings(enabled=True, preset=AutoDeletePreset.ONE_WEEK),
        )
        self.assertEqual(len(warnings), 1)

    def test_other_users_identity(self):
        identity = self.create("mine")
        stranger = make_user(self.session, "stranger@example.com")
        with self.assertRaises(AccessDenied):
            self.store.get_identity(stranger.id, identity.id)
        with self.assertRaises(NotFound):
            self.store.get_identity(self.user.id, 9999)


class TestUpdateIdentity(IdentityStoreTestCase):

    def test_expiry_change_revalidates_schedule(self):
        identity = self.create(
            "weekly",
            auto_delete_settings=AutoDeleteSettings(enabled=True, preset=AutoDeletePreset.ONE_WEEK),
        )
        with self.assertRaises(ScheduleConflict):
            self.store.update_identity(
                self.user.id, identity.id, {"expires_at": self.clock() + timedelta(days=2)}
            )
        self.session.refresh(identity)
        self.assertIsNone(identity.expires_at)

    def test_auto_delete_custom_days(self):
        identity = self.create("custom")
        identity, _ = self.store.update_auto_delete(
            self.user.id,
            identity.id,
            AutoDeleteSettings(enabled=True, preset=AutoDeletePreset.CUSTOM, custom_days=12),
        )
        self.assertEqual(identity.auto_delete_effective_days, 12)
        self.assertEqual(
            self.store.get_auto_delete(self.user.id, identity.id)["description"],
            "Messages auto-delete after 12 days",
        )

    def test_clone_copies_settings(self):
        source = self.create(
            "source",
            display_name="Source",
            privacy=PrivacySettings(allow_strangers=False),
        )
        clone, _ = self.store.clone_identity(self.user.id, source.id, "source2")
        self.assertEqual(clone.display_name, "Source (Copy)")
        self.assertFalse(clone.allow_strangers)
        self.assertFalse(clone.is_default)

    def test_archive_default_elects_replacement(self):
        default = self.create("main")
        other = self.create("spare")
        self.store.archive_identity(self.user.id, default.id)
        self.session.refresh(other)
        self.assertTrue(other.is_default)
        self.assertEqual([i.id for i in self.defaults()], [other.id])

    def test_archive_default_with_full_slots(self):
        main = self.create("main")
        guards = [self.create(f"guard{i}") for i in range(3)]
        for identity in guards:
            self.store.set_protection(self.user.id, identity.id, True)
        self.store.set_default(self.user.id, guards[0].id)
        extra = self.create("extra")
        self.store.set_protection(self.user.id, extra.id, True)
        for identity in (guards[1], guards[2], extra):
            self.store.archive_identity(self.user.id, identity.id)

        archived = self.store.archive_identity(self.user.id, guards[0].id)

        self.assertTrue(archived.is_archived)
        self.assertFalse(archived.is_default)
        self.assertFalse(archived.is_protected)
        self.assertEqual([i.id for i in self.defaults()], [main.id])

    def test_search(self):
        self.create("shadow", display_name="Night Walker")
        self.create("sunny")
        with self.assertRaises(ValidationFailed):
            self.store.search_identities(self.user.id, "s")
        found, total = self.store.search_identities(self.user.id, "walk")
        self.assertEqual(total, 1)
        self.assertEqual(found[0].alias, "shadow")

    def test_alias_availability(self):
        self.create("taken")
        self.assertFalse(self.store.check_alias_availability(self.user.id, "Taken")["available"])
        self.assertTrue(self.store.check_alias_availability(self.user.id, "free")["available"])
        self.assertFalse(self.store.check_alias_availability(self.user.id, "x")["available"])

    def test_export_csv(self):
        self.create("exported")
        exported = self.store.export_identities(self.user.id, fmt="csv")
        header, row = exported.strip().splitlines()
        self.assertTrue(header.startswith("alias,display_name,is_default"))
        self.assertTrue(row.startswith("exported,exported,True"))

    def test_import_skips_existing(self):
        self.create("existing")
        result = self.store.import_identities(
            self.user.id,
            [IdentityImportItem(alias="existing"), IdentityImportItem(alias="fresh")],
        )
        self.assertEqual(result["summary"]["imported"], 1)
        self.assertEqual(result["summary"]["skipped"], 1)
        self.assertEqual(result["imported"][0]["alias"], "fresh")


class TestDefaultAndProtection(IdentityStoreTestCase):

    def test_fourth_protected_identity(self):
        self.create("main")
        protected = [self.create(f"guard{i}") for i in range(3)]
        for identity in protected:
            self.store.set_protection(self.user.id, identity.id, True)
        extra = self.create("extra")

        with self.assertRaises(ProtectionSlotsFull):
            self.store.set_protection(self.user.id, extra.id, True)
        self.assertEqual(self.store.get_protection_status(self.user.id)["protected_count"], 3)

    def test_bulk_protection_unprotects_first(self):
        self.create("main")
        guards = [self.create(f"guard{i}") for i in range(3)]
        for identity in guards:
            self.store.set_protection(self.user.id, identity.id, True)
        extra = self.create("extra")

        result = self.store.bulk_update_protection(
            self.user.id, [(extra.id, True), (guards[0].id, False)]
        )
        self.assertEqual(result.errors, [])
        self.session.refresh(extra)
        self.assertTrue(extra.is_protected)

    def test_strict_default_transfer_respects_slots(self):
        main = self.create("main")
        guards = [self.create(f"guard{i}") for i in range(3)]
        for identity in guards:
            self.store.set_protection(self.user.id, identity.id, True)
        self.store.set_default(self.user.id, guards[0].id)
        newcomer = self.create("newcomer")
        self.store.set_protection(self.user.id, newcomer.id, True)

        with self.assertRaises(ProtectionSlotsFull):
            self.store.set_default(self.user.id, main.id)
        self.assertEqual([i.id for i in self.defaults()], [guards[0].id])

    def test_expired_identity_cannot_become_default(self):
        main = self.create("main")
        brief = self.create("brief", expires_at=self.clock() + timedelta(days=1))
        self.clock.advance(days=2)

        with self.assertRaises(NotUsable):
            self.store.set_default(self.user.id, brief.id)
        self.session.refresh(main)
        self.assertTrue(main.is_default)

    def test_archived_identity_cannot_become_default(self):
        self.create("main")
        shelved = self.create("shelved")
        self.store.archive_identity(self.user.id, shelved.id)

        with self.assertRaises(NotUsable):
            self.store.set_default(self.user.id, shelved.id)


class TestDeletion(IdentityStoreTestCase):

    def test_soft_delete_default_hands_over_to_protected(self):
        a = self.create("alpha")
        self.create("bravo")
        c = self.create("charlie")
        self.store.set_protection(self.user.id, c.id, True)

        result = self.store.request_deletion(self.user.id, a.id)

        self.assertEqual(result.deletion_type, "soft")
        self.assertTrue(result.restorable)
        self.assertEqual(result.replacement_default.id, c.id)
        self.assertEqual([i.id for i in self.defaults()], [c.id])
        deleted = self.store.get_identity(self.user.id, a.id, include_deleted=True)
        self.assertTrue(deleted.is_deleted)
        self.assertFalse(deleted.is_default)

    def test_bulk_permanent_delete_with_default(self):
        default = self.create("main")
        x = self.create("xray")
        y = self.create("yankee")
        x_id, y_id = x.id, y.id

        result = self.store.bulk_delete(self.user.id, [default.id, x_id, y_id], permanent=True)

        self.assertEqual(result.summary["soft_deleted"], 1)
        self.assertEqual(result.summary["permanently_deleted"], 2)
        self.assertEqual(result.summary["errors"], 1)
        self.assertEqual(result.errors[0]["identity_id"], default.id)
        self.assertIsNone(self.session.get(Identity, x_id))
        self.assertIsNone(self.session.get(Identity, y_id))
        self.assertTrue(self.store.get_identity(self.user.id, default.id, include_deleted=True).is_deleted)

    def test_bulk_delete_elects_among_survivors(self):
        default = self.create("main")
        doomed = self.create("doomed")
        survivor = self.create("survivor")

        result = self.store.bulk_delete(self.user.id, [default.id, doomed.id])

        self.assertEqual(result.summary["new_default"], "survivor")
        self.assertEqual([i.id for i in self.defaults()], [survivor.id])

    def test_permanent_delete_writes_audit(self):
        self.create("main")
        target = self.create("target")
        result = self.store.request_deletion(self.user.id, target.id, permanent=True)
        self.assertFalse(result.restorable)
        actions = self.session.exec(select(AuditLog.action)).all()
        self.assertIn("IDENTITY_PERMANENT_DELETE", actions)

    def joined(self, identity):
        chat = Conversation(conversation_type=ConversationType.GROUP, created_by=self.user.id)
        self.session.add(chat)
        self.session.flush()
        participant = Participant(
            conversation_id=chat.id, user_id=self.user.id, identity_id=identity.id
        )
        message = Message(
            conversation_id=chat.id,
            sender_user_id=self.user.id,
            sender_identity_id=identity.id,
            content="still here",
        )
        self.session.add(participant)
        self.session.add(message)
        self.session.commit()
        return participant, message

    def test_permanent_delete_in_use_needs_force(self):
        self.create("main")
        target = self.create("busy")
        self.joined(target)

        with self.assertRaises(ActiveUsageConflict) as ctx:
            self.store.request_deletion(self.user.id, target.id, permanent=True)
        self.assertEqual(ctx.exception.context["active_conversations"], 1)
        self.assertFalse(self.store.get_identity(self.user.id, target.id).is_deleted)

    def test_forced_permanent_delete_detaches_references(self):
        self.create("main")
        target = self.create("busy")
        target_id = target.id
        participant, message = self.joined(target)

        result = self.store.request_deletion(
            self.user.id, target_id, permanent=True, force=True
        )

        self.assertEqual(result.deletion_type, "permanent")
        self.assertIsNone(self.session.get(Identity, target_id))
        self.session.refresh(participant)
        self.session.refresh(message)
        self.assertIsNone(participant.identity_id)
        self.assertTrue(participant.identity_deleted)
        self.assertEqual(participant.deleted_identity_alias, "busy")
        self.assertIsNone(message.sender_identity_id)
        self.assertTrue(message.sender_identity_deleted)
        self.assertEqual(message.deleted_sender_alias, "busy")

        audit = self.session.exec(
            select(AuditLog).where(AuditLog.action == "IDENTITY_PERMANENT_DELETE")
        ).one()
        self.assertEqual(audit.resource_id, target_id)
        self.assertEqual(audit.user_id, self.user.id)
        self.assertEqual(audit.details["reason"], "forced")
        self.assertEqual(audit.details["participants_detached"], 1)
        self.assertEqual(audit.details["messages_detached"], 1)

    def test_failed_audit_rolls_back(self):
        self.create("main")
        target = self.create("target")
        with mock.patch.object(
            IdentityStore, "_write_audit", side_effect=SQLAlchemyError("disk full")
        ):
            with self.assertRaises(TransactionFailed) as ctx:
                self.store.request_deletion(self.user.id, target.id, permanent=True)
        self.assertTrue(ctx.exception.retryable)
        survivor = self.store.get_identity(self.user.id, target.id)
        self.assertFalse(survivor.is_deleted)

    def test_restore_with_alias_taken(self):
        self.create("main")
        original = self.create("shadow")
        self.store.request_deletion(self.user.id, original.id)
        replacement = self.create("shadow")

        with self.assertRaises(AliasConflict):
            self.store.restore_identity(self.user.id, original.id)

        self.assertTrue(
            self.store.get_identity(self.user.id, original.id, include_deleted=True).is_deleted
        )
        self.assertFalse(self.store.get_identity(self.user.id, replacement.id).is_deleted)

    def test_restore_keeps_current_default(self):
        main = self.create("main")
        old = self.create("old")
        self.store.request_deletion(self.user.id, old.id)

        restored = self.store.restore_identity(self.user.id, old.id)

        self.assertFalse(restored.is_deleted)
        self.assertFalse(restored.is_default)
        self.assertEqual([i.id for i in self.defaults()], [main.id])
        self.assertEqual(self.store.list_deleted(self.user.id)[1], 0)

    def test_restore_at_cap(self):
        created = [self.create(f"alias{i}") for i in range(settings.MAX_IDENTITIES_PER_USER)]
        self.store.request_deletion(self.user.id, created[-1].id)
        self.create("newcomer")

        with self.assertRaises(LimitExceeded):
            self.store.restore_identity(self.user.id, created[-1].id)
        self.assertTrue(
            self.store.get_identity(self.user.id, created[-1].id, include_deleted=True).is_deleted
        )


class TestUsageStats(IdentityStoreTestCase):

    def test_counts_from_messages_and_memberships(self):
        identity = self.create("talker")
        other = self.create("quiet")
        chats = [
            Conversation(conversation_type=kind, created_by=self.user.id)
            for kind in (ConversationType.GROUP, ConversationType.GROUP, ConversationType.DIRECT)
        ]
        self.session.add_all(chats)
        self.session.flush()
        for chat in chats:
            self.session.add(
                Participant(conversation_id=chat.id, user_id=self.user.id, identity_id=identity.id)
            )
        old = Message(
            conversation_id=chats[0].id,
            sender_user_id=self.user.id,
            sender_identity_id=identity.id,
            content="early",
            sent_at=self.clock() - timedelta(days=10),
        )
        recent = [
            Message(
                conversation_id=chat.id,
                sender_user_id=self.user.id,
                sender_identity_id=identity.id,
                content="hi",
                sent_at=self.clock(),
            )
            for chat in chats[:2]
        ]
        elsewhere = Message(
            conversation_id=chats[2].id,
            sender_user_id=self.user.id,
            sender_identity_id=other.id,
            content="not mine",
        )
        self.session.add_all([old, *recent, elsewhere])
        self.session.flush()
        self.session.add(MessageReaction(message_id=recent[0].id, user_id=self.user.id, emoji="+1"))
        self.session.commit()

        stats = self.store.get_identity_stats(self.user.id, identity.id)
        usage = stats["usage"]
        self.assertEqual(usage["total_messages"], 3)
        self.assertEqual(usage["total_reactions"], 1)
        self.assertEqual(usage["unique_conversations"], 2)
        self.assertEqual(usage["message_type_breakdown"], {"text": 3})
        self.assertEqual(usage["conversation_type_breakdown"], {"group": 2, "direct": 1})
        self.assertEqual(stats["identity"].id, identity.id)

        recent_only = self.store.get_identity_stats(
            self.user.id, identity.id, start=self.clock() - timedelta(days=1)
        )
        self.assertEqual(recent_only["usage"]["total_messages"], 2)

        with self.assertRaises(ValidationFailed):
            self.store.get_identity_stats(
                self.user.id, identity.id, start=self.clock(), end=self.clock() - timedelta(days=1)
            )


class TestConcurrentCreate(unittest.TestCase):
    """Two sessions on one file database, like two API workers."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.engine = build_engine(f"sqlite:///{os.path.join(self.tmpdir, 'cap.db')}")
        create_db_and_tables(bind=self.engine)
        with Session(self.engine) as session:
            self.user_id = make_user(session, "racer@example.com").id
            store = IdentityStore(session)
            for i in range(settings.MAX_IDENTITIES_PER_USER - 1):
                store.create_identity(self.user_id, f"alias{i}")

    def tearDown(self):
        self.engine.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_cap_holds_across_sessions(self):
        outcome = {}

        def contender():
            with Session(self.engine) as session:
                try:
                    IdentityStore(session).create_identity(self.user_id, "late")
                    outcome["result"] = "created"
                except LifecycleError as exc:
                    outcome["result"] = exc.code

        holder = Session(self.engine)
        lock_user(holder, self.user_id)
        holder.add(Identity(user_id=self.user_id, alias="held", display_name="held"))
        holder.flush()

        thread = threading.Thread(target=contender)
        thread.start()
        thread.join(0.3)
        self.assertTrue(thread.is_alive())

        holder.commit()
        holder.close()
        thread.join(5)

        self.assertFalse(thread.is_alive())
        self.assertEqual(outcome["result"], "LIMIT_EXCEEDED")
        with Session(self.engine) as session:
            live = IdentityStore(session)._count_live(self.user_id)
        self.assertEqual(live, settings.MAX_IDENTITIES_PER_USER)


if __name__ == "__main__":
    unittest.main()
