import unittest
from datetime import timedelta

from sqlmodel import Session, select

from app.core.errors import AccessDenied, NotFound, NotUsable, ValidationFailed
from app.models.audit import AuditLog
from app.models.conversation import ConversationType, ParticipantRole
from app.schemas.conversations import (
    ConversationPrivacy,
    ParticipantPermissions,
    ParticipantSettings,
    ParticipantSpec,
    SecretChatSettings,
)
from app.services.conversation_store import ConversationStore, can_moderate, check_role_change
from app.services.identity_store import IdentityStore
from app.utils.testing import FrozenClock, make_user, memory_engine


class ConversationStoreTestCase(unittest.TestCase):

    def setUp(self):
        self.engine = memory_engine()
        self.session = Session(self.engine)
        self.clock = FrozenClock()
        self.identities = IdentityStore(self.session, clock=self.clock)
        self.store = ConversationStore(self.session, self.identities, clock=self.clock)

        self.alice = make_user(self.session, "alice@example.com", "Alice")
        self.bob = make_user(self.session, "bob@example.com", "Bob")
        self.carol = make_user(self.session, "carol@example.com", "Carol")
        for user, alias in ((self.alice, "alice"), (self.bob, "bob"), (self.carol, "carol")):
            self.identities.create_identity(user.id, alias)

    def tearDown(self):
        self.session.close()

    def direct(self, user, other, **kwargs):
        conversation, _ = self.store.create_conversation(
            user.id, ConversationType.DIRECT, [ParticipantSpec(user_id=other.id)], **kwargs
        )
        return conversation

    def group(self, owner, *members):
        conversation, _ = self.store.create_conversation(
            owner.id,
            ConversationType.GROUP,
            [ParticipantSpec(user_id=m.id) for m in members],
            name="Team",
        )
        return conversation


class TestCreateConversation(ConversationStoreTestCase):

    def test_direct_is_reused(self):
        first = self.direct(self.alice, self.bob)
        again = self.direct(self.bob, self.alice)
        self.assertEqual(first.id, again.id)
        self.assertEqual(first.participant_count, 2)

    def test_direct_needs_one_other(self):
        with self.assertRaises(ValidationFailed):
            self.store.create_conversation(
                self.alice.id,
                ConversationType.DIRECT,
                [ParticipantSpec(user_id=self.bob.id), ParticipantSpec(user_id=self.carol.id)],
            )
        with self.assertRaises(ValidationFailed):
            self.direct(self.alice, self.alice)

    def test_member_without_usable_identity(self):
        dave = make_user(self.session, "dave@example.com", "Dave")
        with self.assertRaises(NotUsable):
            self.direct(self.alice, dave)

    def test_creator_usage_counted(self):
        self.direct(self.alice, self.bob)
        self.assertEqual(self.identities.get_default(self.alice.id).conversations_started, 1)

    def test_privacy_applied(self):
        conversation = self.direct(
            self.alice,
            self.bob,
            privacy=ConversationPrivacy(disappearing_enabled=True, disappearing_seconds=60),
        )
        self.assertTrue(conversation.disappearing_enabled)
        self.assertEqual(conversation.disappearing_seconds, 60)


class TestSecretConversation(ConversationStoreTestCase):

    def test_key_is_wrapped_and_rotated(self):
        conversation, fingerprint = self.store.create_conversation(
            self.alice.id,
            ConversationType.SECRET,
            [ParticipantSpec(user_id=self.bob.id)],
            secret=SecretChatSettings(forwarding_disabled=True),
        )
        self.assertTrue(conversation.encryption_enabled)
        self.assertTrue(conversation.forwarding_disabled)
        self.assertEqual(conversation.key_version, 1)
        self.assertNotIn(fingerprint, conversation.encryption_key)
        self.assertEqual(self.store.get_key_fingerprint(self.bob.id, conversation.id), fingerprint)

        conversation, rotated = self.store.update_secret_settings(
            self.alice.id, conversation.id, SecretChatSettings(rotate_key=True)
        )
        self.assertEqual(conversation.key_version, 2)
        self.assertNotEqual(rotated, fingerprint)
        self.assertEqual(self.store.get_key_fingerprint(self.alice.id, conversation.id), rotated)

    def test_fingerprint_needs_a_key(self):
        conversation = self.direct(self.alice, self.bob)
        with self.assertRaises(ValidationFailed):
            self.store.get_key_fingerprint(self.alice.id, conversation.id)

    def test_secret_settings_only_for_secret(self):
        conversation = self.direct(self.alice, self.bob)
        with self.assertRaises(ValidationFailed):
            self.store.update_secret_settings(
                self.alice.id, conversation.id, SecretChatSettings(screenshot_blocked=True)
            )


class TestMembership(ConversationStoreTestCase):

    def test_leave_and_rejoin(self):
        conversation = self.group(self.alice, self.bob)
        self.store.add_participant(self.alice.id, conversation.id, self.carol.id)
        self.session.refresh(conversation)
        self.assertEqual(conversation.participant_count, 3)

        left = self.store.remove_participant(self.alice.id, conversation.id, self.carol.id)
        self.assertIsNotNone(left.left_at)
        self.session.refresh(conversation)
        self.assertEqual(conversation.participant_count, 2)
        self.assertEqual(len(self.store.list_participants(self.alice.id, conversation.id)), 2)

        back = self.store.add_participant(self.alice.id, conversation.id, self.carol.id)
        self.assertIsNone(back.left_at)
        self.assertEqual(back.id, left.id)

    def test_member_cannot_add_or_remove_others(self):
        conversation = self.group(self.alice, self.bob)
        with self.assertRaises(AccessDenied):
            self.store.add_participant(self.bob.id, conversation.id, self.carol.id)
        with self.assertRaises(AccessDenied):
            self.store.remove_participant(self.bob.id, conversation.id, self.alice.id)

    def test_owner_can_moderate(self):
        conversation = self.group(self.alice, self.bob)
        owner = self.store.get_participant(conversation.id, self.alice.id)
        member = self.store.get_participant(conversation.id, self.bob.id)
        self.assertEqual(owner.role, ParticipantRole.OWNER)
        self.assertTrue(can_moderate(owner))
        self.assertFalse(can_moderate(member))

    def test_outsider_cannot_read(self):
        conversation = self.direct(self.alice, self.bob)
        with self.assertRaises(AccessDenied):
            self.store.get_conversation(self.carol.id, conversation.id)

    def test_memberships_counted_per_identity(self):
        self.direct(self.alice, self.bob)
        self.group(self.alice, self.carol)
        identity = self.identities.get_default(self.alice.id)
        self.assertEqual(self.store.count_active_memberships(identity.id), 2)


class TestRoles(ConversationStoreTestCase):

    def test_owner_promotes_with_overrides(self):
        conversation = self.group(self.alice, self.bob, self.carol)
        bob = self.store.update_participant_role(
            self.alice.id,
            conversation.id,
            self.bob.id,
            ParticipantRole.ADMIN,
            permissions=ParticipantPermissions(can_add_members=False),
        )
        self.assertEqual(bob.role, ParticipantRole.ADMIN)
        self.assertTrue(bob.can_edit_group_info)
        self.assertFalse(bob.can_add_members)

        audit = self.session.exec(
            select(AuditLog).where(AuditLog.action == "PARTICIPANT_ROLE_CHANGE")
        ).one()
        self.assertEqual(audit.resource_id, bob.id)
        self.assertEqual(audit.details["old_role"], "member")
        self.assertEqual(audit.details["new_role"], "admin")

    def test_admin_limits(self):
        conversation = self.group(self.alice, self.bob, self.carol)
        self.store.update_participant_role(
            self.alice.id, conversation.id, self.bob.id, ParticipantRole.ADMIN
        )
        carol = self.store.update_participant_role(
            self.bob.id, conversation.id, self.carol.id, ParticipantRole.MODERATOR
        )
        self.assertTrue(carol.can_delete_messages)
        self.assertFalse(carol.can_add_members)

        with self.assertRaises(AccessDenied):
            self.store.update_participant_role(
                self.bob.id, conversation.id, self.alice.id, ParticipantRole.MEMBER
            )
        with self.assertRaises(AccessDenied):
            self.store.update_participant_role(
                self.carol.id, conversation.id, self.bob.id, ParticipantRole.MEMBER
            )

    def test_ownership_transfer_demotes_owner(self):
        conversation = self.group(self.alice, self.bob)
        bob = self.store.update_participant_role(
            self.alice.id, conversation.id, self.bob.id, ParticipantRole.OWNER
        )
        alice = self.store.get_participant(conversation.id, self.alice.id)
        self.assertEqual(bob.role, ParticipantRole.OWNER)
        self.assertEqual(alice.role, ParticipantRole.ADMIN)

        admins = self.store.list_admins(self.alice.id, conversation.id)
        self.assertEqual(
            {(p.user_id, p.role) for p in admins},
            {(self.alice.id, ParticipantRole.ADMIN), (self.bob.id, ParticipantRole.OWNER)},
        )

    def test_roles_need_a_group(self):
        conversation = self.direct(self.alice, self.bob)
        with self.assertRaises(ValidationFailed):
            self.store.update_participant_role(
                self.alice.id, conversation.id, self.bob.id, ParticipantRole.ADMIN
            )
        group = self.group(self.alice, self.bob)
        with self.assertRaises(NotFound):
            self.store.update_participant_role(
                self.alice.id, group.id, self.carol.id, ParticipantRole.ADMIN
            )

    def test_admin_cannot_promote_to_owner(self):
        with self.assertRaises(AccessDenied):
            check_role_change(ParticipantRole.ADMIN, ParticipantRole.MEMBER, ParticipantRole.OWNER)
        check_role_change(ParticipantRole.ADMIN, ParticipantRole.ADMIN, ParticipantRole.MEMBER)


class TestSettings(ConversationStoreTestCase):

    def test_mute_for_a_while(self):
        conversation = self.direct(self.alice, self.bob)
        participant = self.store.update_participant_settings(
            self.bob.id, conversation.id, ParticipantSettings(mute=True, mute_hours=2)
        )
        self.assertTrue(participant.is_muted)
        self.assertEqual(participant.muted_until, self.clock() + timedelta(hours=2))

        participant = self.store.update_participant_settings(
            self.bob.id, conversation.id, ParticipantSettings(mute=False)
        )
        self.assertFalse(participant.is_muted)
        self.assertIsNone(participant.muted_until)

    def test_group_settings_need_rights(self):
        conversation = self.group(self.alice, self.bob)
        with self.assertRaises(AccessDenied):
            self.store.update_privacy_settings(
                self.bob.id, conversation.id, ConversationPrivacy(auto_delete_messages=True)
            )
        updated = self.store.update_privacy_settings(
            self.alice.id, conversation.id, ConversationPrivacy(auto_delete_messages=True)
        )
        self.assertTrue(updated.auto_delete_messages)

    def test_archive_hides_from_list(self):
        conversation = self.direct(self.alice, self.bob)
        self.store.archive_conversation(self.alice.id, conversation.id)
        self.assertEqual(self.store.list_user_conversations(self.alice.id), [])
        self.assertEqual(
            len(self.store.list_user_conversations(self.alice.id, include_archived=True)), 1
        )


if __name__ == "__main__":
    unittest.main()
