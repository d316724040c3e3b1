import unittest
from datetime import timedelta

from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from sqlmodel import Session

from app.api import deps
from app.api.errors import register_exception_handlers
from app.api.v1 import api_v1_router
from app.core.db import get_db_session
from app.models.user import User
from app.utils.testing import make_user, memory_engine
from app.utils.time import utcnow


class RoutesTestCase(unittest.TestCase):

    def setUp(self):
        self.engine = memory_engine()
        with Session(self.engine) as session:
            self.alice_id = make_user(session, "alice@example.com", "Alice").id
            self.bob_id = make_user(session, "bob@example.com", "Bob").id
            self.carol_id = make_user(session, "carol@example.com", "Carol").id
        self.user_id = self.alice_id

        app = FastAPI()
        register_exception_handlers(app)
        app.include_router(api_v1_router)

        def db_session():
            with Session(self.engine) as session:
                yield session

        def current_user(db_session: Session = Depends(get_db_session)) -> User:
            return db_session.get(User, self.user_id)

        app.dependency_overrides[get_db_session] = db_session
        app.dependency_overrides[deps.get_current_user] = current_user
        for limiter in (deps.limit_search, deps.limit_alias_check, deps.limit_bulk, deps.limit_import):
            app.dependency_overrides[limiter] = lambda: None

        self.app = app
        self.client = TestClient(app)

    def as_user(self, user_id):
        self.user_id = user_id

    def create_identity(self, alias, **body):
        response = self.client.post("/api/v1/identities", json={"alias": alias, **body})
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()["identity"]


class TestIdentityRoutes(RoutesTestCase):

    def test_create_and_list(self):
        identity = self.create_identity("Night_Owl")
        self.assertEqual(identity["alias"], "night_owl")
        self.assertTrue(identity["is_default"])

        listed = self.client.get("/api/v1/identities").json()
        self.assertEqual(listed["total"], 1)
        self.assertEqual(listed["identities"][0]["id"], identity["id"])

    def test_duplicate_alias_conflict(self):
        self.create_identity("taken")
        response = self.client.post("/api/v1/identities", json={"alias": "TAKEN"})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"], "ALIAS_TAKEN")

    def test_schedule_conflict_reports_dates(self):
        response = self.client.post(
            "/api/v1/identities",
            json={
                "alias": "brief",
                "expires_at": (utcnow() + timedelta(days=3)).isoformat(),
                "auto_delete": {"enabled": True, "preset": "1_week"},
            },
        )
        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["error"], "SCHEDULE_CONFLICT")
        self.assertIn("auto_delete_at", payload["context"])
        self.assertIn("expires_at", payload["context"])

    def test_request_validation(self):
        response = self.client.post("/api/v1/identities", json={"alias": "x"})
        self.assertEqual(response.status_code, 422)

    def test_delete_default_names_replacement(self):
        main = self.create_identity("main")
        self.create_identity("backup")

        response = self.client.delete(f"/api/v1/identities/{main['id']}")

        self.assertEqual(response.status_code, 200, response.text)
        payload = response.json()
        self.assertEqual(payload["deletion_type"], "soft")
        self.assertEqual(payload["replacement_default"], "backup")

        deleted = self.client.get("/api/v1/identities/deleted").json()
        self.assertEqual(deleted["total"], 1)

    def test_other_users_identity_forbidden(self):
        identity = self.create_identity("private")
        self.as_user(self.bob_id)
        response = self.client.get(f"/api/v1/identities/{identity['id']}")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"], "ACCESS_DENIED")

    def test_export_csv(self):
        self.create_identity("exported")
        response = self.client.get("/api/v1/identities/export", params={"format": "csv"})
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers["content-type"].startswith("text/csv"))
        self.assertIn("exported", response.text)

    def test_stats(self):
        identity = self.create_identity("counted")
        response = self.client.get(f"/api/v1/identities/{identity['id']}/stats")
        self.assertEqual(response.status_code, 200, response.text)
        stats = response.json()["stats"]
        self.assertEqual(stats["identity"]["alias"], "counted")
        self.assertEqual(stats["usage"]["total_messages"], 0)
        self.assertEqual(stats["usage"]["message_type_breakdown"], {})

    def test_missing_session_cookie(self):
        del self.app.dependency_overrides[deps.get_current_user]
        response = self.client.get("/api/v1/identities")
        self.assertEqual(response.status_code, 401)


class TestMessageRoutes(RoutesTestCase):

    def setUp(self):
        super().setUp()
        for user_id, alias in ((self.alice_id, "alice"), (self.bob_id, "bob"), (self.carol_id, "carol")):
            self.as_user(user_id)
            self.create_identity(alias)
        self.as_user(self.alice_id)

    def conversation(self, other_id):
        response = self.client.post(
            "/api/v1/conversations", json={"participants": [{"user_id": other_id}]}
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()["conversation"]["id"]

    def test_send_and_read(self):
        chat_id = self.conversation(self.bob_id)
        sent = self.client.post(
            "/api/v1/messages/send", json={"conversation_id": chat_id, "content": "hi bob"}
        )
        self.assertEqual(sent.status_code, 201, sent.text)
        message = sent.json()
        self.assertEqual(message["delivery_status"], "sent")
        self.assertIsNone(message["attribution"])

        self.as_user(self.bob_id)
        listed = self.client.get(f"/api/v1/messages/conversation/{chat_id}").json()
        self.assertEqual(listed["count"], 1)
        self.assertEqual(listed["messages"][0]["content"], "hi bob")

        read = self.client.post(f"/api/v1/messages/{message['id']}/read")
        self.assertEqual(read.json()["delivery_status"], "read")

    def test_outsider_cannot_send(self):
        chat_id = self.conversation(self.bob_id)
        self.as_user(self.carol_id)
        response = self.client.post(
            "/api/v1/messages/send", json={"conversation_id": chat_id, "content": "let me in"}
        )
        self.assertEqual(response.status_code, 403)

    def test_forward_carries_attribution(self):
        chat_id = self.conversation(self.bob_id)
        message = self.client.post(
            "/api/v1/messages/send", json={"conversation_id": chat_id, "content": "pass it on"}
        ).json()

        self.as_user(self.bob_id)
        target_id = self.conversation(self.carol_id)
        response = self.client.post(
            f"/api/v1/messages/{message['id']}/forward",
            json={"target_conversation_ids": [target_id], "attribution": "show_original"},
        )

        self.assertEqual(response.status_code, 200, response.text)
        [copy] = response.json()
        self.assertEqual(copy["forward_chain"], 1)
        self.assertEqual(copy["attribution"]["text"], "Forwarded from alice")

    def test_backwards_status_rejected(self):
        chat_id = self.conversation(self.bob_id)
        message = self.client.post(
            "/api/v1/messages/send", json={"conversation_id": chat_id, "content": "hey"}
        ).json()
        self.as_user(self.bob_id)
        self.client.post(f"/api/v1/messages/{message['id']}/read")

        response = self.client.put(
            f"/api/v1/messages/{message['id']}/status", json={"status": "delivered"}
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "INVALID_TRANSITION")

    def test_unread_then_read(self):
        chat_id = self.conversation(self.bob_id)
        message = self.client.post(
            "/api/v1/messages/send", json={"conversation_id": chat_id, "content": "ping"}
        ).json()

        self.as_user(self.bob_id)
        unread = self.client.get("/api/v1/messages/unread")
        self.assertEqual(unread.status_code, 200, unread.text)
        self.assertEqual([m["id"] for m in unread.json()["messages"]], [message["id"]])

        self.client.post(f"/api/v1/messages/{message['id']}/read")
        unread = self.client.get("/api/v1/messages/unread", params={"conversation_id": chat_id})
        self.assertEqual(unread.json()["count"], 0)

    def test_roles_and_admins(self):
        created = self.client.post(
            "/api/v1/conversations",
            json={
                "conversation_type": "group",
                "name": "Crew",
                "participants": [{"user_id": self.bob_id}, {"user_id": self.carol_id}],
            },
        )
        chat_id = created.json()["conversation"]["id"]

        promoted = self.client.put(
            f"/api/v1/conversations/{chat_id}/participants/{self.bob_id}/role",
            json={"role": "moderator"},
        )
        self.assertEqual(promoted.status_code, 200, promoted.text)
        self.assertTrue(promoted.json()["can_delete_messages"])

        admins = self.client.get(f"/api/v1/conversations/{chat_id}/admins").json()
        self.assertEqual(admins["count"], 2)
        self.assertEqual(admins["breakdown"], {"owner": 1, "admin": 0, "moderator": 1})

        self.as_user(self.carol_id)
        denied = self.client.put(
            f"/api/v1/conversations/{chat_id}/participants/{self.bob_id}/role",
            json={"role": "member"},
        )
        self.assertEqual(denied.status_code, 403)

    def test_secret_chat_fingerprint(self):
        created = self.client.post(
            "/api/v1/conversations",
            json={"conversation_type": "secret", "participants": [{"user_id": self.bob_id}]},
        ).json()
        chat_id = created["conversation"]["id"]

        self.as_user(self.bob_id)
        response = self.client.get(f"/api/v1/conversations/{chat_id}/key-fingerprint")
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["key_fingerprint"], created["key_fingerprint"])


if __name__ == "__main__":
    unittest.main()
