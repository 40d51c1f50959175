"""API tests for role lookup, conversations and the chat endpoint."""

from datetime import UTC, datetime, timedelta

from conftest import MEMBER_ID, auth_header

from app.errors import UpstreamFailure

MEMBER = auth_header("member-token")


class TestAuthenticationRequired:
    def test_endpoints_reject_missing_session(self, client, fake_sb):
        for method, path in [
            ("get", "/api/user/role"),
            ("get", "/api/conversations"),
            ("get", "/api/conversations/chat-1"),
            ("delete", "/api/conversations/chat-1"),
            ("get", "/api/user/purchases"),
            ("get", "/api/training-splits"),
            ("post", "/api/onboarding/complete"),
        ]:
            response = getattr(client, method)(path)
            assert response.status_code == 401, path
            assert response.json() == {"error": "Unauthorized"}
        assert fake_sb.rows("users") == []

    def test_invalid_token_is_401(self, client, fake_sb):
        response = client.get("/api/user/role", headers=auth_header("forged"))
        assert response.status_code == 401
        assert fake_sb.rows("users") == []

    def test_auth_provider_outage_is_500(self, client, fake_sb, member):
        fake_sb.auth.unavailable = True
        response = client.get("/api/user/role", headers=MEMBER)
        assert response.status_code == 500
        assert response.json() == {"error": "Authentication service unavailable"}


class TestUserRole:
    def test_unknown_user_gets_role_and_row(self, client, fake_sb):
        fake_sb.auth.add_token("fresh-token", "user-fresh", "fresh@example.com")

        response = client.get("/api/user/role", headers=auth_header("fresh-token"))

        assert response.status_code == 200
        assert response.json() == {"success": True, "role": "user", "error": None}
        rows = fake_sb.rows("users")
        assert len(rows) == 1
        assert rows[0]["id"] == "user-fresh"
        assert rows[0]["onboarding_completed"] is False

    def test_admin_role_reported(self, client, admin):
        response = client.get("/api/user/role", headers=auth_header("admin-token"))
        assert response.json()["role"] == "admin"


class TestConversations:
    def test_list_only_own_newest_first(self, client, fake_sb, member):
        older = fake_sb.seed("chats", user_id=MEMBER_ID, title="Deadlift form")
        newer = fake_sb.seed("chats", user_id=MEMBER_ID, title="Push pull legs")
        fake_sb.seed("chats", user_id="someone-else", title="Not mine")

        response = client.get("/api/conversations", headers=MEMBER)

        assert response.status_code == 200
        conversations = response.json()["conversations"]
        assert [c["id"] for c in conversations] == [newer["id"], older["id"]]
        assert set(conversations[0]) == {"id", "title", "createdAt"}

    def test_list_creates_user_on_first_access(self, client, fake_sb):
        fake_sb.auth.add_token("new-token", "user-new")
        response = client.get("/api/conversations", headers=auth_header("new-token"))
        assert response.json() == {"success": True, "conversations": [], "error": None}
        assert [row["id"] for row in fake_sb.rows("users")] == ["user-new"]

    def test_get_with_messages(self, client, fake_sb, member):
        chat = fake_sb.seed("chats", user_id=MEMBER_ID, title="Bench plateau")
        fake_sb.seed("messages", chat_id=chat["id"], role="user", content="Stuck at 100kg")
        fake_sb.seed("messages", chat_id=chat["id"], role="assistant", content="Add a paused set")

        response = client.get(f"/api/conversations/{chat['id']}", headers=MEMBER)

        assert response.status_code == 200
        conversation = response.json()["conversation"]
        assert conversation["title"] == "Bench plateau"
        assert [m["content"] for m in conversation["messages"]] == [
            "Stuck at 100kg",
            "Add a paused set",
        ]

    def test_delete_own_conversation_removes_messages(self, client, fake_sb, member, audit_log):
        chat = fake_sb.seed("chats", user_id=MEMBER_ID, title="Cut phase")
        fake_sb.seed("messages", chat_id=chat["id"], role="user", content="How fast to cut?")

        response = client.delete(f"/api/conversations/{chat['id']}", headers=MEMBER)

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Conversation deleted successfully",
            "error": None,
        }
        assert fake_sb.rows("chats") == []
        assert fake_sb.rows("messages") == []
        assert any('"CHAT_DELETED"' in line for line in audit_log())

    def test_foreign_and_missing_conversations_look_identical(self, client, fake_sb, member):
        foreign = fake_sb.seed("chats", user_id="someone-else", title="Private")

        not_mine = client.delete(f"/api/conversations/{foreign['id']}", headers=MEMBER)
        missing = client.delete("/api/conversations/does-not-exist", headers=MEMBER)

        assert not_mine.status_code == missing.status_code == 404
        assert not_mine.json() == missing.json() == {"error": "Conversation not found"}
        assert len(fake_sb.rows("chats")) == 1

    def test_malformed_conversation_id_is_404(self, client, fake_sb, member, monkeypatch):
        queried, table = [], fake_sb.table
        monkeypatch.setattr(fake_sb, "table", lambda name: queried.append(name) or table(name))

        for method in ("get", "delete"):
            response = getattr(client, method)("/api/conversations/not-a-uuid", headers=MEMBER)
            assert response.status_code == 404
            assert response.json() == {"error": "Conversation not found"}
        assert "chats" not in queried

    def test_foreign_conversation_not_readable(self, client, fake_sb, member):
        foreign = fake_sb.seed("chats", user_id="someone-else", title="Private")
        response = client.get(f"/api/conversations/{foreign['id']}", headers=MEMBER)
        assert response.status_code == 404
        assert response.json() == {"error": "Conversation not found"}

    def test_storage_failure_is_generic_500(self, client, fake_sb, member):
        fake_sb.failing_tables.add("chats")
        response = client.get("/api/conversations", headers=MEMBER)
        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}


class TestChat:
    def test_new_conversation(self, client, fake_sb, fake_llm, member):
        payload = {"message": "  Best rep range for hypertrophy?  "}
        response = client.post("/api/chat", json=payload, headers=MEMBER)

        assert response.status_code == 200
        body = response.json()
        assert body["reply"] == fake_llm.reply
        chats = fake_sb.rows("chats")
        assert len(chats) == 1
        assert body["conversationId"] == chats[0]["id"]
        assert chats[0]["title"] == "Best rep range for hypertrophy?"
        assert [m["role"] for m in fake_sb.rows("messages")] == ["user", "assistant"]
        conversation, user_id = fake_llm.calls[0]
        assert conversation == [{"role": "user", "content": "Best rep range for hypertrophy?"}]
        assert user_id == MEMBER_ID

    def test_continue_conversation_sends_history(self, client, fake_sb, fake_llm, member):
        chat = fake_sb.seed("chats", user_id=MEMBER_ID, title="Squat")
        fake_sb.seed("messages", chat_id=chat["id"], role="user", content="Squat depth?")
        fake_sb.seed("messages", chat_id=chat["id"], role="assistant", content="Below parallel")

        response = client.post(
            "/api/chat",
            json={"message": "And stance width?", "conversationId": chat["id"]},
            headers=MEMBER,
        )

        assert response.status_code == 200
        assert response.json()["conversationId"] == chat["id"]
        conversation, _ = fake_llm.calls[0]
        assert [turn["content"] for turn in conversation] == [
            "Squat depth?",
            "Below parallel",
            "And stance width?",
        ]
        assert len(fake_sb.rows("messages")) == 4

    def test_empty_message_rejected(self, client, fake_llm, member):
        response = client.post("/api/chat", json={"message": "   "}, headers=MEMBER)
        assert response.status_code == 400
        assert response.json() == {"error": "Message is required"}
        assert fake_llm.calls == []

    def test_malformed_body_rejected(self, client, member):
        response = client.post("/api/chat", json={"message": ["not", "text"]}, headers=MEMBER)
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid request body"}

    def test_foreign_conversation_is_404(self, client, fake_sb, fake_llm, member):
        foreign = fake_sb.seed("chats", user_id="someone-else", title="Private")
        response = client.post(
            "/api/chat",
            json={"message": "hello", "conversationId": foreign["id"]},
            headers=MEMBER,
        )
        assert response.status_code == 404
        assert fake_llm.calls == []

    def test_coming_soon_blocks_members(self, make_client, fake_sb, fake_llm, member):
        client = make_client(CHAT_COMING_SOON=True)
        response = client.post("/api/chat", json={"message": "hello"}, headers=MEMBER)
        assert response.status_code == 403
        assert response.json() == {"error": "Chat is coming soon", "reason": "chat_coming_soon"}
        assert fake_llm.calls == []

    def test_coming_soon_admin_bypass(self, make_client, admin):
        client = make_client(CHAT_COMING_SOON=True)
        response = client.post(
            "/api/chat", json={"message": "hello"}, headers=auth_header("admin-token")
        )
        assert response.status_code == 200

    def test_llm_failure_leaves_no_chat(self, client, fake_sb, fake_llm, member):
        fake_llm.error = UpstreamFailure("AI service unavailable")
        response = client.post("/api/chat", json={"message": "hello"}, headers=MEMBER)
        assert response.status_code == 500
        assert response.json() == {"error": "AI service unavailable"}
        assert fake_sb.rows("chats") == []
        assert fake_sb.rows("messages") == []

class TestDailyMessageLimit:
    @staticmethod
    def use_messages(fake_sb, count, when=None):
        when = when or datetime.now(UTC)
        fake_sb.rows("users")[0].update(
            {"messages_used_today": count, "last_message_reset": when.isoformat()}
        )

    def test_free_user_at_limit_gets_429(self, client, fake_sb, fake_llm, member):
        self.use_messages(fake_sb, 10)

        response = client.post("/api/chat", json={"message": "One more set?"}, headers=MEMBER)

        assert response.status_code == 429
        assert response.json() == {
            "error": "Daily message limit reached",
            "reason": "daily_limit_reached",
        }
        assert fake_llm.calls == []
        assert fake_sb.rows("chats") == []

    def test_successful_reply_is_counted(self, client, fake_sb, member):
        client.post("/api/chat", json={"message": "Warm-up sets?"}, headers=MEMBER)
        client.post("/api/chat", json={"message": "And cooldown?"}, headers=MEMBER)
        assert fake_sb.rows("users")[0]["messages_used_today"] == 2

    def test_failed_reply_is_not_counted(self, client, fake_sb, fake_llm, member):
        fake_llm.error = UpstreamFailure("AI service unavailable")
        client.post("/api/chat", json={"message": "hello"}, headers=MEMBER)
        assert fake_sb.rows("users")[0]["messages_used_today"] == 0

    def test_counter_resets_on_a_new_day(self, client, fake_sb, member):
        self.use_messages(fake_sb, 10, when=datetime.now(UTC) - timedelta(days=1))

        response = client.post("/api/chat", json={"message": "New day"}, headers=MEMBER)

        assert response.status_code == 200
        row = fake_sb.rows("users")[0]
        assert row["messages_used_today"] == 1
        assert datetime.fromisoformat(row["last_message_reset"]).date() == datetime.now(UTC).date()

    def test_limit_comes_from_settings(self, make_client, fake_sb, member):
        client = make_client(FREE_DAILY_MESSAGES=2)
        self.use_messages(fake_sb, 2)
        response = client.post("/api/chat", json={"message": "hello"}, headers=MEMBER)
        assert response.status_code == 429

    def test_pro_user_is_unlimited(self, client, fake_sb, member):
        fake_sb.rows("users")[0]["plan"] = "PRO"
        self.use_messages(fake_sb, 50)

        response = client.post("/api/chat", json={"message": "Plan my week"}, headers=MEMBER)

        assert response.status_code == 200
        assert fake_sb.rows("users")[0]["messages_used_today"] == 50

    def test_lapsed_grant_falls_back_to_free(self, client, fake_sb, member, audit_log):
        fake_sb.rows("users")[0]["plan"] = "PRO"
        self.use_messages(fake_sb, 10)
        fake_sb.seed(
            "subscriptions",
            user_id=MEMBER_ID,
            status="active",
            current_period_end=(datetime.now(UTC) - timedelta(hours=1)).isoformat(),
        )

        response = client.post("/api/chat", json={"message": "Still PRO?"}, headers=MEMBER)

        assert response.status_code == 429
        assert fake_sb.rows("users")[0]["plan"] == "FREE"
        assert fake_sb.rows("subscriptions")[0]["status"] == "expired"
        assert any('"PLAN_EXPIRED"' in line for line in audit_log())

    def test_current_grant_stays_pro(self, client, fake_sb, member):
        fake_sb.rows("users")[0]["plan"] = "PRO"
        self.use_messages(fake_sb, 10)
        fake_sb.seed(
            "subscriptions",
            user_id=MEMBER_ID,
            status="active",
            current_period_end=(datetime.now(UTC) + timedelta(days=3)).isoformat(),
        )

        response = client.post("/api/chat", json={"message": "Still PRO?"}, headers=MEMBER)

        assert response.status_code == 200
        assert fake_sb.rows("users")[0]["plan"] == "PRO"



class TestUserData:
    def test_purchases_listed_with_count(self, client, fake_sb, member):
        fake_sb.seed(
            "user_purchases", user_id=MEMBER_ID, order_id="1001", program_id="ppl", amount=2900
        )
        fake_sb.seed("user_purchases", user_id="someone-else", order_id="1002")

        response = client.get("/api/user/purchases", headers=MEMBER)

        body = response.json()
        assert body["count"] == 1
        assert body["purchases"][0]["orderId"] == "1001"

    def test_complete_onboarding(self, client, fake_sb):
        fake_sb.auth.add_token("new-token", "user-new")
        response = client.post("/api/onboarding/complete", headers=auth_header("new-token"))
        assert response.status_code == 200
        assert response.json()["user"]["onboardingCompleted"] is True
        assert fake_sb.rows("users")[0]["onboarding_completed"] is True

    def test_training_splits_active_only(self, client, fake_sb, member):
        fake_sb.seed("training_splits", name="Upper/Lower", days_per_week=4)
        fake_sb.seed("training_splits", name="Bro split", is_active=False)
        fake_sb.seed("training_splits", name="Full body", days_per_week=3)

        response = client.get("/api/training-splits", headers=MEMBER)

        names = [split["name"] for split in response.json()["splits"]]
        assert names == ["Full body", "Upper/Lower"]
