"""
Integration tests for the HTTP API.
"""
import pytest
from sqlalchemy.exc import IntegrityError

from conftest import as_user
from vchats.core.config import get_settings
from vchats.models.message import TOMBSTONE_TEXT, Message
from vchats.models.social import FriendRequest
from vchats.services.channels import MESSAGE_RECEIVED, MESSAGE_UPDATED, MESSAGES_SEEN

ALICE = "alice"
BOB = "bob"
CAROL = "carol"


def befriend(client, sender: str, receiver: str) -> dict:
    response = client.post("/friends/requests", json={"receiver_id": receiver}, headers=as_user(sender))
    request = response.json()
    client.post(f"/friends/requests/{request['id']}/accept", headers=as_user(receiver))
    return request


def send(client, sender: str, receiver: str, content: str = "hello"):
    return client.post(
        f"/conversations/{receiver}/messages",
        json={"content": content},
        headers=as_user(sender),
    )


@pytest.fixture
def friends(client):
    befriend(client, ALICE, BOB)
    return client


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_liveness_always_returns_ok(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_readiness_returns_ok_when_configured(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["checks"]["database"] == "ok"
        assert data["checks"]["vapid_keys"] == "ok"

    def test_readiness_fails_without_vapid_keys(self, app, client, test_settings):
        unconfigured = test_settings.model_copy(update={"vapid_private_key": None})
        app.dependency_overrides[get_settings] = lambda: unconfigured

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["vapid_keys"] == "not configured"


class TestIdentity:
    def test_requests_without_user_id_are_rejected(self, client):
        response = client.get("/conversations/latest")
        assert response.status_code == 401
        assert response.json()["detail"] == "missing user identity"


class TestFriendRequests:
    def test_request_accept_flow(self, client):
        response = client.post("/friends/requests", json={"receiver_id": BOB}, headers=as_user(ALICE))
        assert response.status_code == 201
        request = response.json()
        assert request["status"] == "pending"

        pending = client.get("/friends/requests/pending", headers=as_user(BOB)).json()["data"]
        assert [item["id"] for item in pending] == [request["id"]]

        response = client.post(f"/friends/requests/{request['id']}/accept", headers=as_user(BOB))
        assert response.status_code == 200
        assert response.json()["status"] == "accepted"

        status = client.get(f"/friends/status/{ALICE}", headers=as_user(BOB)).json()
        assert status["status"] == "accepted"
        assert status["can_message"] is True

    def test_duplicate_request_returns_existing(self, client):
        first = client.post("/friends/requests", json={"receiver_id": BOB}, headers=as_user(ALICE)).json()
        reverse = client.post("/friends/requests", json={"receiver_id": ALICE}, headers=as_user(BOB)).json()
        assert reverse["id"] == first["id"]

    def test_opposite_requests_cannot_both_be_stored(self, db):
        db.add(FriendRequest(sender_id=ALICE, receiver_id=BOB))
        db.commit()

        db.add(FriendRequest(sender_id=BOB, receiver_id=ALICE))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

        assert db.query(FriendRequest).count() == 1

    def test_double_accept_is_absorbed(self, client):
        request = befriend(client, ALICE, BOB)
        response = client.post(f"/friends/requests/{request['id']}/accept", headers=as_user(BOB))
        assert response.status_code == 200
        assert response.json()["status"] == "accepted"

    def test_only_receiver_can_accept(self, client):
        request = client.post("/friends/requests", json={"receiver_id": BOB}, headers=as_user(ALICE)).json()
        response = client.post(f"/friends/requests/{request['id']}/accept", headers=as_user(ALICE))
        assert response.status_code == 403
        assert response.json()["error_code"] == "PERMISSION_DENIED"

    def test_request_to_self_is_invalid(self, client):
        response = client.post("/friends/requests", json={"receiver_id": ALICE}, headers=as_user(ALICE))
        assert response.status_code == 422

    def test_unknown_request_is_404(self, client):
        response = client.post("/friends/requests/missing/accept", headers=as_user(BOB))
        assert response.status_code == 404

    def test_friend_list_hides_hidden_contacts(self, friends):
        listed = friends.get("/friends", headers=as_user(ALICE)).json()["data"]
        assert [profile["id"] for profile in listed] == [BOB]

        friends.put(f"/contacts/{BOB}/hidden", headers=as_user(ALICE))
        assert friends.get("/friends", headers=as_user(ALICE)).json()["data"] == []

        # Sending a message brings the contact back.
        send(friends, ALICE, BOB)
        listed = friends.get("/friends", headers=as_user(ALICE)).json()["data"]
        assert [profile["id"] for profile in listed] == [BOB]


class TestProfiles:
    def test_upsert_and_read_profile(self, client):
        response = client.put(
            "/profiles/me",
            json={"email": "alice@example.com"},
            headers=as_user(ALICE),
        )
        assert response.status_code == 200
        assert response.json()["display_name"] == "alice"

        profile = client.get(f"/profiles/{ALICE}").json()
        assert profile["email"] == "alice@example.com"

    def test_unknown_profile_is_404(self, client):
        assert client.get("/profiles/ghost").status_code == 404


class TestSendMessage:
    def test_send_between_friends(self, friends, app):
        received = []
        app.state.broadcast.on(MESSAGE_RECEIVED, received.append)

        response = send(friends, ALICE, BOB, "hi bob")

        assert response.status_code == 201
        data = response.json()
        assert data["content"] == "hi bob"
        assert data["delivery_state"] == "sent"
        assert received[0]["id"] == data["id"]
        assert received[0]["sender_name"] == "Someone"

    def test_pending_friendship_is_rejected_with_draft(self, client, db):
        client.post("/friends/requests", json={"receiver_id": BOB}, headers=as_user(ALICE))

        response = send(client, ALICE, BOB, "keep me")

        assert response.status_code == 403
        body = response.json()
        assert body["detail"] == "Cannot send message: users must be friends and not blocked"
        assert body["details"]["draft"]["content"] == "keep me"
        assert db.query(Message).count() == 0

    def test_blocked_users_cannot_message(self, friends):
        friends.put(f"/blocks/{ALICE}", headers=as_user(BOB))

        assert send(friends, ALICE, BOB).status_code == 403
        assert friends.get(f"/conversations/{BOB}/messages", headers=as_user(ALICE)).json()["data"] == []

        status = friends.get(f"/friends/status/{BOB}", headers=as_user(ALICE)).json()
        assert status["blocked_by"] is True
        assert status["can_message"] is False

        friends.delete(f"/blocks/{ALICE}", headers=as_user(BOB))
        assert send(friends, ALICE, BOB).status_code == 201

    def test_image_requires_url(self, friends):
        response = friends.post(
            f"/conversations/{BOB}/messages",
            json={"kind": "image"},
            headers=as_user(ALICE),
        )
        assert response.status_code == 422

    def test_push_is_sent_to_offline_receiver(self, friends, transport):
        friends.post(
            "/api/push/subscribe",
            json={"subscription": {"endpoint": "https://push.example.com/b", "keys": {"p256dh": "k", "auth": "a"}}},
            headers=as_user(BOB),
        )

        send(friends, ALICE, BOB, "are you there?")

        assert len(transport.sent) == 1
        assert "are you there?" in transport.sent[0][1]


class TestConversation:
    def test_fetch_orders_and_marks_delivered(self, friends):
        first = send(friends, ALICE, BOB, "one").json()
        second = send(friends, BOB, ALICE, "two").json()

        data = friends.get(f"/conversations/{ALICE}/messages", headers=as_user(BOB)).json()

        assert data["total"] == 2
        assert [message["id"] for message in data["data"]] == [first["id"], second["id"]]
        assert data["data"][0]["delivery_state"] == "delivered"
        assert data["data"][1]["delivery_state"] == "sent"

    def test_not_friends_get_empty_history(self, client):
        response = client.get(f"/conversations/{CAROL}/messages", headers=as_user(ALICE))
        assert response.status_code == 200
        assert response.json() == {"data": [], "total": 0}

    def test_mark_seen_and_unread(self, friends, app):
        seen_events = []
        app.state.broadcast.on(MESSAGES_SEEN, seen_events.append)
        send(friends, ALICE, BOB, "one")
        send(friends, ALICE, BOB, "two")

        assert friends.get(f"/conversations/{ALICE}/unread", headers=as_user(BOB)).json()["count"] == 2

        response = friends.post(f"/conversations/{ALICE}/seen", json={}, headers=as_user(BOB))

        assert len(response.json()["message_ids"]) == 2
        assert seen_events[0]["seen_by"] == BOB
        assert seen_events[0]["sender_id"] == ALICE
        assert friends.get(f"/conversations/{ALICE}/unread", headers=as_user(BOB)).json()["count"] == 0

        # Already seen: nothing moves, nothing is announced again.
        response = friends.post(f"/conversations/{ALICE}/seen", json={}, headers=as_user(BOB))
        assert response.json()["message_ids"] == []
        assert len(seen_events) == 1

    def test_sender_cannot_mark_own_messages_seen(self, friends):
        message = send(friends, ALICE, BOB).json()
        response = friends.post(
            f"/conversations/{BOB}/seen", json={"message_ids": [message["id"]]}, headers=as_user(ALICE)
        )
        assert response.json()["message_ids"] == []

    def test_latest_messages_previews(self, friends):
        befriend(friends, CAROL, ALICE)
        send(friends, ALICE, BOB, "old")
        send(friends, BOB, ALICE, "x" * 60)
        send(friends, CAROL, ALICE, "hey alice")

        data = friends.get("/conversations/latest", headers=as_user(ALICE)).json()["data"]
        previews = {item["peer_id"]: item["preview"] for item in data}

        assert previews[BOB] == "x" * 40 + "..."
        assert previews[CAROL] == "hey alice"

    def test_delete_chat_removes_everything(self, friends, db):
        send(friends, ALICE, BOB)
        send(friends, BOB, ALICE)

        response = friends.delete(f"/conversations/{BOB}", headers=as_user(ALICE))

        assert response.status_code == 200
        assert db.query(Message).count() == 0


class TestMessageActions:
    def test_delete_for_everyone_tombstones(self, friends, app):
        updates = []
        app.state.broadcast.on(MESSAGE_UPDATED, updates.append)
        message = send(friends, ALICE, BOB, "oops").json()

        response = friends.delete(f"/messages/{message['id']}?scope=everyone", headers=as_user(ALICE))
        assert response.status_code == 200

        data = friends.get(f"/conversations/{ALICE}/messages", headers=as_user(BOB)).json()["data"]
        assert data[0]["deleted_for_everyone"] is True
        assert data[0]["content"] == TOMBSTONE_TEXT
        assert updates[0]["deleted_for_everyone"] is True

    def test_only_sender_deletes_for_everyone(self, friends):
        message = send(friends, ALICE, BOB).json()
        response = friends.delete(f"/messages/{message['id']}?scope=everyone", headers=as_user(BOB))
        assert response.status_code == 403

    def test_delete_for_self_hides_only_for_caller(self, friends):
        message = send(friends, ALICE, BOB).json()

        friends.delete(f"/messages/{message['id']}?scope=self", headers=as_user(BOB))
        friends.delete(f"/messages/{message['id']}?scope=self", headers=as_user(BOB))

        assert friends.get(f"/conversations/{ALICE}/messages", headers=as_user(BOB)).json()["total"] == 0
        assert friends.get(f"/conversations/{BOB}/messages", headers=as_user(ALICE)).json()["total"] == 1

    def test_outsider_cannot_delete(self, friends):
        message = send(friends, ALICE, BOB).json()
        response = friends.delete(f"/messages/{message['id']}", headers=as_user(CAROL))
        assert response.status_code == 403

    def test_delete_unknown_message(self, friends):
        assert friends.delete("/messages/missing", headers=as_user(ALICE)).status_code == 404

    def test_reactions_last_write_wins_per_user(self, friends):
        message = send(friends, ALICE, BOB).json()

        friends.put(f"/messages/{message['id']}/reactions", json={"emoji": "👍"}, headers=as_user(BOB))
        friends.put(f"/messages/{message['id']}/reactions", json={"emoji": "🔥"}, headers=as_user(ALICE))
        response = friends.put(f"/messages/{message['id']}/reactions", json={"emoji": "❤️"}, headers=as_user(BOB))

        assert response.json()["reactions"] == {BOB: "❤️", ALICE: "🔥"}

    def test_tombstone_freezes_reactions(self, friends):
        message = send(friends, ALICE, BOB).json()
        friends.delete(f"/messages/{message['id']}?scope=everyone", headers=as_user(ALICE))

        response = friends.put(f"/messages/{message['id']}/reactions", json={"emoji": "👍"}, headers=as_user(BOB))

        assert response.json()["reactions"] == {}


class TestRealtime:
    def test_open_chat_sends_snapshot(self, friends):
        message = send(friends, ALICE, BOB, "before you connected").json()

        with friends.websocket_connect(f"/ws/{BOB}") as websocket:
            websocket.send_json({"type": "open_chat", "peer_id": ALICE})
            frame = websocket.receive_json()

        assert frame["type"] == "snapshot"
        assert frame["peer_id"] == ALICE
        assert frame["can_message"] is True
        assert [item["id"] for item in frame["messages"]] == [message["id"]]
        assert frame["messages"][0]["delivery_state"] == "delivered"

    def test_unknown_command_is_reported(self, client):
        with client.websocket_connect(f"/ws/{ALICE}") as websocket:
            websocket.send_json({"type": "dance"})
            frame = websocket.receive_json()

        assert frame["type"] == "error"
        assert "dance" in frame["detail"]

    def test_notification_click_without_window_opens_deep_link(self, client):
        with client.websocket_connect(f"/ws/{ALICE}") as websocket:
            websocket.send_json({"type": "notification_click", "action": "reply", "data": {"userId": BOB}})
            opened = websocket.receive_json()
            outcome = websocket.receive_json()

        assert opened["type"] == "OPEN_WINDOW"
        assert "reply=true" in opened["url"]
        assert outcome["type"] == "click"
        assert outcome["outcome"]["openedUrl"] == opened["url"]

    def test_connected_receiver_is_notified_over_websocket_only(self, friends, transport):
        friends.post(
            "/api/push/subscribe",
            json={"subscription": {"endpoint": "https://push.example.com/b", "keys": {"p256dh": "k", "auth": "a"}}},
            headers=as_user(BOB),
        )

        with friends.websocket_connect(f"/ws/{BOB}") as websocket:
            websocket.send_json({"type": "focus", "visibilityState": "hidden", "hasFocus": False})
            websocket.send_json({"type": "ping"})
            assert websocket.receive_json()["type"] == "error"

            send(friends, ALICE, BOB, "one message")
            frame = websocket.receive_json()

        assert frame["type"] == "notification"
        assert transport.sent == []
