import base64

import pytest
from sqlalchemy.exc import OperationalError
from starlette.websockets import WebSocketDisconnect

from conftest import auth_headers, create_user
from courier.models.message import TOMBSTONE, Message
from courier.models.user import User
from courier.services import gateway
from courier.services.identity import create_access_token, issue_tokens, revoke_refresh_token
from courier.services.presence import presence
from courier.services.websocket_manager import manager


def ws_url(user):
    return f"/ws?access_token={create_access_token(user)}"


def expect(ws, event_type):
    frame = ws.receive_json()
    assert frame["type"] == event_type, frame
    return frame


def open_session(ws):
    """Drain the frames every fresh first connection receives."""
    ready = expect(ws, "session:ready")
    expect(ws, "user:status")
    return ready["payload"]


def assert_quiet(ws):
    """Nothing is queued for this connection: the next frame is our pong."""
    ws.send_json({"type": "ping", "payload": {"sent_at_ms": 7}})
    pong = expect(ws, "pong")
    assert pong["payload"]["sent_at_ms"] == 7


def send_text(ws, receiver, content, **extra):
    ws.send_json({"type": "message:send", "receiver_id": receiver.user_id, "content": content, **extra})


def test_handshake_without_credentials_is_rejected(client):
    with client.websocket_connect("/ws") as ws:
        frame = expect(ws, "connect_error")
        assert frame["payload"]["code"] == "authentication_required"
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_json()
        assert exc_info.value.code == 4401

    assert manager.active_connections == {}
    assert presence.online_user_ids() == set()


def test_handshake_with_garbage_token_is_rejected(client, alice):
    with client.websocket_connect("/ws?access_token=not-a-token") as ws:
        expect(ws, "connect_error")
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()
    assert not presence.is_online(alice.user_id)


def test_handshake_for_deleted_account_is_rejected(client):
    ghost = User(user_id="10000099", username="ghost", role="user")
    token = create_access_token(ghost)
    with client.websocket_connect(f"/ws?access_token={token}") as ws:
        frame = expect(ws, "connect_error")
        assert frame["payload"]["code"] == "unknown_user"


def test_session_ready_and_presence_broadcast(client, db, alice, bob):
    with client.websocket_connect(ws_url(alice)) as ws_a:
        ready = expect(ws_a, "session:ready")
        assert ready["payload"]["user_id"] == alice.user_id
        assert ready["payload"]["role"] == "user"
        own_status = expect(ws_a, "user:status")
        assert own_status["payload"]["user_id"] == alice.user_id
        assert own_status["payload"]["is_online"] is True

        db.expire_all()
        assert db.query(User).filter(User.user_id == alice.user_id).one().is_online is True

        with client.websocket_connect(ws_url(bob)) as ws_b:
            open_session(ws_b)
            status = expect(ws_a, "user:status")
            assert status["payload"]["user_id"] == bob.user_id
            assert status["payload"]["is_online"] is True
            assert status["payload"]["last_seen"]


def test_second_tab_does_not_rebroadcast_and_both_tabs_receive(client, alice, bob):
    with client.websocket_connect(ws_url(alice)) as tab_one:
        open_session(tab_one)
        with client.websocket_connect(ws_url(alice)) as tab_two:
            expect(tab_two, "session:ready")
            assert len(manager.channel_members(alice.user_id)) == 2

            with client.websocket_connect(ws_url(bob)) as ws_b:
                open_session(ws_b)
                # The first frame after ready is bob coming online, not a second alice edge.
                for tab in (tab_one, tab_two):
                    status = expect(tab, "user:status")
                    assert status["payload"]["user_id"] == bob.user_id

                send_text(ws_b, alice, "both tabs")
                for tab in (tab_one, tab_two):
                    frame = expect(tab, "message:new")
                    assert frame["payload"]["content"] == "both tabs"
                expect(ws_b, "message:send_ack")


def test_live_delivery_ack_and_read_receipt(client, alice, bob):
    with client.websocket_connect(ws_url(alice)) as ws_a:
        open_session(ws_a)
        with client.websocket_connect(ws_url(bob)) as ws_b:
            open_session(ws_b)
            expect(ws_a, "user:status")

            send_text(ws_a, bob, "hello bob", temp_id="tmp-1", request_id="req-1")
            delivered = expect(ws_b, "message:new")
            assert delivered["payload"]["content"] == "hello bob"
            assert delivered["payload"]["sender_id"] == alice.user_id
            assert delivered["payload"]["conversation_id"] == "10000001_10000002"
            assert delivered["payload"]["is_read"] is False

            ack = expect(ws_a, "message:send_ack")
            assert ack["request_id"] == "req-1"
            assert ack["payload"]["success"] is True
            assert ack["payload"]["temp_id"] == "tmp-1"
            assert ack["payload"]["message"]["id"] == delivered["payload"]["id"]

            ws_b.send_json({"type": "message:read", "counterpart_id": alice.user_id})
            receipt = expect(ws_a, "message:read_receipt")
            assert receipt["payload"] == {
                "read_by": bob.user_id,
                "conversation_id": "10000001_10000002",
                "updated": 1,
            }

            response = client.get(f"/messages/conversation/{alice.user_id}", headers=auth_headers(bob))
            assert response.status_code == 200
            messages = response.json()["messages"]
            assert [m["content"] for m in messages] == ["hello bob"]
            assert messages[0]["is_read"] is True


def test_repeat_read_still_sends_receipt_with_zero_updates(client, alice, bob):
    with client.websocket_connect(ws_url(alice)) as ws_a:
        open_session(ws_a)
        with client.websocket_connect(ws_url(bob)) as ws_b:
            open_session(ws_b)
            expect(ws_a, "user:status")

            ws_b.send_json({"type": "message:read", "counterpart_id": alice.user_id})
            receipt = expect(ws_a, "message:read_receipt")
            assert receipt["payload"]["updated"] == 0


def test_send_to_offline_user_is_persisted_without_delivery(client, db, alice, bob):
    with client.websocket_connect(ws_url(alice)) as ws_a:
        open_session(ws_a)
        send_text(ws_a, bob, "see you later")
        ack = expect(ws_a, "message:send_ack")
        assert ack["payload"]["success"] is True

    stored = db.query(Message).all()
    assert len(stored) == 1
    assert stored[0].receiver_id == bob.user_id
    assert stored[0].is_read is False

    response = client.get(f"/messages/conversation/{alice.user_id}", headers=auth_headers(bob))
    assert [m["content"] for m in response.json()["messages"]] == ["see you later"]


def test_send_rejections_are_acked_to_sender_only(client, db, alice, bob):
    with client.websocket_connect(ws_url(alice)) as ws_a:
        open_session(ws_a)

        send_text(ws_a, alice, "talking to myself", request_id="self")
        ack = expect(ws_a, "message:send_ack")
        assert ack["request_id"] == "self"
        assert ack["payload"]["success"] is False
        assert ack["payload"]["error"]["code"] == "self_message"

        send_text(ws_a, bob, "   ")
        ack = expect(ws_a, "message:send_ack")
        assert ack["payload"]["error"]["code"] == "invalid_payload"

        ws_a.send_json({"type": "message:send", "receiver_id": "99999999", "content": "anyone?"})
        ack = expect(ws_a, "message:send_ack")
        assert ack["payload"]["error"]["code"] == "recipient_not_found"

        send_text(ws_a, bob, "x" * 5001)
        ack = expect(ws_a, "message:send_ack")
        assert ack["payload"]["error"]["code"] == "message_too_long"

    assert db.query(Message).count() == 0


def test_oversize_media_is_rejected_before_persistence(client, db, alice, bob):
    oversize = base64.b64encode(b"\0" * (1024 * 1024 + 1)).decode("ascii")
    with client.websocket_connect(ws_url(alice)) as ws_a:
        open_session(ws_a)
        ws_a.send_json(
            {
                "type": "message:send",
                "receiver_id": bob.user_id,
                "message_type": "image",
                "media": {"url": f"data:image/png;base64,{oversize}", "mime_type": "image/png"},
            }
        )
        ack = expect(ws_a, "message:send_ack")
        assert ack["payload"]["success"] is False
        assert ack["payload"]["error"]["code"] == "media_too_large"

    assert db.query(Message).count() == 0


def test_gif_message_is_delivered(client, alice, bob):
    with client.websocket_connect(ws_url(alice)) as ws_a:
        open_session(ws_a)
        with client.websocket_connect(ws_url(bob)) as ws_b:
            open_session(ws_b)
            expect(ws_a, "user:status")

            ws_a.send_json(
                {
                    "type": "message:send",
                    "receiver_id": bob.user_id,
                    "message_type": "gif",
                    "gif": {"url": "https://media.example/cat.gif", "title": "cat"},
                }
            )
            frame = expect(ws_b, "message:new")
            assert frame["payload"]["type"] == "gif"
            assert frame["payload"]["gif_url"] == "https://media.example/cat.gif"
            expect(ws_a, "message:send_ack")


def test_gif_message_keeps_its_caption(client, alice, bob):
    with client.websocket_connect(ws_url(alice)) as ws_a:
        open_session(ws_a)
        with client.websocket_connect(ws_url(bob)) as ws_b:
            open_session(ws_b)
            expect(ws_a, "user:status")

            ws_a.send_json(
                {
                    "type": "message:send",
                    "receiver_id": bob.user_id,
                    "message_type": "gif",
                    "content": "[GIF]",
                    "gif": {"url": "https://media.example/dog.gif"},
                }
            )
            frame = expect(ws_b, "message:new")
            assert frame["payload"]["content"] == "[GIF]"
            assert frame["payload"]["gif_url"] == "https://media.example/dog.gif"
            ack = expect(ws_a, "message:send_ack")
            assert ack["payload"]["success"] is True


def test_typing_is_relayed_to_counterpart(client, alice, bob):
    with client.websocket_connect(ws_url(alice)) as ws_a:
        open_session(ws_a)
        with client.websocket_connect(ws_url(bob)) as ws_b:
            open_session(ws_b)
            expect(ws_a, "user:status")

            ws_a.send_json({"type": "typing:start", "counterpart_id": bob.user_id})
            start = expect(ws_b, "typing:start")
            assert start["payload"] == {"user_id": alice.user_id}

            ws_a.send_json({"type": "typing:stop", "counterpart_id": bob.user_id})
            stop = expect(ws_b, "typing:stop")
            assert stop["payload"] == {"user_id": alice.user_id}

            assert_quiet(ws_a)


def test_delete_by_non_sender_is_forbidden_and_silent(client, db, alice, bob):
    with client.websocket_connect(ws_url(alice)) as ws_a:
        open_session(ws_a)
        with client.websocket_connect(ws_url(bob)) as ws_b:
            open_session(ws_b)
            expect(ws_a, "user:status")

            send_text(ws_a, bob, "mine")
            message_id = expect(ws_b, "message:new")["payload"]["id"]
            expect(ws_a, "message:send_ack")

            ws_b.send_json({"type": "message:delete", "message_id": message_id, "request_id": "del"})
            ack = expect(ws_b, "message:delete_ack")
            assert ack["request_id"] == "del"
            assert ack["payload"]["success"] is False
            assert ack["payload"]["error"]["code"] == "not_message_sender"

            assert_quiet(ws_a)

    stored = db.query(Message).filter(Message.id == message_id).one()
    assert stored.is_deleted is False
    assert stored.content == "mine"


def test_delete_notifies_counterpart_once(client, db, alice, bob):
    with client.websocket_connect(ws_url(alice)) as ws_a:
        open_session(ws_a)
        with client.websocket_connect(ws_url(bob)) as ws_b:
            open_session(ws_b)
            expect(ws_a, "user:status")

            send_text(ws_a, bob, "oops")
            message_id = expect(ws_b, "message:new")["payload"]["id"]
            expect(ws_a, "message:send_ack")

            ws_a.send_json({"type": "message:delete", "message_id": message_id})
            deleted = expect(ws_b, "message:deleted")
            assert deleted["payload"] == {"message_id": message_id, "conversation_id": "10000001_10000002"}
            ack = expect(ws_a, "message:delete_ack")
            assert ack["payload"] == {"success": True, "message_id": message_id}

            ws_a.send_json({"type": "message:delete", "message_id": message_id})
            ack = expect(ws_a, "message:delete_ack")
            assert ack["payload"]["success"] is True

            assert_quiet(ws_b)

    stored = db.query(Message).filter(Message.id == message_id).one()
    assert stored.is_deleted is True
    assert stored.content == TOMBSTONE


def test_delete_unknown_message(client, alice):
    with client.websocket_connect(ws_url(alice)) as ws_a:
        open_session(ws_a)
        ws_a.send_json({"type": "message:delete", "message_id": 4242})
        ack = expect(ws_a, "message:delete_ack")
        assert ack["payload"]["error"]["code"] == "message_not_found"

        ws_a.send_json({"type": "message:delete", "message_id": "abc"})
        ack = expect(ws_a, "message:delete_ack")
        assert ack["payload"]["error"]["code"] == "invalid_payload"


def test_unknown_event_and_bad_frames_get_scoped_errors(client, alice):
    with client.websocket_connect(ws_url(alice)) as ws_a:
        open_session(ws_a)

        ws_a.send_json({"type": "message:edit", "request_id": "r9"})
        error = expect(ws_a, "error")
        assert error["request_id"] == "r9"
        assert error["payload"]["code"] == "unknown_event"

        ws_a.send_text("{not json")
        error = expect(ws_a, "error")
        assert error["payload"]["code"] == "invalid_json"

        ws_a.send_json(["not", "an", "object"])
        error = expect(ws_a, "error")
        assert error["payload"]["code"] == "invalid_frame"

        ws_a.send_json({"type": "message:read"})
        error = expect(ws_a, "error")
        assert error["payload"]["event"] == "message:read"
        assert error["payload"]["code"] == "invalid_payload"

        # The connection is still usable after every failure.
        assert_quiet(ws_a)


def test_refresh_token_handshake_and_revocation(client, db, alice):
    _, refresh_token = issue_tokens(db, alice)

    with client.websocket_connect(f"/ws?refresh_token={refresh_token}") as ws:
        ready = open_session(ws)
        assert ready["user_id"] == alice.user_id

    revoke_refresh_token(db, alice.user_id, refresh_token)

    with client.websocket_connect(f"/ws?refresh_token={refresh_token}") as ws:
        frame = expect(ws, "connect_error")
        assert frame["payload"]["code"] == "authentication_required"


def test_handshake_reports_database_outage(client, db, alice, monkeypatch):
    _, refresh_token = issue_tokens(db, alice)

    def unavailable(session, token):
        raise OperationalError("SELECT refresh_tokens", {}, Exception("database is locked"))

    monkeypatch.setattr(gateway, "resolve_by_refresh", unavailable)

    with client.websocket_connect(f"/ws?refresh_token={refresh_token}") as ws:
        frame = expect(ws, "connect_error")
        assert frame["payload"]["code"] == "unavailable"
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_json()
        assert exc_info.value.code == 1013

    assert manager.active_connections == {}


def test_handshake_role_comes_from_stored_user(client, db):
    admin = create_user(db, "10000007", "root", role="admin")
    with client.websocket_connect(ws_url(admin)) as ws:
        assert open_session(ws)["role"] == "admin"
