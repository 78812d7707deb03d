"""Tests for the reference gateway: WebSocket protocol and history endpoints.

Users are configured by bearer token; every socket receives a
``connected`` frame carrying the user id and role the gateway assigned.
"""
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import marketchat.config as config_module
from marketchat.config import AppSettings, GatewaySettings, GatewayUser
from marketchat.gateway.registry import registry
from marketchat.main import app

from conftest import make_message, make_participants

REQUESTER = {"Authorization": "Bearer token-req"}
PROVIDER = {"Authorization": "Bearer token-prov"}
OUTSIDER = {"Authorization": "Bearer token-out"}


@pytest.fixture(scope="module")
def client():
    """One client for the module so every socket shares the same event loop portal."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture(autouse=True)
def gateway_config():
    """Configure gateway users and reset all room state between tests."""
    config_module._config = AppSettings(gateway=GatewaySettings(
        max_page_size=3,
        users={
            "token-req": GatewayUser(id="u-req", name="Rita", role="requester"),
            "token-prov": GatewayUser(id="u-prov", name="Paul", role="provider"),
            "token-out": GatewayUser(id="u-out", name="Otto", role="provider"),
        },
    ))
    registry.clear()
    yield
    registry.clear()
    config_module.reset_config()


@pytest.fixture
def conversation():
    return registry.create_conversation(make_participants(), conversation_id="c-1")


def receive_connected(ws, user_id):
    connected = ws.receive_json()
    assert connected["type"] == "connected"
    assert connected["userId"] == user_id
    return connected


def join(ws, conversation_id="c-1"):
    ws.send_json({"type": "join", "conversationId": conversation_id})
    joined = ws.receive_json()
    assert joined == {"type": "joined", "conversationId": conversation_id}


class TestWebSocketAuth:
    def test_connected_frame_carries_identity(self, client):
        with client.websocket_connect("/ws/chat", headers=dict(REQUESTER)) as ws:
            connected = receive_connected(ws, "u-req")
            assert connected["role"] == "requester"

    def test_token_query_parameter(self, client):
        with client.websocket_connect("/ws/chat?token=token-prov") as ws:
            receive_connected(ws, "u-prov")

    def test_invalid_token_rejected(self, client):
        with client.websocket_connect(
            "/ws/chat", headers={"Authorization": "Bearer nope"}
        ) as ws:
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["code"] == "unauthorized"
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == 4401


class TestWebSocketRooms:
    def test_member_joins(self, client, conversation):
        with client.websocket_connect("/ws/chat", headers=dict(REQUESTER)) as ws:
            receive_connected(ws, "u-req")
            join(ws)
            assert registry.get_room_size("c-1") == 1

    def test_non_member_refused(self, client, conversation):
        with client.websocket_connect("/ws/chat", headers=dict(OUTSIDER)) as ws:
            receive_connected(ws, "u-out")
            ws.send_json({"type": "join", "conversationId": "c-1"})
            error = ws.receive_json()
            assert error["code"] == "join_failed"
            assert error["conversationId"] == "c-1"

    def test_two_clients_exchange_messages(self, client, conversation):
        with client.websocket_connect("/ws/chat", headers=dict(REQUESTER)) as ws1, \
             client.websocket_connect("/ws/chat", headers=dict(PROVIDER)) as ws2:
            receive_connected(ws1, "u-req")
            receive_connected(ws2, "u-prov")
            join(ws1)
            join(ws2)

            presence = ws1.receive_json()
            assert presence == {
                "type": "presence", "conversationId": "c-1", "userId": "u-prov", "online": True,
            }

            ws1.send_json({
                "type": "send", "conversationId": "c-1",
                "content": " Hello ", "correlationId": "corr-1",
            })
            echo = ws1.receive_json()
            delivered = ws2.receive_json()

            assert echo == delivered
            assert echo["type"] == "message"
            message = echo["message"]
            assert message["content"] == "Hello"
            assert message["senderId"] == "u-req"
            assert message["senderRole"] == "requester"
            assert message["correlationId"] == "corr-1"
            assert "status" not in message

    def test_resend_is_deduplicated(self, client, conversation):
        with client.websocket_connect("/ws/chat", headers=dict(REQUESTER)) as ws:
            receive_connected(ws, "u-req")
            join(ws)
            frame = {
                "type": "send", "conversationId": "c-1",
                "content": "once", "correlationId": "corr-1",
            }

            ws.send_json(frame)
            first = ws.receive_json()
            ws.send_json(frame)
            second = ws.receive_json()

            assert first["message"]["id"] == second["message"]["id"]
            assert registry.get_message_count("c-1") == 1

    def test_send_without_join_rejected(self, client, conversation):
        with client.websocket_connect("/ws/chat", headers=dict(REQUESTER)) as ws:
            receive_connected(ws, "u-req")
            ws.send_json({
                "type": "send", "conversationId": "c-1",
                "content": "hi", "correlationId": "corr-9",
            })
            error = ws.receive_json()
            assert error["code"] == "send_failed"
            assert error["correlationId"] == "corr-9"

    def test_empty_content_rejected(self, client, conversation):
        with client.websocket_connect("/ws/chat", headers=dict(REQUESTER)) as ws:
            receive_connected(ws, "u-req")
            join(ws)
            ws.send_json({
                "type": "send", "conversationId": "c-1",
                "content": "   ", "correlationId": "corr-2",
            })
            error = ws.receive_json()
            assert error["code"] == "send_failed"
            assert registry.get_message_count("c-1") == 0

    def test_invalid_frame(self, client):
        with client.websocket_connect("/ws/chat", headers=dict(REQUESTER)) as ws:
            receive_connected(ws, "u-req")
            ws.send_json({"type": "dance"})
            error = ws.receive_json()
            assert error["code"] == "invalid_event"

    def test_typing_excludes_sender_and_read_receipt_broadcast(self, client, conversation):
        with client.websocket_connect("/ws/chat", headers=dict(REQUESTER)) as ws1, \
             client.websocket_connect("/ws/chat", headers=dict(PROVIDER)) as ws2:
            receive_connected(ws1, "u-req")
            receive_connected(ws2, "u-prov")
            join(ws1)
            join(ws2)
            ws1.receive_json()  # presence of u-prov

            ws2.send_json({"type": "typing", "conversationId": "c-1", "isTyping": True})
            typing = ws1.receive_json()
            assert typing == {
                "type": "typing", "conversationId": "c-1", "userId": "u-prov", "isTyping": True,
            }

            ws2.send_json({"type": "mark_read", "conversationId": "c-1"})
            receipt1 = ws1.receive_json()
            receipt2 = ws2.receive_json()
            assert receipt1["type"] == receipt2["type"] == "read_receipt"
            assert receipt1["userId"] == "u-prov"
            assert "u-prov" in registry.read_by["c-1"]

    def test_disconnect_broadcasts_offline(self, client, conversation):
        with client.websocket_connect("/ws/chat", headers=dict(REQUESTER)) as ws1:
            receive_connected(ws1, "u-req")
            join(ws1)
            with client.websocket_connect("/ws/chat", headers=dict(PROVIDER)) as ws2:
                receive_connected(ws2, "u-prov")
                join(ws2)
                assert ws1.receive_json()["online"] is True

            offline = ws1.receive_json()
            assert offline == {
                "type": "presence", "conversationId": "c-1", "userId": "u-prov", "online": False,
            }


class TestHistoryEndpoints:
    def _seed(self, count):
        for i in range(count):
            registry.add_message(make_message(f"m-{i}", "c-1", 10.0 * (i + 1)))

    def test_requires_token(self, client, conversation):
        response = client.get("/chat/c-1/messages")
        assert response.status_code == 401

    def test_non_member_forbidden(self, client, conversation):
        response = client.get("/chat/c-1/messages", headers=dict(OUTSIDER))
        assert response.status_code == 403

    def test_unknown_conversation(self, client):
        response = client.get("/chat/c-404/messages", headers=dict(REQUESTER))
        assert response.status_code == 404

    def test_pagination_with_cursor(self, client, conversation):
        self._seed(5)

        first = client.get("/chat/c-1/messages", params={"limit": 50}, headers=dict(REQUESTER)).json()
        assert [m["id"] for m in first["messages"]] == ["m-2", "m-3", "m-4"]
        assert first["nextCursor"] == 30.0

        older = client.get(
            "/chat/c-1/messages", params={"cursor": first["nextCursor"]}, headers=dict(REQUESTER)
        ).json()
        assert [m["id"] for m in older["messages"]] == ["m-0", "m-1"]
        assert older["nextCursor"] is None

    def test_list_only_own_conversations(self, client, conversation):
        registry.create_conversation(
            make_participants(requesterId="u-x", providerId="u-out"), conversation_id="c-2"
        )

        response = client.get("/chats", headers=dict(REQUESTER))

        assert response.status_code == 200
        assert [c["id"] for c in response.json()] == ["c-1"]

    def test_create_conversation(self, client):
        body = {"participants": make_participants().model_dump(), "linkedJobId": "job-7"}

        response = client.post("/chats", json=body, headers=dict(REQUESTER))

        assert response.status_code == 201
        created = response.json()
        assert created["linkedJobId"] == "job-7"
        assert registry.is_member(created["id"], "u-prov")

    def test_create_requires_caller_participation(self, client):
        body = {"participants": make_participants().model_dump()}

        response = client.post("/chats", json=body, headers=dict(OUTSIDER))

        assert response.status_code == 403

    def test_add_facilitator_announced(self, client, conversation):
        with client.websocket_connect("/ws/chat", headers=dict(PROVIDER)) as ws:
            receive_connected(ws, "u-prov")
            join(ws)

            response = client.post(
                "/chats/c-1/participants", json={"id": "u-fac", "name": "Fran"}, headers=dict(REQUESTER)
            )
            assert response.status_code == 200

            added = ws.receive_json()
            assert added["type"] == "participant_added"
            assert added["participant"] == {"id": "u-fac", "name": "Fran"}
            assert added["role"] == "facilitator"

        second = client.post(
            "/chats/c-1/participants", json={"id": "u-other"}, headers=dict(REQUESTER)
        )
        assert second.status_code == 409

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}
