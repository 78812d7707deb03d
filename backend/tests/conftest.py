"""Shared test fixtures and fakes for the marketchat test suite.

The client core talks to two servers: the real-time socket (driven here by
``FakeServer`` through in-memory ``FakeTransport`` objects) and the history
API (served by ``FakeHistoryApi`` through ``httpx.MockTransport``). Neither
needs a network.
"""
import asyncio
import json
import time
from typing import Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from marketchat.chat.schemas import Message, Participants, SenderRole
from marketchat.chat.session import ChatSession
from marketchat.chat.transport import Transport, TransportClosed, TransportError, TransportRejected
from marketchat.config import (
    AppSettings,
    ConnectionSettings,
    HistorySettings,
    RoomSettings,
    Secrets,
)

_DROP = object()


# =============================================================================
# Fake real-time server
# =============================================================================


class FakeTransport(Transport):
    """In-memory transport whose peer is a FakeServer."""

    def __init__(self, server: "FakeServer") -> None:
        self.server = server
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.credential: Optional[str] = None
        self.closed = False

    async def open(self, url: str, credential: str, timeout: float) -> None:
        self.server.opens += 1
        self.credential = credential
        if self.server.reject_credentials:
            raise TransportRejected(401)
        if self.server.fail_opens > 0:
            self.server.fail_opens -= 1
            raise TransportError("connection refused")
        if self.server.unauthorized_frame:
            self.inbox.put_nowait({"type": "error", "code": "unauthorized", "message": "bad token"})
        else:
            self.inbox.put_nowait({
                "type": "connected", "userId": self.server.user_id, "role": self.server.role,
            })

    async def send(self, payload: dict) -> None:
        if self.closed or self.server.fail_sends:
            raise TransportClosed("broken pipe")
        self.server.handle(self, payload)

    async def receive(self) -> dict:
        if self.closed:
            raise TransportClosed("closed")
        item = await self.inbox.get()
        if item is _DROP:
            self.closed = True
            raise TransportClosed("connection lost", code=1006)
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(_DROP)


class FakeServer:
    """Scriptable chat server: acks joins and confirms sends by default."""

    def __init__(self, user_id: str = "u-req", role: str = "requester") -> None:
        self.user_id = user_id
        self.role = role
        self.reject_credentials = False
        self.unauthorized_frame = False
        self.fail_opens = 0
        self.fail_sends = False
        self.auto_ack_joins = True
        self.auto_confirm = True
        self.refused_rooms: set = set()
        self.sent: List[dict] = []
        self.transports: List[FakeTransport] = []
        self.opens = 0
        self._next_id = 0

    def factory(self) -> FakeTransport:
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport

    @property
    def active(self) -> FakeTransport:
        return self.transports[-1]

    def frames(self, frame_type: str) -> List[dict]:
        return [f for f in self.sent if f.get("type") == frame_type]

    def push(self, frame: dict) -> None:
        """Deliver a server frame on the current connection."""
        self.active.inbox.put_nowait(frame)

    def drop(self) -> None:
        """Simulate the transport being lost."""
        self.active.inbox.put_nowait(_DROP)

    def message_frame(
        self,
        conversation_id: str,
        content: str,
        sender_id: str = "u-prov",
        sender_role: str = "provider",
        correlation_id: Optional[str] = None,
        created_at: Optional[float] = None,
        message_id: Optional[str] = None,
    ) -> dict:
        self._next_id += 1
        return {
            "type": "message",
            "message": {
                "id": message_id or f"m-{self._next_id}",
                "conversationId": conversation_id,
                "senderRole": sender_role,
                "senderId": sender_id,
                "content": content,
                "type": "text",
                "createdAt": created_at if created_at is not None else time.time(),
                "correlationId": correlation_id,
            },
        }

    def handle(self, transport: FakeTransport, payload: dict) -> None:
        # Round-trip through JSON like a real socket would
        payload = json.loads(json.dumps(payload))
        self.sent.append(payload)
        kind = payload.get("type")
        if kind == "join" and self.auto_ack_joins:
            conversation_id = payload["conversationId"]
            if conversation_id in self.refused_rooms:
                transport.inbox.put_nowait({
                    "type": "error", "code": "join_failed",
                    "message": "not a participant", "conversationId": conversation_id,
                })
            else:
                transport.inbox.put_nowait({"type": "joined", "conversationId": conversation_id})
        elif kind == "send" and self.auto_confirm:
            transport.inbox.put_nowait(self.message_frame(
                payload["conversationId"],
                payload["content"],
                sender_id=self.user_id,
                sender_role=self.role,
                correlation_id=payload["correlationId"],
            ))


# =============================================================================
# Fake history API
# =============================================================================


class FakeHistoryApi:
    """History/conversation API served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.messages: Dict[str, List[Message]] = {}
        self.conversations: Dict[str, dict] = {}
        self.requests: List[httpx.Request] = []
        self.fail_status: Optional[int] = None
        self.gate: Optional[asyncio.Event] = None
        self._created = 0

    @property
    def history_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/messages")]

    def seed(self, conversation_id: str, *messages: Message) -> None:
        stored = self.messages.setdefault(conversation_id, [])
        stored.extend(messages)
        stored.sort(key=lambda m: m.createdAt)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"detail": "unavailable"})

        path = request.url.path
        if request.method == "GET" and path == "/chats":
            return httpx.Response(200, json=list(self.conversations.values()))
        if request.method == "POST" and path == "/chats":
            self._created += 1
            body = json.loads(request.content)
            summary = {"id": f"c-{self._created}", **body}
            self.conversations[summary["id"]] = summary
            return httpx.Response(201, json=summary)
        if request.method == "GET" and path.startswith("/chat/") and path.endswith("/messages"):
            conversation_id = path[len("/chat/"):-len("/messages")]
            return httpx.Response(200, json=self._page(conversation_id, request.url.params))
        return httpx.Response(404, json={"detail": "not found"})

    def _page(self, conversation_id: str, params) -> dict:
        limit = int(params.get("limit", 50))
        messages = self.messages.get(conversation_id, [])
        if "cursor" in params:
            cursor = float(params["cursor"])
            messages = [m for m in messages if m.createdAt < cursor]
        page = messages[-limit:]
        more = len(messages) > len(page)
        return {
            "messages": [m.to_wire() for m in page],
            "nextCursor": page[0].createdAt if page and more else None,
        }


# =============================================================================
# Helpers
# =============================================================================


def make_message(
    message_id: str,
    conversation_id: str,
    created_at: float,
    content: str = "hello",
    sender_id: str = "u-prov",
    sender_role: SenderRole = SenderRole.PROVIDER,
    correlation_id: Optional[str] = None,
) -> Message:
    return Message(
        id=message_id,
        conversationId=conversation_id,
        senderRole=sender_role,
        senderId=sender_id,
        content=content,
        createdAt=created_at,
        correlationId=correlation_id,
    )


def make_participants(**overrides) -> Participants:
    fields = dict(
        requesterId="u-req", requesterName="Rita",
        providerId="u-prov", providerName="Paul",
    )
    fields.update(overrides)
    return Participants(**fields)


async def settle(rounds: int = 25) -> None:
    """Let background tasks (read loop, sends, listeners) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(
        connection=ConnectionSettings(
            url="ws://chat.test/ws/chat",
            connect_timeout_seconds=1.0,
            max_reconnect_attempts=3,
            backoff_jitter=0.0,
        ),
        rooms=RoomSettings(join_timeout_seconds=0.2),
        history=HistorySettings(base_url="http://history.test", timeout_seconds=1.0, page_size=50),
        secrets=Secrets(access_token="token-req"),
    )


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def history_api() -> FakeHistoryApi:
    return FakeHistoryApi()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)
        await asyncio.sleep(0)
    return _sleep


@pytest.fixture
def make_session(settings, server, history_api, fake_sleep):
    def _make(**overrides) -> ChatSession:
        kwargs = dict(
            user_id="u-req",
            role=SenderRole.REQUESTER,
            transport_factory=server.factory,
            history_transport=history_api.transport(),
            sleep=fake_sleep,
        )
        kwargs.update(overrides)
        return ChatSession(settings, **kwargs)
    return _make


@pytest_asyncio.fixture
async def session(make_session):
    """A started session for user u-req (requester)."""
    chat = make_session()
    await chat.start()
    yield chat
    await chat.stop()


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until true, failing the test after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)
