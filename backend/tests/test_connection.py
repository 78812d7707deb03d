"""Tests for the session-wide ConnectionManager.

Covers authentication, idempotent connect, bounded reconnection with capped
exponential backoff, and status delivery to subscribers.
"""
import asyncio

import pytest

from marketchat.chat.connection import ConnectionManager, ConnectionState, backoff_delay
from marketchat.chat.events import EventDispatcher
from marketchat.chat.schemas import JoinedEvent, JoinEvent
from marketchat.errors import AuthError, ConnectivityError

from conftest import settle, wait_until


@pytest.fixture
def dispatcher():
    return EventDispatcher()


@pytest.fixture
def manager(settings, server, dispatcher, fake_sleep):
    return ConnectionManager(
        settings.connection, dispatcher, transport_factory=server.factory, sleep=fake_sleep
    )


@pytest.fixture
def changes(manager):
    recorded = []
    manager.subscribe(recorded.append)
    return recorded


class TestBackoffDelay:
    def test_doubles_from_base(self):
        assert backoff_delay(0, 1.0, 5.0, 0.0) == 1.0
        assert backoff_delay(1, 1.0, 5.0, 0.0) == 2.0
        assert backoff_delay(2, 1.0, 5.0, 0.0) == 4.0

    def test_capped_at_max(self):
        assert backoff_delay(3, 1.0, 5.0, 0.0) == 5.0
        assert backoff_delay(10, 1.0, 5.0, 0.0) == 5.0

    def test_jitter_bounded(self):
        for _ in range(50):
            delay = backoff_delay(5, 1.0, 5.0, 0.1)
            assert 5.0 <= delay <= 5.5


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_success(self, manager, server, changes):
        await manager.connect("token-req")

        assert manager.state == ConnectionState.CONNECTED
        assert manager.is_connected
        assert manager.user_id == "u-req"
        assert server.active.credential == "token-req"
        assert [c.current for c in changes] == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_missing_credential_never_opens(self, manager, server):
        with pytest.raises(AuthError):
            await manager.connect("")
        with pytest.raises(AuthError):
            await manager.connect(None)
        assert server.opens == 0
        assert manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_rejected_credential_is_terminal(self, manager, server, changes, sleeps):
        server.reject_credentials = True

        with pytest.raises(AuthError):
            await manager.connect("expired")

        assert server.opens == 1
        assert sleeps == []
        assert manager.state == ConnectionState.DISCONNECTED
        assert isinstance(changes[-1].error, AuthError)

    @pytest.mark.asyncio
    async def test_unauthorized_frame_is_auth_error(self, manager, server):
        server.unauthorized_frame = True

        with pytest.raises(AuthError, match="bad token"):
            await manager.connect("token-req")
        assert server.opens == 1
        assert server.active.closed

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, manager, server):
        await manager.connect("token-req")
        await manager.connect("token-req")

        assert server.opens == 1
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_concurrent_connect_shares_one_attempt(self, manager, server):
        await asyncio.gather(manager.connect("token-req"), manager.connect("token-req"))

        assert server.opens == 1
        assert manager.is_connected
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_initial_connect_retries_transient_failures(self, manager, server, sleeps):
        server.fail_opens = 2

        await manager.connect("token-req")

        assert manager.is_connected
        assert server.opens == 3
        assert sleeps == [1.0, 2.0]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_initial_connect_gives_up(self, manager, server, changes):
        server.fail_opens = 100

        with pytest.raises(ConnectivityError) as exc_info:
            await manager.connect("token-req")

        # One immediate attempt plus max_reconnect_attempts retries
        assert server.opens == 4
        assert exc_info.value.attempts == 4
        assert manager.state == ConnectionState.DISCONNECTED
        assert isinstance(changes[-1].error, ConnectivityError)


class TestReconnect:
    @pytest.mark.asyncio
    async def test_transport_loss_reconnects(self, manager, server, changes, sleeps):
        await manager.connect("token-req")

        server.drop()
        await wait_until(lambda: server.opens == 2 and manager.is_connected)

        assert [c.current for c in changes] == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
            ConnectionState.CONNECTED,
        ]
        assert changes[-1].reconnected
        assert sleeps == [1.0]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_reconnect_exhaustion_surfaces_connectivity_error(
        self, manager, server, changes, sleeps
    ):
        await manager.connect("token-req")
        server.fail_opens = 100

        server.drop()
        await wait_until(lambda: manager.state == ConnectionState.DISCONNECTED)

        assert server.opens == 1 + 3
        assert sleeps == [1.0, 2.0, 4.0]
        assert isinstance(changes[-1].error, ConnectivityError)
        assert changes[-1].previous == ConnectionState.RECONNECTING

    @pytest.mark.asyncio
    async def test_reauth_rejected_during_reconnect(self, manager, server, changes):
        await manager.connect("token-req")
        server.reject_credentials = True

        server.drop()
        await wait_until(lambda: manager.state == ConnectionState.DISCONNECTED)

        assert server.opens == 2
        assert isinstance(changes[-1].error, AuthError)

    @pytest.mark.asyncio
    async def test_disconnect_does_not_reconnect(self, manager, server, changes):
        await manager.connect("token-req")

        await manager.disconnect()
        await settle()

        assert server.opens == 1
        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.user_id is None
        assert changes[-1].error is None

    @pytest.mark.asyncio
    async def test_connect_after_disconnect(self, manager, server):
        await manager.connect("token-req")
        await manager.disconnect()

        await manager.connect("token-req")

        assert manager.is_connected
        assert server.opens == 2
        await manager.disconnect()


class TestEmitAndDispatch:
    @pytest.mark.asyncio
    async def test_emit_when_disconnected_raises(self, manager):
        with pytest.raises(ConnectivityError):
            await manager.emit(JoinEvent(conversationId="c-1"))

    @pytest.mark.asyncio
    async def test_emit_write_failure_raises(self, manager, server):
        await manager.connect("token-req")
        server.fail_sends = True

        with pytest.raises(ConnectivityError):
            await manager.emit(JoinEvent(conversationId="c-1"))
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_frames_reach_dispatcher(self, manager, server, dispatcher):
        received = []
        dispatcher.on(JoinedEvent, received.append)
        await manager.connect("token-req")

        server.push({"type": "bogus"})
        server.push({"type": "joined", "conversationId": "c-1"})
        await wait_until(lambda: received)

        assert received == [JoinedEvent(conversationId="c-1")]
        assert manager.is_connected
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self, manager):
        seen = []

        def broken(change):
            raise RuntimeError("boom")

        manager.subscribe(broken)
        manager.subscribe(seen.append)
        await manager.connect("token-req")

        assert [c.current for c in seen][-1] == ConnectionState.CONNECTED
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_unsubscribe(self, manager):
        seen = []
        unsubscribe = manager.subscribe(seen.append)
        unsubscribe()

        await manager.connect("token-req")

        assert seen == []
        await manager.disconnect()
