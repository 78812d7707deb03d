"""Room coordinator: joins and leaves conversation rooms on the shared connection.

A room must be joined to receive a conversation's live events. Joins are
acknowledged by the server with a ``joined`` frame; the coordinator waits
(with timeout) for that ack, like a request/response over the socket.

Server-side room membership does not survive a transport reconnect, so on
every transition into ``connected`` (automatic reconnect, or a manual
``connect()`` after reconnection gave up) all active rooms are joined again.
"""
import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Dict, List, Set, Union

from marketchat.errors import ConnectivityError, JoinTimeoutError

from .connection import ConnectionManager, ConnectionState, StatusChange
from .schemas import ERROR_JOIN_FAILED, ErrorEvent, JoinedEvent, JoinEvent, LeaveEvent

logger = logging.getLogger(__name__)

RejoinListener = Callable[[str], Union[None, Awaitable[None]]]


class RoomCoordinator:
    """Tracks which conversation rooms should be joined and keeps them joined.

    Attributes:
        active: Rooms the user wants joined (visible conversations).
        joined: Rooms acknowledged by the server on the current connection.
    """

    def __init__(self, connection: ConnectionManager, join_timeout: float = 5.0) -> None:
        self._connection = connection
        self._join_timeout = join_timeout
        self.active: Set[str] = set()
        self.joined: Set[str] = set()
        # conversation_id -> future resolved by the "joined" ack
        self._pending: Dict[str, asyncio.Future] = {}  # type: ignore[type-arg]
        self._rejoin_listeners: List[RejoinListener] = []
        self._unsubscribe = connection.subscribe(self.on_status_change)

    def add_rejoin_listener(self, listener: RejoinListener) -> None:
        """Call ``listener(conversation_id)`` after each re-join of an active room."""
        self._rejoin_listeners.append(listener)

    def is_joined(self, conversation_id: str) -> bool:
        return conversation_id in self.joined

    # ------------------------------------------------------------------
    # Join / leave
    # ------------------------------------------------------------------

    async def join_room(self, conversation_id: str) -> None:
        """Join a conversation room and wait for the server's ack.

        Idempotent: a joined room is a no-op, and concurrent callers for the
        same room share one round-trip.

        Raises:
            JoinTimeoutError: Not connected, ack not received in time, or
                the server refused the join.
        """
        self.active.add(conversation_id)
        if conversation_id in self.joined:
            return

        pending = self._pending.get(conversation_id)
        if pending is not None:
            await asyncio.shield(pending)
            return

        if not self._connection.is_connected:
            raise JoinTimeoutError(conversation_id, "not connected")

        future = asyncio.get_running_loop().create_future()
        self._pending[conversation_id] = future
        try:
            logger.info("[Rooms] Joining conversation %s", conversation_id)
            await self._connection.emit(JoinEvent(conversationId=conversation_id))
            await asyncio.wait_for(asyncio.shield(future), timeout=self._join_timeout)
        except asyncio.TimeoutError as exc:
            error = JoinTimeoutError(
                conversation_id, f"no ack within {self._join_timeout}s"
            )
            self._fail(future, error)
            raise error from exc
        except ConnectivityError as exc:
            error = JoinTimeoutError(conversation_id, str(exc))
            self._fail(future, error)
            raise error from exc
        finally:
            if self._pending.get(conversation_id) is future:
                del self._pending[conversation_id]

    async def leave_room(self, conversation_id: str) -> None:
        """Leave a conversation room. Best-effort: never raises."""
        self.active.discard(conversation_id)
        was_joined = conversation_id in self.joined
        self.joined.discard(conversation_id)
        pending = self._pending.pop(conversation_id, None)
        if pending is not None:
            self._fail(pending, JoinTimeoutError(conversation_id, "left before ack"))

        if not was_joined or not self._connection.is_connected:
            return
        try:
            await self._connection.emit(LeaveEvent(conversationId=conversation_id))
            logger.info("[Rooms] Left conversation %s", conversation_id)
        except Exception as exc:  # pylint: disable=broad-except
            logger.debug("[Rooms] Leave for %s not delivered: %s", conversation_id, exc)

    # ------------------------------------------------------------------
    # Server events
    # ------------------------------------------------------------------

    def on_joined(self, event: JoinedEvent) -> None:
        conversation_id = event.conversationId
        future = self._pending.get(conversation_id)
        if future is None:
            logger.debug("[Rooms] Unsolicited join ack for %s", conversation_id)
            return
        self.joined.add(conversation_id)
        if not future.done():
            future.set_result(None)
        logger.info("[Rooms] Joined conversation %s", conversation_id)

    def on_error(self, event: ErrorEvent) -> bool:
        """Fail a pending join refused by the server. Returns True if handled."""
        if event.code != ERROR_JOIN_FAILED or not event.conversationId:
            return False
        future = self._pending.get(event.conversationId)
        if future is None:
            return False
        logger.warning("[Rooms] Join refused for %s: %s", event.conversationId, event.message)
        self._fail(future, JoinTimeoutError(event.conversationId, event.message or "refused"))
        return True

    # ------------------------------------------------------------------
    # Connection status
    # ------------------------------------------------------------------

    def on_status_change(self, change: StatusChange):
        if change.current != ConnectionState.CONNECTED:
            # Server-side membership is gone with the transport
            self.joined.clear()
            for conversation_id, future in list(self._pending.items()):
                self._fail(future, JoinTimeoutError(conversation_id, "connection lost"))
            return None
        # Every active room is joined whenever the connection is connected
        if self.active:
            return self.rejoin_all()
        return None

    async def rejoin_all(self) -> Set[str]:
        """Re-join every active room. Returns the rooms joined successfully."""
        rooms = sorted(self.active)
        logger.info("[Rooms] Re-joining %d conversation(s) on connect", len(rooms))
        results = await asyncio.gather(
            *[self.join_room(conversation_id) for conversation_id in rooms],
            return_exceptions=True,
        )

        rejoined: Set[str] = set()
        for conversation_id, result in zip(rooms, results):
            if isinstance(result, BaseException):
                logger.warning("[Rooms] Re-join failed for %s: %s", conversation_id, result)
                continue
            rejoined.add(conversation_id)
            await self._notify_rejoined(conversation_id)
        return rejoined

    async def _notify_rejoined(self, conversation_id: str) -> None:
        for listener in list(self._rejoin_listeners):
            try:
                result = listener(conversation_id)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("[Rooms] Rejoin listener failed for %s: %s", conversation_id, exc)

    def close(self) -> None:
        """Detach from the connection and forget all room state."""
        self._unsubscribe()
        for conversation_id, future in list(self._pending.items()):
            self._fail(future, JoinTimeoutError(conversation_id, "session closed"))
        self._pending.clear()
        self.active.clear()
        self.joined.clear()

    @staticmethod
    def _fail(future: "asyncio.Future", error: Exception) -> None:  # type: ignore[type-arg]
        if not future.done():
            future.set_exception(error)
            future.exception()  # mark retrieved; waiters still re-raise
