"""Session-wide connection manager.

Owns the single persistent connection shared by every conversation in the
session: authentication, lifecycle and automatic reconnection.

State machine:
    disconnected -> connecting -> connected
    connected -> reconnecting -> connected | disconnected

Key behaviour:
    - Authentication failures are terminal (AuthError, no retry)
    - connect() is idempotent while connecting or connected
    - Transport loss triggers bounded reconnection with capped exponential
      backoff; exhausting the bound surfaces ConnectivityError to every
      status subscriber
    - Status listeners that return a coroutine run as background tasks, so
      they may await acks delivered by the read loop (e.g. room re-joins)

Thread Safety:
    Designed for a single asyncio event loop. NOT thread-safe.
"""
import asyncio
import inspect
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set, Union

from pydantic import BaseModel, ValidationError

from marketchat.config import ConnectionSettings
from marketchat.errors import AuthError, ConnectivityError

from .events import EventDispatcher
from .schemas import ERROR_UNAUTHORIZED, ConnectedEvent, ErrorEvent, SenderRole, parse_server_event
from .transport import Transport, TransportError, TransportRejected, WebSocketTransport

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class StatusChange:
    """A connection state transition delivered to status listeners.

    Attributes:
        previous: State before the transition.
        current: State after the transition.
        error: Terminal error (AuthError / ConnectivityError), if any.
    """
    previous: ConnectionState
    current: ConnectionState
    error: Optional[Exception] = None

    @property
    def reconnected(self) -> bool:
        return (
            self.previous == ConnectionState.RECONNECTING
            and self.current == ConnectionState.CONNECTED
        )


StatusListener = Callable[[StatusChange], Union[None, Awaitable[None]]]


def backoff_delay(
    attempt: int, base_delay: float = 1.0, max_delay: float = 5.0, jitter: float = 0.1
) -> float:
    """Calculate capped exponential backoff delay with jitter.

    Args:
        attempt: Current retry number (0-indexed).
        base_delay: Delay before the first retry, in seconds.
        max_delay: Cap applied before jitter.
        jitter: Fraction of the delay added as random jitter.

    Returns:
        Delay in seconds.
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    return delay + random.uniform(0, jitter * delay)


class ConnectionManager:
    """Manages the single authenticated connection for a chat session."""

    def __init__(
        self,
        settings: ConnectionSettings,
        dispatcher: EventDispatcher,
        transport_factory: Callable[[], Transport] = WebSocketTransport,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._dispatcher = dispatcher
        self._transport_factory = transport_factory
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._transport: Optional[Transport] = None
        self._credential: Optional[str] = None
        self._closing = False

        # In-flight connect() shared by concurrent callers
        self._connect_future: Optional[asyncio.Future] = None  # type: ignore[type-arg]
        self._reader: Optional[asyncio.Task] = None  # type: ignore[type-arg]
        # Background tasks spawned for coroutine status listeners
        self._tasks: Set[asyncio.Task] = set()  # type: ignore[type-arg]
        self._listeners: List[StatusListener] = []

        # Identity assigned by the server's "connected" ack
        self.user_id: Optional[str] = None
        self.role: Optional[SenderRole] = None

    # ------------------------------------------------------------------
    # State & subscriptions
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a status listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _set_state(self, new_state: ConnectionState, error: Optional[Exception] = None) -> None:
        if new_state == self._state and error is None:
            return
        change = StatusChange(previous=self._state, current=new_state, error=error)
        self._state = new_state
        if error is not None:
            logger.info(
                "[Connection] %s -> %s (%s)", change.previous.value, new_state.value, error
            )
        else:
            logger.info("[Connection] %s -> %s", change.previous.value, new_state.value)
        self._notify(change)

    def _notify(self, change: StatusChange) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(change)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("[Connection] Status listener failed: %s", exc)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task: "asyncio.Task") -> None:  # type: ignore[type-arg]
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("[Connection] Status listener task failed: %s", task.exception())

    async def wait_for_listeners(self) -> None:
        """Wait until every background status-listener task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, credential: Optional[str]) -> None:
        """Establish the session-wide connection.

        Args:
            credential: Bearer token presented once at connect time.

        Raises:
            AuthError: No credential, or the server rejected it. Not retried.
            ConnectivityError: Every connection attempt failed.
        """
        if not credential or not credential.strip():
            raise AuthError("No access token available - cannot connect")

        if self._state in (ConnectionState.CONNECTED, ConnectionState.RECONNECTING):
            logger.debug("[Connection] connect() ignored: already %s", self._state.value)
            return
        if self._state == ConnectionState.CONNECTING and self._connect_future is not None:
            logger.debug("[Connection] connect() joining in-flight attempt")
            await asyncio.shield(self._connect_future)
            return

        self._credential = credential
        self._closing = False
        future = asyncio.get_running_loop().create_future()
        self._connect_future = future
        self._set_state(ConnectionState.CONNECTING)

        try:
            transport = await self._establish(immediate_first=True)
        except (AuthError, ConnectivityError) as exc:
            self._set_state(ConnectionState.DISCONNECTED, exc)
            future.set_exception(exc)
            future.exception()  # consumed here; concurrent waiters re-raise it
            raise
        except asyncio.CancelledError:
            self._set_state(ConnectionState.DISCONNECTED)
            future.cancel()
            raise
        finally:
            self._connect_future = None

        self._install(transport)
        future.set_result(None)

    async def disconnect(self) -> None:
        """Close the connection deliberately. No reconnection follows."""
        self._closing = True

        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        transport, self._transport = self._transport, None
        if transport is not None:
            await self._close_quietly(transport)

        for task in list(self._tasks):
            task.cancel()

        self._set_state(ConnectionState.DISCONNECTED)
        self.user_id = None

    async def emit(self, event: BaseModel) -> None:
        """Transmit a client event over the active connection.

        Raises:
            ConnectivityError: Not connected, or the write failed.
        """
        transport = self._transport
        if self._state != ConnectionState.CONNECTED or transport is None:
            raise ConnectivityError(f"Cannot send '{getattr(event, 'type', '?')}': not connected")
        try:
            await transport.send(event.model_dump(mode="json"))
        except TransportError as exc:
            raise ConnectivityError(f"Failed to send '{getattr(event, 'type', '?')}': {exc}") from exc

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _establish(self, immediate_first: bool) -> Transport:
        """Open a transport, retrying transient failures with backoff."""
        max_retries = self._settings.max_reconnect_attempts
        total = max_retries + 1 if immediate_first else max_retries
        last_error: Optional[Exception] = None

        for attempt in range(total):
            retry_index = attempt - 1 if immediate_first else attempt
            if retry_index >= 0:
                delay = backoff_delay(
                    retry_index,
                    self._settings.backoff_base_seconds,
                    self._settings.backoff_max_seconds,
                    self._settings.backoff_jitter,
                )
                logger.warning(
                    "[Connection] Attempt %d/%d in %.2fs", attempt + 1, total, delay
                )
                await self._sleep(delay)
                if self._closing:
                    raise ConnectivityError("Connection closed while reconnecting", attempts=attempt)
            try:
                return await self._open_once()
            except (TransportError, asyncio.TimeoutError) as exc:
                last_error = exc
                logger.warning("[Connection] Attempt %d/%d failed: %s", attempt + 1, total, exc)

        raise ConnectivityError(
            f"Max reconnection attempts reached ({total}): {last_error}", attempts=total
        )

    async def _open_once(self) -> Transport:
        """Open one transport and wait for the server's ``connected`` ack."""
        timeout = self._settings.connect_timeout_seconds
        transport = self._transport_factory()
        try:
            await transport.open(self._settings.url, self._credential or "", timeout)
        except TransportRejected as exc:
            raise AuthError(f"Server rejected credential (HTTP {exc.status_code})") from exc

        try:
            frame = await asyncio.wait_for(transport.receive(), timeout=timeout)
            event = parse_server_event(frame)
        except ValidationError as exc:
            await self._close_quietly(transport)
            raise TransportError(f"Invalid handshake frame: {exc}") from exc
        except (TransportError, asyncio.TimeoutError):
            await self._close_quietly(transport)
            raise

        if isinstance(event, ErrorEvent) and event.code == ERROR_UNAUTHORIZED:
            await self._close_quietly(transport)
            raise AuthError(event.message or "Server rejected credential")
        if not isinstance(event, ConnectedEvent):
            await self._close_quietly(transport)
            raise TransportError(f"Unexpected handshake frame: {event.type}")

        self.user_id = event.userId
        self.role = event.role
        logger.info("[Connection] Backend confirmed connection: userId=%s", event.userId)
        return transport

    def _install(self, transport: Transport) -> None:
        self._transport = transport
        self._set_state(ConnectionState.CONNECTED)
        self._reader = asyncio.ensure_future(self._read_loop(transport))

    async def _read_loop(self, transport: Transport) -> None:
        try:
            while True:
                data = await transport.receive()
                await self._dispatcher.dispatch_raw(data)
        except TransportError as exc:
            cause: Exception = exc

        if self._closing or transport is not self._transport:
            return
        await self._reconnect(cause)

    async def _reconnect(self, cause: Exception) -> None:
        logger.warning("[Connection] Connection lost: %s", cause)
        lost, self._transport = self._transport, None
        if lost is not None:
            await self._close_quietly(lost)
        self._set_state(ConnectionState.RECONNECTING)

        try:
            transport = await self._establish(immediate_first=False)
        except AuthError as exc:
            logger.error("[Connection] Re-authentication rejected: %s", exc)
            self._set_state(ConnectionState.DISCONNECTED, exc)
            return
        except ConnectivityError as exc:
            if self._closing:
                return
            logger.error("[Connection] Giving up: %s", exc)
            self._set_state(ConnectionState.DISCONNECTED, exc)
            return

        if self._closing:
            await self._close_quietly(transport)
            return
        self._install(transport)

    @staticmethod
    async def _close_quietly(transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as exc:  # pylint: disable=broad-except
            logger.debug("[Connection] Error while closing transport: %s", exc)
