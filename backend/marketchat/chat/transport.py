"""Transport abstraction for the session-wide bidirectional connection.

The ConnectionManager only talks to a ``Transport``: open with a bearer
credential, send/receive JSON frames, close. ``WebSocketTransport`` is the
production implementation on top of the ``websockets`` library; tests plug
in an in-memory fake.
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Transient transport failure (network down, handshake failed)."""


class TransportClosed(TransportError):
    """The connection was lost or closed."""
    def __init__(self, message: str = "connection closed", code: Optional[int] = None):
        self.code = code
        super().__init__(message)


class TransportRejected(TransportError):
    """The server refused the credential during the handshake."""
    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"handshake rejected with HTTP {status_code}")


class Transport(ABC):
    """One bidirectional JSON frame channel."""

    @abstractmethod
    async def open(self, url: str, credential: str, timeout: float) -> None:
        """Open the channel, presenting ``credential`` as a bearer token.

        Raises:
            TransportRejected: If the server rejects the credential.
            TransportError: On any other connection failure.
        """

    @abstractmethod
    async def send(self, payload: dict) -> None:
        """Send one JSON frame.

        Raises:
            TransportClosed: If the channel is not open.
        """

    @abstractmethod
    async def receive(self) -> dict:
        """Wait for the next JSON frame.

        Raises:
            TransportClosed: When the channel is lost or closed.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""


class WebSocketTransport(Transport):
    """``Transport`` backed by a ``websockets`` client connection."""

    def __init__(self) -> None:
        self._ws: Optional[ClientConnection] = None

    async def open(self, url: str, credential: str, timeout: float) -> None:
        try:
            self._ws = await connect(
                url,
                additional_headers={"Authorization": f"Bearer {credential}"},
                open_timeout=timeout,
            )
        except InvalidStatus as exc:
            status = exc.response.status_code
            if status in (401, 403):
                raise TransportRejected(status) from exc
            raise TransportError(f"handshake failed with HTTP {status}") from exc
        except (InvalidHandshake, OSError, TimeoutError) as exc:
            raise TransportError(f"could not connect to {url}: {exc}") from exc
        logger.debug("[Transport] WebSocket open: %s", url)

    async def send(self, payload: dict) -> None:
        if self._ws is None:
            raise TransportClosed("transport not open")
        try:
            await self._ws.send(json.dumps(payload))
        except ConnectionClosed as exc:
            raise TransportClosed(str(exc), code=exc.rcvd.code if exc.rcvd else None) from exc

    async def receive(self) -> dict:
        if self._ws is None:
            raise TransportClosed("transport not open")
        while True:
            try:
                raw = await self._ws.recv()
            except ConnectionClosed as exc:
                raise TransportClosed(
                    str(exc), code=exc.rcvd.code if exc.rcvd else None
                ) from exc
            try:
                data = json.loads(raw)
            except (TypeError, ValueError):
                logger.warning("[Transport] Ignoring non-JSON frame")
                continue
            if isinstance(data, dict):
                return data
            logger.warning("[Transport] Ignoring non-object frame")

    async def close(self) -> None:
        if self._ws is not None:
            ws, self._ws = self._ws, None
            await ws.close()
