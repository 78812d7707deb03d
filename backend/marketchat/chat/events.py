"""Typed dispatcher for server -> client events.

Each server event kind (ConnectedEvent, MessageEvent, TypingEvent, ...) has
at most one handler. Raw frames are validated into their typed model before
dispatch, so the synchronization logic can be driven from a fake transport
in tests without a network.
"""
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from .schemas import parse_server_event

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=BaseModel)
Handler = Callable[[Any], Union[None, Awaitable[None]]]


class EventDispatcher:
    """Routes validated server events to one handler per event type."""

    def __init__(self) -> None:
        self._handlers: Dict[Type[BaseModel], Handler] = {}

    def on(self, event_type: Type[E], handler: Callable[[E], Union[None, Awaitable[None]]]) -> None:
        """Register the handler for ``event_type``.

        Raises:
            ValueError: If a handler is already registered for that type.
        """
        if event_type in self._handlers:
            raise ValueError(f"Handler already registered for {event_type.__name__}")
        self._handlers[event_type] = handler

    def off(self, event_type: Type[BaseModel]) -> None:
        self._handlers.pop(event_type, None)

    def handler_for(self, event_type: Type[BaseModel]) -> Optional[Handler]:
        return self._handlers.get(event_type)

    async def dispatch_raw(self, data: dict) -> None:
        """Validate a raw frame and dispatch it. Malformed frames are dropped."""
        try:
            event = parse_server_event(data)
        except ValidationError as exc:
            logger.warning("[Dispatcher] Dropping invalid frame %r: %s", data.get("type"), exc)
            return
        await self.dispatch(event)

    async def dispatch(self, event: BaseModel) -> None:
        """Invoke the handler registered for ``type(event)``.

        Handler exceptions are logged and contained so one bad event cannot
        stop the read loop.
        """
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.debug("[Dispatcher] No handler for %s", type(event).__name__)
            return
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # pylint: disable=broad-except
            logger.error(
                "[Dispatcher] Handler for %s failed: %s", type(event).__name__, exc
            )
