"""Ephemeral typing and presence signaling.

Best-effort only: typing intents are fire-and-forget (no retry, no
ordering), and inbound typing state keeps just the latest value per
(conversation, user). Nothing here is queued or persisted.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from .connection import ConnectionManager, ConnectionState, StatusChange
from .schemas import PresenceEvent, TypingEvent, TypingIntent

logger = logging.getLogger(__name__)


@dataclass
class TypingState:
    is_typing: bool
    updated_at: float


class PresenceAndTyping:
    """Tracks who is typing and who is online, per conversation."""

    def __init__(
        self,
        connection: ConnectionManager,
        typing_ttl: float = 6.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._connection = connection
        self._typing_ttl = typing_ttl
        self._clock = clock
        # (conversation_id, user_id) -> latest typing state
        self._typing: Dict[Tuple[str, str], TypingState] = {}
        # conversation_id -> online user ids
        self._online: Dict[str, Set[str]] = {}
        self._tasks: Set[asyncio.Task] = set()  # type: ignore[type-arg]
        self._listeners: List[Callable[[str], None]] = []
        self._unsubscribe = connection.subscribe(self.on_status_change)

    def add_listener(self, listener: Callable[[str], None]) -> None:
        """Call ``listener(conversation_id)`` whenever typing/presence changes."""
        self._listeners.append(listener)

    def emit_typing(self, conversation_id: str, is_typing: bool) -> None:
        """Send a typing intent. Silently dropped when not connected."""
        if not self._connection.is_connected:
            return
        task = asyncio.ensure_future(self._send(TypingIntent(
            conversationId=conversation_id, isTyping=is_typing
        )))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, intent: TypingIntent) -> None:
        try:
            await self._connection.emit(intent)
        except Exception as exc:  # pylint: disable=broad-except
            logger.debug("[Presence] Typing intent dropped: %s", exc)

    def on_typing(self, event: TypingEvent) -> None:
        if event.userId == self._connection.user_id:
            return
        self._typing[(event.conversationId, event.userId)] = TypingState(
            is_typing=event.isTyping, updated_at=self._clock()
        )
        self._changed(event.conversationId)

    def on_presence(self, event: PresenceEvent) -> None:
        online = self._online.setdefault(event.conversationId, set())
        if event.online:
            online.add(event.userId)
        else:
            online.discard(event.userId)
            self._typing.pop((event.conversationId, event.userId), None)
        self._changed(event.conversationId)

    def typing_users(self, conversation_id: str) -> List[str]:
        """Users currently typing in a conversation (stale entries excluded)."""
        now = self._clock()
        return sorted(
            user_id
            for (cid, user_id), state in self._typing.items()
            if cid == conversation_id
            and state.is_typing
            and now - state.updated_at <= self._typing_ttl
        )

    def online_users(self, conversation_id: str) -> Set[str]:
        return set(self._online.get(conversation_id, set()))

    def is_typing(self, conversation_id: str, user_id: str) -> bool:
        return user_id in self.typing_users(conversation_id)

    def on_status_change(self, change: StatusChange) -> None:
        if change.current != ConnectionState.CONNECTED:
            self.clear()

    def clear(self, conversation_id: Optional[str] = None) -> None:
        if conversation_id is None:
            self._typing.clear()
            self._online.clear()
            return
        self._online.pop(conversation_id, None)
        for key in [k for k in self._typing if k[0] == conversation_id]:
            del self._typing[key]

    def close(self) -> None:
        self._unsubscribe()
        for task in list(self._tasks):
            task.cancel()
        self.clear()

    def _changed(self, conversation_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(conversation_id)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("[Presence] Listener failed: %s", exc)
