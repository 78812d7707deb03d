"""Chat session: builds and wires the synchronization core for one login.

The session owns every component (connection, rooms, store, history,
synchronizer, presence) and the typed event dispatcher that routes server
frames to them. ``start()`` runs on session start; ``stop()`` on logout
tears everything down, so no conversation state outlives the session.

Usage:
    async with ChatSession(settings, user_id="42", role=SenderRole.REQUESTER) as chat:
        await chat.store.open("conv-1")
        chat.synchronizer.send("conv-1", "Hello")
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from marketchat.config import AppSettings

from .connection import ConnectionManager
from .events import EventDispatcher
from .history import HistoryClient, HistoryLoader
from .presence import PresenceAndTyping
from .rooms import RoomCoordinator
from .schemas import (
    ConnectedEvent,
    Conversation,
    ErrorEvent,
    JoinedEvent,
    Message,
    MessageEvent,
    ParticipantAddedEvent,
    Participants,
    PresenceEvent,
    ReadReceiptEvent,
    SenderRole,
    TypingEvent,
)
from .store import ConversationStore
from .synchronizer import MessageSynchronizer
from .transport import Transport, WebSocketTransport

logger = logging.getLogger(__name__)


class ChatSession:
    """All synchronization components for one authenticated user."""

    def __init__(
        self,
        settings: AppSettings,
        user_id: str,
        role: SenderRole,
        credential: Optional[str] = None,
        transport_factory: Callable[[], Transport] = WebSocketTransport,
        history_transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.credential = credential if credential is not None else settings.secrets.access_token

        self.dispatcher = EventDispatcher()
        self.connection = ConnectionManager(
            settings.connection, self.dispatcher, transport_factory=transport_factory, sleep=sleep
        )
        self.rooms = RoomCoordinator(self.connection, settings.rooms.join_timeout_seconds)
        self.store = ConversationStore()
        self.history_client = HistoryClient(
            settings.history.base_url,
            self.credential or "",
            timeout=settings.history.timeout_seconds,
            page_size=settings.history.page_size,
            transport=history_transport,
        )
        self.history = HistoryLoader(
            self.history_client, self.store, timeout=settings.history.timeout_seconds
        )
        self.synchronizer = MessageSynchronizer(self.connection, self.store, user_id, role)
        self.presence = PresenceAndTyping(
            self.connection, typing_ttl=settings.presence.typing_ttl_seconds
        )
        self.store.attach(self.rooms, self.history)
        # Runs after the store's own resync listener
        self.rooms.add_rejoin_listener(self.synchronizer.on_rejoined)
        self._register_handlers()

    def _register_handlers(self) -> None:
        self.dispatcher.on(ConnectedEvent, self._on_connected)
        self.dispatcher.on(JoinedEvent, self.rooms.on_joined)
        self.dispatcher.on(MessageEvent, self.synchronizer.on_message)
        self.dispatcher.on(TypingEvent, self.presence.on_typing)
        self.dispatcher.on(PresenceEvent, self.presence.on_presence)
        self.dispatcher.on(ReadReceiptEvent, self.synchronizer.on_read_receipt)
        self.dispatcher.on(ParticipantAddedEvent, self._on_participant_added)
        self.dispatcher.on(ErrorEvent, self._on_error)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect with the session credential.

        Raises:
            AuthError: Missing or rejected credential.
            ConnectivityError: The server could not be reached.
        """
        await self.connection.connect(self.credential)
        if self.connection.user_id:
            self.synchronizer.sender_id = self.connection.user_id
        logger.info("[Session] Started for user %s", self.synchronizer.sender_id)

    async def stop(self) -> None:
        """Tear the session down (logout): leave rooms, disconnect, drop state."""
        for conversation_id in sorted(self.rooms.active):
            await self.rooms.leave_room(conversation_id)
        self.synchronizer.close()
        self.presence.close()
        self.rooms.close()
        await self.connection.disconnect()
        self.store.clear()
        await self.history_client.aclose()
        logger.info("[Session] Stopped")

    async def __aenter__(self) -> "ChatSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Convenience intents
    # ------------------------------------------------------------------

    async def start_conversation(
        self,
        participants: Participants,
        linked_job_id: Optional[str] = None,
        initial_message: Optional[str] = None,
    ) -> Conversation:
        """Initiate a conversation and optionally send its opening message."""
        conversation = await self.store.initiate(participants, linked_job_id=linked_job_id)
        if initial_message:
            self.synchronizer.send(conversation.id, initial_message)
        return conversation

    def send(self, conversation_id: str, content: str) -> Message:
        return self.synchronizer.send(conversation_id, content)

    # ------------------------------------------------------------------
    # Event handlers without a dedicated component
    # ------------------------------------------------------------------

    def _on_connected(self, event: ConnectedEvent) -> None:
        logger.debug("[Session] Late connected ack for %s ignored", event.userId)

    def _on_participant_added(self, event: ParticipantAddedEvent) -> None:
        if self.store.get(event.conversationId) is None:
            return
        try:
            self.store.add_participant(event.conversationId, event.participant, event.role)
        except ValueError as exc:
            logger.warning("[Session] Ignoring participant_added: %s", exc)

    def _on_error(self, event: ErrorEvent) -> None:
        if self.synchronizer.on_error(event) or self.rooms.on_error(event):
            return
        logger.warning("[Session] Server error %s: %s", event.code, event.message)
