"""Message synchronizer: optimistic sends and inbound reconciliation.

Outbound:
    send() appends a ``pending`` message with a client correlation id right
    away (optimistic echo) and transmits it in the background. No offline
    queue: sending while not connected fails fast with SendFailure.

Inbound:
    A server message echoing the correlation id of a local pending or failed
    entry replaces that entry in place (-> confirmed, durable id assigned). Anything else is inserted in timestamp order; a message whose
    id is already present replaces it, so replays never duplicate.

Failure of one send only changes that message's status to ``failed``. A send
still unconfirmed after a reconnect and the history resync that follows it
is marked ``failed`` too, so it can be retried with its correlation id.
"""
import asyncio
import logging
import uuid
from typing import Dict, Optional, Set

from marketchat.errors import ConnectivityError, SendFailure

from .connection import ConnectionManager, ConnectionState, StatusChange
from .schemas import (
    DeliveryStatus,
    ErrorEvent,
    MarkReadEvent,
    Message,
    MessageEvent,
    MessageType,
    ReadReceiptEvent,
    SendEvent,
    SenderRole,
    new_temporary_id,
)
from .store import ConversationStore, StoreEvent, StoreEventKind

logger = logging.getLogger(__name__)


class MessageSynchronizer:
    """Sends messages optimistically and reconciles server confirmations."""

    def __init__(
        self,
        connection: ConnectionManager,
        store: ConversationStore,
        sender_id: str,
        sender_role: SenderRole,
    ) -> None:
        self._connection = connection
        self._store = store
        self.sender_id = sender_id
        self.sender_role = sender_role
        # correlation_id -> conversation_id for sends awaiting confirmation
        self._pending: Dict[str, str] = {}
        # Correlation ids still unconfirmed when the transport dropped
        self._orphaned: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()  # type: ignore[type-arg]
        self._unsubscribe = connection.subscribe(self.on_status_change)
        self._unsubscribe_store = store.subscribe(self._on_store_event)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send(
        self,
        conversation_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
    ) -> Message:
        """Append a pending message and transmit it in the background.

        Returns:
            The pending local message.

        Raises:
            SendFailure: Not connected, unknown conversation or blank content.
        """
        self._check_sendable(conversation_id, content)

        correlation_id = uuid.uuid4().hex
        message = Message(
            id=new_temporary_id("local"),
            conversationId=conversation_id,
            senderRole=self.sender_role,
            senderId=self.sender_id,
            content=content.strip(),
            type=message_type,
            correlationId=correlation_id,
            status=DeliveryStatus.PENDING,
        )
        self._store.insert_message(conversation_id, message)
        self._pending[correlation_id] = conversation_id
        self._transmit(message)
        return message

    def retry(self, conversation_id: str, message_id: str) -> Message:
        """Re-send a failed message with its original correlation id.

        Raises:
            SendFailure: Not connected, or the message is not a failed send.
        """
        conversation = self._store.get(conversation_id)
        message = None
        if conversation is not None:
            message = next((m for m in conversation.messages if m.id == message_id), None)
        if message is None or message.status != DeliveryStatus.FAILED or not message.correlationId:
            raise SendFailure(
                f"Message {message_id} is not a failed send", conversation_id=conversation_id
            )
        self._check_sendable(conversation_id, message.content)

        pending = self._store.set_status(conversation_id, message_id, DeliveryStatus.PENDING)
        self._pending[message.correlationId] = conversation_id
        self._orphaned.discard(message.correlationId)
        self._transmit(pending)
        return pending

    def _check_sendable(self, conversation_id: str, content: str) -> None:
        if not self._connection.is_connected:
            raise SendFailure("Socket not connected - cannot send message", conversation_id)
        if self._store.get(conversation_id) is None:
            raise SendFailure(f"Unknown conversation: {conversation_id}", conversation_id)
        if not content or not content.strip():
            raise SendFailure("Message content is required", conversation_id)

    def _transmit(self, message: Message) -> None:
        task = asyncio.ensure_future(self._emit(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _emit(self, message: Message) -> None:
        event = SendEvent(
            conversationId=message.conversationId,
            content=message.content,
            messageType=message.type,
            correlationId=message.correlationId,
        )
        try:
            await self._connection.emit(event)
            logger.debug("[Sync] Sent %s to %s", message.correlationId, message.conversationId)
        except ConnectivityError as exc:
            logger.warning("[Sync] Send failed for %s: %s", message.correlationId, exc)
            self._mark_failed(message.correlationId)

    def _mark_failed(self, correlation_id: str) -> None:
        conversation_id = self._pending.pop(correlation_id, None)
        if conversation_id is None or self._store.get(conversation_id) is None:
            return
        message = self._store.find_by_correlation(conversation_id, correlation_id)
        if message is not None and message.status == DeliveryStatus.PENDING:
            self._store.set_status(conversation_id, message.id, DeliveryStatus.FAILED)

    async def flush(self) -> None:
        """Wait for in-flight transmissions to complete."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Read receipts
    # ------------------------------------------------------------------

    async def mark_read(self, conversation_id: str) -> None:
        """Tell the server the user has read the conversation. Best-effort."""
        if not self._connection.is_connected:
            return
        try:
            await self._connection.emit(MarkReadEvent(conversationId=conversation_id))
        except ConnectivityError as exc:
            logger.debug("[Sync] mark_read for %s not delivered: %s", conversation_id, exc)

    def on_read_receipt(self, event: ReadReceiptEvent) -> None:
        if self._store.get(event.conversationId) is None:
            return
        self._store.record_read(event.conversationId, event.userId, event.readAt)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def on_message(self, event: MessageEvent) -> Optional[Message]:
        """Apply an inbound server message to its conversation."""
        message = event.message.model_copy(update={"status": DeliveryStatus.CONFIRMED})
        conversation_id = message.conversationId
        if self._store.get(conversation_id) is None:
            logger.warning("[Sync] Message %s for unknown conversation %s", message.id, conversation_id)
            return None

        correlation_id = message.correlationId
        if correlation_id:
            self._pending.pop(correlation_id, None)
            self._orphaned.discard(correlation_id)
            # Also matches an entry already marked failed, or one sent under a tmp- id
            if self._store.reconcile(conversation_id, correlation_id, message):
                logger.debug("[Sync] Confirmed %s as %s", correlation_id, message.id)
                return message

        return self._store.insert_message(conversation_id, message)

    def on_error(self, event: ErrorEvent) -> bool:
        """Mark the message named by a server error as failed. Returns True if handled."""
        if not event.correlationId or event.correlationId not in self._pending:
            return False
        logger.warning("[Sync] Server rejected %s: %s", event.correlationId, event.message)
        self._mark_failed(event.correlationId)
        return True

    def on_status_change(self, change: StatusChange) -> None:
        if change.current == ConnectionState.RECONNECTING:
            self._orphaned.update(self._pending)
        elif change.current == ConnectionState.DISCONNECTED:
            # Terminal disconnect: nothing pending can be confirmed any more
            self._orphaned.clear()
            for correlation_id in list(self._pending):
                self._mark_failed(correlation_id)

    def on_rejoined(self, conversation_id: str) -> None:
        """Fail sends from before the drop that the post-reconnect resync did not confirm.

        Runs after the store has merged the missed history, so a send the
        server stored is already confirmed and only sends it never received
        are left pending. Those become ``failed`` and can be retried.
        """
        lost = [c for c in self._orphaned if self._pending.get(c) == conversation_id]
        for correlation_id in lost:
            self._orphaned.discard(correlation_id)
            self._mark_failed(correlation_id)
        if lost:
            logger.info("[Sync] Resolved %d in-flight send(s) in %s after reconnect", len(lost), conversation_id)

    def _on_store_event(self, event: StoreEvent) -> None:
        if event.kind != StoreEventKind.CONVERSATION_RENAMED:
            return
        # Sends made under the temporary id now belong to the durable one
        for correlation_id, conversation_id in self._pending.items():
            if conversation_id == event.detail:
                self._pending[correlation_id] = event.conversation_id

    def close(self) -> None:
        self._unsubscribe()
        self._unsubscribe_store()
        self._orphaned.clear()
        for task in list(self._tasks):
            task.cancel()
        self._pending.clear()
