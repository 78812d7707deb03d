"""In-memory state for the reference chat gateway.

This module keeps everything the gateway needs to serve the chat protocol:
conversations and their membership, per-conversation message history,
which sockets are in which room, read receipts, and a correlation-id cache
for at-least-once de-duplication.

Key features:
    - Room-scoped broadcasting with asyncio.gather()
    - Automatic dead connection cleanup
    - Correlation-id de-duplication with an LRU cache: a re-sent message is
      re-broadcast from history instead of being stored twice
    - Cursor-paginated message history (oldest first)

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.
"""
import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from fastapi import WebSocket

from marketchat.chat.schemas import ConversationSummary, Message, Participants
from marketchat.config import GatewayUser

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# Maximum number of correlation IDs remembered per conversation
CORRELATION_CACHE_SIZE = 10000

# Default page size for message history pagination
DEFAULT_PAGE_SIZE = 50

# Maximum page size to prevent abuse
MAX_PAGE_SIZE = 100


class GatewayRegistry:
    """Conversation, room and history state for the gateway process.

    Note:
        A single module-level instance (``registry``) is shared by all
        gateway handlers.
    """

    def __init__(self) -> None:
        # conversation_id -> conversation summary (membership)
        self.conversations: Dict[str, ConversationSummary] = {}

        # conversation_id -> messages (append-only, sorted by createdAt)
        self.message_history: Dict[str, List[Message]] = {}

        # conversation_id -> sockets currently joined to the room
        self.room_connections: Dict[str, List[WebSocket]] = {}

        # websocket -> authenticated user
        self.websocket_users: Dict[WebSocket, GatewayUser] = {}

        # conversation_id -> OrderedDict(correlation_id -> message_id) (LRU)
        self.seen_correlation_ids: Dict[str, OrderedDict] = {}

        # conversation_id -> {user_id -> last read timestamp}
        self.read_by: Dict[str, Dict[str, float]] = {}

    # =========================================================================
    # Conversations
    # =========================================================================

    def create_conversation(
        self,
        participants: Participants,
        linked_job_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> ConversationSummary:
        summary = ConversationSummary(
            id=conversation_id or str(uuid.uuid4()),
            participants=participants,
            linkedJobId=linked_job_id,
        )
        self.conversations[summary.id] = summary
        self.message_history.setdefault(summary.id, [])
        logger.info(f"[Gateway] Conversation {summary.id} created")
        return summary

    def list_conversations(self, user_id: str) -> List[ConversationSummary]:
        return [
            c for c in self.conversations.values()
            if user_id in c.participants.member_ids()
        ]

    def is_member(self, conversation_id: str, user_id: str) -> bool:
        summary = self.conversations.get(conversation_id)
        return summary is not None and user_id in summary.participants.member_ids()

    def add_facilitator(
        self, conversation_id: str, user_id: str, name: str
    ) -> Tuple[ConversationSummary, bool]:
        """Append a facilitator. Returns (summary, changed).

        Raises:
            KeyError: Unknown conversation.
            ValueError: A different facilitator is already present.
        """
        summary = self.conversations[conversation_id]
        members = summary.participants
        if user_id in members.member_ids():
            return summary, False
        if members.facilitatorId is not None:
            raise ValueError("Conversation already has a facilitator")
        summary.participants = members.model_copy(
            update={"facilitatorId": user_id, "facilitatorName": name or user_id}
        )
        return summary, True

    # =========================================================================
    # Sockets & rooms
    # =========================================================================

    def register_socket(self, websocket: WebSocket, user: GatewayUser) -> None:
        self.websocket_users[websocket] = user

    def unregister_socket(self, websocket: WebSocket) -> List[str]:
        """Forget a socket. Returns the rooms it was still joined to."""
        self.websocket_users.pop(websocket, None)
        left = []
        for conversation_id, connections in self.room_connections.items():
            if websocket in connections:
                connections.remove(websocket)
                left.append(conversation_id)
        return left

    def join(self, websocket: WebSocket, conversation_id: str) -> bool:
        """Add a socket to a room. Returns False if it was already joined."""
        connections = self.room_connections.setdefault(conversation_id, [])
        if websocket in connections:
            return False
        connections.append(websocket)
        return True

    def leave(self, websocket: WebSocket, conversation_id: str) -> bool:
        connections = self.room_connections.get(conversation_id, [])
        if websocket not in connections:
            return False
        connections.remove(websocket)
        return True

    def in_room(self, websocket: WebSocket, conversation_id: str) -> bool:
        return websocket in self.room_connections.get(conversation_id, [])

    def get_room_size(self, conversation_id: str) -> int:
        """Get the number of sockets joined to a room."""
        return len(self.room_connections.get(conversation_id, []))

    # =========================================================================
    # Messages
    # =========================================================================

    def find_duplicate(self, conversation_id: str, correlation_id: str) -> Optional[Message]:
        """Return the stored message for an already-seen correlation id."""
        if not correlation_id:
            return None
        cache = self.seen_correlation_ids.get(conversation_id)
        if cache is None or correlation_id not in cache:
            return None
        cache.move_to_end(correlation_id)
        message_id = cache[correlation_id]
        return next(
            (m for m in self.message_history.get(conversation_id, []) if m.id == message_id),
            None,
        )

    def add_message(self, message: Message) -> Message:
        """Append a message to its conversation history."""
        history = self.message_history.setdefault(message.conversationId, [])
        history.append(message)
        if history and len(history) > 1 and history[-2].createdAt > message.createdAt:
            history.sort(key=lambda m: m.createdAt)

        if message.correlationId:
            cache = self.seen_correlation_ids.setdefault(message.conversationId, OrderedDict())
            cache[message.correlationId] = message.id
            while len(cache) > CORRELATION_CACHE_SIZE:
                cache.popitem(last=False)
        return message

    def get_message_count(self, conversation_id: str) -> int:
        return len(self.message_history.get(conversation_id, []))

    def get_paginated_history(
        self,
        conversation_id: str,
        before_ts: Optional[float] = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Tuple[List[Message], Optional[float]]:
        """Get one page of history, oldest first.

        Args:
            conversation_id: The conversation ID.
            before_ts: Cursor. Returns messages with createdAt < before_ts.
                If None, returns the most recent messages.
            limit: Maximum number of messages to return.

        Returns:
            Tuple of (messages, next_cursor); next_cursor is None when no
            older messages remain.
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))  # Prevent abuse
        messages = self.message_history.get(conversation_id, [])
        if before_ts is not None:
            messages = [m for m in messages if m.createdAt < before_ts]

        page = messages[-limit:]
        has_more = len(messages) > len(page)
        next_cursor = page[0].createdAt if page and has_more else None
        return page, next_cursor

    def mark_read(self, conversation_id: str, user_id: str) -> float:
        read_at = time.time()
        self.read_by.setdefault(conversation_id, {})[user_id] = read_at
        return read_at

    # =========================================================================
    # Broadcasting
    # =========================================================================

    async def broadcast(self, message: dict, conversation_id: str) -> None:
        """Broadcast a frame to every socket in a room concurrently."""
        connections = list(self.room_connections.get(conversation_id, []))
        await self._send_all(message, conversation_id, connections)

    async def broadcast_except(
        self, message: dict, conversation_id: str, exclude_websocket: WebSocket
    ) -> None:
        """Broadcast to a room except one socket (typing, presence)."""
        connections = [
            conn for conn in self.room_connections.get(conversation_id, [])
            if conn != exclude_websocket
        ]
        await self._send_all(message, conversation_id, connections)

    async def _send_all(
        self, message: dict, conversation_id: str, connections: List[WebSocket]
    ) -> None:
        if not connections:
            return
        results = await asyncio.gather(
            *[self._safe_send(conn, message) for conn in connections],
            return_exceptions=True
        )
        failed = [conn for conn, ok in zip(connections, results) if ok is not True]
        self._cleanup_connections(conversation_id, failed)

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def _cleanup_connections(
        self, conversation_id: str, failed_connections: List[WebSocket]
    ) -> None:
        connections = self.room_connections.get(conversation_id)
        if not failed_connections or connections is None:
            return
        for conn in failed_connections:
            if conn in connections:
                connections.remove(conn)
                logger.debug(f"Removed dead connection from room {conversation_id}")

    def clear(self) -> None:
        """Drop all gateway state (used by tests)."""
        self.conversations.clear()
        self.message_history.clear()
        self.room_connections.clear()
        self.websocket_users.clear()
        self.seen_correlation_ids.clear()
        self.read_by.clear()


# Global singleton instance used by all gateway handlers
registry = GatewayRegistry()
