"""Real-time conversation synchronization core.

Keeps requester / provider / facilitator conversations consistent across one
persistent connection, optimistic local echoes and the durable history store.

Components:
    - ConnectionManager: session-wide connection, auth, reconnection
    - RoomCoordinator: joins/leaves conversation rooms, re-joins after reconnect
    - MessageSynchronizer: optimistic sends and inbound reconciliation
    - HistoryLoader: de-duplicated history pages merged by id
    - ConversationStore: in-memory registry of conversations
    - PresenceAndTyping: ephemeral typing/presence state
    - ChatSession: wires all of the above for one login
"""
from .connection import ConnectionManager, ConnectionState, StatusChange
from .events import EventDispatcher
from .history import HistoryClient, HistoryLoader
from .presence import PresenceAndTyping
from .rooms import RoomCoordinator
from .session import ChatSession
from .store import ConversationStore, StoreEvent, StoreEventKind
from .synchronizer import MessageSynchronizer

__all__ = [
    "ChatSession",
    "ConnectionManager",
    "ConnectionState",
    "ConversationStore",
    "EventDispatcher",
    "HistoryClient",
    "HistoryLoader",
    "MessageSynchronizer",
    "PresenceAndTyping",
    "RoomCoordinator",
    "StatusChange",
    "StoreEvent",
    "StoreEventKind",
]
