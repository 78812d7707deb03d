"""Error taxonomy for the conversation synchronization core.

Connection-scoped errors (AuthError, ConnectivityError) surface once, to
every connection status subscriber. Message-scoped errors (SendFailure) and
conversation-scoped errors (JoinTimeoutError, HistoryLoadError) never
cascade beyond the owning conversation or message.
"""
from typing import Optional


class ChatSyncError(Exception):
    """Base exception for chat synchronization errors."""
    def __init__(self, message: str, conversation_id: Optional[str] = None):
        self.message = message
        self.conversation_id = conversation_id
        super().__init__(message)


class AuthError(ChatSyncError):
    """Raised when no credential is available or the server rejects it.

    Terminal: the caller must re-authenticate and call connect() again.
    """
    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message)


class ConnectivityError(ChatSyncError):
    """Raised when the connection is unusable or reconnection is exhausted."""
    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class JoinTimeoutError(ChatSyncError):
    """Raised when a room join is not acknowledged in time."""
    def __init__(self, conversation_id: str, reason: str = "join not acknowledged"):
        self.reason = reason
        super().__init__(
            f"Could not join conversation {conversation_id}: {reason}",
            conversation_id=conversation_id,
        )


class SendFailure(ChatSyncError):
    """Raised when a message cannot be sent; scoped to one message."""
    def __init__(
        self,
        message: str,
        conversation_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ):
        self.correlation_id = correlation_id
        super().__init__(message, conversation_id=conversation_id)


class HistoryLoadError(ChatSyncError):
    """Raised when a history fetch fails. Cached messages stay intact."""
    def __init__(self, conversation_id: str, reason: str):
        self.reason = reason
        super().__init__(
            f"Failed to load history for {conversation_id}: {reason}",
            conversation_id=conversation_id,
        )
