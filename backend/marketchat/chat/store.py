"""Conversation store: in-memory registry of conversations and their messages.

Every other component reads and writes conversation state through this
store. All message mutations are appends or replace-by-id merges, never
destructive full overwrites, so optimistic echoes, live inbound events and
history pages compose regardless of arrival order.

Ordering invariant:
    Each conversation's message list is sorted non-decreasing by
    ``createdAt``; ties keep arrival order (insertion uses bisect_right and
    re-sorts are stable). No message id appears twice.

Lifecycle:
    One store per session. ``attach()`` binds it to the session's
    RoomCoordinator and HistoryLoader on session start; ``clear()`` drops
    everything on logout.
"""
import bisect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional

from marketchat.errors import HistoryLoadError, JoinTimeoutError

from .rooms import RoomCoordinator
from .schemas import (
    Conversation,
    DeliveryStatus,
    Message,
    MessageType,
    Participant,
    Participants,
    SenderRole,
    Visibility,
    new_temporary_id,
)

if TYPE_CHECKING:
    from .history import HistoryLoader

logger = logging.getLogger(__name__)


class StoreEventKind(str, Enum):
    CONVERSATION_ADDED = "conversation_added"
    CONVERSATION_RENAMED = "conversation_renamed"
    MESSAGES_CHANGED = "messages_changed"
    VISIBILITY_CHANGED = "visibility_changed"
    PARTICIPANTS_CHANGED = "participants_changed"
    LOADING_CHANGED = "loading_changed"
    HISTORY_FAILED = "history_failed"
    READ_RECEIPT = "read_receipt"
    CLEARED = "cleared"


@dataclass
class StoreEvent:
    kind: StoreEventKind
    conversation_id: Optional[str] = None
    detail: Optional[str] = None


Subscriber = Callable[[StoreEvent], None]


def _timestamp(message: Message) -> float:
    return message.createdAt


SYSTEM_SENDER = "system"


def _is_local_notice(message: Message) -> bool:
    """System message recorded locally for a membership change."""
    return message.type == MessageType.SYSTEM and message.senderId == SYSTEM_SENDER


class ConversationStore:
    """Registry of conversation projections keyed by conversation id."""

    def __init__(self) -> None:
        self._conversations: Dict[str, Conversation] = {}
        self._subscribers: List[Subscriber] = []
        self._rooms: Optional[RoomCoordinator] = None
        self._history: Optional["HistoryLoader"] = None

    def attach(self, rooms: RoomCoordinator, history: "HistoryLoader") -> None:
        """Bind the store to the session's room coordinator and history loader."""
        self._rooms = rooms
        self._history = history
        rooms.add_rejoin_listener(self._resync_after_rejoin)

    def clear(self) -> None:
        """Drop every conversation (session teardown on logout)."""
        self._conversations.clear()
        self._publish(StoreEventKind.CLEARED)

    # =========================================================================
    # Registry
    # =========================================================================

    @property
    def conversations(self) -> List[Conversation]:
        return list(self._conversations.values())

    def get(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise KeyError(f"Unknown conversation: {conversation_id}")
        return conversation

    def visible(self) -> List[Conversation]:
        return [c for c in self._conversations.values() if c.is_visible]

    def register(
        self,
        participants: Participants,
        conversation_id: Optional[str] = None,
        linked_job_id: Optional[str] = None,
    ) -> Conversation:
        """Add a conversation projection, or return the existing one.

        Without ``conversation_id`` a temporary ``tmp-`` id is assigned until
        the server provides a durable one (see ``assign_id``).
        """
        if conversation_id is not None and conversation_id in self._conversations:
            return self._conversations[conversation_id]

        conversation = Conversation(
            id=conversation_id or new_temporary_id("tmp"),
            participants=participants,
            linkedJobId=linked_job_id,
        )
        self._conversations[conversation.id] = conversation
        self._publish(StoreEventKind.CONVERSATION_ADDED, conversation.id)
        return conversation

    def assign_id(self, temporary_id: str, durable_id: str) -> Conversation:
        """Re-key a conversation from its placeholder id to the server's id."""
        conversation = self._conversations.pop(temporary_id, None)
        if conversation is None:
            raise KeyError(f"Unknown conversation: {temporary_id}")
        conversation.id = durable_id
        conversation.messages = [
            m.model_copy(update={"conversationId": durable_id}) for m in conversation.messages
        ]
        self._conversations[durable_id] = conversation
        logger.info("[Store] Conversation %s is now %s", temporary_id, durable_id)
        self._publish(StoreEventKind.CONVERSATION_RENAMED, durable_id, temporary_id)
        return conversation

    async def load_index(self) -> List[Conversation]:
        """Register every conversation the server lists for the current user.

        Raises:
            HistoryLoadError: If the index request fails.
        """
        history = self._require_attached()[1]
        summaries = await history.client.list_conversations()
        return [
            self.register(s.participants, conversation_id=s.id, linked_job_id=s.linkedJobId)
            for s in summaries
        ]

    # =========================================================================
    # UI intents
    # =========================================================================

    async def open(self, conversation_id: str) -> Conversation:
        """Show a conversation: join its room and load history if nothing is cached.

        A history failure is non-fatal: it is logged and published as
        ``HISTORY_FAILED`` while cached messages stay browsable.

        Raises:
            KeyError: Unknown conversation.
            JoinTimeoutError: The room join failed; retried on the next open.
        """
        rooms, history = self._require_attached()
        conversation = self.require(conversation_id)
        self._set_visibility(conversation, Visibility.OPEN)

        needs_history = not any(
            m.status == DeliveryStatus.CONFIRMED and not _is_local_notice(m)
            for m in conversation.messages
        )

        # Join before fetching so nothing falls between the page and live events
        join_error: Optional[JoinTimeoutError] = None
        try:
            await rooms.join_room(conversation_id)
        except JoinTimeoutError as exc:
            logger.warning("[Store] %s", exc)
            join_error = exc

        if needs_history:
            try:
                await history.load_history(conversation_id)
            except HistoryLoadError as exc:
                logger.warning("[Store] %s", exc)
                self._publish(StoreEventKind.HISTORY_FAILED, conversation_id, exc.reason)

        if join_error is not None:
            raise join_error
        return conversation

    async def initiate(
        self, participants: Participants, linked_job_id: Optional[str] = None
    ) -> Conversation:
        """Start a new conversation and obtain its durable id from the server.

        The conversation is visible under a temporary id right away. Once the
        server assigns the durable id the projection is re-keyed and its room
        joined.

        Raises:
            HistoryLoadError: The server did not create the conversation; the
                projection keeps its temporary id.
            JoinTimeoutError: The room join failed.
        """
        rooms, history = self._require_attached()
        conversation = self.register(participants, linked_job_id=linked_job_id)
        self._set_visibility(conversation, Visibility.OPEN)

        durable_id = await history.client.create_conversation(participants, linked_job_id)
        conversation = self.assign_id(conversation.id, durable_id)
        await rooms.join_room(durable_id)
        return conversation

    async def close(self, conversation_id: str) -> None:
        """Hide a conversation and leave its room.

        Cached confirmed messages are dropped so that reopening rebuilds the
        projection from history. Pending and failed entries are kept: an
        in-flight send is not cancelled by closing. Membership notices
        recorded by ``add_participant`` exist only here, so they are kept too.
        """
        conversation = self.require(conversation_id)
        self._set_visibility(conversation, Visibility.CLOSED)
        kept = [
            m for m in conversation.messages
            if m.status != DeliveryStatus.CONFIRMED or _is_local_notice(m)
        ]
        if len(kept) != len(conversation.messages):
            conversation.messages = kept
            self._publish(StoreEventKind.MESSAGES_CHANGED, conversation_id)
        conversation.historyCursor = None
        if self._rooms is not None:
            await self._rooms.leave_room(conversation_id)

    def minimize(self, conversation_id: str, compact: bool = False) -> None:
        """Minimize to a preview (or compact) bubble; the room stays joined."""
        conversation = self.require(conversation_id)
        if not conversation.is_visible:
            return
        target = Visibility.MINIMIZED_COMPACT if compact else Visibility.MINIMIZED_PREVIEW
        self._set_visibility(conversation, target)

    def restore(self, conversation_id: str) -> None:
        conversation = self.require(conversation_id)
        if conversation.is_visible:
            self._set_visibility(conversation, Visibility.OPEN)

    def add_participant(
        self, conversation_id: str, participant: Participant, role: SenderRole
    ) -> bool:
        """Append a facilitator and record a system message.

        Membership only grows. Re-adding the same participant is a no-op.

        Returns:
            True if membership changed, False if the participant was already
            a member.

        Raises:
            ValueError: A different facilitator is already present, or the
                role is not facilitator.
        """
        conversation = self.require(conversation_id)
        members = conversation.participants

        if participant.id in members.member_ids():
            logger.debug("[Store] %s already in %s", participant.id, conversation_id)
            return False
        if role != SenderRole.FACILITATOR:
            raise ValueError(f"Cannot add a {role.value} to an existing conversation")
        if members.facilitatorId is not None:
            raise ValueError(f"Conversation {conversation_id} already has a facilitator")

        name = participant.name or participant.id
        conversation.participants = members.model_copy(
            update={"facilitatorId": participant.id, "facilitatorName": name}
        )
        self.insert_message(
            conversation_id,
            Message(
                id=new_temporary_id("system"),
                conversationId=conversation_id,
                senderRole=SenderRole.FACILITATOR,
                senderId=SYSTEM_SENDER,
                content=f"{name} was added",
                type=MessageType.SYSTEM,
            ),
        )
        logger.info("[Store] %s added to %s as facilitator", participant.id, conversation_id)
        self._publish(StoreEventKind.PARTICIPANTS_CHANGED, conversation_id)
        return True

    # =========================================================================
    # Merge primitives
    # =========================================================================

    def insert_message(self, conversation_id: str, message: Message) -> Message:
        """Insert in timestamp order, or replace the entry with the same id."""
        messages = self.require(conversation_id).messages
        index = self._index_of(messages, message.id)
        if index is not None:
            messages[index] = message
            self._restore_order(messages)
        else:
            position = bisect.bisect_right(messages, message.createdAt, key=_timestamp)
            messages.insert(position, message)
        self._publish(StoreEventKind.MESSAGES_CHANGED, conversation_id)
        return message

    def reconcile(self, conversation_id: str, correlation_id: str, confirmed: Message) -> bool:
        """Replace the unconfirmed entry carrying ``correlation_id`` in place.

        Returns:
            False if no unconfirmed entry carries that correlation id.
        """
        messages = self.require(conversation_id).messages
        index = next(
            (
                i for i, m in enumerate(messages)
                if m.correlationId == correlation_id and m.status != DeliveryStatus.CONFIRMED
            ),
            None,
        )
        if index is None:
            return False

        confirmed = confirmed.model_copy(update={"status": DeliveryStatus.CONFIRMED})
        duplicate = self._index_of(messages, confirmed.id)
        if duplicate is not None:
            # The durable copy already arrived (e.g. in a history page)
            messages[duplicate] = confirmed
            del messages[index]
        else:
            messages[index] = confirmed
        self._restore_order(messages)
        self._publish(StoreEventKind.MESSAGES_CHANGED, conversation_id)
        return True

    def merge_messages(self, conversation_id: str, incoming: Iterable[Message]) -> int:
        """Union ``incoming`` into the list by id, then re-sort by timestamp.

        Incoming messages carrying the correlation id of a local pending or
        failed entry reconcile that entry instead of being added.

        Returns:
            Number of messages that were not present before.
        """
        conversation = self.require(conversation_id)
        messages = list(conversation.messages)
        by_id = {m.id: i for i, m in enumerate(messages)}
        added = 0

        for message in incoming:
            message = message.model_copy(update={"status": DeliveryStatus.CONFIRMED})
            if message.id in by_id:
                messages[by_id[message.id]] = message
                continue
            local = None
            if message.correlationId:
                local = next(
                    (
                        i for i, m in enumerate(messages)
                        if m.correlationId == message.correlationId
                        and m.status != DeliveryStatus.CONFIRMED
                    ),
                    None,
                )
            if local is not None:
                del by_id[messages[local].id]
                messages[local] = message
                by_id[message.id] = local
                continue
            by_id[message.id] = len(messages)
            messages.append(message)
            added += 1

        messages.sort(key=_timestamp)
        conversation.messages = messages
        self._publish(StoreEventKind.MESSAGES_CHANGED, conversation_id)
        return added

    def set_status(
        self, conversation_id: str, message_id: str, status: DeliveryStatus
    ) -> Optional[Message]:
        messages = self.require(conversation_id).messages
        index = self._index_of(messages, message_id)
        if index is None:
            return None
        messages[index] = messages[index].model_copy(update={"status": status})
        self._publish(StoreEventKind.MESSAGES_CHANGED, conversation_id)
        return messages[index]

    def find_by_correlation(self, conversation_id: str, correlation_id: str) -> Optional[Message]:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        return next(
            (m for m in conversation.messages if m.correlationId == correlation_id), None
        )

    def record_read(self, conversation_id: str, user_id: str, read_at: float) -> None:
        conversation = self.require(conversation_id)
        previous = conversation.readBy.get(user_id, 0.0)
        conversation.readBy = {**conversation.readBy, user_id: max(previous, read_at)}
        self._publish(StoreEventKind.READ_RECEIPT, conversation_id, user_id)

    def set_loading(self, conversation_id: str, loading: bool) -> None:
        conversation = self.require(conversation_id)
        if conversation.loading != loading:
            conversation.loading = loading
            self._publish(StoreEventKind.LOADING_CHANGED, conversation_id)

    @staticmethod
    def _index_of(messages: List[Message], message_id: str) -> Optional[int]:
        for i, message in enumerate(messages):
            if message.id == message_id:
                return i
        return None

    @staticmethod
    def _restore_order(messages: List[Message]) -> None:
        if any(a.createdAt > b.createdAt for a, b in zip(messages, messages[1:])):
            messages.sort(key=_timestamp)

    # =========================================================================
    # Subscribers
    # =========================================================================

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a UI subscriber. Returns a callable that unsubscribes it."""
        self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe

    def _publish(
        self,
        kind: StoreEventKind,
        conversation_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        event = StoreEvent(kind=kind, conversation_id=conversation_id, detail=detail)
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("[Store] Subscriber failed on %s: %s", kind.value, exc)

    # =========================================================================
    # Internals
    # =========================================================================

    def _set_visibility(self, conversation: Conversation, visibility: Visibility) -> None:
        if conversation.visibility != visibility:
            conversation.visibility = visibility
            self._publish(StoreEventKind.VISIBILITY_CHANGED, conversation.id, visibility.value)

    def _require_attached(self):
        if self._rooms is None or self._history is None:
            raise RuntimeError("ConversationStore is not attached to a session")
        return self._rooms, self._history

    async def _resync_after_rejoin(self, conversation_id: str) -> None:
        """Merge messages missed while the connection was down."""
        if self._history is None or conversation_id not in self._conversations:
            return
        try:
            await self._history.catch_up(conversation_id)
        except HistoryLoadError as exc:
            logger.warning("[Store] Resync after reconnect failed: %s", exc)
            self._publish(StoreEventKind.HISTORY_FAILED, conversation_id, exc.reason)
