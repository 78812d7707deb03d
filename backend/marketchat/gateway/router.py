"""Gateway router providing the chat WebSocket and history HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: one multiplexed socket per session, rooms per conversation
    - GET /chat/{conversation_id}/messages: Cursor-paginated message history
    - GET /chats: Conversations of the authenticated user
    - POST /chats: Create a conversation
    - POST /chats/{conversation_id}/participants: Add a facilitator

Every request authenticates with ``Authorization: Bearer <token>``; tokens
are mapped to users by ``gateway.users`` in the settings file. Browser
clients that cannot set headers on a WebSocket may pass ``?token=``.

Protocol Message Types (client -> server):
    - join: Join a conversation room -> joined (or error join_failed)
    - leave: Leave a conversation room
    - send: Chat message with client correlationId -> message (room broadcast)
    - typing: Typing indicator -> typing (room broadcast, sender excluded)
    - mark_read: Read receipt -> read_receipt (room broadcast)
"""
import logging
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from marketchat.chat.schemas import (
    ERROR_INVALID_EVENT,
    ERROR_JOIN_FAILED,
    ERROR_SEND_FAILED,
    ERROR_UNAUTHORIZED,
    ConnectedEvent,
    ConversationSummary,
    CreateConversationRequest,
    ErrorEvent,
    HistoryPage,
    JoinedEvent,
    JoinEvent,
    LeaveEvent,
    MarkReadEvent,
    Message,
    Participant,
    ParticipantAddedEvent,
    PresenceEvent,
    ReadReceiptEvent,
    SendEvent,
    SenderRole,
    TypingEvent,
    TypingIntent,
    parse_client_event,
)
from marketchat.config import GatewayUser, get_config

from .registry import DEFAULT_PAGE_SIZE, registry

logger = logging.getLogger(__name__)

router = APIRouter()

# Close code sent after an unauthorized handshake (4000-4999: application range)
CLOSE_UNAUTHORIZED = 4401


# =============================================================================
# Authentication
# =============================================================================


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_user(token: Optional[str]) -> Optional[GatewayUser]:
    """Map a bearer token to a configured user."""
    if not token:
        return None
    return get_config().gateway.users.get(token)


def current_user(authorization: Optional[str] = Header(None)) -> GatewayUser:
    user = resolve_user(_bearer_token(authorization))
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or missing access token")
    return user


def _require_member(conversation_id: str, user: GatewayUser) -> ConversationSummary:
    summary = registry.conversations.get(conversation_id)
    if summary is None:
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")
    if user.id not in summary.participants.member_ids():
        raise HTTPException(status_code=403, detail="Not a participant of this conversation")
    return summary


def _frame(event) -> dict:
    return event.model_dump(mode="json")


# =============================================================================
# HTTP endpoints
# =============================================================================


@router.get("/chat/{conversation_id}/messages")
async def get_message_history(
    conversation_id: str,
    cursor: Optional[float] = Query(None, description="Timestamp cursor (get messages before this time)"),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, description="Number of messages to return"),
    user: GatewayUser = Depends(current_user),
) -> JSONResponse:
    """Get one page of message history for a conversation.

    Clients fetch older messages by passing the ``nextCursor`` of the
    previous page as ``cursor``.

    Args:
        conversation_id: The conversation ID.
        cursor: Unix timestamp cursor. Returns messages older than this.
                If not provided, returns the most recent messages.
        limit: Maximum number of messages (capped by gateway.max_page_size).

    Returns:
        JSON with a messages array (oldest first) and nextCursor (null when
        no older messages remain).

    Example:
        GET /chat/abc123/messages?limit=50
        GET /chat/abc123/messages?cursor=1707321600.123&limit=50
    """
    _require_member(conversation_id, user)
    limit = min(limit, get_config().gateway.max_page_size)
    messages, next_cursor = registry.get_paginated_history(conversation_id, cursor, limit)
    page = HistoryPage(messages=messages, nextCursor=next_cursor)
    return JSONResponse({
        "messages": [m.to_wire() for m in page.messages],
        "nextCursor": page.nextCursor,
    })


@router.get("/chats")
async def list_conversations(user: GatewayUser = Depends(current_user)) -> List[dict]:
    return [c.model_dump(mode="json") for c in registry.list_conversations(user.id)]


@router.post("/chats", status_code=201)
async def create_conversation(
    request: CreateConversationRequest,
    user: GatewayUser = Depends(current_user),
) -> dict:
    """Create a conversation. The caller must be one of its participants."""
    if user.id not in request.participants.member_ids():
        raise HTTPException(status_code=403, detail="Caller must be a participant")
    summary = registry.create_conversation(request.participants, request.linkedJobId)
    return summary.model_dump(mode="json")


@router.post("/chats/{conversation_id}/participants")
async def add_participant(
    conversation_id: str,
    participant: Participant,
    user: GatewayUser = Depends(current_user),
) -> dict:
    """Add a facilitator and announce it to the room."""
    _require_member(conversation_id, user)
    try:
        summary, changed = registry.add_facilitator(conversation_id, participant.id, participant.name)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if changed:
        logger.info(f"[Gateway] Facilitator {participant.id} added to {conversation_id}")
        await registry.broadcast(_frame(ParticipantAddedEvent(
            conversationId=conversation_id,
            participant=participant,
            role=SenderRole.FACILITATOR,
        )), conversation_id)
    return summary.model_dump(mode="json")


# =============================================================================
# WebSocket endpoint
# =============================================================================


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token for clients without header support"),
) -> None:
    """WebSocket endpoint multiplexing every conversation of one session.

    Protocol Flow:
        1. Client connects with a bearer token
           -> Server sends: {type: "connected", userId, role}
           -> or {type: "error", code: "unauthorized"} and closes with 4401
        2. Client sends: {type: "join", conversationId}
           -> Server sends: {type: "joined", conversationId}
           -> Server broadcasts: {type: "presence", online: true}
        3. Client sends: {type: "send", conversationId, content, correlationId}
           -> Server broadcasts: {type: "message", message: {..., correlationId}}
        4. On disconnect -> Server broadcasts presence offline to every room
    """
    credential = _bearer_token(websocket.headers.get("authorization")) or token
    user = resolve_user(credential)

    await websocket.accept()
    if user is None:
        logger.warning("[WS] Rejected connection with invalid credential")
        await websocket.send_json(_frame(ErrorEvent(
            code=ERROR_UNAUTHORIZED, message="Invalid or missing access token"
        )))
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return

    registry.register_socket(websocket, user)
    await websocket.send_json(_frame(ConnectedEvent(userId=user.id, role=SenderRole(user.role))))
    logger.info(f"[WS] Connected user {user.id} ({user.role})")

    try:
        while True:
            data = await websocket.receive_json()
            try:
                event = parse_client_event(data)
            except ValidationError as e:
                logger.debug(f"[WS] Invalid frame from {user.id}: {e}")
                await websocket.send_json(_frame(ErrorEvent(
                    code=ERROR_INVALID_EVENT, message="Invalid event format"
                )))
                continue
            await _handle_event(websocket, user, event)

    except WebSocketDisconnect:
        left_rooms = registry.unregister_socket(websocket)
        logger.info(f"[WS] User {user.id} disconnected, leaving {len(left_rooms)} room(s)")
        for conversation_id in left_rooms:
            await registry.broadcast(_frame(PresenceEvent(
                conversationId=conversation_id, userId=user.id, online=False
            )), conversation_id)


async def _handle_event(websocket: WebSocket, user: GatewayUser, event) -> None:
    if isinstance(event, JoinEvent):
        await _handle_join(websocket, user, event)
    elif isinstance(event, LeaveEvent):
        if registry.leave(websocket, event.conversationId):
            await registry.broadcast(_frame(PresenceEvent(
                conversationId=event.conversationId, userId=user.id, online=False
            )), event.conversationId)
    elif isinstance(event, SendEvent):
        await _handle_send(websocket, user, event)
    elif isinstance(event, TypingIntent):
        if registry.in_room(websocket, event.conversationId):
            await registry.broadcast_except(_frame(TypingEvent(
                conversationId=event.conversationId, userId=user.id, isTyping=event.isTyping
            )), event.conversationId, exclude_websocket=websocket)
    elif isinstance(event, MarkReadEvent):
        if registry.in_room(websocket, event.conversationId):
            read_at = registry.mark_read(event.conversationId, user.id)
            await registry.broadcast(_frame(ReadReceiptEvent(
                conversationId=event.conversationId, userId=user.id, readAt=read_at
            )), event.conversationId)


async def _handle_join(websocket: WebSocket, user: GatewayUser, event: JoinEvent) -> None:
    conversation_id = event.conversationId
    if not registry.is_member(conversation_id, user.id):
        logger.warning(f"[WS] User {user.id} may not join {conversation_id}")
        await websocket.send_json(_frame(ErrorEvent(
            code=ERROR_JOIN_FAILED,
            message="Not a participant of this conversation",
            conversationId=conversation_id,
        )))
        return

    newly_joined = registry.join(websocket, conversation_id)
    await websocket.send_json(_frame(JoinedEvent(conversationId=conversation_id)))
    if newly_joined:
        await registry.broadcast_except(_frame(PresenceEvent(
            conversationId=conversation_id, userId=user.id, online=True
        )), conversation_id, exclude_websocket=websocket)


async def _handle_send(websocket: WebSocket, user: GatewayUser, event: SendEvent) -> None:
    conversation_id = event.conversationId

    def reject(reason: str) -> dict:
        return _frame(ErrorEvent(
            code=ERROR_SEND_FAILED,
            message=reason,
            conversationId=conversation_id,
            correlationId=event.correlationId,
        ))

    if not registry.in_room(websocket, conversation_id):
        await websocket.send_json(reject("Join the conversation before sending"))
        return
    if not event.content or not event.content.strip():
        await websocket.send_json(reject("Invalid message format: content is required"))
        return

    # At-least-once delivery: a re-sent correlation id re-broadcasts the stored message
    duplicate = registry.find_duplicate(conversation_id, event.correlationId)
    if duplicate is not None:
        logger.debug(f"[WS] Duplicate send {event.correlationId} re-broadcast as {duplicate.id}")
        await registry.broadcast({"type": "message", "message": duplicate.to_wire()}, conversation_id)
        return

    # SECURITY: sender identity comes from the authenticated socket, never the frame
    message = registry.add_message(Message(
        id=str(uuid.uuid4()),
        conversationId=conversation_id,
        senderRole=SenderRole(user.role),
        senderId=user.id,
        content=event.content.strip(),
        type=event.messageType,
        correlationId=event.correlationId,
    ))
    logger.info(
        f"[WS] Message {message.id} from {user.id} to {registry.get_room_size(conversation_id)} connection(s)"
    )
    await registry.broadcast({"type": "message", "message": message.to_wire()}, conversation_id)
