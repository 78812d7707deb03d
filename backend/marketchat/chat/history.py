"""History loading: durable message pages merged into the in-memory store.

This module provides:
    - HistoryClient: httpx client for the durable history/conversation API
    - HistoryLoader: per-conversation de-duplicated loads merged by id

History API:
    - GET  /chat/{id}/messages?cursor=&limit=  -> {messages, nextCursor}
    - GET  /chats                               -> [{id, participants, linkedJobId}]
    - POST /chats                               -> {id, ...}

Pages are oldest-first; ``nextCursor`` is the ``createdAt`` of the oldest
returned message and fetches the page before it.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from marketchat.errors import HistoryLoadError

from .schemas import (
    ConversationSummary,
    CreateConversationRequest,
    DeliveryStatus,
    HistoryPage,
    MessageType,
    Participants,
)
from .store import ConversationStore

logger = logging.getLogger(__name__)


class HistoryClient:
    """Async client for the durable history store.

    Every request carries the session's bearer credential. Transport errors,
    non-2xx responses and malformed payloads all raise HistoryLoadError.
    """

    def __init__(
        self,
        base_url: str,
        credential: str,
        timeout: float = 10.0,
        page_size: int = 50,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.page_size = page_size
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Accept": "application/json",
                "Authorization": f"Bearer {credential}",
            },
            timeout=timeout,
            transport=transport,
        )

    async def fetch_history(self, conversation_id: str, cursor: Optional[float] = None) -> HistoryPage:
        """Fetch one page of messages, most recent first page when no cursor."""
        params: Dict[str, Any] = {"limit": self.page_size}
        if cursor is not None:
            params["cursor"] = cursor
        data = await self._request(
            "GET", f"/chat/{conversation_id}/messages", conversation_id, params=params
        )
        try:
            return HistoryPage.model_validate(data)
        except ValidationError as exc:
            raise HistoryLoadError(conversation_id, f"invalid history payload: {exc}") from exc

    async def list_conversations(self) -> List[ConversationSummary]:
        """List the conversations of the current user."""
        data = await self._request("GET", "/chats", "index")
        try:
            return [ConversationSummary.model_validate(item) for item in data or []]
        except (TypeError, ValidationError) as exc:
            raise HistoryLoadError("index", f"invalid conversation index: {exc}") from exc

    async def create_conversation(
        self, participants: Participants, linked_job_id: Optional[str] = None
    ) -> str:
        """Create a conversation server-side and return its durable id."""
        body = CreateConversationRequest(participants=participants, linkedJobId=linked_job_id)
        data = await self._request("POST", "/chats", "new", json=body.model_dump(mode="json"))
        if not isinstance(data, dict) or not data.get("id"):
            raise HistoryLoadError("new", "server did not return a conversation id")
        return str(data["id"])

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, target: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            raise HistoryLoadError(
                target, f"HTTP {exc.response.status_code} from {method} {path}"
            ) from exc
        except httpx.HTTPError as exc:
            raise HistoryLoadError(target, f"{type(exc).__name__}: {exc}") from exc
        except ValueError as exc:
            raise HistoryLoadError(target, f"invalid JSON from {method} {path}") from exc


class HistoryLoader:
    """Loads history pages and merges them by message id.

    While a load for a conversation is in flight (its ``loading`` flag is
    set), further callers await the same result instead of fetching again.
    """

    def __init__(self, client: HistoryClient, store: ConversationStore, timeout: float = 10.0) -> None:
        self.client = client
        self._store = store
        self._timeout = timeout
        # conversation_id -> in-flight load task
        self._inflight: Dict[str, asyncio.Task] = {}  # type: ignore[type-arg]

    def is_loading(self, conversation_id: str) -> bool:
        return conversation_id in self._inflight


    async def load_history(self, conversation_id: str) -> int:
        """Fetch the most recent page and merge it into the store.

        Returns:
            Number of messages that were not in memory before.

        Raises:
            KeyError: Unknown conversation.
            HistoryLoadError: Fetch failed or timed out; cached state untouched.
        """
        task = self._inflight.get(conversation_id)
        if task is None:
            self._store.require(conversation_id)
            task = self._start(conversation_id, cursor=None)
        return await asyncio.shield(task)

    async def catch_up(self, conversation_id: str) -> int:
        """Fetch everything newer than the cached messages (after a reconnect).

        Pages backwards from the most recent page until a page reaches the
        newest cached confirmed message, so no gap is left between the cache
        and the latest page. Without cached messages this is ``load_history``.

        Raises:
            KeyError: Unknown conversation.
            HistoryLoadError: A fetch failed or timed out; cached state untouched.
        """
        task = self._inflight.get(conversation_id)
        if task is not None:
            try:
                await asyncio.shield(task)
            except HistoryLoadError as exc:
                logger.debug("[History] In-flight load failed before catch-up: %s", exc)
        self._store.require(conversation_id)
        return await asyncio.shield(self._start(conversation_id, cursor=None, catch_up=True))

    async def load_older(self, conversation_id: str) -> bool:
        """Fetch the page before the stored cursor (lazy pagination).

        Returns:
            False if there is nothing older to load.
        """
        task = self._inflight.get(conversation_id)
        if task is not None:
            await asyncio.shield(task)
            return True
        conversation = self._store.require(conversation_id)
        if conversation.historyCursor is None:
            return False
        await asyncio.shield(self._start(conversation_id, cursor=conversation.historyCursor))
        return True

    def _start(
        self, conversation_id: str, cursor: Optional[float], catch_up: bool = False
    ) -> "asyncio.Task":  # type: ignore[type-arg]
        task = asyncio.ensure_future(self._load(conversation_id, cursor, catch_up))
        self._inflight[conversation_id] = task
        task.add_done_callback(lambda t: self._finished(conversation_id, t))
        return task

    def _finished(self, conversation_id: str, task: "asyncio.Task") -> None:  # type: ignore[type-arg]
        if self._inflight.get(conversation_id) is task:
            del self._inflight[conversation_id]
        if not task.cancelled():
            task.exception()  # retrieved by the awaiting callers

    async def _fetch(self, conversation_id: str, cursor: Optional[float]) -> HistoryPage:
        try:
            return await asyncio.wait_for(
                self.client.fetch_history(conversation_id, cursor), timeout=self._timeout
            )
        except asyncio.TimeoutError as exc:
            raise HistoryLoadError(
                conversation_id, f"timed out after {self._timeout}s"
            ) from exc

    async def _load(self, conversation_id: str, cursor: Optional[float], catch_up: bool) -> int:
        self._store.set_loading(conversation_id, True)
        try:
            newest = None
            if catch_up:
                newest = self._newest_confirmed(self._store.require(conversation_id))

            pages = [await self._fetch(conversation_id, cursor)]
            while newest is not None and not self._reaches(pages[-1], newest):
                pages.append(await self._fetch(conversation_id, pages[-1].nextCursor))

            conversation = self._store.get(conversation_id)
            if conversation is None or not conversation.is_visible:
                logger.debug("[History] Discarding page for closed conversation %s", conversation_id)
                return 0

            fetched = [m for page in pages for m in page.messages]
            added = self._store.merge_messages(conversation_id, fetched)
            # A catch-up joins the cached tail, so the older-page cursor still holds
            if cursor is not None or (newest is None and conversation.historyCursor is None):
                conversation.historyCursor = pages[-1].nextCursor
            logger.info(
                "[History] Merged %d message(s) from %d page(s) into %s (%d new)",
                len(fetched), len(pages), conversation_id, added,
            )
            return added
        finally:
            if self._store.get(conversation_id) is not None:
                self._store.set_loading(conversation_id, False)

    @staticmethod
    def _newest_confirmed(conversation) -> Optional[float]:
        confirmed = [
            m.createdAt for m in conversation.messages
            if m.status == DeliveryStatus.CONFIRMED and m.type != MessageType.SYSTEM
        ]
        return max(confirmed) if confirmed else None

    @staticmethod
    def _reaches(page: HistoryPage, newest: float) -> bool:
        """True when ``page`` overlaps the cached tail or nothing older exists."""
        if page.nextCursor is None or not page.messages:
            return True
        return page.messages[0].createdAt <= newest
