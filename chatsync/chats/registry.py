"""Chat registry: the paginated, normalized list of the user's chats.

All operations are guarded by the session gate. Failures are reported to
the caller as an ``OperationResult`` and leave the registry untouched, with
one exception: a failed refresh of page 1 resets the registry to empty, so
callers never mistake a stale list for a fresh one.

The selected chat is held as an id and resolved against the registry on
every read; the registry never keeps a second copy of a chat.
"""
import logging
from typing import List, Optional, Union

from pydantic import ValidationError

from ..config import PaginationSettings
from ..errors import InvalidTarget, OperationResult, RemoteFailure, SyncError, Unauthenticated
from ..notices import NoticeBoard
from ..session.gate import SessionReader, guard
from ..transport.http import ApiClient
from .models import DirectChat, GroupChat, normalize_chat

logger = logging.getLogger(__name__)

ChatModel = Union[DirectChat, GroupChat]


def _unwrap_list(payload) -> list:
    if isinstance(payload, dict):
        payload = payload.get("data", [])
    return payload if isinstance(payload, list) else []


class ChatRegistry:
    """Owns the chat list, its pagination cursor and the selection.

    Args:
        api: Shared REST client.
        session: Read-only session accessor (``SessionGate.reader``).
        notices: Board receiving user-facing notices.
        pagination: Page-size defaults and bounds.
    """

    def __init__(
        self,
        api: ApiClient,
        session: SessionReader,
        notices: Optional[NoticeBoard] = None,
        pagination: Optional[PaginationSettings] = None,
    ) -> None:
        self._api = api
        self._session = session
        self._notices = notices or NoticeBoard()
        self._pagination = pagination or PaginationSettings()

        self.chats: List[ChatModel] = []
        self.page = 1
        self.limit = self._pagination.chat_page_size
        self.has_more = True
        self._selected_id: Optional[str] = None

    # =========================================================================
    # Lookup and selection
    # =========================================================================

    def get(self, chat_id: Optional[str]) -> Optional[ChatModel]:
        if not chat_id:
            return None
        return next((c for c in self.chats if c.id == chat_id), None)

    def __len__(self) -> int:
        return len(self.chats)

    @property
    def selected_id(self) -> Optional[str]:
        return self._selected_id

    @property
    def selected(self) -> Optional[ChatModel]:
        """The selected chat, resolved by id (None if it left the registry)."""
        return self.get(self._selected_id)

    def set_selection(self, chat: Optional[ChatModel]) -> None:
        self._selected_id = chat.id if chat is not None else None

    def clear(self) -> None:
        """Drop every chat and the selection (used on session teardown)."""
        self.chats = []
        self.page = 1
        self.has_more = True
        self._selected_id = None
        logger.info("[Chats] Registry cleared")

    def _replace(self, chat: ChatModel) -> bool:
        for index, existing in enumerate(self.chats):
            if existing.id == chat.id:
                self.chats[index] = chat
                return True
        return False

    def _upsert_front(self, chat: ChatModel) -> None:
        if not self._replace(chat):
            self.chats.insert(0, chat)

    def _normalize_response(self, payload) -> ChatModel:
        try:
            chat = normalize_chat(payload)
        except (TypeError, ValidationError) as e:
            raise RemoteFailure(f"Malformed chat payload: {e}") from e
        if chat is None:
            raise RemoteFailure("Empty chat payload")
        return chat

    def _report(self, error: SyncError, fallback: str) -> OperationResult:
        logger.warning("[Chats] %s: %s", fallback, error.message)
        self._notices.error(error.message if error.status_code else fallback)
        return OperationResult.fail(error)

    # =========================================================================
    # Operations
    # =========================================================================

    async def fetch_chats(self, page: Optional[int] = None, limit: Optional[int] = None) -> OperationResult:
        """Fetch one page of chats.

        Page 1 replaces the registry, later pages append. ``has_more`` is a
        page-size heuristic: the page came back full.
        """
        current_page = page or self.page
        current_limit = self._pagination.clamp(limit or self.limit, self._pagination.chat_page_size)
        try:
            guard(self._session)
            payload = await self._api.get(
                "/chat", params={"page": current_page, "limit": current_limit}
            )
            guard(self._session)
            fetched = [self._normalize_response(item) for item in _unwrap_list(payload)]
        except SyncError as e:
            logger.warning("[Chats] fetch_chats(page=%s) failed: %s", current_page, e.message)
            self.chats = []
            self.has_more = False
            return OperationResult.fail(e)

        if current_page == 1:
            self.chats = fetched
        else:
            known = {c.id for c in self.chats}
            for chat in fetched:
                if chat.id in known:
                    self._replace(chat)
                else:
                    self.chats.append(chat)
                    known.add(chat.id)
        self.page = current_page
        self.limit = current_limit
        self.has_more = len(fetched) == current_limit
        logger.info(
            "[Chats] Page %s: %d chat(s), total=%d, has_more=%s",
            current_page, len(fetched), len(self.chats), self.has_more,
        )
        return OperationResult.ok(fetched)

    async def access_chat(self, peer_user_id: str) -> OperationResult:
        """Open (or create) the direct chat with ``peer_user_id``."""
        try:
            guard(self._session)
            if not peer_user_id:
                raise InvalidTarget("Missing user id")
            payload = await self._api.post("/chat/access", {"userId": peer_user_id})
            guard(self._session)
            chat = self._normalize_response(payload)
        except Unauthenticated as e:
            self._notices.error("Login required to access chat")
            return OperationResult.fail(e)
        except SyncError as e:
            return self._report(e, "Could not open chat")

        self._upsert_front(chat)
        self.set_selection(chat)
        return OperationResult.ok(chat)

    async def create_group_chat(self, name: str, user_ids: List[str]) -> OperationResult:
        try:
            guard(self._session)
            payload = await self._api.post("/chat/group", {"name": name, "users": list(user_ids)})
            guard(self._session)
            chat = self._normalize_response(payload)
        except SyncError as e:
            return self._report(e, "Could not create group")

        self._upsert_front(chat)
        self.set_selection(chat)
        self._notices.success("Group created")
        return OperationResult.ok(chat)

    async def rename_group(self, chat_id: str, name: str) -> OperationResult:
        try:
            guard(self._session)
            if not chat_id:
                raise InvalidTarget("Missing chat id")
            payload = await self._api.put("/chat/rename", {"chatId": chat_id, "name": name})
            guard(self._session)
            updated = self._normalize_response(payload)
        except SyncError as e:
            return self._report(e, "Could not rename group")

        if not self._replace(updated):
            logger.debug("[Chats] Renamed chat %s is not in the registry", updated.id)
        return OperationResult.ok(updated)

    async def delete_chat(self, chat_id: str) -> OperationResult:
        try:
            guard(self._session)
            if not chat_id:
                raise InvalidTarget("Missing chat id")
            await self._api.delete(f"/chat/{chat_id}")
            guard(self._session)
        except SyncError as e:
            return self._report(e, "Could not delete chat")

        was_selected = self._selected_id == chat_id
        self.chats = [c for c in self.chats if c.id != chat_id]
        if was_selected:
            self._selected_id = None
        self._notices.success("Chat deleted")
        return OperationResult.ok({"chatId": chat_id, "wasSelected": was_selected})
