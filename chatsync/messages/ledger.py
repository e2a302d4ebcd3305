"""Message ledger: per-chat ordered message collections.

REST pages, REST send responses, live-channel pushes and locally staged
optimistic messages all enter a ledger through the same two merge paths
(``merge_page`` and ``upsert`` in ``models``), so the final state does not
depend on which source delivers a message first or how often it arrives.

Every operation that suspends on the network records the ledger's clear
epoch before the request and re-checks it afterwards: a response that lands
after its chat was cleared (chat deleted, session lost) is dropped instead
of resurrecting the ledger.
"""
import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from ..config import PaginationSettings
from ..errors import InvalidTarget, OperationResult, RemoteFailure, SyncError, Unauthenticated
from ..notices import NoticeBoard
from ..session.gate import SessionReader, guard
from ..transport.http import ApiClient
from .models import (
    Ledger,
    Message,
    SendPayload,
    apply_read,
    merge_page,
    new_client_id,
    upsert,
)

logger = logging.getLogger(__name__)


def _parse_message(payload: Any, chat_id: Optional[str] = None) -> Message:
    try:
        message = payload if isinstance(payload, Message) else Message.model_validate(payload)
    except ValidationError as e:
        raise RemoteFailure(f"Malformed message payload: {e}") from e
    if message.chatId is None and chat_id is not None:
        message = message.model_copy(update={"chatId": chat_id})
    return message


class MessageLedger:
    """Owns one ``Ledger`` per chat.

    Args:
        api: Shared REST client.
        session: Read-only session accessor.
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

        # chat_id -> Ledger
        self.ledgers: Dict[str, Ledger] = {}

        # Bumped by clear()/clear_all() so in-flight responses can detect it
        self._global_epoch = 0
        self._chat_epochs: Dict[str, int] = {}

    # =========================================================================
    # Read access
    # =========================================================================

    def get(self, chat_id: str) -> Optional[Ledger]:
        return self.ledgers.get(chat_id)

    def messages(self, chat_id: str) -> List[Message]:
        ledger = self.ledgers.get(chat_id)
        return list(ledger.messages) if ledger else []

    def chat_ids(self) -> List[str]:
        return list(self.ledgers.keys())

    def _ledger(self, chat_id: str) -> Ledger:
        if chat_id not in self.ledgers:
            self.ledgers[chat_id] = Ledger(limit=self._pagination.message_page_size)
        return self.ledgers[chat_id]

    def _epoch(self, chat_id: str) -> tuple:
        return (self._global_epoch, self._chat_epochs.get(chat_id, 0))

    # =========================================================================
    # Pagination
    # =========================================================================

    async def fetch_page(
        self,
        chat_id: Optional[str],
        page: int = 1,
        limit: Optional[int] = None,
        sort_ascending: bool = True,
    ) -> OperationResult:
        """Fetch one page of history and merge it into the chat's ledger.

        Page 1 is a replacement merge that keeps unacknowledged optimistic
        entries; later pages are appended. ``hasMore`` is recomputed from
        the size of the returned page.
        """
        limit = self._pagination.clamp(limit, self._pagination.message_page_size)
        try:
            guard(self._session)
            if not chat_id:
                raise InvalidTarget("Missing chat id")
            epoch = self._epoch(chat_id)
            payload = await self._api.get(
                f"/message/{chat_id}",
                params={"page": page, "limit": limit, "sort": "asc" if sort_ascending else "desc"},
            )
            guard(self._session)
            if self._epoch(chat_id) != epoch:
                raise InvalidTarget("Ledger was cleared while the page was in flight")

            payload = payload if isinstance(payload, dict) else {"data": payload or []}
            fetched = [_parse_message(item, chat_id) for item in payload.get("data") or []]
        except SyncError as e:
            logger.warning("[Ledger] fetch_page(chat=%s, page=%s) failed: %s", chat_id, page, e.message)
            return OperationResult.fail(e)

        res_page = int(payload.get("page") or page)
        res_limit = int(payload.get("limit") or limit)

        ledger = self._ledger(chat_id)
        ledger.messages = merge_page(ledger.messages, fetched, replace=res_page == 1)
        ledger.page = res_page
        ledger.limit = res_limit
        ledger.hasMore = len(fetched) == res_limit
        logger.info(
            "[Ledger] chat=%s page=%s: %d fetched, %d held, has_more=%s",
            chat_id, res_page, len(fetched), len(ledger.messages), ledger.hasMore,
        )
        return OperationResult.ok(ledger)

    async def fetch_next_page(self, chat_id: str) -> OperationResult:
        """Fetch the page after the last one fetched, if any remain."""
        ledger = self.ledgers.get(chat_id)
        if ledger is None:
            return await self.fetch_page(chat_id, page=1)
        if not ledger.hasMore:
            return OperationResult.ok(ledger, message="No more pages")
        return await self.fetch_page(chat_id, page=ledger.page + 1, limit=ledger.limit)

    # =========================================================================
    # Sending
    # =========================================================================

    def stage(
        self,
        chat_id: str,
        body: str,
        attachments: Optional[List[Any]] = None,
        preview: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> OperationResult:
        """Record an optimistic message before the server has seen it."""
        try:
            session = guard(self._session)
            if not chat_id:
                raise InvalidTarget("Missing chat id")
        except SyncError as e:
            return OperationResult.fail(e)

        fields: Dict[str, Any] = {
            "clientId": client_id or new_client_id(),
            "chatId": chat_id,
            "senderId": session.userId,
            "body": body,
        }
        if attachments:
            fields["attachments"] = list(attachments)
        if preview is not None:
            fields["preview"] = preview
        message = Message.model_validate(fields)

        ledger = self._ledger(chat_id)
        ledger.messages = upsert(ledger.messages, message)
        logger.debug("[Ledger] Staged optimistic message %s in chat %s", message.clientId, chat_id)
        return OperationResult.ok(message)

    def discard(self, chat_id: str, client_id: str) -> bool:
        """Drop an optimistic entry that the server never acknowledged."""
        ledger = self.ledgers.get(chat_id)
        if ledger is None:
            return False
        before = len(ledger.messages)
        ledger.messages = [
            m for m in ledger.messages
            if not (m.id is None and m.clientId == client_id)
        ]
        return len(ledger.messages) < before

    async def send(
        self,
        payload: Union[SendPayload, Dict[str, Any]],
        files: Optional[Dict[str, Any]] = None,
    ) -> OperationResult:
        """Post a message and merge the server's record into the ledger.

        A matching optimistic entry (same ``clientId``) is replaced by the
        merged record. On failure nothing is created or removed.
        """
        try:
            guard(self._session)
            try:
                outgoing = payload if isinstance(payload, SendPayload) else SendPayload.model_validate(payload)
            except ValidationError as e:
                raise InvalidTarget(f"Invalid message payload: {e}") from e
            if not outgoing.chatId:
                raise InvalidTarget("Missing chat id")
            chat_id = outgoing.chatId
            epoch = self._epoch(chat_id)

            if files:
                wire = {k: v for k, v in outgoing.to_wire().items() if k != "attachments"}
                response = await self._api.post("/message", data=wire, files=files)
            else:
                response = await self._api.post("/message", outgoing.to_wire())
            guard(self._session)
            message = _parse_message(response, chat_id)
        except Unauthenticated as e:
            self._notices.error("Login required to send message")
            return OperationResult.fail(e)
        except SyncError as e:
            logger.warning("[Ledger] send failed: %s", e.message)
            self._notices.error(e.message if e.status_code else "Failed to send message")
            return OperationResult.fail(e)

        if message.clientId is None and outgoing.clientId:
            message = message.model_copy(update={"clientId": outgoing.clientId})

        if self._epoch(chat_id) != epoch:
            logger.info("[Ledger] chat %s cleared during send, not merging %s", chat_id, message.id)
            return OperationResult.ok(message)
        ledger = self._ledger(message.chatId or chat_id)
        ledger.messages = upsert(ledger.messages, message)
        return OperationResult.ok(message)

    # =========================================================================
    # Live channel
    # =========================================================================

    def receive(self, payload: Any) -> OperationResult:
        """Merge a message pushed over the live channel."""
        try:
            guard(self._session)
            message = _parse_message(payload)
            if not message.chatId:
                raise InvalidTarget("Pushed message has no chat id")
        except SyncError as e:
            logger.debug("[Ledger] Ignoring pushed message: %s", e.message)
            return OperationResult.fail(e)

        ledger = self._ledger(message.chatId)
        ledger.messages = upsert(ledger.messages, message)
        return OperationResult.ok(message)

    # =========================================================================
    # Read state
    # =========================================================================

    def apply_read(
        self,
        user_id: str,
        chat_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> int:
        """Add ``user_id`` to ``readBy`` of every selected message.

        Returns:
            Number of messages whose read state changed.
        """
        changed = 0
        for cid, ledger in self.ledgers.items():
            if chat_id is not None and cid != chat_id:
                continue
            ledger.messages, count = apply_read(ledger.messages, user_id, message_id)
            changed += count
        return changed

    # =========================================================================
    # Deletion and cleanup
    # =========================================================================

    async def delete(self, message_id: Optional[str], chat_id: Optional[str] = None) -> OperationResult:
        """Delete a message remotely, then drop it locally (success only)."""
        try:
            guard(self._session)
            if not message_id:
                raise InvalidTarget("Missing message id")
            await self._api.delete(f"/message/{message_id}")
            guard(self._session)
        except SyncError as e:
            logger.warning("[Ledger] delete(%s) failed: %s", message_id, e.message)
            self._notices.error(e.message if e.status_code else "Failed to delete message")
            return OperationResult.fail(e)

        removed = 0
        for cid, ledger in self.ledgers.items():
            if chat_id is not None and cid != chat_id:
                continue
            before = len(ledger.messages)
            ledger.messages = [m for m in ledger.messages if m.id != message_id]
            removed += before - len(ledger.messages)
        return OperationResult.ok({"messageId": message_id, "removed": removed})

    def clear(self, chat_id: Optional[str]) -> None:
        """Drop one chat's ledger. Not guarded."""
        if not chat_id:
            return
        self.ledgers.pop(chat_id, None)
        self._chat_epochs[chat_id] = self._chat_epochs.get(chat_id, 0) + 1
        logger.info("[Ledger] Cleared chat %s", chat_id)

    def clear_all(self) -> None:
        """Drop every ledger. Not guarded."""
        self.ledgers = {}
        self._global_epoch += 1
        logger.info("[Ledger] Cleared all chats")
