"""Read receipt tracker.

Marks messages read on the server and applies the same mark locally
without waiting for the push-back event. Local application only ever
appends to ``readBy``; nothing in chatsync removes an entry from it.
"""
import logging
from typing import Any, Optional

from ..errors import InvalidTarget, OperationResult, SyncError, Unauthenticated
from ..messages.ledger import MessageLedger
from ..notices import NoticeBoard
from ..session.gate import SessionReader, guard
from ..transport.http import ApiClient

logger = logging.getLogger(__name__)


class ReadReceiptTracker:
    """Applies read-state updates across one or many chats' ledgers.

    Args:
        api: Shared REST client.
        session: Read-only session accessor.
        ledger: Message ledger the marks are applied to.
        notices: Board receiving user-facing notices.
    """

    def __init__(
        self,
        api: ApiClient,
        session: SessionReader,
        ledger: MessageLedger,
        notices: Optional[NoticeBoard] = None,
    ) -> None:
        self._api = api
        self._session = session
        self._ledger = ledger
        self._notices = notices or NoticeBoard()

    async def mark_read(
        self,
        chat_id: Optional[str] = None,
        message_id: Optional[str] = None,
        user_id: Optional[str] = None,
        silent: bool = False,
    ) -> OperationResult:
        """Mark a chat (every message in it), one message, or both as read.

        Args:
            chat_id: Restrict to one chat; all ledgers when omitted.
            message_id: Restrict to one message; every message in scope when
                omitted.
            user_id: Reader; defaults to the authenticated user.
            silent: Suppress the user-facing failure notice. The state
                outcome is the same either way.

        Returns:
            OperationResult whose data is the number of messages changed.
        """
        try:
            session = guard(self._session)
            if not chat_id and not message_id:
                raise InvalidTarget("Missing chat id or message id")
            body = {}
            if chat_id:
                body["chatId"] = chat_id
            if message_id:
                body["messageId"] = message_id
            await self._api.put("/message/read", body)
            session = guard(self._session)
        except SyncError as e:
            logger.warning("[Receipts] mark_read(chat=%s, message=%s) failed: %s",
                           chat_id, message_id, e.message)
            if not silent:
                if isinstance(e, Unauthenticated):
                    self._notices.error("Login required")
                else:
                    self._notices.error(e.message)
            return OperationResult.fail(e)

        reader = user_id or session.userId
        if not reader:
            return OperationResult.ok(0)
        changed = self._ledger.apply_read(reader, chat_id=chat_id, message_id=message_id)
        logger.debug("[Receipts] %s read %d message(s) (chat=%s, message=%s)",
                     reader, changed, chat_id, message_id)
        return OperationResult.ok(changed)

    def apply_read_event(self, data: Any) -> OperationResult:
        """Apply a ``messages_read`` push from the live channel.

        Expected payload: ``{"userId": ..., "chatId"?: ..., "messageId"?: ...}``.
        """
        try:
            guard(self._session)
            if not isinstance(data, dict) or not data.get("userId"):
                raise InvalidTarget("Read event without user id")
            chat_id = data.get("chatId")
            message_id = data.get("messageId")
            if not chat_id and not message_id:
                raise InvalidTarget("Read event without chat id or message id")
        except SyncError as e:
            logger.debug("[Receipts] Ignoring read event: %s", e.message)
            return OperationResult.fail(e)

        changed = self._ledger.apply_read(
            str(data["userId"]),
            chat_id=str(chat_id) if chat_id else None,
            message_id=str(message_id) if message_id else None,
        )
        return OperationResult.ok(changed)
