"""SyncEngine: builds and wires the chatsync components.

One engine per signed-in client. It owns the shared ``ApiClient`` and live
channel, hands every component the session gate's read-only accessor, and
routes inbound live events:

    new_message    -> MessageLedger.receive
    messages_read  -> ReadReceiptTracker.apply_read_event
    room_joined    -> RoomChannel.acknowledge_join

When a session is gained the gate's authenticated listener connects the
live channel and loads the first chat page. When it is lost the teardown
listener leaves the current room and clears the registry and every ledger.
"""
import asyncio
import logging
from typing import Any, List, Optional

import httpx
import websockets

from .chats.registry import ChatRegistry
from .config import ClientSettings, get_config
from .errors import OperationResult
from .messages.ledger import MessageLedger
from .messages.models import SendPayload
from .notices import NoticeBoard
from .receipts.tracker import ReadReceiptTracker
from .rooms.channel import RoomChannel
from .session.gate import SessionGate
from .transport.channel import (
    MESSAGES_READ,
    NEW_MESSAGE,
    ROOM_JOINED,
    LiveChannel,
    NullChannel,
    WebSocketChannel,
)
from .transport.http import ApiClient
from .users.directory import UserDirectory

logger = logging.getLogger(__name__)


class SyncEngine:
    """Top-level facade over the chatsync components.

    Args:
        settings: Client settings; the process-wide config when omitted.
        api: Pre-built REST client. Built from ``settings.api`` otherwise.
        channel: Pre-built live channel. A ``WebSocketChannel`` (or a
            ``NullChannel`` when live updates are disabled) otherwise.
        transport: httpx transport for the REST client built here.
    """

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        api: Optional[ApiClient] = None,
        channel: Optional[LiveChannel] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_config()
        self.notices = NoticeBoard(max_notices=self.settings.notices.max_notices)
        self.api = api or ApiClient(self.settings.api, transport=transport)
        if channel is None:
            channel = (
                WebSocketChannel(self.settings.channel)
                if self.settings.channel.enabled
                else NullChannel()
            )
        self.channel = channel

        self.gate = SessionGate(self.api, self.notices)
        reader = self.gate.reader
        pagination = self.settings.pagination

        self.registry = ChatRegistry(self.api, reader, self.notices, pagination)
        self.rooms = RoomChannel(self.channel, reader, on_selection=self.registry.set_selection)
        self.ledger = MessageLedger(self.api, reader, self.notices, pagination)
        self.receipts = ReadReceiptTracker(self.api, reader, self.ledger, self.notices)
        self.users = UserDirectory(
            self.api, reader, self.notices, on_account_deleted=self.gate.log_out
        )

        self.gate.add_teardown_listener(self._teardown)
        self.gate.add_authenticated_listener(self._on_authenticated)
        self.channel.on(NEW_MESSAGE, self.ledger.receive)
        self.channel.on(MESSAGES_READ, self.receipts.apply_read_event)
        self.channel.on(ROOM_JOINED, self._on_room_joined)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def boot(self) -> OperationResult:
        """Check the session; when authenticated, load the first chat page.

        A session gained by this check is set up by the authenticated
        listener; an already established one is refreshed here.
        """
        was_authenticated = self.gate.authenticated
        session = await self.gate.check_auth()
        if not session.authenticated:
            logger.info("[Engine] Booted without a session")
            return OperationResult.ok(session)

        if was_authenticated:
            result = await self._on_authenticated()
            if not result:
                return result
        logger.info("[Engine] Booted as %s with %d chat(s)", session.userId, len(self.registry))
        return OperationResult.ok(session)

    async def _on_authenticated(self) -> OperationResult:
        """Connect the live channel and load the first chat page."""
        await self._connect_channel()
        return await self.registry.fetch_chats(page=1)

    async def _connect_channel(self) -> None:
        if not isinstance(self.channel, WebSocketChannel) or self.channel.connected:
            return
        try:
            await self.channel.connect()
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            logger.warning("[Engine] Live channel unavailable, continuing without it: %s", e)

    async def _teardown(self) -> None:
        await self.rooms.teardown()
        self.registry.clear()
        self.ledger.clear_all()
        logger.info("[Engine] Session state torn down")

    async def aclose(self) -> None:
        """Close the live channel and the HTTP client."""
        await self.channel.close()
        await self.api.aclose()

    async def __aenter__(self) -> "SyncEngine":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # =========================================================================
    # Live events
    # =========================================================================

    def _on_room_joined(self, data: Any) -> bool:
        chat_id = data.get("chatId") if isinstance(data, dict) else data
        return self.rooms.acknowledge_join(chat_id)

    # =========================================================================
    # Chats
    # =========================================================================

    async def select_chat(self, chat: Any) -> OperationResult:
        """Switch rooms, then load the first message page of the new chat."""
        result = await self.rooms.select(chat)
        if not result:
            return result

        transition = result.data
        if transition.superseded or transition.joined is None:
            return result
        if not self.rooms.is_current(transition.generation):
            return result

        page = await self.ledger.fetch_page(transition.joined, page=1)
        if not page:
            return page
        return result

    async def access_chat(self, peer_user_id: str) -> OperationResult:
        result = await self.registry.access_chat(peer_user_id)
        if not result:
            return result
        await self.select_chat(result.data)
        return result

    async def create_group_chat(self, name: str, user_ids: List[str]) -> OperationResult:
        result = await self.registry.create_group_chat(name, user_ids)
        if not result:
            return result
        await self.select_chat(result.data)
        return result

    async def delete_chat(self, chat_id: str) -> OperationResult:
        """Delete a chat; leave its room if selected and drop its ledger."""
        result = await self.registry.delete_chat(chat_id)
        if not result:
            return result
        if self.rooms.current_room == chat_id:
            await self.rooms.select(None)
        self.ledger.clear(chat_id)
        return result

    # =========================================================================
    # Messages
    # =========================================================================

    async def send_message(
        self,
        chat_id: str,
        body: str,
        attachments: Optional[List[Any]] = None,
        optimistic: bool = False,
    ) -> OperationResult:
        """Send a message, optionally staging it before the server replies.

        A staged entry that the server rejects is discarded; it is never
        retried.
        """
        client_id = None
        if optimistic:
            staged = self.ledger.stage(chat_id, body, attachments=attachments)
            if not staged:
                return staged
            client_id = staged.data.clientId

        payload = SendPayload(
            chatId=chat_id, body=body, attachments=attachments or [], clientId=client_id
        )
        result = await self.ledger.send(payload)
        if not result and client_id is not None:
            self.ledger.discard(chat_id, client_id)
        return result
