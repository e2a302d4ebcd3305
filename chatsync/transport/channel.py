"""Live bidirectional event channel.

The live channel carries two kinds of traffic:

    Emitted by the client:
        join_room(chatId), leave_room(chatId)
    Consumed by the client:
        new_message(message), messages_read({chatId, messageId?, userId}),
        room_joined(chatId)

Frames are JSON objects ``{"event": <name>, "data": <payload>}``.

Connection setup (TLS, reconnection backoff) is the caller's concern; this
module only defines the emit/dispatch contract and a ``websockets``-based
implementation of it.
"""
import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import websockets

from ..config import ChannelSettings

logger = logging.getLogger(__name__)

# Emitted
JOIN_ROOM = "join_room"
LEAVE_ROOM = "leave_room"

# Consumed
NEW_MESSAGE = "new_message"
MESSAGES_READ = "messages_read"
ROOM_JOINED = "room_joined"

EventHandler = Callable[[Any], Union[None, Awaitable[None]]]


class LiveChannel(ABC):
    """Abstract live channel.

    Implementations deliver ``emit`` calls to the remote side and feed
    inbound frames to ``dispatch``.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[EventHandler]] = {}

    @abstractmethod
    async def emit(self, event: str, data: Any) -> None:
        """Send one event to the remote side."""

    def on(self, event: str, handler: EventHandler) -> None:
        """Register a handler for an inbound event."""
        self._handlers.setdefault(event, []).append(handler)

    async def dispatch(self, event: str, data: Any) -> None:
        """Run every handler registered for ``event``.

        A failing handler is logged and the remaining handlers still run.
        """
        handlers = self._handlers.get(event)
        if not handlers:
            logger.debug("[Channel] No handler for event %s", event)
            return
        for handler in list(handlers):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("[Channel] Handler for %s failed", event)

    async def close(self) -> None:
        return None


class NullChannel(LiveChannel):
    """Channel used when live updates are disabled: emits are dropped."""

    async def emit(self, event: str, data: Any) -> None:
        logger.debug("[Channel] Live channel disabled, dropping %s(%s)", event, data)


class WebSocketChannel(LiveChannel):
    """``websockets`` client speaking the JSON frame protocol.

    Args:
        settings: Channel section of the client settings.
    """

    def __init__(self, settings: Optional[ChannelSettings] = None) -> None:
        super().__init__()
        self.settings = settings or ChannelSettings()
        self._ws = None
        self._listener: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        """Open the socket and start the inbound listener task."""
        if self._ws is not None:
            return
        self._ws = await websockets.connect(
            self.settings.url,
            open_timeout=self.settings.open_timeout_seconds,
        )
        self._listener = asyncio.create_task(self._listen())
        logger.info("[Channel] Connected to %s", self.settings.url)

    async def emit(self, event: str, data: Any) -> None:
        if self._ws is None:
            logger.warning("[Channel] Not connected, cannot emit %s(%s)", event, data)
            return
        await self._ws.send(json.dumps({"event": event, "data": data}))
        logger.debug("[Channel] Emitted %s(%s)", event, data)

    async def _listen(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    frame = json.loads(raw)
                except (TypeError, ValueError):
                    logger.warning("[Channel] Dropping non-JSON frame")
                    continue
                if not isinstance(frame, dict) or "event" not in frame:
                    logger.warning("[Channel] Dropping malformed frame: %r", frame)
                    continue
                await self.dispatch(frame["event"], frame.get("data"))
        except websockets.ConnectionClosed as e:
            logger.info("[Channel] Connection closed: %s", e)
        finally:
            self._ws = None

    async def close(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is not None:
            await ws.close()
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        logger.info("[Channel] Closed")
