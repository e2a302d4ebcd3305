"""Room channel: live-channel membership coupled 1:1 to the selected chat.

State is ``current_room``: either None or the id of the selected chat. A
selection change always emits ``leave_room`` for the previous room before
``join_room`` for the new one, and the component never records two rooms.

Rapid reselection is handled with a generation counter. Every ``select()``
takes a new generation before it suspends on the first emit; if another
selection starts while it is suspended, the older call sees a newer
generation on resume and stops without joining. Join acknowledgements from
the server (``room_joined``) are accepted only for the current room, so a
late acknowledgement for a superseded chat is discarded.
"""
import logging
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, ValidationError

from ..chats.models import DirectChat, GroupChat, normalize_chat
from ..errors import InvalidTarget, OperationResult, SyncError
from ..session.gate import SessionReader, guard
from ..transport.channel import JOIN_ROOM, LEAVE_ROOM, LiveChannel

logger = logging.getLogger(__name__)

ChatModel = Union[DirectChat, GroupChat]
SelectionSink = Callable[[Optional[ChatModel]], None]


class RoomTransition(BaseModel):
    """Outcome of one ``select()`` call.

    Attributes:
        generation: Selection generation assigned to the call.
        left: Room left by this call, if any.
        joined: Room joined by this call, if any.
        superseded: True when a newer selection started while this one was
            suspended; such a call never joins.
    """
    generation: int
    left: Optional[str] = None
    joined: Optional[str] = None
    superseded: bool = False


class RoomChannel:
    """Performs leave/join transitions on selection change.

    Args:
        channel: Live channel the join/leave events are emitted on.
        session: Read-only session accessor.
        on_selection: Sink receiving the new selection (normally
            ``ChatRegistry.set_selection``).
    """

    def __init__(
        self,
        channel: LiveChannel,
        session: SessionReader,
        on_selection: Optional[SelectionSink] = None,
    ) -> None:
        self._channel = channel
        self._session = session
        self._on_selection = on_selection
        self._current_room: Optional[str] = None
        self._generation = 0
        self._confirmed_room: Optional[str] = None
        self._selected_id: Optional[str] = None

    @property
    def current_room(self) -> Optional[str]:
        return self._current_room

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def join_confirmed(self) -> bool:
        """Whether the server acknowledged the join of the current room."""
        return self._current_room is not None and self._confirmed_room == self._current_room

    @property
    def selected_id(self) -> Optional[str]:
        """Id of the selected chat. The chat itself is owned by the registry."""
        return self._selected_id

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _update_selection(self, chat: Optional[ChatModel]) -> None:
        self._selected_id = chat.id if chat is not None else None
        if self._on_selection is not None:
            self._on_selection(chat)

    async def _safe_emit(self, event: str, room_id: str) -> bool:
        """Emit a room event with error handling.

        Returns:
            True if successful, False if the channel failed.
        """
        try:
            await self._channel.emit(event, room_id)
            return True
        except Exception as e:
            logger.warning("[Rooms] Failed to emit %s(%s): %s", event, room_id, e)
            return False

    async def select(self, chat: Any) -> OperationResult:
        """Select ``chat`` (a chat model, a raw payload, or None)."""
        try:
            guard(self._session)
        except SyncError as e:
            # An unauthenticated selection attempt means "no selection".
            self._update_selection(None)
            return OperationResult.fail(e)

        try:
            normalized = normalize_chat(chat)
        except (TypeError, ValidationError) as e:
            logger.warning("[Rooms] Cannot select malformed chat: %s", e)
            normalized = None
            invalid: Optional[SyncError] = InvalidTarget("Malformed chat")
        else:
            invalid = None

        self._generation += 1
        generation = self._generation
        previous = self._current_room
        transition = RoomTransition(generation=generation)

        # Record the new state before suspending so overlapping selections
        # never observe two rooms.
        self._current_room = None
        self._confirmed_room = None
        self._update_selection(normalized)

        if previous is not None:
            await self._safe_emit(LEAVE_ROOM, previous)
            transition.left = previous
            logger.info("[Rooms] Left room %s (generation %d)", previous, generation)

        if not self.is_current(generation):
            logger.info("[Rooms] Selection generation %d superseded, skipping join", generation)
            transition.superseded = True
            return OperationResult.ok(transition)

        if normalized is not None and normalized.id:
            self._current_room = normalized.id
            await self._safe_emit(JOIN_ROOM, normalized.id)
            transition.joined = normalized.id
            logger.info("[Rooms] Joined room %s (generation %d)", normalized.id, generation)

        if invalid is not None:
            return OperationResult.fail(invalid, data=transition)
        return OperationResult.ok(transition)

    def acknowledge_join(self, chat_id: Any) -> bool:
        """Handle a server ``room_joined`` acknowledgement.

        Returns:
            True if it matches the current room, False if it is stale.
        """
        chat_id = str(chat_id) if chat_id is not None else None
        if chat_id is None or chat_id != self._current_room:
            logger.info("[Rooms] Discarding stale join acknowledgement for %s", chat_id)
            return False
        self._confirmed_room = chat_id
        return True

    async def teardown(self) -> None:
        """Leave the current room and drop the selection. Not guarded."""
        self._generation += 1
        previous = self._current_room
        self._current_room = None
        self._confirmed_room = None
        self._update_selection(None)
        if previous is not None:
            await self._safe_emit(LEAVE_ROOM, previous)
            logger.info("[Rooms] Teardown left room %s", previous)
