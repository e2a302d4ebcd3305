"""Chat models.

The resource server returns chats in two historical shapes (``isGroupChat``
/ ``users`` / ``chatName`` and ``isGroup`` / ``allUsers`` / ``groupName``),
with participants either as ids or embedded user objects. ``normalize_chat``
folds both into a tagged union so the rest of the client never checks for
field presence:

    DirectChat  kind="direct"   one-to-one conversation
    GroupChat   kind="group"    named multi-user conversation
"""
from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

GROUP_PLACEHOLDER_NAME = "Group chat"


class ChatBase(BaseModel):
    """Core shared by every chat variant.

    Attributes:
        id: Server-assigned chat id.
        participantIds: Member user ids, in server order.
        name: Display name (may be empty for direct chats).
        lastActivityAt: Last update reported by the server.
    """
    id: str = Field(..., description="Chat id")
    participantIds: List[str] = Field(default_factory=list, description="Member user ids")
    name: Optional[str] = Field(default=None, description="Display name")
    lastActivityAt: Optional[datetime] = Field(default=None, description="Last activity")

    @property
    def isGroup(self) -> bool:
        return False


class DirectChat(ChatBase):
    kind: Literal["direct"] = "direct"


class GroupChat(ChatBase):
    kind: Literal["group"] = "group"
    name: str = Field(default=GROUP_PLACEHOLDER_NAME, description="Group name")
    adminId: Optional[str] = Field(default=None, description="Group admin user id")

    @property
    def isGroup(self) -> bool:
        return True


Chat = Annotated[Union[DirectChat, GroupChat], Field(discriminator="kind")]

_chat_adapter: TypeAdapter = TypeAdapter(Chat)


def _ref_id(value: Any) -> Optional[str]:
    """Id of a reference that may be a bare id or an embedded document."""
    if value is None:
        return None
    if isinstance(value, dict):
        inner = value.get("_id", value.get("id"))
        return str(inner) if inner is not None else None
    return str(value)


def normalize_chat(chat: Any) -> Optional[Union[DirectChat, GroupChat]]:
    """Fold any server chat payload (or an already normalized chat) into the union.

    Returns None for None, so callers can pass "no selection" through.
    """
    if chat is None:
        return None
    if isinstance(chat, ChatBase):
        return chat
    if not isinstance(chat, dict):
        raise TypeError(f"Cannot normalize chat from {type(chat).__name__}")

    if "kind" in chat:
        return _chat_adapter.validate_python(chat)

    is_group = chat.get("isGroupChat")
    if is_group is None:
        is_group = bool(chat.get("isGroup"))

    members = chat.get("users") or chat.get("allUsers") or chat.get("participantIds") or []
    participant_ids = [pid for pid in (_ref_id(m) for m in members) if pid]

    name = chat.get("chatName") or chat.get("groupName") or chat.get("name")
    last_activity = chat.get("lastActivityAt") or chat.get("updatedAt")

    fields = {
        "id": _ref_id(chat.get("_id", chat.get("id"))),
        "participantIds": participant_ids,
        "lastActivityAt": last_activity,
    }
    if is_group:
        fields["kind"] = "group"
        fields["name"] = name or GROUP_PLACEHOLDER_NAME
        admin = _ref_id(chat.get("groupAdmin") or chat.get("adminId"))
        if admin:
            fields["adminId"] = admin
    else:
        fields["kind"] = "direct"
        fields["name"] = name
    return _chat_adapter.validate_python(fields)
