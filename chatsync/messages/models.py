"""Message model and the reconciliation rules applied to it.

Identity:
    Two records are the same logical message iff their server ``id`` values
    are both present and equal, OR their ``clientId`` values are both present
    and equal.

Merge:
    The server-confirmed record wins every field it carries. Fields it does
    not carry (unset or None) are kept from the local record, which is how
    transient local state such as an attachment preview survives the server
    echo. ``readBy`` is the union of both, so read state never shrinks.

Order:
    ``createdAt`` ascending, then ``id`` (or ``clientId`` for optimistic
    records) as a stable tie-break.

Every function here is pure: it returns new lists and never mutates the
records it is given.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_client_id() -> str:
    return str(uuid.uuid4())


def _ref_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        inner = value.get("_id", value.get("id"))
        return str(inner) if inner is not None else None
    return str(value)


class Message(BaseModel):
    """One chat message, optimistic or server-confirmed.

    Accepts the resource server's wire shape (``_id``, ``chat``, ``sender``,
    ``content``, embedded user documents in ``readBy``) as well as its own
    field names. Unknown server fields are kept as extras.

    Attributes:
        id: Server-assigned id; None until the server acknowledges the message.
        clientId: Locally generated id, present only on optimistic sends.
        chatId: Chat the message belongs to.
        senderId: Author user id.
        body: Text content.
        attachments: Attachment descriptors as sent by the server.
        createdAt: Creation time (timezone-aware, UTC when unspecified).
        readBy: User ids that have read the message; only ever grows.
        preview: Local-only attachment preview, never echoed by the server.
        uploadProgress: Local-only upload progress in [0, 1].
    """
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("id", "_id"))
    clientId: Optional[str] = Field(default=None)
    chatId: Optional[str] = Field(default=None, validation_alias=AliasChoices("chatId", "chat"))
    senderId: Optional[str] = Field(default=None, validation_alias=AliasChoices("senderId", "sender"))
    body: Optional[str] = Field(default=None, validation_alias=AliasChoices("body", "content"))
    attachments: Optional[List[Any]] = Field(default=None)
    createdAt: datetime = Field(default_factory=_utcnow)
    readBy: List[str] = Field(default_factory=list)

    preview: Optional[str] = Field(default=None)
    uploadProgress: Optional[float] = Field(default=None)

    @model_validator(mode="before")
    @classmethod
    def _drop_private_keys(cls, data: Any) -> Any:
        # Storage bookkeeping such as Mongo's "__v" is not message state
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if k == "_id" or not k.startswith("_")}
        return data

    @field_validator("id", "chatId", "senderId", "clientId", mode="before")
    @classmethod
    def _reference_to_id(cls, value: Any) -> Optional[str]:
        return _ref_id(value)

    @field_validator("readBy", mode="before")
    @classmethod
    def _read_by_ids(cls, value: Any) -> List[str]:
        if value is None:
            return []
        seen: List[str] = []
        for entry in value:
            user_id = _ref_id(entry)
            if user_id and user_id not in seen:
                seen.append(user_id)
        return seen

    @field_validator("createdAt", mode="after")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def pending(self) -> bool:
        """True for an optimistic record the server has not acknowledged."""
        return self.id is None


# =============================================================================
# Identity and ordering
# =============================================================================


def same_message(a: Message, b: Message) -> bool:
    if a.id is not None and b.id is not None and a.id == b.id:
        return True
    return a.clientId is not None and b.clientId is not None and a.clientId == b.clientId


def sort_key(message: Message) -> Tuple[datetime, str]:
    return (message.createdAt, message.id or message.clientId or "")


def sort_messages(messages: Iterable[Message]) -> List[Message]:
    return sorted(messages, key=sort_key)


# =============================================================================
# Merge
# =============================================================================

_MERGED_SEPARATELY = {"readBy"}


def _present(record: Message, name: str) -> bool:
    return name in record.model_fields_set and getattr(record, name) is not None


def _union(primary: List[str], secondary: List[str]) -> List[str]:
    merged = list(primary)
    for user_id in secondary:
        if user_id not in merged:
            merged.append(user_id)
    return merged


def merge_records(existing: Message, incoming: Message) -> Message:
    """Merge two records of the same logical message.

    The server-confirmed side is the one carrying an ``id``; when both or
    neither do, ``incoming`` is treated as the newer truth.
    """
    if incoming.id is None and existing.id is not None:
        server, local = existing, incoming
    else:
        server, local = incoming, existing

    data: Dict[str, Any] = {}
    data.update(local.model_extra or {})
    data.update(server.model_extra or {})
    for name in Message.model_fields:
        if name in _MERGED_SEPARATELY:
            continue
        if _present(server, name):
            data[name] = getattr(server, name)
        elif _present(local, name):
            data[name] = getattr(local, name)
    data.setdefault("createdAt", local.createdAt)
    data["readBy"] = _union(server.readBy, local.readBy)
    return Message.model_validate(data)


def upsert(messages: List[Message], incoming: Message) -> List[Message]:
    """Insert ``incoming`` or fold it into every record it is the same as.

    More than one existing record can match (one by ``id``, another by
    ``clientId``); they collapse into a single entry.
    """
    merged = incoming
    rest: List[Message] = []
    matches: List[Message] = []
    for message in messages:
        if same_message(message, incoming):
            matches.append(message)
        else:
            rest.append(message)
    for match in matches:
        merged = merge_records(match, merged)
    rest.append(merged)
    return sort_messages(rest)


def merge_page(existing: List[Message], page: List[Message], replace: bool) -> List[Message]:
    """Merge one fetched page into a ledger's messages.

    With ``replace`` (page 1) server records absent from the page are
    dropped, while optimistic records without an ``id`` are kept unless the
    page carries their server counterpart. Without ``replace`` the page is
    appended. Either way the result is deduplicated and re-sorted, and
    applying the same page twice yields the same list.
    """
    if replace:
        base = [
            m for m in existing
            if m.id is None or any(same_message(m, p) for p in page)
        ]
    else:
        base = list(existing)
    for message in page:
        base = upsert(base, message)
    return sort_messages(base)


def apply_read(
    messages: List[Message], user_id: str, message_id: Optional[str] = None
) -> Tuple[List[Message], int]:
    """Append ``user_id`` to ``readBy`` of the selected messages.

    Returns:
        Tuple of (new message list, number of records that changed).
    """
    changed = 0
    updated: List[Message] = []
    for message in messages:
        if message_id is not None and message.id != message_id:
            updated.append(message)
            continue
        if user_id in message.readBy:
            updated.append(message)
            continue
        updated.append(message.model_copy(update={"readBy": [*message.readBy, user_id]}))
        changed += 1
    return updated, changed


# =============================================================================
# Ledger
# =============================================================================


class Ledger(BaseModel):
    """Per-chat message history and its pagination cursor.

    Attributes:
        messages: Ordered, deduplicated messages.
        page: Last fetched page.
        limit: Page size of the last fetch.
        hasMore: True iff the last fetched page came back full.
    """
    messages: List[Message] = Field(default_factory=list)
    page: int = Field(default=1)
    limit: int = Field(default=50)
    hasMore: bool = Field(default=True)


class SendPayload(BaseModel):
    """Outgoing message as posted to ``POST /message``."""
    model_config = ConfigDict(populate_by_name=True)

    chatId: Optional[str] = Field(default=None)
    body: str = Field(default="", validation_alias=AliasChoices("body", "content"))
    attachments: List[Any] = Field(default_factory=list)
    clientId: Optional[str] = Field(default=None)

    def to_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {"chatId": self.chatId, "content": self.body}
        if self.attachments:
            wire["attachments"] = self.attachments
        if self.clientId:
            wire["clientId"] = self.clientId
        return wire
