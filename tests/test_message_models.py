"""Tests for message identity, merge and ordering rules."""
from datetime import datetime, timezone

from chatsync.messages.models import (
    Message,
    SendPayload,
    apply_read,
    merge_page,
    merge_records,
    same_message,
    sort_messages,
    upsert,
)

T0 = "2024-01-01T10:00:00+00:00"
T1 = "2024-01-01T10:01:00+00:00"


def server_record(message_id, created_at=T0, **extra):
    payload = {
        "_id": message_id,
        "chat": "c1",
        "sender": {"_id": "u1", "name": "Alice"},
        "content": f"body of {message_id}",
        "createdAt": created_at,
        "readBy": [],
        "__v": 0,
    }
    payload.update(extra)
    return Message.model_validate(payload)


class TestWireShape:
    def test_server_fields_are_normalized(self):
        message = server_record("m1", readBy=[{"_id": "u2"}, "u3", "u2"])
        assert message.id == "m1"
        assert message.chatId == "c1"
        assert message.senderId == "u1"
        assert message.body == "body of m1"
        assert message.readBy == ["u2", "u3"]
        assert message.createdAt == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
        assert "__v" not in (message.model_extra or {})
        assert message.pending is False

    def test_naive_timestamp_is_utc(self):
        message = Message(id="m1", createdAt="2024-01-01T10:00:00")
        assert message.createdAt.tzinfo is not None

    def test_unknown_fields_kept_as_extras(self):
        message = server_record("m1", reactions=["+1"])
        assert message.model_extra["reactions"] == ["+1"]

    def test_send_payload_wire(self):
        payload = SendPayload(chatId="c1", body="hi", clientId="k1")
        assert payload.to_wire() == {"chatId": "c1", "content": "hi", "clientId": "k1"}
        assert SendPayload.model_validate({"chatId": "c1", "content": "x"}).body == "x"


class TestIdentity:
    def test_same_server_id(self):
        assert same_message(Message(id="m1"), Message(id="m1", clientId="k1"))

    def test_same_client_id(self):
        assert same_message(Message(clientId="k1"), Message(id="m1", clientId="k1"))

    def test_missing_ids_never_match(self):
        assert not same_message(Message(body="a"), Message(body="a"))
        assert not same_message(Message(id="m1"), Message(clientId="k1"))


class TestMerge:
    def test_server_fields_win_and_preview_survives(self):
        local = Message(clientId="k1", chatId="c1", body="draft", preview="blob:1", createdAt=T1)
        echo = server_record("m1", clientId="k1")
        merged = merge_records(local, echo)
        assert merged.id == "m1"
        assert merged.body == "body of m1"
        assert merged.preview == "blob:1"
        assert merged.createdAt == echo.createdAt

    def test_server_record_detected_regardless_of_argument_order(self):
        local = Message(clientId="k1", body="draft", preview="blob:1")
        echo = server_record("m1", clientId="k1")
        assert merge_records(local, echo).model_dump() == merge_records(echo, local).model_dump()

    def test_read_by_is_union(self):
        existing = server_record("m1", readBy=["u2"])
        incoming = server_record("m1", readBy=["u3"])
        assert merge_records(existing, incoming).readBy == ["u3", "u2"]

    def test_upsert_is_idempotent(self):
        record = server_record("m1")
        once = upsert([], record)
        twice = upsert(once, record)
        assert [m.model_dump() for m in once] == [m.model_dump() for m in twice]
        assert len(twice) == 1

    def test_dedup_converges_in_both_arrival_orders(self):
        optimistic = Message(clientId="k1", chatId="c1", body="hi", preview="blob:1")
        echo = server_record("m1", clientId="k1", content="hi")
        push = server_record("m1", content="hi", readBy=["u2"])

        rest_first = upsert(upsert(upsert([], optimistic), echo), push)
        push_first = upsert(upsert(upsert([], optimistic), push), echo)

        assert len(rest_first) == 1
        assert len(push_first) == 1
        assert rest_first[0].model_dump() == push_first[0].model_dump()
        assert rest_first[0].id == "m1"
        assert rest_first[0].clientId == "k1"
        assert rest_first[0].preview == "blob:1"
        assert rest_first[0].readBy == ["u2"]


class TestOrdering:
    def test_created_at_then_id(self):
        ordered = sort_messages([
            server_record("m3", T1),
            server_record("m2", T0),
            server_record("m1", T0),
        ])
        assert [m.id for m in ordered] == ["m1", "m2", "m3"]

    def test_optimistic_ties_break_on_client_id(self):
        ordered = sort_messages([
            Message(clientId="k2", createdAt=T0),
            Message(clientId="k1", createdAt=T0),
        ])
        assert [m.clientId for m in ordered] == ["k1", "k2"]


class TestMergePage:
    def test_replace_keeps_unmatched_optimistic(self):
        existing = [server_record("m0"), Message(clientId="k1", body="pending", createdAt=T1)]
        merged = merge_page(existing, [server_record("m1")], replace=True)
        assert [m.id for m in merged] == ["m1", None]
        assert merged[1].clientId == "k1"

    def test_replace_absorbs_acknowledged_optimistic(self):
        existing = [Message(clientId="k1", body="pending", preview="blob:1")]
        merged = merge_page(existing, [server_record("m1", clientId="k1")], replace=True)
        assert len(merged) == 1
        assert merged[0].preview == "blob:1"

    def test_append_and_repeat_is_idempotent(self):
        page1 = [server_record("m1", T0)]
        page2 = [server_record("m2", T1)]
        once = merge_page(merge_page([], page1, replace=True), page2, replace=False)
        again = merge_page(once, page2, replace=False)
        assert [m.id for m in again] == ["m1", "m2"]
        assert [m.model_dump() for m in once] == [m.model_dump() for m in again]


class TestApplyRead:
    def test_appends_once(self):
        messages = [server_record("m1"), server_record("m2", readBy=["u2"])]
        messages, changed = apply_read(messages, "u2")
        assert changed == 1
        messages, changed = apply_read(messages, "u2")
        assert changed == 0
        assert all(m.readBy == ["u2"] for m in messages)

    def test_single_message(self):
        messages, changed = apply_read([server_record("m1"), server_record("m2")], "u3", "m2")
        assert changed == 1
        assert messages[0].readBy == []
        assert messages[1].readBy == ["u3"]

    def test_later_server_copy_cannot_shrink_read_state(self):
        messages, _ = apply_read([server_record("m1")], "u2")
        merged = upsert(messages, server_record("m1", readBy=[]))
        assert merged[0].readBy == ["u2"]
