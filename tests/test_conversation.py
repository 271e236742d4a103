"""Tests for the conversation log, rendering and the in-memory store."""

import pytest

from shellmate.conversation import (
    ConversationStore,
    Message,
    ToolCallRequest,
    missing_response_text,
    new_message_id,
    render_messages,
)
from shellmate.db import Database


def _call(call_id, name="run_command", arguments='{"command": "ls"}'):
    return ToolCallRequest(id=call_id, name=name, arguments=arguments)


class TestMessage:
    def test_ids_are_unique_and_increasing(self):
        ids = [new_message_id() for _ in range(200)]
        assert len(set(ids)) == 200
        nums = [int(i[len("msg_"):]) for i in ids]
        assert nums == sorted(nums)

    def test_rejects_unknown_role(self):
        with pytest.raises(ValueError):
            Message(role="system", content="hi")

    def test_none_content_becomes_empty(self):
        assert Message(role="assistant", content=None).content == ""

    def test_to_dict(self):
        msg = Message(role="assistant", content="", tool_calls=[_call("c1")], id="msg_1")
        assert msg.to_dict() == {
            "id": "msg_1",
            "role": "assistant",
            "content": "",
            "tool_calls": [
                {
                    "id": "c1",
                    "type": "function",
                    "name": "run_command",
                    "arguments": '{"command": "ls"}',
                }
            ],
        }


class TestRender:
    def test_plain_exchange(self):
        rendered = render_messages(
            [Message(role="user", content="hi"), Message(role="assistant", content="hello")]
        )
        assert rendered == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]

    def test_tool_round(self):
        rendered = render_messages(
            [
                Message(role="user", content="list files"),
                Message(role="assistant", tool_calls=[_call("c1")]),
                Message(role="tool", content="a.txt", tool_call_id="c1"),
                Message(role="assistant", content="There is a.txt"),
            ]
        )
        assert [m["role"] for m in rendered] == ["user", "assistant", "tool", "assistant"]
        assert rendered[1]["tool_calls"] == [
            {
                "id": "c1",
                "type": "function",
                "function": {"name": "run_command", "arguments": '{"command": "ls"}'},
            }
        ]
        assert rendered[2] == {"role": "tool", "tool_call_id": "c1", "content": "a.txt"}

    def test_missing_result_before_next_user_message(self):
        rendered = render_messages(
            [
                Message(role="user", content="go"),
                Message(role="assistant", tool_calls=[_call("c1"), _call("c2")]),
                Message(role="tool", content="one", tool_call_id="c1"),
                Message(role="user", content="again"),
            ]
        )
        assert [m["role"] for m in rendered] == ["user", "assistant", "tool", "tool", "user"]
        assert rendered[3] == {
            "role": "tool",
            "tool_call_id": "c2",
            "content": missing_response_text("c2"),
        }

    def test_missing_result_before_next_assistant_message(self):
        rendered = render_messages(
            [
                Message(role="user", content="go"),
                Message(role="assistant", tool_calls=[_call("c1")]),
                Message(role="assistant", tool_calls=[_call("c2")]),
                Message(role="tool", content="two", tool_call_id="c2"),
            ]
        )
        assert [(m["role"], m.get("tool_call_id")) for m in rendered] == [
            ("user", None),
            ("assistant", None),
            ("tool", "c1"),
            ("assistant", None),
            ("tool", "c2"),
        ]
        assert rendered[2]["content"].startswith("error: missing tool response")
        assert rendered[4]["content"] == "two"

    def test_missing_results_at_end_in_request_order(self):
        rendered = render_messages(
            [
                Message(role="user", content="go"),
                Message(role="assistant", tool_calls=[_call("c1"), _call("c2"), _call("c3")]),
                Message(role="tool", content="two", tool_call_id="c2"),
            ]
        )
        tail = [(m["tool_call_id"], m["content"]) for m in rendered[2:]]
        assert tail == [
            ("c2", "two"),
            ("c1", missing_response_text("c1")),
            ("c3", missing_response_text("c3")),
        ]

    def test_orphan_tool_message_is_dropped(self):
        rendered = render_messages(
            [
                Message(role="user", content="hi"),
                Message(role="tool", content="stray", tool_call_id="nope"),
                Message(role="assistant", content="hello"),
            ]
        )
        assert [m["role"] for m in rendered] == ["user", "assistant"]

    def test_lone_tool_message_renders_empty(self):
        rendered = render_messages(
            [Message(role="tool", content="late result", tool_call_id="x")]
        )
        assert rendered == []

    def test_every_request_answered_once(self):
        log = [
            Message(role="user", content="go"),
            Message(role="assistant", tool_calls=[_call("a"), _call("b")]),
            Message(role="tool", content="a", tool_call_id="a"),
            Message(role="tool", content="a again", tool_call_id="a"),
            Message(role="user", content="next"),
        ]
        rendered = render_messages(log)
        answers = [m["tool_call_id"] for m in rendered if m["role"] == "tool"]
        assert answers == ["a", "b"]


class TestConversationStore:
    def test_append_creates_conversation(self):
        store = ConversationStore()
        store.append("c", Message(role="user", content="hi"))
        conv = store.get("c")
        assert conv is not None
        assert [m.content for m in conv.messages] == ["hi"]

    def test_get_missing(self):
        assert ConversationStore().get("nope") is None

    def test_get_or_create_is_idempotent(self):
        store = ConversationStore()
        assert store.get_or_create("c") is store.get_or_create("c")

    def test_messages_returns_copy(self):
        store = ConversationStore()
        store.append("c", Message(role="user", content="hi"))
        snapshot = store.messages("c")
        snapshot.append(Message(role="user", content="extra"))
        assert len(store.messages("c")) == 1

    def test_list_most_recent_first(self):
        store = ConversationStore()
        store.append("old", Message(role="user", content="1"))
        store.append("new", Message(role="user", content="2"))
        store.get("new").updated_at = store.get("old").updated_at + 10
        assert [c.id for c in store.list()] == ["new", "old"]

    def test_delete(self):
        store = ConversationStore()
        store.append("c", Message(role="user", content="hi"))
        assert store.delete("c") is True
        assert store.get("c") is None
        assert store.delete("c") is False

    def test_writes_through_to_database(self, tmp_path):
        db_path = tmp_path / "agent.db"
        store = ConversationStore(Database(db_path))
        store.append("c", Message(role="user", content="hi"))
        store.append("c", Message(role="assistant", tool_calls=[_call("c1")]))
        store.db.close()

        fresh = ConversationStore(Database(db_path))
        assert fresh.load_all() == 1
        conv = fresh.get("c")
        assert [m.role for m in conv.messages] == ["user", "assistant"]
        assert conv.messages[1].tool_calls == [_call("c1")]
        fresh.db.close()

    def test_database_failure_keeps_memory_copy(self):
        from shellmate.report import DatabaseError

        class BrokenDb:
            def save_conversation(self, cid):
                raise DatabaseError("disk full")

            def save_message(self, cid, msg):
                raise DatabaseError("disk full")

            def load_conversation(self, cid):
                return None

        store = ConversationStore(BrokenDb())
        store.append("c", Message(role="user", content="hi"))
        assert [m.content for m in store.messages("c")] == ["hi"]
