"""Tests for SQLite persistence."""

import sqlite3

import pytest

from shellmate.conversation import Message, ToolCallRequest
from shellmate.db import Database
from shellmate.report import DatabaseError


@pytest.fixture
def db(tmp_path):
    d = Database(tmp_path / "sub" / "agent.db")
    yield d
    d.close()


def test_creates_parent_directory(tmp_path):
    path = tmp_path / "a" / "b" / "agent.db"
    Database(path).close()
    assert path.exists()


def test_in_memory():
    d = Database(":memory:")
    d.save_message("c", Message(role="user", content="hi"))
    assert d.load_conversation("c").messages[0].content == "hi"
    d.close()


def test_load_missing(db):
    assert db.load_conversation("nope") is None


def test_save_and_load_preserves_order_and_fields(db):
    calls = [
        ToolCallRequest(id="c1", name="run_command", arguments='{"command": "ls"}'),
        ToolCallRequest(id="c2", name="list_processes", arguments="{}"),
    ]
    msgs = [
        Message(role="user", content="hi"),
        Message(role="assistant", content="", tool_calls=calls),
        Message(role="tool", content="a.txt", tool_call_id="c1"),
        Message(role="tool", content="none", tool_call_id="c2"),
        Message(role="assistant", content="done"),
    ]
    for m in msgs:
        db.save_message("conv", m)

    conv = db.load_conversation("conv")
    assert conv.id == "conv"
    assert [m.id for m in conv.messages] == [m.id for m in msgs]
    assert conv.messages[1].tool_calls == calls
    assert conv.messages[2].tool_call_id == "c1"
    assert conv.messages[0].tool_call_id is None
    assert conv.messages[4].content == "done"


def test_save_conversation_without_messages(db):
    db.save_conversation("empty")
    conv = db.load_conversation("empty")
    assert conv is not None
    assert conv.messages == []


def test_list_most_recent_first(db):
    db.save_conversation("a")
    db.save_conversation("b")
    db.save_message("a", Message(role="user", content="later"))
    assert db.list_conversation_ids() == ["a", "b"]


def test_delete_cascades(db):
    db.save_message(
        "c",
        Message(
            role="assistant",
            tool_calls=[ToolCallRequest(id="t", name="list_processes", arguments="")],
        ),
    )
    assert db.delete_conversation("c") is True
    assert db.load_conversation("c") is None
    assert db.delete_conversation("c") is False

    with sqlite3.connect(db.path) as raw:
        assert raw.execute("SELECT COUNT(*) FROM messages").fetchone()[0] == 0
        assert raw.execute("SELECT COUNT(*) FROM tool_calls").fetchone()[0] == 0


def test_duplicate_message_id_raises(db):
    msg = Message(role="user", content="hi")
    db.save_message("c", msg)
    with pytest.raises(DatabaseError):
        db.save_message("c", msg)
    assert len(db.load_conversation("c").messages) == 1


def test_unopenable_path_raises(tmp_path):
    target = tmp_path / "dir.db"
    target.mkdir()
    with pytest.raises(DatabaseError):
        Database(target)
