"""SQLite persistence for conversations, messages and tool calls."""

import sqlite3
import threading
import time
from pathlib import Path

from .conversation import Conversation, Message, ToolCallRequest
from .report import DatabaseError

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS conversations (
        id          TEXT PRIMARY KEY,
        created_at  REAL NOT NULL,
        updated_at  REAL NOT NULL
    );

    CREATE TABLE IF NOT EXISTS messages (
        id               TEXT PRIMARY KEY,
        conversation_id  TEXT NOT NULL,
        seq              INTEGER NOT NULL,
        role             TEXT NOT NULL,
        content          TEXT NOT NULL,
        tool_call_id     TEXT NOT NULL DEFAULT '',
        created_at       REAL NOT NULL,
        FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS tool_calls (
        id            INTEGER PRIMARY KEY AUTOINCREMENT,
        message_id    TEXT NOT NULL,
        tool_call_id  TEXT NOT NULL,
        type          TEXT NOT NULL,
        name          TEXT NOT NULL,
        arguments     TEXT NOT NULL,
        FOREIGN KEY (message_id) REFERENCES messages(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_messages_conversation_id ON messages(conversation_id, seq);
    CREATE INDEX IF NOT EXISTS idx_tool_calls_message_id ON tool_calls(message_id);
"""

_UPSERT_CONVERSATION = """
    INSERT INTO conversations (id, created_at, updated_at)
    VALUES (?, ?, ?)
    ON CONFLICT(id) DO UPDATE SET updated_at = excluded.updated_at
"""


class Database:
    """Conversation storage backed by a single SQLite file.

    Every logical write runs in its own short transaction; the connection
    context manager commits on success and rolls back on error.
    """

    def __init__(self, path: str | Path):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self.path, timeout=5, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            if self.path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise DatabaseError(f"failed to open database {self.path}: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def save_conversation(self, conversation_id: str) -> None:
        """Create the conversation row or bump its updated_at."""
        now = time.time()
        try:
            with self._lock, self._conn:
                self._conn.execute(_UPSERT_CONVERSATION, (conversation_id, now, now))
        except sqlite3.Error as e:
            raise DatabaseError(f"failed to save conversation: {e}") from e

    def save_message(self, conversation_id: str, msg: Message) -> None:
        """Insert a message and its tool calls, creating the conversation if needed."""
        now = time.time()
        try:
            with self._lock, self._conn:
                self._conn.execute(_UPSERT_CONVERSATION, (conversation_id, now, now))
                (seq,) = self._conn.execute(
                    "SELECT COALESCE(MAX(seq), 0) + 1 FROM messages WHERE conversation_id = ?",
                    (conversation_id,),
                ).fetchone()
                self._conn.execute(
                    """
                    INSERT INTO messages
                        (id, conversation_id, seq, role, content, tool_call_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        msg.id,
                        conversation_id,
                        seq,
                        msg.role,
                        msg.content,
                        msg.tool_call_id or "",
                        now,
                    ),
                )
                self._conn.executemany(
                    """
                    INSERT INTO tool_calls (message_id, tool_call_id, type, name, arguments)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        (msg.id, tc.id, tc.type, tc.name, tc.arguments)
                        for tc in msg.tool_calls
                    ],
                )
        except sqlite3.Error as e:
            raise DatabaseError(f"failed to save message {msg.id}: {e}") from e

    def load_conversation(self, conversation_id: str) -> Conversation | None:
        """Load a conversation with all its messages, or None if absent."""
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT updated_at FROM conversations WHERE id = ?",
                    (conversation_id,),
                ).fetchone()
                if row is None:
                    return None
                msg_rows = self._conn.execute(
                    """
                    SELECT id, role, content, tool_call_id
                    FROM messages
                    WHERE conversation_id = ?
                    ORDER BY seq ASC
                    """,
                    (conversation_id,),
                ).fetchall()
                tc_rows = self._conn.execute(
                    """
                    SELECT tc.message_id, tc.tool_call_id, tc.type, tc.name, tc.arguments
                    FROM tool_calls tc
                    JOIN messages m ON m.id = tc.message_id
                    WHERE m.conversation_id = ?
                    ORDER BY tc.id ASC
                    """,
                    (conversation_id,),
                ).fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(f"failed to load conversation {conversation_id}: {e}") from e

        calls: dict[str, list[ToolCallRequest]] = {}
        for r in tc_rows:
            calls.setdefault(r["message_id"], []).append(
                ToolCallRequest(
                    id=r["tool_call_id"],
                    name=r["name"],
                    arguments=r["arguments"],
                    type=r["type"],
                )
            )

        messages = [
            Message(
                id=r["id"],
                role=r["role"],
                content=r["content"],
                tool_calls=calls.get(r["id"], []),
                tool_call_id=r["tool_call_id"] or None,
            )
            for r in msg_rows
        ]
        return Conversation(
            id=conversation_id, messages=messages, updated_at=row["updated_at"]
        )

    def list_conversation_ids(self) -> list[str]:
        """All conversation ids, most recently updated first."""
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT id FROM conversations ORDER BY updated_at DESC, rowid DESC"
                ).fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(f"failed to list conversations: {e}") from e
        return [r["id"] for r in rows]

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation; messages and tool calls cascade."""
        try:
            with self._lock, self._conn:
                cur = self._conn.execute(
                    "DELETE FROM conversations WHERE id = ?", (conversation_id,)
                )
        except sqlite3.Error as e:
            raise DatabaseError(f"failed to delete conversation: {e}") from e
        return cur.rowcount > 0
