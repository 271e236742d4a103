"""Conversation log and its translation to LLM chat messages.

The log is append-only. Pairing between assistant tool-call requests and
tool results is only judged when the whole log is rendered for the model:
render() heals a broken log by inserting placeholder tool results, so one
corrupted round cannot make a conversation unusable.
"""

import logging
import threading
import time
from dataclasses import dataclass, field

from .report import DatabaseError

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant", "tool")

_id_lock = threading.Lock()
_last_id_ns = 0


def new_message_id() -> str:
    """Return a unique, monotonically increasing message id ("msg_<ns>")."""
    global _last_id_ns
    with _id_lock:
        now = time.time_ns()
        if now <= _last_id_ns:
            now = _last_id_ns + 1
        _last_id_ns = now
    return f"msg_{now}"


def missing_response_text(tool_call_id: str) -> str:
    return (
        f"error: missing tool response for tool_call_id {tool_call_id}. "
        "Conversation state may be corrupted."
    )


@dataclass(frozen=True)
class ToolCallRequest:
    """A model-issued request to call a tool. Read-only once created."""

    id: str
    name: str
    arguments: str
    type: str = "function"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "arguments": self.arguments,
        }

    def to_llm(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class Message:
    role: str
    content: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    tool_call_id: str | None = None
    id: str = field(default_factory=new_message_id)

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"unknown message role {self.role!r}")
        if self.content is None:
            self.content = ""

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
        }
        if self.tool_call_id is not None:
            d["tool_call_id"] = self.tool_call_id
        return d


def to_llm_message(msg: Message) -> dict:
    """Convert one Message to the OpenAI chat-completions message format."""
    if msg.role == "tool":
        return {"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.content}
    if msg.role == "assistant" and msg.tool_calls:
        return {
            "role": "assistant",
            "content": msg.content,
            "tool_calls": [tc.to_llm() for tc in msg.tool_calls],
        }
    return {"role": msg.role, "content": msg.content}


@dataclass
class Conversation:
    id: str
    messages: list[Message] = field(default_factory=list)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {"id": self.id, "messages": [m.to_dict() for m in self.messages]}


def render_messages(messages: list[Message]) -> list[dict]:
    """Render a message log, synthesizing any missing tool results.

    Requests still pending when the next non-tool message arrives (or when
    the log ends) get a placeholder result, in request order.

    Tool results that answer nothing pending are dropped, so unlike every
    other message they do not survive a render. Providers reject a tool
    message whose ``tool_call_id`` matches no preceding request.
    """
    rendered: list[dict] = []
    pending: dict[str, None] = {}

    def _flush(reason: str) -> None:
        logger.warning(
            "%d tool call(s) without a response %s; conversation state may be "
            "corrupted, adding placeholder results",
            len(pending),
            reason,
        )
        for tool_call_id in pending:
            rendered.append(
                {
                    "role": "tool",
                    "tool_call_id": tool_call_id,
                    "content": missing_response_text(tool_call_id),
                }
            )
        pending.clear()

    for msg in messages:
        if msg.role == "tool":
            if msg.tool_call_id not in pending:
                logger.warning(
                    "dropping tool message %s: no pending tool call %r",
                    msg.id,
                    msg.tool_call_id,
                )
                continue
            del pending[msg.tool_call_id]
            rendered.append(to_llm_message(msg))
            continue

        if pending:
            _flush(f"before {msg.role} message {msg.id}")
        rendered.append(to_llm_message(msg))
        if msg.role == "assistant":
            for tc in msg.tool_calls:
                pending[tc.id] = None

    if pending:
        _flush("at end of conversation")
    return rendered


class ConversationStore:
    """In-memory conversation logs, optionally mirrored to a Database.

    Durable writes are best effort: a failed write is logged and the
    in-memory append stands.
    """

    def __init__(self, db=None):
        self.db = db
        self._conversations: dict[str, Conversation] = {}
        self._lock = threading.Lock()

    def _load(self, conversation_id: str) -> Conversation | None:
        if self.db is None:
            return None
        try:
            return self.db.load_conversation(conversation_id)
        except DatabaseError as e:
            logger.warning("failed to load conversation %s: %s", conversation_id, e)
            return None

    def load_all(self) -> int:
        """Warm the cache with every conversation in the database."""
        if self.db is None:
            return 0
        try:
            ids = self.db.list_conversation_ids()
        except DatabaseError as e:
            logger.warning("failed to list conversations: %s", e)
            return 0
        loaded = 0
        for conversation_id in ids:
            conv = self._load(conversation_id)
            if conv is None:
                continue
            with self._lock:
                self._conversations.setdefault(conversation_id, conv)
            loaded += 1
        logger.info("Loaded %d conversations from database", loaded)
        return loaded

    def get(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            conv = self._conversations.get(conversation_id)
        if conv is not None:
            return conv
        conv = self._load(conversation_id)
        if conv is None:
            return None
        with self._lock:
            return self._conversations.setdefault(conversation_id, conv)

    def get_or_create(self, conversation_id: str) -> Conversation:
        conv = self.get(conversation_id)
        if conv is not None:
            return conv
        with self._lock:
            conv = self._conversations.get(conversation_id)
            if conv is not None:
                return conv
            conv = Conversation(id=conversation_id)
            self._conversations[conversation_id] = conv
        if self.db is not None:
            try:
                self.db.save_conversation(conversation_id)
            except DatabaseError as e:
                logger.warning("failed to save conversation %s: %s", conversation_id, e)
        return conv

    def append(self, conversation_id: str, message: Message) -> Message:
        """Add message to the end of the conversation, creating it if needed."""
        conv = self.get_or_create(conversation_id)
        with self._lock:
            conv.messages.append(message)
            conv.updated_at = time.time()
        if self.db is not None:
            try:
                self.db.save_message(conversation_id, message)
            except DatabaseError as e:
                logger.warning(
                    "failed to save %s message %s: %s", message.role, message.id, e
                )
        return message

    def messages(self, conversation_id: str) -> list[Message]:
        conv = self.get(conversation_id)
        if conv is None:
            return []
        with self._lock:
            return list(conv.messages)

    def render(self, conversation_id: str) -> list[dict]:
        """Render the conversation for the LLM with the pairing invariant restored."""
        return render_messages(self.messages(conversation_id))

    def list(self) -> list[Conversation]:
        """Conversations held in memory, most recently updated first."""
        with self._lock:
            convs = list(self._conversations.values())
        return sorted(convs, key=lambda c: c.updated_at, reverse=True)

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            existed = self._conversations.pop(conversation_id, None) is not None
        if self.db is not None:
            try:
                existed = self.db.delete_conversation(conversation_id) or existed
            except DatabaseError as e:
                logger.warning("failed to delete conversation %s: %s", conversation_id, e)
        return existed
