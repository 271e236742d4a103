"""Public library API for shellmate: Session class and Result dataclass."""

import logging
import threading
from dataclasses import dataclass

from .conversation import Conversation, ConversationStore, Message
from .report import ReportCollector
from .supervisor import DEFAULT_SHELL, ProcessRecord, ProcessSupervisor
from .tools import DEFAULT_TIMEOUT, MAX_TIMEOUT, TOOLS

logger = logging.getLogger(__name__)

DEFAULT_CONVERSATION_ID = "default"


@dataclass
class Result:
    """Result of one Session.send() call."""

    conversation_id: str
    answer: str | None
    exhausted: bool
    messages: list[Message]


class Session:
    """Programmatic interface to the shellmate agent loop.

    Owns one process supervisor, one conversation store and (optionally)
    one SQLite database for its whole life. Both the CLI and the HTTP
    server sit on top of a Session.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str = "openai",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_rounds: int = 10,
        max_output_tokens: int | None = 4096,
        temperature: float | None = None,
        command_timeout: int = DEFAULT_TIMEOUT,
        shell: str = DEFAULT_SHELL,
        system_prompt: str | None = None,
        no_system_prompt: bool = False,
        db_path: str | None = None,
        verbose: bool = False,
        install_signal_handlers: bool = False,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_rounds = max(1, max_rounds)
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.command_timeout = min(max(1, command_timeout), MAX_TIMEOUT)
        self.shell = shell
        self.system_prompt = system_prompt
        self.no_system_prompt = no_system_prompt
        self.db_path = db_path
        self.verbose = verbose

        self.supervisor = ProcessSupervisor(shell=shell, cwd=base_dir)
        if install_signal_handlers:
            self.supervisor.install_shutdown_hook()

        db = None
        if db_path:
            from .db import Database

            # An unusable database fails here rather than on first write.
            db = Database(db_path)
        self.store = ConversationStore(db)
        if db is not None:
            self.store.load_all()

        # Provider state (cached after first _setup())
        self._setup_done = False
        self.model_id: str | None = None
        self._llm_kwargs: dict = {}

        self._conv_locks: dict[str, threading.Lock] = {}
        self._conv_locks_guard = threading.Lock()
        self._closed = False

    def _setup(self) -> None:
        """Resolve the provider once, on first use."""
        if self._setup_done:
            return

        from .agent import resolve_provider

        self.model_id, llm_kwargs = resolve_provider(
            self.provider, self.model, self.api_key, self.base_url
        )
        llm_kwargs["max_output_tokens"] = self.max_output_tokens
        llm_kwargs["temperature"] = self.temperature
        self._llm_kwargs = llm_kwargs

        if self.verbose:
            from . import fmt

            fmt.init()

        self._setup_done = True

    def _system_content(self) -> str | None:
        if self.no_system_prompt:
            return None
        if self.system_prompt:
            return self.system_prompt
        from .agent import DEFAULT_SYSTEM_PROMPT

        return DEFAULT_SYSTEM_PROMPT

    def _conversation_lock(self, conversation_id: str) -> threading.Lock:
        with self._conv_locks_guard:
            return self._conv_locks.setdefault(conversation_id, threading.Lock())

    def send(
        self,
        conversation_id: str,
        text: str,
        *,
        callback=None,
        cancel: threading.Event | None = None,
        report: ReportCollector | None = None,
    ) -> Result:
        """Add a user message and run the agent loop until it answers.

        Requests for the same conversation are serialized; different
        conversations run concurrently. callback(msg) sees every new
        message in append order. LLM failures raise AgentError.
        """
        from . import agent

        self._setup()
        conversation_id = conversation_id or DEFAULT_CONVERSATION_ID

        with self._conversation_lock(conversation_id):
            new_messages, exhausted = agent.run_agent_loop(
                self.store,
                conversation_id,
                text,
                TOOLS,
                supervisor=self.supervisor,
                model_id=self.model_id,
                llm_kwargs=self._llm_kwargs,
                max_rounds=self.max_rounds,
                base_dir=self.base_dir,
                shell=self.shell,
                command_timeout=self.command_timeout,
                system_prompt=self._system_content(),
                verbose=self.verbose,
                callback=callback,
                cancel=cancel,
                report=report,
            )

        return Result(
            conversation_id=conversation_id,
            answer=agent.last_answer(new_messages),
            exhausted=exhausted,
            messages=new_messages,
        )

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self.store.get(conversation_id)

    def get_or_create_conversation(self, conversation_id: str) -> Conversation:
        return self.store.get_or_create(conversation_id or DEFAULT_CONVERSATION_ID)

    def list_conversations(self) -> list[Conversation]:
        return self.store.list()

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation and kill the background processes it started.

        Waits for any running ``send`` on the same conversation to finish.
        """
        with self._conversation_lock(conversation_id):
            killed = self.supervisor.kill_by_conversation(conversation_id)
            if killed:
                logger.info(
                    "killed %d process(es) of deleted conversation %s",
                    killed,
                    conversation_id,
                )
            return self.store.delete(conversation_id)

    def list_processes(self) -> list[ProcessRecord]:
        return self.supervisor.list()

    def kill_process(self, pid: int) -> ProcessRecord:
        """Kill a background process. Raises ProcessNotFound or KillFailed."""
        return self.supervisor.kill(pid)

    def close(self) -> None:
        """Kill every background process and close the database."""
        if self._closed:
            return
        self._closed = True
        killed = self.supervisor.kill_all()
        if killed:
            logger.info("killed %d background process(es) on shutdown", killed)
        if self.store.db is not None:
            self.store.db.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False
