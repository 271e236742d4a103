import argparse
import json
import logging
import os
import sys
import threading
import time
from importlib import metadata
from pathlib import Path

from . import fmt
from .config import PROVIDERS, _UNSET, apply_config_to_args, generate_config, load_config
from .conversation import ConversationStore, Message, ToolCallRequest
from .report import AgentError, ConfigError, ReportCollector
from .supervisor import ProcessSupervisor, format_duration
from .tools import TOOLS, dispatch, parse_arguments

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 10
DEFAULT_OPENAI_MODEL = "gpt-4o"
DEFAULT_LMSTUDIO_URL = "http://127.0.0.1:1234"
MAX_ARG_LOG = 1000

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant with access to a shell on the user's machine.\n"
    "Use run_command to execute shell commands and inspect their output. "
    "For long-running commands such as servers or file watchers, pass "
    "background=true: the command starts immediately and you get its PID back. "
    "Use list_processes to see what is still running and kill_process to stop "
    "a background command. Keep answers short and report what you did."
)

_encoder = None


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across rendered messages using tiktoken."""
    global _encoder
    if _encoder is None:
        import tiktoken

        _encoder = tiktoken.get_encoding("cl100k_base")
    total = 0
    for m in messages:
        content = m.get("content", "") or ""
        for tc in m.get("tool_calls") or []:
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments", "") or "")
        total += len(_encoder.encode(content))
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


def resolve_provider(
    provider: str,
    model: str | None,
    api_key: str | None,
    base_url: str | None,
) -> tuple[str, dict]:
    """Validate provider settings. Returns (model_id, llm_kwargs) for call_llm."""
    if provider not in PROVIDERS:
        raise ConfigError(f"unknown provider {provider!r}")

    if provider == "openai":
        model_id = model or DEFAULT_OPENAI_MODEL
        api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ConfigError(
                "--api-key or OPENAI_API_KEY env var required for openai provider"
            )
    elif provider == "lmstudio":
        if not model:
            raise ConfigError("--model is required when --provider is lmstudio")
        model_id = model
    else:
        if not model:
            raise ConfigError("--model is required when --provider is openrouter")
        model_id = model
        api_key = api_key or os.environ.get("OPENROUTER_API_KEY")
        if not api_key:
            raise ConfigError(
                "--api-key or OPENROUTER_API_KEY env var required for openrouter provider"
            )

    return model_id, {"provider": provider, "api_key": api_key, "base_url": base_url}


def call_llm(
    model_id,
    messages,
    tools,
    verbose,
    *,
    provider="openai",
    api_key=None,
    base_url=None,
    max_output_tokens=None,
    temperature=None,
):
    """Call LiteLLM once. Returns (message, finish_reason); any failure is an AgentError."""
    import litellm

    litellm.suppress_debug_info = True

    if provider == "openai":
        model_str = model_id if model_id.startswith("openai/") else f"openai/{model_id}"
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    elif provider == "lmstudio":
        model_str = f"openai/{model_id}"
        kwargs = {"api_base": f"{base_url or DEFAULT_LMSTUDIO_URL}/v1", "api_key": "lm-studio"}
    elif provider == "openrouter":
        # Strip only the LiteLLM prefix, not an "openrouter" org name.
        bare_id = (
            model_id[len("openrouter/") :]
            if model_id.startswith("openrouter/openrouter/")
            else model_id
        )
        model_str = f"openrouter/{bare_id}"
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    else:
        raise AgentError(f"unknown provider {provider!r}")

    if verbose:
        extra = f", temperature={temperature}" if temperature is not None else ""
        fmt.model_info(f"Calling model {model_str} with max_tokens={max_output_tokens}{extra}")

    completion_kwargs = dict(
        model=model_str,
        messages=messages,
        tools=tools,
        tool_choice="auto",
        **kwargs,
    )
    if max_output_tokens is not None:
        completion_kwargs["max_tokens"] = max_output_tokens
    if temperature is not None:
        completion_kwargs["temperature"] = temperature

    try:
        response = litellm.completion(**completion_kwargs)
    except Exception as e:
        raise AgentError(f"LLM call failed: {e}") from e

    choice = response.choices[0]
    return choice.message, choice.finish_reason


def assistant_from_llm(msg) -> Message:
    """Build an assistant Message from a LiteLLM response message."""
    tool_calls = [
        ToolCallRequest(
            id=tc.id,
            name=tc.function.name,
            arguments=tc.function.arguments or "",
            type=getattr(tc, "type", None) or "function",
        )
        for tc in (getattr(msg, "tool_calls", None) or [])
    ]
    return Message(
        role="assistant",
        content=getattr(msg, "content", None) or "",
        tool_calls=tool_calls,
    )


def handle_tool_call(
    tool_call: ToolCallRequest,
    *,
    supervisor: ProcessSupervisor,
    conversation_id: str,
    base_dir: str,
    shell: str,
    command_timeout: int,
    verbose: bool,
) -> tuple[Message, dict]:
    """Execute a single tool call and return (tool_msg, metadata).

    metadata has stable keys: name, arguments, elapsed, succeeded.
    """
    name = tool_call.name
    parsed_args, parse_error = parse_arguments(tool_call.arguments)
    if parse_error is not None:
        if verbose:
            fmt.tool_error(name, parse_error)
        return (
            Message(role="tool", content=parse_error, tool_call_id=tool_call.id),
            {"name": name, "arguments": None, "elapsed": 0.0, "succeeded": False},
        )

    if verbose:
        pretty = json.dumps(parsed_args, indent=2)
        if len(pretty) > MAX_ARG_LOG:
            pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
        fmt.tool_call(name, pretty)

    t0 = time.monotonic()
    try:
        result = dispatch(
            name,
            parsed_args,
            supervisor=supervisor,
            conversation_id=conversation_id,
            base_dir=base_dir,
            shell=shell,
            timeout=command_timeout,
        )
    except Exception as e:
        logger.exception("tool %s raised", name)
        result = f"error: {e}"
    elapsed = time.monotonic() - t0

    succeeded = not result.startswith("error:")
    if verbose:
        if not succeeded:
            fmt.tool_error(name, result)
        else:
            fmt.tool_result(name, elapsed, result[:500])

    return (
        Message(role="tool", content=result, tool_call_id=tool_call.id),
        {
            "name": name,
            "arguments": parsed_args,
            "elapsed": elapsed,
            "succeeded": succeeded,
        },
    )


def run_agent_loop(
    store: ConversationStore,
    conversation_id: str,
    user_text: str,
    tools: list,
    *,
    supervisor: ProcessSupervisor,
    model_id: str,
    llm_kwargs: dict,
    max_rounds: int = DEFAULT_MAX_ROUNDS,
    base_dir: str = ".",
    shell: str = "/bin/bash",
    command_timeout: int = 30,
    system_prompt: str | None = None,
    verbose: bool = False,
    callback=None,
    cancel: threading.Event | None = None,
    report: ReportCollector | None = None,
) -> tuple[list[Message], bool]:
    """Append user_text and run tool-calling rounds until a plain answer.

    Each round renders the conversation, calls the model once and answers
    every requested tool call, in order, with exactly one tool message.
    Stops when the model requests no tools, when cancel is set (checked
    between rounds and between tool calls), or after max_rounds model calls.

    Returns (new_messages, exhausted); exhausted is True if max_rounds hit.
    LLM failures propagate as AgentError.
    """
    new_messages: list[Message] = []

    def _append(msg: Message) -> None:
        store.append(conversation_id, msg)
        new_messages.append(msg)
        if callback is not None:
            callback(msg)

    def _cancelled() -> bool:
        return cancel is not None and cancel.is_set()

    _append(Message(role="user", content=user_text))

    rounds = 0
    while rounds < max_rounds:
        if _cancelled():
            logger.info("request cancelled, stopping after %d rounds", rounds)
            return new_messages, False
        rounds += 1

        messages = store.render(conversation_id)
        if system_prompt:
            messages.insert(0, {"role": "system", "content": system_prompt})
        if verbose:
            fmt.round_header(rounds, max_rounds, estimate_tokens(messages, tools))

        t0 = time.monotonic()
        try:
            if verbose:
                with fmt.llm_spinner():
                    msg, finish_reason = call_llm(
                        model_id, messages, tools, verbose, **llm_kwargs
                    )
            else:
                msg, finish_reason = call_llm(model_id, messages, tools, verbose, **llm_kwargs)
        except AgentError:
            if report:
                report.record_llm_call(rounds, time.monotonic() - t0, "error")
            raise
        elapsed = time.monotonic() - t0
        if verbose:
            fmt.llm_timing(elapsed, finish_reason)

        assistant = assistant_from_llm(msg)
        if report:
            report.record_llm_call(
                rounds, elapsed, finish_reason, tool_calls=len(assistant.tool_calls)
            )
        _append(assistant)

        if not assistant.tool_calls:
            if verbose:
                fmt.completion(rounds, "ok")
            return new_messages, False

        if assistant.content and verbose:
            fmt.assistant_text(assistant.content)

        answered: set[str] = set()
        for tool_call in assistant.tool_calls:
            if _cancelled():
                break
            if tool_call.id in answered:
                logger.warning("duplicate tool call id %s in one round", tool_call.id)
                continue
            tool_msg, tool_meta = handle_tool_call(
                tool_call,
                supervisor=supervisor,
                conversation_id=conversation_id,
                base_dir=base_dir,
                shell=shell,
                command_timeout=command_timeout,
                verbose=verbose,
            )
            _append(tool_msg)
            answered.add(tool_call.id)

            if report:
                report.record_tool_call(
                    rounds,
                    tool_meta["name"],
                    tool_meta["arguments"],
                    tool_meta["succeeded"],
                    tool_meta["elapsed"],
                    len(tool_msg.content),
                    error=tool_msg.content if not tool_meta["succeeded"] else None,
                )

        # Every request gets exactly one answer before the next model call.
        for tool_call in assistant.tool_calls:
            if tool_call.id in answered:
                continue
            logger.warning("tool call %s was not processed, adding error response", tool_call.id)
            _append(
                Message(
                    role="tool",
                    content=f"error: tool call {tool_call.id} was not processed (request cancelled)",
                    tool_call_id=tool_call.id,
                )
            )
            answered.add(tool_call.id)

    logger.warning(
        "reached max rounds (%d) for conversation %s, stopping tool calls",
        max_rounds,
        conversation_id,
    )
    if verbose:
        fmt.completion(rounds, "max_rounds")
    if report:
        report.record_round_cap(rounds)
    return new_messages, True


def last_answer(messages: list[Message]) -> str | None:
    """Return the most recent non-empty assistant text, if any."""
    for m in reversed(messages):
        if m.role == "assistant" and m.content:
            return m.content
    return None


def build_parser():
    """Build and return the argument parser.

    Options backed by config files default to _UNSET so that
    apply_config_to_args() can tell "not given" from "given".
    """
    parser = argparse.ArgumentParser(
        prog="shellmate",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options]\n       %(prog)s --serve [options]",
        description="A conversational shell agent: the model runs commands, including background ones, and reads their output.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--repl", action="store_true", help="Start an interactive session.")
    mode.add_argument("--serve", action="store_true", help="Run the HTTP API server.")
    mode.add_argument(
        "--list-conversations", action="store_true", help="List stored conversations and exit."
    )
    mode.add_argument(
        "--show-conversation", metavar="ID", default=None, help="Print a stored conversation and exit."
    )
    mode.add_argument(
        "--init-config",
        action="store_true",
        help="Print a template config file and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (shellmate.toml) template.",
    )

    parser.add_argument(
        "-c",
        "--conversation",
        default="default",
        help="Conversation ID to continue (default: 'default').",
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM provider: openai, lmstudio (local), openrouter.",
    )
    parser.add_argument("--model", type=str, default=_UNSET, help="Model identifier.")
    parser.add_argument(
        "--api-key", type=str, default=_UNSET, help="API key for the provider (overrides env var)."
    )
    parser.add_argument("--base-url", default=_UNSET, help="Provider base URL.")
    parser.add_argument(
        "--max-output-tokens", type=int, default=_UNSET, help="Maximum output tokens (default: 4096)."
    )
    parser.add_argument(
        "--temperature", type=float, default=_UNSET, help="Sampling temperature (default: provider default)."
    )
    parser.add_argument(
        "--max-rounds",
        type=int,
        default=_UNSET,
        help=f"Maximum model calls per message (default: {DEFAULT_MAX_ROUNDS}).",
    )
    parser.add_argument(
        "--command-timeout",
        type=int,
        default=_UNSET,
        help="Default timeout in seconds for foreground commands (default: 30).",
    )
    parser.add_argument("--shell", default=_UNSET, help="Shell used to run commands (default: /bin/bash).")

    prompt_group = parser.add_mutually_exclusive_group()
    prompt_group.add_argument("--system-prompt", type=str, default=_UNSET, help="System prompt to include.")
    prompt_group.add_argument(
        "--no-system-prompt", action="store_true", default=_UNSET, help="Omit the system message entirely."
    )

    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Working directory for commands (default: current directory).",
    )
    parser.add_argument(
        "--db-path", default=_UNSET, help="SQLite database path (default: <base-dir>/.shellmate/agent.db)."
    )
    parser.add_argument(
        "--no-db", action="store_true", default=_UNSET, help="Keep conversations in memory only."
    )
    parser.add_argument("--host", default=_UNSET, help="Bind address for --serve (default: 127.0.0.1).")
    parser.add_argument("--port", type=int, default=_UNSET, help="Port for --serve (default: 8080).")
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE (one-shot mode only).",
    )
    parser.add_argument(
        "-q", "--quiet", action="store_true", default=_UNSET, help="Suppress diagnostics; only print the answer."
    )
    parser.add_argument(
        "--verbose-log", action="store_true", help="Also show informational log records."
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color", action="store_true", default=_UNSET, help="Force ANSI color even when stderr is not a TTY."
    )
    color_group.add_argument(
        "--no-color", action="store_true", default=_UNSET, help="Disable ANSI color even when stderr is a TTY."
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("shellmate")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    try:
        config = load_config(Path(args.base_dir))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    standalone = args.repl or args.serve or args.list_conversations or args.show_conversation
    if not standalone and args.question is None:
        parser.error("question is required (or use --repl / --serve)")
    if standalone and args.question is not None:
        parser.error("a question cannot be combined with --repl, --serve or listing options")
    if args.report and args.question is None:
        parser.error("--report is only supported in one-shot mode")

    fmt.init(color=args.color, no_color=args.no_color)
    if args.verbose:
        fmt.setup_logging(logging.INFO if args.verbose_log else logging.WARNING)
    else:
        fmt.setup_logging(logging.ERROR)

    try:
        exit_code = _run_main(args)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    sys.exit(exit_code)


def _session_from_args(args, install_signal_handlers: bool):
    from .session import Session

    if args.no_db:
        db_path = None
    else:
        db_path = args.db_path or str(Path(args.base_dir) / ".shellmate" / "agent.db")

    return Session(
        base_dir=args.base_dir,
        provider=args.provider,
        model=args.model,
        api_key=args.api_key,
        base_url=args.base_url,
        max_rounds=args.max_rounds,
        max_output_tokens=args.max_output_tokens,
        temperature=args.temperature,
        command_timeout=args.command_timeout,
        shell=args.shell,
        system_prompt=args.system_prompt,
        no_system_prompt=args.no_system_prompt,
        db_path=db_path,
        verbose=args.verbose,
        install_signal_handlers=install_signal_handlers,
    )


def _print_conversation(conv) -> None:
    print(f"Conversation ID: {conv.id}")
    print(f"Messages ({len(conv.messages)}):\n")
    for msg in conv.messages:
        if msg.role == "assistant" and msg.tool_calls:
            calls = ", ".join(f"{tc.name}({tc.arguments})" for tc in msg.tool_calls)
            print(f"[{msg.id}] assistant: {msg.content} -> {calls}")
        else:
            print(f"[{msg.id}] {msg.role}: {msg.content}")


def _run_main(args) -> int:
    if args.serve:
        from .server import serve

        # uvicorn owns SIGINT/SIGTERM; the app's shutdown hook closes the session.
        session = _session_from_args(args, install_signal_handlers=False)
        try:
            serve(session, host=args.host, port=args.port)
        finally:
            session.close()
        return 0

    session = _session_from_args(args, install_signal_handlers=True)
    try:
        if args.list_conversations:
            convs = session.list_conversations()
            if not convs:
                print("No conversations found.")
                return 0
            print(f"Found {len(convs)} conversation(s):\n")
            for i, conv in enumerate(convs, 1):
                print(f"{i}. Conversation ID: {conv.id} ({len(conv.messages)} messages)")
            return 0

        if args.show_conversation:
            conv = session.get_conversation(args.show_conversation)
            if conv is None:
                raise AgentError(f"conversation {args.show_conversation!r} not found")
            _print_conversation(conv)
            return 0

        if args.repl:
            repl_loop(session, args.conversation, verbose=args.verbose)
            return 0

        return _run_one_shot(session, args)
    finally:
        session.close()


def _run_one_shot(session, args) -> int:
    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, error_message=None):
        if not report:
            return
        report.finalize(
            task=args.question,
            model=session.model_id or "unknown",
            provider=args.provider,
            conversation_id=args.conversation,
            settings={
                "max_rounds": args.max_rounds,
                "max_output_tokens": args.max_output_tokens,
                "temperature": args.temperature,
                "command_timeout": args.command_timeout,
                "shell": args.shell,
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            rounds=report.max_round_seen,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        result = session.send(args.conversation, args.question, report=report)
    except AgentError as e:
        _write_report("error", exit_code=1, error_message=str(e))
        raise

    if result.answer is not None:
        print(result.answer)
    if result.exhausted:
        if args.verbose:
            fmt.warning("max rounds reached for this question.")
        _write_report("exhausted", answer=result.answer, exit_code=2)
        return 2
    _write_report("success", answer=result.answer)
    return 0


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    fmt.info("/help            Show this help")
    fmt.info("/ps              List background processes")
    fmt.info("/kill PID        Kill a background process")
    fmt.info("/new [ID]        Switch to a new (or named) conversation")
    fmt.info("/exit, /quit     Leave the REPL")


def _repl_ps(session) -> None:
    fmt.process_table(
        [
            f"PID: {r.pid} | Command: {r.command} | Running for: {format_duration(r.elapsed())}"
            for r in session.list_processes()
        ]
    )


def _repl_kill(session, arg: str) -> None:
    try:
        pid = int(arg)
    except ValueError:
        fmt.warning(f"/kill expects a PID, got {arg!r}")
        return
    try:
        session.kill_process(pid)
    except AgentError as e:
        fmt.warning(str(e))
        return
    fmt.info(f"Killed process {pid}")


def repl_loop(session, conversation_id: str, verbose: bool = True) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(session.base_dir, ".shellmate", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "shellmate> ")])

    if verbose:
        fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1].strip() if len(cmd_parts) > 1 else ""

        if cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/ps":
            _repl_ps(session)
            continue
        elif cmd == "/kill":
            _repl_kill(session, cmd_arg)
            continue
        elif cmd == "/new":
            conversation_id = cmd_arg or f"repl-{time.strftime('%Y%m%d-%H%M%S')}"
            fmt.info(f"conversation: {conversation_id}")
            continue

        try:
            result = session.send(conversation_id, line)
        except AgentError as e:
            fmt.error(str(e))
            continue

        if result.answer is not None:
            print(result.answer)
        if result.exhausted:
            fmt.warning("max rounds reached for this question.")


if __name__ == "__main__":
    main()
