"""Tool definitions and implementations for the shell agent."""

import json
import logging
import os
import subprocess
import sys
import threading
from pathlib import Path

from .report import AgentError
from .supervisor import DEFAULT_SHELL, ProcessSupervisor, format_duration

logger = logging.getLogger(__name__)

RUN_COMMAND_TOOL = {
    "type": "function",
    "function": {
        "name": "run_command",
        "description": (
            "Execute a shell command and return its combined stdout/stderr. "
            "Set background=true for long-running commands (servers, watchers); "
            "the command then starts immediately and its PID is returned. "
            "Use list_processes and kill_process to manage background commands."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The shell command to execute.",
                },
                "background": {
                    "type": "boolean",
                    "description": "Run the command in the background. Defaults to false.",
                    "default": False,
                },
                "timeout": {
                    "type": "integer",
                    "description": "Timeout in seconds for foreground commands (1-600). Defaults to 30.",
                    "default": 30,
                },
            },
            "required": ["command"],
        },
    },
}

LIST_PROCESSES_TOOL = {
    "type": "function",
    "function": {
        "name": "list_processes",
        "description": "List running background processes with their PID, command and running time.",
        "parameters": {
            "type": "object",
            "properties": {},
        },
    },
}

KILL_PROCESS_TOOL = {
    "type": "function",
    "function": {
        "name": "kill_process",
        "description": "Terminate a background process (and its children) by PID.",
        "parameters": {
            "type": "object",
            "properties": {
                "pid": {
                    "type": "integer",
                    "description": "PID of the background process, as returned by run_command or list_processes.",
                },
            },
            "required": ["pid"],
        },
    },
}

TOOLS = [RUN_COMMAND_TOOL, LIST_PROCESSES_TOOL, KILL_PROCESS_TOOL]

MAX_OUTPUT_BYTES = 1 * 1024 * 1024  # 1MB
DEFAULT_TIMEOUT = 30
MAX_TIMEOUT = 600

_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


def parse_arguments(raw_args) -> tuple[dict | None, str | None]:
    """Decode a tool call's JSON argument payload.

    Returns (args, None) on success or (None, error_text) otherwise.
    An empty payload is treated as an empty object.
    """
    if raw_args is None or (isinstance(raw_args, str) and not raw_args.strip()):
        return {}, None
    if isinstance(raw_args, dict):
        return raw_args, None
    try:
        parsed = json.loads(raw_args)
    except (json.JSONDecodeError, TypeError) as e:
        return None, f"error: invalid JSON in tool arguments: {e}"
    if not isinstance(parsed, dict):
        return None, "error: tool arguments must be a JSON object"
    return parsed, None


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # give up, process is unkillable


def _capture_process(proc: subprocess.Popen, timeout: int, command: str) -> str:
    """Capture combined output from a running subprocess with timeout enforcement."""
    output_chunks: list[bytes] = []
    output_total = 0
    output_truncated = False

    def _reader():
        nonlocal output_total, output_truncated
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if output_truncated:
                    continue  # keep draining to prevent pipe backpressure
                remaining = MAX_OUTPUT_BYTES - output_total
                output_chunks.append(chunk[:remaining])
                output_total += len(output_chunks[-1])
                if output_total >= MAX_OUTPUT_BYTES:
                    output_truncated = True
        except (OSError, ValueError):
            pass  # pipe closed/broken after kill

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)

    reader_thread.join(timeout=2)
    proc.stdout.close()

    raw_output = b"".join(output_chunks).decode("utf-8", errors="replace")

    if not timed_out and proc.returncode != 0:
        logger.info("Command exited with status %d: %s", proc.returncode, command)

    parts: list[str] = []
    if timed_out:
        logger.warning("Command timed out after %ds: %s", timeout, command)
        parts.append(f"error: command timed out after {timeout}s")
    if raw_output:
        parts.append(raw_output)
    if output_truncated:
        parts.append("[output truncated at 1MB]")

    return "\n".join(parts) if parts else "(no output)"


def _run_command(
    command: str,
    base_dir: str,
    timeout: int = DEFAULT_TIMEOUT,
    shell: str = DEFAULT_SHELL,
) -> str:
    """Run a shell string to completion and return its combined output.

    A non-zero exit status is not an error here: the output is returned
    as-is so the model can read what went wrong.
    """
    if not isinstance(command, str):
        return "error: missing or invalid 'command' argument (expected a string)"
    if not command.strip():
        return "error: command is empty"

    base_path = Path(base_dir)
    if not base_path.is_dir():
        return f"error: base directory is not a directory: {base_dir}"

    timeout = max(1, min(timeout, MAX_TIMEOUT))

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen([shell, "-c", command], **popen_kwargs)
    except OSError as e:
        return f"error: failed to start shell command: {e}"

    return _capture_process(proc, timeout, command)


def _run_background(
    command: str, supervisor: ProcessSupervisor, conversation_id: str | None
) -> str:
    if not isinstance(command, str):
        return "error: missing or invalid 'command' argument (expected a string)"
    if not command.strip():
        return "error: command is empty"
    try:
        record = supervisor.start(command, conversation_id)
    except AgentError as e:
        return f"error: failed to start background process: {e}"
    return f"Started background process with PID {record.pid}: {command}"


def _list_processes(supervisor: ProcessSupervisor) -> str:
    records = supervisor.list()
    if not records:
        return "No background processes running."
    lines = [
        f"PID: {r.pid} | Command: {r.command} | Running for: {format_duration(r.elapsed())}"
        for r in sorted(records, key=lambda r: r.start_time)
    ]
    return f"Running background processes ({len(records)}):\n" + "\n".join(lines)


def _coerce_pid(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _kill_process(pid, supervisor: ProcessSupervisor) -> str:
    pid = _coerce_pid(pid)
    if pid is None or pid <= 0:
        return "error: invalid PID (expected a positive integer)"
    try:
        supervisor.kill(pid)
    except AgentError as e:
        return f"error: {e}"
    return f"Successfully killed process {pid}"


def dispatch(name: str, args: dict, *, supervisor: ProcessSupervisor, **kwargs) -> str:
    """Route a tool call to the appropriate implementation.

    Args:
        name: The tool name to invoke.
        args: Decoded arguments for the tool.
        supervisor: Registry for background processes.
        **kwargs: Extra context: conversation_id, base_dir, shell, timeout.

    Returns:
        String result for the model. Failures are reported as text starting
        with "error:", never raised.
    """
    base_dir = kwargs.get("base_dir", ".")
    shell = kwargs.get("shell", DEFAULT_SHELL)

    if name == "run_command":
        command = args.get("command")
        if command is None:
            return "error: missing required 'command' argument"
        background = args.get("background", False)
        if not isinstance(background, bool):
            return "error: invalid 'background' argument (expected a boolean)"
        if background:
            return _run_background(command, supervisor, kwargs.get("conversation_id"))
        timeout = args.get("timeout", kwargs.get("timeout", DEFAULT_TIMEOUT))
        if isinstance(timeout, bool) or not isinstance(timeout, int):
            return "error: invalid 'timeout' argument (expected an integer)"
        return _run_command(command, base_dir, timeout=timeout, shell=shell)
    elif name == "list_processes":
        return _list_processes(supervisor)
    elif name == "kill_process":
        return _kill_process(args.get("pid"), supervisor)
    else:
        logger.warning("Unknown tool call: %s", name)
        return f"error: unknown tool {name!r}"
