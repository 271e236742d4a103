"""Tests for the tool schemas and dispatch()."""

import sys
import time

import pytest

from shellmate.supervisor import ProcessSupervisor
from shellmate.tools import (
    MAX_OUTPUT_BYTES,
    TOOLS,
    _run_command,
    dispatch,
    parse_arguments,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell")


@pytest.fixture
def sup(tmp_path, bash):
    s = ProcessSupervisor(shell=bash, cwd=str(tmp_path))
    yield s
    s.kill_all()


@pytest.fixture
def run(tmp_path, sup, bash):
    """Dispatch a tool call the way the agent loop does."""

    def _run(name, args, **extra):
        kwargs = dict(
            conversation_id="conv",
            base_dir=str(tmp_path),
            shell=bash,
            timeout=10,
        )
        kwargs.update(extra)
        return dispatch(name, args, supervisor=sup, **kwargs)

    return _run


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class TestSchemas:
    def test_tool_names(self):
        names = [t["function"]["name"] for t in TOOLS]
        assert names == ["run_command", "list_processes", "kill_process"]

    def test_run_command_requires_command(self):
        params = TOOLS[0]["function"]["parameters"]
        assert params["required"] == ["command"]
        assert params["properties"]["background"]["type"] == "boolean"

    def test_kill_process_requires_pid(self):
        params = TOOLS[2]["function"]["parameters"]
        assert params["required"] == ["pid"]
        assert params["properties"]["pid"]["type"] == "integer"


# ---------------------------------------------------------------------------
# Argument decoding
# ---------------------------------------------------------------------------


class TestParseArguments:
    def test_valid_object(self):
        assert parse_arguments('{"command": "ls"}') == ({"command": "ls"}, None)

    def test_empty_payload_is_empty_object(self):
        assert parse_arguments("") == ({}, None)
        assert parse_arguments(None) == ({}, None)

    def test_invalid_json(self):
        args, err = parse_arguments("{not json")
        assert args is None
        assert err.startswith("error: invalid JSON in tool arguments")

    def test_non_object(self):
        args, err = parse_arguments("[1, 2]")
        assert args is None
        assert err == "error: tool arguments must be a JSON object"


# ---------------------------------------------------------------------------
# run_command (foreground)
# ---------------------------------------------------------------------------


class TestRunCommand:
    def test_echo(self, run):
        assert run("run_command", {"command": "echo hello"}).strip() == "hello"

    def test_shell_features(self, run):
        result = run("run_command", {"command": "echo a | tr a b && echo c"})
        assert result.split() == ["b", "c"]

    def test_stderr_is_captured(self, run):
        result = run("run_command", {"command": "echo oops >&2"})
        assert "oops" in result

    def test_nonzero_exit_returns_output(self, run):
        result = run("run_command", {"command": "echo partial; exit 3"})
        assert result.strip() == "partial"
        assert not result.startswith("error:")

    def test_no_output(self, run):
        assert run("run_command", {"command": "true"}) == "(no output)"

    def test_runs_in_base_dir(self, run, tmp_path):
        (tmp_path / "marker.txt").write_text("x")
        assert "marker.txt" in run("run_command", {"command": "ls"})

    def test_empty_command(self, run):
        assert run("run_command", {"command": "   "}) == "error: command is empty"

    def test_missing_command(self, run):
        assert run("run_command", {}) == "error: missing required 'command' argument"

    def test_non_string_command(self, run):
        result = run("run_command", {"command": 42})
        assert result.startswith("error: missing or invalid 'command'")

    def test_invalid_background_flag(self, run):
        result = run("run_command", {"command": "ls", "background": "yes"})
        assert result == "error: invalid 'background' argument (expected a boolean)"

    def test_timeout(self, run):
        t0 = time.monotonic()
        result = run("run_command", {"command": "echo started; sleep 30", "timeout": 1})
        assert time.monotonic() - t0 < 15
        assert result.startswith("error: command timed out after 1s")
        assert "started" in result

    def test_output_cap(self, tmp_path, bash):
        size = MAX_OUTPUT_BYTES + 4096
        result = _run_command(
            f"head -c {size} /dev/zero | tr '\\0' 'a'", str(tmp_path), timeout=30, shell=bash
        )
        assert result.endswith("[output truncated at 1MB]")
        assert result.startswith("a" * MAX_OUTPUT_BYTES + "\n[output")


# ---------------------------------------------------------------------------
# Background processes
# ---------------------------------------------------------------------------


class TestBackground:
    def test_start_list_kill(self, run, sup):
        started = run("run_command", {"command": "sleep 30", "background": True})
        assert started.startswith("Started background process with PID ")
        pid = int(started.split("PID ")[1].split(":")[0])
        assert started.endswith(": sleep 30")
        assert sup.get(pid).conversation_id == "conv"

        listing = run("list_processes", {})
        assert listing.startswith("Running background processes (1):")
        assert f"PID: {pid} | Command: sleep 30 | Running for: " in listing

        assert run("kill_process", {"pid": pid}) == f"Successfully killed process {pid}"
        assert run("list_processes", {}) == "No background processes running."

    def test_background_returns_immediately(self, run):
        t0 = time.monotonic()
        run("run_command", {"command": "sleep 30", "background": True})
        assert time.monotonic() - t0 < 5

    def test_background_launch_failure_is_text(self, tmp_path, sup):
        result = dispatch(
            "run_command",
            {"command": "sleep 1", "background": True},
            supervisor=ProcessSupervisor(shell=str(tmp_path / "nope"), cwd=str(tmp_path)),
        )
        assert result.startswith("error: failed to start background process:")

    def test_whitespace_command_is_not_started(self, run, sup):
        result = run("run_command", {"command": "  \t ", "background": True})
        assert result == "error: command is empty"
        assert sup.list() == []

    def test_list_empty(self, run):
        assert run("list_processes", {}) == "No background processes running."

    def test_kill_unknown_pid(self, run):
        assert run("kill_process", {"pid": 12345}) == "error: process 12345 not found"

    def test_kill_twice(self, run):
        started = run("run_command", {"command": "sleep 30", "background": True})
        pid = int(started.split("PID ")[1].split(":")[0])
        run("kill_process", {"pid": pid})
        assert run("kill_process", {"pid": pid}) == f"error: process {pid} not found"

    @pytest.mark.parametrize("pid", [None, "abc", 0, -5, True, 1.5])
    def test_kill_invalid_pid(self, run, pid):
        args = {} if pid is None else {"pid": pid}
        assert run("kill_process", args) == "error: invalid PID (expected a positive integer)"

    def test_kill_float_pid_is_accepted(self, run):
        assert run("kill_process", {"pid": 12345.0}) == "error: process 12345 not found"


class TestUnknownTool:
    def test_unknown_tool(self, run):
        assert run("format_disk", {}) == "error: unknown tool 'format_disk'"
