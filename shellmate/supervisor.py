"""Background process supervisor.

Owns every OS process started in the background on behalf of a tool call.
Each process is launched as the leader of a new process group so that the
whole tree it spawns can be signalled at once. A watcher thread per process
reaps it and drops its record when it exits.
"""

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass

from .report import KillFailed, LaunchFailed, ProcessNotFound

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/bash"

_shutdown_hook_installed = False
_shutdown_hook_lock = threading.Lock()


@dataclass(frozen=True)
class ProcessRecord:
    """A background process registered with the supervisor."""

    pid: int
    command: str
    start_time: float
    conversation_id: str | None = None

    def elapsed(self, now: float | None = None) -> float:
        return max(0.0, (now if now is not None else time.time()) - self.start_time)

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "command": self.command,
            "start_time": self.start_time,
            "conversation_id": self.conversation_id,
        }


def _is_alive(pid: int) -> bool:
    """Probe a PID with signal 0."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to someone else (PID reuse).
        return True
    except OSError:
        return False
    return True


def _signal_group(pid: int, sig: int) -> None:
    """Send sig to the process group led by pid."""
    if sys.platform == "win32":
        subprocess.run(
            ["taskkill", "/T", "/F", "/PID", str(pid)],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=5,
            check=True,
        )
    else:
        os.killpg(pid, sig)


def _terminate(pid: int) -> None:
    """Best-effort termination of a process group and its leader."""
    try:
        _signal_group(pid, signal.SIGTERM)
    except (OSError, subprocess.SubprocessError):
        pass  # group already gone
    try:
        os.kill(pid, signal.SIGKILL if sys.platform != "win32" else signal.SIGTERM)
    except OSError:
        pass  # already dead


class ProcessSupervisor:
    """Thread-safe registry of background processes keyed by PID."""

    def __init__(self, shell: str = DEFAULT_SHELL, cwd: str | None = None):
        self.shell = shell
        self.cwd = cwd
        self._records: dict[int, ProcessRecord] = {}
        self._lock = threading.Lock()

    def start(self, command: str, conversation_id: str | None = None) -> ProcessRecord:
        """Launch command through the shell in its own process group.

        Raises LaunchFailed if the OS refuses to start the shell. A command
        the shell cannot find still starts and simply exits non-zero.
        """
        popen_kwargs: dict = dict(
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            cwd=self.cwd,
        )
        if sys.platform != "win32":
            popen_kwargs["start_new_session"] = True
        else:
            popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP

        try:
            proc = subprocess.Popen([self.shell, "-c", command], **popen_kwargs)
        except (OSError, ValueError) as e:
            raise LaunchFailed(f"failed to start process: {e}") from e

        record = ProcessRecord(
            pid=proc.pid,
            command=command,
            start_time=time.time(),
            conversation_id=conversation_id,
        )
        with self._lock:
            self._records[proc.pid] = record

        watcher = threading.Thread(
            target=self._watch,
            args=(proc, record),
            name=f"shellmate-watch-{proc.pid}",
            daemon=True,
        )
        watcher.start()

        logger.info("Started background process PID %d: %s", proc.pid, command)
        return record

    def _watch(self, proc: subprocess.Popen, record: ProcessRecord) -> None:
        returncode = proc.wait()
        with self._lock:
            # The PID may have been killed and reused by a newer record.
            if self._records.get(record.pid) is record:
                del self._records[record.pid]
        logger.info(
            "Process %d finished (exit %s): %s", record.pid, returncode, record.command
        )

    def list(self) -> list[ProcessRecord]:
        """Return live records, evicting any whose PID no longer exists."""
        with self._lock:
            live = []
            for pid, record in list(self._records.items()):
                if _is_alive(pid):
                    live.append(record)
                else:
                    del self._records[pid]
            return live

    def get(self, pid: int) -> ProcessRecord | None:
        with self._lock:
            return self._records.get(pid)

    def kill(self, pid: int) -> ProcessRecord:
        """Terminate the process group led by pid and forget the record.

        Falls back to killing just the process if the group cannot be
        signalled. Raises ProcessNotFound or KillFailed.
        """
        with self._lock:
            record = self._records.get(pid)
            if record is None:
                raise ProcessNotFound(pid)

            try:
                _signal_group(pid, signal.SIGTERM)
            except (OSError, subprocess.SubprocessError) as group_err:
                try:
                    os.kill(pid, signal.SIGKILL if sys.platform != "win32" else signal.SIGTERM)
                except ProcessLookupError:
                    # Exited and reaped before its watcher dropped the record.
                    del self._records[pid]
                    raise ProcessNotFound(pid)
                except OSError as e:
                    raise KillFailed(
                        f"failed to kill process {pid}: {e} (group: {group_err})"
                    ) from e

            del self._records[pid]

        logger.info("Killed process %d (and its process group): %s", pid, record.command)
        return record

    def kill_all(self) -> int:
        """Terminate every registered process group. Returns how many were signalled."""
        with self._lock:
            records = list(self._records.values())
            self._records.clear()
        for record in records:
            _terminate(record.pid)
            logger.info("Killed process %d: %s", record.pid, record.command)
        return len(records)

    def kill_by_conversation(self, conversation_id: str) -> int:
        """Terminate every process started on behalf of one conversation."""
        with self._lock:
            records = [
                r for r in self._records.values() if r.conversation_id == conversation_id
            ]
            for record in records:
                del self._records[record.pid]
        for record in records:
            _terminate(record.pid)
            logger.info(
                "Killed process %d from conversation %s: %s",
                record.pid,
                conversation_id,
                record.command,
            )
        return len(records)

    def install_shutdown_hook(self) -> bool:
        """Kill all processes and exit on SIGINT/SIGTERM.

        Process-wide: only the first call in a process installs the handlers.
        Returns True if this call installed them.
        """
        global _shutdown_hook_installed
        with _shutdown_hook_lock:
            if _shutdown_hook_installed:
                return False

            def _on_signal(signum, frame):
                logger.info("Received signal %d, killing background processes", signum)
                self.kill_all()
                sys.exit(0)

            signal.signal(signal.SIGINT, _on_signal)
            if hasattr(signal, "SIGTERM"):
                signal.signal(signal.SIGTERM, _on_signal)
            _shutdown_hook_installed = True
            return True


def format_duration(seconds: float) -> str:
    """Format a duration rounded to the second, e.g. '1h2m3s', '4m0s', '12s'."""
    total = int(round(seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"
