"""Error types and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class LaunchFailed(AgentError):
    """Raised when a background process cannot be started."""


class ProcessNotFound(AgentError):
    """Raised when no background process is registered under a PID."""

    def __init__(self, pid: int):
        super().__init__(f"process {pid} not found")
        self.pid = pid


class KillFailed(AgentError):
    """Raised when neither the process group nor the process could be signalled."""


class DatabaseError(AgentError):
    """Raised when the conversation database cannot be read or written."""


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_round_seen = 0
        self._last_report: dict | None = None

    def record_llm_call(
        self,
        round_no: int,
        duration: float,
        finish_reason: str,
        *,
        tool_calls: int = 0,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        if round_no > self.max_round_seen:
            self.max_round_seen = round_no
        self.events.append(
            {
                "round": round_no,
                "type": "llm_call",
                "duration_s": round(duration, 3),
                "finish_reason": finish_reason,
                "tool_calls": tool_calls,
            }
        )

    def record_tool_call(
        self,
        round_no: int,
        name: str,
        arguments: dict | None,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "round": round_no,
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_round_cap(self, round_no: int):
        self.events.append({"round": round_no, "type": "round_cap"})

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        conversation_id: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        rounds: int,
        error_message: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "conversation_id": conversation_id,
            "settings": settings,
            "result": result,
            "stats": {
                "rounds": rounds,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for a later write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
