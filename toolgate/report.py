"""Error taxonomy and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class ParseError(AgentError):
    """Raised when tool-call arguments cannot be tokenized."""


class PolicyDenied(AgentError):
    """Raised when a security rule or the operator refuses an invocation."""


class ValidationError(AgentError):
    """Raised when an invocation is rejected before execution.

    ``feedback`` is the corrective message sent back to the model.
    """

    def __init__(self, message: str, feedback: str | None = None):
        super().__init__(message)
        self.feedback = feedback if feedback is not None else message


class ExecutionError(AgentError):
    """Raised when a command or plugin fails, carrying any partial output."""

    def __init__(self, message: str, output: str = "", exit_code: int | None = None):
        super().__init__(message)
        self.output = output
        self.exit_code = exit_code


class CancellationError(AgentError):
    """Raised when the operator interrupts a model call, command or prompt."""


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.policy_decisions: dict[str, int] = {}
        self.corrections = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_turn_seen = 0

    def _see_turn(self, turn: int):
        if turn > self.max_turn_seen:
            self.max_turn_seen = turn

    def record_llm_call(
        self, turn: int, duration: float, token_est: int, finish_reason: str
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        self._see_turn(turn)
        self.events.append(
            {
                "turn": turn,
                "type": "llm_call",
                "duration_s": round(duration, 3),
                "prompt_tokens_est": token_est,
                "finish_reason": finish_reason,
            }
        )

    def record_tool_call(
        self,
        turn: int,
        name: str,
        args: str,
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
            "turn": turn,
            "type": "tool_call",
            "name": name,
            "args": args,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_policy(
        self, turn: int, tool: str, action: str, decision: str | None = None
    ):
        key = decision or action
        self.policy_decisions[key] = self.policy_decisions.get(key, 0) + 1
        event = {"turn": turn, "type": "policy", "tool": tool, "action": action}
        if decision is not None:
            event["decision"] = decision
        self.events.append(event)

    def record_correction(self, turn: int, reason: str):
        self.corrections += 1
        self.events.append({"turn": turn, "type": "correction", "reason": reason})

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        turns: int,
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
            "settings": settings,
            "result": result,
            "stats": {
                "turns": turns,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "policy_decisions": dict(self.policy_decisions),
                "format_corrections": self.corrections,
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report
