"""Tests for the JSON report feature (--report)."""

import json

import pytest

from toolgate.report import (
    AgentError,
    CancellationError,
    ConfigError,
    ExecutionError,
    ParseError,
    PolicyDenied,
    ReportCollector,
    ValidationError,
)


def _build(rc, **overrides):
    kwargs = dict(
        task="hello",
        model="m",
        provider="lmstudio",
        settings={},
        outcome="success",
        answer="done",
        exit_code=0,
        turns=rc.max_turn_seen,
    )
    kwargs.update(overrides)
    return rc.build_report(**kwargs)


class TestReportCollector:
    def test_empty_report(self):
        r = _build(ReportCollector())
        assert r["version"] == 1
        assert r["task"] == "hello"
        assert r["result"] == {"outcome": "success", "answer": "done", "exit_code": 0}
        assert r["stats"]["turns"] == 0
        assert r["stats"]["tool_calls_total"] == 0
        assert r["stats"]["format_corrections"] == 0
        assert r["timeline"] == []

    def test_llm_call_tracking(self):
        rc = ReportCollector()
        rc.record_llm_call(1, 2.5, 1000, "stop")
        rc.record_llm_call(2, 1.3, 1500, "length")
        assert rc.llm_calls == 2
        assert rc.total_llm_time == pytest.approx(3.8)
        assert rc.max_turn_seen == 2
        assert rc.events[1]["finish_reason"] == "length"

    def test_tool_call_tracking(self):
        rc = ReportCollector()
        rc.record_tool_call(1, "@coder", "read --file a", True, 0.5, 120)
        rc.record_tool_call(1, "@coder", "exec --cmd x", False, 0.1, 0, error="exit code 1")
        rc.record_tool_call(2, "@fmt", "run", True, 0.2, 10)
        r = _build(rc)
        assert r["stats"]["tool_calls_total"] == 3
        assert r["stats"]["tool_calls_succeeded"] == 2
        assert r["stats"]["tool_calls_failed"] == 1
        assert r["stats"]["tool_calls_by_name"]["@coder"] == {"succeeded": 1, "failed": 1}
        assert r["timeline"][1]["error"] == "exit code 1"
        assert "error" not in r["timeline"][0]

    def test_policy_and_corrections(self):
        rc = ReportCollector()
        rc.record_policy(1, "@coder", "allow")
        rc.record_policy(1, "@coder", "ask", "run_once")
        rc.record_policy(2, "@coder", "ask", "run_once")
        rc.record_correction(2, "missing <reasoning> block")
        r = _build(rc)
        assert r["stats"]["policy_decisions"] == {"allow": 1, "run_once": 2}
        assert r["stats"]["format_corrections"] == 1
        assert r["timeline"][1] == {
            "turn": 1,
            "type": "policy",
            "tool": "@coder",
            "action": "ask",
            "decision": "run_once",
        }

    def test_error_message_included(self):
        r = _build(ReportCollector(), outcome="error", exit_code=1, error_message="boom")
        assert r["result"]["error_message"] == "boom"

    def test_write(self, tmp_path):
        rc = ReportCollector()
        rc.record_llm_call(1, 0.1, 10, "stop")
        rc.finalize(
            task="t",
            model="m",
            provider="lmstudio",
            settings={"mode": "coder"},
            outcome="exhausted",
            answer=None,
            exit_code=2,
            turns=1,
        )
        path = tmp_path / "report.json"
        rc.write(str(path))
        data = json.loads(path.read_text())
        assert data["result"]["outcome"] == "exhausted"
        assert data["settings"] == {"mode": "coder"}
        assert data["stats"]["llm_calls"] == 1


class TestErrors:
    @pytest.mark.parametrize(
        "cls",
        [ConfigError, ParseError, PolicyDenied, ValidationError, ExecutionError, CancellationError],
    )
    def test_all_are_agent_errors(self, cls):
        assert issubclass(cls, AgentError)

    def test_validation_feedback_defaults_to_message(self):
        assert ValidationError("bad").feedback == "bad"
        assert ValidationError("bad", "fix it").feedback == "fix it"

    def test_execution_error_carries_output(self):
        e = ExecutionError("exit code 2", output="partial", exit_code=2)
        assert str(e) == "exit code 2"
        assert e.output == "partial"
        assert e.exit_code == 2
