"""Tests for the interactive security check."""

import threading
from io import StringIO

import pytest
from rich.console import Console

from toolgate import fmt
from toolgate.policy import Action, PolicyEngine
from toolgate.security import (
    SecurityDecision,
    apply_decision,
    format_action_details,
    prompt_security_check,
)


@pytest.fixture
def quiet_console():
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=100)
    yield buf
    fmt._console = old


def _reader(answer):
    return lambda: answer + "\n"


class TestFormatActionDetails:
    def test_exec_json(self):
        label, details = format_action_details(
            "exec", '{"cmd":"exec","args":{"cmd":"go test ./...","dir":"pkg"}}'
        )
        assert label == "Run shell command"
        assert details == ["$ go test ./...", "dir: pkg"]

    def test_read_cli(self):
        label, details = format_action_details("read", "read --file main.py")
        assert label == "Read file"
        assert details == ["file: main.py"]

    def test_search(self):
        label, details = format_action_details(
            "search", '{"cmd":"search","args":{"term":"TODO"}}'
        )
        assert label == "Search the code"
        assert details == ["term: TODO"]

    def test_unknown_subcommand_shows_raw(self):
        label, details = format_action_details("deploy", "deploy --env prod")
        assert label == "deploy"
        assert details == ["deploy --env prod"]

    def test_long_raw_truncated(self):
        raw = "frobnicate " + "x" * 300
        _, details = format_action_details("frobnicate", raw)
        assert details[0].endswith("...")
        assert len(details[0]) == 153

    def test_known_subcommand_without_values(self):
        label, details = format_action_details("tree", "tree")
        assert label == "List directory structure"
        assert details == ["tree"]


class TestPromptSecurityCheck:
    @pytest.mark.parametrize(
        "answer, expected",
        [
            ("y", SecurityDecision.RUN_ONCE),
            ("", SecurityDecision.RUN_ONCE),
            ("whatever", SecurityDecision.RUN_ONCE),
            ("a", SecurityDecision.ALLOW_ALWAYS),
            ("Always", SecurityDecision.ALLOW_ALWAYS),
            ("n", SecurityDecision.DENY_ONCE),
            ("no", SecurityDecision.DENY_ONCE),
            ("d", SecurityDecision.DENY_FOREVER),
        ],
    )
    def test_answers(self, quiet_console, answer, expected):
        decision = prompt_security_check(
            "@coder", "write --file a.txt --content aGk=", reader=_reader(answer)
        )
        assert decision is expected

    def test_exec_cannot_be_allowed_forever(self, quiet_console):
        decision = prompt_security_check("@coder", "exec --cmd ls", reader=_reader("a"))
        assert decision is SecurityDecision.RUN_ONCE
        assert "exec needs individual approval" in quiet_console.getvalue()

    def test_exec_deny_answer_denies_once(self, quiet_console):
        decision = prompt_security_check("@coder", "exec --cmd ls", reader=_reader("d"))
        assert decision is SecurityDecision.DENY_ONCE

    def test_exec_can_still_be_refused(self, quiet_console):
        decision = prompt_security_check("@coder", "exec --cmd ls", reader=_reader("n"))
        assert decision is SecurityDecision.DENY_ONCE

    def test_panel_shows_action(self, quiet_console):
        prompt_security_check("@coder", "read --file secrets.txt", reader=_reader("n"))
        out = quiet_console.getvalue()
        assert "SECURITY CHECK" in out
        assert "Read file" in out
        assert "file: secrets.txt" in out
        assert "always allow (@coder read)" in out

    def test_end_of_input_denies_once(self, quiet_console):
        decision = prompt_security_check("@coder", "exec --cmd rm -rf /", reader=lambda: "")
        assert decision is SecurityDecision.DENY_ONCE
        assert "no input, denied" in quiet_console.getvalue()

    def test_cancel_means_deny_once(self, quiet_console):
        cancel = threading.Event()
        blocker = threading.Event()

        def reader():
            cancel.set()
            blocker.wait(5)
            return "y\n"

        try:
            decision = prompt_security_check("@coder", "tree", cancel=cancel, reader=reader)
        finally:
            blocker.set()
        assert decision is SecurityDecision.DENY_ONCE
        assert "[cancelled]" in quiet_console.getvalue()

    def test_denied_property(self):
        assert SecurityDecision.DENY_ONCE.denied
        assert SecurityDecision.DENY_FOREVER.denied
        assert not SecurityDecision.RUN_ONCE.denied
        assert not SecurityDecision.ALLOW_ALWAYS.denied


class TestApplyDecision:
    def test_allow_always_persists(self, tmp_path):
        engine = PolicyEngine(tmp_path / "policy.json")
        apply_decision(engine, SecurityDecision.ALLOW_ALWAYS, "@coder", "write --file a")
        assert engine.check("@coder", "write --file b") is Action.ALLOW
        assert "@coder write" in (tmp_path / "policy.json").read_text()

    def test_deny_forever_persists(self, tmp_path):
        engine = PolicyEngine(tmp_path / "policy.json")
        apply_decision(engine, SecurityDecision.DENY_FOREVER, "@coder", "patch --file a")
        assert engine.check("@coder", "patch --file z") is Action.DENY

    def test_one_time_decisions_do_not_persist(self, tmp_path):
        engine = PolicyEngine(tmp_path / "policy.json")
        before = engine.rules
        apply_decision(engine, SecurityDecision.RUN_ONCE, "@coder", "write --file a")
        apply_decision(engine, SecurityDecision.DENY_ONCE, "@coder", "write --file a")
        assert engine.rules == before

    def test_exec_never_persisted(self, tmp_path):
        engine = PolicyEngine(tmp_path / "policy.json")
        before = engine.rules
        apply_decision(engine, SecurityDecision.ALLOW_ALWAYS, "@coder", "exec --cmd ls")
        assert engine.rules == before
