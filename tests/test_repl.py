"""Tests for REPL mode: slash commands and repl_loop."""

from unittest.mock import MagicMock, patch

import pytest

from toolgate import fmt
from toolgate.agent import (
    _repl_clear,
    _repl_extend,
    _repl_help,
    _repl_mode,
    _repl_policy,
    repl_loop,
)
from toolgate.executor import PluginRegistry
from toolgate.policy import Action, PolicyEngine
from toolgate.report import CancellationError


@pytest.fixture(autouse=True)
def _init_fmt():
    fmt.init(color=False, no_color=False)


def _sys(content):
    return {"role": "system", "content": content}


def _loop_kwargs(**overrides):
    defaults = dict(
        api_base="http://127.0.0.1:1234",
        model_id="test-model",
        max_turns=5,
        max_output_tokens=1024,
        temperature=None,
        top_p=None,
        seed=None,
        verbose=False,
        llm_kwargs={"provider": "lmstudio", "api_key": None},
        registry=PluginRegistry(None),
    )
    defaults.update(overrides)
    return defaults


def _session(inputs):
    mock_session = MagicMock()
    mock_session.prompt.side_effect = inputs
    return patch("prompt_toolkit.PromptSession", return_value=mock_session)


class TestReplLoop:
    def test_exit_command(self, tmp_path):
        messages = [_sys("system")]
        with _session(["/exit"]):
            repl_loop(messages, base_dir=str(tmp_path), **_loop_kwargs())
        assert len(messages) == 1

    def test_eof(self, tmp_path):
        messages = [_sys("system")]
        with _session([EOFError()]):
            repl_loop(messages, base_dir=str(tmp_path), **_loop_kwargs())
        assert len(messages) == 1

    def test_history_persists_between_questions(self, tmp_path):
        messages = [_sys("system")]
        snapshots = []

        def fake_run(msgs, **kwargs):
            snapshots.append(list(msgs))
            return "answer", False

        with (
            _session(["", "first", "second", "/quit"]),
            patch("toolgate.agent.run_agent_loop", side_effect=fake_run),
        ):
            repl_loop(messages, base_dir=str(tmp_path), no_history=True, **_loop_kwargs())

        assert len(snapshots) == 2
        assert snapshots[0][-1]["content"] == "first"
        assert snapshots[1][-1]["content"] == "second"

    def test_cancellation_does_not_end_repl(self, tmp_path, capsys):
        calls = []

        def fake_run(msgs, **kwargs):
            calls.append(kwargs["cancel"].is_set())
            if len(calls) == 1:
                raise CancellationError("operation cancelled")
            return "fine", False

        with (
            _session(["q1", "q2", "/exit"]),
            patch("toolgate.agent.run_agent_loop", side_effect=fake_run),
        ):
            repl_loop([_sys("s")], base_dir=str(tmp_path), no_history=True, **_loop_kwargs())

        assert calls == [False, False]
        captured = capsys.readouterr()
        assert "interrupted" in captured.err
        assert "fine" in captured.out

    def test_answer_written_to_history(self, tmp_path):
        with (
            _session(["what?", "/exit"]),
            patch("toolgate.agent.run_agent_loop", return_value=("because", False)),
        ):
            repl_loop([_sys("s")], base_dir=str(tmp_path), **_loop_kwargs())
        assert "because" in (tmp_path / ".toolgate" / "HISTORY.md").read_text()

    def test_extend_and_mode_apply_to_next_question(self, tmp_path):
        seen = []

        def fake_run(msgs, **kwargs):
            seen.append((kwargs["max_turns"], kwargs["mode"]))
            return "answer", False

        with (
            _session(["q1", "/extend", "/mode coder", "q2", "/exit"]),
            patch("toolgate.agent.run_agent_loop", side_effect=fake_run),
        ):
            repl_loop([_sys("s")], base_dir=str(tmp_path), no_history=True, **_loop_kwargs())

        assert seen == [(5, "agent"), (10, "coder")]

    def test_continue_reruns_without_new_message(self, tmp_path):
        messages = [_sys("s")]
        with (
            _session(["/continue", "/exit"]),
            patch("toolgate.agent.run_agent_loop", return_value=("more", False)) as mock_loop,
        ):
            repl_loop(messages, base_dir=str(tmp_path), no_history=True, **_loop_kwargs())
        assert mock_loop.call_count == 1
        assert len(messages) == 1

    def test_unknown_slash_goes_to_model(self, tmp_path):
        messages = [_sys("s")]
        with (
            _session(["/frobnicate", "/exit"]),
            patch("toolgate.agent.run_agent_loop", return_value=("?", False)),
        ):
            repl_loop(messages, base_dir=str(tmp_path), no_history=True, **_loop_kwargs())
        assert messages[-1]["content"] == "/frobnicate"


class TestSlashCommands:
    def test_help(self, capsys):
        _repl_help()
        err = capsys.readouterr().err
        assert "/mode" in err
        assert "/policy" in err

    def test_clear_keeps_system_messages(self, capsys):
        messages = [_sys("a"), {"role": "user", "content": "q"}, {"role": "assistant", "content": "x"}]
        _repl_clear(messages)
        assert messages == [_sys("a")]
        assert "2 messages removed" in capsys.readouterr().err

    def test_extend_doubles(self, capsys):
        state = {"max_turns": 20}
        _repl_extend("", state)
        assert state["max_turns"] == 40
        assert "20 -> 40" in capsys.readouterr().err

    def test_extend_capped(self):
        state = {"max_turns": 80}
        _repl_extend("", state)
        assert state["max_turns"] == 100

    def test_extend_invalid(self, capsys):
        state = {"max_turns": 20}
        _repl_extend("abc", state)
        assert state["max_turns"] == 20
        assert "invalid number" in capsys.readouterr().err

    def test_extend_zero_rejected(self, capsys):
        state = {"max_turns": 20}
        _repl_extend("0", state)
        assert state["max_turns"] == 20
        assert "at least 1" in capsys.readouterr().err

    def test_mode_show_and_switch(self, capsys):
        state = {"mode": "agent"}
        _repl_mode("", state)
        assert "mode: agent" in capsys.readouterr().err
        _repl_mode("CODER", state)
        assert state["mode"] == "coder"

    def test_mode_unknown(self, capsys):
        state = {"mode": "agent"}
        _repl_mode("turbo", state)
        assert state["mode"] == "agent"
        assert "unknown mode" in capsys.readouterr().err

    def test_policy_lists_rules(self, tmp_path, capsys):
        engine = PolicyEngine(tmp_path / "policy.json")
        engine.add_rule("@coder exec --cmd rm", Action.DENY)
        _repl_policy(engine)
        err = capsys.readouterr().err
        assert "@coder read" in err
        assert "deny   @coder exec --cmd rm" in err

    def test_policy_missing(self, capsys):
        _repl_policy(None)
        assert "no security policy" in capsys.readouterr().err


class TestModeSwitchSystemPrompt:
    def test_switch_rebuilds_system_message(self, capsys):
        messages = [_sys("agent prompt"), {"role": "user", "content": "q"}]
        state = {"mode": "agent"}
        _repl_mode("coder", state, messages, {"registry": PluginRegistry(None)})
        assert messages[0]["role"] == "system"
        assert "You are a coding agent" in messages[0]["content"]
        assert "act only through the @coder tool" in messages[0]["content"]
        assert messages[1] == {"role": "user", "content": "q"}

    def test_switch_back_to_agent(self):
        messages = [_sys("coder prompt")]
        _repl_mode("agent", {"mode": "coder"}, messages, {})
        assert "helpful assistant running inside a terminal" in messages[0]["content"]

    def test_no_system_prompt_left_alone(self):
        messages = [{"role": "user", "content": "q"}]
        _repl_mode("coder", {"mode": "agent"}, messages, {"no_system_prompt": True})
        assert messages == [{"role": "user", "content": "q"}]

    def test_repl_mode_command_updates_next_request(self, tmp_path):
        messages = [_sys("agent prompt")]
        seen = []

        def fake_run(msgs, **kwargs):
            seen.append(msgs[0]["content"])
            return "ok", False

        with (
            _session(["/mode coder", "q", "/exit"]),
            patch("toolgate.agent.run_agent_loop", side_effect=fake_run),
        ):
            repl_loop(messages, base_dir=str(tmp_path), no_history=True, **_loop_kwargs())

        assert "You are a coding agent" in seen[0]
