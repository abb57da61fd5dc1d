"""Tests for toolgate.config: TOML config file loading, merging, and CLI integration."""

import argparse
import tomllib
from pathlib import Path

import pytest

from toolgate.config import (
    _UNSET,
    ConfigError,
    apply_config_to_args,
    config_to_session_kwargs,
    default_policy_path,
    generate_config,
    global_config_dir,
    load_config,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "provider": _UNSET,
        "model": _UNSET,
        "api_key": _UNSET,
        "base_url": _UNSET,
        "max_output_tokens": _UNSET,
        "temperature": _UNSET,
        "top_p": _UNSET,
        "seed": _UNSET,
        "max_turns": _UNSET,
        "mode": _UNSET,
        "designated_tool": _UNSET,
        "plugins_dir": _UNSET,
        "plugin_timeout": _UNSET,
        "policy_file": _UNSET,
        "system_prompt": _UNSET,
        "no_system_prompt": _UNSET,
        "no_history": _UNSET,
        "color": _UNSET,
        "no_color": _UNSET,
        "quiet": _UNSET,
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.fixture
def no_global(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files(self, tmp_path, no_global):
        assert load_config(tmp_path) == {"config_dir": tmp_path / "empty" / "toolgate"}

    def test_global_only(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global_cfg"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "toolgate" / "config.toml", 'provider = "openrouter"\n')
        result = load_config(tmp_path / "project")
        assert result["provider"] == "openrouter"

    def test_project_overrides_global(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global_cfg"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "toolgate" / "config.toml", 'mode = "agent"\nmax_turns = 10\n')
        _write_toml(tmp_path / "toolgate.toml", 'mode = "coder"\n')
        result = load_config(tmp_path)
        assert result["mode"] == "coder"
        assert result["max_turns"] == 10

    def test_unknown_keys_warn(self, tmp_path, no_global, capsys):
        _write_toml(tmp_path / "toolgate.toml", 'unknown_key = "hi"\n')
        result = load_config(tmp_path)
        assert "unknown_key" not in result
        assert "unknown config key" in capsys.readouterr().err

    def test_wrong_type_raises(self, tmp_path, no_global):
        _write_toml(tmp_path / "toolgate.toml", 'max_turns = "not a number"\n')
        with pytest.raises(ConfigError, match="max_turns.*expected int.*got str"):
            load_config(tmp_path)

    def test_invalid_toml_raises(self, tmp_path, no_global):
        _write_toml(tmp_path / "toolgate.toml", "invalid = [\n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_generate_config_is_valid_toml(self):
        content = generate_config()
        lines = []
        for line in content.splitlines():
            stripped = line.lstrip("# ").strip()
            if "=" in stripped and not stripped.startswith("--"):
                lines.append(stripped)
        parsed = tomllib.loads("\n".join(lines))
        assert parsed["mode"] == "agent"
        assert parsed["designated_tool"] == "@coder"

    def test_generate_config_project_flag(self):
        assert "Project config" in generate_config(project=True)
        assert "Global config" in generate_config(project=False)


class TestValidation:
    def test_bool_for_int_field_raises(self, tmp_path, no_global):
        _write_toml(tmp_path / "toolgate.toml", "plugin_timeout = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_int_for_float_field(self, tmp_path, no_global):
        _write_toml(tmp_path / "toolgate.toml", "temperature = 1\n")
        assert load_config(tmp_path)["temperature"] == 1

    def test_unknown_mode(self, tmp_path, no_global):
        _write_toml(tmp_path / "toolgate.toml", 'mode = "yolo"\n')
        with pytest.raises(ConfigError, match="'mode' must be one of agent, coder"):
            load_config(tmp_path)

    def test_designated_tool_needs_at(self, tmp_path, no_global):
        _write_toml(tmp_path / "toolgate.toml", 'designated_tool = "coder"\n')
        with pytest.raises(ConfigError, match="must start with '@'"):
            load_config(tmp_path)

    def test_system_prompt_conflict(self, tmp_path, no_global):
        _write_toml(
            tmp_path / "toolgate.toml",
            'system_prompt = "hi"\nno_system_prompt = true\n',
        )
        with pytest.raises(ConfigError, match="mutually exclusive"):
            load_config(tmp_path)

    def test_cross_file_conflict(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "g"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "toolgate" / "config.toml", 'system_prompt = "hi"\n')
        _write_toml(tmp_path / "p" / "toolgate.toml", "no_system_prompt = true\n")
        with pytest.raises(ConfigError, match="across global and project"):
            load_config(tmp_path / "p")


class TestPathResolution:
    def test_relative_resolves_to_config_parent(self, tmp_path, no_global):
        _write_toml(tmp_path / "toolgate.toml", 'plugins_dir = "plugins"\n')
        assert load_config(tmp_path)["plugins_dir"] == str(tmp_path.resolve() / "plugins")

    def test_absolute_unchanged(self, tmp_path, no_global):
        _write_toml(tmp_path / "toolgate.toml", 'policy_file = "/etc/toolgate/policy.json"\n')
        assert load_config(tmp_path)["policy_file"] == "/etc/toolgate/policy.json"

    def test_home_expansion(self, tmp_path, no_global):
        _write_toml(tmp_path / "toolgate.toml", 'plugins_dir = "~/plugins"\n')
        assert load_config(tmp_path)["plugins_dir"] == str(Path.home() / "plugins")

    def test_global_paths_resolve_against_global_dir(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "g"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "toolgate" / "config.toml", 'policy_file = "rules.json"\n')
        result = load_config(tmp_path / "p")
        assert result["policy_file"] == str(global_dir / "toolgate" / "rules.json")


# ===========================================================================
# Applying config to parsed arguments
# ===========================================================================


class TestApplyConfigToArgs:
    def test_config_fills_unset(self):
        args = _make_args()
        apply_config_to_args(args, {"model": "m", "mode": "coder"})
        assert args.model == "m"
        assert args.mode == "coder"

    def test_cli_beats_config(self):
        args = _make_args(mode="agent")
        apply_config_to_args(args, {"mode": "coder"})
        assert args.mode == "agent"

    def test_sentinel_resolves_to_default(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.provider == "lmstudio"
        assert args.mode == "agent"
        assert args.designated_tool == "@coder"
        assert args.max_turns is None
        assert args.no_history is False

    def test_config_dir_not_copied(self):
        args = _make_args()
        apply_config_to_args(args, {"config_dir": Path("/x")})
        assert not hasattr(args, "config_dir")

    def test_color_config_true(self):
        args = _make_args()
        apply_config_to_args(args, {"color": True})
        assert args.color is True
        assert args.no_color is False

    def test_color_config_false(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_no_color_cli_overrides_config(self):
        args = _make_args(no_color=True)
        apply_config_to_args(args, {"color": True})
        assert args.no_color is True
        assert args.color is False


class TestConfigToSessionKwargs:
    def test_inverted_and_dropped_keys(self):
        kwargs = config_to_session_kwargs(
            {
                "model": "m",
                "no_history": True,
                "quiet": False,
                "color": True,
                "config_dir": Path("/x"),
            }
        )
        assert kwargs == {"model": "m", "history": False, "verbose": True}

    def test_accepted_by_session(self):
        from toolgate import Session

        kwargs = config_to_session_kwargs(
            {
                "provider": "lmstudio",
                "model": "m",
                "mode": "coder",
                "designated_tool": "@dev",
                "plugin_timeout": 30,
                "no_history": True,
            }
        )
        session = Session(**kwargs)
        assert session.mode == "coder"
        assert session.history is False


class TestGlobalConfigDir:
    def test_respects_xdg(self, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", "/custom/xdg")
        assert global_config_dir() == Path("/custom/xdg/toolgate")
        assert default_policy_path() == Path("/custom/xdg/toolgate/policy.json")

    def test_default_home(self, monkeypatch):
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        assert global_config_dir() == Path.home() / ".config" / "toolgate"


class TestApiKeyWarning:
    def test_api_key_in_git_repo_warns(self, tmp_path, no_global, capsys):
        (tmp_path / ".git").mkdir()
        _write_toml(tmp_path / "toolgate.toml", 'api_key = "sk-test"\n')
        load_config(tmp_path)
        assert "git-tracked" in capsys.readouterr().err


class TestCLIIntegration:
    def test_parse_load_apply(self, tmp_path, no_global):
        _write_toml(tmp_path / "toolgate.toml", 'max_turns = 42\nmode = "coder"\n')

        from toolgate.agent import build_parser

        args = build_parser().parse_args(["--base-dir", str(tmp_path), "question"])
        apply_config_to_args(args, load_config(tmp_path))

        assert args.max_turns == 42
        assert args.mode == "coder"
        assert args.provider == "lmstudio"

    def test_cli_flag_overrides_config(self, tmp_path, no_global):
        _write_toml(tmp_path / "toolgate.toml", "max_turns = 42\n")

        from toolgate.agent import build_parser

        args = build_parser().parse_args(["--max-turns", "20", "question"])
        apply_config_to_args(args, load_config(tmp_path))
        assert args.max_turns == 20

    def test_malformed_config_exits(self, tmp_path, no_global):
        _write_toml(tmp_path / "toolgate.toml", 'max_turns = "oops"\n')

        from toolgate import agent

        with pytest.raises(SystemExit) as exc_info:
            agent.main(["--base-dir", str(tmp_path), "question"])
        assert exc_info.value.code == 1
