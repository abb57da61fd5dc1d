"""Configuration file loading and merging for toolgate.

Reads TOML config from ~/.config/toolgate/config.toml (global) and
<base_dir>/toolgate.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError  # noqa: F401

_UNSET = object()  # Sentinel for "not set by CLI"

MODES = ("agent", "coder")


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "temperature": (int, float),
    "top_p": (int, float),
    "seed": int,
    "max_turns": int,
    "mode": str,
    "designated_tool": str,
    "plugins_dir": str,
    "plugin_timeout": int,
    "policy_file": str,
    "system_prompt": str,
    "no_system_prompt": bool,
    "no_history": bool,
    "color": bool,
    "quiet": bool,
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "lmstudio",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 32768,
    "temperature": None,
    "top_p": 1.0,
    "seed": None,
    "max_turns": None,
    "mode": "agent",
    "designated_tool": "@coder",
    "plugins_dir": None,
    "plugin_timeout": None,
    "policy_file": None,
    "system_prompt": None,
    "no_system_prompt": False,
    "no_history": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "toolgate"
    return Path.home() / ".config" / "toolgate"


def default_policy_path() -> Path:
    return global_config_dir() / "policy.json"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and value constraints in a parsed config dict.

    Raises ConfigError for type mismatches or invalid values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject it for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    if "mode" in config and config["mode"] not in MODES:
        raise ConfigError(
            f"{source}: 'mode' must be one of {', '.join(MODES)}, got {config['mode']!r}"
        )
    if "designated_tool" in config and not config["designated_tool"].startswith("@"):
        raise ConfigError(f"{source}: 'designated_tool' must start with '@'")

    if config.get("system_prompt") and config.get("no_system_prompt"):
        raise ConfigError(
            f"{source}: 'system_prompt' and 'no_system_prompt' are mutually exclusive"
        )


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative paths against the config file's parent directory.

    ``~`` is expanded first so ``~/plugins`` does not become
    ``<config_dir>/~/plugins``.
    """
    for key in ("plugins_dir", "policy_file"):
        if key in config:
            p = Path(config[key]).expanduser()
            config[key] = str(p if p.is_absolute() else config_dir / p)


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with only the keys actually set in config files,
    plus ``config_dir`` (the resolved global config directory).
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    if global_config:
        _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "toolgate.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)
        _resolve_paths(project_config, project_path.parent)

    merged = {**global_config, **project_config}

    if merged.get("system_prompt") and merged.get("no_system_prompt"):
        raise ConfigError(
            "'system_prompt' and 'no_system_prompt' are mutually exclusive "
            "(set across global and project config)"
        )

    merged["config_dir"] = config_dir
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Remaining _UNSET sentinels are then replaced with _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive color pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key in ("color", "config_dir"):
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    no_history -> history and quiet -> verbose are inverted; color and
    config_dir are not Session concerns and are dropped.
    """
    kwargs = {}
    _DROP_KEYS = {"color", "config_dir"}
    _INVERT_KEYS = {
        "no_history": "history",
        "quiet": "verbose",
    }

    for key, value in config.items():
        if key in _DROP_KEYS:
            continue
        if key in _INVERT_KEYS:
            kwargs[_INVERT_KEYS[key]] = not value
        else:
            kwargs[key] = value

    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# toolgate configuration file",
        f"# {'Project' if project else 'Global'} config — "
        f"{'<project>/toolgate.toml' if project else '~/.config/toolgate/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "lmstudio"          # "lmstudio" | "huggingface" | "openrouter" | "generic"',
        '# model = "qwen/qwen3-235b-a22b"',
        '# api_key = "sk-or-..."            # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 32768",
        "# temperature = 0.7",
        "# top_p = 1.0",
        "# seed = 42",
        "",
        "# --- Agent behaviour ---",
        "# max_turns = 30                  # capped at 100; env TOOLGATE_MAX_TURNS",
        '# mode = "agent"                  # "agent" | "coder"',
        '# designated_tool = "@coder"',
        '# system_prompt = "You are a helpful assistant."',
        "# no_system_prompt = false",
        "# no_history = false",
        "",
        "# --- Plugins / security ---",
        '# plugins_dir = "~/.config/toolgate/plugins"',
        "# plugin_timeout = 900             # seconds",
        '# policy_file = "~/.config/toolgate/policy.json"',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
