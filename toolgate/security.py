"""Interactive escalation for invocations no rule covers."""

import enum
import json
import logging
import threading

from . import fmt
from .cancel import read_line
from .policy import Action, PolicyEngine, normalize_args, suggested_pattern
from .report import CancellationError

logger = logging.getLogger(__name__)

MAX_DETAIL_CHARS = 150


class SecurityDecision(enum.Enum):
    RUN_ONCE = "run_once"
    ALLOW_ALWAYS = "allow_always"
    DENY_ONCE = "deny_once"
    DENY_FOREVER = "deny_forever"

    @property
    def denied(self) -> bool:
        return self in (SecurityDecision.DENY_ONCE, SecurityDecision.DENY_FOREVER)


# subcommand -> (label, [(detail prefix, keys)])
_ACTION_DETAILS: dict[str, tuple[str, list[tuple[str, tuple[str, ...]]]]] = {
    "exec": (
        "Run shell command",
        [("$ ", ("cmd", "command")), ("dir: ", ("cwd", "dir", "workdir"))],
    ),
    "test": (
        "Run tests",
        [("$ ", ("cmd", "command")), ("dir: ", ("dir", "cwd", "workdir"))],
    ),
    "write": ("Write file", [("file: ", ("file", "path", "filepath"))]),
    "patch": ("Modify file (patch)", [("file: ", ("file", "path", "filepath"))]),
    "read": ("Read file", [("file: ", ("file", "path", "filepath"))]),
    "search": (
        "Search the code",
        [("term: ", ("term", "pattern", "query")), ("dir: ", ("dir",))],
    ),
    "tree": ("List directory structure", [("dir: ", ("dir", "path"))]),
}


def _truncate(text: str) -> str:
    if len(text) > MAX_DETAIL_CHARS:
        return text[:MAX_DETAIL_CHARS] + "..."
    return text


def _lookup(args_map: dict, raw_args: str, keys: tuple[str, ...]) -> str:
    for key in keys:
        value = args_map.get(key)
        if isinstance(value, str) and value:
            return value
    fields = raw_args.split()
    for key in keys:
        flag = "--" + key
        for i, field in enumerate(fields[:-1]):
            if field == flag:
                return fields[i + 1]
    return ""


def format_action_details(subcommand: str, raw_args: str) -> tuple[str, list[str]]:
    """Human-readable label and detail lines for an invocation."""
    args_map: dict = {}
    try:
        payload = json.loads(raw_args)
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("cmd"), str) and payload["cmd"]:
        subcommand = payload["cmd"]
        if isinstance(payload.get("args"), dict):
            args_map = payload["args"]

    details: list[str] = []
    if subcommand in _ACTION_DETAILS:
        label, fields = _ACTION_DETAILS[subcommand]
        for i, (prefix, keys) in enumerate(fields):
            # Only the first field falls back to scanning CLI-style flags.
            value = _lookup(args_map, raw_args if i == 0 else "", keys)
            if value:
                details.append(prefix + value)
    else:
        label = subcommand or "Unknown action"
        details.append(_truncate(raw_args))

    if not details:
        details.append(_truncate(raw_args))
    return label, details


def _decision_from_input(answer: str, pattern: str | None) -> SecurityDecision:
    answer = answer.strip().lower()
    if answer in ("n", "no"):
        return SecurityDecision.DENY_ONCE
    if answer in ("d", "deny"):
        if pattern is None:
            return SecurityDecision.DENY_ONCE
        return SecurityDecision.DENY_FOREVER
    if answer in ("a", "always") and pattern is not None:
        return SecurityDecision.ALLOW_ALWAYS
    return SecurityDecision.RUN_ONCE


def prompt_security_check(
    tool_name: str,
    raw_args: str,
    cancel: threading.Event | None = None,
    reader=None,
) -> SecurityDecision:
    """Ask the operator what to do with an invocation.

    Any answer other than n/a/d runs the action once; "d" without a
    pattern to save denies just this once. End of input or cancellation
    while waiting counts as a one-time denial.
    """
    sub, _ = normalize_args(raw_args)
    label, details = format_action_details(sub, raw_args)
    pattern = suggested_pattern(tool_name, raw_args)
    fmt.security_check(label, details, pattern)

    try:
        answer = read_line(cancel, reader)
    except CancellationError:
        fmt.security_cancelled()
        return SecurityDecision.DENY_ONCE
    if answer is None:
        fmt.security_no_input()
        return SecurityDecision.DENY_ONCE
    return _decision_from_input(answer, pattern)


def apply_decision(
    engine: PolicyEngine,
    decision: SecurityDecision,
    tool_name: str,
    raw_args: str,
) -> None:
    """Persist "always" decisions as rules. Write failures are logged, not raised."""
    pattern = suggested_pattern(tool_name, raw_args)
    if pattern is None:
        return
    if decision is SecurityDecision.ALLOW_ALWAYS:
        action = Action.ALLOW
    elif decision is SecurityDecision.DENY_FOREVER:
        action = Action.DENY
    else:
        return
    try:
        engine.add_rule(pattern, action)
    except (OSError, ValueError) as e:
        logger.warning("could not save rule %r: %s", pattern, e)
        fmt.warning(f"could not save rule {pattern!r}: {e}")
