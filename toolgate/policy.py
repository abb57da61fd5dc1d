"""Persisted allow/deny/ask rules for tool invocations.

Every invocation is canonicalized to ``<tool> <subcommand> --flag value ...``
and matched against rule patterns by word-boundary-aware prefix. The
longest matching pattern wins; no match means the operator is asked.

Rules live in a global JSON file and an optional per-project file. The
project file either replaces the global rules or, with ``"merge": true``,
overrides them pattern by pattern.
"""

import enum
import html
import json
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from .argv import (
    append_flag,
    collect_flags,
    json_command,
    json_positionals,
    maybe_unescape_jsonish,
)

logger = logging.getLogger(__name__)

LOCAL_POLICY_FILE = "toolgate_policy.json"
MAX_PATTERN_LENGTH = 500

# Keys carrying file bodies or encodings; never part of the canonical form.
PAYLOAD_KEYS = frozenset({"content", "contents", "data", "encoding", "replace"})


class Action(enum.Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


@dataclass(frozen=True)
class Rule:
    pattern: str
    action: Action

    def to_dict(self) -> dict:
        return {"pattern": self.pattern, "action": self.action.value}

    @classmethod
    def from_dict(cls, data: dict) -> "Rule":
        """Build a rule from its JSON form. Raises ValueError when malformed."""
        if not isinstance(data, dict):
            raise ValueError(f"rule must be an object, got {type(data).__name__}")
        pattern = data.get("pattern")
        if not isinstance(pattern, str):
            raise ValueError("rule pattern must be a string")
        return cls(pattern=pattern, action=Action(data.get("action")))


DEFAULT_RULES = tuple(
    Rule(f"@coder {sub}", Action.ALLOW)
    for sub in (
        "read",
        "tree",
        "search",
        "git-status",
        "git-diff",
        "git-log",
        "git-changed",
        "git-branch",
    )
)


# --- Canonicalization ---


def _normalize_json_map(payload: dict) -> tuple[str, str]:
    cmd = json_command(payload)
    if not cmd:
        return "", ""

    argv = payload.get("argv")
    if isinstance(argv, list) and argv:
        parts = [item for item in argv if isinstance(item, str)]
        if parts and parts[0] != cmd:
            parts.insert(0, cmd)
        return cmd, " ".join(parts)

    flags = collect_flags(payload)
    parts = [cmd]
    for key in sorted(k for k in flags if k not in PAYLOAD_KEYS):
        append_flag(parts, key, flags[key])
    parts.extend(json_positionals(payload))
    return cmd, " ".join(parts)


def normalize_args(raw_args: str) -> tuple[str, str]:
    """Canonicalize raw arguments into (subcommand, normalized command).

    JSON objects render as ``cmd --key value`` with sorted keys, payload
    keys removed, ``true`` as a bare flag, ``false`` dropped, lists
    repeating the flag and positional values last, exactly as the argv
    builder lays them out. JSON arrays and CLI strings are taken as-is. Returns ("", "") when no
    subcommand can be determined.
    """
    trimmed = html.unescape(raw_args).strip()
    if not trimmed:
        return "", ""
    unescaped, changed = maybe_unescape_jsonish(trimmed)
    if changed:
        trimmed = unescaped

    if trimmed.startswith(("{", "[")):
        try:
            payload = json.loads(trimmed)
        except json.JSONDecodeError:
            return "", ""
        if isinstance(payload, dict):
            return _normalize_json_map(payload)
        if isinstance(payload, list):
            parts = [item for item in payload if isinstance(item, str)]
            if not parts:
                return "", ""
            return parts[0], " ".join(parts)
        return "", ""

    fields = trimmed.split()
    return fields[0], trimmed


def full_command(tool_name: str, raw_args: str) -> str:
    """The string rules are matched against."""
    sub, normalized = normalize_args(raw_args)
    tail = normalized or sub
    if tail:
        return f"{tool_name} {tail}".strip()
    return tool_name.strip()


def _is_word_char(ch: str) -> bool:
    return (ch.isascii() and ch.isalnum()) or ch in "_-"


def matches_with_boundary(command: str, pattern: str) -> bool:
    """Prefix match that refuses to stop in the middle of a word.

    ``@coder read`` matches ``@coder read --file x`` but not
    ``@coder readlink``. Patterns ending in a separator (``/``, space)
    behave as plain prefixes.
    """
    if not command.startswith(pattern):
        return False
    if not pattern or len(command) == len(pattern):
        return True
    if not _is_word_char(pattern[-1]):
        return True
    return not _is_word_char(command[len(pattern)])


def merge_rules(global_rules: list[Rule], local_rules: list[Rule]) -> list[Rule]:
    """Local rules override global ones with the same pattern; new ones are appended."""
    local = {}
    for rule in local_rules:
        local[rule.pattern] = rule.action

    merged = []
    for rule in global_rules:
        if rule.pattern in local:
            merged.append(Rule(rule.pattern, local.pop(rule.pattern)))
        else:
            merged.append(rule)
    for rule in local_rules:
        if rule.pattern in local:
            merged.append(Rule(rule.pattern, local.pop(rule.pattern)))
    return merged


def suggested_pattern(tool_name: str, raw_args: str) -> str | None:
    """Pattern offered for "always" decisions, or None when only one-off approval makes sense.

    Shell execution (``exec``) is never generalized into a standing rule.
    """
    sub, _ = normalize_args(raw_args)
    if sub.strip().lower() == "exec":
        return None
    if sub:
        return f"{tool_name} {sub}"
    return tool_name


# --- Engine ---


class _ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition()
        self._readers = 0
        self._writing = False

    @contextmanager
    def reading(self):
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def writing(self):
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


def _read_rules(path: Path, label: str) -> tuple[list[Rule], bool] | None:
    """Parse a policy file. Returns (rules, merge), or None after logging a warning."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        logger.warning("failed to read %s policy %s: %s", label, path, e)
        return None
    except json.JSONDecodeError as e:
        logger.warning("failed to parse %s policy %s: %s", label, path, e)
        return None
    if not isinstance(data, dict):
        logger.warning("%s policy %s: expected a JSON object", label, path)
        return None

    rules = []
    for entry in data.get("rules") or []:
        try:
            rules.append(Rule.from_dict(entry))
        except ValueError as e:
            logger.warning("%s policy %s: skipping rule %r: %s", label, path, entry, e)
    return rules, bool(data.get("merge", False))


def _write_rules(path: Path, rules: list[Rule], merge: bool | None = None) -> None:
    payload: dict = {"rules": [r.to_dict() for r in rules]}
    if merge is not None:
        payload["merge"] = merge
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
        f.write("\n")
    os.chmod(path, 0o600)


class PolicyEngine:
    """Rule store with boundary-aware longest-match lookup.

    Constructed explicitly and passed to whoever needs it; call reload()
    after editing the files by hand.
    """

    def __init__(self, global_path: Path, local_path: Path | None = None):
        self._global_path = Path(global_path)
        self._local_candidate = Path(local_path) if local_path else None
        self._lock = _ReadWriteLock()
        self._rules: list[Rule] = []
        self._local_rules: list[Rule] = []
        self._active_path = self._global_path
        self._local_path: Path | None = None
        self._merge = False
        self._last_rule: Rule | None = None
        self._last_lock = threading.Lock()
        self.reload()

    @classmethod
    def for_directory(cls, base_dir: str, global_path: Path) -> "PolicyEngine":
        """Engine using *global_path* plus ``toolgate_policy.json`` in *base_dir*."""
        return cls(global_path, Path(base_dir) / LOCAL_POLICY_FILE)

    # -- loading --

    def reload(self) -> None:
        with self._lock.writing():
            self._load()

    invalidate = reload

    def _load(self) -> None:
        global_rules: list[Rule] = []
        if not self._global_path.exists():
            global_rules = list(DEFAULT_RULES)
            try:
                _write_rules(self._global_path, global_rules)
            except OSError as e:
                logger.warning("failed to write default policy %s: %s", self._global_path, e)
        else:
            parsed = _read_rules(self._global_path, "global")
            if parsed is not None:
                global_rules = parsed[0]

        self._active_path = self._global_path
        self._local_path = None
        self._merge = False
        self._local_rules = []
        self._rules = global_rules
        with self._last_lock:
            self._last_rule = None

        local = self._local_candidate
        if local is None or not local.is_file():
            return
        parsed = _read_rules(local, "local")
        if parsed is None:
            return

        self._local_rules, self._merge = parsed
        if self._merge:
            self._rules = merge_rules(global_rules, self._local_rules)
        else:
            self._rules = list(self._local_rules)
        self._active_path = local
        self._local_path = local

    # -- queries --

    def match(self, tool_name: str, raw_args: str) -> Rule | None:
        """The longest rule matching an invocation, or None."""
        command = full_command(tool_name, raw_args)
        best: Rule | None = None
        with self._lock.reading():
            for rule in self._rules:
                if matches_with_boundary(command, rule.pattern):
                    if best is None or len(rule.pattern) > len(best.pattern):
                        best = rule
        return best

    def check(self, tool_name: str, raw_args: str) -> Action:
        """Decide what to do with an invocation. No matching rule means ASK."""
        best = self.match(tool_name, raw_args)
        with self._last_lock:
            self._last_rule = best
        if best is None:
            return Action.ASK
        return best.action

    def last_matched_rule(self) -> Rule | None:
        """Rule behind the most recent check on any thread.

        Concurrent callers should use match() for a per-call answer.
        """
        with self._last_lock:
            return self._last_rule

    @property
    def rules(self) -> list[Rule]:
        with self._lock.reading():
            return list(self._rules)

    @property
    def active_path(self) -> Path:
        return self._active_path

    @property
    def local_path(self) -> Path | None:
        return self._local_path

    @property
    def merge_enabled(self) -> bool:
        return self._merge

    # -- mutation --

    def add_rule(self, pattern: str, action: Action) -> None:
        """Insert or update the rule for *pattern* and persist it.

        Raises ValueError for empty or oversized patterns and OSError when
        the policy file cannot be written.
        """
        pattern = pattern.strip()
        if not pattern:
            raise ValueError("rule pattern is empty")
        if len(pattern) > MAX_PATTERN_LENGTH:
            raise ValueError(
                f"rule pattern too long ({len(pattern)} > {MAX_PATTERN_LENGTH} chars)"
            )
        logger.info("updating policy: %s -> %s", pattern, action.value)

        with self._lock.writing():
            self._rules = _upsert(self._rules, Rule(pattern, action))
            with self._last_lock:
                self._last_rule = None
            if self._local_path is None:
                _write_rules(self._global_path, self._rules)
            elif self._merge:
                self._local_rules = _upsert(self._local_rules, Rule(pattern, action))
                _write_rules(self._local_path, self._local_rules, merge=True)
            else:
                _write_rules(self._local_path, self._rules, merge=False)


def _upsert(rules: list[Rule], new: Rule) -> list[Rule]:
    out = list(rules)
    for i, rule in enumerate(out):
        if rule.pattern == new.pattern:
            out[i] = new
            return out
    out.append(new)
    return out
