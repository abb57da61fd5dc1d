"""Pre-flight cleanup of raw tool-call arguments.

Models routinely emit arguments with HTML entities, shell line
continuations and dangling backslashes. sanitize_args() normalizes those
artifacts so the tokenizer sees what the model meant to send.
"""

import html
import json
import logging
import shlex

from .argv import maybe_unescape_jsonish, split_args_lenient
from .report import ParseError

logger = logging.getLogger(__name__)

DESIGNATED_TOOL = "@coder"

# Flags of the designated tool that always take a value.
VALUE_FLAGS = frozenset(
    {
        "--search",
        "--replace",
        "--content",
        "--file",
        "--cmd",
        "--dir",
        "--term",
        "--encoding",
        "--diff",
        "--diff-encoding",
        "--start",
        "--end",
        "--head",
        "--tail",
        "--max-bytes",
        "--context",
        "--max-results",
        "--glob",
        "--timeout",
        "--path",
        "--limit",
        "--pattern",
    }
)

# Subcommand -> flags without which the designated tool cannot run.
REQUIRED_FLAGS: dict[str, tuple[str, ...]] = {
    "write": ("--file", "--content"),
    "search": ("--term",),
    "read": ("--file",),
    "exec": ("--cmd",),
    "rollback": ("--file",),
}

# Flags that may be omitted, but need a value when present.
OPTIONAL_VALUE_FLAGS: dict[str, str] = {
    "patch": "--replace",
    "search": "--dir",
}

_HSPACE = " \t\r"
_PAYLOAD_CHARS = frozenset("+/=")


def has_newline(s: str) -> bool:
    return "\n" in s or "\r" in s


def is_clearly_invalid_value(value: str) -> bool:
    """True for placeholder values a model leaves behind after a line break.

    Empty strings, a lone backslash, or a backslash followed only by
    punctuation. Letters, digits and the base64 characters ``+/=`` count
    as real payload.
    """
    v = value.strip()
    if not v or v == "\\":
        return True
    if v.startswith("\\"):
        rest = v[1:].strip()
        return not any(
            (c.isascii() and c.isalnum()) or c in _PAYLOAD_CHARS for c in rest
        )
    return False


def process_line_continuations(s: str) -> str:
    """Collapse ``\\`` + newline sequences.

    Outside quotes the continuation becomes one space; inside quotes the
    two lines are joined directly. Indentation after the break is dropped.
    """
    out: list[str] = []
    in_single = in_double = False
    n = len(s)
    i = 0
    while i < n:
        ch = s[i]
        unescaped = i == 0 or s[i - 1] != "\\"
        if ch == "'" and not in_double and unescaped:
            in_single = not in_single
        elif ch == '"' and not in_single and unescaped:
            in_double = not in_double
        elif ch == "\\":
            j = i + 1
            while j < n and s[j] in _HSPACE:
                j += 1
            if j < n and s[j] == "\n":
                j += 1
                while j < n and s[j] in _HSPACE:
                    j += 1
                if not in_single and not in_double:
                    out.append(" ")
                i = j
                continue
        out.append(ch)
        i += 1
    return "".join(out)


def remove_bogus_backslashes(s: str) -> str:
    """Drop backslashes outside quotes that escape a space, tab or quote.

    ``--search \\ "value"`` becomes ``--search  "value"``; ``\\\\`` is kept.
    """
    out: list[str] = []
    in_single = in_double = False
    n = len(s)
    i = 0
    while i < n:
        ch = s[i]
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        elif ch == "\\" and not in_single and not in_double and i + 1 < n:
            nxt = s[i + 1]
            if nxt in " \t\"'":
                i += 1
                continue
            if nxt == "\\":
                out.append("\\\\")
                i += 2
                continue
        out.append(ch)
        i += 1
    return "".join(out)


def close_quotes_after_trailing_backslash(s: str) -> tuple[str, bool]:
    """Fix ``--search "\\`` style endings by dropping the backslash and closing quotes."""
    trimmed = s.rstrip(" \t\r\n")
    if not trimmed.endswith("\\"):
        return s, False

    body = trimmed[:-1]
    in_single = in_double = escaped = False
    for ch in body:
        if escaped:
            escaped = False
        elif ch == "\\" and not in_single:
            escaped = True
        elif ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double

    if not (in_single or in_double):
        return s, False
    if escaped:
        # the final backslash is itself escaped and stays
        body = trimmed
    return body + ("'" if in_single else '"'), True


def _trailing_backslash_outside_quotes(s: str) -> bool:
    in_single = in_double = escaped = False
    for ch in s:
        if escaped:
            escaped = False
        elif ch == "\\" and not in_single:
            escaped = True
        elif ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
    return escaped and not in_single and not in_double


def trim_trailing_backslashes(s: str) -> tuple[str, bool]:
    """Strip unescaped backslashes left dangling at the very end, outside quotes."""
    t = s.rstrip(" \t\r\n")
    original = t
    while t.endswith("\\") and _trailing_backslash_outside_quotes(t):
        t = t[:-1].rstrip(" \t\r\n")
    if t == original:
        return s, False
    return t, True


def collapse_spaces(s: str) -> str:
    """Squeeze runs of spaces and tabs outside quotes into one space."""
    out: list[str] = []
    in_single = in_double = False
    last_space = False
    for ch in s:
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        elif not in_single and not in_double and ch in " \t":
            if not last_space:
                out.append(" ")
                last_space = True
            continue
        out.append(ch)
        last_space = False
    return "".join(out)


def repair_placeholder_values(s: str) -> tuple[str, bool]:
    """Replace placeholder values that follow value-taking flags.

    When a flag from VALUE_FLAGS is followed by a clearly invalid token,
    that token is dropped and the next token becomes the value. When
    nothing follows, *s* is returned untouched so that required-value
    validation rejects the invocation.
    """
    try:
        tokens = split_args_lenient(s)
    except ParseError:
        return s, False
    if not tokens:
        return s, False

    out: list[str] = []
    changed = False
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        out.append(tok)
        i += 1
        if tok not in VALUE_FLAGS or i >= len(tokens):
            continue
        if not is_clearly_invalid_value(tokens[i]):
            continue
        changed = True
        i += 1
        if i >= len(tokens):
            return s, False
        out.append(tokens[i])
        i += 1

    if not changed:
        return s, False
    return " ".join(shlex.quote(t) for t in out), True


def sanitize_args(
    raw: str,
    tool_name: str = "",
    strict: bool = False,
    designated_tool: str = DESIGNATED_TOOL,
) -> str:
    """Normalize raw tool-call arguments before tokenizing.

    ``strict`` enables the placeholder repair for the designated tool.
    """
    s = html.unescape(raw)
    s = s.replace("\r\n", "\n").replace("\r", "\n")
    s = process_line_continuations(s)

    unescaped, changed = maybe_unescape_jsonish(s)
    if changed:
        s = unescaped

    s = remove_bogus_backslashes(s)

    s, changed = close_quotes_after_trailing_backslash(s)
    if changed:
        logger.debug("closed unbalanced quotes after trailing backslash (%s)", tool_name)

    s, changed = trim_trailing_backslashes(s)
    if changed:
        logger.debug("removed dangling trailing backslash (%s)", tool_name)

    s = collapse_spaces(s)

    if strict and tool_name.strip().lower() == designated_tool.lower():
        repaired, changed = repair_placeholder_values(s)
        if changed:
            logger.debug("replaced placeholder flag values (%s)", tool_name)
            s = repaired

    return s.strip()


def try_compact_json(s: str) -> str:
    """Collapse multi-line arguments to one line, or return "" when impossible.

    Pretty-printed JSON is re-serialized compactly; other text has its
    whitespace runs (newlines included) folded to single spaces.
    """
    trimmed = s.strip()
    if not trimmed:
        return ""
    if trimmed[0] in "{[":
        # Folding whitespace inside broken JSON would alter string values.
        try:
            return json.dumps(
                json.loads(trimmed), separators=(",", ":"), ensure_ascii=False
            )
        except ValueError:
            return ""
    collapsed = " ".join(trimmed.split())
    if has_newline(collapsed):
        return ""
    return collapsed


def _flag_value_missing(argv: list[str], i: int) -> bool:
    if i + 1 >= len(argv):
        return True
    value = argv[i + 1].strip()
    return not value or value.startswith("-") or is_clearly_invalid_value(value)


def missing_required_value(argv: list[str]) -> str | None:
    """Return the first required flag of a designated-tool argv that lacks a value.

    ``patch`` needs ``--file`` and ``--search`` unless ``--diff`` is given.
    A value that is empty, looks like another flag, or is a placeholder
    counts as missing.
    """
    if not argv:
        return None
    sub = argv[0].strip().lower()

    if sub == "patch":
        required: tuple[str, ...] = () if "--diff" in argv else ("--file", "--search")
    else:
        required = REQUIRED_FLAGS.get(sub, ())
    optional = OPTIONAL_VALUE_FLAGS.get(sub)
    if not required and optional is None:
        return None

    found = set()
    for i, tok in enumerate(argv):
        if tok in required or tok == optional:
            if _flag_value_missing(argv, i):
                return tok
            found.add(tok)

    for flag in required:
        if flag not in found:
            return flag
    return None
