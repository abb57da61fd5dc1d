"""Extraction of tool calls and reasoning blocks from model replies.

A reply is free text that may contain:

    <reasoning>...</reasoning>
    <explanation>...</explanation>
    <tool_call name="@coder" args='{"cmd":"read","args":{"file":"x"}}' />

Tool-call tags are read by a small scanner rather than regular
expressions so that quoted attribute values may contain ``>``, the other
quote character, or escaped quotes. Malformed tags are skipped; parsing
never raises.
"""

import enum
import html
import json
import re
from dataclasses import dataclass, field
from typing import Iterator

_OPEN_TAG = "<tool_call"
_CLOSE_TAG = "</tool_call>"
_BLOCK_KINDS = ("reasoning", "explanation")
_BLOCK_RE = re.compile(r"(?is)<(reasoning|explanation)>(.*?)</\1>")
_STRAY_TAG_RE = re.compile(r"(?is)</?\s*(?:reasoning|explanation|thought)\s*>")
_PROMPT_LINE_RE = re.compile(r"(?m)^[$#]\s+")


@dataclass
class Invocation:
    """One tool-call request: tool name, raw argument string, matched text."""

    name: str
    args: str
    raw: str


@dataclass
class ReasoningBlock:
    kind: str
    text: str
    raw: str


@dataclass
class PlainText:
    text: str


ToolCall = Invocation

Segment = Invocation | ReasoningBlock | PlainText


class _State(enum.Enum):
    OUTSIDE = "outside"
    IN_TAG = "in_tag"
    IN_ATTR_VALUE = "in_attr_value"


def _is_name_char(ch: str) -> bool:
    return (ch.isascii() and ch.isalnum()) or ch in "-_"


def _scan_tag(text: str, pos: int) -> tuple[dict[str, str], int] | None:
    """Scan the attributes of a tag whose name ends at *pos*.

    Returns (attributes, end) where *end* is the index just past ``>`` or
    ``/>``, or None when the tag never closes. The first occurrence of an
    attribute wins; attribute names are case-insensitive.
    """
    attrs: dict[str, str] = {}
    state = _State.IN_TAG
    n = len(text)
    i = pos
    attr_name: str | None = None
    quote = ""
    buf: list[str] = []

    def store(value: str) -> None:
        if attr_name is not None and attr_name not in attrs:
            attrs[attr_name] = value

    while i < n:
        ch = text[i]

        if state is _State.IN_ATTR_VALUE:
            if ch == "\\" and i + 1 < n and text[i + 1] in (quote, "\\"):
                buf.append(text[i + 1])
                i += 2
                continue
            if ch == quote:
                store("".join(buf))
                attr_name = None
                state = _State.IN_TAG
            else:
                buf.append(ch)
            i += 1
            continue

        # IN_TAG
        if ch == ">":
            return attrs, i + 1
        if ch == "/" and text.startswith(">", i + 1):
            return attrs, i + 2
        if ch in "\"'":
            # quoted junk with no attribute name; skip it like a value
            attr_name = None
            quote = ch
            buf = []
            state = _State.IN_ATTR_VALUE
            i += 1
            continue
        if not _is_name_char(ch):
            i += 1
            continue

        start = i
        while i < n and _is_name_char(text[i]):
            i += 1
        attr_name = text[start:i].lower()
        while i < n and text[i] in " \t":
            i += 1
        if i >= n or text[i] != "=":
            attr_name = None
            continue
        i += 1
        while i < n and text[i] in " \t":
            i += 1
        if i >= n:
            break
        if text[i] in "\"'":
            quote = text[i]
            buf = []
            state = _State.IN_ATTR_VALUE
            i += 1
            continue
        start = i
        while i < n and text[i] not in " \t\n>" and not text.startswith("/>", i):
            i += 1
        store(html.unescape(text[start:i]))
        attr_name = None

    return None


def _find_ci(lower: str, needle: str, start: int) -> int:
    return lower.find(needle, start)


def _match_tool_call(text: str, lower: str, start: int) -> tuple[Invocation | None, int] | None:
    """Try to read a tool-call tag at *start*.

    Returns (invocation, end) when a tag was consumed (invocation is None
    for a tag without a name), or None when *start* is not a tag.
    """
    after = start + len(_OPEN_TAG)
    if after < len(text) and text[after] not in " \t\n\r>/":
        return None
    scanned = _scan_tag(text, after)
    if scanned is None:
        return None
    attrs, end = scanned
    if not text[end - 2 : end] == "/>":
        close = _find_ci(lower, _CLOSE_TAG, end)
        next_open = _find_ci(lower, _OPEN_TAG, end)
        if close >= 0 and (next_open < 0 or close < next_open):
            end = close + len(_CLOSE_TAG)

    name = attrs.get("name")
    if name is None:
        return None, end
    return Invocation(name=name.strip(), args=attrs.get("args", ""), raw=text[start:end]), end


def _balanced_object(text: str, pos: int) -> str:
    """Return the balanced ``{...}`` starting at *pos*, or ""."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(pos, len(text)):
        ch = text[i]
        if escaped:
            escaped = False
            continue
        if ch == "\\" and in_string:
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[pos : i + 1]
    return ""


def _json_invocation(obj: dict, raw: str) -> Invocation | None:
    name = ""
    for key in ("tool_call", "name", "tool"):
        if isinstance(obj.get(key), str):
            name = obj[key]
            break
    if not name.startswith("@"):
        return None

    args = ""
    for key in ("args", "arguments"):
        if key in obj:
            value = obj[key]
            args = value if isinstance(value, str) else json.dumps(value, separators=(",", ":"))
            break
    return Invocation(name=name, args=args, raw=raw)


def _match_json_call(text: str, start: int) -> tuple[Invocation, int] | None:
    candidate = _balanced_object(text, start)
    if not candidate:
        return None
    try:
        obj = json.loads(candidate)
    except ValueError:
        return None
    if not isinstance(obj, dict):
        return None
    call = _json_invocation(obj, candidate)
    if call is None:
        return None
    return call, start + len(candidate)


def _match_block(text: str, lower: str, start: int) -> tuple[ReasoningBlock, int] | None:
    for kind in _BLOCK_KINDS:
        opener = f"<{kind}>"
        if lower.startswith(opener, start):
            closer = f"</{kind}>"
            close = lower.find(closer, start + len(opener))
            if close < 0:
                return None
            end = close + len(closer)
            body = text[start + len(opener) : close].strip()
            return ReasoningBlock(kind=kind, text=body, raw=text[start:end]), end
    return None


def iter_segments(text: str) -> Iterator[Segment]:
    """Lazily split a reply into invocations, reasoning blocks and plain text."""
    lower = text.lower()
    n = len(text)
    pos = 0
    plain_start = 0

    while pos < n:
        ch = text[pos]
        matched: tuple[Segment | None, int] | None = None
        if ch == "<":
            if lower.startswith(_OPEN_TAG, pos):
                matched = _match_tool_call(text, lower, pos)
            else:
                matched = _match_block(text, lower, pos)
        elif ch == "{":
            matched = _match_json_call(text, pos)

        if matched is None:
            pos += 1
            continue

        segment, end = matched
        if pos > plain_start:
            yield PlainText(text[plain_start:pos])
        if segment is not None:
            yield segment
        pos = plain_start = end

    if plain_start < n:
        yield PlainText(text[plain_start:])


def parse_tool_calls(text: str) -> list[Invocation]:
    """All invocations in *text*, in order of appearance."""
    return [seg for seg in iter_segments(text) if isinstance(seg, Invocation)]


@dataclass
class ParsedReply:
    thought: str
    reasoning: str = ""
    explanation: str = ""
    remaining: str = ""
    has_reasoning: bool = False
    tool_calls: list[Invocation] = field(default_factory=list)


def _first_block(thought: str, kind: str) -> str:
    for m in _BLOCK_RE.finditer(thought):
        if m.group(1).lower() == kind:
            return m.group(2).strip()
    return ""


def parse_reply(text: str) -> ParsedReply:
    """Split a reply into the thought before the first invocation and the invocations.

    ``remaining`` is the thought with reasoning/explanation blocks and
    stray ``<thought>`` style tags removed.
    """
    calls = parse_tool_calls(text)
    thought = text.strip()
    if calls:
        thought = text.split(calls[0].raw, 1)[0].strip()

    reply = ParsedReply(thought=thought, tool_calls=calls)
    reply.reasoning = _first_block(thought, "reasoning")
    reply.explanation = _first_block(thought, "explanation")
    reply.has_reasoning = "<reasoning>" in thought.lower() and "</reasoning>" in thought.lower()
    remaining = _BLOCK_RE.sub("", thought)
    reply.remaining = _STRAY_TAG_RE.sub("", remaining).strip()
    return reply


# -- Legacy fenced command blocks ---------------------------------------------


_EXECUTE_RE = re.compile(r"(?s)```execute:\s*([A-Za-z0-9_-]+)\s*\n(.*?)```")
_SHELL_RE = re.compile(r"(?s)```(?:sh|bash|shell)\s*\n(.*?)```")
_EXPLANATION_RE = re.compile(r"(?s)<explanation>(.*?)</explanation>")
_SCRIPT_RES = [
    re.compile(r"if\s+.*\s+then"),
    re.compile(r"for\s+.*\s+do"),
    re.compile(r"while\s+.*\s+do"),
    re.compile(r"case\s+.*\s+in"),
]


@dataclass
class CommandBlock:
    description: str
    commands: list[str]
    language: str = "shell"
    is_script: bool = False


def is_shell_script(content: str) -> bool:
    """Heuristic: heredocs, file writes or control flow keep a block whole."""
    if "<<" in content or "cat >" in content or "#!/bin/" in content:
        return True
    if "function " in content:
        return True
    return any(r.search(content) for r in _SCRIPT_RES)


def split_by_blank_line(src: str) -> list[str]:
    commands: list[str] = []
    buf: list[str] = []
    for line in src.split("\n"):
        if line.strip():
            buf.append(line)
        elif buf:
            commands.append("\n".join(buf))
            buf = []
    if buf:
        commands.append("\n".join(buf))
    return commands


def _last_meaningful_line(text: str) -> str:
    for line in reversed(text.split("\n")):
        line = line.strip()
        if line and not line.startswith("```"):
            return line
    return ""


def _comment_title(command: str) -> str:
    for line in command.split("\n"):
        line = line.strip()
        if line.startswith("#"):
            return line.lstrip("#").strip()
    return ""


def _blocks_from(body: str, description: str, language: str) -> list[CommandBlock]:
    body = body.strip()
    if is_shell_script(body):
        return [CommandBlock(description, [body], language, is_script=True)]
    commands = [c.strip() for c in split_by_blank_line(body)]
    blocks = []
    for cmd in commands:
        desc = description
        if len(commands) > 1:
            desc = _comment_title(cmd) or description
        blocks.append(CommandBlock(desc, [cmd], language))
    return blocks


def extract_command_blocks(text: str) -> list[CommandBlock]:
    """Fenced ```execute:<lang>``` blocks, or plain ```sh``` blocks when there are none."""
    blocks: list[CommandBlock] = []
    matches = list(_EXECUTE_RE.finditer(text))
    if not matches:
        for m in _SHELL_RE.finditer(text):
            blocks.extend(_blocks_from(m.group(1), "Shell command", "shell"))
        return blocks

    prev_end = 0
    for m in matches:
        preceding = text[prev_end : m.start()]
        explanation = _EXPLANATION_RE.search(preceding)
        if explanation:
            description = explanation.group(1).strip()
        else:
            description = _last_meaningful_line(preceding)
        blocks.extend(_blocks_from(m.group(2), description, m.group(1).strip()))
        prev_end = m.end()
    return blocks


def has_legacy_commands(text: str) -> bool:
    """True when a reply uses fenced blocks or ``$ cmd`` prompt lines."""
    return "```" in text or bool(_PROMPT_LINE_RE.search(text))
