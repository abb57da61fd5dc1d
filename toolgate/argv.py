"""Quote-aware argv tokenization for tool-call arguments.

Arguments arrive either as a CLI-style string (``read --file "a b.txt"``)
or as JSON (``{"cmd": "read", "args": {"file": "a b.txt"}}``). Both forms
end up as a flat argv list handed to the plugin executable.
"""

import json

from .report import ParseError

_SPACES = " \t\n\r"


def _split(s: str, lenient: bool) -> list[str]:
    args: list[str] = []
    buf: list[str] = []
    in_single = False
    in_double = False
    escaped = False

    def flush():
        if buf:
            args.append("".join(buf))
            buf.clear()

    for ch in s:
        if escaped:
            buf.append(ch)
            escaped = False
            continue
        if ch == "\\" and not in_single:
            escaped = True
            continue
        if ch == "'" and not in_double:
            in_single = not in_single
            continue
        if ch == '"' and not in_single:
            in_double = not in_double
            continue
        if ch in _SPACES and not in_single and not in_double:
            flush()
            continue
        buf.append(ch)

    if escaped:
        if not lenient:
            raise ParseError("dangling escape at end of arguments (ended with '\\')")
        buf.append("\\")
    if in_single or in_double:
        raise ParseError("unbalanced quotes in arguments")

    flush()
    return args


def split_args(s: str) -> list[str]:
    """Split *s* on unquoted whitespace.

    Single and double quotes group words; a backslash outside single quotes
    makes the next character literal. Escapes are not interpreted, so
    ``\\n`` yields ``n``. Raises ParseError on unbalanced quotes or a
    trailing escape.
    """
    return _split(s, lenient=False)


def split_args_lenient(s: str) -> list[str]:
    """Like split_args, but a trailing backslash is kept as a literal.

    Only used while repairing malformed arguments.
    """
    return _split(s, lenient=True)


def format_number(value: int | float) -> str:
    """Render a JSON number the way a shell user would type it (10, not 10.0)."""
    if isinstance(value, float):
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    return str(value)


def maybe_unescape_jsonish(text: str) -> tuple[str, bool]:
    """Undo up to two layers of quoting around JSON-looking arguments.

    Handles ``"{\\"cmd\\":\\"read\\"}"`` and ``{\\"cmd\\":\\"read\\"}``.
    Returns (value, True) when the result differs from the input and
    starts with ``{`` or ``[``; otherwise (text, False).
    """
    orig = text.strip()
    if not orig:
        return text, False

    cur = orig
    for _ in range(2):
        if len(cur) >= 2 and cur[0] == '"' and cur[-1] == '"':
            try:
                unquoted = json.loads(cur)
            except ValueError:
                unquoted = None
            if isinstance(unquoted, str):
                cur = unquoted.strip()

        looks_json = cur.startswith(("{", "["))
        if looks_json and ('\\"' in cur or "\\'" in cur):
            try:
                cur = json.loads('"' + cur + '"').strip()
                continue
            except ValueError:
                pass
        break

    if cur.startswith(("{", "[")) and cur != orig:
        return cur, True
    return text, False


def _flag_name(key: str) -> str:
    return key if key.startswith("-") else "--" + key


def append_flag(argv: list[str], key: str, value) -> None:
    """Append ``--key value`` for one JSON flag; lists repeat the flag."""
    if value is None:
        return
    flag = _flag_name(key)
    if isinstance(value, bool):
        if value:
            argv.append(flag)
    elif isinstance(value, str):
        argv.extend((flag, value))
    elif isinstance(value, (int, float)):
        argv.extend((flag, format_number(value)))
    elif isinstance(value, list):
        for item in value:
            append_flag(argv, key, item)
    else:
        argv.extend((flag, json.dumps(value, separators=(",", ":"))))


def json_positionals(payload: dict) -> list[str]:
    """Positional values of a JSON payload (``positional`` then ``_``)."""
    out: list[str] = []
    for key in ("positional", "_"):
        raw = payload.get(key)
        if isinstance(raw, str):
            out.append(raw)
        elif isinstance(raw, list):
            out.extend(item for item in raw if isinstance(item, str))
    return out


def _string_list(items: list) -> list[str]:
    if not all(isinstance(item, str) for item in items):
        raise ParseError("argv JSON must contain only strings")
    return list(items)


def collect_flags(payload: dict) -> dict:
    """Merge the ``args`` and ``flags`` maps of a JSON payload.

    The key ``command`` is an alias for ``cmd``.
    """
    merged: dict = {}
    for section in ("args", "flags"):
        raw = payload.get(section)
        if not isinstance(raw, dict):
            continue
        for key, value in raw.items():
            merged["cmd" if key == "command" else key] = value
    return merged


def json_command(payload: dict) -> str:
    """Return the subcommand of a JSON payload: ``cmd``, else ``argv[0]``."""
    cmd = payload.get("cmd")
    if isinstance(cmd, str) and cmd:
        return cmd
    argv = payload.get("argv")
    if isinstance(argv, list) and argv and isinstance(argv[0], str):
        return argv[0]
    return ""


def argv_from_json(payload: dict) -> list[str]:
    """Build an argv list from a JSON object payload."""
    cmd = json_command(payload)

    raw_argv = payload.get("argv")
    if isinstance(raw_argv, list) and raw_argv:
        argv = _string_list(raw_argv)
        if cmd and argv[0] != cmd:
            argv.insert(0, cmd)
        return argv

    if not cmd:
        raise ParseError("JSON args require a 'cmd' or 'argv' field")

    argv = [cmd]
    flags = collect_flags(payload)
    for key in sorted(flags):
        append_flag(argv, key, flags[key])
    argv.extend(json_positionals(payload))
    return argv


def parse_tool_args(s: str) -> list[str]:
    """Turn raw tool-call arguments into argv.

    JSON objects and arrays are decoded; anything else is tokenized with
    split_args. Raises ParseError for malformed input.
    """
    trimmed = s.strip()
    if not trimmed:
        return []
    unescaped, changed = maybe_unescape_jsonish(trimmed)
    if changed:
        trimmed = unescaped
    if not trimmed.startswith(("{", "[")):
        return split_args(s)

    try:
        payload = json.loads(trimmed)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON args: {e}") from e

    if isinstance(payload, list):
        return _string_list(payload)
    if isinstance(payload, dict):
        return argv_from_json(payload)
    raise ParseError("JSON args must be an object or an array")
