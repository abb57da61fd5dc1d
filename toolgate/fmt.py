"""ANSI-formatted stderr output using Rich."""

import re

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)

_SECRET_TOKENS = [
    re.compile(r"\bsk-[A-Za-z0-9_-]{8,}"),
    re.compile(r"\bhf_[A-Za-z0-9]{8,}"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{16,}"),
]
# The first group (the key name) is kept.
_SECRET_ASSIGNMENTS = [
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=-]{8,}"),
    re.compile(
        r"(?i)\b((?:api[_-]?key|token|secret|password|passwd)\s*[=:]\s*)[^\s'\"]+"
    ),
]


def redact_secrets(text: str) -> str:
    """Mask API keys, bearer tokens and ``password=...`` style values."""
    for pattern in _SECRET_TOKENS:
        text = pattern.sub("[REDACTED]", text)
    for pattern in _SECRET_ASSIGNMENTS:
        text = pattern.sub(r"\1[REDACTED]", text)
    return text


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Turn structure ----------------------------------------------------------


def turn_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Turn {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, finish_reason: str) -> None:
    style = "green" if finish_reason == "stop" else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Waiting for LLM"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def completion(turns: int, exit_code: str) -> None:
    if exit_code == "ok":
        _console.print(
            Text(f"  ✓ Agent finished: {turns} turns", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Agent finished: {turns} turns, exit={exit_code}", style="bold red")
        )


# -- Reply cards -------------------------------------------------------------


def _card(title: str, body: str, style: str) -> None:
    body = body.strip()
    if not body:
        return
    _console.print(
        Panel(Markdown(body), title=title, title_align="left", border_style=style)
    )


def reasoning(text: str) -> None:
    _card("reasoning", text, "cyan")


def explanation(text: str) -> None:
    _card("explanation", text, "green")


def response(text: str) -> None:
    _card("response", text, "bright_black")


def correction(reason: str) -> None:
    line = Text()
    line.append("  ↻ Format correction: ", style="bold yellow")
    line.append(reason, style="yellow")
    _console.print(line)


# -- Tool calls --------------------------------------------------------------


def batch_header(total: int) -> None:
    _console.print(Rule(f"batch of {total} actions", style="magenta"))


def batch_summary(succeeded: int, total: int, failed: bool) -> None:
    style = "bold red" if failed else "bold green"
    label = "interrupted" if failed else "complete"
    _console.print(Text(f"  batch {label}: {succeeded}/{total} succeeded", style=style))


def tool_call(name: str, args: str, index: int = 1, total: int = 1) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    if total > 1:
        header.append(f"[{index}/{total}] ", style="magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args:
        for line in redact_secrets(args).splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, output: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if output:
        for line in redact_secrets(output).splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_error(name: str, msg: str, output: str = "") -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {redact_secrets(msg)}", style="red")
    _console.print(header)
    if output:
        for line in redact_secrets(output).splitlines():
            _console.print(Text(f"    {line}", style="dim"))


# -- Security prompt ---------------------------------------------------------


def security_check(label: str, details: list[str], pattern: str | None) -> None:
    body = Text()
    body.append("Action:  ", style="bright_black")
    body.append(label, style="bold yellow")
    for detail in details:
        body.append(f"\n         {redact_secrets(detail)}", style="cyan")
    body.append("\nRule:    ", style="bright_black")
    if pattern is None:
        body.append("exec needs individual approval", style="bright_black")
    else:
        body.append(f"no rule for '{pattern}'", style="bright_black")
    body.append("\n\nChoose:\n", style="bold")
    body.append("  [y] ", style="green")
    body.append("yes, run once")
    if pattern is not None:
        body.append("\n  [a] ", style="green")
        body.append(f"always allow ({pattern})")
    body.append("\n  [n] ", style="red")
    body.append("no, skip")
    if pattern is not None:
        body.append("\n  [d] ", style="red")
        body.append(f"always deny ({pattern})")
    _console.print(
        Panel(body, title="SECURITY CHECK", title_align="center", border_style="magenta")
    )
    _console.print(Text(" > ", style="magenta"), end="")


def security_cancelled() -> None:
    _console.print(Text("\n  [cancelled]", style="red"))


def security_no_input() -> None:
    _console.print(Text("\n  [no input, denied]", style="red"))


# -- Command blocks ----------------------------------------------------------


def command_plan(blocks: list, outputs: dict | None = None) -> None:
    outputs = outputs or {}
    _console.print(Rule("command plan", style="green"))
    for i, block in enumerate(blocks, 1):
        status = outputs.get(i - 1)
        marker = " " if status is None else ("✓" if status else "✗")
        line = Text()
        line.append(f"  {marker} #{i} ", style="bold")
        line.append(f"[{block.language}] ", style="cyan")
        line.append(block.description or "command")
        _console.print(line)
        for cmd in block.commands:
            for cmd_line in cmd.splitlines():
                _console.print(Text(f"      $ {cmd_line}", style="dim"))


def command_menu_help() -> None:
    _console.print(
        Text(
            "  [N] run #N   [a] run all   [eN] edit #N   [tN] dry-run #N   [q] quit",
            style="dim",
        )
    )


def dry_run(command: str) -> None:
    _console.print(Text(f"  [dry-run] {command}", style="yellow"))


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(redact_secrets(msg), style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(Text("Interactive mode. Type /exit or Ctrl-D to quit.", style="dim"))
