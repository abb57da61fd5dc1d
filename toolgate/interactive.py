"""Operator menu for legacy fenced command blocks suggested by the model."""

import logging
import re
import threading

from prompt_toolkit import prompt as pt_prompt

from . import fmt
from .cancel import read_line
from .executor import run_shell
from .parser import CommandBlock
from .report import CancellationError, ExecutionError

logger = logging.getLogger(__name__)

_CHOICE_RE = re.compile(r"^([et]?)(\d+)$")


def _edit(command: str) -> str:
    return pt_prompt("edit> ", default=command)


def _run_block(block: CommandBlock, cancel, runner) -> bool:
    ok = True
    for cmd in block.commands:
        fmt.tool_call(block.language, cmd)
        try:
            result = runner(cmd, cancel=cancel)
        except ExecutionError as e:
            fmt.tool_error(block.language, str(e), e.output)
            ok = False
            break
        fmt.tool_result(block.language, result.duration, result.output)
    return ok


def run_command_menu(
    blocks: list[CommandBlock],
    cancel: threading.Event | None = None,
    reader=None,
    runner=run_shell,
    editor=_edit,
) -> dict[int, bool]:
    """Let the operator run, edit or dry-run suggested command blocks.

    Choices: ``N`` runs block N, ``a`` runs all in order (stopping at the
    first failure), ``eN`` edits block N before running it, ``tN`` shows
    block N without running it, ``q`` or end of input leaves the menu.

    Returns {block index: succeeded} for every block that was run.
    """
    outcomes: dict[int, bool] = {}
    if not blocks:
        return outcomes

    while True:
        fmt.command_plan(blocks, outcomes)
        fmt.command_menu_help()
        try:
            line = read_line(cancel, reader)
        except CancellationError:
            fmt.security_cancelled()
            return outcomes
        if line is None:
            return outcomes
        answer = line.strip().lower()
        if answer in ("", "q", "quit"):
            return outcomes

        if answer in ("a", "all"):
            for i, block in enumerate(blocks):
                outcomes[i] = _run_block(block, cancel, runner)
                if not outcomes[i]:
                    break
            continue

        m = _CHOICE_RE.match(answer)
        if not m or not 1 <= int(m.group(2)) <= len(blocks):
            fmt.warning(f"invalid choice: {answer}")
            continue
        index = int(m.group(2)) - 1
        block = blocks[index]

        if m.group(1) == "t":
            for cmd in block.commands:
                fmt.dry_run(cmd)
            continue
        if m.group(1) == "e":
            edited = [editor(cmd) for cmd in block.commands]
            block = CommandBlock(
                block.description,
                [c for c in edited if c.strip()],
                block.language,
                block.is_script,
            )
            blocks[index] = block
            logger.debug("command block %d edited by operator", index + 1)
        outcomes[index] = _run_block(block, cancel, runner)
