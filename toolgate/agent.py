import argparse
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime
import os
import sys
import threading
import time
from pathlib import Path

from importlib import metadata

import tiktoken

from . import fmt
from .argv import parse_tool_args
from .cancel import check_cancelled, run_cancellable
from .config import (
    _UNSET,
    MODES,
    apply_config_to_args,
    default_policy_path,
    generate_config,
    global_config_dir,
    load_config,
)
from .executor import PluginRegistry, plugin_timeout
from .interactive import run_command_menu
from .parser import Invocation, extract_command_blocks, has_legacy_commands, parse_reply
from .policy import Action, PolicyEngine, LOCAL_POLICY_FILE
from .report import (
    AgentError,
    CancellationError,
    ConfigError,
    ExecutionError,
    ParseError,
    PolicyDenied,
    ReportCollector,
    ValidationError,
)
from .sanitize import (
    DESIGNATED_TOOL,
    has_newline,
    missing_required_value,
    sanitize_args,
    try_compact_json,
)
from .security import SecurityDecision, apply_decision, prompt_security_check

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
CODER_SYSTEM_PROMPT_FILE = Path(__file__).parent / "coder_prompt.txt"

DEFAULT_MAX_TURNS = 30
MAX_AGENT_TURNS = 100

# Tool output beyond this is cut down to head + tail before reaching the model.
MAX_FEEDBACK_CHARS = 30_000
FEEDBACK_HEAD_CHARS = 5_000
FEEDBACK_TAIL_CHARS = 1_000

MAX_HISTORY_SIZE = 500 * 1024  # 500KB

_encoder = tiktoken.get_encoding("cl100k_base")

DENY_MESSAGE = "ERROR: ACTION BLOCKED BY SECURITY RULE. DO NOT RETRY."
DENY_FOREVER_MESSAGE = "ACTION PERMANENTLY BLOCKED. DO NOT RETRY."
DENY_ONCE_MESSAGE = (
    "ACTION DENIED BY USER. DO NOT RETRY THE SAME COMMAND. "
    "Ask for new instructions or try an alternative."
)
INTERRUPTED_MARKER = "\n[BATCH EXECUTION INTERRUPTED DUE TO ERROR IN PREVIOUS ACTION]\n"


# ---------------------------------------------------------------------------
# Prompts sent back to the model
# ---------------------------------------------------------------------------


def build_anchor(mode: str, designated_tool: str = DESIGNATED_TOOL) -> str:
    """Transient system reminder appended to every outgoing request."""
    if mode == "coder":
        return (
            "REMINDER (CODER MODE): you MUST reply with a short <reasoning> (2-6 lines) "
            f'then, if acting, one or more <tool_call name="{designated_tool}" args="..." />. '
            "You may batch multiple actions. Do NOT use code blocks (```) nor ```execute:...```. "
            "For write/patch: base64 encoding and single-line content are MANDATORY."
        )
    return (
        'REMINDER (AGENT MODE): you may use tools via <tool_call name="@tool" args="..." /> '
        "when it makes sense. To suggest commands use ```execute:<type>``` blocks. "
        "Avoid destructive commands without clear warnings and alternatives."
    )


def missing_reasoning_prompt() -> str:
    return (
        "FORMAT ERROR: In /coder mode, you MUST write a <reasoning> block (2-6 lines with "
        "task list) BEFORE any <tool_call>. Rewrite your response starting with "
        "<reasoning>...</reasoning> then your <tool_call> tags."
    )


def wrong_tool_prompt(designated_tool: str = DESIGNATED_TOOL) -> str:
    return (
        f"FORMAT ERROR: In /coder mode, the ONLY allowed tool is {designated_tool}. "
        f'Resend using: <tool_call name="{designated_tool}" '
        "args='{\"cmd\":\"...\",\"args\":{...}}' />"
    )


def legacy_block_prompt(designated_tool: str = DESIGNATED_TOOL) -> str:
    return (
        "FORMAT ERROR: Code blocks and shell commands are NOT allowed in /coder mode. "
        f'You MUST use <reasoning> followed by <tool_call name="{designated_tool}" '
        "args='{\"cmd\":\"exec\",\"args\":{\"cmd\":\"your command\"}}' />"
    )


def invalid_args_prompt(error: str, designated_tool: str = DESIGNATED_TOOL) -> str:
    t = designated_tool
    return (
        f"ERROR: Your <tool_call> has invalid args (error: {error}). "
        "In /coder mode, args MUST be valid single-line JSON.\n\n"
        "Quick fixes:\n"
        f"<tool_call name=\"{t}\" args='{{\"cmd\":\"read\",\"args\":{{\"file\":\"main.py\"}}}}' />\n"
        f"<tool_call name=\"{t}\" args='{{\"cmd\":\"exec\",\"args\":{{\"cmd\":\"pytest -q\"}}}}' />\n"
        f"<tool_call name=\"{t}\" args='{{\"cmd\":\"write\",\"args\":{{\"file\":\"x.txt\","
        f"\"content\":\"aGVsbG8K\",\"encoding\":\"base64\"}}}}' />\n"
        f'Or CLI style: <tool_call name="{t}" args="read --file main.py" />'
    )


def missing_flag_prompt(flag: str, designated_tool: str = DESIGNATED_TOOL) -> str:
    t = designated_tool
    return (
        f"ERROR: Your {t} tool_call is missing required flag {flag} "
        "(or its value is invalid/empty).\n\n"
        "Resend a SINGLE <tool_call> with valid args. Use JSON format (recommended):\n"
        f"<tool_call name=\"{t}\" args='{{\"cmd\":\"read\",\"args\":{{\"file\":\"main.py\"}}}}' />\n"
        f"<tool_call name=\"{t}\" args='{{\"cmd\":\"search\",\"args\":{{\"term\":\"TODO\",\"dir\":\".\"}}}}' />\n"
        f"<tool_call name=\"{t}\" args='{{\"cmd\":\"write\",\"args\":{{\"file\":\"x.txt\","
        f"\"content\":\"aGVsbG8K\",\"encoding\":\"base64\"}}}}' />\n"
        f"<tool_call name=\"{t}\" args='{{\"cmd\":\"exec\",\"args\":{{\"cmd\":\"pytest -q\"}}}}' />\n"
        f"<tool_call name=\"{t}\" args='{{\"cmd\":\"patch\",\"args\":{{\"file\":\"main.py\","
        f"\"search\":\"old\",\"replace\":\"new\"}}}}' />"
    )


def single_line_prompt(args: str, designated_tool: str = DESIGNATED_TOOL) -> str:
    t = designated_tool
    preview = args[:200] + "..." if len(args) > 200 else args
    return (
        "ERROR: Your tool_call args contain line breaks, which is NOT allowed.\n\n"
        "The args attribute MUST be a SINGLE LINE. Use JSON format with single quotes around it:\n"
        f"<tool_call name=\"{t}\" args='{{\"cmd\":\"exec\",\"args\":{{\"cmd\":\"ls -la\"}}}}' />\n"
        f"<tool_call name=\"{t}\" args='{{\"cmd\":\"write\",\"args\":{{\"file\":\"x.txt\","
        f"\"content\":\"aGVsbG8K\",\"encoding\":\"base64\"}}}}' />\n\n"
        "Rules:\n"
        "1. Never continue args with a trailing backslash.\n"
        "2. Never put real newlines inside args.\n"
        "3. Multi-line file content MUST be base64 encoded.\n"
        "4. Wrap the JSON in single quotes.\n\n"
        f"Your args (truncated):\n---\n{preview}\n---"
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def agent_max_turns() -> int:
    """Default turn budget from TOOLGATE_MAX_TURNS, capped at MAX_AGENT_TURNS."""
    raw = os.environ.get("TOOLGATE_MAX_TURNS", "")
    try:
        value = int(raw)
    except ValueError:
        return DEFAULT_MAX_TURNS
    if value <= 0:
        return DEFAULT_MAX_TURNS
    return min(value, MAX_AGENT_TURNS)


def clamp_max_turns(max_turns: int | None) -> int:
    if max_turns is None or max_turns <= 0:
        return agent_max_turns()
    return min(max_turns, MAX_AGENT_TURNS)


def _safe_history_path(base_dir: str) -> Path:
    """Build history path, verify it resolves inside base_dir."""
    base = Path(base_dir).resolve()
    history_path = (Path(base_dir) / ".toolgate" / "HISTORY.md").resolve()
    if not history_path.is_relative_to(base):
        raise ValueError(f"history path {history_path} escapes base directory {base}")
    return history_path


def append_history(base_dir: str, question: str, answer: str) -> None:
    """Append a timestamped Q&A entry to .toolgate/HISTORY.md."""
    if not answer or not answer.strip():
        return

    try:
        history_path = _safe_history_path(base_dir)
    except ValueError:
        fmt.warning("history path escapes base directory, skipping write")
        return

    try:
        history_path.parent.mkdir(parents=True, exist_ok=True)

        current_size = history_path.stat().st_size if history_path.exists() else 0
        if current_size >= MAX_HISTORY_SIZE:
            fmt.warning("history file at capacity, skipping write")
            return

        q_display = question[:200] + "..." if len(question) > 200 else question
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        entry = f"---\n\n**{timestamp}** — *{q_display}*\n\n{answer}\n\n"

        with history_path.open("a", encoding="utf-8") as f:
            f.write(entry)
    except OSError:
        fmt.warning("failed to write history entry")


def estimate_tokens(messages: list) -> int:
    """Count tokens across all messages using tiktoken."""
    total = 0
    for m in messages:
        content = m.get("content", "") or ""
        total += len(_encoder.encode(content))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


def truncate_for_model(output: str) -> str:
    """Keep the head and tail of oversized tool output."""
    if len(output) <= MAX_FEEDBACK_CHARS:
        return output
    omitted = len(output) - FEEDBACK_HEAD_CHARS - FEEDBACK_TAIL_CHARS
    return (
        output[:FEEDBACK_HEAD_CHARS]
        + f"\n\n... [MIDDLE CONTENT OMITTED ({omitted} chars) TO SAVE TOKENS] ...\n\n"
        + output[-FEEDBACK_TAIL_CHARS:]
    )


def call_llm(
    base_url,
    model_id,
    messages,
    max_output_tokens,
    temperature,
    top_p,
    seed,
    verbose,
    *,
    provider="lmstudio",
    api_key=None,
):
    """Call LiteLLM with the appropriate provider. Returns (text, finish_reason)."""
    import litellm

    litellm.suppress_debug_info = True

    if provider == "lmstudio":
        model_str = f"openai/{model_id}"
        kwargs = {"api_base": f"{base_url}/v1", "api_key": "lm-studio"}
    elif provider == "huggingface":
        bare_id = model_id.removeprefix("huggingface/")
        model_str = f"huggingface/{bare_id}"
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    elif provider == "openrouter":
        # Only strip a doubled "openrouter/" prefix; "openrouter/free" is an org/model id.
        bare_id = (
            model_id[len("openrouter/") :]
            if model_id.startswith("openrouter/openrouter/")
            else model_id
        )
        model_str = f"openrouter/{bare_id}"
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    elif provider == "generic":
        model_str = f"openai/{model_id}"
        kwargs = {"api_key": api_key or "none"}
        if base_url:
            kwargs["api_base"] = base_url
    else:
        raise AgentError(f"unknown provider {provider!r}")

    if verbose:
        extras = []
        if temperature is not None:
            extras.append(f"temperature={temperature}")
        if top_p is not None:
            extras.append(f"top_p={top_p}")
        if seed is not None:
            extras.append(f"seed={seed}")
        extra_str = ", " + ", ".join(extras) if extras else ""
        fmt.model_info(
            f"Calling model {model_str} with max_tokens={max_output_tokens}{extra_str}"
        )

    completion_kwargs = dict(
        model=model_str,
        messages=messages,
        max_tokens=max_output_tokens,
        **kwargs,
    )
    for key, val in [("temperature", temperature), ("top_p", top_p), ("seed", seed)]:
        if val is not None:
            completion_kwargs[key] = val

    try:
        response = litellm.completion(**completion_kwargs)
    except Exception as e:
        raise AgentError(f"LLM call failed: {e}")

    choice = response.choices[0]
    return choice.message.content or "", choice.finish_reason


# ---------------------------------------------------------------------------
# Batch execution
# ---------------------------------------------------------------------------


@dataclass
class ActionResult:
    tool_name: str
    output: str
    error: str | None = None
    display: str = ""


@dataclass
class BatchResult:
    results: list[ActionResult]
    corrective: str | None = None

    @property
    def interrupted(self) -> bool:
        if self.corrective is not None:
            return True
        return bool(self.results) and self.results[-1].error is not None

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.error is None)


def format_batch_feedback(batch: BatchResult) -> str:
    """Render a batch as the user message fed back to the model."""
    parts = []
    for i, result in enumerate(batch.results, 1):
        parts.append(f"--- Result of action {i} ({result.tool_name}) ---\n")
        if result.error is not None:
            parts.append(
                f"ERROR: {result.error}\nPartial output: {truncate_for_model(result.output)}\n"
            )
        else:
            parts.append(truncate_for_model(result.output) + "\n")
    if batch.interrupted and batch.results:
        parts.append(INTERRUPTED_MARKER)
    if batch.corrective is not None:
        parts.append(("\n" if batch.results else "") + batch.corrective)
    return "".join(parts)


def _check_policy(call, args, policy, cancel, security_prompt, report, turn):
    action = policy.check(call.name, args)
    if action is Action.ALLOW:
        if report:
            report.record_policy(turn, call.name, action.value)
        return
    if action is Action.DENY:
        if report:
            report.record_policy(turn, call.name, action.value)
        raise PolicyDenied(DENY_MESSAGE)

    decision = security_prompt(call.name, args, cancel)
    check_cancelled(cancel)
    if report:
        report.record_policy(turn, call.name, action.value, decision.value)
    apply_decision(policy, decision, call.name, args)
    if decision.denied:
        if decision is SecurityDecision.DENY_FOREVER:
            raise PolicyDenied(DENY_FOREVER_MESSAGE)
        raise PolicyDenied(DENY_ONCE_MESSAGE)


def prepare_args(
    call: Invocation, *, mode: str = "agent", designated_tool: str = DESIGNATED_TOOL
) -> str:
    """Sanitize the raw args of *call* into the string that is checked and run.

    The policy engine and the tokenizer both see this exact string. In coder
    mode a multi-line result is compacted or rejected with ValidationError.
    """
    coder = mode == "coder"
    args = sanitize_args(call.args, call.name, strict=coder, designated_tool=designated_tool)

    if coder and has_newline(args):
        compact = try_compact_json(args)
        if not compact:
            raise ValidationError(
                "multi-line tool_call args", single_line_prompt(args, designated_tool)
            )
        args = compact
    return args


def execute_invocation(
    call: Invocation,
    args: str,
    *,
    registry: PluginRegistry,
    mode: str = "agent",
    designated_tool: str = DESIGNATED_TOOL,
    cancel: threading.Event | None = None,
    timeout: float | None = None,
):
    """Tokenize, validate and run one authorized invocation whose *args* are prepared.

    Raises ValidationError (with corrective feedback for the model),
    ParseError, ExecutionError or CancellationError.
    """
    coder = mode == "coder"
    try:
        argv = parse_tool_args(args)
    except ParseError as e:
        if coder:
            raise ValidationError(
                f"invalid args: {e}", invalid_args_prompt(str(e), designated_tool)
            ) from e
        raise

    plugin = registry.get(call.name)
    if plugin is None:
        if coder:
            raise ValidationError(
                f"tool not found: {call.name}", f"Tool not found. Use {designated_tool}."
            )
        raise ExecutionError(f"tool not found: {call.name}")

    if call.name == designated_tool:
        flag = missing_required_value(argv)
        if flag:
            raise ValidationError(
                f"missing value for {flag}", missing_flag_prompt(flag, designated_tool)
            )

    return plugin.execute(argv, cancel=cancel, timeout=timeout)


def run_batch(
    calls: list[Invocation],
    *,
    registry: PluginRegistry,
    policy: PolicyEngine | None = None,
    mode: str = "agent",
    designated_tool: str = DESIGNATED_TOOL,
    cancel: threading.Event | None = None,
    security_prompt=prompt_security_check,
    verbose: bool = True,
    report: ReportCollector | None = None,
    turn: int = 0,
    tool_timeout: float | None = None,
) -> BatchResult:
    """Run invocations in order, stopping at the first failure."""
    batch = BatchResult(results=[])
    total = len(calls)
    if verbose and total > 1:
        fmt.batch_header(total)

    for i, call in enumerate(calls, 1):
        check_cancelled(cancel)
        if verbose:
            fmt.tool_call(call.name, call.args, i, total)
        t0 = time.monotonic()
        try:
            args = prepare_args(call, mode=mode, designated_tool=designated_tool)
            if policy is not None:
                _check_policy(call, args, policy, cancel, security_prompt, report, turn)
            result = execute_invocation(
                call,
                args,
                registry=registry,
                mode=mode,
                designated_tool=designated_tool,
                cancel=cancel,
                timeout=tool_timeout,
            )
        except ValidationError as e:
            batch.corrective = e.feedback
            if report:
                report.record_correction(turn, str(e))
            if verbose:
                fmt.correction(str(e))
            break
        except (PolicyDenied, ParseError, ExecutionError) as e:
            output = getattr(e, "output", "")
            elapsed = time.monotonic() - t0
            batch.results.append(ActionResult(call.name, output, str(e), output))
            if report:
                report.record_tool_call(
                    turn, call.name, call.args, False, elapsed, len(output), error=str(e)
                )
            if verbose:
                fmt.tool_error(call.name, str(e), output)
            break

        batch.results.append(ActionResult(call.name, result.output, None, result.output))
        if report:
            report.record_tool_call(
                turn, call.name, call.args, True, result.duration, len(result.output)
            )
        if verbose:
            fmt.tool_result(call.name, result.duration, result.output)

    if verbose and total > 1:
        fmt.batch_summary(batch.succeeded, total, batch.interrupted)
    return batch


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------


def _coder_format_error(reply, text: str, designated_tool: str) -> tuple[str, str] | None:
    """Return (reason, corrective message) when a coder-mode reply breaks the format."""
    if reply.tool_calls:
        if not reply.has_reasoning:
            return "missing <reasoning> block", missing_reasoning_prompt()
        if reply.tool_calls[0].name != designated_tool:
            return (
                f"tool {reply.tool_calls[0].name} is not {designated_tool}",
                wrong_tool_prompt(designated_tool),
            )
        return None
    if has_legacy_commands(text):
        return "code block instead of tool_call", legacy_block_prompt(designated_tool)
    return None


def run_agent_loop(
    messages: list,
    *,
    api_base: str,
    model_id: str,
    max_turns: int | None,
    max_output_tokens: int,
    temperature: float | None,
    top_p: float | None,
    seed: int | None,
    verbose: bool,
    llm_kwargs: dict,
    registry: PluginRegistry,
    policy: PolicyEngine | None = None,
    mode: str = "agent",
    designated_tool: str = DESIGNATED_TOOL,
    cancel: threading.Event | None = None,
    security_prompt=prompt_security_check,
    command_menu=None,
    tool_timeout: float | None = None,
    report: ReportCollector | None = None,
    turn_offset: int = 0,
) -> tuple[str | None, bool]:
    """Run the model/tool loop until a final answer or max turns.

    Mutates `messages` in place (appends assistant replies and feedback).
    Returns (final_answer, exhausted). final_answer is the last assistant
    text (may be None). Raises CancellationError as soon as *cancel* fires.
    """
    max_turns = clamp_max_turns(max_turns)
    anchor = {"role": "system", "content": build_anchor(mode, designated_tool)}
    last_text = None
    turns = 0

    while turns < max_turns:
        check_cancelled(cancel)
        turns += 1
        turn = turns + turn_offset
        token_est = estimate_tokens(messages)
        if verbose:
            fmt.turn_header(turns, max_turns, token_est)

        outgoing = messages + [anchor]
        t0 = time.monotonic()
        spinner = fmt.llm_spinner() if verbose else nullcontext()
        try:
            with spinner:
                text, finish_reason = run_cancellable(
                    lambda: call_llm(
                        api_base,
                        model_id,
                        outgoing,
                        max_output_tokens,
                        temperature,
                        top_p,
                        seed,
                        verbose,
                        **llm_kwargs,
                    ),
                    cancel,
                )
        except AgentError:
            if report:
                report.record_llm_call(turn, time.monotonic() - t0, token_est, "error")
            raise
        elapsed = time.monotonic() - t0
        if verbose:
            fmt.llm_timing(elapsed, finish_reason)
        if report:
            report.record_llm_call(turn, elapsed, token_est, finish_reason)

        text = text or ""
        messages.append({"role": "assistant", "content": text})
        last_text = text
        reply = parse_reply(text)

        if mode == "coder":
            problem = _coder_format_error(reply, text, designated_tool)
            if problem is not None:
                reason, corrective = problem
                if report:
                    report.record_correction(turn, reason)
                if verbose:
                    fmt.correction(reason)
                messages.append({"role": "user", "content": corrective})
                continue

        if reply.tool_calls:
            if verbose:
                fmt.reasoning(reply.reasoning)
                fmt.explanation(reply.explanation)
                fmt.response(reply.remaining)
            batch = run_batch(
                reply.tool_calls,
                registry=registry,
                policy=policy,
                mode=mode,
                designated_tool=designated_tool,
                cancel=cancel,
                security_prompt=security_prompt,
                verbose=verbose,
                report=report,
                turn=turn,
                tool_timeout=tool_timeout,
            )
            if batch.results or batch.corrective is not None:
                messages.append({"role": "user", "content": format_batch_feedback(batch)})
            check_cancelled(cancel)
            continue

        if mode != "coder":
            blocks = extract_command_blocks(text)
            if blocks:
                if verbose:
                    fmt.explanation(reply.explanation)
                if command_menu is not None:
                    command_menu(blocks, cancel)
                else:
                    fmt.command_plan(blocks)
                if verbose:
                    fmt.completion(turns, "ok")
                return text, False

        if verbose:
            fmt.reasoning(reply.reasoning)
            fmt.completion(turns, "ok")
        return text, False

    if verbose:
        fmt.completion(turns, "max_turns")
    return last_text, True


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser.

    Defaults are _UNSET so config files can fill in what the CLI leaves out.
    """
    parser = argparse.ArgumentParser(
        prog="toolgate",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A policy-gated agent that lets a model run plugin tools through text-embedded tool calls.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--provider",
        choices=["lmstudio", "huggingface", "openrouter", "generic"],
        default=_UNSET,
        help="LLM provider: lmstudio (local), huggingface, openrouter, generic (OpenAI-compatible).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: http://127.0.0.1:1234 for lmstudio).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier.",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens (default: 32768).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--top-p",
        type=float,
        default=_UNSET,
        help="Top-p (nucleus) sampling (default: 1.0).",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=_UNSET,
        help="Random seed for reproducible outputs (optional, model support varies).",
    )

    prompt_group = parser.add_mutually_exclusive_group()
    prompt_group.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="System prompt to include.",
    )
    prompt_group.add_argument(
        "--no-system-prompt",
        action="store_true",
        default=_UNSET,
        help="Omit the system message entirely.",
    )

    parser.add_argument(
        "--mode",
        choices=MODES,
        default=_UNSET,
        help="agent: permissive, suggested command blocks allowed. "
        "coder: strict, only the designated tool with a <reasoning> block.",
    )
    parser.add_argument(
        "--designated-tool",
        default=_UNSET,
        help="The only tool allowed in coder mode (default: @coder).",
    )
    parser.add_argument(
        "--plugins-dir",
        default=_UNSET,
        help="Directory of plugin executables (default: ~/.config/toolgate/plugins).",
    )
    parser.add_argument(
        "--plugin-timeout",
        type=int,
        default=_UNSET,
        help="Seconds before a plugin run is killed (default: 900).",
    )
    parser.add_argument(
        "--policy-file",
        default=_UNSET,
        help="Global policy file (default: ~/.config/toolgate/policy.json).",
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=_UNSET,
        help=f"Maximum agent loop iterations (default: {DEFAULT_MAX_TURNS}, max {MAX_AGENT_TURNS}).",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help=f"Project directory; holds {LOCAL_POLICY_FILE} and toolgate.toml (default: .).",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Incompatible with --repl.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--no-history",
        action="store_true",
        default=_UNSET,
        help="Don't write responses to .toolgate/HISTORY.md",
    )

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("toolgate")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=False))
        sys.exit(0)

    try:
        config = load_config(Path(args.base_dir))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    fmt.init(color=args.color, no_color=args.no_color)

    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, error_message=None):
        if not report:
            return
        report.finalize(
            task=args.question or "",
            model=args.model or "unknown",
            provider=args.provider,
            settings={
                "mode": args.mode,
                "temperature": args.temperature,
                "top_p": args.top_p,
                "seed": args.seed,
                "max_turns": clamp_max_turns(args.max_turns),
                "max_output_tokens": args.max_output_tokens,
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            turns=report.max_turn_seen,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    cancel = threading.Event()
    try:
        _run_main(args, report, _write_report, cancel)
    except (CancellationError, KeyboardInterrupt):
        cancel.set()
        fmt.warning("cancelled.")
        _write_report("cancelled", exit_code=130, error_message="cancelled")
        sys.exit(130)
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)


def resolve_provider(
    *,
    provider: str,
    model: str | None,
    api_key: str | None = None,
    base_url: str | None = None,
) -> tuple[str | None, dict]:
    """Validate provider settings. Returns (api_base, llm_kwargs).

    Raises ConfigError when the model or a required credential is missing.
    """
    if not model:
        raise ConfigError(f"a model is required for provider {provider!r} (--model)")

    if provider == "lmstudio":
        api_base = base_url or "http://127.0.0.1:1234"
        api_key = None
    elif provider == "huggingface":
        if "/" not in model.removeprefix("huggingface/"):
            raise ConfigError(
                "HuggingFace model must be in org/model format (e.g. zai-org/GLM-5)"
            )
        api_base = base_url
        api_key = api_key or os.environ.get("HF_TOKEN")
        if not api_key:
            raise ConfigError("--api-key or HF_TOKEN env var required for huggingface provider")
    elif provider == "openrouter":
        api_base = base_url
        api_key = api_key or os.environ.get("OPENROUTER_API_KEY")
        if not api_key:
            raise ConfigError(
                "--api-key or OPENROUTER_API_KEY env var required for openrouter provider"
            )
    elif provider == "generic":
        if not base_url:
            raise ConfigError("--base-url is required for the generic provider")
        api_base = base_url
        api_key = api_key or os.environ.get("TOOLGATE_API_KEY")
    else:
        raise ConfigError(f"unknown provider {provider!r}")

    return api_base, {"provider": provider, "api_key": api_key}


def build_system_prompt(
    *,
    mode: str = "agent",
    designated_tool: str = DESIGNATED_TOOL,
    system_prompt: str | None = None,
    no_system_prompt: bool = False,
    registry: PluginRegistry | None = None,
) -> str | None:
    """Assemble the system message: mode prompt, plugin catalog, current date."""
    if no_system_prompt:
        return None
    if system_prompt:
        content = system_prompt
    else:
        path = CODER_SYSTEM_PROMPT_FILE if mode == "coder" else DEFAULT_SYSTEM_PROMPT_FILE
        content = path.read_text(encoding="utf-8").replace(
            "{designated_tool}", designated_tool
        )
    if registry is not None and len(registry):
        lines = ["Available tools:"]
        for name in registry.names():
            plugin = registry.get(name)
            line = f"- {name}"
            if plugin.description:
                line += f": {plugin.description}"
            if plugin.usage:
                line += f" (usage: {plugin.usage})"
            lines.append(line)
        content += "\n\n" + "\n".join(lines)
    now = datetime.now().astimezone()
    content += f"\n\nCurrent date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}"
    return content


def _run_main(args, report, _write_report, cancel):
    api_base, llm_kwargs = resolve_provider(
        provider=args.provider,
        model=args.model,
        api_key=args.api_key,
        base_url=args.base_url,
    )

    if args.plugin_timeout is not None and args.plugin_timeout <= 0:
        raise ConfigError("--plugin-timeout must be positive")

    plugins_dir = args.plugins_dir or str(global_config_dir() / "plugins")
    registry = PluginRegistry(plugins_dir)
    if args.verbose:
        fmt.info(f"{len(registry)} plugin(s) loaded from {plugins_dir}")

    policy_path = Path(args.policy_file) if args.policy_file else default_policy_path()
    policy = PolicyEngine.for_directory(args.base_dir, policy_path)
    if args.verbose:
        fmt.info(f"security policy: {policy.active_path}")

    interactive = sys.stdin.isatty()
    loop_kwargs = dict(
        api_base=api_base,
        model_id=args.model,
        max_turns=args.max_turns,
        max_output_tokens=args.max_output_tokens,
        temperature=args.temperature,
        top_p=args.top_p,
        seed=args.seed,
        verbose=args.verbose,
        llm_kwargs=llm_kwargs,
        registry=registry,
        policy=policy,
        mode=args.mode,
        designated_tool=args.designated_tool,
        cancel=cancel,
        command_menu=run_command_menu if interactive else None,
        tool_timeout=args.plugin_timeout or plugin_timeout(),
    )

    messages = []
    system_content = build_system_prompt(
        mode=args.mode,
        designated_tool=args.designated_tool,
        system_prompt=args.system_prompt,
        no_system_prompt=args.no_system_prompt,
        registry=registry,
    )
    if system_content:
        messages.append({"role": "system", "content": system_content})

    if not args.repl:
        messages.append({"role": "user", "content": args.question})
        answer, exhausted = run_agent_loop(messages, **loop_kwargs, report=report)

        if not args.no_history and answer:
            append_history(args.base_dir, args.question, answer)
        if answer is not None:
            print(answer)
        _write_report(
            "exhausted" if exhausted else "success",
            answer=answer,
            exit_code=2 if exhausted else 0,
        )
        if exhausted:
            fmt.warning("max turns reached, agent stopped.")
            sys.exit(2)
        return

    if args.question:
        messages.append({"role": "user", "content": args.question})
        answer, exhausted = run_agent_loop(messages, **loop_kwargs)
        if not args.no_history and answer:
            append_history(args.base_dir, args.question, answer)
        if answer is not None:
            print(answer)
        if exhausted:
            fmt.warning("max turns reached for initial question.")

    repl_loop(
        messages,
        base_dir=args.base_dir,
        no_history=args.no_history,
        system_prompt_kwargs=dict(
            system_prompt=args.system_prompt, no_system_prompt=args.no_system_prompt
        ),
        **loop_kwargs,
    )


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Reset conversation to initial state\n"
        "  /extend [N]        Double max turns, or set to N\n"
        "  /continue          Reset turn counter and continue the agent loop\n"
        "  /mode [agent|coder] Show or switch the reply format mode\n"
        "  /policy            Show the active security rules\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_clear(messages: list) -> None:
    """Clear conversation history, keeping only the leading system messages."""
    leading = []
    for msg in messages:
        if msg.get("role") == "system":
            leading.append(msg)
        else:
            break
    dropped = len(messages) - len(leading)
    messages[:] = leading
    fmt.info(f"context cleared ({dropped} messages removed)")


def _repl_extend(arg: str, state: dict) -> None:
    """Double max turns (default) or set to a specific value."""
    arg = arg.strip()
    if arg:
        try:
            n = int(arg)
        except ValueError:
            fmt.warning(f"invalid number: {arg}")
            return
        if n < 1:
            fmt.warning("max turns must be at least 1")
            return
        state["max_turns"] = clamp_max_turns(n)
        fmt.info(f"max turns set to {state['max_turns']}")
    else:
        old = state["max_turns"]
        state["max_turns"] = clamp_max_turns(old * 2)
        fmt.info(f"max turns raised: {old} -> {state['max_turns']}")


def _repl_mode(
    arg: str, state: dict, messages: list | None = None, prompt_kwargs: dict | None = None
) -> None:
    """Show or switch the mode; a switch also rebuilds the system message."""
    arg = arg.strip().lower()
    if not arg:
        fmt.info(f"mode: {state['mode']}")
        return
    if arg not in MODES:
        fmt.warning(f"unknown mode {arg!r} (expected {' or '.join(MODES)})")
        return
    state["mode"] = arg
    fmt.info(f"mode set to {arg}")
    if messages is None:
        return

    content = build_system_prompt(mode=arg, **(prompt_kwargs or {}))
    if content is None:
        return
    if messages and messages[0]["role"] == "system":
        messages[0] = {"role": "system", "content": content}
    else:
        messages.insert(0, {"role": "system", "content": content})


def _repl_policy(policy: PolicyEngine | None) -> None:
    if policy is None:
        fmt.info("no security policy loaded")
        return
    lines = [f"rules from {policy.active_path}" + (" (merged)" if policy.merge_enabled else "")]
    for rule in policy.rules:
        lines.append(f"  {rule.action.value:5}  {rule.pattern}")
    fmt.info("\n".join(lines))


def repl_loop(
    messages: list,
    *,
    base_dir: str = ".",
    no_history: bool = False,
    system_prompt_kwargs: dict | None = None,
    **loop_kwargs,
) -> None:
    """Interactive read-eval-print loop.

    *system_prompt_kwargs* (``system_prompt``, ``no_system_prompt``) are
    used to rebuild the system message when ``/mode`` switches modes.
    """
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(base_dir, ".toolgate", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "toolgate> ")])

    verbose = loop_kwargs.get("verbose", True)
    if verbose:
        fmt.repl_banner()

    state = {
        "max_turns": clamp_max_turns(loop_kwargs.pop("max_turns", None)),
        "mode": loop_kwargs.pop("mode", "agent"),
    }
    cancel = loop_kwargs.pop("cancel", None) or threading.Event()
    prompt_kwargs = dict(
        system_prompt_kwargs or {},
        designated_tool=loop_kwargs.get("designated_tool", DESIGNATED_TOOL),
        registry=loop_kwargs.get("registry"),
    )

    def _ask(history_label: str) -> None:
        cancel.clear()
        try:
            answer, exhausted = run_agent_loop(
                messages,
                **loop_kwargs,
                max_turns=state["max_turns"],
                mode=state["mode"],
                cancel=cancel,
            )
        except (KeyboardInterrupt, CancellationError):
            cancel.set()
            fmt.warning("interrupted, question aborted.")
            return
        if not no_history and answer:
            append_history(base_dir, history_label, answer)
        if answer is not None:
            print(answer)
        if exhausted:
            fmt.warning("max turns reached for this question.")

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue

        # Only known commands are intercepted; unknown /foo goes to the model
        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        if cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/clear":
            _repl_clear(messages)
            continue
        elif cmd == "/extend":
            _repl_extend(cmd_arg, state)
            continue
        elif cmd == "/mode":
            _repl_mode(cmd_arg, state, messages, prompt_kwargs)
            continue
        elif cmd == "/policy":
            _repl_policy(loop_kwargs.get("policy"))
            continue
        elif cmd == "/continue":
            fmt.info("continuing agent loop...")
            _ask("(continued)")
            continue

        messages.append({"role": "user", "content": line})
        _ask(line)


if __name__ == "__main__":
    main()
