"""Public library API for toolgate: Session class and Result dataclass."""

import copy
import threading
from dataclasses import dataclass
from pathlib import Path

from .report import ConfigError, ReportCollector


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str | None
    exhausted: bool
    messages: list[dict]
    report: dict | None


class Session:
    """Programmatic interface to the toolgate agent loop.

    Stores configuration as plain attributes. Call .run() for single-shot
    questions or .ask() for multi-turn conversations. Invocations that no
    rule covers go to ``security_prompt`` (the terminal prompt by default).
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str = "lmstudio",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_turns: int | None = None,
        max_output_tokens: int = 32768,
        temperature: float | None = None,
        top_p: float = 1.0,
        seed: int | None = None,
        mode: str = "agent",
        designated_tool: str = "@coder",
        plugins_dir: str | None = None,
        plugin_timeout: int | None = None,
        policy_file: str | None = None,
        verbose: bool = False,
        system_prompt: str | None = None,
        no_system_prompt: bool = False,
        history: bool = True,
        security_prompt=None,
        config_dir: "Path | None" = None,
    ):
        self.base_dir = base_dir
        self.config_dir = config_dir
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_turns = max_turns
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.seed = seed
        self.mode = mode
        self.designated_tool = designated_tool
        self.plugins_dir = plugins_dir
        self.plugin_timeout = plugin_timeout
        self.policy_file = policy_file
        self.verbose = verbose
        self.system_prompt = system_prompt
        self.no_system_prompt = no_system_prompt
        self.history = history
        self.security_prompt = security_prompt

        # Setup state (cached after first _setup())
        self._setup_done = False
        self._api_base: str | None = None
        self._llm_kwargs: dict = {}
        self._registry = None
        self._policy = None
        self._system_content: str | None = None

        # Per-conversation messages (for ask() mode)
        self._conv_messages: list[dict] | None = None
        self.cancel = threading.Event()

    def _setup(self) -> None:
        """Resolve provider, load plugins and policy, build the system prompt."""
        if self._setup_done:
            return

        from .agent import build_system_prompt, resolve_provider
        from .config import MODES, global_config_dir
        from .executor import PluginRegistry
        from .policy import PolicyEngine

        if self.mode not in MODES:
            raise ConfigError(f"mode must be one of {', '.join(MODES)}, got {self.mode!r}")

        self._api_base, self._llm_kwargs = resolve_provider(
            provider=self.provider,
            model=self.model,
            api_key=self.api_key,
            base_url=self.base_url,
        )

        config_dir = self.config_dir or global_config_dir()
        self._registry = PluginRegistry(self.plugins_dir or config_dir / "plugins")
        policy_path = Path(self.policy_file) if self.policy_file else config_dir / "policy.json"
        self._policy = PolicyEngine.for_directory(self.base_dir, policy_path)

        self._system_content = build_system_prompt(
            mode=self.mode,
            designated_tool=self.designated_tool,
            system_prompt=self.system_prompt,
            no_system_prompt=self.no_system_prompt,
            registry=self._registry,
        )

        if self.verbose:
            from . import fmt

            fmt.init()

        self._setup_done = True

    def _make_initial_messages(self) -> list[dict]:
        messages: list[dict] = []
        if self._system_content is not None:
            messages.append({"role": "system", "content": self._system_content})
        return messages

    def _build_loop_kwargs(self) -> dict:
        """Build kwargs for run_agent_loop() from setup state."""
        from .security import prompt_security_check

        return dict(
            api_base=self._api_base,
            model_id=self.model,
            max_turns=self.max_turns,
            max_output_tokens=self.max_output_tokens,
            temperature=self.temperature,
            top_p=self.top_p,
            seed=self.seed,
            verbose=self.verbose,
            llm_kwargs=self._llm_kwargs,
            registry=self._registry,
            policy=self._policy,
            mode=self.mode,
            designated_tool=self.designated_tool,
            cancel=self.cancel,
            security_prompt=self.security_prompt or prompt_security_check,
            tool_timeout=self.plugin_timeout,
        )

    def run(self, question: str, *, report: bool = False) -> Result:
        """Single-shot: run a question with fresh state. Each call is independent."""
        self._setup()

        from .agent import append_history, clamp_max_turns, run_agent_loop

        messages = self._make_initial_messages()
        messages.append({"role": "user", "content": question})

        collector = ReportCollector() if report else None
        answer, exhausted = run_agent_loop(
            messages, **self._build_loop_kwargs(), report=collector
        )

        if self.history and answer:
            append_history(self.base_dir, question, answer)

        report_dict = None
        if collector:
            report_dict = collector.build_report(
                task=question,
                model=self.model or "unknown",
                provider=self.provider,
                settings={
                    "mode": self.mode,
                    "max_turns": clamp_max_turns(self.max_turns),
                    "max_output_tokens": self.max_output_tokens,
                    "temperature": self.temperature,
                    "top_p": self.top_p,
                    "seed": self.seed,
                },
                outcome="exhausted" if exhausted else "success",
                answer=answer,
                exit_code=2 if exhausted else 0,
                turns=collector.max_turn_seen,
            )

        return Result(
            answer=answer,
            exhausted=exhausted,
            messages=copy.deepcopy(messages),
            report=report_dict,
        )

    def ask(self, question: str) -> Result:
        """Conversational: share context across questions (like the REPL)."""
        self._setup()

        from .agent import append_history, run_agent_loop

        if self._conv_messages is None:
            self._conv_messages = self._make_initial_messages()

        messages = self._conv_messages
        messages.append({"role": "user", "content": question})

        answer, exhausted = run_agent_loop(messages, **self._build_loop_kwargs())

        if self.history and answer:
            append_history(self.base_dir, question, answer)

        return Result(
            answer=answer,
            exhausted=exhausted,
            messages=copy.deepcopy(messages),
            report=None,
        )

    def reset(self) -> None:
        """Clear conversation state without invalidating setup. Next ask() starts fresh."""
        self._conv_messages = None
        self.cancel.clear()
