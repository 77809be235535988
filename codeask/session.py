"""Public library API for codeask: Session class and Result dataclass."""

import copy
import threading
from dataclasses import dataclass
from pathlib import Path

from .report import ConfigError, ReportCollector


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str
    exhausted: bool
    interrupted: bool
    rounds: int
    messages: list[dict]
    report: dict | None


class Session:
    """Programmatic interface to the codeask agent loop.

    Stores configuration as plain attributes. Call .run() for independent
    questions or .ask() for a conversation where earlier exchanges are
    folded into each new question.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str = "lmstudio",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int = 4096,
        max_context_tokens: int | None = None,
        max_rounds: int = 15,
        plan: str = "text",
        critic: bool = True,
        allow_writes: bool = False,
        tool_policy: str = "allow",
        allowed_commands: list[str] | None = None,
        cache_ttl: float = 300.0,
        history: bool = True,
        notes: bool = True,
        verbose: bool = False,
        cancel: threading.Event | None = None,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.max_context_tokens = max_context_tokens
        self.max_rounds = max_rounds
        self.plan = plan
        self.critic = critic
        self.allow_writes = allow_writes
        self.tool_policy = tool_policy
        self.allowed_commands = allowed_commands or []
        self.cache_ttl = cache_ttl
        self.history = history
        self.notes = notes
        self.verbose = verbose
        self.cancel = cancel

        # Setup state (cached after first _setup())
        self._setup_done = False
        self._provider = None
        self._executor = None
        self._system_content: str | None = None

        # Conversation state for ask(): earlier (question, answer) pairs and
        # the read-only tool cache shared between them
        self._exchanges: list[tuple[str, str]] = []
        self._cache = None

    @classmethod
    def from_config(cls, base_dir: str = ".", **overrides) -> "Session":
        """Build a session from codeask.toml and the global config; keyword arguments win."""
        from .config import config_to_session_kwargs, load_config

        kwargs = config_to_session_kwargs(load_config(Path(base_dir)))
        kwargs.update(overrides)
        return cls(base_dir=base_dir, **kwargs)

    def _setup(self) -> None:
        """Perform one-time setup: resolve provider, commands, executor, system prompt."""
        if self._setup_done:
            return

        from .agent import build_system_prompt, resolve_commands, resolve_provider
        from .tools import ToolExecutor

        if not Path(self.base_dir).is_dir():
            raise ConfigError(f"base_dir is not a directory: {self.base_dir}")
        base_dir = str(Path(self.base_dir).resolve())

        self._provider = resolve_provider(
            self.provider, self.model, api_key=self.api_key, base_url=self.base_url
        )

        resolved_commands = {}
        if self.allow_writes and self.allowed_commands:
            resolved_commands = resolve_commands(self.allowed_commands, base_dir)

        self._executor = ToolExecutor(
            base_dir,
            allow_writes=self.allow_writes,
            tool_policy=self.tool_policy,
            resolved_commands=resolved_commands,
        )
        self._system_content, _ = build_system_prompt(
            base_dir,
            notes=self.notes,
            allow_writes=self.allow_writes,
            resolved_commands=resolved_commands,
        )

        if self.verbose:
            from . import fmt

            fmt.init()

        self._setup_done = True

    def _make_context(
        self, question: str, collector: ReportCollector | None, cache=None
    ):
        from . import fmt
        from .agent import LoopContext, build_project_context

        return LoopContext(
            provider=self._provider,
            executor=self._executor,
            system_prompt=self._system_content,
            model=self.model,
            max_rounds=self.max_rounds,
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
            context_length=self.max_context_tokens,
            plan_mode=self.plan,
            critic=self.critic,
            project_context=build_project_context(
                self.base_dir, question, notes=self.notes, history=self.history
            ),
            cache_ttl=self.cache_ttl,
            cache=cache,
            status=fmt.status if self.verbose else None,
            report=collector,
            cancel=self.cancel,
        )

    def _finish(self, question: str, loop_result) -> None:
        from .agent import record_outcome

        record_outcome(
            self.base_dir,
            question,
            loop_result,
            history=self.history,
            notes=self.notes,
            verbose=self.verbose,
        )

    def run(self, question: str, *, report: bool = False) -> Result:
        """Single-shot: run a question with fresh state. Each call is independent."""
        self._setup()

        from .agent import run_agent_loop

        collector = ReportCollector() if report else None
        ctx = self._make_context(question, collector)
        loop_result = run_agent_loop(question, ctx)
        self._finish(question, loop_result)

        report_dict = None
        if collector:
            report_dict = collector.build_report(
                task=question,
                model=self.model or "unknown",
                provider=self.provider,
                settings={
                    "max_rounds": self.max_rounds,
                    "max_output_tokens": self.max_output_tokens,
                    "temperature": self.temperature,
                    "plan": self.plan,
                    "critic": self.critic,
                    "allow_writes": self.allow_writes,
                },
                outcome=loop_result.outcome,
                answer=loop_result.answer,
                exit_code=130 if loop_result.interrupted else 0,
                rounds=loop_result.rounds,
            )

        return Result(
            answer=loop_result.answer,
            exhausted=loop_result.exhausted,
            interrupted=loop_result.interrupted,
            rounds=loop_result.rounds,
            messages=copy.deepcopy(loop_result.messages),
            report=report_dict,
        )

    def ask(self, question: str) -> Result:
        """Conversational: earlier exchanges are folded into each new question."""
        self._setup()

        from .agent import format_conversation, run_agent_loop
        from .cache import ToolResultCache

        if self._cache is None:
            self._cache = ToolResultCache(ttl=self.cache_ttl)
        ctx = self._make_context(question, None, cache=self._cache)
        loop_result = run_agent_loop(
            question, ctx, conversation=format_conversation(self._exchanges)
        )
        self._finish(question, loop_result)
        if not loop_result.interrupted:
            self._exchanges.append((question, loop_result.answer))

        return Result(
            answer=loop_result.answer,
            exhausted=loop_result.exhausted,
            interrupted=loop_result.interrupted,
            rounds=loop_result.rounds,
            messages=copy.deepcopy(loop_result.messages),
            report=None,
        )

    def reset(self) -> None:
        """Forget earlier exchanges without invalidating setup. Next ask() starts fresh."""
        self._exchanges = []
        self._cache = None
