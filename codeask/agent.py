import argparse
import json
import os
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from importlib import metadata
from pathlib import Path
from typing import Callable

from . import fmt
from .cache import DEFAULT_TTL, ToolResultCache
from .config import (
    _UNSET,
    PLAN_MODES,
    TOOL_POLICIES,
    apply_config_to_args,
    generate_config,
    load_config,
)
from .critic import (
    build_correction_message,
    build_critic_correction,
    build_synthesis_reminder,
    critic_evaluate,
    validate_answer,
)
from .history import append_history, format_past_exchanges, search_past_exchanges
from .memory import AccessLog, WorkingMemory
from .notes import (
    build_workspace_context,
    generate_notes,
    load_notes,
    notes_path,
    update_notes,
    write_notes,
)
from .planner import (
    enrich_user_prompt,
    format_plan_block,
    generate_execution_plan,
    generate_search_plan,
)
from .provider import (
    PROVIDERS,
    CompletionRequest,
    collect_stream,
    resolve_provider,
)
from .report import (
    AgentError,
    ConfigError,
    ContextOverflowError,
    ErrorCode,
    ReportCollector,
)
from .state import (
    AnswerRejected,
    AssistantReplied,
    CheckpointInjected,
    Compacted,
    DuplicateSkipped,
    HintInjected,
    LoopState,
    StatusEvent,
    ToolResultAdded,
    reduce,
)
from .tokens import estimate_transcript_tokens
from .tools import READONLY_TOOLS, ToolExecutor, ToolKind, resolve_commands
from .tracker import ToolCallTracker

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
MAX_TOOL_ROUNDS = 15
MIN_FINAL_CHECK_CHARS = 30
FALLBACK_RESULTS = 6
FALLBACK_RESULT_CHARS = 300
PAST_EXCHANGES_FOR_PLANNER = 2
REPL_EXCHANGES = 3
REPL_ANSWER_CHARS = 1500


class LoopCancelled(Exception):
    """Raised inside the loop when the cancel event has been set."""


@dataclass
class LoopContext:
    """Everything one loop invocation needs, passed explicitly.

    The tracker and working memory belong to a single invocation, so build
    a fresh context for every question. A cache may be passed in to share
    read-only results across the questions of one conversation.
    """

    provider: object
    executor: ToolExecutor
    system_prompt: str
    model: str | None = None
    max_rounds: int = MAX_TOOL_ROUNDS
    temperature: float | None = None
    max_output_tokens: int | None = None
    context_length: int | None = None
    plan_mode: str = "text"
    critic: bool = True
    project_context: str = ""
    cache_ttl: float = DEFAULT_TTL
    status: Callable[[StatusEvent], None] | None = None
    report: ReportCollector | None = None
    cancel: threading.Event | None = None
    tracker: ToolCallTracker = field(default_factory=ToolCallTracker)
    cache: ToolResultCache | None = None
    memory: WorkingMemory | None = None

    def __post_init__(self):
        if self.cache is None:
            self.cache = ToolResultCache(ttl=self.cache_ttl)
        if self.memory is None:
            self.memory = WorkingMemory(
                self.provider,
                self.model,
                self.system_prompt,
                context_length=self.context_length,
            )

    def emit(self, kind: str, message: str, **data) -> None:
        if self.status is not None:
            self.status(StatusEvent(kind, message, data))

    def check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise LoopCancelled()


@dataclass
class LoopResult:
    answer: str
    rounds: int
    exhausted: bool = False
    interrupted: bool = False
    messages: list[dict] = field(default_factory=list)
    access_log: AccessLog = field(default_factory=AccessLog)
    tool_calls: int = 0
    duplicates: int = 0
    usage: dict = field(default_factory=dict)
    plan: object = None

    @property
    def outcome(self) -> str:
        if self.interrupted:
            return "interrupted"
        if self.exhausted:
            return "exhausted"
        return "answered"


# -- Prompt and context assembly ---------------------------------------------------


def build_system_prompt(
    base_dir: str,
    *,
    notes: bool = True,
    allow_writes: bool = False,
    resolved_commands: dict | None = None,
) -> tuple[str, bool]:
    """Return (system prompt, whether CODEASK.md was loaded)."""
    content = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")

    notes_text = load_notes(base_dir) if notes else None
    if notes_text:
        content += "\n\n## Project Context\n\n" + notes_text
    else:
        content += "\n\n## Workspace Info\n\n" + build_workspace_context(base_dir)

    if allow_writes:
        content += (
            "\n\n**Write tools:**\n"
            "- `write_file`: create, overwrite or append to a file inside the workspace. "
            "Only use it when the user asks for a change."
        )
        if resolved_commands:
            cmd_list = ", ".join(sorted(resolved_commands))
            content += (
                "\n- `run_command`: run a whitelisted command and return its output. "
                'Pass the command and arguments as a list (e.g. `["ls", "-la"]`). '
                f"Allowed commands: {cmd_list}."
            )

    content += f"\n\nWorkspace root: {Path(base_dir).resolve()}"
    now = datetime.now().astimezone()
    content += f"\nCurrent date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}"
    return content, bool(notes_text)


def build_project_context(
    base_dir: str, question: str, *, notes: bool = True, history: bool = True
) -> str:
    """Planner context: project notes (or a workspace overview) plus related past Q&A."""
    notes_text = load_notes(base_dir) if notes else None
    parts = [notes_text or build_workspace_context(base_dir)]
    if history:
        past = search_past_exchanges(
            question, base_dir, max_results=PAST_EXCHANGES_FOR_PLANNER
        )
        if past:
            parts.append(format_past_exchanges(past))
    return "\n\n".join(parts)


def format_conversation(exchanges: list[tuple[str, str]]) -> str:
    """Fold earlier REPL exchanges into text for the next first turn."""
    if not exchanges:
        return ""
    lines = ["## Earlier in this conversation", ""]
    for question, answer in exchanges[-REPL_EXCHANGES:]:
        if len(answer) > REPL_ANSWER_CHARS:
            answer = answer[:REPL_ANSWER_CHARS] + "…"
        lines += [f"**Q:** {question}", "", f"**A:** {answer}", ""]
    return "\n".join(lines)


def plan_question(question: str, ctx: LoopContext):
    """Run the planner for ``question``. Returns a plan or None."""
    if ctx.plan_mode == "off":
        return None
    ctx.check_cancelled()
    ctx.emit("planning", "Planning search strategy")
    plan = None
    if ctx.plan_mode == "structured":
        plan = generate_execution_plan(
            ctx.provider, question, ctx.project_context, model=ctx.model
        )
    if plan is None:
        plan = generate_search_plan(
            ctx.provider, question, ctx.project_context, model=ctx.model
        )
    if plan is None:
        ctx.emit("plan", "Planning skipped, using the generic strategy")
    else:
        block = format_plan_block(plan)
        ctx.emit("plan", "Search plan ready", block=block)
    return plan


# -- Loop helpers ------------------------------------------------------------------


def _add_usage(total: dict, usage: dict | None) -> None:
    for key, value in (usage or {}).items():
        total[key] = total.get(key, 0) + (value or 0)


def _compact(state: LoopState, ctx: LoopContext, round_no: int) -> LoopState:
    messages = state.as_list()
    before = estimate_transcript_tokens(messages)
    compacted = ctx.memory.compact(messages)
    strategy = ctx.memory.last_strategy
    if strategy == "none":
        return state
    after = estimate_transcript_tokens(compacted)
    ctx.emit(
        "compaction",
        f"Compacted transcript ({strategy})",
        strategy=strategy,
        before=before,
        after=after,
    )
    if ctx.report:
        ctx.report.record_compaction(round_no, strategy, before, after)
    return reduce(state, Compacted(tuple(compacted)))


def _chat(state: LoopState, ctx: LoopContext, round_no: int, *, is_retry=False):
    ctx.check_cancelled()
    messages = state.as_list()
    token_est = estimate_transcript_tokens(messages)
    t0 = time.monotonic()
    response = ctx.provider.chat_with_tools(
        messages,
        ctx.executor.schemas(),
        model=ctx.model,
        temperature=ctx.temperature,
        max_tokens=ctx.max_output_tokens,
        system_prompt=ctx.system_prompt,
    )
    elapsed = time.monotonic() - t0
    finish_reason = response.finish_reason or "unknown"
    ctx.emit(
        "llm",
        f"Model responded in {elapsed:.1f}s",
        elapsed=elapsed,
        finish_reason=finish_reason,
    )
    if ctx.report:
        ctx.report.record_llm_call(
            round_no,
            elapsed,
            token_est,
            finish_reason,
            is_retry=is_retry,
            retry_reason="context_overflow" if is_retry else None,
        )
    return response


def _call_model(state: LoopState, ctx: LoopContext, round_no: int):
    """Primary call for a round. Returns (response, state).

    A context overflow forces one compaction and a single re-issue; a
    second overflow propagates to the caller.
    """
    try:
        return _chat(state, ctx, round_no), state
    except ContextOverflowError:
        ctx.emit("compaction", "Context window exceeded, compacting transcript")
        state = _compact(state, ctx, round_no)
        return _chat(state, ctx, round_no, is_retry=True), state


def _review(
    question: str,
    answer: str,
    had_tool_calls: bool,
    ctx: LoopContext,
    round_no: int,
    gate: str,
) -> str | None:
    """Heuristic check, then the critic. Returns a correction, or None on pass."""
    check = validate_answer(answer, had_tool_calls, question)
    if not check.valid:
        ctx.emit(
            "validation", check.reason, gate=gate, passed=False, reason=check.reason
        )
        if ctx.report:
            ctx.report.record_verdict(round_no, gate, False, check.reason)
        return build_correction_message(check.reason)

    if not ctx.critic:
        return None

    ctx.check_cancelled()
    verdict = critic_evaluate(ctx.provider, question, answer, model=ctx.model)
    ctx.emit(
        "critic",
        verdict.reason,
        gate=gate,
        passed=verdict.passed,
        reason=verdict.reason,
        confidence=verdict.confidence,
    )
    if ctx.report:
        ctx.report.record_verdict(
            round_no, gate, verdict.passed, verdict.reason, verdict.confidence
        )
    if verdict.passed:
        return None
    return build_critic_correction(verdict, question)


def _invalidate_after(name: str, args: dict, ctx: LoopContext) -> None:
    if name == ToolKind.WRITE_FILE and args.get("path"):
        ctx.cache.invalidate_path(args["path"])
    elif name == ToolKind.RUN_COMMAND:
        ctx.cache.clear()


def _dispatch_tool_call(state: LoopState, call, ctx: LoopContext, round_no: int) -> LoopState:
    name, args = call.name, call.arguments or {}

    if call.error:
        output = f"Tool error: invalid JSON in tool arguments: {call.error}"
        ctx.emit("tool_error", output, name=name)
        if ctx.report:
            ctx.report.record_tool_call(
                round_no, name, args, False, 0.0, len(output), call.error
            )
        ctx.tracker.record(name, args, was_error=True)
        return reduce(state, ToolResultAdded(name, output))

    if ctx.tracker.is_duplicate(name, args):
        ctx.emit("duplicate", f"Skipped duplicate {name} call", name=name)
        if ctx.report:
            ctx.report.record_tool_call(
                round_no, name, args, False, 0.0, 0, "duplicate call", duplicate=True
            )
        ctx.tracker.record(name, args, was_error=True)
        return reduce(state, DuplicateSkipped(name))

    readonly = name in READONLY_TOOLS
    cached = ctx.cache.get(name, args) if readonly else None
    if cached is not None:
        ctx.emit("cache_hit", f"{name} served from cache", name=name)
        capped = ctx.memory.process_tool_result(name, args, cached)
        if ctx.report:
            ctx.report.record_tool_call(
                round_no, name, args, True, 0.0, len(capped), cached=True
            )
        ctx.tracker.record(name, args, was_error=False)
        return reduce(state, ToolResultAdded(name, capped))

    ctx.check_cancelled()
    ctx.emit("tool_call", f"Calling {name}", name=name, arguments=args)
    was_error = False
    error_text = None
    t0 = time.monotonic()
    try:
        output = ctx.executor.execute(name, args)
    except Exception as e:
        error_text = str(e) or type(e).__name__
        output = f"Tool error: {error_text}"
        was_error = True
    elapsed = time.monotonic() - t0

    if not was_error and readonly:
        ctx.cache.set(name, args, output)
    if not was_error:
        _invalidate_after(name, args, ctx)

    capped = ctx.memory.process_tool_result(name, args, output)
    if was_error:
        ctx.emit("tool_error", error_text, name=name)
    else:
        ctx.emit(
            "tool_result",
            f"{name} finished in {elapsed:.1f}s",
            name=name,
            elapsed=elapsed,
            output=capped,
        )
    if ctx.report:
        ctx.report.record_tool_call(
            round_no, name, args, not was_error, elapsed, len(capped), error_text
        )
    ctx.tracker.record(name, args, was_error=was_error)
    return reduce(state, ToolResultAdded(name, capped))


def build_tool_results_summary(
    messages: list[dict],
    limit: int = FALLBACK_RESULTS,
    max_chars: int = FALLBACK_RESULT_CHARS,
) -> str:
    """Digest of the most recent tool results for the no-tool fallback."""
    results = [
        m.get("content") or ""
        for m in messages
        if m.get("role") == "user" and (m.get("content") or "").startswith("[Tool result:")
    ]
    if not results:
        return ""
    parts = ["## Information gathered so far", ""]
    for content in results[-limit:]:
        header, _, body = content.partition("\n")
        body = body.strip()
        if len(body) > max_chars:
            body = body[:max_chars] + "…"
        parts += [header, body, ""]
    return "\n".join(parts).rstrip()


def _fallback_answer(
    question: str, state: LoopState, ctx: LoopContext, usage: dict
) -> str:
    """One plain completion, no tools, once every round has been spent."""
    ctx.check_cancelled()
    ctx.emit(
        "fallback",
        f"Reached {ctx.max_rounds} rounds, asking for a final answer without tools",
    )
    parts = [question]
    summary = build_tool_results_summary(state.as_list())
    if summary:
        parts += ["", summary]
    parts += [
        "",
        "Answer the question now using the information above. Do not call tools.",
    ]
    request = CompletionRequest(
        messages=[{"role": "user", "content": "\n".join(parts)}],
        model=ctx.model,
        temperature=ctx.temperature,
        max_tokens=ctx.max_output_tokens,
        system_prompt=ctx.system_prompt,
    )
    t0 = time.monotonic()
    text, fallback_usage = collect_stream(ctx.provider.stream_completion(request))
    if ctx.report:
        ctx.report.record_llm_call(
            ctx.max_rounds,
            time.monotonic() - t0,
            estimate_transcript_tokens(request.messages),
            "fallback",
        )
    _add_usage(usage, fallback_usage)
    return text


# -- The loop ----------------------------------------------------------------------


def run_agent_loop(
    question: str, ctx: LoopContext, *, conversation: str = ""
) -> LoopResult:
    """Answer ``question`` in at most ``ctx.max_rounds`` model rounds.

    Always returns a LoopResult: an accepted answer, the no-tool fallback
    once the rounds are spent, or the partial text when cancelled. Only
    errors from the primary model call propagate.
    """
    state = LoopState()
    usage: dict = {}
    partial = ""
    plan = None
    had_tool_calls = False
    rounds = 0

    def _result(answer: str, **kwargs) -> LoopResult:
        return LoopResult(
            answer=answer,
            rounds=rounds,
            messages=state.as_list(),
            access_log=ctx.memory.access_log,
            tool_calls=ctx.tracker.total_calls,
            duplicates=ctx.tracker.duplicate_count,
            usage=usage,
            plan=plan,
            **kwargs,
        )

    try:
        plan = plan_question(question, ctx)
        prompt = f"{conversation}\n\n## Current Question\n\n{question}" if conversation else question
        state = LoopState.start(enrich_user_prompt(prompt, plan))

        for round_idx in range(ctx.max_rounds):
            rounds = round_idx + 1
            messages = state.as_list()
            ctx.emit(
                "round",
                f"Round {rounds}/{ctx.max_rounds}",
                round=rounds,
                max_rounds=ctx.max_rounds,
                tokens=estimate_transcript_tokens(messages),
            )

            if ctx.memory.should_compact(messages):
                state = _compact(state, ctx, rounds)

            response, state = _call_model(state, ctx, rounds)
            _add_usage(usage, response.usage)
            content = response.content or ""
            if content.strip():
                partial = content
            rounds_remain = round_idx < ctx.max_rounds - 2

            if not response.tool_calls:
                if had_tool_calls and not state.synthesis_injected and rounds_remain:
                    if not content.strip():
                        reason = "No answer after tool use"
                        ctx.emit(
                            "validation", reason, gate="synthesis", passed=False, reason=reason
                        )
                        if ctx.report:
                            ctx.report.record_verdict(rounds, "synthesis", False, reason)
                        state = reduce(
                            state,
                            AnswerRejected(content, build_synthesis_reminder(question), "synthesis"),
                        )
                        continue
                    correction = _review(
                        question, content, had_tool_calls, ctx, rounds, "synthesis"
                    )
                    if correction is not None:
                        state = reduce(
                            state, AnswerRejected(content, correction, "synthesis")
                        )
                        continue
                elif (
                    len(content.strip()) > MIN_FINAL_CHECK_CHARS
                    and rounds_remain
                    and not state.final_check_done
                ):
                    correction = _review(
                        question, content, had_tool_calls, ctx, rounds, "final"
                    )
                    if correction is not None:
                        state = reduce(state, AnswerRejected(content, correction, "final"))
                        continue

                state = reduce(state, AssistantReplied(content))
                ctx.emit("answer", "Answered", rounds=rounds, outcome="answered")
                return _result(content)

            had_tool_calls = True
            state = reduce(state, AssistantReplied(content))
            for call in response.tool_calls:
                state = _dispatch_tool_call(state, call, ctx, rounds)

            if ctx.memory.should_scratchpad(round_idx):
                ctx.emit("checkpoint", "Working memory checkpoint", round=rounds)
                if ctx.report:
                    ctx.report.record_checkpoint(rounds)
                state = reduce(state, CheckpointInjected(ctx.memory.scratchpad_prompt()))

            hint = ctx.tracker.get_correction_hint()
            if hint:
                ctx.emit("hint", hint)
                if ctx.report:
                    ctx.report.record_hint(rounds, hint)
                state = reduce(state, HintInjected(hint))

        answer = _fallback_answer(question, state, ctx, usage)
        state = reduce(state, AssistantReplied(answer))
        ctx.emit("answer", "Answered without tools", rounds=rounds, outcome="exhausted")
        return _result(answer, exhausted=True)

    except (KeyboardInterrupt, LoopCancelled):
        ctx.emit("interrupted", "Interrupted, returning partial answer")
        answer = f"{partial}\n\n[interrupted]" if partial else "[interrupted]"
        return _result(answer, interrupted=True)


def record_outcome(
    base_dir: str,
    question: str,
    result: LoopResult,
    *,
    history: bool = True,
    notes: bool = True,
    verbose: bool = False,
) -> None:
    """Append the exchange to history and fold file usage into CODEASK.md."""
    if result.interrupted:
        return
    if history and result.answer:
        append_history(base_dir, question, result.answer)
    if notes:
        try:
            updated = update_notes(base_dir, result.access_log)
        except (OSError, ValueError) as e:
            fmt.warning(f"could not update {notes_path(base_dir).name}: {e}")
            return
        if updated and verbose:
            fmt.info(f"Updated file usage in {notes_path(base_dir).name}")


# -- CLI ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="codeask",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="Ask questions about a local codebase. A model searches and reads the code with tools, then answers.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question about the codebase."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--file",
        default=None,
        metavar="PATH",
        help="Read the question from a file.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the answer as a JSON object on stdout.",
    )
    parser.add_argument(
        "--report",
        default=None,
        metavar="FILE",
        help="Write a JSON report of the run to FILE.",
    )
    parser.add_argument(
        "--init-notes",
        action="store_true",
        help="Generate a starter CODEASK.md in the base directory and exit.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented codeask.toml template and exit.",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Workspace root the tools may read (default: current directory).",
    )

    provider_group = parser.add_argument_group("provider")
    provider_group.add_argument(
        "--provider",
        choices=PROVIDERS,
        default=_UNSET,
        help="LLM provider (default: lmstudio).",
    )
    provider_group.add_argument(
        "--model",
        default=_UNSET,
        help="Model identifier.",
    )
    provider_group.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    provider_group.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: http://127.0.0.1:1234 for lmstudio).",
    )
    provider_group.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    provider_group.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per model call (default: 4096).",
    )
    provider_group.add_argument(
        "--max-context-tokens",
        type=int,
        default=_UNSET,
        help="Context window of the model, overriding the built-in table.",
    )

    agent_group = parser.add_argument_group("agent")
    agent_group.add_argument(
        "--max-rounds",
        type=int,
        default=_UNSET,
        help=f"Maximum model rounds per question (default: {MAX_TOOL_ROUNDS}).",
    )
    agent_group.add_argument(
        "--plan",
        choices=PLAN_MODES,
        default=_UNSET,
        help="Planning mode before the first round (default: text).",
    )
    agent_group.add_argument(
        "--critic",
        dest="critic",
        action="store_true",
        default=_UNSET,
        help="Grade candidate answers with a critic model call (default).",
    )
    agent_group.add_argument(
        "--no-critic",
        dest="critic",
        action="store_false",
        default=_UNSET,
        help="Skip the critic; only heuristic checks run.",
    )
    agent_group.add_argument(
        "--cache-ttl",
        type=float,
        default=_UNSET,
        help="Seconds a read-only tool result stays cached (default: 300).",
    )

    tools_group = parser.add_argument_group("write tools")
    tools_group.add_argument(
        "--allow-writes",
        action="store_true",
        default=_UNSET,
        help="Offer write_file (and run_command with --allowed-commands) to the model.",
    )
    tools_group.add_argument(
        "--tool-policy",
        choices=TOOL_POLICIES,
        default=_UNSET,
        help="How write tools are approved (default: ask).",
    )
    tools_group.add_argument(
        "--allowed-commands",
        default=_UNSET,
        metavar="CMDS",
        help='Comma-separated command names run_command may execute (e.g. "ls,git").',
    )

    persist_group = parser.add_argument_group("persistence")
    persist_group.add_argument(
        "--history",
        dest="history",
        action="store_true",
        default=_UNSET,
        help="Append answers to .codeask/HISTORY.md (default).",
    )
    persist_group.add_argument(
        "--no-history",
        dest="history",
        action="store_false",
        default=_UNSET,
        help="Don't write answers to .codeask/HISTORY.md.",
    )
    persist_group.add_argument(
        "--notes",
        dest="notes",
        action="store_true",
        default=_UNSET,
        help="Read and update CODEASK.md (default).",
    )
    persist_group.add_argument(
        "--no-notes",
        dest="notes",
        action="store_false",
        default=_UNSET,
        help="Ignore CODEASK.md.",
    )

    output_group = parser.add_argument_group("output")
    color = output_group.add_mutually_exclusive_group()
    color.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force colored output on stderr.",
    )
    color.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable colored output.",
    )
    output_group.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only the answer is printed.",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("codeask")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=True))
        sys.exit(0)

    try:
        config = load_config(Path(args.base_dir))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    fmt.init(color=args.color, no_color=args.no_color)

    if args.init_notes:
        path = notes_path(args.base_dir)
        if path.exists():
            fmt.error(f"{path} already exists, not overwriting it")
            sys.exit(1)
        write_notes(args.base_dir, generate_notes(args.base_dir))
        fmt.info(f"Wrote {path}")
        sys.exit(0)

    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")
    if args.file and args.question:
        parser.error("give the question as an argument or with --file, not both")

    report = ReportCollector() if args.report else None

    def _report_settings():
        return {
            "temperature": args.temperature,
            "max_output_tokens": args.max_output_tokens,
            "max_context_tokens": args.max_context_tokens,
            "max_rounds": args.max_rounds,
            "plan": args.plan,
            "critic": args.critic,
            "allow_writes": args.allow_writes,
            "tool_policy": args.tool_policy,
            "allowed_commands": sorted(args.allowed_commands or []),
            "cache_ttl": args.cache_ttl,
            "notes_loaded": getattr(args, "_notes_loaded", False),
        }

    def _write_report(outcome, answer=None, exit_code=0, rounds=None, error_message=None):
        if not report:
            return
        report.finalize(
            task=getattr(args, "_question", None) or args.question or "",
            model=args.model or "unknown",
            provider=args.provider,
            settings=_report_settings(),
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            rounds=rounds if rounds is not None else report.max_round_seen,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        _run_main(args, report, _write_report)
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)


def _read_question(args) -> str:
    if args.file:
        try:
            text = Path(args.file).read_text(encoding="utf-8")
        except OSError as e:
            raise AgentError(
                f"cannot read question file {args.file}: {e}",
                ErrorCode.INPUT_FILE_NOT_FOUND,
            ) from e
    elif args.question is not None:
        text = args.question
    elif not sys.stdin.isatty():
        text = sys.stdin.read()
    else:
        text = ""
    text = text.strip()
    if not text:
        raise AgentError(
            "no question given (pass it as an argument, with --file, or on stdin)",
            ErrorCode.INPUT_MISSING,
        )
    return text


def _loop_context(
    args, runtime: dict, question: str, report=None, cache=None
) -> LoopContext:
    return LoopContext(
        provider=runtime["provider"],
        executor=runtime["executor"],
        system_prompt=runtime["system_prompt"],
        model=args.model,
        max_rounds=args.max_rounds,
        temperature=args.temperature,
        max_output_tokens=args.max_output_tokens,
        context_length=args.max_context_tokens,
        plan_mode=args.plan,
        critic=args.critic,
        project_context=build_project_context(
            runtime["base_dir"], question, notes=args.notes, history=args.history
        ),
        cache_ttl=args.cache_ttl,
        cache=cache,
        status=fmt.status if args.verbose else None,
        report=report,
    )


def _print_result(args, result: LoopResult) -> None:
    if args.json:
        print(
            json.dumps(
                {
                    "answer": result.answer,
                    "rounds": result.rounds,
                    "exhausted": result.exhausted,
                    "usage": result.usage,
                    "model": args.model,
                },
                indent=2,
            )
        )
    elif result.answer:
        print(result.answer)


def _run_main(args, report, _write_report):
    base_dir = str(Path(args.base_dir).resolve())
    if not Path(base_dir).is_dir():
        raise ConfigError(f"base directory does not exist: {args.base_dir}")

    provider = resolve_provider(
        args.provider, args.model, api_key=args.api_key, base_url=args.base_url
    )

    resolved_commands = {}
    if args.allow_writes and args.allowed_commands:
        resolved_commands = resolve_commands(args.allowed_commands, base_dir)

    executor = ToolExecutor(
        base_dir,
        allow_writes=args.allow_writes,
        tool_policy=args.tool_policy,
        resolved_commands=resolved_commands,
    )
    system_prompt, notes_loaded = build_system_prompt(
        base_dir,
        notes=args.notes,
        allow_writes=args.allow_writes,
        resolved_commands=resolved_commands,
    )
    args._notes_loaded = notes_loaded
    if args.verbose:
        fmt.info(f"Using {args.provider} model {args.model}")
        if notes_loaded:
            fmt.info("Loaded CODEASK.md")

    runtime = {
        "base_dir": base_dir,
        "provider": provider,
        "executor": executor,
        "system_prompt": system_prompt,
    }

    if args.repl:
        repl_loop(args, runtime)
        return

    question = _read_question(args)
    args._question = question
    ctx = _loop_context(args, runtime, question, report)
    result = run_agent_loop(question, ctx)

    _print_result(args, result)
    record_outcome(
        base_dir,
        question,
        result,
        history=args.history,
        notes=args.notes,
        verbose=args.verbose,
    )
    exit_code = 130 if result.interrupted else 0
    _write_report(
        result.outcome, answer=result.answer, exit_code=exit_code, rounds=result.rounds
    )
    if result.exhausted and args.verbose:
        fmt.warning(f"max rounds reached, answered without tools after {result.rounds} rounds")
    if result.interrupted:
        sys.exit(exit_code)


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Forget the earlier questions of this session\n"
        "  /exit, /quit       Exit the REPL"
    )


def repl_loop(args, runtime: dict) -> None:
    """Interactive read-eval-print loop. One loop invocation per question."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    base_dir = runtime["base_dir"]
    history_path = os.path.join(base_dir, ".codeask", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "codeask> ")])

    if args.verbose:
        fmt.repl_banner()

    # Shared across questions; each question still gets a fresh tracker
    cache = ToolResultCache(ttl=args.cache_ttl)
    exchanges: list[tuple[str, str]] = []
    pending = args.question

    while True:
        if pending:
            line, pending = pending, None
        else:
            try:
                print(file=sys.stderr)  # blank line before prompt
                line = session.prompt(prompt_text)
            except (EOFError, KeyboardInterrupt):
                print(file=sys.stderr)  # newline after ^D / ^C
                break

        line = line.strip()
        if not line:
            continue

        if line in ("/exit", "/quit"):
            break
        if line == "/help":
            _repl_help()
            continue
        if line == "/clear":
            fmt.info(f"context cleared ({len(exchanges)} exchanges forgotten)")
            exchanges.clear()
            continue

        ctx = _loop_context(args, runtime, line, cache=cache)
        try:
            result = run_agent_loop(line, ctx, conversation=format_conversation(exchanges))
        except AgentError as e:
            fmt.error(str(e))
            continue

        _print_result(args, result)
        record_outcome(
            base_dir,
            line,
            result,
            history=args.history,
            notes=args.notes,
            verbose=args.verbose,
        )
        if not result.interrupted:
            exchanges.append((line, result.answer))
        if result.exhausted:
            fmt.warning("max rounds reached for this question.")


if __name__ == "__main__":
    main()
