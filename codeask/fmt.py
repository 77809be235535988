"""ANSI-formatted stderr output using Rich."""

import json

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


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


# -- Round structure ---------------------------------------------------------


def round_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Round {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, finish_reason: str) -> None:
    style = "green" if finish_reason in ("stop", "tool_calls") else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def completion(rounds: int, outcome: str) -> None:
    if outcome == "answered":
        _console.print(
            Text(f"  ✓ Answered after {rounds} rounds", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Finished after {rounds} rounds, outcome={outcome}", style="bold yellow")
        )


# -- Planning ----------------------------------------------------------------


def plan_block(block: str) -> None:
    _console.print(Text("  Search plan:", style="bold blue"))
    for line in block.splitlines():
        _console.print(Text(line, style="blue"))


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def cache_hit(name: str) -> None:
    _console.print(Text(f"  ↺ {name} (cached)", style="green"))


def duplicate_skip(name: str) -> None:
    line = Text()
    line.append("  ⚠ Duplicate: ", style="bold yellow")
    line.append(f"{name} was already called with these arguments, skipped", style="yellow")
    _console.print(line)


# -- Working memory ----------------------------------------------------------


def compaction(strategy: str, before: int, after: int) -> None:
    _console.print(
        Text(
            f"  Compacted transcript ({strategy}): ~{before} -> ~{after} tokens",
            style="yellow",
        )
    )


def checkpoint(round_no: int) -> None:
    _console.print(
        Text(f"  [checkpoint] working memory prompt after round {round_no}", style="dim italic")
    )


def hint(text: str) -> None:
    line = Text()
    line.append("  [hint] ", style="yellow")
    line.append(text, style="dim italic")
    _console.print(line)


# -- Answer review -----------------------------------------------------------


def verdict(gate: str, passed: bool, reason: str, confidence: float | None = None) -> None:
    line = Text()
    if passed:
        line.append(f"  ✓ {gate}: accepted", style="green")
    else:
        line.append(f"  ✗ {gate}: rejected", style="bold magenta")
    if confidence is not None:
        line.append(f" (confidence {confidence:.2f})", style="dim")
    if reason:
        line.append(f"  {reason}", style="dim")
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


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
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(
        Text("Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.", style="dim")
    )


# -- Status sink -------------------------------------------------------------


def _preview(text: str, limit: int = 100) -> str:
    first = (text or "").strip().splitlines()[:1]
    line = first[0] if first else ""
    return line[:limit] + ("..." if len(line) > limit else "")


def status(event) -> None:
    """Render a loop StatusEvent on stderr."""
    kind, data = event.kind, event.data
    if kind == "round":
        round_header(data["round"], data["max_rounds"], data.get("tokens", 0))
    elif kind == "llm":
        llm_timing(data.get("elapsed", 0.0), data.get("finish_reason") or "unknown")
    elif kind == "plan":
        plan_block(data.get("block", event.message))
    elif kind == "tool_call":
        args = data.get("arguments")
        tool_call(data["name"], json.dumps(args, indent=2) if args else "")
    elif kind == "tool_result":
        tool_result(data["name"], data.get("elapsed", 0.0), _preview(data.get("output", "")))
    elif kind == "tool_error":
        tool_error(data["name"], event.message)
    elif kind == "cache_hit":
        cache_hit(data["name"])
    elif kind == "duplicate":
        duplicate_skip(data["name"])
    elif kind == "compaction" and "strategy" in data:
        compaction(data.get("strategy", "?"), data.get("before", 0), data.get("after", 0))
    elif kind == "checkpoint":
        checkpoint(data.get("round", 0))
    elif kind == "hint":
        hint(event.message)
    elif kind in ("validation", "critic"):
        verdict(
            data.get("gate", kind),
            data.get("passed", False),
            data.get("reason", event.message),
            data.get("confidence"),
        )
    elif kind == "answer":
        completion(data.get("rounds", 0), data.get("outcome", "answered"))
    elif kind in ("fallback", "interrupted"):
        warning(event.message)
    else:
        info(event.message)
