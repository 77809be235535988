"""Token budget estimation and truncation.

Uses a character heuristic rather than a real tokenizer: the loop only
needs good-enough estimates to decide when to compact or cap output, and
the heuristic behaves the same for every backend.
"""

import math
from dataclasses import dataclass

CHARS_PER_TOKEN = 3.8
MESSAGE_OVERHEAD = 4  # role + delimiters per turn

# Known context windows for popular models, used when the backend does not
# report one. Lookup is case-insensitive and falls back to the longest
# matching prefix, so "llama3.1:8b-instruct" resolves via "llama3.1".
MODEL_CONTEXT_LIMITS: dict[str, int] = {
    "llama3.2": 128_000,
    "llama3.2:1b": 8_192,
    "llama3.2:3b": 128_000,
    "llama3.1": 128_000,
    "llama3": 8_192,
    "llama2": 4_096,
    "mistral": 8_192,
    "mixtral": 32_768,
    "codellama": 16_384,
    "deepseek-coder": 16_384,
    "deepseek-coder-v2": 128_000,
    "qwen2.5-coder": 128_000,
    "qwen3": 32_768,
    "phi3": 128_000,
    "gemma2": 8_192,
    "command-r": 128_000,
    "gpt-4o": 128_000,
    "gpt-4": 8_192,
}

DEFAULT_CONTEXT_LIMIT = 8_192
USAGE_RATIO = 0.75


def estimate_tokens(text: str | None) -> int:
    """Rough token count for a string."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_transcript_tokens(turns) -> int:
    """Sum of per-turn estimates plus framing overhead."""
    total = 0
    for turn in turns:
        total += MESSAGE_OVERHEAD + estimate_tokens(turn.get("content"))
    return total


def model_context_limit(model: str | None) -> int:
    if not model:
        return DEFAULT_CONTEXT_LIMIT
    lower = model.lower()
    bare = lower.rsplit("/", 1)[-1]
    for name in (lower, bare):
        if name in MODEL_CONTEXT_LIMITS:
            return MODEL_CONTEXT_LIMITS[name]
    for name in (lower, bare):
        matches = [k for k in MODEL_CONTEXT_LIMITS if name.startswith(k)]
        if matches:
            return MODEL_CONTEXT_LIMITS[max(matches, key=len)]
    return DEFAULT_CONTEXT_LIMIT


def context_budget(model: str | None = None, context_length: int | None = None) -> int:
    """Tokens the transcript may use before it counts as over budget.

    An explicit ``context_length`` (from config or the backend) wins over
    the lookup table.
    """
    limit = context_length if context_length else model_context_limit(model)
    return int(limit * USAGE_RATIO)


@dataclass
class BudgetCheck:
    over_budget: bool
    current_tokens: int
    budget: int
    excess: int


def check_budget(
    turns,
    system_prompt: str | None,
    model: str | None = None,
    context_length: int | None = None,
) -> BudgetCheck:
    budget = context_budget(model, context_length)
    system_tokens = (
        estimate_tokens(system_prompt) + MESSAGE_OVERHEAD if system_prompt else 0
    )
    current = system_tokens + estimate_transcript_tokens(turns)
    excess = current - budget
    return BudgetCheck(
        over_budget=excess > 0,
        current_tokens=current,
        budget=budget,
        excess=max(0, excess),
    )


def is_over_budget(
    turns,
    system_prompt: str | None,
    model: str | None = None,
    context_length: int | None = None,
) -> bool:
    return check_budget(turns, system_prompt, model, context_length).over_budget


# -- Truncation ----------------------------------------------------------------


def truncate_to_budget(text: str, max_tokens: int) -> str:
    """Keep ~45% of the allowed characters from each end of ``text``."""
    estimated = estimate_tokens(text)
    if estimated <= max_tokens:
        return text

    max_chars = int(max_tokens * CHARS_PER_TOKEN)
    keep = int(max_chars * 0.45)
    head = text[:keep]
    tail = text[-keep:] if keep > 0 else ""
    omitted = estimated - max_tokens
    return f"{head}\n\n[… ~{omitted} tokens omitted …]\n\n{tail}"


def truncate_tool_output(name: str, output: str, max_tokens: int = 1500) -> str:
    """Cap a tool result, cutting on line boundaries where the tool allows it.

    read_file keeps head and tail lines, search_text keeps the first result
    lines. When line-based cutting cannot get under the budget (few, very
    long lines) the generic head/tail character strategy applies.
    """
    if estimate_tokens(output) <= max_tokens:
        return output

    lines = output.split("\n")

    if name == "read_file":
        max_lines = max_tokens // 10  # ~10 tokens per line
        keep = int(max_lines * 0.45)
        if len(lines) > max_lines and keep > 0:
            head = "\n".join(lines[:keep])
            tail = "\n".join(lines[-keep:])
            omitted = len(lines) - keep * 2
            candidate = f"{head}\n\n[… {omitted} lines omitted …]\n\n{tail}"
            if estimate_tokens(candidate) <= max_tokens:
                return candidate

    elif name == "search_text":
        max_lines = max_tokens // 8
        if len(lines) > max_lines and max_lines > 0:
            candidate = (
                "\n".join(lines[:max_lines])
                + f"\n\n[… {len(lines) - max_lines} more results truncated]"
            )
            if estimate_tokens(candidate) <= max_tokens:
                return candidate

    return truncate_to_budget(output, max_tokens)
