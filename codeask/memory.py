"""Working memory for the agent loop.

Three jobs, all about keeping the transcript useful and inside the model's
context window:

- capping every tool result before it enters the transcript,
- periodic scratchpad checkpoints where the model writes its own running
  summary,
- compaction: when the transcript grows past 70% of the budget, the
  middle of it is replaced by a summary from an auxiliary model call.
"""

from dataclasses import dataclass, field

from .provider import CompletionRequest, collect_stream
from .tokens import check_budget, truncate_tool_output

SCRATCHPAD_INTERVAL = 3
COMPACTION_THRESHOLD = 0.70
MAX_TOOL_RESULT_TOKENS = 1500
KEEP_RECENT = 6
MIN_SUMMARY_CHARS = 20
MIDDLE_EXCERPT_CHARS = 500

SCRATCHPAD_PROMPT = """[WORKING MEMORY CHECKPOINT]

Pause and organize what you have learned so far. Write a brief, structured note:

1. **Files examined**: List every file path you have read or searched.
2. **Key findings**: List the most important facts you found (function names, patterns, locations).
3. **Still needed**: What information do you still need to answer the user's question?

Keep this under 200 words. This note will stay in your context as working memory."""

SUMMARIZER_PROMPT = """You are a context summarizer for a code assistant. You will receive a conversation between a user and an assistant that includes tool calls and their results.

Produce a COMPACT summary of the information gathered so far. Include:
1. Files that were examined (paths only)
2. Key code facts discovered (function names, class names, patterns, important line numbers)
3. Any errors or dead-ends encountered

Rules:
- Bullet points only
- Include file paths and line numbers where relevant
- Do NOT include opinions or analysis, only facts
- Do NOT include the full contents of files, only what was found
- Stay under 300 words"""


@dataclass
class AccessLog:
    """Files read and searches run during one loop invocation."""

    files_read: set[str] = field(default_factory=set)
    search_queries: set[str] = field(default_factory=set)


def summary_turn(summary: str) -> dict:
    return {
        "role": "user",
        "content": (
            "[CONTEXT SUMMARY: earlier tool results compressed]\n\n"
            f"{summary}\n\n[End of summary, recent context follows]"
        ),
    }


def placeholder_turn(compressed: int) -> dict:
    return {
        "role": "user",
        "content": (
            f"[CONTEXT NOTE: {compressed} earlier messages were compressed to save "
            "context space. Key info may need to be re-discovered if it is not in "
            "the recent messages.]"
        ),
    }


def _excerpt(turn: dict) -> str:
    content = turn.get("content") or ""
    if len(content) > MIDDLE_EXCERPT_CHARS:
        content = content[:MIDDLE_EXCERPT_CHARS] + "…"
    return f"[{turn.get('role')}] {content}"


def compact_messages(
    turns: list[dict],
    provider,
    *,
    model: str | None = None,
    keep_recent: int = KEEP_RECENT,
) -> tuple[list[dict], str]:
    """Replace the middle of ``turns`` with a single summary turn.

    Returns (new_turns, strategy) where strategy is "none" (too short to
    compact), "summary" or "placeholder" (summarizer failed or returned
    too little). The first turn and the last ``keep_recent`` turns are
    always kept as-is.
    """
    if len(turns) <= keep_recent + 2:
        return list(turns), "none"

    first = turns[0]
    middle = turns[1:-keep_recent] if keep_recent else turns[1:]
    recent = turns[-keep_recent:] if keep_recent else []

    middle_text = "\n---\n".join(_excerpt(t) for t in middle)
    request = CompletionRequest(
        messages=[
            {
                "role": "user",
                "content": f"Summarize the following conversation context:\n\n{middle_text}",
            }
        ],
        model=model,
        temperature=0.1,
        max_tokens=500,
        system_prompt=SUMMARIZER_PROMPT,
    )
    try:
        summary, _ = collect_stream(provider.stream_completion(request))
    except Exception:
        summary = ""

    summary = summary.strip()
    if len(summary) >= MIN_SUMMARY_CHARS:
        return [first, summary_turn(summary), *recent], "summary"
    return [first, placeholder_turn(len(middle)), *recent], "placeholder"


class WorkingMemory:
    def __init__(
        self,
        provider,
        model: str | None = None,
        system_prompt: str | None = None,
        *,
        context_length: int | None = None,
        keep_recent: int = KEEP_RECENT,
        max_result_tokens: int = MAX_TOOL_RESULT_TOKENS,
    ):
        self.provider = provider
        self.model = model
        self.system_prompt = system_prompt
        self.context_length = context_length
        self.keep_recent = keep_recent
        self.max_result_tokens = max_result_tokens
        self.access_log = AccessLog()
        self.last_strategy = "none"

    def process_tool_result(self, name: str, args: dict | None, output: str) -> str:
        """Log the access, then cap the output for insertion into the transcript."""
        args = args or {}
        if name == "read_file" and args.get("path"):
            self.access_log.files_read.add(str(args["path"]))
        if name == "search_text" and args.get("query"):
            self.access_log.search_queries.add(str(args["query"]))
        return truncate_tool_output(name, output, self.max_result_tokens)

    def should_scratchpad(self, round_no: int) -> bool:
        return round_no > 0 and round_no % SCRATCHPAD_INTERVAL == 0

    def scratchpad_prompt(self) -> str:
        return SCRATCHPAD_PROMPT

    def should_compact(self, turns: list[dict]) -> bool:
        check = check_budget(
            turns, self.system_prompt, self.model, self.context_length
        )
        return check.current_tokens > check.budget * COMPACTION_THRESHOLD

    def compact(self, turns: list[dict]) -> list[dict]:
        compacted, self.last_strategy = compact_messages(
            turns, self.provider, model=self.model, keep_recent=self.keep_recent
        )
        return compacted
