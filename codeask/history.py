"""Per-project Q&A history and keyword recall of past exchanges."""

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from . import fmt
from .keywords import keyword_overlap, tokenize

MAX_HISTORY_SIZE = 500 * 1024  # 500KB
HISTORY_DIR = ".codeask"
RECENT_ENTRIES = 20
MAX_QUESTION_CHARS = 500
MAX_ANSWER_CHARS = 1500

_ENTRY_HEADER_RE = re.compile(r"^\*\*(?P<timestamp>[^*]+)\*\* - \*(?P<question>.*)\*$")
_ENTRY_SPLIT_RE = re.compile(r"^---\n\n(?=\*\*)", re.MULTILINE)
_INJECTED_PREFIXES = ("[Tool result:", "[SYSTEM", "[WORKING MEMORY", "[CONTEXT")


@dataclass
class PastExchange:
    question: str
    answer: str
    timestamp: str
    score: float = 0.0


def _safe_history_path(base_dir: str) -> Path:
    """Build history path, verify it resolves inside base_dir."""
    base = Path(base_dir).resolve()
    history_path = (Path(base_dir) / HISTORY_DIR / "HISTORY.md").resolve()
    if not history_path.is_relative_to(base):
        raise ValueError(f"history path {history_path} escapes base directory {base}")
    return history_path


def append_history(base_dir: str, question: str, answer: str) -> None:
    """Append a timestamped Q&A entry to .codeask/HISTORY.md."""
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

        # Header must stay on one line for load_exchanges
        q_flat = " ".join(question.split())
        q_display = q_flat[:200] + "..." if len(q_flat) > 200 else q_flat
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        entry = f"---\n\n**{timestamp}** - *{q_display}*\n\n{answer.strip()}\n\n"

        with history_path.open("a", encoding="utf-8") as f:
            f.write(entry)
    except OSError:
        fmt.warning("failed to write history entry")


def load_exchanges(base_dir: str) -> list[PastExchange]:
    """Parse HISTORY.md into exchanges, oldest first. Missing file -> []."""
    try:
        history_path = _safe_history_path(base_dir)
        text = history_path.read_text(encoding="utf-8")
    except (ValueError, OSError):
        return []

    exchanges = []
    for block in _ENTRY_SPLIT_RE.split(text):
        block = block.strip()
        if not block:
            continue
        header, _, body = block.partition("\n")
        match = _ENTRY_HEADER_RE.match(header.strip())
        if not match:
            continue
        exchanges.append(
            PastExchange(
                question=match["question"],
                answer=body.strip(),
                timestamp=match["timestamp"],
            )
        )
    return exchanges


def search_past_exchanges(
    question: str,
    base_dir: str,
    max_results: int = 3,
    min_score: float = 0.15,
) -> list[PastExchange]:
    """Find recent past exchanges whose question overlaps this one.

    Only the most recent entries are considered. Scores are Jaccard
    keyword overlap between the two questions.
    """
    query_tokens = tokenize(question)
    if not query_tokens:
        return []

    candidates = []
    for ex in load_exchanges(base_dir)[-RECENT_ENTRIES:]:
        if ex.question.startswith(_INJECTED_PREFIXES):
            continue
        score = keyword_overlap(query_tokens, tokenize(ex.question))
        if score >= min_score:
            candidates.append(
                PastExchange(
                    question=ex.question[:MAX_QUESTION_CHARS],
                    answer=ex.answer[:MAX_ANSWER_CHARS],
                    timestamp=ex.timestamp,
                    score=score,
                )
            )

    candidates.sort(key=lambda ex: ex.score, reverse=True)
    return candidates[:max_results]


def format_past_exchanges(exchanges: list[PastExchange]) -> str:
    if not exchanges:
        return ""

    parts = [
        "## Relevant Past Conversations",
        "",
        "These previous Q&A exchanges from this project may provide useful context:",
        "",
    ]
    for ex in exchanges:
        parts.append(f"**Q:** {ex.question[:200]}")
        parts.append(f"**A:** {ex.answer[:500]}")
        parts.append("")
    parts.append("---")
    parts.append(
        "Use the above as background context, but always verify by reading current code."
    )
    parts.append("")
    return "\n".join(parts)
