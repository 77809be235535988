"""Tool call ledger: duplicate detection and correction hints.

The hints are a tally heuristic, not a loop detector. They nudge the model
away from common degenerate patterns but guarantee nothing on their own;
termination comes from the round bound in the agent loop.
"""

import json
from dataclasses import dataclass


def canonical_args(args: dict | None) -> str:
    """Serialize tool arguments deterministically so equal calls compare equal."""
    return json.dumps(
        args or {},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


@dataclass(frozen=True)
class ToolCallRecord:
    name: str
    args_key: str
    was_error: bool


HINT_ERRORS = (
    "[SYSTEM HINT: Multiple tool errors detected. Check that every required "
    'argument is present and well-formed; a "query" must be a non-empty, specific '
    "string. Search for function names, class names, or import statements "
    "instead of generic terms.]"
)

HINT_DUPLICATES = (
    "[SYSTEM HINT: You are repeating the same tool calls. STOP and try completely "
    "different search terms. Think about which function names, class names, or "
    "variable names would exist in the code, and search for those identifiers.]"
)

HINT_SEARCH_STREAK = (
    "[SYSTEM HINT: You have been searching repeatedly. Use list_dir to explore the "
    "directory structure, or read_file to look at specific files that seem "
    "relevant based on their names.]"
)


def _streak_hint(name: str) -> str:
    if name == "search_text":
        return HINT_SEARCH_STREAK
    return (
        f"[SYSTEM HINT: Your last three calls all used {name}. Switch to a "
        "different tool: search_text to locate identifiers, or list_dir to see "
        "which files exist.]"
    )


class ToolCallTracker:
    """Append-only record of the tool calls made during one loop invocation."""

    def __init__(self):
        self.history: list[ToolCallRecord] = []
        self.error_count = 0

    def record(self, name: str, args: dict | None, was_error: bool = False) -> None:
        self.history.append(ToolCallRecord(name, canonical_args(args), was_error))
        if was_error:
            self.error_count += 1

    def is_duplicate(self, name: str, args: dict | None) -> bool:
        key = canonical_args(args)
        return any(r.name == name and r.args_key == key for r in self.history)

    @property
    def duplicate_count(self) -> int:
        """Records whose (name, args) had already been recorded before them."""
        seen: set[tuple[str, str]] = set()
        dupes = 0
        for r in self.history:
            key = (r.name, r.args_key)
            if key in seen:
                dupes += 1
            seen.add(key)
        return dupes

    @property
    def failure_count(self) -> int:
        """Errors on calls that were not repeats of an earlier call."""
        seen: set[tuple[str, str]] = set()
        failures = 0
        for r in self.history:
            key = (r.name, r.args_key)
            if r.was_error and key not in seen:
                failures += 1
            seen.add(key)
        return failures

    @property
    def total_calls(self) -> int:
        return len(self.history)

    def get_correction_hint(self) -> str | None:
        if len(self.history) < 2:
            return None
        if self.duplicate_count >= 2:
            return HINT_DUPLICATES
        if self.failure_count >= 2:
            return HINT_ERRORS
        last_three = self.history[-3:]
        if len(last_three) == 3 and len({r.name for r in last_three}) == 1:
            return _streak_hint(last_three[0].name)
        return None

    def reset(self) -> None:
        self.history = []
        self.error_count = 0
