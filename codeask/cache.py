"""Short-lived cache of read-only tool results."""

import os
import time
from dataclasses import dataclass

from .tracker import canonical_args

DEFAULT_TTL = 300.0  # seconds

# Results that any file write can change, wherever the file lives.
_WRITE_SENSITIVE = frozenset({"search_text", "list_dir", "git_status", "git_diff"})


def _normalize_path(path) -> str:
    return os.path.normpath(str(path))


@dataclass
class CacheEntry:
    output: str
    stored_at: float
    path: str | None = None


class ToolResultCache:
    """TTL map keyed by (tool name, canonical arguments).

    Invalidation after a write is deliberately coarse: a stale hit is worse
    than a miss.
    """

    def __init__(self, ttl: float = DEFAULT_TTL, clock=time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[tuple[str, str], CacheEntry] = {}

    def get(self, name: str, args: dict | None) -> str | None:
        key = (name, canonical_args(args))
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at > self.ttl:
            del self._entries[key]
            return None
        return entry.output

    def set(self, name: str, args: dict | None, output: str) -> None:
        path = (args or {}).get("path")
        self._entries[(name, canonical_args(args))] = CacheEntry(
            output=output,
            stored_at=self._clock(),
            path=_normalize_path(path) if path else None,
        )

    def invalidate_path(self, path) -> int:
        """Drop reads of ``path`` and every write-sensitive entry. Returns count."""
        target = _normalize_path(path)
        stale = [
            key
            for key, entry in self._entries.items()
            if (key[0] == "read_file" and entry.path == target)
            or key[0] in _WRITE_SENSITIVE
        ]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    @property
    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
