"""Tests for the tool call tracker: duplicates and correction hints."""

from codeask.tracker import (
    HINT_DUPLICATES,
    HINT_ERRORS,
    HINT_SEARCH_STREAK,
    ToolCallTracker,
    canonical_args,
)


class TestCanonicalArgs:
    def test_key_order_ignored(self):
        assert canonical_args({"a": 1, "b": 2}) == canonical_args({"b": 2, "a": 1})

    def test_none_is_empty(self):
        assert canonical_args(None) == canonical_args({}) == "{}"

    def test_nested_values(self):
        a = canonical_args({"opts": {"x": 1, "y": [1, 2]}, "q": "z"})
        b = canonical_args({"q": "z", "opts": {"y": [1, 2], "x": 1}})
        assert a == b


class TestDuplicates:
    def test_exact_repeat_is_duplicate(self):
        t = ToolCallTracker()
        t.record("search_text", {"query": "createProvider"})
        assert t.is_duplicate("search_text", {"query": "createProvider"})

    def test_different_value_not_duplicate(self):
        t = ToolCallTracker()
        t.record("search_text", {"query": "createProvider"})
        assert not t.is_duplicate("search_text", {"query": "ProviderFactory"})

    def test_same_args_other_tool_not_duplicate(self):
        t = ToolCallTracker()
        t.record("read_file", {"path": "a.py"})
        assert not t.is_duplicate("list_dir", {"path": "a.py"})

    def test_key_order_does_not_matter(self):
        t = ToolCallTracker()
        t.record("read_file", {"path": "a.py", "start_line": 1})
        assert t.is_duplicate("read_file", {"start_line": 1, "path": "a.py"})

    def test_duplicate_count(self):
        t = ToolCallTracker()
        t.record("search_text", {"query": "x"})
        t.record("search_text", {"query": "x"}, was_error=True)
        t.record("search_text", {"query": "x"}, was_error=True)
        t.record("read_file", {"path": "a.py"})
        assert t.duplicate_count == 2
        assert t.total_calls == 4
        assert t.error_count == 2


# ---------------------------------------------------------------------------
# Correction hints
# ---------------------------------------------------------------------------


class TestCorrectionHint:
    def test_no_hint_for_short_history(self):
        t = ToolCallTracker()
        assert t.get_correction_hint() is None
        t.record("search_text", {"query": "a"}, was_error=True)
        assert t.get_correction_hint() is None

    def test_errors_take_priority(self):
        t = ToolCallTracker()
        t.record("read_file", {"path": "missing.py"}, was_error=True)
        t.record("search_text", {"query": ""}, was_error=True)
        assert t.get_correction_hint() == HINT_ERRORS

    def test_duplicates_hint(self):
        t = ToolCallTracker()
        t.record("search_text", {"query": "x"})
        t.record("search_text", {"query": "x"})
        t.record("read_file", {"path": "a.py"})
        t.record("read_file", {"path": "a.py"})
        assert t.get_correction_hint() == HINT_DUPLICATES

    def test_flagged_duplicates_get_duplicate_hint(self):
        t = ToolCallTracker()
        t.record("search_text", {"query": "x"})
        t.record("search_text", {"query": "x"}, was_error=True)
        t.record("search_text", {"query": "x"}, was_error=True)
        assert t.error_count == 2
        assert t.failure_count == 0
        assert t.get_correction_hint() == HINT_DUPLICATES

    def test_one_error_plus_duplicate_is_not_malformed(self):
        t = ToolCallTracker()
        t.record("read_file", {"path": "missing.py"}, was_error=True)
        t.record("read_file", {"path": "missing.py"}, was_error=True)
        assert t.failure_count == 1
        assert t.get_correction_hint() is None

    def test_search_streak(self):
        t = ToolCallTracker()
        for q in ("alpha", "beta", "gamma"):
            t.record("search_text", {"query": q})
        assert t.get_correction_hint() == HINT_SEARCH_STREAK

    def test_other_tool_streak_names_tool(self):
        t = ToolCallTracker()
        for p in ("a.py", "b.py", "c.py"):
            t.record("read_file", {"path": p})
        hint = t.get_correction_hint()
        assert hint is not None
        assert "read_file" in hint

    def test_varied_calls_no_hint(self):
        t = ToolCallTracker()
        t.record("search_text", {"query": "alpha"})
        t.record("read_file", {"path": "a.py"})
        t.record("list_dir", {"path": "src"})
        assert t.get_correction_hint() is None

    def test_reset(self):
        t = ToolCallTracker()
        t.record("search_text", {"query": "x"}, was_error=True)
        t.record("search_text", {"query": "x"}, was_error=True)
        t.reset()
        assert t.total_calls == 0
        assert t.error_count == 0
        assert not t.is_duplicate("search_text", {"query": "x"})
