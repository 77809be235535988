"""Tests for the TTL tool result cache."""

from codeask.cache import ToolResultCache


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestGetSet:
    def test_miss(self):
        cache = ToolResultCache()
        assert cache.get("read_file", {"path": "a.py"}) is None

    def test_hit(self):
        cache = ToolResultCache()
        cache.set("read_file", {"path": "a.py"}, "1: hello")
        assert cache.get("read_file", {"path": "a.py"}) == "1: hello"
        assert len(cache) == 1

    def test_argument_order_irrelevant(self):
        cache = ToolResultCache()
        cache.set("read_file", {"path": "a.py", "start_line": 1}, "out")
        assert cache.get("read_file", {"start_line": 1, "path": "a.py"}) == "out"

    def test_expired_entry_evicted(self):
        clock = FakeClock()
        cache = ToolResultCache(ttl=300, clock=clock)
        cache.set("search_text", {"query": "x"}, "hits")
        clock.now += 299
        assert cache.get("search_text", {"query": "x"}) == "hits"
        clock.now += 2
        assert cache.get("search_text", {"query": "x"}) is None
        assert cache.size == 0


# ---------------------------------------------------------------------------
# Invalidation
# ---------------------------------------------------------------------------


class TestInvalidatePath:
    def test_drops_read_of_path(self):
        cache = ToolResultCache()
        cache.set("read_file", {"path": "src/a.py"}, "a")
        cache.set("read_file", {"path": "src/b.py"}, "b")
        cache.invalidate_path("src/a.py")
        assert cache.get("read_file", {"path": "src/a.py"}) is None
        assert cache.get("read_file", {"path": "src/b.py"}) == "b"

    def test_ranged_reads_of_path_dropped(self):
        cache = ToolResultCache()
        cache.set("read_file", {"path": "src/a.py", "start_line": 10}, "a")
        cache.invalidate_path("src/a.py")
        assert cache.get("read_file", {"path": "src/a.py", "start_line": 10}) is None

    def test_normalized_paths_match(self):
        cache = ToolResultCache()
        cache.set("read_file", {"path": "./src/a.py"}, "a")
        cache.invalidate_path("src/a.py")
        assert cache.get("read_file", {"path": "./src/a.py"}) is None

    def test_every_search_dropped(self):
        cache = ToolResultCache()
        cache.set("search_text", {"query": "foo"}, "1")
        cache.set("search_text", {"query": "bar", "glob": "*.md"}, "2")
        cache.invalidate_path("unrelated/file.txt")
        assert cache.get("search_text", {"query": "foo"}) is None
        assert cache.get("search_text", {"query": "bar", "glob": "*.md"}) is None

    def test_listings_and_git_dropped(self):
        cache = ToolResultCache()
        cache.set("list_dir", {"path": "."}, "entries")
        cache.set("git_status", {}, "clean")
        cache.set("git_diff", {}, "No changes.")
        removed = cache.invalidate_path("new.py")
        assert removed == 3
        assert len(cache) == 0

    def test_clear(self):
        cache = ToolResultCache()
        cache.set("read_file", {"path": "a.py"}, "a")
        cache.set("search_text", {"query": "x"}, "b")
        cache.clear()
        assert len(cache) == 0
