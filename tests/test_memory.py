"""Tests for working memory: output capping, scratchpad timing and compaction."""

from codeask.memory import (
    KEEP_RECENT,
    SCRATCHPAD_PROMPT,
    WorkingMemory,
    compact_messages,
)
from codeask.provider import StreamChunk


class StreamProvider:
    def __init__(self, text="", error=None):
        self.text = text
        self.error = error
        self.requests = []

    def stream_completion(self, request):
        self.requests.append(request)
        if self.error:
            raise self.error
        yield StreamChunk(delta=self.text)
        yield StreamChunk(done=True)


def _transcript(n):
    turns = [{"role": "user", "content": "Where is createProvider defined?"}]
    for i in range(1, n):
        role = "assistant" if i % 2 else "user"
        turns.append({"role": role, "content": f"turn {i} " + "x" * 50})
    return turns


SUMMARY = "- src/providers/factory.ts:12 defines createProvider\n- ollama adapter in src/providers/ollama.ts"


# ---------------------------------------------------------------------------
# Compaction
# ---------------------------------------------------------------------------


class TestCompactMessages:
    def test_short_transcript_untouched(self):
        turns = _transcript(KEEP_RECENT + 2)
        provider = StreamProvider(SUMMARY)
        out, strategy = compact_messages(turns, provider)
        assert out == turns
        assert strategy == "none"
        assert provider.requests == []

    def test_summary_replaces_middle(self):
        turns = _transcript(20)
        provider = StreamProvider(SUMMARY)
        out, strategy = compact_messages(turns, provider, model="m")
        assert strategy == "summary"
        assert len(out) == KEEP_RECENT + 2
        assert out[0] == turns[0]
        assert out[-KEEP_RECENT:] == turns[-KEEP_RECENT:]
        assert SUMMARY in out[1]["content"]
        assert out[1]["role"] == "user"
        request = provider.requests[0]
        assert request.model == "m"
        assert "turn 1 " in request.messages[0]["content"]
        # the recent turns are not sent to the summarizer
        assert "turn 19 " not in request.messages[0]["content"]

    def test_summarizer_failure_uses_placeholder(self):
        turns = _transcript(20)
        out, strategy = compact_messages(turns, StreamProvider(error=RuntimeError("down")))
        assert strategy == "placeholder"
        assert len(out) == KEEP_RECENT + 2
        assert out[0] == turns[0]
        assert out[-KEEP_RECENT:] == turns[-KEEP_RECENT:]
        assert "13 earlier messages were compressed" in out[1]["content"]

    def test_degenerate_summary_uses_placeholder(self):
        turns = _transcript(12)
        out, strategy = compact_messages(turns, StreamProvider("ok"))
        assert strategy == "placeholder"
        assert len(out) == KEEP_RECENT + 2

    def test_custom_keep_recent(self):
        turns = _transcript(10)
        out, _ = compact_messages(turns, StreamProvider(SUMMARY), keep_recent=2)
        assert len(out) == 4
        assert out[-2:] == turns[-2:]

    def test_inputs_not_mutated(self):
        turns = _transcript(15)
        snapshot = [dict(t) for t in turns]
        compact_messages(turns, StreamProvider(SUMMARY))
        assert turns == snapshot


# ---------------------------------------------------------------------------
# WorkingMemory
# ---------------------------------------------------------------------------


class TestWorkingMemory:
    def test_process_tool_result_logs_access(self):
        memory = WorkingMemory(StreamProvider())
        memory.process_tool_result("read_file", {"path": "src/a.py"}, "1: x")
        memory.process_tool_result("search_text", {"query": "createProvider"}, "hits")
        memory.process_tool_result("list_dir", {"path": "src"}, "a.py")
        assert memory.access_log.files_read == {"src/a.py"}
        assert memory.access_log.search_queries == {"createProvider"}

    def test_process_tool_result_caps_output(self):
        memory = WorkingMemory(StreamProvider(), max_result_tokens=50)
        output = "\n".join(f"{i}: line" for i in range(1, 2000))
        capped = memory.process_tool_result("read_file", {"path": "big.py"}, output)
        assert len(capped) < len(output)
        assert "omitted" in capped

    def test_should_scratchpad(self):
        memory = WorkingMemory(StreamProvider())
        assert [r for r in range(10) if memory.should_scratchpad(r)] == [3, 6, 9]

    def test_scratchpad_prompt(self):
        prompt = WorkingMemory(StreamProvider()).scratchpad_prompt()
        assert prompt == SCRATCHPAD_PROMPT
        assert "under 200 words" in prompt

    def test_should_compact_threshold(self):
        # budget = 1000 * 0.75 = 750; threshold = 525 tokens
        memory = WorkingMemory(StreamProvider(), context_length=1000)
        small = [{"role": "user", "content": "x" * 1000}]
        large = [{"role": "user", "content": "x" * 2100}]
        assert not memory.should_compact(small)
        assert memory.should_compact(large)

    def test_compact_records_strategy(self):
        memory = WorkingMemory(StreamProvider(SUMMARY), "m")
        out = memory.compact(_transcript(20))
        assert memory.last_strategy == "summary"
        assert len(out) == KEEP_RECENT + 2
