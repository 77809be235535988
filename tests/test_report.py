"""Tests for the error taxonomy and the JSON report feature (--report)."""

import json

import pytest

from codeask.report import (
    AgentError,
    ConfigError,
    ContextOverflowError,
    ErrorCode,
    ProviderError,
    ReportCollector,
    ToolError,
)


def _build(rc, **overrides):
    kwargs = dict(
        task="Where is createProvider?",
        model="m",
        provider="lmstudio",
        settings={},
        outcome="answered",
        answer="done",
        exit_code=0,
        rounds=0,
    )
    kwargs.update(overrides)
    return rc.build_report(**kwargs)


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------


class TestErrors:
    def test_default_codes(self):
        assert AgentError("x").code == ErrorCode.UNKNOWN
        assert ConfigError("x").code == ErrorCode.CONFIG_INVALID
        assert ProviderError("x").code == ErrorCode.PROVIDER_STREAM_ERROR
        assert ContextOverflowError("x").code == ErrorCode.PROVIDER_CONTEXT_OVERFLOW
        assert ToolError("x").code == ErrorCode.TOOL_EXEC_ERROR

    def test_explicit_code_and_retryable(self):
        err = ProviderError("slow down", ErrorCode.PROVIDER_RATE_LIMITED, retryable=True)
        assert err.code == ErrorCode.PROVIDER_RATE_LIMITED
        assert err.retryable
        assert str(err) == "slow down"

    def test_hierarchy(self):
        assert issubclass(ContextOverflowError, ProviderError)
        assert issubclass(ToolError, AgentError)

    def test_from_exception_wraps(self):
        cause = ValueError("bad value")
        err = AgentError.from_exception(cause, ErrorCode.TOOL_EXEC_ERROR)
        assert str(err) == "bad value"
        assert err.code == ErrorCode.TOOL_EXEC_ERROR
        assert err.__cause__ is cause

    def test_from_exception_passthrough(self):
        err = ToolError("nope")
        assert AgentError.from_exception(err) is err

    def test_code_serializes_as_string(self):
        assert json.dumps({"code": ErrorCode.INPUT_MISSING}) == '{"code": "INPUT_MISSING"}'


# ---------------------------------------------------------------------------
# ReportCollector
# ---------------------------------------------------------------------------


class TestReportCollector:
    def test_empty_report(self):
        r = _build(ReportCollector())
        assert r["version"] == 1
        assert r["task"] == "Where is createProvider?"
        assert r["result"] == {"outcome": "answered", "answer": "done", "exit_code": 0}
        assert r["stats"]["rounds"] == 0
        assert r["stats"]["tool_calls_total"] == 0
        assert r["stats"]["llm_calls"] == 0
        assert r["timeline"] == []

    def test_llm_call_tracking(self):
        rc = ReportCollector()
        rc.record_llm_call(1, 2.5, 1000, "tool_calls")
        rc.record_llm_call(2, 1.3, 1500, "stop", is_retry=True, retry_reason="context_overflow")
        assert rc.llm_calls == 2
        assert rc.total_llm_time == pytest.approx(3.8)
        assert rc.max_round_seen == 2
        assert rc.events[0]["is_retry"] is False
        assert "retry_reason" not in rc.events[0]
        assert rc.events[1]["retry_reason"] == "context_overflow"

    def test_tool_stats(self):
        rc = ReportCollector()
        rc.record_tool_call(1, "read_file", {"path": "a.py"}, True, 0.1, 120)
        rc.record_tool_call(1, "read_file", {"path": "b.py"}, False, 0.0, 30, "file not found")
        rc.record_tool_call(2, "search_text", {"query": "x"}, True, 0.0, 10, cached=True)
        rc.record_tool_call(
            2, "search_text", {"query": "x"}, False, 0.0, 0, "duplicate call", duplicate=True
        )
        assert rc.tool_stats == {
            "read_file": {"succeeded": 1, "failed": 1},
            "search_text": {"succeeded": 1, "failed": 1},
        }
        assert rc.cache_hits == 1
        assert rc.duplicates_skipped == 1
        assert rc.events[1]["error"] == "file not found"
        assert rc.events[2]["cached"] is True
        assert rc.events[3]["duplicate"] is True

        stats = _build(rc, rounds=2)["stats"]
        assert stats["tool_calls_total"] == 4
        assert stats["tool_calls_succeeded"] == 2
        assert stats["tool_calls_failed"] == 2
        assert stats["cache_hits"] == 1

    def test_memory_events(self):
        rc = ReportCollector()
        rc.record_compaction(5, "summary", 4000, 1200)
        rc.record_compaction(7, "placeholder", 4000, 900)
        rc.record_checkpoint(4)
        rc.record_hint(3, "[SYSTEM HINT: ...]")
        stats = _build(rc)["stats"]
        assert stats["compactions"] == 1
        assert stats["placeholder_compactions"] == 1
        assert stats["checkpoints"] == 1
        assert stats["hints"] == 1
        assert rc.events[0] == {
            "round": 5,
            "type": "compaction",
            "strategy": "summary",
            "tokens_before": 4000,
            "tokens_after": 1200,
        }

    def test_verdicts(self):
        rc = ReportCollector()
        rc.record_verdict(2, "synthesis", False, "Too short.")
        rc.record_verdict(3, "final", True, "Specific.", 0.9)
        assert rc.rejected_answers == 1
        assert "confidence" not in rc.events[0]
        assert rc.events[1]["confidence"] == 0.9
        assert _build(rc)["stats"]["rejected_answers"] == 1

    def test_error_message(self):
        r = _build(
            ReportCollector(), outcome="error", answer=None, exit_code=1, error_message="boom"
        )
        assert r["result"]["error_message"] == "boom"
        assert r["result"]["exit_code"] == 1

    def test_finalize_and_write(self, tmp_path):
        rc = ReportCollector()
        rc.record_llm_call(1, 0.5, 100, "stop")
        rc.finalize(
            task="q",
            model="m",
            provider="ollama",
            settings={"max_rounds": 15},
            outcome="answered",
            answer="a",
            exit_code=0,
            rounds=1,
        )
        out = tmp_path / "report.json"
        rc.write(str(out))
        data = json.loads(out.read_text())
        assert data["provider"] == "ollama"
        assert data["settings"] == {"max_rounds": 15}
        assert data["timeline"][0]["type"] == "llm_call"
