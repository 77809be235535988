"""Error taxonomy and JSON run reports."""

import json
from datetime import datetime, timezone
from enum import Enum


class ErrorCode(str, Enum):
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    TOOL_EXEC_ERROR = "TOOL_EXEC_ERROR"
    TOOL_DENIED = "TOOL_DENIED"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    PROVIDER_AUTH_FAILED = "PROVIDER_AUTH_FAILED"
    PROVIDER_RATE_LIMITED = "PROVIDER_RATE_LIMITED"
    PROVIDER_STREAM_ERROR = "PROVIDER_STREAM_ERROR"
    PROVIDER_MODEL_NOT_FOUND = "PROVIDER_MODEL_NOT_FOUND"
    PROVIDER_CONTEXT_OVERFLOW = "PROVIDER_CONTEXT_OVERFLOW"
    INPUT_MISSING = "INPUT_MISSING"
    INPUT_FILE_NOT_FOUND = "INPUT_FILE_NOT_FOUND"
    CONFIG_INVALID = "CONFIG_INVALID"
    UNKNOWN = "UNKNOWN"


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures.

    ``retryable`` marks transient conditions (rate limits, unreachable
    servers) that the provider adapter may retry with backoff.
    """

    default_code = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        *,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code if code is not None else self.default_code
        self.retryable = retryable

    @classmethod
    def from_exception(
        cls, exc: BaseException, fallback_code: ErrorCode = ErrorCode.UNKNOWN
    ) -> "AgentError":
        if isinstance(exc, AgentError):
            return exc
        err = cls(str(exc) or type(exc).__name__, fallback_code)
        err.__cause__ = exc
        return err


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""

    default_code = ErrorCode.CONFIG_INVALID


class ProviderError(AgentError):
    """Raised when the primary model call fails."""

    default_code = ErrorCode.PROVIDER_STREAM_ERROR


class ContextOverflowError(ProviderError):
    """Raised when the LLM call fails due to context window overflow."""

    default_code = ErrorCode.PROVIDER_CONTEXT_OVERFLOW


class ToolError(AgentError):
    """Raised by the tool executor. The loop turns it into tool-result text."""

    default_code = ErrorCode.TOOL_EXEC_ERROR


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.compactions = 0
        self.placeholder_compactions = 0
        self.checkpoints = 0
        self.hints = 0
        self.duplicates_skipped = 0
        self.cache_hits = 0
        self.rejected_answers = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_round_seen = 0

    def record_llm_call(
        self,
        round_no: int,
        duration: float,
        token_est: int,
        finish_reason: str,
        *,
        is_retry: bool = False,
        retry_reason: str | None = None,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        if round_no > self.max_round_seen:
            self.max_round_seen = round_no
        event = {
            "round": round_no,
            "type": "llm_call",
            "duration_s": round(duration, 3),
            "prompt_tokens_est": token_est,
            "finish_reason": finish_reason,
            "is_retry": is_retry,
        }
        if retry_reason is not None:
            event["retry_reason"] = retry_reason
        self.events.append(event)

    def record_tool_call(
        self,
        round_no: int,
        name: str,
        arguments: dict | None,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
        *,
        cached: bool = False,
        duplicate: bool = False,
    ):
        self.total_tool_time += duration
        if cached:
            self.cache_hits += 1
        if duplicate:
            self.duplicates_skipped += 1
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "round": round_no,
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if cached:
            event["cached"] = True
        if duplicate:
            event["duplicate"] = True
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_compaction(
        self, round_no: int, strategy: str, tokens_before: int, tokens_after: int
    ):
        if strategy == "placeholder":
            self.placeholder_compactions += 1
        else:
            self.compactions += 1
        self.events.append(
            {
                "round": round_no,
                "type": "compaction",
                "strategy": strategy,
                "tokens_before": tokens_before,
                "tokens_after": tokens_after,
            }
        )

    def record_checkpoint(self, round_no: int):
        self.checkpoints += 1
        self.events.append({"round": round_no, "type": "checkpoint"})

    def record_hint(self, round_no: int, hint: str):
        self.hints += 1
        self.events.append({"round": round_no, "type": "hint", "hint": hint})

    def record_verdict(
        self,
        round_no: int,
        gate: str,
        passed: bool,
        reason: str,
        confidence: float | None = None,
    ):
        if not passed:
            self.rejected_answers += 1
        event = {
            "round": round_no,
            "type": "verdict",
            "gate": gate,
            "passed": passed,
            "reason": reason,
        }
        if confidence is not None:
            event["confidence"] = confidence
        self.events.append(event)

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        rounds: int,
        error_message: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "rounds": rounds,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "cache_hits": self.cache_hits,
                "duplicates_skipped": self.duplicates_skipped,
                "compactions": self.compactions,
                "placeholder_compactions": self.placeholder_compactions,
                "checkpoints": self.checkpoints,
                "hints": self.hints,
                "rejected_answers": self.rejected_answers,
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for a later write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report
