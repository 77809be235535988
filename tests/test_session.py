"""Tests for the Session library API."""

import threading
from unittest.mock import patch

import pytest

from codeask import fmt
from codeask.provider import ChatResponse, StreamChunk, ToolCall
from codeask.report import ConfigError
from codeask.session import Result, Session

ANSWER = (
    "`createProvider` is defined in `src/providers/factory.ts` at line 3; "
    "it returns the adapter for the configured provider."
)
READ_FACTORY = ("read_file", {"path": "src/providers/factory.ts"})


@pytest.fixture(autouse=True)
def _init_fmt():
    fmt.init(color=False, no_color=False)


@pytest.fixture
def workspace(tmp_path):
    src = tmp_path / "src" / "providers"
    src.mkdir(parents=True)
    (src / "factory.ts").write_text(
        "import { Ollama } from './ollama';\n\n"
        "export function createProvider(name: string) {\n"
        "  return new Ollama();\n"
        "}\n"
    )
    return tmp_path


class FakeProvider:
    """Replays chat replies in order and answers every stream with ``text``."""

    def __init__(self, replies, text="fallback"):
        self.replies = list(replies)
        self.text = text
        self.chat_calls = []

    def chat_with_tools(self, messages, tools, **kwargs):
        self.chat_calls.append([dict(m) for m in messages])
        return self.replies[len(self.chat_calls) - 1]

    def stream_completion(self, request):
        yield StreamChunk(delta=self.text)
        yield StreamChunk(done=True)


def _answer(content=ANSWER):
    return ChatResponse(content=content, tool_calls=[], finish_reason="stop")


def _tools(*calls):
    return ChatResponse(
        content="",
        tool_calls=[ToolCall(name=name, arguments=args) for name, args in calls],
        finish_reason="tool_calls",
    )


def _session(workspace, **kwargs):
    kwargs.setdefault("model", "test-model")
    kwargs.setdefault("plan", "off")
    kwargs.setdefault("critic", False)
    return Session(base_dir=str(workspace), **kwargs)


def _patched(provider):
    return patch("codeask.agent.resolve_provider", return_value=provider)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


class TestSetup:
    def test_defaults(self):
        s = Session()
        assert s.provider == "lmstudio"
        assert s.max_rounds == 15
        assert s.plan == "text"
        assert s.critic is True
        assert s.tool_policy == "allow"
        assert s.cache_ttl == 300.0
        assert s.allowed_commands == []

    def test_bad_base_dir(self, tmp_path):
        s = Session(base_dir=str(tmp_path / "missing"), model="m")
        with pytest.raises(ConfigError, match="not a directory"):
            s.run("q")

    def test_missing_model(self, workspace):
        s = Session(base_dir=str(workspace))
        with pytest.raises(ConfigError, match="--model is required"):
            s.run("q")

    def test_setup_runs_once(self, workspace):
        provider = FakeProvider([_answer(), _answer()])
        s = _session(workspace)
        with _patched(provider) as mock_resolve:
            s.run("first question about createProvider?")
            s.run("second question about createProvider?")
        mock_resolve.assert_called_once_with(
            "lmstudio", "test-model", api_key=None, base_url=None
        )

    def test_write_tools_offered(self, workspace):
        s = _session(workspace, allow_writes=True)
        with _patched(FakeProvider([_answer()])):
            s.run("q about createProvider?")
        assert "write_file" in s._system_content
        assert [t["function"]["name"] for t in s._executor.schemas()][-1] == "write_file"


# ---------------------------------------------------------------------------
# run()
# ---------------------------------------------------------------------------


class TestRun:
    def test_answer_with_tool_call(self, workspace):
        provider = FakeProvider([_tools(READ_FACTORY), _answer()])
        s = _session(workspace, history=False, notes=False)
        with _patched(provider):
            result = s.run("Where is createProvider defined?")
        assert isinstance(result, Result)
        assert result.answer == ANSWER
        assert result.rounds == 2
        assert not result.exhausted
        assert not result.interrupted
        assert result.report is None
        tool_msg = [m for m in provider.chat_calls[1] if m["role"] == "user"][-1]
        assert "export function createProvider" in tool_msg["content"]

    def test_messages_are_copies(self, workspace):
        s = _session(workspace, history=False)
        with _patched(FakeProvider([_answer()])):
            result = s.run("Where is createProvider?")
        result.messages.clear()
        assert result.messages == []

    def test_report(self, workspace):
        provider = FakeProvider([_tools(READ_FACTORY), _answer()])
        s = _session(workspace, history=False)
        with _patched(provider):
            result = s.run("Where is createProvider defined?", report=True)
        report = result.report
        assert report["result"]["outcome"] == "answered"
        assert report["result"]["exit_code"] == 0
        assert report["model"] == "test-model"
        assert report["settings"]["max_rounds"] == 15
        assert report["stats"]["tool_calls_total"] == 1
        assert report["stats"]["tool_calls_succeeded"] == 1

    def test_history_written(self, workspace):
        s = _session(workspace)
        with _patched(FakeProvider([_answer()])):
            s.run("Where is createProvider defined?")
        history = (workspace / ".codeask" / "HISTORY.md").read_text()
        assert "Where is createProvider defined?" in history

    def test_history_disabled(self, workspace):
        s = _session(workspace, history=False)
        with _patched(FakeProvider([_answer()])):
            s.run("Where is createProvider defined?")
        assert not (workspace / ".codeask").exists()

    def test_cancelled_before_start(self, workspace):
        cancel = threading.Event()
        cancel.set()
        s = _session(workspace, cancel=cancel)
        with _patched(FakeProvider([])):
            result = s.run("Where is createProvider defined?", report=True)
        assert result.interrupted
        assert result.answer == "[interrupted]"
        assert result.report["result"]["exit_code"] == 130
        assert not (workspace / ".codeask").exists()

    def test_runs_are_independent(self, workspace):
        provider = FakeProvider([_answer(), _answer()])
        s = _session(workspace, history=False)
        with _patched(provider):
            s.run("What does createProvider return?")
            s.run("Where is createProvider defined?")
        assert "Earlier in this conversation" not in provider.chat_calls[1][0]["content"]


# ---------------------------------------------------------------------------
# ask() and reset()
# ---------------------------------------------------------------------------


class TestAsk:
    def test_earlier_exchanges_folded(self, workspace):
        provider = FakeProvider([_answer(), _answer()])
        s = _session(workspace, history=False)
        with _patched(provider):
            s.ask("What does createProvider return?")
            s.ask("Where is it defined?")
        second = provider.chat_calls[1][0]["content"]
        assert second.startswith("## Earlier in this conversation")
        assert "**Q:** What does createProvider return?" in second
        assert "## Current Question\n\nWhere is it defined?" in second

    def test_cache_shared(self, workspace):
        provider = FakeProvider(
            [_tools(READ_FACTORY), _answer(), _tools(READ_FACTORY), _answer()]
        )
        s = _session(workspace, history=False)
        with _patched(provider):
            s.ask("What does createProvider return?")
            cache = s._cache
            assert len(cache) == 1
            # the file changes on disk, the cached read is still served
            (workspace / "src" / "providers" / "factory.ts").write_text("changed\n")
            s.ask("Where is createProvider defined?")
        assert s._cache is cache
        tool_msg = [m for m in provider.chat_calls[3] if m["role"] == "user"][-1]
        assert "export function createProvider" in tool_msg["content"]

    def test_reset(self, workspace):
        provider = FakeProvider([_tools(READ_FACTORY), _answer(), _answer()])
        s = _session(workspace, history=False)
        with _patched(provider):
            s.ask("What does createProvider return?")
            s.reset()
            assert s._cache is None
            s.ask("Where is createProvider defined?")
        assert "Earlier in this conversation" not in provider.chat_calls[2][0]["content"]

    def test_interrupted_exchange_not_kept(self, workspace):
        cancel = threading.Event()
        cancel.set()
        s = _session(workspace, history=False, cancel=cancel)
        with _patched(FakeProvider([])):
            result = s.ask("Where is createProvider defined?")
        assert result.interrupted
        assert s._exchanges == []
