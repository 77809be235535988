"""LiteLLM-backed model provider: tool-calling chat, streaming, and retries."""

import json
import os
import random
import re
import time
from dataclasses import dataclass, field

from .report import AgentError, ConfigError, ContextOverflowError, ErrorCode, ProviderError

PROVIDERS = ("lmstudio", "ollama", "openai", "openrouter", "groq", "huggingface")

_DEFAULT_BASES = {
    "lmstudio": "http://127.0.0.1:1234",
    "ollama": "http://127.0.0.1:11434",
}

_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "groq": "GROQ_API_KEY",
    "huggingface": "HF_TOKEN",
}

_CONTEXT_OVERFLOW_RE = re.compile(
    r"context.{0,10}(length|window|limit)"
    r"|maximum.{0,10}(context|token)"
    r"|token.{0,10}limit"
    r"|exceed.{0,10}(context|token|max)",
    re.IGNORECASE,
)

DEFAULT_TIMEOUT = 120  # seconds per model call


@dataclass
class ToolCall:
    name: str
    arguments: dict
    id: str | None = None
    error: str | None = None  # set when the arguments were not valid JSON


@dataclass
class ChatResponse:
    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: dict | None = None
    finish_reason: str | None = None


@dataclass
class StreamChunk:
    delta: str = ""
    done: bool = False
    usage: dict | None = None


@dataclass
class CompletionRequest:
    messages: list[dict]
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    system_prompt: str | None = None


# -- Errors and retry ----------------------------------------------------------


def classify_error(exc: Exception) -> AgentError:
    """Map a litellm (or transport) exception onto the error taxonomy."""
    import litellm

    if isinstance(exc, AgentError):
        return exc
    if isinstance(exc, litellm.ContextWindowExceededError):
        err = ContextOverflowError(f"context window exceeded: {exc}")
    elif isinstance(exc, litellm.AuthenticationError):
        err = ProviderError(
            f"authentication failed: {exc}", ErrorCode.PROVIDER_AUTH_FAILED
        )
    elif isinstance(exc, litellm.RateLimitError):
        err = ProviderError(
            f"rate limited: {exc}", ErrorCode.PROVIDER_RATE_LIMITED, retryable=True
        )
    elif isinstance(exc, litellm.NotFoundError):
        err = ProviderError(
            f"model not found: {exc}", ErrorCode.PROVIDER_MODEL_NOT_FOUND
        )
    elif isinstance(
        exc,
        (
            litellm.APIConnectionError,
            litellm.Timeout,
            litellm.ServiceUnavailableError,
            litellm.InternalServerError,
            ConnectionError,
            TimeoutError,
        ),
    ):
        err = ProviderError(
            f"provider unavailable: {exc}",
            ErrorCode.PROVIDER_UNAVAILABLE,
            retryable=True,
        )
    elif isinstance(exc, litellm.BadRequestError) and _CONTEXT_OVERFLOW_RE.search(
        str(exc)
    ):
        err = ContextOverflowError(f"context window exceeded (inferred): {exc}")
    else:
        err = ProviderError(f"LLM call failed: {exc}")
    err.__cause__ = exc
    return err


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff for retry ``attempt`` (0-based), with 50-100% jitter."""
    return min(base_delay * 2**attempt, max_delay) * (0.5 + 0.5 * random.random())


def with_retry(
    fn,
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    sleep=time.sleep,
):
    """Call ``fn`` and retry it while it raises retryable AgentErrors."""
    for attempt in range(max_attempts):
        if attempt > 0:
            sleep(backoff_delay(attempt - 1, base_delay, max_delay))
        try:
            return fn()
        except AgentError as e:
            if not e.retryable or attempt == max_attempts - 1:
                raise


def collect_stream(chunks) -> tuple[str, dict | None]:
    """Drain a StreamChunk iterator into (text, usage)."""
    parts: list[str] = []
    usage = None
    for chunk in chunks:
        if chunk.done:
            usage = chunk.usage
        else:
            parts.append(chunk.delta)
    return "".join(parts), usage


def _usage_dict(usage) -> dict | None:
    if usage is None:
        return None
    keys = ("prompt_tokens", "completion_tokens", "total_tokens")
    if isinstance(usage, dict):
        return {k: usage.get(k) or 0 for k in keys}
    return {k: getattr(usage, k, 0) or 0 for k in keys}


def _parse_tool_call(tc) -> ToolCall:
    name = tc.function.name
    raw = tc.function.arguments
    if isinstance(raw, dict):
        return ToolCall(name=name, arguments=raw, id=getattr(tc, "id", None))
    try:
        parsed = json.loads(raw) if raw else {}
    except (json.JSONDecodeError, TypeError) as e:
        return ToolCall(name=name, arguments={}, id=tc.id, error=str(e))
    if not isinstance(parsed, dict):
        return ToolCall(
            name=name,
            arguments={},
            id=tc.id,
            error=f"arguments must be a JSON object, got {type(parsed).__name__}",
        )
    return ToolCall(name=name, arguments=parsed, id=tc.id)


# -- Provider ------------------------------------------------------------------


class LiteLLMProvider:
    """Chat-completion backend reached through litellm.

    The transcript handed in holds only user/assistant turns; the system
    prompt travels separately and is prepended here.
    """

    def __init__(
        self,
        provider: str = "lmstudio",
        model: str | None = None,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_attempts: int = 3,
    ):
        if provider not in PROVIDERS:
            raise ConfigError(f"unknown provider {provider!r}")
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.max_attempts = max_attempts

    def _route(self, model: str | None) -> tuple[str, dict]:
        """Return (litellm model string, extra completion kwargs)."""
        model_id = model or self.model
        if not model_id:
            raise ConfigError(f"a model is required for provider {self.provider!r}")

        if self.provider == "lmstudio":
            base = self.base_url or _DEFAULT_BASES["lmstudio"]
            return f"openai/{model_id}", {"api_base": f"{base}/v1", "api_key": "lm-studio"}
        if self.provider == "ollama":
            bare_id = model_id.removeprefix("ollama/").removeprefix("ollama_chat/")
            return f"ollama_chat/{bare_id}", {
                "api_base": self.base_url or _DEFAULT_BASES["ollama"]
            }
        if self.provider == "openrouter":
            # Only strip a doubled prefix; "openrouter/free" is a real org/model.
            bare_id = (
                model_id[len("openrouter/") :]
                if model_id.startswith("openrouter/openrouter/")
                else model_id
            )
            model_str = f"openrouter/{bare_id}"
        else:
            bare_id = model_id.removeprefix(f"{self.provider}/")
            model_str = f"{self.provider}/{bare_id}"

        kwargs = {"api_key": self.api_key}
        if self.base_url:
            kwargs["api_base"] = self.base_url
        return model_str, kwargs

    def _messages(self, messages: list[dict], system_prompt: str | None) -> list[dict]:
        out = []
        if system_prompt:
            out.append({"role": "system", "content": system_prompt})
        out.extend({"role": m["role"], "content": m.get("content") or ""} for m in messages)
        return out

    def _completion(self, **kwargs):
        import litellm

        litellm.suppress_debug_info = True

        def _call():
            try:
                return litellm.completion(timeout=self.timeout, **kwargs)
            except Exception as e:
                raise classify_error(e) from e

        return with_retry(_call, max_attempts=self.max_attempts)

    def chat_with_tools(
        self,
        messages: list[dict],
        tools: list[dict],
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        system_prompt: str | None = None,
    ) -> ChatResponse:
        model_str, kwargs = self._route(model)
        completion_kwargs = dict(
            model=model_str,
            messages=self._messages(messages, system_prompt),
            **kwargs,
        )
        if tools:
            completion_kwargs["tools"] = tools
            completion_kwargs["tool_choice"] = "auto"
        for key, val in [("temperature", temperature), ("max_tokens", max_tokens)]:
            if val is not None:
                completion_kwargs[key] = val

        response = self._completion(**completion_kwargs)
        choice = response.choices[0]
        msg = choice.message
        return ChatResponse(
            content=msg.content,
            tool_calls=[_parse_tool_call(tc) for tc in (msg.tool_calls or [])],
            usage=_usage_dict(getattr(response, "usage", None)),
            finish_reason=choice.finish_reason,
        )

    def stream_completion(self, request: CompletionRequest):
        """Yield StreamChunks for a plain (no tools) completion.

        Opening the stream is retried; a failure mid-stream is raised as a
        classified error without replaying chunks already yielded.
        """
        model_str, kwargs = self._route(request.model)
        completion_kwargs = dict(
            model=model_str,
            messages=self._messages(request.messages, request.system_prompt),
            stream=True,
            **kwargs,
        )
        if request.temperature is not None:
            completion_kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            completion_kwargs["max_tokens"] = request.max_tokens

        stream = self._completion(**completion_kwargs)
        usage = None
        try:
            for chunk in stream:
                if getattr(chunk, "usage", None):
                    usage = _usage_dict(chunk.usage)
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                text = getattr(delta, "content", None)
                if text:
                    yield StreamChunk(delta=text)
        except AgentError:
            raise
        except Exception as e:
            raise classify_error(e) from e
        yield StreamChunk(done=True, usage=usage)

    def complete(self, request: CompletionRequest) -> str:
        text, _ = collect_stream(self.stream_completion(request))
        return text


def resolve_provider(
    provider: str = "lmstudio",
    model: str | None = None,
    *,
    api_key: str | None = None,
    base_url: str | None = None,
) -> LiteLLMProvider:
    """Build a provider, filling the API key from the environment when needed."""
    if provider not in PROVIDERS:
        raise ConfigError(f"unknown provider {provider!r}")
    if not model:
        raise ConfigError(f"--model is required when --provider is {provider}")
    env_var = _KEY_ENV.get(provider)
    if env_var:
        api_key = api_key or os.environ.get(env_var)
        if not api_key:
            raise ConfigError(
                f"--api-key or {env_var} env var required for {provider} provider"
            )
    if provider == "huggingface":
        bare = model.removeprefix("huggingface/")
        if "/" not in bare:
            raise ConfigError(
                "HuggingFace model must be in org/model format (e.g. zai-org/GLM-5)"
            )
    return LiteLLMProvider(provider, model, api_key=api_key, base_url=base_url)
