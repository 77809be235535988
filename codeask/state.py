"""Transcript transitions for the agent loop.

Every change the loop makes to its transcript is an event applied by
``reduce``, which returns a new LoopState and never mutates the old one.
"""

from dataclasses import dataclass, field, replace


@dataclass(frozen=True)
class LoopState:
    messages: tuple = ()
    synthesis_injected: bool = False
    final_check_done: bool = False

    @classmethod
    def start(cls, first_user_turn: str) -> "LoopState":
        return cls(messages=({"role": "user", "content": first_user_turn},))

    def as_list(self) -> list[dict]:
        return [dict(m) for m in self.messages]


def tool_result_text(name: str, output: str) -> str:
    return f"[Tool result: {name}]\n{output}"


def duplicate_text(name: str) -> str:
    return tool_result_text(
        name, "You already made this exact call. Try a DIFFERENT approach."
    )


@dataclass(frozen=True)
class AssistantReplied:
    content: str


@dataclass(frozen=True)
class ToolResultAdded:
    name: str
    output: str


@dataclass(frozen=True)
class DuplicateSkipped:
    name: str


@dataclass(frozen=True)
class Compacted:
    messages: tuple


@dataclass(frozen=True)
class CheckpointInjected:
    prompt: str


@dataclass(frozen=True)
class HintInjected:
    hint: str


@dataclass(frozen=True)
class AnswerRejected:
    answer: str
    correction: str
    gate: str  # "synthesis" or "final"


def _user(content: str) -> dict:
    return {"role": "user", "content": content}


def _append(state: LoopState, *turns: dict) -> LoopState:
    return replace(state, messages=state.messages + turns)


def reduce(state: LoopState, event) -> LoopState:
    if isinstance(event, AssistantReplied):
        return _append(state, {"role": "assistant", "content": event.content or ""})
    if isinstance(event, ToolResultAdded):
        return _append(state, _user(tool_result_text(event.name, event.output)))
    if isinstance(event, DuplicateSkipped):
        return _append(state, _user(duplicate_text(event.name)))
    if isinstance(event, Compacted):
        return replace(state, messages=tuple(event.messages))
    if isinstance(event, CheckpointInjected):
        return _append(state, _user(event.prompt))
    if isinstance(event, HintInjected):
        return _append(state, _user(event.hint))
    if isinstance(event, AnswerRejected):
        rejected = _append(
            state,
            {"role": "assistant", "content": event.answer or ""},
            _user(event.correction),
        )
        if event.gate == "synthesis":
            return replace(rejected, synthesis_injected=True)
        return replace(rejected, final_check_done=True)
    raise TypeError(f"unknown loop event: {event!r}")


@dataclass
class StatusEvent:
    """A human-readable progress notification for the status sink."""

    kind: str
    message: str
    data: dict = field(default_factory=dict)
