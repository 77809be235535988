"""Answer validation: cheap heuristics first, then an optional LLM critic."""

import json
import re
from dataclasses import dataclass

from .keywords import tokenize
from .provider import CompletionRequest, collect_stream

MIN_ANSWER_AFTER_TOOLS = 20
MIN_CRITIC_ANSWER = 30
MIN_RELEVANCE = 0.15
MAX_CRITIC_ANSWER_CHARS = 3000

CRITIC_PROMPT = """You are a strict answer quality evaluator for a code assistant.

You will receive:
1. The user's ORIGINAL QUESTION
2. The assistant's PROPOSED ANSWER

Evaluate the answer on these criteria:
- RELEVANCE: Does the answer address the user's specific question?
- SPECIFICITY: Does the answer reference specific files, line numbers, or code?
- ACCURACY: Does the answer appear technically correct (no obvious hallucinations)?
- COMPLETENESS: Does the answer cover the main aspects of the question?
- FORMAT: Is the answer in clean Markdown (not raw JSON, not gibberish)?

Respond in EXACTLY this format (no extra text):
PASS or FAIL
CONFIDENCE: 0.0-1.0
REASON: one sentence explanation

Examples:
PASS
CONFIDENCE: 0.9
REASON: Answer identifies the provider factory in src/providers/factory.py with specific line references.

FAIL
CONFIDENCE: 0.8
REASON: Answer describes the config loader but the user asked about LLM providers."""


@dataclass
class ValidationResult:
    valid: bool
    reason: str | None = None


@dataclass
class CriticVerdict:
    passed: bool
    reason: str
    confidence: float


def _parses_as_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def relevance_score(question: str, answer: str) -> float | None:
    """Share of the question's keywords that appear in the answer.

    Returns None when the question has fewer than two keywords, since the
    ratio means nothing for such short questions.
    """
    q_tokens = set(tokenize(question))
    if len(q_tokens) < 2:
        return None
    a_tokens = set(tokenize(answer))
    return len(q_tokens & a_tokens) / len(q_tokens)


def validate_answer(
    text: str | None, had_tool_calls: bool, question: str | None = None
) -> ValidationResult:
    trimmed = (text or "").strip()

    if not trimmed:
        return ValidationResult(False, "You produced an empty response.")

    if trimmed.startswith(("{", "[")) and "```" not in trimmed:
        if len(trimmed) > 10 or _parses_as_json(trimmed):
            return ValidationResult(
                False, "You output raw JSON instead of a Markdown answer."
            )

    if had_tool_calls and len(trimmed) < MIN_ANSWER_AFTER_TOOLS:
        return ValidationResult(False, "Your answer was too short and unhelpful.")

    if question:
        score = relevance_score(question, trimmed)
        if score is not None and score < MIN_RELEVANCE:
            return ValidationResult(
                False,
                "Your answer does not appear to address the question that was asked.",
            )

    return ValidationResult(True)


# -- Critic ----------------------------------------------------------------------

_CONFIDENCE_RE = re.compile(r"\d+(?:\.\d+)?|\.\d+")
_REASON_PREFIX_RE = re.compile(r"^REASON\s*:\s*", re.IGNORECASE)


def parse_critic_response(text: str) -> CriticVerdict | None:
    """Parse a PASS/FAIL verdict. Returns None when the verdict line is unusable."""
    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
    if not lines:
        return None

    first = lines[0].upper()
    if "FAIL" in first:
        passed = False
    elif "PASS" in first:
        passed = True
    else:
        return None

    confidence = 0.5
    for line in lines[1:]:
        if line.upper().startswith("CONFIDENCE"):
            match = _CONFIDENCE_RE.search(line)
            if match:
                confidence = min(1.0, max(0.0, float(match.group(0))))
            break

    reason = "No reason provided."
    for line in lines[1:]:
        if line.upper().startswith("REASON"):
            reason = _REASON_PREFIX_RE.sub("", line).strip() or reason
            break

    return CriticVerdict(passed=passed, reason=reason, confidence=confidence)


def critic_evaluate(
    provider, question: str, answer: str, *, model: str | None = None
) -> CriticVerdict:
    """Grade an answer with one short, low-temperature auxiliary call.

    An unusable critic never blocks the answer: failures and unparseable
    replies count as a pass with zero confidence.
    """
    if len((answer or "").strip()) < MIN_CRITIC_ANSWER:
        return CriticVerdict(False, "Answer is too short to be useful.", 1.0)

    request = CompletionRequest(
        messages=[
            {
                "role": "user",
                "content": "\n".join(
                    [
                        "## Original Question",
                        "",
                        question,
                        "",
                        "## Proposed Answer",
                        "",
                        answer[:MAX_CRITIC_ANSWER_CHARS],
                    ]
                ),
            }
        ],
        model=model,
        temperature=0.1,
        max_tokens=150,
        system_prompt=CRITIC_PROMPT,
    )
    try:
        text, _ = collect_stream(provider.stream_completion(request))
    except Exception:
        return CriticVerdict(True, "Critic evaluation failed, defaulting to pass.", 0.0)

    verdict = parse_critic_response(text)
    if verdict is None:
        return CriticVerdict(True, "Unreadable critic response, defaulting to pass.", 0.0)
    return verdict


# -- Corrections -------------------------------------------------------------------


def build_correction_message(reason: str) -> str:
    return " ".join(
        [
            f"[SYSTEM: Your previous response was not acceptable. {reason}",
            "Search for more relevant code if needed and provide a proper, detailed "
            "Markdown answer with:",
            "- Specific file paths and line numbers",
            "- Relevant code snippets",
            "- A clear explanation",
            "Do NOT output JSON. Write a clean Markdown response.]",
        ]
    )


def build_critic_correction(verdict: CriticVerdict, question: str) -> str:
    return "\n".join(
        [
            "[CRITIC FEEDBACK: Your answer was rejected.]",
            "",
            f"Reason: {verdict.reason}",
            "",
            f'The user\'s original question was: "{question}"',
            "",
            "Provide a NEW answer that:",
            "1. Directly addresses the question above",
            "2. References specific file paths, line numbers, and code snippets",
            "3. Is formatted in clean Markdown",
            "4. Does NOT repeat your previous answer",
            "",
            "If you need more information, use tools to search and read code first.",
        ]
    )


def build_synthesis_reminder(question: str) -> str:
    return "\n".join(
        [
            "[SYSTEM: You have gathered information with tools but gave no answer.]",
            "",
            f'The user\'s original question was: "{question}"',
            "",
            "Using the tool results above, write the final answer now. Reference the "
            "specific files and line numbers you found and format it in Markdown. "
            "Only call more tools if something essential is still missing.",
        ]
    )
