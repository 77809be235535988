"""Search planning: a free-text plan or a structured, validated JSON plan.

Planning is optional. Every failure path yields None and the loop runs
with a generic strategy instead.
"""

import json
import re
from dataclasses import dataclass, field

from .provider import CompletionRequest, collect_stream

MIN_PLAN_CHARS = 20
MAX_PLAN_STEPS = 6
PLAN_TOOLS = frozenset({"search_text", "read_file", "list_dir", "git_status", "git_diff"})

SEARCH_PLANNER_PROMPT = """You are a search planner for a code assistant that answers questions about a local codebase using tools (search_text, read_file, list_dir).

Given the user's question and what is known about the project, write a short search plan:
1. Restate what the user wants to know in one sentence.
2. List 3-5 concrete code identifiers (function names, class names, file names, imports) likely to appear in the relevant source files.
3. List the searches and file reads to perform, in order.

Rules:
- Never plan searches for vague English words, only for identifiers that would appear in code.
- Be concise: plain text, under 150 words, no preamble."""

EXECUTION_PLANNER_PROMPT = """You are a planner for a code assistant that answers questions about a local codebase using tools.

Return ONLY a JSON object with this shape:
{
  "intent": "one sentence describing what the user wants",
  "steps": [
    {"id": 1, "action": "what to do", "tool": "search_text", "args": {"query": "identifier"}, "successCriteria": "what finding this step should produce"}
  ],
  "minStepsBeforeAnswer": 2,
  "expectedFiles": ["path/likely/relevant.py"]
}

Rules:
- 2 to 6 steps.
- "tool" must be one of: search_text, read_file, list_dir, git_status, git_diff.
- search_text args: {"query": "...", "glob": "optional"}; read_file args: {"path": "..."}; list_dir args: {"path": "..."}.
- Search for code identifiers, never vague English words.
- No prose outside the JSON."""

BEHAVIOR_INSTRUCTIONS = """**Before you search, THINK about the user's question:**
1. What concepts does the question involve?
2. What are the likely function names, class names, file names, or variable names in the code for those concepts?
3. Plan 2-3 different search queries using those specific identifiers.

**Search strategy:**
- NEVER search for vague or generic words. Search for specific code identifiers (function names, class names, imports).
- If a search returns no results, try a DIFFERENT term, not the same one again.
- Use the `glob` argument to restrict searches to the project's source files.
- After finding relevant files, use read_file to understand the full context.

**When answering:**
- Give a direct, specific answer with file paths and line numbers.
- Show relevant code snippets.
- Format your answer in clean Markdown.
- Do NOT output JSON. Do NOT ask the user clarifying questions; find the answer yourself."""


@dataclass
class PlanStep:
    id: int
    action: str
    tool: str
    arguments: dict
    success_criteria: str


@dataclass
class ExecutionPlan:
    intent: str
    steps: list[PlanStep]
    min_steps_before_answer: int
    expected_files: list[str] = field(default_factory=list)


def _planner_messages(question: str, project_context: str) -> list[dict]:
    parts = []
    if project_context:
        parts += ["## Project", "", project_context, ""]
    parts += ["## Question", "", question]
    return [{"role": "user", "content": "\n".join(parts)}]


def generate_search_plan(
    provider, question: str, project_context: str = "", *, model: str | None = None
) -> str | None:
    request = CompletionRequest(
        messages=_planner_messages(question, project_context),
        model=model,
        temperature=0.3,
        max_tokens=400,
        system_prompt=SEARCH_PLANNER_PROMPT,
    )
    try:
        text, _ = collect_stream(provider.stream_completion(request))
    except Exception:
        return None
    text = text.strip()
    if len(text) < MIN_PLAN_CHARS:
        return None
    return text


def generate_execution_plan(
    provider, question: str, project_context: str = "", *, model: str | None = None
) -> ExecutionPlan | None:
    request = CompletionRequest(
        messages=_planner_messages(question, project_context),
        model=model,
        temperature=0.2,
        max_tokens=800,
        system_prompt=EXECUTION_PLANNER_PROMPT,
    )
    try:
        text, _ = collect_stream(provider.stream_completion(request))
    except Exception:
        return None
    return parse_execution_plan(text)


# -- Parsing -----------------------------------------------------------------------

_FENCE_RE = re.compile(r"```[a-zA-Z]*\s*\n?(.*?)```", re.DOTALL)


def _nonempty_str(value) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _parse_step(raw, index: int) -> PlanStep | None:
    if not isinstance(raw, dict):
        return None
    step_id = raw.get("id")
    if isinstance(step_id, str) and step_id.strip().isdigit():
        step_id = int(step_id)
    if not isinstance(step_id, int) or isinstance(step_id, bool):
        return None
    args = raw.get("args", raw.get("arguments"))
    if not isinstance(args, dict):
        return None
    action = raw.get("action")
    tool = raw.get("tool")
    criteria = raw.get("successCriteria")
    if not (_nonempty_str(action) and _nonempty_str(criteria)):
        return None
    if tool not in PLAN_TOOLS:
        return None
    return PlanStep(
        id=step_id,
        action=action.strip(),
        tool=tool,
        arguments=args,
        success_criteria=criteria.strip(),
    )


def plan_from_dict(data) -> ExecutionPlan | None:
    if not isinstance(data, dict):
        return None
    intent = data.get("intent")
    raw_steps = data.get("steps")
    if not _nonempty_str(intent) or not isinstance(raw_steps, list) or not raw_steps:
        return None

    steps = []
    for i, raw in enumerate(raw_steps[:MAX_PLAN_STEPS]):
        step = _parse_step(raw, i)
        if step is None:
            return None
        steps.append(step)

    min_steps = data.get("minStepsBeforeAnswer", min(2, len(steps)))
    if not isinstance(min_steps, int) or isinstance(min_steps, bool) or min_steps < 0:
        return None

    expected = data.get("expectedFiles", [])
    if not isinstance(expected, list) or not all(isinstance(f, str) for f in expected):
        return None

    return ExecutionPlan(
        intent=intent.strip(),
        steps=steps,
        min_steps_before_answer=min(min_steps, len(steps)),
        expected_files=expected,
    )


def parse_execution_plan(text: str | None) -> ExecutionPlan | None:
    """Parse model output into an ExecutionPlan, or None if it is not one.

    Accepts bare JSON, JSON inside a ``` fence (with or without a language
    tag) and JSON embedded in surrounding prose.
    """
    if not text or not text.strip():
        return None
    body = text
    fence = _FENCE_RE.search(body)
    if fence:
        body = fence.group(1)
    start = body.find("{")
    end = body.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        data = json.loads(body[start : end + 1])
    except json.JSONDecodeError:
        return None
    return plan_from_dict(data)


# -- Rendering ---------------------------------------------------------------------


def _format_args(args: dict) -> str:
    return ", ".join(f"{k}={json.dumps(v)}" for k, v in args.items())


def _plan_lines(plan: ExecutionPlan) -> list[str]:
    lines = [f"Intent: {plan.intent}"]
    for i, step in enumerate(plan.steps, start=1):
        lines.append(f"Step {i}: {step.action} [{step.tool}({_format_args(step.arguments)})]")
        lines.append(f"  Success: {step.success_criteria}")
    lines.append(f"Min steps before answering: {plan.min_steps_before_answer}")
    if plan.expected_files:
        lines.append(f"Expected files: {', '.join(plan.expected_files)}")
    return lines


def format_plan_block(plan: "str | ExecutionPlan") -> str:
    """Render a plan for the status display, one gutter-prefixed line each."""
    if isinstance(plan, ExecutionPlan):
        lines = _plan_lines(plan)
    else:
        lines = plan.splitlines() or [""]
    return "\n".join(f"  │ {line}" for line in lines)


def enrich_user_prompt(prompt: str, plan: "str | ExecutionPlan | None" = None) -> str:
    """Build the first user turn: question, plan (if any), behavior guidance."""
    parts = [prompt, "", "---"]
    if isinstance(plan, ExecutionPlan):
        parts += ["**Execution plan:**", ""]
        parts += [f"Goal: {plan.intent}"]
        for i, step in enumerate(plan.steps, start=1):
            parts.append(
                f"{i}. {step.action} (tool: {step.tool}, args: {json.dumps(step.arguments)})"
            )
            parts.append(f"   Done when: {step.success_criteria}")
        parts.append(
            f"Complete at least {plan.min_steps_before_answer} of these steps before answering."
        )
        if plan.expected_files:
            parts.append(f"Likely relevant files: {', '.join(plan.expected_files)}")
        parts.append("")
    elif plan:
        parts += ["**Search plan:**", "", plan.strip(), ""]
    parts.append(BEHAVIOR_INSTRUCTIONS)
    return "\n".join(parts)
