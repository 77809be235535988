"""Tests for search planning, structured plan parsing and prompt enrichment."""

import json

from codeask.planner import (
    BEHAVIOR_INSTRUCTIONS,
    ExecutionPlan,
    PlanStep,
    enrich_user_prompt,
    format_plan_block,
    generate_execution_plan,
    generate_search_plan,
    parse_execution_plan,
)
from codeask.provider import StreamChunk


class StreamProvider:
    """Answers every stream_completion with a fixed text, or raises."""

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


PLAN = {
    "intent": "Find where LLM providers are created",
    "steps": [
        {
            "id": 1,
            "action": "Search for the provider factory",
            "tool": "search_text",
            "args": {"query": "createProvider"},
            "successCriteria": "File defining createProvider is found",
        },
        {
            "id": 2,
            "action": "Read the factory",
            "tool": "read_file",
            "args": {"path": "src/providers/factory.ts"},
            "successCriteria": "Provider selection logic is understood",
        },
    ],
    "minStepsBeforeAnswer": 2,
    "expectedFiles": ["src/providers/factory.ts"],
}


# ---------------------------------------------------------------------------
# parse_execution_plan
# ---------------------------------------------------------------------------


class TestParseExecutionPlan:
    def test_bare_json(self):
        plan = parse_execution_plan(json.dumps(PLAN))
        assert isinstance(plan, ExecutionPlan)
        assert plan.intent == PLAN["intent"]
        assert [s.tool for s in plan.steps] == ["search_text", "read_file"]
        assert plan.steps[0].arguments == {"query": "createProvider"}
        assert plan.steps[1].success_criteria == "Provider selection logic is understood"
        assert plan.min_steps_before_answer == 2
        assert plan.expected_files == ["src/providers/factory.ts"]

    def test_wrappings_are_equivalent(self):
        raw = json.dumps(PLAN, indent=2)
        bare = parse_execution_plan(raw)
        tagged = parse_execution_plan(f"```json\n{raw}\n```")
        fenced = parse_execution_plan(f"```\n{raw}\n```")
        prose = parse_execution_plan(f"Here is the plan:\n{raw}\nGood luck!")
        assert bare is not None
        assert tagged == bare
        assert fenced == bare
        assert prose == bare

    def test_zero_steps(self):
        assert parse_execution_plan(json.dumps({**PLAN, "steps": []})) is None

    def test_step_missing_success_criteria(self):
        steps = [dict(PLAN["steps"][0]), dict(PLAN["steps"][1])]
        del steps[1]["successCriteria"]
        assert parse_execution_plan(json.dumps({**PLAN, "steps": steps})) is None

    def test_unknown_tool(self):
        steps = [dict(PLAN["steps"][0], tool="delete_everything")]
        assert parse_execution_plan(json.dumps({**PLAN, "steps": steps})) is None

    def test_missing_intent(self):
        data = {k: v for k, v in PLAN.items() if k != "intent"}
        assert parse_execution_plan(json.dumps(data)) is None

    def test_not_json(self):
        assert parse_execution_plan("I would search for createProvider first.") is None
        assert parse_execution_plan("{not: valid json}") is None
        assert parse_execution_plan("") is None
        assert parse_execution_plan(None) is None

    def test_string_ids_accepted(self):
        steps = [dict(PLAN["steps"][0], id="1")]
        plan = parse_execution_plan(json.dumps({**PLAN, "steps": steps}))
        assert plan.steps[0].id == 1

    def test_min_steps_clamped(self):
        plan = parse_execution_plan(json.dumps({**PLAN, "minStepsBeforeAnswer": 9}))
        assert plan.min_steps_before_answer == 2

    def test_extra_steps_dropped(self):
        steps = [dict(PLAN["steps"][0], id=i) for i in range(1, 10)]
        plan = parse_execution_plan(json.dumps({**PLAN, "steps": steps}))
        assert len(plan.steps) == 6


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


class TestGenerateSearchPlan:
    def test_returns_plan(self):
        provider = StreamProvider("Search createProvider, then read src/providers/factory.ts")
        plan = generate_search_plan(provider, "How are providers created?", model="m")
        assert plan.startswith("Search createProvider")
        request = provider.requests[0]
        assert request.temperature == 0.3
        assert request.max_tokens == 400
        assert request.model == "m"
        assert "How are providers created?" in request.messages[0]["content"]

    def test_project_context_included(self):
        provider = StreamProvider("Search createProvider in src/providers")
        generate_search_plan(provider, "q?", "Project: jam\nLanguage: TypeScript")
        assert "Language: TypeScript" in provider.requests[0].messages[0]["content"]

    def test_too_short_is_none(self):
        assert generate_search_plan(StreamProvider("search"), "q?") is None

    def test_failure_is_none(self):
        provider = StreamProvider(error=RuntimeError("connection refused"))
        assert generate_search_plan(provider, "q?") is None


class TestGenerateExecutionPlan:
    def test_parses_reply(self):
        provider = StreamProvider(f"```json\n{json.dumps(PLAN)}\n```")
        plan = generate_execution_plan(provider, "How are providers created?")
        assert plan.intent == PLAN["intent"]
        assert provider.requests[0].temperature == 0.2

    def test_malformed_reply_is_none(self):
        provider = StreamProvider('{"intent": "x", "steps": []}')
        assert generate_execution_plan(provider, "q?") is None

    def test_failure_is_none(self):
        provider = StreamProvider(error=TimeoutError("slow"))
        assert generate_execution_plan(provider, "q?") is None


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


class TestEnrichUserPrompt:
    def test_without_plan(self):
        out = enrich_user_prompt("Where is auth handled?")
        assert out.startswith("Where is auth handled?")
        assert BEHAVIOR_INSTRUCTIONS in out
        assert "Search plan" not in out

    def test_with_text_plan(self):
        out = enrich_user_prompt("Q?", "1. search createProvider")
        assert "**Search plan:**" in out
        assert "1. search createProvider" in out
        assert out.index("Q?") < out.index("search createProvider") < out.index(
            BEHAVIOR_INSTRUCTIONS
        )

    def test_with_execution_plan(self):
        plan = parse_execution_plan(json.dumps(PLAN))
        out = enrich_user_prompt("Q?", plan)
        assert "**Execution plan:**" in out
        assert "Goal: Find where LLM providers are created" in out
        assert '"query": "createProvider"' in out
        assert "Complete at least 2 of these steps" in out
        assert "src/providers/factory.ts" in out


class TestFormatPlanBlock:
    def test_text_plan(self):
        block = format_plan_block("first\nsecond")
        assert block.splitlines() == ["  │ first", "  │ second"]

    def test_execution_plan(self):
        plan = ExecutionPlan(
            intent="Find config loading",
            steps=[
                PlanStep(1, "Search loader", "search_text", {"query": "load_config"}, "found"),
            ],
            min_steps_before_answer=1,
        )
        block = format_plan_block(plan)
        assert "Intent: Find config loading" in block
        assert "Step 1: Search loader" in block
        assert "Min steps before answering: 1" in block
        assert "Expected files" not in block
