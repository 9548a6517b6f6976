import json

from docqa.agent.parsing import parse_plan
from docqa.agent.prompts import (
    CONTEXT_STATUS,
    PLANNER_SYSTEM_PROMPT,
    build_initial_context,
    build_reasoning_system_prompt,
    build_tool_guidelines,
)
from docqa.agent.registry import ToolRegistry
from docqa.agent.tools import register_builtin_tools
from docqa.retrieval.corpus import IndexSnapshot


def test_planner_prompt_lists_the_closed_tool_vocabulary() -> None:
    for tool in ("vector_search", "keyword_search", "fetch_group"):
        assert f'"tool":"{tool}"' in PLANNER_SYSTEM_PROMPT
    assert '"final"' in PLANNER_SYSTEM_PROMPT
    assert "Reply with JSON only" in PLANNER_SYSTEM_PROMPT


def test_planner_prompt_examples_are_parseable_operations() -> None:
    examples = [
        line.strip()[2:]
        for line in PLANNER_SYSTEM_PROMPT.splitlines()
        if line.strip().startswith('- {"tool"')
    ]
    operations = [json.loads(example) for example in examples]
    operations[-1]["args"]["granularity"] = "digest"

    plan = parse_plan(json.dumps({"operations": operations, "final": False}))

    assert [op.tool for op in plan.operations] == ["vector_search", "keyword_search", "fetch_group"]


def test_reasoning_prompt_describes_both_actions_and_gated_tools() -> None:
    plain = build_reasoning_system_prompt(has_semantic_groups=False, has_vector_index=False)
    full = build_reasoning_system_prompt(has_semantic_groups=True, has_vector_index=True)

    for prompt in (plain, full):
        assert '"action": "use_tool"' in prompt
        assert '"action": "answer"' in prompt
        assert "Never answer from general knowledge" in prompt
    assert "vector_search" not in plain
    assert "Semantic search: `vector_search`" in full


def test_initial_context_has_no_document_content() -> None:
    context = build_initial_context(group_count=0, has_vector_index=False)

    assert context.endswith(CONTEXT_STATUS)
    assert "Structured tools unavailable" in context


def test_tool_guidelines_only_list_available_tools() -> None:
    registry = ToolRegistry()
    register_builtin_tools(registry, IndexSnapshot)

    plain = build_tool_guidelines(registry.get_available_tool_definitions())
    full = build_tool_guidelines(
        registry.get_available_tool_definitions(
            has_semantic_groups=True, has_vector_index=True, has_chunks=True
        )
    )

    assert "**grep**" in plain and "**fetch**" not in plain and "### Group tools" not in plain
    assert "**vector_search**" in full and "**map**" in full
    assert "- `query` (string)" in plain
