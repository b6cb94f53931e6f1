"""Tests for the Claude model session helpers that run without the SDK backend."""
import asyncio

from diagram_agent.claude_client import (
    ClaudeModelSession,
    ToolCallRegistry,
    render_prompt,
    strip_tool_prefix,
)
from diagram_agent.events import ChatTurn, ModelRequest, ReasoningDelta, TextDelta
from diagram_agent.models import ToolName


def _request(history=()):
    return ModelRequest(
        system_prompt="system",
        history=list(history),
        user_message="User request: add a node\nCurrent scene non-deleted elements: 0",
        tools={ToolName.GENERATE: "generate"},
    )


def test_prompt_without_history_is_the_user_message():
    assert render_prompt(_request()) == _request().user_message


def test_prompt_replays_history_as_transcript():
    prompt = render_prompt(_request([
        ChatTurn(role="user", content="Draw a flow"),
        ChatTurn(role="assistant", content="Created a new diagram and saved it."),
    ]))
    assert "User: Draw a flow" in prompt
    assert "Assistant: Created a new diagram and saved it." in prompt
    assert prompt.endswith("Current scene non-deleted elements: 0")


def test_strip_tool_prefix():
    assert strip_tool_prefix("mcp__diagram__tweakDiagram") == "tweakDiagram"
    assert strip_tool_prefix("Bash") == "Bash"


async def test_registry_hands_out_ids_in_order():
    registry = ToolCallRegistry()
    await registry.record("generateDiagram", "toolu_1")
    await registry.record("generateDiagram", "toolu_1")
    await registry.record("generateDiagram", "toolu_2")

    assert await registry.claim("generateDiagram", timeout=0.1) == "toolu_1"
    assert await registry.claim("generateDiagram", timeout=0.1) == "toolu_2"
    assert await registry.claim("generateDiagram", timeout=0.01) is None


async def test_registry_claim_waits_for_late_id():
    registry = ToolCallRegistry()
    claim = asyncio.create_task(registry.claim("tweakDiagram", timeout=1))
    await asyncio.sleep(0.01)
    await registry.record("tweakDiagram", "toolu_late")
    assert await claim == "toolu_late"


async def test_partial_events_translate_to_deltas():
    session = ClaudeModelSession()
    registry = ToolCallRegistry()

    text = await session._translate_partial(
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}}, registry
    )
    thinking = await session._translate_partial(
        {"type": "content_block_delta", "delta": {"type": "thinking_delta", "thinking": "hmm"}}, registry
    )
    start = await session._translate_partial(
        {
            "type": "content_block_start",
            "content_block": {"type": "tool_use", "id": "toolu_7", "name": "mcp__diagram__generateDiagram"},
        },
        registry,
    )

    assert text == TextDelta("Hi")
    assert thinking == ReasoningDelta("hmm")
    assert start is None
    assert await registry.claim("generateDiagram", timeout=0.1) == "toolu_7"
