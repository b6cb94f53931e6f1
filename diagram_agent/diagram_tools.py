"""
Diagram mutation tools: structured-output Claude subagents.

Each tool asks a tool-less subagent for JSON matching a pydantic schema,
validates it and turns it into canvas elements. The subagent never sees
the run ledger; it only receives the request text and a simplified view of
the current scene.
"""
import asyncio
import json
import logging
from typing import Optional, Type, TypeVar

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    TextBlock,
)
from pydantic import BaseModel, ValidationError

from diagram_agent.claude_client import DISALLOWED_TOOLS
from diagram_agent.config import settings
from diagram_agent.diagram_models import (
    DiagramIntermediate,
    ElementTweaks,
    MutationTool,
    ToolFailed,
    ToolOutcome,
    ToolSuccess,
)
from diagram_agent.diagram_renderer import (
    apply_tweaks,
    render_intermediate,
    simplify_elements,
    validate_edge_references,
)
from diagram_agent.models import Scene, ToolName

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

STRUCTURED_SYSTEM_PROMPT = (
    "You are a diagram planning engine running headless. "
    "There is no human operator; never ask questions. "
    "Return only JSON matching the required output schema. "
    "Do NOT return conversational text."
)


class StructuredOutputError(Exception):
    """The subagent did not return JSON matching the schema."""


async def run_structured(
    prompt: str,
    response_model: Type[T],
    timeout: Optional[float] = None,
    system_prompt: str = STRUCTURED_SYSTEM_PROMPT,
) -> T:
    """Run a one-shot subagent and validate its structured output."""
    response_schema = response_model.model_json_schema()
    options = ClaudeAgentOptions(
        allowed_tools=[],
        disallowed_tools=DISALLOWED_TOOLS,
        permission_mode="bypassPermissions",
        max_turns=2,
        model=settings.model_name or None,
        output_format={
            "type": "json_schema",
            "schema": response_schema,
        },
        system_prompt=system_prompt,
    )

    structured_result = None
    text_result = ""

    async def _run_subagent():
        nonlocal structured_result, text_result

        async with ClaudeSDKClient(options=options) as client:
            await client.query(prompt)

            async for message in client.receive_response():
                if isinstance(message, AssistantMessage):
                    for block in message.content:
                        if isinstance(block, TextBlock):
                            text_result += block.text
                elif isinstance(message, ResultMessage):
                    if message.is_error:
                        raise StructuredOutputError(message.result or "Subagent error")
                    if message.structured_output:
                        structured_result = message.structured_output
                    elif message.result:
                        text_result = message.result

    await asyncio.wait_for(
        _run_subagent(), timeout=timeout or settings.tool_timeout_seconds
    )

    try:
        if structured_result:
            return response_model.model_validate(structured_result)
        if text_result:
            return response_model.model_validate(json.loads(text_result))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning("Subagent output did not match %s: %s", response_model.__name__, e)
        raise StructuredOutputError(f"Model output did not match the {response_model.__name__} schema") from e

    raise StructuredOutputError("Subagent did not return structured data")


def _scene_summary(scene: Scene) -> str:
    return simplify_elements(scene.elements).model_dump_json(indent=2, exclude_none=True)


class ClaudeDiagramTools:
    """generate / restructure / tweak backed by structured subagents."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    def as_toolset(self) -> dict[ToolName, MutationTool]:
        return {
            ToolName.GENERATE: self.generate,
            ToolName.RESTRUCTURE: self.restructure,
            ToolName.TWEAK: self.tweak,
        }

    async def _plan(self, prompt: str) -> DiagramIntermediate | ToolFailed:
        try:
            intermediate = await run_structured(prompt, DiagramIntermediate, self.timeout)
        except StructuredOutputError as e:
            return ToolFailed(reason=str(e))
        except asyncio.TimeoutError:
            return ToolFailed(reason="Diagram model timed out")

        issues = validate_edge_references(intermediate)
        if issues:
            return ToolFailed(reason="Diagram plan failed validation", issues=issues)
        return intermediate

    async def generate(self, scene: Scene, request: str) -> ToolOutcome:
        planned = await self._plan(
            "Design a diagram for the following request.\n\n"
            f"Request: {request}\n\n"
            "Use short node ids (letters, digits, dashes) and reference them from edges."
        )
        if isinstance(planned, ToolFailed):
            return planned

        elements = render_intermediate(planned)
        return ToolSuccess(
            elements=elements,
            metadata={"nodeCount": len(planned.nodes), "edgeCount": len(planned.edges)},
        )

    async def restructure(self, scene: Scene, request: str) -> ToolOutcome:
        planned = await self._plan(
            "Restructure the current diagram according to the request.\n\n"
            f"Request: {request}\n\n"
            "Current diagram (keep ids of nodes that survive):\n"
            f"```json\n{_scene_summary(scene)}\n```"
        )
        if isinstance(planned, ToolFailed):
            return planned

        elements = render_intermediate(planned)
        return ToolSuccess(
            elements=elements,
            app_state=scene.app_state,
            metadata={"nodeCount": len(planned.nodes), "edgeCount": len(planned.edges)},
        )

    async def tweak(self, scene: Scene, request: str) -> ToolOutcome:
        live = [
            {key: element.get(key) for key in _TWEAK_VIEW_KEYS if key in element}
            for element in scene.live_elements()
        ]
        try:
            tweaks = await run_structured(
                "Apply small tweaks to the current diagram according to the request.\n\n"
                f"Request: {request}\n\n"
                "Only reference ids from this element list:\n"
                f"```json\n{json.dumps(live, indent=2)}\n```",
                ElementTweaks,
                self.timeout,
            )
        except StructuredOutputError as e:
            return ToolFailed(reason=str(e))
        except asyncio.TimeoutError:
            return ToolFailed(reason="Diagram model timed out")

        if not tweaks.updates and not tweaks.delete_ids:
            return ToolFailed(reason="No tweaks were proposed")

        try:
            elements = apply_tweaks(scene.elements, tweaks)
        except ValueError as e:
            return ToolFailed(reason=str(e))

        return ToolSuccess(
            elements=elements,
            app_state=scene.app_state,
            metadata={"updated": len(tweaks.updates), "deleted": len(tweaks.delete_ids)},
        )


_TWEAK_VIEW_KEYS: tuple[str, ...] = (
    "id",
    "type",
    "text",
    "containerId",
    "strokeColor",
    "backgroundColor",
    "strokeStyle",
    "strokeWidth",
    "fontSize",
    "opacity",
)
