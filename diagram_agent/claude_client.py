"""
Claude SDK model session for diagram runs.

The three mutation tools are exposed to the model as an in-process SDK MCP
server named ``diagram``. A fresh SDK client is opened per run; the thread
history is replayed as a transcript in the first query.
"""
import asyncio
import json
import logging
import os
import uuid
from collections import defaultdict, deque
from typing import Any, AsyncIterator, Optional

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    StreamEvent as SdkStreamEvent,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    create_sdk_mcp_server,
    tool,
)

from diagram_agent.cancellation import CancellationToken
from diagram_agent.config import settings
from diagram_agent.diagram_models import ToolSuccess
from diagram_agent.events import (
    ChatTurn,
    ModelRequest,
    ReasoningDelta,
    StreamEvent,
    StreamFinished,
    TextDelta,
    ToolCall,
    ToolExecutor,
    ToolResult,
)
from diagram_agent.exceptions import StreamAborted, StreamError
from diagram_agent.models import ToolName

logger = logging.getLogger(__name__)

MCP_SERVER_NAME = "diagram"
TOOL_PREFIX = f"mcp__{MCP_SERVER_NAME}__"

# Seconds a tool handler waits for the model's ToolUseBlock id to show up.
TOOL_CALL_ID_WAIT_SECONDS = 2.0

DISALLOWED_TOOLS = [
    "Task",
    "Bash",
    "Glob",
    "Grep",
    "Read",
    "Edit",
    "Write",
    "WebFetch",
    "WebSearch",
    "NotebookEdit",
    "Skill",
    "TodoWrite",
    "EnterPlanMode",
    "ExitPlanMode",
    "TaskOutput",
    "TaskStop",
]


def strip_tool_prefix(name: str) -> str:
    return name[len(TOOL_PREFIX):] if name.startswith(TOOL_PREFIX) else name


class ToolCallRegistry:
    """Hands the model's tool-call ids to the MCP handlers that serve them.

    The SDK runs a tool handler without telling it which ``tool_use`` block
    it serves, so ids are recorded as the stream reports them and claimed
    first-in, first-out per tool name.
    """

    def __init__(self):
        self._unclaimed: dict[str, deque[str]] = defaultdict(deque)
        self._seen: set[str] = set()
        self._changed = asyncio.Condition()

    async def record(self, tool_name: str, tool_call_id: str) -> None:
        async with self._changed:
            if tool_call_id in self._seen:
                return
            self._seen.add(tool_call_id)
            self._unclaimed[tool_name].append(tool_call_id)
            self._changed.notify_all()

    async def claim(self, tool_name: str, timeout: float) -> Optional[str]:
        async with self._changed:
            try:
                await asyncio.wait_for(
                    self._changed.wait_for(lambda: bool(self._unclaimed[tool_name])),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                return None
            return self._unclaimed[tool_name].popleft()


def render_prompt(request: ModelRequest) -> str:
    """Flatten prior chat turns and the new request into one query."""
    if not request.history:
        return request.user_message

    transcript = "\n\n".join(_render_turn(turn) for turn in request.history)
    return (
        "Conversation so far:\n"
        f"<history>\n{transcript}\n</history>\n\n"
        f"{request.user_message}"
    )


def _render_turn(turn: ChatTurn) -> str:
    speaker = "User" if turn.role == "user" else "Assistant"
    return f"{speaker}: {turn.content}"


def _tool_response(outcome_payload: dict[str, Any], is_error: bool) -> dict[str, Any]:
    response: dict[str, Any] = {
        "content": [{
            "type": "text",
            "text": json.dumps(outcome_payload),
        }],
    }
    if is_error:
        response["is_error"] = True
    return response


class ClaudeModelSession:
    """ModelSession backed by ``claude_agent_sdk``."""

    def __init__(self, oauth_token: Optional[str] = None, model: Optional[str] = None):
        if oauth_token:
            os.environ["CLAUDE_CODE_OAUTH_TOKEN"] = oauth_token
        self.model = model

    def _build_server(self, request: ModelRequest, execute_tool: ToolExecutor,
                      registry: ToolCallRegistry):
        sdk_tools = []
        for tool_name, description in request.tools.items():
            sdk_tools.append(
                tool(
                    tool_name.value,
                    description,
                    {"type": "object", "properties": {}},
                )(self._handler(tool_name, execute_tool, registry))
            )
        return create_sdk_mcp_server(name=MCP_SERVER_NAME, tools=sdk_tools)

    def _handler(self, tool_name: ToolName, execute_tool: ToolExecutor,
                 registry: ToolCallRegistry):
        async def handle(args: dict[str, Any]) -> dict[str, Any]:
            tool_call_id = await registry.claim(tool_name.value, TOOL_CALL_ID_WAIT_SECONDS)
            if tool_call_id is None:
                tool_call_id = f"call_{uuid.uuid4().hex}"
                logger.warning(
                    "No tool_use id observed for %s; using %s", tool_name.value, tool_call_id
                )

            outcome = await execute_tool(tool_name, tool_call_id)
            if isinstance(outcome, ToolSuccess):
                return _tool_response(
                    {"status": "success", "elementCount": len(outcome.elements)}, False
                )
            return _tool_response({"status": "failed", "reason": outcome.reason}, True)

        return handle

    def _options(self, request: ModelRequest, server) -> ClaudeAgentOptions:
        system_prompt = request.system_prompt
        if request.tool_choice == "required":
            system_prompt += "\nYou must call one of the diagram tools before your final reply."

        return ClaudeAgentOptions(
            mcp_servers={
                MCP_SERVER_NAME: server,
            },
            allowed_tools=[f"{TOOL_PREFIX}{name.value}" for name in request.tools],
            disallowed_tools=DISALLOWED_TOOLS,
            permission_mode="bypassPermissions",
            max_turns=request.max_turns,
            model=self.model or settings.model_name or None,
            system_prompt=system_prompt,
            include_partial_messages=True,
        )

    async def stream(
        self,
        request: ModelRequest,
        execute_tool: ToolExecutor,
        token: CancellationToken,
    ) -> AsyncIterator[StreamEvent]:
        registry = ToolCallRegistry()
        server = self._build_server(request, execute_tool, registry)
        options = self._options(request, server)
        thinking: list[str] = []

        async with ClaudeSDKClient(options=options) as client:
            try:
                await client.query(render_prompt(request))

                async for msg in client.receive_response():
                    if token.cancelled:
                        raise StreamAborted(token.reason or "stop-requested")

                    if isinstance(msg, SdkStreamEvent):
                        event = await self._translate_partial(msg.event, registry)
                        if event is not None:
                            yield event

                    elif isinstance(msg, SystemMessage):
                        if msg.subtype == "init":
                            for srv in msg.data.get("mcp_servers", []):
                                if srv.get("status") != "connected":
                                    logger.error("MCP server failed to connect: %s", srv)

                    elif isinstance(msg, AssistantMessage):
                        for block in msg.content:
                            if isinstance(block, ToolUseBlock):
                                name = strip_tool_prefix(block.name)
                                await registry.record(name, block.id)
                                yield ToolCall(
                                    tool_call_id=block.id,
                                    tool_name=name,
                                    tool_input=block.input or {},
                                )
                            elif isinstance(block, ThinkingBlock):
                                thinking.append(block.thinking)
                            elif isinstance(block, TextBlock):
                                logger.debug("Assistant text block (%d chars)", len(block.text))

                    elif isinstance(msg, UserMessage):
                        if isinstance(msg.content, list):
                            for block in msg.content:
                                if isinstance(block, ToolResultBlock):
                                    yield ToolResult(
                                        tool_call_id=block.tool_use_id,
                                        is_error=block.is_error or False,
                                        content=block.content,
                                    )

                    elif isinstance(msg, ResultMessage):
                        logger.info(
                            "ResultMessage subtype=%s is_error=%s turns=%s trace=%s",
                            msg.subtype, msg.is_error, msg.num_turns, request.trace_id,
                        )
                        if msg.is_error:
                            raise StreamError(msg.result or "Agent stream failed")
                        yield StreamFinished(
                            text=msg.result or "",
                            reasoning="\n".join(thinking),
                        )

            except asyncio.CancelledError:
                logger.info("Interrupting model session (trace %s)", request.trace_id)
                try:
                    await asyncio.shield(client.interrupt())
                except Exception:
                    logger.debug("Interrupt failed", exc_info=True)
                raise

    async def _translate_partial(
        self, event: dict[str, Any], registry: ToolCallRegistry
    ) -> Optional[StreamEvent]:
        event_type = event.get("type")
        if event_type == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                await registry.record(strip_tool_prefix(block.get("name", "")), block["id"])
            return None

        if event_type == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta":
                return TextDelta(delta.get("text", ""))
            if delta.get("type") == "thinking_delta":
                return ReasoningDelta(delta.get("thinking", ""))
        return None
