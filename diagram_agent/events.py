"""
Typed model-stream events and the model session contract.

A model session turns one request into an async iterator of events. Tool
calls are executed through the ``ToolExecutor`` the driver hands in, so the
session implementation decides when tools run but never touches run state.
"""
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Protocol, Union

from diagram_agent.cancellation import CancellationToken
from diagram_agent.diagram_models import ToolOutcome
from diagram_agent.models import ToolName


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class ToolCall:
    tool_call_id: str
    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    is_error: bool
    content: Any = None


@dataclass(frozen=True)
class StreamFinished:
    text: str = ""
    reasoning: str = ""


StreamEvent = Union[TextDelta, ReasoningDelta, ToolCall, ToolResult, StreamFinished]


@dataclass(frozen=True)
class ChatTurn:
    role: Literal["user", "assistant"]
    content: str


@dataclass
class ModelRequest:
    system_prompt: str
    history: list[ChatTurn]
    user_message: str
    tools: dict[ToolName, str]
    tool_choice: Literal["auto", "required"] = "required"
    max_turns: int = 4
    trace_id: str = ""


class ToolExecutor(Protocol):
    async def __call__(self, tool_name: ToolName, tool_call_id: str) -> ToolOutcome:
        ...


class ModelSession(Protocol):
    """A streaming, tool-calling model conversation."""

    def stream(
        self,
        request: ModelRequest,
        execute_tool: ToolExecutor,
        token: CancellationToken,
    ) -> AsyncIterator[StreamEvent]:
        ...
