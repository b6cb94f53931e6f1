"""
Pydantic models for sessions, runs, thread messages and API payloads.
"""
from enum import Enum
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    SENDING = "sending"
    RUNNING = "running"
    APPLYING = "applying"
    PERSISTED = "persisted"
    STOPPED = "stopped"
    ERROR = "error"


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.PERSISTED, RunStatus.STOPPED, RunStatus.ERROR}
)


def is_terminal(status: RunStatus) -> bool:
    return status in TERMINAL_RUN_STATUSES


class ToolStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class MessageType(str, Enum):
    CHAT = "chat"
    TOOL = "tool"


class ToolName(str, Enum):
    GENERATE = "generateDiagram"
    RESTRUCTURE = "restructureDiagram"
    TWEAK = "tweakDiagram"


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------

class Scene(BaseModel):
    elements: List[dict[str, Any]] = Field(default_factory=list)
    app_state: dict[str, Any] = Field(default_factory=dict)

    def live_elements(self) -> List[dict[str, Any]]:
        return [e for e in self.elements if e.get("isDeleted") is not True]

    def is_blank(self) -> bool:
        return not self.live_elements()


class Session(BaseModel):
    session_id: str
    owner_id: Optional[str] = None
    latest_scene: Optional[Scene] = None
    latest_scene_version: int = 0
    thread_id: Optional[str] = None
    created_at: int
    updated_at: int


class Run(BaseModel):
    run_id: str
    session_id: str
    thread_id: str
    owner_id: Optional[str] = None
    prompt_message_id: str
    prompt: str
    trace_id: str
    user_message_id: str
    assistant_message_id: str
    status: RunStatus
    stop_requested: bool = False
    error: Optional[str] = None
    applied_scene_version: Optional[int] = None
    created_at: int
    updated_at: int
    finished_at: Optional[int] = None


class Message(BaseModel):
    message_id: str
    session_id: str
    thread_id: str
    run_id: Optional[str] = None
    prompt_message_id: Optional[str] = None
    role: MessageRole
    message_type: MessageType
    status: Optional[str] = None
    content: Optional[str] = None
    reasoning_summary: Optional[str] = None
    tool_name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_input: Optional[Any] = None
    tool_output: Optional[Any] = None
    trace_id: Optional[str] = None
    error: Optional[str] = None
    created_at: int
    updated_at: int


# ---------------------------------------------------------------------------
# Partial updates: only fields explicitly set are written
# ---------------------------------------------------------------------------

class RunPatch(BaseModel):
    status: Optional[RunStatus] = None
    stop_requested: Optional[bool] = None
    error: Optional[str] = None
    applied_scene_version: Optional[int] = None
    finished_at: Optional[int] = None


class AssistantPatch(BaseModel):
    status: Optional[RunStatus] = None
    content: Optional[str] = None
    reasoning_summary: Optional[str] = None
    error: Optional[str] = None


class ToolMessageUpdate(BaseModel):
    tool_call_id: str
    tool_name: str
    status: ToolStatus
    tool_input: Optional[Any] = None
    tool_output: Optional[Any] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Scene commit outcomes
# ---------------------------------------------------------------------------

class SceneCommitSuccess(BaseModel):
    status: Literal["success"] = "success"
    latest_scene_version: int
    saved_at: int


class SceneCommitConflict(BaseModel):
    status: Literal["conflict"] = "conflict"
    latest_scene_version: int


class SceneCommitFailed(BaseModel):
    status: Literal["failed"] = "failed"
    reason: Literal["session-not-found", "forbidden", "scene-too-large", "run-stopped"]
    max_bytes: Optional[int] = None
    actual_bytes: Optional[int] = None


SceneCommitResult = Union[SceneCommitSuccess, SceneCommitConflict, SceneCommitFailed]


# ---------------------------------------------------------------------------
# Intake / cancellation / query results
# ---------------------------------------------------------------------------

class EnqueueResult(BaseModel):
    status: Literal["enqueued", "duplicate"]
    run_id: str
    thread_id: str
    prompt_message_id: str
    trace_id: str
    assistant_message_id: str
    user_message_id: str


class StopResult(BaseModel):
    status: Literal["not-found", "requested"]
    run_status: Optional[RunStatus] = None
    prompt_message_id: Optional[str] = None


class RunSummary(BaseModel):
    prompt_message_id: str
    status: RunStatus
    stop_requested: bool
    error: Optional[str] = None
    applied_scene_version: Optional[int] = None
    updated_at: int
    finished_at: Optional[int] = None


class RunDetail(RunSummary):
    assistant_message_id: str
    user_message_id: str
    trace_id: str


class ThreadView(BaseModel):
    thread_id: Optional[str] = None
    messages: List[Message]
    latest_run: Optional[RunSummary] = None


class ProcessRunResult(BaseModel):
    status: Literal["missing", "terminal", "stopped", "error", "persisted"]
    latest_scene_version: Optional[int] = None


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------

class SessionCreateResponse(BaseModel):
    session_id: str


class PromptRequest(BaseModel):
    prompt: str
    prompt_message_id: str
    trace_id: Optional[str] = None


class SceneUpdateRequest(BaseModel):
    expected_version: int
    elements: List[dict[str, Any]]
    app_state: dict[str, Any] = Field(default_factory=dict)
