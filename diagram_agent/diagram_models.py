"""
Pydantic models for diagram mutation tools and the tool registry.
"""
from dataclasses import dataclass
from typing import Any, List, Literal, Optional, Protocol, Union

from pydantic import BaseModel, Field

from diagram_agent.models import Scene, ToolName


# ---------------------------------------------------------------------------
# Mutation tool contract
# ---------------------------------------------------------------------------

class ToolSuccess(BaseModel):
    status: Literal["success"] = "success"
    elements: List[dict[str, Any]]
    app_state: Optional[dict[str, Any]] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ToolFailed(BaseModel):
    status: Literal["failed"] = "failed"
    reason: str
    issues: List[str] = Field(default_factory=list)


ToolOutcome = Union[ToolSuccess, ToolFailed]


class MutationTool(Protocol):
    """Turns the current scene and a request into a replacement element set."""

    async def __call__(self, scene: Scene, request: str) -> ToolOutcome:
        ...


# ---------------------------------------------------------------------------
# Structured model output
# ---------------------------------------------------------------------------

class DiagramNode(BaseModel):
    id: str
    label: str
    shape: Literal["rectangle", "ellipse", "diamond"] = "rectangle"
    background_color: Optional[str] = None


class DiagramEdge(BaseModel):
    from_id: str
    to_id: str
    label: Optional[str] = None


class DiagramIntermediate(BaseModel):
    title: Optional[str] = None
    direction: Literal["TB", "LR"] = "TB"
    nodes: List[DiagramNode]
    edges: List[DiagramEdge] = Field(default_factory=list)


class ElementUpdate(BaseModel):
    id: str
    text: Optional[str] = None
    stroke_color: Optional[str] = None
    background_color: Optional[str] = None
    font_size: Optional[int] = None
    stroke_style: Optional[Literal["solid", "dashed", "dotted"]] = None
    stroke_width: Optional[int] = None
    opacity: Optional[int] = None


class ElementTweaks(BaseModel):
    updates: List[ElementUpdate] = Field(default_factory=list)
    delete_ids: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Tool registry
# ---------------------------------------------------------------------------

@dataclass
class ToolConfig:
    name: ToolName
    description: str
    requires_scene: bool
    summary: str


TOOL_REGISTRY: dict[ToolName, ToolConfig] = {
    ToolName.GENERATE: ToolConfig(
        name=ToolName.GENERATE,
        description=(
            "Generate a new diagram from the prompt when the current canvas "
            "is blank or a full rewrite is needed."
        ),
        requires_scene=False,
        summary="Created a new diagram and saved it.",
    ),
    ToolName.RESTRUCTURE: ToolConfig(
        name=ToolName.RESTRUCTURE,
        description=(
            "Restructure the existing scene for structural changes "
            "(add/remove/rewire nodes and flows)."
        ),
        requires_scene=True,
        summary="Restructured the diagram and saved it.",
    ),
    ToolName.TWEAK: ToolConfig(
        name=ToolName.TWEAK,
        description=(
            "Apply tactical tweaks to the current scene (labels/colors/minor "
            "edits) without full structural relayout."
        ),
        requires_scene=True,
        summary="Applied targeted tweaks and saved the diagram.",
    ),
}
