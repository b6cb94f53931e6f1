"""
Fallback tool selection for runs where the model produced no scene.

The keyword list is a best-effort classifier, not a contract; replace
``TWEAK_KEYWORDS`` to tune it.
"""
from diagram_agent.models import Scene, ToolName

MAX_FAILURE_CHARS = 400

TWEAK_KEYWORDS = (
    "rename",
    "label",
    "text",
    "color",
    "style",
    "font",
    "spacing",
    "align",
    "small tweak",
    "minor",
)


def truncate(value: str, max_length: int) -> str:
    if len(value) <= max_length:
        return value
    return value[: max_length - 1] + "…"


def looks_like_tweak_prompt(prompt: str) -> bool:
    normalized = prompt.lower()
    return any(keyword in normalized for keyword in TWEAK_KEYWORDS)


def choose_fallback_tool(base_scene: Scene, prompt: str) -> ToolName:
    """Pick the tool to synthesize when the model did not produce a scene."""
    if base_scene.is_blank():
        return ToolName.GENERATE
    if looks_like_tweak_prompt(prompt):
        return ToolName.TWEAK
    return ToolName.RESTRUCTURE


def join_failure_reasons(reasons: list[str]) -> str:
    joined = " | ".join(reason for reason in reasons if reason)
    return truncate(joined or "No diagram change was produced by the tool loop.", MAX_FAILURE_CHARS)
