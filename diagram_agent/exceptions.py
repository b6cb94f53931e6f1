"""
Exception hierarchy for the diagram run orchestrator.

Only EmptyPrompt, SessionNotFound and Forbidden are raised across the
intake/cancel boundary. The rest are caught by the agent driver and turned
into a terminal run status plus a short message on the assistant reply.
"""
from typing import Any, Optional


class DiagramAgentError(Exception):
    """Base exception for all orchestrator errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


class EmptyPrompt(DiagramAgentError):
    """Raised when a prompt is blank after trimming."""

    def __init__(self):
        super().__init__("Prompt cannot be empty")


class SessionNotFound(DiagramAgentError):
    """Raised when a diagram session does not exist."""

    def __init__(self, session_id: str, message: str = "Session not found"):
        super().__init__(message, {"session_id": session_id})


class Forbidden(DiagramAgentError):
    """Raised when the caller does not own the session."""

    def __init__(self, session_id: str, message: str = "Forbidden"):
        super().__init__(message, {"session_id": session_id})


class ToolFailure(DiagramAgentError):
    """A mutation tool returned a failure or raised."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(reason, {"tool_name": tool_name})
        self.tool_name = tool_name
        self.reason = reason


class NoCandidateProduced(DiagramAgentError):
    """Neither the model nor the fallback policy produced a scene."""


class StreamError(DiagramAgentError):
    """The model stream failed for a reason other than cancellation."""


class StreamAborted(DiagramAgentError):
    """The model stream was aborted because a stop was requested."""

    def __init__(self, reason: str = "stop-requested"):
        super().__init__(reason)


class CommitConflict(DiagramAgentError):
    """The document moved on since the run read it."""

    def __init__(self, current_version: int):
        super().__init__(
            "Another update landed first. Reload and retry to continue safely.",
            {"latest_scene_version": current_version},
        )
        self.current_version = current_version


class SceneTooLarge(DiagramAgentError):
    """The serialized scene exceeds the storage budget."""

    def __init__(self, max_bytes: int, actual_bytes: int):
        super().__init__(
            "The updated scene is too large to persist.",
            {"max_bytes": max_bytes, "actual_bytes": actual_bytes},
        )
        self.max_bytes = max_bytes
        self.actual_bytes = actual_bytes
