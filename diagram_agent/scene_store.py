"""
Document store for diagram scenes.

``set_latest_scene`` is the only write path for a session's scene. It is a
single conditional UPDATE keyed on the version the writer last observed, so
concurrent writers never merge: exactly one wins, the rest get ``conflict``.
"""
import json
import logging
import math
from collections.abc import Mapping
from typing import Any, Optional

from pydantic import BaseModel

from diagram_agent.database import get_db, now_ms
from diagram_agent.models import (
    RunStatus,
    SceneCommitConflict,
    SceneCommitFailed,
    SceneCommitResult,
    SceneCommitSuccess,
)
from diagram_agent.session_manager import fetch_session

logger = logging.getLogger(__name__)

MAX_SCENE_BYTES = 900_000

# UI-session-local view state that is never part of the stored document.
TRANSIENT_APP_STATE_KEYS = frozenset({
    "collaborators",
    "followedBy",
    "selectedElementIds",
    "selectedGroupIds",
    "hoveredElementIds",
    "previousSelectedElementIds",
    "editingElement",
    "editingTextElement",
    "editingLinearElement",
    "editingGroupId",
    "resizingElement",
    "selectionElement",
    "multiElement",
    "newElement",
    "editingFrame",
    "draggingElement",
    "selectedLinearElement",
    "startBoundElement",
    "suggestedBindings",
    "elementsToHighlight",
    "frameToHighlight",
    "activeEmbeddable",
    "snapLines",
    "openDialog",
    "openMenu",
    "openPopup",
    "openSidebar",
    "contextMenu",
    "toast",
    "cursorButton",
    "selectedElementsAreBeingDragged",
    "isLoading",
    "isResizing",
    "isRotating",
    "isCropping",
    "croppingElementId",
    "fileHandle",
    "pendingImageElementId",
    "userToFollow",
    "searchMatches",
    "pasteDialog",
    "showHyperlinkPopup",
    "errorMessage",
    "scrolledOutside",
})

_DROP = object()


def to_plain_json(value: Any) -> Any:
    """Recursively convert containers to JSON-compatible dicts and lists.

    Mappings become dicts with string keys, sets and tuples become lists and
    pydantic models are dumped. Callables are dropped from their container and
    non-finite floats become None.
    """
    converted = _convert(value)
    return None if converted is _DROP else converted


def _convert(value: Any) -> Any:
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if value is None or isinstance(value, (str, int, bool)):
        return value
    if isinstance(value, BaseModel):
        return _convert(value.model_dump())
    if isinstance(value, Mapping):
        result = {}
        for key, item in value.items():
            converted = _convert(item)
            if converted is not _DROP:
                result[str(key)] = converted
        return result
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_convert(item) for item in value]
        return [item for item in items if item is not _DROP]
    if callable(value):
        return _DROP
    return str(value)


def sanitize_app_state(app_state: Mapping[str, Any]) -> dict[str, Any]:
    """Strip transient view-state keys and convert the rest to plain JSON."""
    sanitized: dict[str, Any] = {}
    for key, value in app_state.items():
        if key in TRANSIENT_APP_STATE_KEYS:
            continue
        converted = _convert(value)
        if converted is not _DROP:
            sanitized[str(key)] = converted
    return sanitized


def serialize_scene(elements: list, app_state: Mapping[str, Any]) -> str:
    return json.dumps(
        {"elements": to_plain_json(elements), "appState": sanitize_app_state(app_state)},
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def measure_scene_bytes(serialized: str) -> int:
    return len(serialized.encode("utf-8"))


async def set_latest_scene(
    session_id: str,
    expected_version: int,
    elements: list,
    app_state: Mapping[str, Any],
    owner_id: Optional[str] = None,
    run_id: Optional[str] = None,
) -> SceneCommitResult:
    """Write a scene if the session is still at ``expected_version``.

    ``owner_id`` is the identity the write is made on behalf of; a session
    owned by someone else is rejected as ``forbidden``.

    When ``run_id`` is given the run must still be ``applying`` with no stop
    request. It is marked ``persisted`` in the same transaction as the scene
    write, otherwise the write is rolled back and ``run-stopped`` returned.
    """
    async with get_db() as db:
        session = await fetch_session(db, session_id)
        if session is None:
            return SceneCommitFailed(reason="session-not-found")

        if session.owner_id and session.owner_id != owner_id:
            return SceneCommitFailed(reason="forbidden")

        serialized = serialize_scene(elements, app_state)
        actual_bytes = measure_scene_bytes(serialized)
        if actual_bytes > MAX_SCENE_BYTES:
            logger.warning(
                "Rejected scene for session %s: %d bytes exceeds %d",
                session_id[:8], actual_bytes, MAX_SCENE_BYTES,
            )
            return SceneCommitFailed(
                reason="scene-too-large",
                max_bytes=MAX_SCENE_BYTES,
                actual_bytes=actual_bytes,
            )

        saved_at = now_ms()
        new_version = expected_version + 1
        cursor = await db.execute(
            """
            UPDATE sessions
            SET latest_scene = ?, latest_scene_version = latest_scene_version + 1, updated_at = ?
            WHERE session_id = ? AND latest_scene_version = ?
            """,
            (serialized, saved_at, session_id, expected_version)
        )

        if cursor.rowcount == 1 and run_id is not None:
            claimed = await db.execute(
                """
                UPDATE runs
                SET status = ?, applied_scene_version = ?, finished_at = ?, updated_at = ?
                WHERE run_id = ? AND status = ? AND stop_requested = 0
                """,
                (
                    RunStatus.PERSISTED.value, new_version, saved_at, saved_at,
                    run_id, RunStatus.APPLYING.value,
                )
            )
            if claimed.rowcount == 0:
                await db.rollback()
                logger.info(
                    "Run %s was stopped before its scene commit; rolled back", run_id[:12]
                )
                return SceneCommitFailed(reason="run-stopped")

        await db.commit()

        if cursor.rowcount == 1:
            logger.info("Saved scene for session %s at version %d", session_id[:8], new_version)
            return SceneCommitSuccess(latest_scene_version=new_version, saved_at=saved_at)

        current = await fetch_session(db, session_id)
        if current is None:
            return SceneCommitFailed(reason="session-not-found")

        logger.info(
            "Scene conflict for session %s: expected %d, current %d",
            session_id[:8], expected_version, current.latest_scene_version,
        )
        return SceneCommitConflict(latest_scene_version=current.latest_scene_version)
