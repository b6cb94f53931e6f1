"""Tests for the versioned scene store."""
import json

from pydantic import BaseModel

from diagram_agent.intake import enqueue_prompt
from diagram_agent.models import (
    AssistantPatch,
    RunPatch,
    RunStatus,
    SceneCommitConflict,
    SceneCommitFailed,
    SceneCommitSuccess,
)
from diagram_agent.run_ledger import apply_transition, get_run
from diagram_agent.scene_store import (
    MAX_SCENE_BYTES,
    measure_scene_bytes,
    sanitize_app_state,
    serialize_scene,
    set_latest_scene,
    to_plain_json,
)
from diagram_agent.session_manager import create_session, get_session

from fakes import make_elements


async def test_new_session_starts_at_version_zero(db_path):
    session = await create_session(owner_id="alice")
    stored = await get_session(session.session_id)
    assert stored.latest_scene_version == 0
    assert stored.latest_scene is None
    assert stored.owner_id == "alice"


async def test_conditional_write_bumps_version(db_path):
    session = await create_session()
    result = await set_latest_scene(session.session_id, 0, make_elements(2), {"viewBackgroundColor": "#fff"})

    assert isinstance(result, SceneCommitSuccess)
    assert result.latest_scene_version == 1

    stored = await get_session(session.session_id)
    assert stored.latest_scene_version == 1
    assert [e["id"] for e in stored.latest_scene.elements] == ["node-0", "node-1"]
    assert stored.latest_scene.app_state == {"viewBackgroundColor": "#fff"}


async def test_stale_version_conflicts_without_writing(db_path):
    session = await create_session()
    await set_latest_scene(session.session_id, 0, make_elements(1, "first"), {})

    result = await set_latest_scene(session.session_id, 0, make_elements(1, "second"), {})

    assert isinstance(result, SceneCommitConflict)
    assert result.latest_scene_version == 1
    stored = await get_session(session.session_id)
    assert stored.latest_scene.elements[0]["id"] == "first-0"


async def test_only_one_of_two_writers_wins(db_path):
    session = await create_session()
    first = await set_latest_scene(session.session_id, 0, make_elements(1, "a"), {})
    second = await set_latest_scene(session.session_id, 0, make_elements(1, "b"), {})

    statuses = sorted([first.status, second.status])
    assert statuses == ["conflict", "success"]


async def test_missing_session(db_path):
    result = await set_latest_scene("nope", 0, [], {})
    assert isinstance(result, SceneCommitFailed)
    assert result.reason == "session-not-found"


async def test_owner_mismatch_is_forbidden(db_path):
    session = await create_session(owner_id="alice")
    result = await set_latest_scene(session.session_id, 0, make_elements(1), {}, owner_id="bob")
    assert isinstance(result, SceneCommitFailed)
    assert result.reason == "forbidden"


async def test_anonymous_write_to_owned_session_is_forbidden(db_path):
    session = await create_session(owner_id="alice")
    result = await set_latest_scene(session.session_id, 0, make_elements(1), {})
    assert isinstance(result, SceneCommitFailed)
    assert result.reason == "forbidden"
    stored = await get_session(session.session_id)
    assert stored.latest_scene_version == 0


async def _applying_run(session_id):
    enqueued = await enqueue_prompt(session_id, "Draw a graph", "pm-1")
    run = await get_run(enqueued.run_id)
    await apply_transition(
        run, RunPatch(status=RunStatus.APPLYING), AssistantPatch(status=RunStatus.APPLYING)
    )
    return run.run_id


async def test_run_commit_marks_run_persisted(db_path):
    session = await create_session()
    run_id = await _applying_run(session.session_id)

    result = await set_latest_scene(session.session_id, 0, make_elements(1), {}, run_id=run_id)

    assert isinstance(result, SceneCommitSuccess)
    run = await get_run(run_id)
    assert run.status == RunStatus.PERSISTED
    assert run.applied_scene_version == 1
    assert run.finished_at == result.saved_at


async def test_run_commit_rolls_back_when_run_is_no_longer_applying(db_path):
    session = await create_session()
    run_id = await _applying_run(session.session_id)
    run = await get_run(run_id)
    await apply_transition(run, RunPatch(status=RunStatus.STOPPED), AssistantPatch(status=RunStatus.STOPPED))

    result = await set_latest_scene(session.session_id, 0, make_elements(1), {}, run_id=run_id)

    assert isinstance(result, SceneCommitFailed)
    assert result.reason == "run-stopped"
    stored = await get_session(session.session_id)
    assert stored.latest_scene_version == 0
    assert stored.latest_scene is None
    assert (await get_run(run_id)).status == RunStatus.STOPPED


async def test_oversized_scene_is_rejected(db_path):
    session = await create_session()
    elements = [{"id": "big", "type": "text", "text": "x" * (MAX_SCENE_BYTES + 1)}]

    result = await set_latest_scene(session.session_id, 0, elements, {})

    assert isinstance(result, SceneCommitFailed)
    assert result.reason == "scene-too-large"
    assert result.max_bytes == MAX_SCENE_BYTES
    assert result.actual_bytes > MAX_SCENE_BYTES
    stored = await get_session(session.session_id)
    assert stored.latest_scene_version == 0


def test_transient_app_state_keys_are_stripped():
    app_state = {
        "viewBackgroundColor": "#ffffff",
        "gridSize": 20,
        "selectedElementIds": {"a": True},
        "collaborators": {"u1": {}},
        "editingTextElement": None,
        "openDialog": "help",
    }
    assert sanitize_app_state(app_state) == {"viewBackgroundColor": "#ffffff", "gridSize": 20}


def test_to_plain_json_converts_containers():
    class Point(BaseModel):
        x: int
        y: int

    value = {
        1: ("a", "b"),
        "tags": frozenset({"only"}),
        "point": Point(x=1, y=2),
        "handler": lambda: None,
        "nested": [print, {"keep": True}],
    }
    assert to_plain_json(value) == {
        "1": ["a", "b"],
        "tags": ["only"],
        "point": {"x": 1, "y": 2},
        "nested": [{"keep": True}],
    }


def test_scene_size_counts_utf8_bytes():
    serialized = serialize_scene([{"id": "é"}], {})
    assert "é" in serialized
    assert measure_scene_bytes(serialized) == len(serialized) + 1


def test_non_finite_numbers_are_stored_as_null():
    serialized = serialize_scene(
        [{"id": "a", "x": float("nan"), "y": float("inf"), "points": [[0, float("-inf")]]}],
        {"zoom": float("nan")},
    )
    assert "NaN" not in serialized
    assert "Infinity" not in serialized
    assert json.loads(serialized) == {
        "elements": [{"id": "a", "x": None, "y": None, "points": [[0, None]]}],
        "appState": {"zoom": None},
    }
