"""Tests for stop requests, the cancellation token and the stop poller."""
import asyncio

import pytest

from diagram_agent import run_manager
from diagram_agent.cancellation import CancellationToken, StopPoller, request_stop
from diagram_agent.exceptions import Forbidden, SessionNotFound
from diagram_agent.intake import enqueue_prompt
from diagram_agent.models import AssistantPatch, RunPatch, RunStatus
from diagram_agent.run_ledger import apply_transition, get_message, get_run, record_stop_request
from diagram_agent.session_manager import create_session


@pytest.fixture(autouse=True)
def no_scheduling(monkeypatch):
    monkeypatch.setattr(run_manager, "schedule_run", lambda run_id: None)


async def test_stop_in_flight_run(db_path):
    session = await create_session()
    enqueued = await enqueue_prompt(session.session_id, "Draw a graph", "pm-1")

    result = await request_stop(session.session_id, "pm-1")

    assert result.status == "requested"
    assert result.run_status == RunStatus.STOPPED
    assert result.prompt_message_id == "pm-1"

    run = await get_run(enqueued.run_id)
    assert run.status == RunStatus.STOPPED
    assert run.stop_requested is True
    assert run.finished_at is not None
    assistant = await get_message(enqueued.assistant_message_id)
    assert assistant.status == RunStatus.STOPPED.value


async def test_stop_terminal_run_keeps_status(db_path):
    session = await create_session()
    enqueued = await enqueue_prompt(session.session_id, "Draw a graph", "pm-1")
    run = await get_run(enqueued.run_id)
    await apply_transition(
        run,
        RunPatch(status=RunStatus.PERSISTED, applied_scene_version=1, finished_at=123),
        AssistantPatch(status=RunStatus.PERSISTED, content="Done."),
    )

    result = await request_stop(session.session_id, "pm-1")

    assert result.run_status == RunStatus.PERSISTED
    run = await get_run(enqueued.run_id)
    assert run.status == RunStatus.PERSISTED
    assert run.stop_requested is True
    assert run.finished_at == 123


async def test_stop_does_not_overwrite_run_persisted_after_it_was_read(db_path):
    session = await create_session()
    enqueued = await enqueue_prompt(session.session_id, "Draw a graph", "pm-1")
    stale = await get_run(enqueued.run_id)
    await apply_transition(
        stale,
        RunPatch(status=RunStatus.PERSISTED, applied_scene_version=1, finished_at=123),
        AssistantPatch(status=RunStatus.PERSISTED, content="Done."),
    )

    status = await record_stop_request(stale)

    assert status == RunStatus.PERSISTED
    run = await get_run(enqueued.run_id)
    assert run.status == RunStatus.PERSISTED
    assert run.applied_scene_version == 1
    assert run.stop_requested is True
    assistant = await get_message(enqueued.assistant_message_id)
    assert assistant.status == RunStatus.PERSISTED.value


async def test_unknown_prompt_id_resolves_to_active_run(db_path):
    session = await create_session()
    await enqueue_prompt(session.session_id, "Draw a graph", "pm-1")

    result = await request_stop(session.session_id, "pm-not-yet-known")

    assert result.status == "requested"
    assert result.prompt_message_id == "pm-1"


async def test_stop_without_any_run(db_path):
    session = await create_session()
    result = await request_stop(session.session_id, "pm-1")
    assert result.status == "not-found"


async def test_stop_checks_session_and_owner(db_path):
    with pytest.raises(SessionNotFound):
        await request_stop("missing", "pm-1")

    session = await create_session(owner_id="alice")
    with pytest.raises(Forbidden):
        await request_stop(session.session_id, "pm-1", viewer_id="bob")


async def test_stopped_run_rejects_later_transitions(db_path):
    session = await create_session()
    enqueued = await enqueue_prompt(session.session_id, "Draw a graph", "pm-1")
    await request_stop(session.session_id, "pm-1")
    run = await get_run(enqueued.run_id)

    applied = await apply_transition(
        run,
        RunPatch(status=RunStatus.PERSISTED, applied_scene_version=1),
        AssistantPatch(status=RunStatus.PERSISTED, content="Saved.", error="ignored"),
    )

    assert applied is False
    run = await get_run(enqueued.run_id)
    assert run.status == RunStatus.STOPPED
    assert run.applied_scene_version is None
    assistant = await get_message(enqueued.assistant_message_id)
    assert assistant.status == RunStatus.STOPPED.value
    assert assistant.content == "Saved."
    assert assistant.error is None


async def test_token_is_one_shot():
    token = CancellationToken()
    assert not token.cancelled

    token.cancel("first")
    token.cancel("second")

    assert token.cancelled
    assert token.reason == "first"
    await asyncio.wait_for(token.wait(), timeout=1)


async def test_poller_cancels_token_after_stop(db_path):
    session = await create_session()
    enqueued = await enqueue_prompt(session.session_id, "Draw a graph", "pm-1")
    token = CancellationToken()
    poller = StopPoller(enqueued.run_id, token, interval=0.01)
    poller.start()
    try:
        await asyncio.sleep(0.05)
        assert not token.cancelled

        await request_stop(session.session_id, "pm-1")
        await asyncio.wait_for(token.wait(), timeout=1)
    finally:
        await poller.stop()

    assert token.reason == "stop-requested"
