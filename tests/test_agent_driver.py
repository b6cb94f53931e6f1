"""End-to-end tests for the agent session driver with fake model and tools."""
import asyncio

import pytest

from diagram_agent import agent_driver, run_ledger, run_manager
from diagram_agent.agent_driver import (
    EMPTY_CANVAS_REASON,
    AgentDriver,
    extract_chat_history,
)
from diagram_agent.cancellation import request_stop
from diagram_agent.diagram_models import ToolSuccess
from diagram_agent.events import ReasoningDelta, StreamFinished, TextDelta, ToolCall
from diagram_agent.intake import enqueue_prompt
from diagram_agent.models import MessageType, RunStatus, ToolName
from diagram_agent.run_ledger import get_message, get_run, list_messages
from diagram_agent.scene_store import set_latest_scene
from diagram_agent.session_manager import create_session, get_session

from fakes import FailingTool, ScriptedModelSession, StaticTool, make_elements, toolset


@pytest.fixture(autouse=True)
def no_scheduling(monkeypatch):
    monkeypatch.setattr(run_manager, "schedule_run", lambda run_id: None)


def make_driver(steps, tools=None):
    return AgentDriver(
        ScriptedModelSession(steps),
        tools or toolset(),
        stop_poll_interval=0.01,
        flush_interval=0,
        max_turns=4,
    )


async def _enqueue(prompt="Draw a login flow", scene=None):
    session = await create_session()
    if scene is not None:
        await set_latest_scene(session.session_id, 0, scene, {"viewBackgroundColor": "#fafafa"})
    enqueued = await enqueue_prompt(session.session_id, prompt, "pm-1")
    return session.session_id, enqueued


async def _tool_messages(session_id):
    return [m for m in await list_messages(session_id) if m.message_type == MessageType.TOOL]


async def test_model_tool_call_is_persisted(db_path):
    session_id, enqueued = await _enqueue()
    driver = make_driver([
        ReasoningDelta("Blank canvas, generating."),
        ("call", ToolName.GENERATE, "toolu_1"),
        TextDelta("Drew "),
        StreamFinished(text="Drew a login flow."),
    ])

    result = await driver.process_run(enqueued.run_id)

    assert result.status == "persisted"
    assert result.latest_scene_version == 1

    run = await get_run(enqueued.run_id)
    assert run.status == RunStatus.PERSISTED
    assert run.applied_scene_version == 1
    assert run.finished_at is not None

    assistant = await get_message(enqueued.assistant_message_id)
    assert assistant.status == RunStatus.PERSISTED.value
    assert assistant.content == "Drew a login flow."
    assert assistant.reasoning_summary == "Blank canvas, generating."

    (tool,) = await _tool_messages(session_id)
    assert tool.tool_call_id == "toolu_1"
    assert tool.tool_name == "generateDiagram"
    assert tool.status == "completed"
    assert tool.tool_output["elementCount"] == 3

    session = await get_session(session_id)
    assert session.latest_scene_version == 1
    assert [e["id"] for e in session.latest_scene.elements] == ["gen-0", "gen-1", "gen-2"]
    assert session.latest_scene.app_state == {}


async def test_request_includes_history_and_scene_size(db_path):
    session_id, first = await _enqueue(scene=make_elements(2))
    session = ScriptedModelSession([("call", ToolName.TWEAK, "toolu_1")])
    driver = AgentDriver(session, toolset(), stop_poll_interval=0.01, flush_interval=0)
    await driver.process_run(first.run_id)

    second = await enqueue_prompt(session_id, "Rename the first box", "pm-2")
    await driver.process_run(second.run_id)

    request = session.requests[-1]
    assert request.tool_choice == "required"
    assert request.user_message == (
        "User request: Rename the first box\nCurrent scene non-deleted elements: 2"
    )
    assert [turn.role for turn in request.history] == ["user", "assistant"]
    assert request.history[0].content == "Draw a login flow"
    assert set(request.tools) == set(ToolName)


async def test_blank_reply_gets_tool_summary(db_path):
    session_id, enqueued = await _enqueue(scene=make_elements(2))
    driver = make_driver([("call", ToolName.RESTRUCTURE, "toolu_1")])

    result = await driver.process_run(enqueued.run_id)

    assert result.status == "persisted"
    assistant = await get_message(enqueued.assistant_message_id)
    assert assistant.content == "Restructured the diagram and saved it."
    session = await get_session(session_id)
    assert session.latest_scene_version == 2
    assert session.latest_scene.app_state == {"viewBackgroundColor": "#fafafa"}


async def test_fallback_generates_on_blank_scene(db_path):
    session_id, enqueued = await _enqueue()
    generate = StaticTool(make_elements(3, "gen"))
    driver = make_driver([StreamFinished(text="")], toolset(generate=generate))

    result = await driver.process_run(enqueued.run_id)

    assert result.status == "persisted"
    assert len(generate.calls) == 1
    (tool,) = await _tool_messages(session_id)
    assert tool.tool_call_id.startswith("fallback_")
    assert tool.tool_name == "generateDiagram"
    assistant = await get_message(enqueued.assistant_message_id)
    assert assistant.content == "Created a new diagram and saved it."


async def test_unexecuted_tool_call_is_replayed(db_path):
    session_id, enqueued = await _enqueue(scene=make_elements(2))
    tweak = StaticTool(make_elements(2, "tw"))
    driver = make_driver(
        [ToolCall(tool_call_id="toolu_9", tool_name="tweakDiagram")],
        toolset(tweak=tweak),
    )

    result = await driver.process_run(enqueued.run_id)

    assert result.status == "persisted"
    assert len(tweak.calls) == 1
    (tool,) = await _tool_messages(session_id)
    assert tool.tool_call_id == "toolu_9"
    assert tool.status == "completed"


async def test_failed_replay_falls_back_to_generate(db_path):
    session_id, enqueued = await _enqueue()
    driver = make_driver([ToolCall(tool_call_id="toolu_2", tool_name="restructureDiagram")])

    result = await driver.process_run(enqueued.run_id)

    assert result.status == "persisted"
    tools = {m.tool_name: m for m in await _tool_messages(session_id)}
    assert tools["restructureDiagram"].status == "error"
    assert tools["restructureDiagram"].error == EMPTY_CANVAS_REASON
    assert tools["restructureDiagram"].tool_output == {"status": "failed", "reason": EMPTY_CANVAS_REASON}
    assert tools["generateDiagram"].status == "completed"


async def test_no_candidate_ends_in_error(db_path):
    session_id, enqueued = await _enqueue()
    driver = make_driver([], toolset(generate=FailingTool("model refused")))

    result = await driver.process_run(enqueued.run_id)

    assert result.status == "error"
    run = await get_run(enqueued.run_id)
    assert run.status == RunStatus.ERROR
    assert run.error == "No diagram change was produced: model refused"
    assistant = await get_message(enqueued.assistant_message_id)
    assert assistant.content == "I could not apply a diagram update. Please clarify your request and retry."
    session = await get_session(session_id)
    assert session.latest_scene_version == 0


async def test_raising_tool_is_recorded_as_failure(db_path):
    session_id, enqueued = await _enqueue()
    driver = make_driver(
        [("call", ToolName.GENERATE, "toolu_1")],
        toolset(generate=FailingTool("kaboom", raises=True)),
    )

    result = await driver.process_run(enqueued.run_id)

    assert result.status == "error"
    tools = await _tool_messages(session_id)
    assert {m.error for m in tools} == {"kaboom"}
    assert all(m.status == "error" for m in tools)


async def test_stream_error_ends_in_error(db_path):
    session_id, enqueued = await _enqueue()
    driver = make_driver([TextDelta("Let me"), RuntimeError("provider exploded")])

    result = await driver.process_run(enqueued.run_id)

    assert result.status == "error"
    run = await get_run(enqueued.run_id)
    assert run.error == "provider exploded"
    assert run.finished_at is not None
    assistant = await get_message(enqueued.assistant_message_id)
    assert assistant.status == RunStatus.ERROR.value
    assert assistant.content == "Let me"


async def test_stop_during_stream_never_commits(db_path):
    session_id, enqueued = await _enqueue()
    generate = StaticTool()
    driver = make_driver(
        [TextDelta("Working"), ("wait", 5), ("call", ToolName.GENERATE, "toolu_1")],
        toolset(generate=generate),
    )

    task = asyncio.create_task(driver.process_run(enqueued.run_id))
    for _ in range(100):
        run = await get_run(enqueued.run_id)
        if run.status == RunStatus.RUNNING:
            break
        await asyncio.sleep(0.01)

    await request_stop(session_id, "pm-1")
    result = await asyncio.wait_for(task, timeout=2)

    assert result.status == "stopped"
    assert generate.calls == []
    run = await get_run(enqueued.run_id)
    assert run.status == RunStatus.STOPPED
    assistant = await get_message(enqueued.assistant_message_id)
    assert assistant.status == RunStatus.STOPPED.value
    session = await get_session(session_id)
    assert session.latest_scene_version == 0


async def test_terminal_run_is_not_reprocessed(db_path):
    session_id, enqueued = await _enqueue()
    await request_stop(session_id, "pm-1")
    driver = make_driver([("call", ToolName.GENERATE, "toolu_1")])

    result = await driver.process_run(enqueued.run_id)

    assert result.status == "terminal"
    assert await _tool_messages(session_id) == []


async def test_missing_run(db_path):
    driver = make_driver([])
    result = await driver.process_run("run_missing")
    assert result.status == "missing"


class ConcurrentEditTool:
    """Writes a user edit to the session before returning its own result."""

    def __init__(self, session_id):
        self.session_id = session_id

    async def __call__(self, scene, request):
        await set_latest_scene(self.session_id, 0, make_elements(1, "user"), {})
        return ToolSuccess(elements=make_elements(2, "agent"))


async def test_commit_conflict_ends_in_error(db_path):
    session_id, enqueued = await _enqueue()
    driver = make_driver(
        [("call", ToolName.GENERATE, "toolu_1"), StreamFinished(text="Done.")],
        toolset(generate=ConcurrentEditTool(session_id)),
    )

    result = await driver.process_run(enqueued.run_id)

    assert result.status == "error"
    run = await get_run(enqueued.run_id)
    assert run.error == "Another update landed first. Reload and retry to continue safely."
    session = await get_session(session_id)
    assert session.latest_scene_version == 1
    assert session.latest_scene.elements[0]["id"] == "user-0"


def test_chat_history_skips_tools_and_current_prompt():
    from diagram_agent.models import Message, MessageRole

    def message(role, content, pm, message_type=MessageType.CHAT):
        return Message(
            message_id=f"m-{pm}-{role.value}", session_id="s", thread_id="t",
            prompt_message_id=pm, role=role, message_type=message_type,
            content=content, created_at=1, updated_at=1,
        )

    messages = [
        message(MessageRole.USER, "first", "pm-1"),
        message(MessageRole.ASSISTANT, "   ", "pm-1"),
        message(MessageRole.TOOL, None, "pm-1", MessageType.TOOL),
        message(MessageRole.USER, "second", "pm-2"),
    ]

    history = extract_chat_history(messages, "pm-2")
    assert [(turn.role, turn.content) for turn in history] == [("user", "first")]


async def test_run_stopped_while_loading_is_not_processed(db_path, monkeypatch):
    session_id, enqueued = await _enqueue()
    load_run_context = run_ledger.load_run_context

    async def load_then_stop(run_id):
        context = await load_run_context(run_id)
        await request_stop(session_id, "pm-1")
        return context

    monkeypatch.setattr(run_ledger, "load_run_context", load_then_stop)
    model = ScriptedModelSession([("call", ToolName.GENERATE, "toolu_1")])
    generate = StaticTool()
    driver = AgentDriver(model, toolset(generate=generate), stop_poll_interval=0.01, flush_interval=0)

    result = await driver.process_run(enqueued.run_id)

    assert result.status == "terminal"
    assert model.requests == []
    assert generate.calls == []
    assert await _tool_messages(session_id) == []
    run = await get_run(enqueued.run_id)
    assert run.status == RunStatus.STOPPED


async def test_stop_while_applying_rolls_back_commit(db_path, monkeypatch):
    session_id, enqueued = await _enqueue()
    commit = agent_driver.set_latest_scene
    stops = []

    async def stop_then_commit(*args, **kwargs):
        stops.append(await request_stop(session_id, "pm-1"))
        return await commit(*args, **kwargs)

    monkeypatch.setattr(agent_driver, "set_latest_scene", stop_then_commit)
    driver = make_driver([("call", ToolName.GENERATE, "toolu_1")])

    result = await driver.process_run(enqueued.run_id)

    assert stops[0].run_status == RunStatus.STOPPED
    assert result.status == "stopped"
    run = await get_run(enqueued.run_id)
    assert run.status == RunStatus.STOPPED
    assert run.applied_scene_version is None
    session = await get_session(session_id)
    assert session.latest_scene_version == 0
    assert session.latest_scene is None
    assistant = await get_message(enqueued.assistant_message_id)
    assert assistant.status == RunStatus.STOPPED.value
