"""
FastAPI application for the diagram run orchestrator.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, WebSocket, WebSocketDisconnect

from diagram_agent import run_manager
from diagram_agent.cancellation import request_stop
from diagram_agent.database import init_database
from diagram_agent.exceptions import DiagramAgentError, EmptyPrompt, Forbidden, SessionNotFound
from diagram_agent.intake import enqueue_prompt
from diagram_agent.models import (
    EnqueueResult,
    Message,
    PromptRequest,
    RunDetail,
    SceneCommitConflict,
    SceneCommitFailed,
    SceneCommitSuccess,
    SceneUpdateRequest,
    Session,
    SessionCreateResponse,
    StopResult,
    ThreadView,
)
from diagram_agent.run_ledger import get_message, get_run_detail, list_thread, wait_for_terminal_run
from diagram_agent.scene_store import set_latest_scene
from diagram_agent.session_manager import authorize_session, create_session


logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

# Seconds between WebSocket progress snapshots.
SNAPSHOT_INTERVAL_SECONDS = 0.25


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup; cancel in-flight runs on shutdown."""
    await init_database()
    yield
    await run_manager.shutdown()


app = FastAPI(
    title="Diagram Agent Service",
    version="1.0.0",
    lifespan=lifespan
)


def _http_error(error: DiagramAgentError) -> HTTPException:
    if isinstance(error, EmptyPrompt):
        return HTTPException(status_code=400, detail=error.message)
    if isinstance(error, SessionNotFound):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, Forbidden):
        return HTTPException(status_code=403, detail=error.message)
    return HTTPException(status_code=500, detail=error.message)


@app.post("/api/sessions", response_model=SessionCreateResponse)
async def create_new_session(x_user_id: Optional[str] = Header(default=None)):
    """Create a new diagram session owned by the caller."""
    session = await create_session(owner_id=x_user_id)
    return SessionCreateResponse(session_id=session.session_id)


@app.get("/api/sessions/{session_id}", response_model=Session)
async def read_session(session_id: str, x_user_id: Optional[str] = Header(default=None)):
    """Return a session with its latest scene and version."""
    try:
        return await authorize_session(session_id, x_user_id)
    except DiagramAgentError as e:
        raise _http_error(e)


@app.put("/api/sessions/{session_id}/scene", response_model=SceneCommitSuccess)
async def update_scene(
    session_id: str,
    body: SceneUpdateRequest,
    x_user_id: Optional[str] = Header(default=None),
):
    """Conditionally replace the session's scene."""
    result = await set_latest_scene(
        session_id,
        body.expected_version,
        body.elements,
        body.app_state,
        owner_id=x_user_id,
    )
    if isinstance(result, SceneCommitConflict):
        raise HTTPException(
            status_code=409,
            detail={"status": "conflict", "latest_scene_version": result.latest_scene_version},
        )
    if isinstance(result, SceneCommitFailed):
        status_code = {
            "session-not-found": 404,
            "forbidden": 403,
            "scene-too-large": 413,
            "run-stopped": 409,
        }[result.reason]
        raise HTTPException(status_code=status_code, detail=result.model_dump(exclude_none=True))
    return result


@app.post("/api/sessions/{session_id}/prompts", response_model=EnqueueResult)
async def submit_prompt(
    session_id: str,
    body: PromptRequest,
    x_user_id: Optional[str] = Header(default=None),
):
    """Enqueue a prompt; re-sending the same prompt id is a no-op."""
    try:
        return await enqueue_prompt(
            session_id,
            body.prompt,
            body.prompt_message_id,
            trace_id=body.trace_id,
            viewer_id=x_user_id,
        )
    except DiagramAgentError as e:
        raise _http_error(e)


@app.post("/api/sessions/{session_id}/prompts/{prompt_message_id}/stop", response_model=StopResult)
async def stop_prompt(
    session_id: str,
    prompt_message_id: str,
    x_user_id: Optional[str] = Header(default=None),
):
    """Request cancellation of a run."""
    try:
        return await request_stop(session_id, prompt_message_id, x_user_id)
    except DiagramAgentError as e:
        raise _http_error(e)


@app.get("/api/sessions/{session_id}/thread", response_model=ThreadView)
async def read_thread(session_id: str, x_user_id: Optional[str] = Header(default=None)):
    try:
        thread = await list_thread(session_id, x_user_id)
    except DiagramAgentError as e:
        raise _http_error(e)
    if thread is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return thread


@app.get("/api/sessions/{session_id}/runs/{prompt_message_id}", response_model=RunDetail)
async def read_run(
    session_id: str,
    prompt_message_id: str,
    x_user_id: Optional[str] = Header(default=None),
):
    try:
        run = await get_run_detail(session_id, prompt_message_id, x_user_id)
    except DiagramAgentError as e:
        raise _http_error(e)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


async def _send_snapshot(websocket: WebSocket, run: RunDetail, assistant: Optional[Message]) -> None:
    await websocket.send_json({
        "type": "run",
        "run": run.model_dump(mode="json"),
        "assistant": assistant.model_dump(mode="json") if assistant else None,
    })


@app.websocket("/ws/sessions/{session_id}/runs/{prompt_message_id}")
async def websocket_run_progress(websocket: WebSocket, session_id: str, prompt_message_id: str):
    """Push run and assistant snapshots until the run is terminal."""
    await websocket.accept()
    viewer_id = websocket.headers.get("x-user-id")

    try:
        run = await get_run_detail(session_id, prompt_message_id, viewer_id)
    except DiagramAgentError as e:
        await websocket.send_json({"type": "error", "content": e.message})
        await websocket.close()
        return

    if run is None:
        await websocket.send_json({"type": "error", "content": "Run not found"})
        await websocket.close()
        return

    last_seen = None
    try:
        while True:
            run, timed_out = await wait_for_terminal_run(
                session_id,
                prompt_message_id,
                timeout=SNAPSHOT_INTERVAL_SECONDS,
                poll_interval=SNAPSHOT_INTERVAL_SECONDS / 2,
                viewer_id=viewer_id,
            )
            if run is None:
                break

            assistant = await get_message(run.assistant_message_id)
            marker = (run.updated_at, assistant.updated_at if assistant else None)
            if marker != last_seen:
                last_seen = marker
                await _send_snapshot(websocket, run, assistant)

            if not timed_out:
                await websocket.send_json({"type": "run_end", "status": run.status.value})
                break
        await websocket.close()

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected for run %s/%s", session_id[:8], prompt_message_id)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "diagram-agent",
        "version": "1.0.0"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
