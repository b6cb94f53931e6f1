"""
Run ledger: durable edit-request records and the per-thread message log.

Runs and chat messages are written by intake, patched by the agent driver
and the cancellation controller, and never deleted. Tool messages are keyed
by ``(run_id, tool_call_id)`` and patched in place on every status change.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import aiosqlite

from diagram_agent.database import get_db, new_id, now_ms
from diagram_agent.models import (
    AssistantPatch,
    Message,
    MessageRole,
    MessageType,
    Run,
    RunDetail,
    RunPatch,
    RunStatus,
    RunSummary,
    Session,
    ThreadView,
    ToolMessageUpdate,
    is_terminal,
)
from diagram_agent.scene_store import to_plain_json
from diagram_agent.session_manager import check_owner, fetch_session

logger = logging.getLogger(__name__)

_NON_TERMINAL = tuple(s.value for s in RunStatus if not is_terminal(s))


@dataclass
class RunContext:
    run: Run
    session: Session
    messages: list[Message]


def _row_to_run(row: aiosqlite.Row) -> Run:
    data = dict(row)
    data["stop_requested"] = bool(data["stop_requested"])
    return Run(**data)


def _row_to_message(row: aiosqlite.Row) -> Message:
    data = dict(row)
    data.pop("id", None)
    for key in ("tool_input", "tool_output"):
        if data[key] is not None:
            data[key] = json.loads(data[key])
    return Message(**data)


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(to_plain_json(value))


def _set_clause(values: dict[str, Any]) -> tuple[str, list[Any]]:
    """Build ``col = ?`` assignments for the fields present in a patch."""
    columns = []
    params = []
    for column, value in values.items():
        if isinstance(value, RunStatus):
            value = value.value
        elif isinstance(value, bool):
            value = int(value)
        columns.append(f"{column} = ?")
        params.append(value)
    return ", ".join(columns), params


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def fetch_run_by_prompt(
    db: aiosqlite.Connection, session_id: str, prompt_message_id: str
) -> Optional[Run]:
    cursor = await db.execute(
        "SELECT * FROM runs WHERE session_id = ? AND prompt_message_id = ?",
        (session_id, prompt_message_id)
    )
    row = await cursor.fetchone()
    return _row_to_run(row) if row else None


async def find_run(session_id: str, prompt_message_id: str) -> Optional[Run]:
    async with get_db() as db:
        return await fetch_run_by_prompt(db, session_id, prompt_message_id)


async def get_run(run_id: str) -> Optional[Run]:
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        return _row_to_run(row) if row else None


async def latest_run(session_id: str) -> Optional[Run]:
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT * FROM runs WHERE session_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (session_id,)
        )
        row = await cursor.fetchone()
        return _row_to_run(row) if row else None


async def latest_active_run(session_id: str) -> Optional[Run]:
    """Most recently created run for the session that is not terminal."""
    placeholders = ", ".join("?" for _ in _NON_TERMINAL)
    async with get_db() as db:
        cursor = await db.execute(
            f"""
            SELECT * FROM runs
            WHERE session_id = ? AND status IN ({placeholders})
            ORDER BY created_at DESC, rowid DESC LIMIT 1
            """,
            (session_id, *_NON_TERMINAL)
        )
        row = await cursor.fetchone()
        return _row_to_run(row) if row else None


async def fetch_messages(db: aiosqlite.Connection, session_id: str) -> list[Message]:
    cursor = await db.execute(
        "SELECT * FROM messages WHERE session_id = ? ORDER BY created_at ASC, id ASC",
        (session_id,)
    )
    return [_row_to_message(row) for row in await cursor.fetchall()]


async def list_messages(session_id: str) -> list[Message]:
    async with get_db() as db:
        return await fetch_messages(db, session_id)


async def get_message(message_id: str) -> Optional[Message]:
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM messages WHERE message_id = ?", (message_id,))
        row = await cursor.fetchone()
        return _row_to_message(row) if row else None


async def load_run_context(run_id: str) -> Optional[RunContext]:
    """Load a run with its session and the session's ordered messages."""
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        run = _row_to_run(row)

        session = await fetch_session(db, run.session_id)
        if session is None:
            return None

        messages = await fetch_messages(db, run.session_id)
        return RunContext(run=run, session=session, messages=messages)


async def should_stop_run(run_id: str) -> bool:
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT status, stop_requested FROM runs WHERE run_id = ?",
            (run_id,)
        )
        row = await cursor.fetchone()
    if not row:
        return True
    return bool(row["stop_requested"]) or row["status"] == RunStatus.STOPPED.value


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

async def insert_chat_message(
    db: aiosqlite.Connection,
    *,
    session_id: str,
    thread_id: str,
    prompt_message_id: str,
    role: MessageRole,
    status: RunStatus,
    content: str,
    trace_id: str,
    created_at: int,
) -> str:
    message_id = new_id("msg")
    await db.execute(
        """
        INSERT INTO messages (
            message_id, session_id, thread_id, prompt_message_id, role, message_type,
            status, content, trace_id, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            message_id, session_id, thread_id, prompt_message_id, role.value,
            MessageType.CHAT.value, status.value, content, trace_id, created_at, created_at,
        )
    )
    return message_id


async def insert_run(db: aiosqlite.Connection, run: Run) -> None:
    await db.execute(
        """
        INSERT INTO runs (
            run_id, session_id, thread_id, owner_id, prompt_message_id, prompt, trace_id,
            user_message_id, assistant_message_id, status, stop_requested,
            created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            run.run_id, run.session_id, run.thread_id, run.owner_id, run.prompt_message_id,
            run.prompt, run.trace_id, run.user_message_id, run.assistant_message_id,
            run.status.value, int(run.stop_requested), run.created_at, run.updated_at,
        )
    )


async def _patch_assistant(
    db: aiosqlite.Connection, message_id: str, patch: AssistantPatch, now: int
) -> None:
    values = patch.model_dump(exclude_unset=True)
    values["updated_at"] = now
    clause, params = _set_clause(values)
    await db.execute(
        f"UPDATE messages SET {clause} WHERE message_id = ?",
        (*params, message_id)
    )


async def apply_transition(
    run: Run, run_patch: RunPatch, assistant_patch: AssistantPatch
) -> bool:
    """Patch a run and its assistant reply in one transaction.

    A run that the cancellation controller already marked ``stopped`` only
    accepts another ``stopped`` write; anything else is dropped and the
    assistant reply is kept at ``stopped``. Returns whether the run patch
    was applied.
    """
    now = now_ms()
    values = run_patch.model_dump(exclude_unset=True)
    values["updated_at"] = now
    clause, params = _set_clause(values)
    target = run_patch.status.value if run_patch.status else None

    async with get_db() as db:
        cursor = await db.execute(
            f"""
            UPDATE runs SET {clause}
            WHERE run_id = ? AND (status != 'stopped' OR ? = 'stopped')
            """,
            (*params, run.run_id, target)
        )
        applied = cursor.rowcount == 1

        if not applied:
            logger.info(
                "Run %s already stopped; dropping %s transition",
                run.run_id[:12], target,
            )
            patch_values = assistant_patch.model_dump(exclude_unset=True)
            patch_values.pop("error", None)
            patch_values["status"] = RunStatus.STOPPED
            assistant_patch = AssistantPatch(**patch_values)

        await _patch_assistant(db, run.assistant_message_id, assistant_patch, now)
        await db.commit()

    return applied


async def update_assistant_progress(message_id: str, patch: AssistantPatch) -> None:
    async with get_db() as db:
        await _patch_assistant(db, message_id, patch, now_ms())
        await db.commit()


async def upsert_tool_message(run: Run, update: ToolMessageUpdate) -> str:
    """Create or patch the tool message for ``(run, tool_call_id)``.

    Fields left as None keep their stored value. ``pending`` only applies on
    insert so a late tool-call event never rewinds a tool that already ran.
    """
    now = now_ms()
    async with get_db() as db:
        await db.execute(
            """
            INSERT INTO messages (
                message_id, session_id, thread_id, run_id, prompt_message_id, role,
                message_type, status, tool_name, tool_call_id, tool_input, tool_output,
                trace_id, error, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id, tool_call_id) DO UPDATE SET
                status = CASE
                    WHEN excluded.status = 'pending' THEN messages.status
                    ELSE excluded.status
                END,
                tool_name = excluded.tool_name,
                tool_input = COALESCE(excluded.tool_input, messages.tool_input),
                tool_output = COALESCE(excluded.tool_output, messages.tool_output),
                error = CASE
                    WHEN excluded.status = 'completed' THEN NULL
                    ELSE COALESCE(excluded.error, messages.error)
                END,
                updated_at = excluded.updated_at
            """,
            (
                new_id("msg"), run.session_id, run.thread_id, run.run_id,
                run.prompt_message_id, MessageRole.TOOL.value, MessageType.TOOL.value,
                update.status.value, update.tool_name, update.tool_call_id,
                _dump_json(update.tool_input), _dump_json(update.tool_output),
                run.trace_id, update.error, now, now,
            )
        )
        cursor = await db.execute(
            "SELECT message_id FROM messages WHERE run_id = ? AND tool_call_id = ?",
            (run.run_id, update.tool_call_id)
        )
        row = await cursor.fetchone()
        await db.commit()
    return row["message_id"]


async def record_stop_request(run: Run) -> RunStatus:
    """Set ``stop_requested`` and stop the run if it is still in flight.

    Terminal runs keep their status and finish time. The status write is
    conditional, so a run that persisted after ``run`` was read stays
    persisted. Returns the run status after the write.
    """
    now = now_ms()
    placeholders = ", ".join("?" for _ in _NON_TERMINAL)
    async with get_db() as db:
        cursor = await db.execute(
            f"""
            UPDATE runs SET stop_requested = 1, status = ?, finished_at = ?, updated_at = ?
            WHERE run_id = ? AND status IN ({placeholders})
            """,
            (RunStatus.STOPPED.value, now, now, run.run_id, *_NON_TERMINAL)
        )
        if cursor.rowcount == 1:
            await _patch_assistant(
                db, run.assistant_message_id, AssistantPatch(status=RunStatus.STOPPED), now
            )
            await db.commit()
            return RunStatus.STOPPED

        await db.execute(
            "UPDATE runs SET stop_requested = 1, updated_at = ? WHERE run_id = ?",
            (now, run.run_id)
        )
        current = await db.execute("SELECT status FROM runs WHERE run_id = ?", (run.run_id,))
        row = await current.fetchone()
        await db.commit()
    return RunStatus(row["status"]) if row else run.status


# ---------------------------------------------------------------------------
# Query API
# ---------------------------------------------------------------------------

def _summary(run: Run) -> RunSummary:
    return RunSummary(
        prompt_message_id=run.prompt_message_id,
        status=run.status,
        stop_requested=run.stop_requested,
        error=run.error,
        applied_scene_version=run.applied_scene_version,
        updated_at=run.updated_at,
        finished_at=run.finished_at,
    )


async def list_thread(session_id: str, viewer_id: Optional[str] = None) -> Optional[ThreadView]:
    """Ordered thread messages plus the latest run summary.

    Returns None for an unknown session.
    """
    async with get_db() as db:
        session = await fetch_session(db, session_id)
        if session is None:
            return None
        check_owner(session, viewer_id)
        messages = await fetch_messages(db, session_id)

    latest = await latest_run(session_id)
    return ThreadView(
        thread_id=session.thread_id,
        messages=messages,
        latest_run=_summary(latest) if latest else None,
    )


async def get_run_detail(
    session_id: str, prompt_message_id: str, viewer_id: Optional[str] = None
) -> Optional[RunDetail]:
    async with get_db() as db:
        session = await fetch_session(db, session_id)
        if session is None:
            return None
        check_owner(session, viewer_id)
        run = await fetch_run_by_prompt(db, session_id, prompt_message_id)

    if run is None:
        return None

    return RunDetail(
        **_summary(run).model_dump(),
        assistant_message_id=run.assistant_message_id,
        user_message_id=run.user_message_id,
        trace_id=run.trace_id,
    )


async def wait_for_terminal_run(
    session_id: str,
    prompt_message_id: str,
    timeout: float,
    poll_interval: float = 0.25,
    viewer_id: Optional[str] = None,
) -> tuple[Optional[RunDetail], bool]:
    """Poll ``get_run_detail`` until the run is terminal.

    Returns the last observed run and whether the timeout expired first.
    """
    deadline = time.monotonic() + timeout
    run = await get_run_detail(session_id, prompt_message_id, viewer_id)

    while not (run and is_terminal(run.status)):
        if time.monotonic() >= deadline:
            return run, True
        await asyncio.sleep(poll_interval)
        run = await get_run_detail(session_id, prompt_message_id, viewer_id)

    return run, False
