"""
Request intake: turns a prompt into a durable run exactly once.

``enqueue_prompt`` is the idempotency boundary. Re-submitting the same
``(session_id, prompt_message_id)`` returns the existing run untouched, so a
client retry never duplicates chat history or spawns a second driver.
"""
import logging
import sqlite3
from typing import Optional

from diagram_agent import run_manager
from diagram_agent.database import get_db, new_id, now_ms
from diagram_agent.exceptions import EmptyPrompt, SessionNotFound
from diagram_agent.models import EnqueueResult, MessageRole, Run, RunStatus
from diagram_agent.run_cache import latest_runs
from diagram_agent.run_ledger import fetch_run_by_prompt, find_run, insert_chat_message, insert_run
from diagram_agent.session_manager import check_owner, ensure_thread, fetch_session

logger = logging.getLogger(__name__)


def _result(run: Run, status: str) -> EnqueueResult:
    return EnqueueResult(
        status=status,
        run_id=run.run_id,
        thread_id=run.thread_id,
        prompt_message_id=run.prompt_message_id,
        trace_id=run.trace_id,
        assistant_message_id=run.assistant_message_id,
        user_message_id=run.user_message_id,
    )


async def enqueue_prompt(
    session_id: str,
    prompt: str,
    prompt_message_id: str,
    trace_id: Optional[str] = None,
    viewer_id: Optional[str] = None,
) -> EnqueueResult:
    """Record a prompt and its run, then schedule the agent driver.

    Raises EmptyPrompt, SessionNotFound or Forbidden synchronously.
    """
    prompt = prompt.strip()
    if not prompt:
        raise EmptyPrompt()

    try:
        async with get_db() as db:
            await db.execute("BEGIN IMMEDIATE")

            session = await fetch_session(db, session_id)
            if session is None:
                raise SessionNotFound(session_id)
            check_owner(session, viewer_id)

            existing = await fetch_run_by_prompt(db, session_id, prompt_message_id)
            if existing:
                await db.rollback()
                logger.info(
                    "Duplicate prompt %s for session %s (run %s)",
                    prompt_message_id, session_id[:8], existing.run_id[:12],
                )
                return _result(existing, "duplicate")

            thread_id = await ensure_thread(db, session)
            now = now_ms()
            trace_id = trace_id or new_id("trace")

            user_message_id = await insert_chat_message(
                db,
                session_id=session_id,
                thread_id=thread_id,
                prompt_message_id=prompt_message_id,
                role=MessageRole.USER,
                status=RunStatus.PERSISTED,
                content=prompt,
                trace_id=trace_id,
                created_at=now,
            )
            assistant_message_id = await insert_chat_message(
                db,
                session_id=session_id,
                thread_id=thread_id,
                prompt_message_id=prompt_message_id,
                role=MessageRole.ASSISTANT,
                status=RunStatus.SENDING,
                content="",
                trace_id=trace_id,
                created_at=now + 1,
            )

            run = Run(
                run_id=new_id("run"),
                session_id=session_id,
                thread_id=thread_id,
                owner_id=session.owner_id or viewer_id,
                prompt_message_id=prompt_message_id,
                prompt=prompt,
                trace_id=trace_id,
                user_message_id=user_message_id,
                assistant_message_id=assistant_message_id,
                status=RunStatus.SENDING,
                stop_requested=False,
                created_at=now,
                updated_at=now,
            )
            await insert_run(db, run)
            await db.commit()
    except sqlite3.IntegrityError:
        # Lost a race with a concurrent enqueue of the same prompt id.
        existing = await find_run(session_id, prompt_message_id)
        if existing is None:
            raise
        return _result(existing, "duplicate")

    latest_runs.remember(session_id, run.run_id)
    logger.info(
        "Enqueued run %s for session %s (prompt %s, trace %s)",
        run.run_id[:12], session_id[:8], prompt_message_id, trace_id,
    )
    run_manager.schedule_run(run.run_id)
    return _result(run, "enqueued")
