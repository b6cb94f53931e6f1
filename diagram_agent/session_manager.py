"""
Session manager for CRUD operations on diagram sessions.
"""
import json
import secrets
from typing import Optional

import aiosqlite

from diagram_agent.database import get_db, new_id, now_ms
from diagram_agent.exceptions import Forbidden, SessionNotFound
from diagram_agent.models import Scene, Session


def _row_to_session(row: aiosqlite.Row) -> Session:
    data = dict(row)
    raw_scene = data.pop("latest_scene")
    scene = None
    if raw_scene:
        stored = json.loads(raw_scene)
        scene = Scene(
            elements=stored.get("elements") or [],
            app_state=stored.get("appState") or {},
        )
    return Session(**data, latest_scene=scene)


async def create_session(owner_id: Optional[str] = None) -> Session:
    """Create a new empty session at scene version 0."""
    now = now_ms()
    session_id = secrets.token_hex(16)

    async with get_db() as db:
        await db.execute(
            """
            INSERT INTO sessions (session_id, owner_id, latest_scene_version, created_at, updated_at)
            VALUES (?, ?, 0, ?, ?)
            """,
            (session_id, owner_id, now, now)
        )
        await db.commit()

    return Session(
        session_id=session_id,
        owner_id=owner_id,
        latest_scene_version=0,
        created_at=now,
        updated_at=now,
    )


async def fetch_session(db: aiosqlite.Connection, session_id: str) -> Optional[Session]:
    """Read a session on an already-open connection."""
    cursor = await db.execute(
        "SELECT * FROM sessions WHERE session_id = ?",
        (session_id,)
    )
    row = await cursor.fetchone()
    return _row_to_session(row) if row else None


async def get_session(session_id: str) -> Optional[Session]:
    """Get a session with its latest scene."""
    async with get_db() as db:
        return await fetch_session(db, session_id)


def check_owner(session: Session, viewer_id: Optional[str]) -> None:
    """Raise Forbidden when an owned session is accessed by someone else."""
    if session.owner_id and session.owner_id != viewer_id:
        raise Forbidden(session.session_id)


async def authorize_session(session_id: str, viewer_id: Optional[str] = None) -> Session:
    """Load a session for a mutation, raising if missing or not owned."""
    session = await get_session(session_id)
    if session is None:
        raise SessionNotFound(session_id)
    check_owner(session, viewer_id)
    return session


async def ensure_thread(db: aiosqlite.Connection, session: Session) -> str:
    """Return the session's thread id, creating it on first use.

    Runs on the caller's connection so it joins the caller's transaction.
    """
    if session.thread_id:
        return session.thread_id

    thread_id = new_id("thread")
    await db.execute(
        "UPDATE sessions SET thread_id = ?, updated_at = ? WHERE session_id = ? AND thread_id IS NULL",
        (thread_id, now_ms(), session.session_id)
    )
    cursor = await db.execute(
        "SELECT thread_id FROM sessions WHERE session_id = ?",
        (session.session_id,)
    )
    row = await cursor.fetchone()
    return row["thread_id"]
