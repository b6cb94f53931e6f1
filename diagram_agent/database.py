"""
SQLite database initialization and connection management.
"""
import time
import uuid
from pathlib import Path

import aiosqlite

from diagram_agent.config import settings


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    """Opaque identifier such as ``msg_3f2a...``."""
    return f"{prefix}_{uuid.uuid4().hex}"


def get_db():
    """Get database connection as an async context manager.

    The path is read from settings on every call so tests can point the
    service at a temporary file.
    """
    class DBConnection:
        async def __aenter__(self):
            self.conn = await aiosqlite.connect(settings.database_path)
            self.conn.row_factory = aiosqlite.Row
            return self.conn

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            await self.conn.close()

    return DBConnection()


async def init_database():
    """Initialize database with required tables and indexes."""
    Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)

    async with aiosqlite.connect(settings.database_path) as db:
        await db.execute("PRAGMA journal_mode=WAL")

        await db.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                owner_id TEXT,
                latest_scene TEXT,
                latest_scene_version INTEGER NOT NULL DEFAULT 0,
                thread_id TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                owner_id TEXT,
                prompt_message_id TEXT NOT NULL,
                prompt TEXT NOT NULL,
                trace_id TEXT NOT NULL,
                user_message_id TEXT NOT NULL,
                assistant_message_id TEXT NOT NULL,
                status TEXT NOT NULL,
                stop_requested INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                applied_scene_version INTEGER,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                finished_at INTEGER,
                FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                message_id TEXT NOT NULL UNIQUE,
                session_id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                run_id TEXT,
                prompt_message_id TEXT,
                role TEXT NOT NULL,
                message_type TEXT NOT NULL,
                status TEXT,
                content TEXT,
                reasoning_summary TEXT,
                tool_name TEXT,
                tool_call_id TEXT,
                tool_input TEXT,
                tool_output TEXT,
                trace_id TEXT,
                error TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
            )
        """)

        await db.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_runs_session_prompt
            ON runs(session_id, prompt_message_id)
        """)

        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_session_created_at
            ON runs(session_id, created_at)
        """)

        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_session_created_at
            ON messages(session_id, created_at)
        """)

        await db.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_run_tool_call
            ON messages(run_id, tool_call_id)
        """)

        await db.commit()
