"""Shared fixtures: every test gets a fresh SQLite database."""
import pytest

from diagram_agent import run_manager
from diagram_agent.config import settings
from diagram_agent.database import init_database
from diagram_agent.run_cache import latest_runs


@pytest.fixture
async def db_path(tmp_path, monkeypatch):
    """Point the service at a fresh SQLite file and keep runs from autostarting."""
    path = tmp_path / "diagram_agent.db"
    monkeypatch.setattr(settings, "database_path", str(path))
    monkeypatch.setattr(settings, "disable_run_autorun", True)
    await init_database()
    latest_runs.clear()
    yield path
    latest_runs.clear()
    run_manager.configure(None)
