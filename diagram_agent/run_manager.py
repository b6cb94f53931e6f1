"""
Run manager: schedules agent driver tasks in the background.

Intake calls ``schedule_run`` after committing a new run. Each run gets
its own asyncio task; failures are logged so the request path is never
disrupted.
"""
import asyncio
import logging
from typing import Optional

from diagram_agent.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# In-memory state (resets on process restart)
# ---------------------------------------------------------------------------
_pending_tasks: dict[str, asyncio.Task] = {}
_driver = None


def configure(driver) -> None:
    """Install the driver used for scheduled runs (tests pass fakes)."""
    global _driver
    _driver = driver


def get_driver():
    """Return the configured driver, building the Claude-backed one lazily."""
    global _driver
    if _driver is None:
        from diagram_agent.agent_driver import AgentDriver
        from diagram_agent.claude_client import ClaudeModelSession
        from diagram_agent.diagram_tools import ClaudeDiagramTools

        _driver = AgentDriver(
            ClaudeModelSession(oauth_token=settings.claude_code_oauth_token),
            ClaudeDiagramTools().as_toolset(),
        )
    return _driver


def schedule_run(run_id: str) -> Optional[asyncio.Task]:
    """Start processing a run in the background."""
    if settings.disable_run_autorun:
        logger.info("Autorun disabled; run %s left for manual processing", run_id[:12])
        return None

    existing = _pending_tasks.get(run_id)
    if existing and not existing.done():
        return existing

    task = asyncio.create_task(_run_driver(run_id), name=f"run-{run_id[:12]}")
    _pending_tasks[run_id] = task
    return task


async def _run_driver(run_id: str) -> None:
    try:
        result = await get_driver().process_run(run_id)
        logger.info("Run %s finished: %s", run_id[:12], result.status)
    except asyncio.CancelledError:
        logger.debug("Run task cancelled for %s", run_id[:12])
    except Exception:
        logger.exception("Agent driver failed for run %s", run_id[:12])
    finally:
        _pending_tasks.pop(run_id, None)


async def wait_for_pending() -> None:
    """Wait until every scheduled run task has finished."""
    while _pending_tasks:
        await asyncio.gather(*list(_pending_tasks.values()), return_exceptions=True)


async def shutdown() -> None:
    """Cancel in-flight run tasks; the driver records them as errors."""
    tasks = list(_pending_tasks.values())
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    _pending_tasks.clear()
