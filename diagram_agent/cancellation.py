"""
Cancellation controller.

``request_stop`` only writes the signal to the ledger. A running driver
notices it through its ``StopPoller``, which cancels the run's
``CancellationToken`` at most one poll interval later.
"""
import asyncio
import logging
from typing import Optional

from diagram_agent import run_ledger
from diagram_agent.models import Run, StopResult, is_terminal
from diagram_agent.run_cache import latest_runs
from diagram_agent.session_manager import authorize_session

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-shot cancellation signal shared by a run's concurrent activities."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "stop-requested") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


async def _locate_run(session_id: str, prompt_message_id: str) -> Optional[Run]:
    run = await run_ledger.find_run(session_id, prompt_message_id)
    if run:
        return run

    # The caller's prompt id may not have reached the ledger yet; stop the
    # newest in-flight run instead.
    cached_run_id = latest_runs.get(session_id)
    if cached_run_id:
        cached = await run_ledger.get_run(cached_run_id)
        if cached and not is_terminal(cached.status):
            return cached

    return await run_ledger.latest_active_run(session_id)


async def request_stop(
    session_id: str, prompt_message_id: str, viewer_id: Optional[str] = None
) -> StopResult:
    """Mark a run as stop-requested.

    Raises SessionNotFound or Forbidden synchronously.
    """
    await authorize_session(session_id, viewer_id)

    run = await _locate_run(session_id, prompt_message_id)
    if run is None:
        logger.info("Stop requested for session %s but no run found", session_id[:8])
        return StopResult(status="not-found")

    run_status = await run_ledger.record_stop_request(run)
    logger.info(
        "Stop requested for run %s (prompt %s): status %s",
        run.run_id[:12], run.prompt_message_id, run_status.value,
    )
    return StopResult(
        status="requested",
        run_status=run_status,
        prompt_message_id=run.prompt_message_id,
    )


class StopPoller:
    """Periodically checks the ledger and cancels the token on a stop request."""

    def __init__(self, run_id: str, token: CancellationToken, interval: float):
        self.run_id = run_id
        self.token = token
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(
            self._poll(), name=f"stop-poller-{self.run_id[:12]}"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _poll(self) -> None:
        while not self.token.cancelled:
            await asyncio.sleep(self.interval)
            try:
                if await run_ledger.should_stop_run(self.run_id):
                    logger.info("Stop observed for run %s", self.run_id[:12])
                    self.token.cancel("stop-requested")
            except Exception:
                logger.exception("Stop poll failed for run %s", self.run_id[:12])
