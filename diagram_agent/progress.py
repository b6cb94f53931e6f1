"""
Throttled, best-effort flushing of in-progress assistant text.
"""
import logging
import time
from typing import Protocol

from diagram_agent import run_ledger
from diagram_agent.models import AssistantPatch

logger = logging.getLogger(__name__)


class _Progress(Protocol):
    assistant_text: str
    reasoning_text: str


class ProgressPublisher:
    """Writes partial assistant text and reasoning to the ledger.

    Flushes at most once per ``interval`` seconds unless forced. Failures
    are logged and dropped; the terminal transition writes the final text.
    """

    def __init__(self, assistant_message_id: str, state: _Progress, interval: float):
        self.assistant_message_id = assistant_message_id
        self.state = state
        self.interval = interval
        self._last_flush = float("-inf")

    async def flush(self, force: bool = False) -> None:
        now = time.monotonic()
        if not force and now - self._last_flush < self.interval:
            return
        self._last_flush = now

        patch = AssistantPatch(content=self.state.assistant_text)
        if self.state.reasoning_text:
            patch.reasoning_summary = self.state.reasoning_text

        try:
            await run_ledger.update_assistant_progress(self.assistant_message_id, patch)
        except Exception:
            logger.warning(
                "Progress flush failed for message %s",
                self.assistant_message_id[:12], exc_info=True,
            )
