"""
Bounded in-process cache of the latest run id per session.

Used as a fast path when a stop request arrives with a prompt id the ledger
has not seen yet. Entries are hints only: callers re-read the run from the
ledger before acting on it. Resets on process restart.
"""
import logging
from collections import OrderedDict
from typing import Optional

from diagram_agent.config import settings

logger = logging.getLogger(__name__)


class LatestRunCache:
    """LRU map of session id -> most recently enqueued run id."""

    def __init__(self, max_entries: int):
        self.max_entries = max_entries
        self._entries: OrderedDict[str, str] = OrderedDict()

    def remember(self, session_id: str, run_id: str) -> None:
        self._entries[session_id] = run_id
        self._entries.move_to_end(session_id)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted latest-run entry for session %s", evicted[:8])

    def get(self, session_id: str) -> Optional[str]:
        run_id = self._entries.get(session_id)
        if run_id is not None:
            self._entries.move_to_end(session_id)
        return run_id

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


latest_runs = LatestRunCache(settings.active_run_cache_size)
