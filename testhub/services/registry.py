from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from testhub.schemas import ACTIVE_STATES, RunStatus

LOGGER = logging.getLogger("testhub.registry")


class RunRegistry:
    """In-memory store of run status records keyed by run id.

    Writes are serialised through an internal lock. Records are returned by
    reference: the dispatcher worker that owns a run mutates it in place and
    readers observe the latest state.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: Dict[str, RunStatus] = {}

    def put(self, run_id: str, status: RunStatus) -> RunStatus:
        with self._lock:
            self._runs[run_id] = status
            return status

    def get(self, run_id: str) -> Optional[RunStatus]:
        return self._runs.get(run_id)

    def remove(self, run_id: str) -> bool:
        with self._lock:
            status = self._runs.get(run_id)
            if status is None:
                return False
            if status.state in ACTIVE_STATES:
                LOGGER.info("Refusing to remove run %s while %s", run_id, status.state.value)
                return False
            del self._runs[run_id]
            return True

    def list_all(self) -> List[RunStatus]:
        with self._lock:
            return list(self._runs.values())

    def list_active(self) -> List[RunStatus]:
        return [status for status in self.list_all() if status.state in ACTIVE_STATES]

    def __len__(self) -> int:
        return len(self._runs)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._runs
