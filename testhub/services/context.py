from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from testhub.services.artifacts import ArtifactStore


@dataclass(frozen=True)
class RunContext:
    """Everything an engine invocation needs to know about the run it serves.

    Built once per run by the dispatcher and passed explicitly down the call
    chain; nothing is read from thread-local or process-global state.
    """

    run_id: str
    output_base: Path
    results_dir: Path
    detail_report_dir: Path
    axe_result_dir: Path
    screenshots_dir: Path
    environment: Dict[str, str] = field(default_factory=dict)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    deadline: Optional[float] = None

    @classmethod
    def create(
        cls,
        run_id: str,
        store: ArtifactStore,
        *,
        environment: Optional[Dict[str, str]] = None,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> "RunContext":
        return cls(
            run_id=run_id,
            output_base=store.run_dir(run_id),
            results_dir=store.results_dir(run_id),
            detail_report_dir=store.detail_report_dir(run_id),
            axe_result_dir=store.axe_result_dir(run_id),
            screenshots_dir=store.screenshots_dir(run_id),
            environment=dict(environment or {}),
            cancel_event=cancel_event or threading.Event(),
            deadline=deadline,
        )

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def expired(self, now: Optional[float] = None) -> bool:
        if self.deadline is None:
            return False
        return (time.time() if now is None else now) > self.deadline

    def prepare_directories(self) -> None:
        for path in (
            self.output_base,
            self.results_dir,
            self.detail_report_dir,
            self.axe_result_dir,
            self.screenshots_dir,
        ):
            path.mkdir(parents=True, exist_ok=True)
