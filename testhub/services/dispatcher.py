from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends

from testhub.config import Settings, get_settings
from testhub.schemas import (
    ACTIVE_STATES,
    RunState,
    RunStatistics,
    RunStatus,
    RunSubmission,
    TestExecutionRequest,
)
from testhub.services.admission import AdmissionGate
from testhub.services.aggregator import ReportAggregator
from testhub.services.artifacts import ArtifactStore
from testhub.services.context import RunContext
from testhub.services.engine import (
    DETAIL_HTML,
    EngineResult,
    RunInterrupted,
    TestEngine,
    build_engine,
)
from testhub.services.integrations import IssueTrackerHook
from testhub.services.manifest import write_run_manifest
from testhub.services.registry import RunRegistry
from testhub.services.renderer import AllureCliRenderer

LOGGER = logging.getLogger("testhub.dispatcher")

CANCELLED_BY_USER = "Cancelled by user"
INTERRUPTED_WHILE_QUEUED = "Interrupted while waiting in queue"
BACKEND_ONLY_TAGS = frozenset({"backend", "api-test"})

_TRANSITIONS = {
    RunState.queued: {RunState.running, RunState.cancelled},
    RunState.running: {RunState.completed, RunState.failed, RunState.cancelled},
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _format_duration(start: Optional[datetime], end: Optional[datetime]) -> Optional[str]:
    if start is None or end is None:
        return None
    seconds = max(0, int((end - start).total_seconds()))
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


def is_backend_only(tags: List[str]) -> bool:
    if not tags:
        return False
    return all(tag.lstrip("@").lower() in BACKEND_ONLY_TAGS for tag in tags)


@dataclass
class RunHandle:
    run_id: str
    request: TestExecutionRequest
    cancel_event: threading.Event = field(default_factory=threading.Event)
    context: Optional[RunContext] = None


class Dispatcher:
    """Accept run requests and drive each run through its lifecycle.

    A fixed pool of worker threads drains an unbounded queue; the admission
    gate bounds how many batches execute at once. Every state change goes
    through ``_transition`` so a run only ever moves forward.
    """

    def __init__(
        self,
        engine: TestEngine,
        artifacts: ArtifactStore,
        aggregator: ReportAggregator,
        *,
        registry: Optional[RunRegistry] = None,
        max_concurrent_runs: int = 5,
        issue_tracker: Optional[IssueTrackerHook] = None,
        watchdog_interval: float = 5.0,
        auto_start: bool = True,
    ) -> None:
        self._engine = engine
        self._artifacts = artifacts
        self._aggregator = aggregator
        self._registry = registry or RunRegistry()
        self._max_concurrent = max_concurrent_runs
        self._gate = AdmissionGate(max_concurrent_runs)
        self._issue_tracker = issue_tracker or IssueTrackerHook(None)
        self._queue: "queue.Queue[Optional[str]]" = queue.Queue()
        self._handles: Dict[str, RunHandle] = {}
        self._lock = threading.RLock()
        self._workers: List[threading.Thread] = []
        self._watchdog_interval = max(0.05, float(watchdog_interval))
        self._watchdog_stop = threading.Event()
        self._watchdog: Optional[threading.Thread] = None
        if auto_start:
            self.start()

    @property
    def registry(self) -> RunRegistry:
        return self._registry

    @property
    def artifacts(self) -> ArtifactStore:
        return self._artifacts

    @property
    def aggregator(self) -> ReportAggregator:
        return self._aggregator

    @property
    def gate(self) -> AdmissionGate:
        return self._gate

    @property
    def max_concurrent_runs(self) -> int:
        return self._max_concurrent

    # ------------------------------------------------------------------ lifecycle
    def start(self) -> None:
        self._ensure_workers()
        self._ensure_watchdog()

    def _ensure_workers(self) -> None:
        with self._lock:
            self._workers = [worker for worker in self._workers if worker.is_alive()]
            while len(self._workers) < self._max_concurrent:
                worker = threading.Thread(
                    target=self._run_loop,
                    daemon=True,
                    name=f"test-executor-{len(self._workers) + 1}",
                )
                worker.start()
                self._workers.append(worker)

    def _ensure_watchdog(self) -> None:
        if self._watchdog and self._watchdog.is_alive():
            return
        if self._watchdog_stop.is_set():
            self._watchdog_stop.clear()
        self._watchdog = threading.Thread(
            target=self._watchdog_loop,
            daemon=True,
            name="test-executor-watchdog",
        )
        self._watchdog.start()

    def shutdown(self, timeout: float = 10.0) -> None:
        self._watchdog_stop.set()
        with self._lock:
            handles = list(self._handles.values())
            workers = list(self._workers)
        for handle in handles:
            handle.cancel_event.set()
            if handle.context is not None:
                self._terminate_engine(handle.context)
        for _ in workers:
            self._queue.put(None)
        for worker in workers:
            worker.join(timeout=timeout)
        if self._watchdog:
            self._watchdog.join(timeout=timeout)
        LOGGER.info("Dispatcher stopped")

    # ------------------------------------------------------------------ submission
    def queue_run(self, request: TestExecutionRequest) -> RunSubmission:
        run_id = str(uuid.uuid4())
        status = RunStatus(
            run_id=run_id,
            state=RunState.queued,
            environment=request.environment,
            tag_expression=request.tag_expression,
            feature_selector=request.feature_selector,
            progress=0,
            current_phase=RunState.queued.value,
            metadata={
                "priority": request.priority.value,
                "max_retries": request.max_retries,
                "timeout_minutes": request.timeout_minutes,
            },
        )
        if request.initiator:
            status.metadata["initiator"] = request.initiator
        self._registry.put(run_id, status)
        with self._lock:
            self._handles[run_id] = RunHandle(run_id=run_id, request=request)
        self._queue.put(run_id)

        LOGGER.info(
            "Test execution queued: run_id=%s, tags=%s, environment=%s",
            run_id,
            request.tag_expression,
            request.environment,
        )
        return RunSubmission(
            run_id=run_id,
            state=RunState.queued,
            environment=request.environment,
            message="Test execution queued successfully",
            timestamp=_now(),
            tags=request.tag_expression,
            status_url=f"/api/v1/test/status/{run_id}",
        )

    def execute_now(self, run_id: str) -> None:
        """Process a queued run synchronously in the calling thread."""
        self._process_run(run_id)

    def _run_loop(self) -> None:
        while True:
            run_id = self._queue.get()
            try:
                if run_id is None:
                    return
                self._process_run(run_id)
            except Exception:
                LOGGER.exception("Unhandled error while processing run %s", run_id)
            finally:
                self._queue.task_done()

    # ------------------------------------------------------------------ state machine
    def _transition(
        self,
        status: RunStatus,
        new_state: RunState,
        *,
        error_message: Optional[str] = None,
        report_links: Optional[Dict[str, str]] = None,
    ) -> bool:
        with self._lock:
            current = status.state
            if new_state not in _TRANSITIONS.get(current, set()):
                LOGGER.debug(
                    "Ignoring transition %s -> %s for run %s",
                    current.value,
                    new_state.value,
                    status.run_id,
                )
                return False
            now = _now()
            if new_state is RunState.running:
                status.start_time = now
                status.current_phase = "EXECUTING"
            else:
                status.end_time = now
                status.duration = _format_duration(status.start_time, now)
                status.current_phase = new_state.value
                if report_links is not None:
                    status.report_links = dict(report_links)
                if new_state is RunState.completed:
                    status.progress = 100
            if error_message is not None:
                status.error_message = error_message
            status.state = new_state
        LOGGER.info("Run %s: %s -> %s", status.run_id, current.value, new_state.value)
        return True

    def _process_run(self, run_id: str) -> None:
        status = self._registry.get(run_id)
        with self._lock:
            handle = self._handles.get(run_id)
        if status is None or handle is None:
            LOGGER.info("Run %s is no longer pending; skipping", run_id)
            return
        if status.state is not RunState.queued:
            LOGGER.info("Run %s left the queue as %s; skipping", run_id, status.state.value)
            self._drop_handle(run_id)
            return

        if not self._gate.acquire(handle.cancel_event):
            self._transition(status, RunState.cancelled, error_message=INTERRUPTED_WHILE_QUEUED)
            self._drop_handle(run_id)
            return

        try:
            self._execute(status, handle)
        finally:
            self._gate.release()
            self._drop_handle(run_id)

    def _execute(self, status: RunStatus, handle: RunHandle) -> None:
        request = handle.request
        deadline = time.time() + request.timeout_minutes * 60
        context = RunContext.create(
            status.run_id,
            self._artifacts,
            environment=self._engine_environment(request),
            cancel_event=handle.cancel_event,
            deadline=deadline,
        )
        with self._lock:
            handle.context = context
        if not self._transition(status, RunState.running):
            return
        status.metadata["deadline"] = datetime.fromtimestamp(deadline, tz=timezone.utc).isoformat()

        try:
            result = self._engine.run(context, status.tag_expression, status.feature_selector)
        except RunInterrupted:
            LOGGER.info("Engine for run %s stopped after cancellation", status.run_id)
            self._transition(status, RunState.cancelled, error_message=CANCELLED_BY_USER)
            return
        except Exception as exc:
            LOGGER.error("Test execution error: run_id=%s", status.run_id, exc_info=True)
            status.metadata["failure_kind"] = "engine"
            self._transition(status, RunState.failed, error_message=str(exc) or exc.__class__.__name__)
            return

        if status.state is not RunState.running:
            LOGGER.info("Run %s finished engine work after leaving RUNNING (%s)", status.run_id, status.state.value)
            return
        self._finalize(status, request, result)

    def _finalize(self, status: RunStatus, request: TestExecutionRequest, result: EngineResult) -> None:
        run_id = status.run_id
        links = self._report_links(run_id, request)
        write_run_manifest(
            self._artifacts.results_dir(run_id),
            run_id=run_id,
            environment=request.environment,
            tags=request.tags,
            report_url=self._artifacts.url(self._artifacts.report_dir(run_id) / "index.html"),
        )
        report_url = self._aggregator.generate_run_report(run_id)
        if report_url:
            links["allure"] = report_url

        with self._lock:
            still_running = status.state is RunState.running
        if not still_running:
            LOGGER.info("Run %s left RUNNING before publishing (%s)", run_id, status.state.value)
            return
        if not result.success:
            status.metadata["failure_kind"] = "tests"
        if self._issue_tracker.enabled:
            report = self._aggregator.raw_result(run_id)
            self._issue_tracker.on_run_finished(status, request, result.exit_code, links, report)

        if result.success:
            self._transition(status, RunState.completed, report_links=links)
        else:
            self._transition(
                status,
                RunState.failed,
                error_message=f"Tests finished with exit code: {result.exit_code}",
                report_links=links,
            )
        LOGGER.info("Test execution finished: run_id=%s, exit_code=%s", run_id, result.exit_code)

    def _report_links(self, run_id: str, request: TestExecutionRequest) -> Dict[str, str]:
        links = {
            "detail": self._artifacts.url(self._artifacts.detail_report_dir(run_id) / DETAIL_HTML),
        }
        if not is_backend_only(request.tags):
            links["accessibility"] = self._artifacts.url(self._artifacts.axe_result_dir(run_id) / "index.html")
        return links

    @staticmethod
    def _engine_environment(request: TestExecutionRequest) -> Dict[str, str]:
        env = dict(request.environment_variables or {})
        env["TEST_ENVIRONMENT"] = request.environment
        if request.browser:
            env["BROWSER"] = request.browser
        env["BROWSER_HEADLESS"] = "true" if request.headless else "false"
        return env

    def _drop_handle(self, run_id: str) -> None:
        with self._lock:
            self._handles.pop(run_id, None)

    def _terminate_engine(self, context: RunContext) -> None:
        try:
            self._engine.terminate(context)
        except Exception as exc:
            LOGGER.warning("Failed to interrupt engine for run %s: %s", context.run_id, exc)

    # ------------------------------------------------------------------ cancellation
    def cancel_run(self, run_id: str) -> Optional[RunStatus]:
        return self._cancel(run_id, CANCELLED_BY_USER)

    def _cancel(self, run_id: str, reason: str, *, timed_out: bool = False) -> Optional[RunStatus]:
        status = self._registry.get(run_id)
        with self._lock:
            handle = self._handles.get(run_id)
            if status is None or handle is None or status.state not in ACTIVE_STATES:
                return None
            handle.cancel_event.set()
            if timed_out:
                status.metadata["timed_out"] = True
            cancelled = self._transition(status, RunState.cancelled, error_message=reason)
            self._handles.pop(run_id, None)
            context = handle.context
        if context is not None:
            self._terminate_engine(context)
        if not cancelled:
            return None
        LOGGER.info("Test execution cancelled: run_id=%s (%s)", run_id, reason)
        return status

    def _watchdog_loop(self) -> None:
        while not self._watchdog_stop.wait(self._watchdog_interval):
            try:
                self.check_timeouts()
            except Exception:
                LOGGER.exception("Watchdog pass failed")

    def check_timeouts(self, now: Optional[float] = None) -> List[str]:
        """Cancel every running run whose deadline has passed."""
        with self._lock:
            candidates = [
                (handle.run_id, handle.request.timeout_minutes)
                for handle in self._handles.values()
                if handle.context is not None and handle.context.expired(now)
            ]
        expired: List[str] = []
        for run_id, minutes in candidates:
            status = self._registry.get(run_id)
            if status is None or status.state is not RunState.running:
                continue
            LOGGER.warning("Run %s exceeded its %s minute timeout", run_id, minutes)
            if self._cancel(run_id, f"Execution timed out after {minutes} minutes", timed_out=True):
                expired.append(run_id)
        return expired

    # ------------------------------------------------------------------ queries
    def get_status(self, run_id: str) -> Optional[RunStatus]:
        return self._registry.get(run_id)

    def list_active(self) -> List[RunStatus]:
        return self._registry.list_active()

    def get_raw_result(self, run_id: str) -> Optional[Any]:
        return self._aggregator.raw_result(run_id)

    def delete_run(self, run_id: str) -> bool:
        if not self._registry.remove(run_id):
            return False
        self._artifacts.purge_run(run_id)
        LOGGER.info("Deleted run %s and its artifacts", run_id)
        return True

    def get_statistics(self, environment: Optional[str] = None) -> RunStatistics:
        runs = [
            status
            for status in self._registry.list_all()
            if environment is None or status.environment == environment
        ]
        counts = {state: 0 for state in RunState}
        for status in runs:
            counts[status.state] += 1
        total = len(runs)
        completed = counts[RunState.completed]
        return RunStatistics(
            environment=environment,
            total_runs=total,
            completed_runs=completed,
            failed_runs=counts[RunState.failed],
            running_runs=counts[RunState.running],
            queued_runs=counts[RunState.queued],
            cancelled_runs=counts[RunState.cancelled],
            success_rate=(completed * 100.0 / total) if total else 0.0,
            max_concurrent_runs=self._max_concurrent,
        )


def build_dispatcher(settings: Settings) -> Dispatcher:
    artifacts = ArtifactStore(root=settings.test_results_path, base_url=settings.reports_base_url)
    aggregator = ReportAggregator(artifacts, AllureCliRenderer(settings.allure_command))
    return Dispatcher(
        build_engine(settings),
        artifacts,
        aggregator,
        max_concurrent_runs=settings.max_concurrent_runs,
        issue_tracker=IssueTrackerHook.from_settings(settings),
        watchdog_interval=settings.watchdog_interval_seconds,
    )


_dispatcher: Optional[Dispatcher] = None


def get_dispatcher() -> Dispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = build_dispatcher(get_settings())
    return _dispatcher


def shutdown_dispatcher() -> None:
    global _dispatcher
    if _dispatcher is not None:
        _dispatcher.shutdown()
        _dispatcher = None


DispatcherDep = Depends(get_dispatcher)
