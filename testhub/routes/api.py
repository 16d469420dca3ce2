from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Response

from testhub.schemas import (
    CombinedReportRequest,
    ReportLinkResponse,
    RunStatistics,
    RunStatus,
    RunSubmission,
    TestExecutionRequest,
)
from testhub.services.aggregator import parse_run_id
from testhub.services.dispatcher import Dispatcher, DispatcherDep

router = APIRouter(prefix="/api/v1/test", tags=["test-execution"])


def _require_run(dispatcher: Dispatcher, run_id: str) -> RunStatus:
    status = dispatcher.get_status(run_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return status


def _require_run_id(run_id: str) -> str:
    # Run ids name directories on disk; only canonical UUIDs reach the filesystem.
    if parse_run_id(run_id) != run_id:
        raise HTTPException(status_code=404, detail="Run not found")
    return run_id


@router.post("/execute", response_model=RunSubmission, status_code=202)
async def execute_tests(
    payload: TestExecutionRequest, dispatcher: Dispatcher = DispatcherDep
) -> RunSubmission:
    return dispatcher.queue_run(payload)


@router.get("/status/{run_id}", response_model=RunStatus)
async def get_run_status(run_id: str, dispatcher: Dispatcher = DispatcherDep) -> RunStatus:
    return _require_run(dispatcher, run_id)


@router.get("/active", response_model=List[RunStatus])
async def list_active_runs(dispatcher: Dispatcher = DispatcherDep) -> List[RunStatus]:
    return dispatcher.list_active()


@router.get("/report/{run_id}")
def get_raw_report(run_id: str, dispatcher: Dispatcher = DispatcherDep) -> Any:
    result = dispatcher.get_raw_result(_require_run_id(run_id))
    if result is None:
        raise HTTPException(status_code=404, detail="Report not found")
    return result


# Reports -------------------------------------------------------------------------
@router.post("/report/{run_id}/generate", response_model=ReportLinkResponse)
def generate_run_report(run_id: str, dispatcher: Dispatcher = DispatcherDep) -> ReportLinkResponse:
    url = dispatcher.aggregator.generate_run_report(_require_run_id(run_id))
    if not url:
        raise HTTPException(status_code=404, detail="No results available for run")
    return ReportLinkResponse(report_url=url, run_id=run_id, message="Report generated")


@router.get("/report/{run_id}/url")
def get_run_report_url(run_id: str, dispatcher: Dispatcher = DispatcherDep) -> Dict[str, str]:
    url = dispatcher.aggregator.run_report_url(_require_run_id(run_id))
    if not url:
        raise HTTPException(status_code=404, detail="Report not generated")
    return {"url": url}


@router.get("/runs", response_model=List[str])
async def list_available_runs(dispatcher: Dispatcher = DispatcherDep) -> List[str]:
    return dispatcher.aggregator.list_available_runs()


@router.post("/combined-report/generate", response_model=ReportLinkResponse)
def generate_combined_report(
    payload: Optional[CombinedReportRequest] = None, dispatcher: Dispatcher = DispatcherDep
) -> ReportLinkResponse:
    run_ids = payload.run_ids if payload else None
    url = dispatcher.aggregator.generate_combined_report(run_ids)
    if not url:
        raise HTTPException(status_code=404, detail="Combined report could not be generated")
    return ReportLinkResponse(report_url=url, message="Combined report generated")


# Lifecycle -----------------------------------------------------------------------
@router.delete("/cancel/{run_id}", response_model=RunStatus)
async def cancel_run(run_id: str, dispatcher: Dispatcher = DispatcherDep) -> RunStatus:
    status = dispatcher.cancel_run(run_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Run not found or already finished")
    return status


@router.delete("/{run_id}", status_code=204)
def delete_run(run_id: str, dispatcher: Dispatcher = DispatcherDep) -> Response:
    if not dispatcher.delete_run(_require_run_id(run_id)):
        raise HTTPException(status_code=404, detail="Run not found or still active")
    return Response(status_code=204)


@router.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "UP"}


@router.get("/statistics", response_model=RunStatistics)
async def get_statistics(
    environment: Optional[str] = None, dispatcher: Dispatcher = DispatcherDep
) -> RunStatistics:
    return dispatcher.get_statistics(environment)
