from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

ENVIRONMENTS = ("dev", "staging", "prod", "performance")


class RunState(str, Enum):
    queued = "QUEUED"
    running = "RUNNING"
    completed = "COMPLETED"
    failed = "FAILED"
    cancelled = "CANCELLED"


ACTIVE_STATES = frozenset({RunState.queued, RunState.running})
TERMINAL_STATES = frozenset({RunState.completed, RunState.failed, RunState.cancelled})


class Priority(str, Enum):
    low = "LOW"
    normal = "NORMAL"
    high = "HIGH"
    critical = "CRITICAL"


def normalize_tag(label: str) -> str:
    trimmed = label.strip()
    if not trimmed:
        raise ValueError("Tag labels must not be blank.")
    return trimmed if trimmed.startswith("@") else f"@{trimmed}"


class TestExecutionRequest(BaseModel):
    __test__ = False

    environment: str = Field(..., description="Target environment: dev, staging, prod or performance.")
    tags: List[str] = Field(..., min_length=1, description="Tag labels selecting the tests to run.")
    features: Optional[List[str]] = None
    environment_variables: Optional[Dict[str, str]] = None
    browser: Optional[str] = None
    headless: bool = True
    parallel_count: int = Field(default=5, ge=1)
    retry_failed_tests: bool = True
    max_retries: int = Field(default=2, ge=0)
    timeout_minutes: int = Field(default=30, ge=1)
    priority: Priority = Priority.normal
    initiator: Optional[str] = None
    project_key: Optional[str] = None

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, value: str) -> str:
        if value not in ENVIRONMENTS:
            raise ValueError("Environment must be one of: " + ", ".join(ENVIRONMENTS))
        return value

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, value: List[str]) -> List[str]:
        return [normalize_tag(tag) for tag in value]

    @property
    def tag_expression(self) -> str:
        return " or ".join(self.tags)

    @property
    def feature_selector(self) -> Optional[str]:
        if not self.features:
            return None
        return ",".join(self.features)


class RunStatus(BaseModel):
    run_id: str
    state: RunState = RunState.queued
    environment: str
    tag_expression: Optional[str] = None
    feature_selector: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[str] = None
    progress: int = Field(default=0, ge=0, le=100)
    current_phase: Optional[str] = None
    error_message: Optional[str] = None
    jira_ticket_key: Optional[str] = None
    report_links: Dict[str, str] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class RunSubmission(BaseModel):
    run_id: str
    state: RunState
    environment: str
    message: str
    timestamp: datetime
    tags: Optional[str] = None
    status_url: str


class RunStatistics(BaseModel):
    environment: Optional[str] = None
    total_runs: int = 0
    completed_runs: int = 0
    failed_runs: int = 0
    running_runs: int = 0
    queued_runs: int = 0
    cancelled_runs: int = 0
    success_rate: float = 0.0
    max_concurrent_runs: int


class CombinedReportRequest(BaseModel):
    run_ids: Optional[List[str]] = None


class ReportLinkResponse(BaseModel):
    report_url: str
    run_id: Optional[str] = None
    message: str
