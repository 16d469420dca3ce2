from __future__ import annotations

import base64
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional

from testhub.config import Settings
from testhub.schemas import RunStatus, TestExecutionRequest

LOGGER = logging.getLogger("testhub.integrations")

JIRA_API_BASE = "/rest/api/2"
ZEPHYR_API_BASE = "/rest/atm/1.0"
ZEPHYR_FOLDER_TYPE = "TEST_RUN"
CYCLE_DATE_FORMAT = "%Y%m%d"
TEST_CASE_TAG_PREFIX = "T-"


class _BasicAuthClient:
    """JSON-over-HTTP with basic auth; every failure is logged and yields ``None``."""

    service = "http"

    def __init__(self, base_url: str, username: str, api_token: str, *, timeout: int = 15) -> None:
        self._base_url = base_url.rstrip("/")
        credentials = f"{username}:{api_token}".encode("utf-8")
        self._auth_header = "Basic " + base64.b64encode(credentials).decode("ascii")
        self._timeout = timeout

    def _request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        *,
        query: Optional[Mapping[str, str]] = None,
        operation: str,
    ) -> Optional[Any]:
        url = f"{self._base_url}{path}"
        if query:
            url = f"{url}?{urllib.parse.urlencode(query)}"
        body = json.dumps(payload).encode("utf-8") if payload is not None else None
        request = urllib.request.Request(
            url,
            data=body,
            method=method,
            headers={
                "Authorization": self._auth_header,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            LOGGER.error("%s %s failed: status=%s, body=%s", self.service, operation, exc.code, exc.read()[:2000])
            return None
        except urllib.error.URLError as exc:
            LOGGER.error("%s %s failed: %s", self.service, operation, exc)
            return None
        if not raw.strip():
            return {}
        try:
            return json.loads(raw)
        except ValueError as exc:
            LOGGER.error("%s %s returned invalid JSON: %s", self.service, operation, exc)
            return None


class JiraClient(_BasicAuthClient):
    """Minimal Jira REST client used to file defects for failed runs."""

    service = "Jira"

    def create_issue(self, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        payload = self._request("POST", f"{JIRA_API_BASE}/issue", {"fields": fields}, operation="createIssue")
        if not isinstance(payload, dict):
            return None
        if payload.get("key"):
            LOGGER.info("Jira ticket created: key=%s", payload["key"])
        return payload


class ZephyrScaleClient(_BasicAuthClient):
    """Zephyr Scale (ATM) client: folders, test cycles and execution results."""

    service = "Zephyr"

    def get_folders(self, project_key: str, folder_type: str = ZEPHYR_FOLDER_TYPE) -> List[Dict[str, Any]]:
        payload = self._request(
            "GET",
            f"{ZEPHYR_API_BASE}/folder",
            query={"projectKey": project_key, "folderType": folder_type},
            operation="getFolders",
        )
        return payload if isinstance(payload, list) else []

    def create_folder(
        self, name: str, project_key: str, folder_type: str = ZEPHYR_FOLDER_TYPE
    ) -> Optional[Dict[str, Any]]:
        payload = self._request(
            "POST",
            f"{ZEPHYR_API_BASE}/folder",
            {"name": name, "projectKey": project_key, "folderType": folder_type},
            operation="createFolder",
        )
        return payload if isinstance(payload, dict) else None

    def create_test_cycle(self, body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        payload = self._request("POST", f"{ZEPHYR_API_BASE}/testrun", body, operation="createTestCycle")
        if not isinstance(payload, dict) or not payload.get("key"):
            return None
        LOGGER.info("Zephyr cycle created: key=%s, id=%s", payload["key"], payload.get("id"))
        return payload

    def upload_test_results(self, cycle_key: str, executions: List[Dict[str, Any]]) -> bool:
        path = f"{ZEPHYR_API_BASE}/testrun/{urllib.parse.quote(cycle_key)}/testresults"
        if self._request("POST", path, executions, operation="uploadTestResults") is None:
            return False
        for execution in executions:
            LOGGER.info(
                "Zephyr execution uploaded: testCaseKey=%s, status=%s",
                execution["testCaseKey"],
                execution["status"],
            )
        return True


def resolve_folder_name(tags: Iterable[str]) -> str:
    for tag in tags:
        normalized = tag.lstrip("@").lower()
        if normalized in {"smoketest", "smoke"}:
            return "SmokeTest"
        if normalized == "frontend":
            return "Frontend"
        if normalized == "backend":
            return "Backend"
    return "Default"


def _tag_names(raw_tags: Any) -> List[str]:
    names = []
    for tag in raw_tags or []:
        name = tag.get("name") if isinstance(tag, dict) else tag
        if isinstance(name, str):
            names.append(name.lstrip("@"))
    return names


def _scenario_passed(element: Dict[str, Any]) -> bool:
    steps = element.get("steps") or []
    if not steps:
        return False
    return all(isinstance(step.get("result"), dict) and step["result"].get("status") == "passed" for step in steps)


def build_executions(report: Any, run_id: str, exit_code: int) -> List[Dict[str, Any]]:
    """One execution per scenario tagged ``@T-<key>``, else one for the whole run."""
    executions: List[Dict[str, Any]] = []
    features = report if isinstance(report, list) else []
    for feature in features:
        if not isinstance(feature, dict):
            continue
        for element in feature.get("elements") or []:
            if not isinstance(element, dict):
                continue
            key = next((name for name in _tag_names(element.get("tags")) if name.startswith(TEST_CASE_TAG_PREFIX)), None)
            if key is None:
                continue
            executions.append({"testCaseKey": key, "status": "Pass" if _scenario_passed(element) else "Fail"})
    if executions:
        return executions
    return [
        {
            "testCaseKey": run_id[:8],
            "status": "Pass" if exit_code == 0 else "Fail",
            "comment": f"Run: {run_id}",
        }
    ]


class IssueTrackerHook:
    """Publishes a finished run to test management and files a bug when it failed.

    Runs before the run's terminal transition. Nothing here may fail the run:
    every error is logged and swallowed at this boundary.
    """

    def __init__(
        self,
        client: Optional[JiraClient],
        *,
        enabled: bool = False,
        default_project_key: Optional[str] = None,
        issue_type: str = "Bug",
        zephyr: Optional[ZephyrScaleClient] = None,
        zephyr_enabled: bool = False,
    ) -> None:
        self._client = client
        self._enabled = enabled and client is not None
        self._zephyr = zephyr
        self._zephyr_enabled = zephyr_enabled and zephyr is not None
        self._default_project_key = default_project_key
        self._issue_type = issue_type

    @classmethod
    def from_settings(cls, settings: Settings) -> "IssueTrackerHook":
        client = None
        if settings.jira_enabled and settings.jira_base_url:
            client = JiraClient(settings.jira_base_url, settings.jira_username, settings.jira_api_token)
        zephyr = None
        if settings.zephyr_enabled and settings.zephyr_base_url:
            zephyr = ZephyrScaleClient(settings.zephyr_base_url, settings.zephyr_username, settings.zephyr_api_token)
        return cls(
            client,
            enabled=settings.jira_enabled,
            default_project_key=settings.zephyr_project_key or settings.jira_project_key,
            issue_type=settings.jira_issue_type,
            zephyr=zephyr,
            zephyr_enabled=settings.zephyr_enabled,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled or self._zephyr_enabled

    def on_run_finished(
        self,
        status: RunStatus,
        request: TestExecutionRequest,
        exit_code: int,
        report_links: Mapping[str, str],
        report: Any = None,
    ) -> None:
        if not self.enabled:
            return
        project_key = request.project_key or self._default_project_key
        if not project_key:
            LOGGER.debug("No project key available; skipping integrations for run %s", status.run_id)
            return
        if self._zephyr_enabled:
            try:
                self._upload_results(status, request, project_key, exit_code, report)
            except Exception:
                LOGGER.exception("Test management upload failed for run %s", status.run_id)
        if self._enabled and exit_code != 0:
            try:
                self._file_ticket(status, request, project_key, exit_code, report_links)
            except Exception:
                LOGGER.exception("Issue tracker upload failed for run %s", status.run_id)

    # ------------------------------------------------------------------ zephyr
    def _upload_results(
        self,
        status: RunStatus,
        request: TestExecutionRequest,
        project_key: str,
        exit_code: int,
        report: Any,
    ) -> None:
        folder_id = self._folder_id(project_key, resolve_folder_name(request.tags))
        cycle_name = " ".join([date.today().strftime(CYCLE_DATE_FORMAT), status.run_id[:8], *request.tags])
        body: Dict[str, Any] = {"name": cycle_name, "projectKey": project_key}
        if folder_id is not None:
            body["folderId"] = folder_id
        cycle = self._zephyr.create_test_cycle(body)
        if cycle is None:
            LOGGER.warning("Failed to create test cycle for run %s", status.run_id)
            return
        status.metadata["zephyr_cycle_key"] = cycle["key"]

        executions = build_executions(report, status.run_id, exit_code)
        if self._zephyr.upload_test_results(cycle["key"], executions):
            status.metadata["zephyr_executions"] = [execution["testCaseKey"] for execution in executions]

    def _folder_id(self, project_key: str, folder_name: str) -> Optional[Any]:
        for folder in self._zephyr.get_folders(project_key):
            if folder.get("name") == folder_name:
                return folder.get("id")
        created = self._zephyr.create_folder(folder_name, project_key)
        return created.get("id") if created else None

    # ------------------------------------------------------------------ jira
    def _file_ticket(
        self,
        status: RunStatus,
        request: TestExecutionRequest,
        project_key: str,
        exit_code: int,
        report_links: Mapping[str, str],
    ) -> None:
        issue = self._client.create_issue(self._issue_fields(status, request, project_key, exit_code, report_links))
        if not issue or not issue.get("key"):
            return
        key = str(issue["key"])
        status.jira_ticket_key = key
        status.metadata["jira_ticket_key"] = key

    def _issue_fields(
        self,
        status: RunStatus,
        request: TestExecutionRequest,
        project_key: str,
        exit_code: int,
        report_links: Mapping[str, str],
    ) -> Dict[str, Any]:
        short_id = status.run_id[:8]
        lines = [
            f"Run: {status.run_id}",
            f"Environment: {request.environment}",
            f"Tags: {status.tag_expression or '-'}",
            f"Exit code: {exit_code}",
        ]
        if request.initiator:
            lines.append(f"Initiator: {request.initiator}")
        for kind, url in sorted(report_links.items()):
            lines.append(f"{kind}: {url}")
        return {
            "project": {"key": project_key},
            "issuetype": {"name": self._issue_type},
            "summary": f"Test run {short_id} failed on {request.environment} ({' '.join(request.tags)})",
            "description": "\n".join(lines),
            "labels": ["automated-test-run", f"run-{short_id}"],
        }
