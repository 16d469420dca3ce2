from __future__ import annotations

import base64
import io
import json
import logging
import urllib.error
from datetime import date
from typing import Any, Dict, List, Optional

import pytest

from testhub.config import Settings
from testhub.schemas import RunState, RunStatus, TestExecutionRequest
from testhub.services import integrations
from testhub.services.integrations import (
    IssueTrackerHook,
    JiraClient,
    ZephyrScaleClient,
    build_executions,
    resolve_folder_name,
)

RUN_ID = "0a1b2c3d-0000-4000-8000-000000000000"
LINKS = {"detail": "/reports/x/engine-report/report.html"}


class _Response(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class StubJiraClient:
    def __init__(self, response: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None) -> None:
        self.calls: List[Dict[str, Any]] = []
        self._response = response
        self._error = error

    def create_issue(self, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self.calls.append(fields)
        if self._error:
            raise self._error
        return self._response


class StubZephyrClient:
    def __init__(
        self,
        folders: Optional[List[Dict[str, Any]]] = None,
        cycle: Optional[Dict[str, Any]] = None,
        upload_ok: bool = True,
        error: Optional[Exception] = None,
    ) -> None:
        self.folders = folders or []
        self.cycle = cycle if cycle is not None else {"key": "QA-R1", "id": 77}
        self.upload_ok = upload_ok
        self.error = error
        self.created_folders: List[str] = []
        self.cycles: List[Dict[str, Any]] = []
        self.uploads: List[tuple] = []

    def get_folders(self, project_key: str) -> List[Dict[str, Any]]:
        if self.error:
            raise self.error
        return self.folders

    def create_folder(self, name: str, project_key: str) -> Optional[Dict[str, Any]]:
        self.created_folders.append(name)
        return {"id": 900, "name": name}

    def create_test_cycle(self, body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self.cycles.append(body)
        return self.cycle or None

    def upload_test_results(self, cycle_key: str, executions: List[Dict[str, Any]]) -> bool:
        self.uploads.append((cycle_key, executions))
        return self.upload_ok


def _status() -> RunStatus:
    return RunStatus(
        run_id=RUN_ID,
        state=RunState.running,
        environment="staging",
        tag_expression="@checkout",
    )


def _request(**overrides) -> TestExecutionRequest:
    payload = {"environment": "staging", "tags": ["checkout"], "project_key": "QA"}
    payload.update(overrides)
    return TestExecutionRequest(**payload)


def _scenario(tags: List[Any], *statuses: str) -> Dict[str, Any]:
    return {
        "type": "scenario",
        "tags": tags,
        "steps": [{"name": f"step {i}", "result": {"status": status}} for i, status in enumerate(statuses)],
    }


@pytest.mark.unit
def test_jira_client_posts_issue_with_basic_auth(monkeypatch: pytest.MonkeyPatch) -> None:
    captured = {}

    def fake_urlopen(request, timeout):
        captured["url"] = request.full_url
        captured["method"] = request.get_method()
        captured["auth"] = request.get_header("Authorization")
        captured["body"] = json.loads(request.data.decode("utf-8"))
        return _Response(b'{"id": "10001", "key": "QA-7"}')

    monkeypatch.setattr(integrations.urllib.request, "urlopen", fake_urlopen)
    client = JiraClient("https://jira.example.com/", "bot", "secret")

    issue = client.create_issue({"summary": "boom"})

    assert issue == {"id": "10001", "key": "QA-7"}
    assert captured["url"] == "https://jira.example.com/rest/api/2/issue"
    assert captured["method"] == "POST"
    assert captured["auth"] == "Basic " + base64.b64encode(b"bot:secret").decode("ascii")
    assert captured["body"] == {"fields": {"summary": "boom"}}


@pytest.mark.unit
def test_jira_client_returns_none_on_http_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(request, timeout):
        raise urllib.error.HTTPError(request.full_url, 400, "Bad Request", {}, io.BytesIO(b"nope"))

    monkeypatch.setattr(integrations.urllib.request, "urlopen", fake_urlopen)

    assert JiraClient("https://jira.example.com", "bot", "secret").create_issue({}) is None


@pytest.mark.unit
def test_zephyr_client_request_shapes(monkeypatch: pytest.MonkeyPatch) -> None:
    seen = []
    replies = [
        b'[{"id": 1, "name": "SmokeTest"}]',
        b'{"id": 2, "name": "Backend"}',
        b'{"id": 3, "key": "QA-R9"}',
        b"",
    ]

    def fake_urlopen(request, timeout):
        body = json.loads(request.data.decode("utf-8")) if request.data else None
        seen.append((request.get_method(), request.full_url, body))
        return _Response(replies[len(seen) - 1])

    monkeypatch.setattr(integrations.urllib.request, "urlopen", fake_urlopen)
    client = ZephyrScaleClient("https://jira.example.com", "bot", "secret")

    assert client.get_folders("QA") == [{"id": 1, "name": "SmokeTest"}]
    assert client.create_folder("Backend", "QA") == {"id": 2, "name": "Backend"}
    assert client.create_test_cycle({"name": "c", "projectKey": "QA"}) == {"id": 3, "key": "QA-R9"}
    assert client.upload_test_results("QA-R9", [{"testCaseKey": "T-1", "status": "Pass"}]) is True

    base = "https://jira.example.com/rest/atm/1.0"
    assert seen == [
        ("GET", f"{base}/folder?projectKey=QA&folderType=TEST_RUN", None),
        ("POST", f"{base}/folder", {"name": "Backend", "projectKey": "QA", "folderType": "TEST_RUN"}),
        ("POST", f"{base}/testrun", {"name": "c", "projectKey": "QA"}),
        ("POST", f"{base}/testrun/QA-R9/testresults", [{"testCaseKey": "T-1", "status": "Pass"}]),
    ]


@pytest.mark.unit
def test_zephyr_client_failures_are_not_raised(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(request, timeout):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(integrations.urllib.request, "urlopen", fake_urlopen)
    client = ZephyrScaleClient("https://jira.example.com", "bot", "secret")

    assert client.get_folders("QA") == []
    assert client.create_folder("Default", "QA") is None
    assert client.create_test_cycle({"name": "c"}) is None
    assert client.upload_test_results("QA-R1", []) is False


@pytest.mark.unit
@pytest.mark.parametrize(
    "tags, expected",
    [
        (["@smoke"], "SmokeTest"),
        (["@SmokeTest"], "SmokeTest"),
        (["@checkout", "@Frontend"], "Frontend"),
        (["@backend"], "Backend"),
        (["@checkout"], "Default"),
        ([], "Default"),
    ],
)
def test_resolve_folder_name(tags, expected) -> None:
    assert resolve_folder_name(tags) == expected


@pytest.mark.unit
def test_build_executions_from_tagged_scenarios() -> None:
    report = [
        {
            "name": "Checkout",
            "elements": [
                _scenario(["T-101", "smoke"], "passed", "passed"),
                _scenario([{"name": "@T-102"}], "passed", "failed", "skipped"),
                _scenario(["untracked"], "failed"),
            ],
        },
        {"name": "Empty"},
    ]

    assert build_executions(report, RUN_ID, exit_code=1) == [
        {"testCaseKey": "T-101", "status": "Pass"},
        {"testCaseKey": "T-102", "status": "Fail"},
    ]


@pytest.mark.unit
@pytest.mark.parametrize("report", [None, [], {"unexpected": True}, [{"elements": [_scenario(["smoke"], "passed")]}]])
def test_build_executions_falls_back_to_run_outcome(report) -> None:
    assert build_executions(report, RUN_ID, exit_code=0) == [
        {"testCaseKey": "0a1b2c3d", "status": "Pass", "comment": f"Run: {RUN_ID}"}
    ]
    assert build_executions(report, RUN_ID, exit_code=3)[0]["status"] == "Fail"


@pytest.mark.unit
def test_hook_files_ticket_for_failed_run() -> None:
    client = StubJiraClient(response={"key": "QA-12"})
    hook = IssueTrackerHook(client, enabled=True, issue_type="Bug")
    status = _status()

    hook.on_run_finished(status, _request(initiator="ci"), 1, LINKS)

    assert status.jira_ticket_key == "QA-12"
    assert status.metadata["jira_ticket_key"] == "QA-12"
    assert status.report_links == {}
    fields = client.calls[0]
    assert fields["project"] == {"key": "QA"}
    assert fields["issuetype"] == {"name": "Bug"}
    assert "0a1b2c3d" in fields["summary"]
    assert "Initiator: ci" in fields["description"]
    assert "detail: /reports/x/engine-report/report.html" in fields["description"]


@pytest.mark.unit
def test_hook_skips_successful_and_disabled_runs() -> None:
    client = StubJiraClient(response={"key": "QA-1"})

    for hook, exit_code in (
        (IssueTrackerHook(client, enabled=True), 0),
        (IssueTrackerHook(client, enabled=False), 1),
        (IssueTrackerHook(None, enabled=True), 1),
    ):
        status = _status()
        hook.on_run_finished(status, _request(), exit_code, LINKS)
        assert status.jira_ticket_key is None
    assert client.calls == []


@pytest.mark.unit
def test_hook_falls_back_to_default_project_and_survives_errors() -> None:
    client = StubJiraClient(error=RuntimeError("connection reset"))
    hook = IssueTrackerHook(client, enabled=True, default_project_key="OPS")
    status = _status()

    hook.on_run_finished(status, _request(project_key=None), 2, LINKS)

    assert client.calls[0]["project"] == {"key": "OPS"}
    assert status.jira_ticket_key is None


@pytest.mark.unit
def test_hook_uploads_executions_for_successful_run() -> None:
    zephyr = StubZephyrClient(folders=[{"id": 5, "name": "SmokeTest"}])
    jira = StubJiraClient(response={"key": "QA-1"})
    hook = IssueTrackerHook(jira, enabled=True, zephyr=zephyr, zephyr_enabled=True)
    status = _status()
    report = [{"elements": [_scenario(["T-7"], "passed")]}]

    hook.on_run_finished(status, _request(tags=["smoke", "checkout"]), 0, LINKS, report)

    assert zephyr.created_folders == []
    assert zephyr.cycles == [
        {
            "name": f"{date.today().strftime('%Y%m%d')} 0a1b2c3d @smoke @checkout",
            "projectKey": "QA",
            "folderId": 5,
        }
    ]
    assert zephyr.uploads == [("QA-R1", [{"testCaseKey": "T-7", "status": "Pass"}])]
    assert status.metadata["zephyr_cycle_key"] == "QA-R1"
    assert status.metadata["zephyr_executions"] == ["T-7"]
    assert jira.calls == []


@pytest.mark.unit
def test_hook_creates_missing_folder_and_files_ticket_on_failure() -> None:
    zephyr = StubZephyrClient(folders=[{"id": 5, "name": "SmokeTest"}])
    jira = StubJiraClient(response={"key": "QA-9"})
    hook = IssueTrackerHook(jira, enabled=True, zephyr=zephyr, zephyr_enabled=True)
    status = _status()

    hook.on_run_finished(status, _request(tags=["backend"]), 1, LINKS)

    assert zephyr.created_folders == ["Backend"]
    assert zephyr.cycles[0]["folderId"] == 900
    assert zephyr.uploads == [
        ("QA-R1", [{"testCaseKey": "0a1b2c3d", "status": "Fail", "comment": f"Run: {RUN_ID}"}])
    ]
    assert status.metadata["zephyr_executions"] == ["0a1b2c3d"]
    assert status.jira_ticket_key == "QA-9"


@pytest.mark.unit
def test_hook_records_cycle_only_when_upload_fails() -> None:
    zephyr = StubZephyrClient(upload_ok=False)
    hook = IssueTrackerHook(None, zephyr=zephyr, zephyr_enabled=True, default_project_key="QA")
    status = _status()

    hook.on_run_finished(status, _request(project_key=None), 0, LINKS)

    assert status.metadata["zephyr_cycle_key"] == "QA-R1"
    assert "zephyr_executions" not in status.metadata


@pytest.mark.unit
def test_hook_zephyr_errors_do_not_block_ticket(caplog: pytest.LogCaptureFixture) -> None:
    zephyr = StubZephyrClient(error=RuntimeError("zephyr down"))
    jira = StubJiraClient(response={"key": "QA-3"})
    hook = IssueTrackerHook(jira, enabled=True, zephyr=zephyr, zephyr_enabled=True)
    status = _status()

    with caplog.at_level(logging.ERROR, logger="testhub.integrations"):
        hook.on_run_finished(status, _request(), 1, LINKS)

    assert "Test management upload failed" in caplog.text
    assert "zephyr_cycle_key" not in status.metadata
    assert status.jira_ticket_key == "QA-3"


@pytest.mark.unit
def test_hook_skips_zephyr_without_cycle_or_project() -> None:
    zephyr = StubZephyrClient(cycle={})
    hook = IssueTrackerHook(None, zephyr=zephyr, zephyr_enabled=True)

    status = _status()
    hook.on_run_finished(status, _request(), 0, LINKS)
    assert zephyr.uploads == []
    assert status.metadata == {}

    hook.on_run_finished(_status(), _request(project_key=None), 0, LINKS)
    assert len(zephyr.cycles) == 1


@pytest.mark.unit
def test_hook_from_settings() -> None:
    disabled = IssueTrackerHook.from_settings(Settings(jira_enabled=False, zephyr_enabled=False))
    assert disabled.enabled is False

    jira_only = IssueTrackerHook.from_settings(
        Settings(jira_enabled=True, jira_base_url="https://jira.example.com", jira_project_key="QA")
    )
    assert jira_only.enabled is True

    zephyr_only = IssueTrackerHook.from_settings(
        Settings(jira_enabled=False, zephyr_enabled=True, zephyr_base_url="https://jira.example.com")
    )
    assert zephyr_only.enabled is True
