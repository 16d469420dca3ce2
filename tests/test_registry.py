from __future__ import annotations

import pytest

from testhub.schemas import RunState, RunStatus
from testhub.services.registry import RunRegistry


def _status(run_id: str, state: RunState) -> RunStatus:
    return RunStatus(run_id=run_id, state=state, environment="dev", tag_expression="@smoke")


@pytest.mark.unit
def test_put_and_get_return_same_record() -> None:
    registry = RunRegistry()
    status = _status("a", RunState.queued)

    registry.put("a", status)

    assert registry.get("a") is status
    assert "a" in registry
    assert len(registry) == 1
    assert registry.get("missing") is None


@pytest.mark.unit
@pytest.mark.parametrize("state", [RunState.queued, RunState.running])
def test_remove_refuses_active_runs(state: RunState) -> None:
    registry = RunRegistry()
    registry.put("a", _status("a", state))

    assert registry.remove("a") is False
    assert registry.get("a") is not None


@pytest.mark.unit
def test_remove_terminal_and_unknown_runs() -> None:
    registry = RunRegistry()
    registry.put("done", _status("done", RunState.completed))

    assert registry.remove("done") is True
    assert registry.get("done") is None
    assert registry.remove("done") is False
    assert registry.remove("never-existed") is False


@pytest.mark.unit
def test_list_active_filters_terminal_states() -> None:
    registry = RunRegistry()
    for run_id, state in [
        ("q", RunState.queued),
        ("r", RunState.running),
        ("c", RunState.completed),
        ("f", RunState.failed),
        ("x", RunState.cancelled),
    ]:
        registry.put(run_id, _status(run_id, state))

    assert {status.run_id for status in registry.list_active()} == {"q", "r"}
    assert len(registry.list_all()) == 5
