from __future__ import annotations

import threading
import time

import pytest

from testhub.services.admission import AdmissionGate


@pytest.mark.unit
def test_gate_rejects_non_positive_permits() -> None:
    with pytest.raises(ValueError):
        AdmissionGate(0)


@pytest.mark.unit
def test_acquire_and_release_track_usage() -> None:
    gate = AdmissionGate(2, poll_interval=0.01)
    cancel = threading.Event()

    assert gate.acquire(cancel) is True
    assert gate.acquire(cancel) is True
    assert gate.in_use == 2
    assert gate.peak_in_use == 2

    gate.release()
    gate.release()
    assert gate.in_use == 0
    assert gate.peak_in_use == 2


@pytest.mark.unit
def test_release_without_permit_raises() -> None:
    gate = AdmissionGate(1)
    with pytest.raises(RuntimeError):
        gate.release()


@pytest.mark.unit
def test_waiting_acquire_returns_false_when_cancelled() -> None:
    gate = AdmissionGate(1, poll_interval=0.01)
    assert gate.acquire(threading.Event()) is True

    cancel = threading.Event()
    outcome = {}

    def wait_for_permit() -> None:
        outcome["acquired"] = gate.acquire(cancel)

    waiter = threading.Thread(target=wait_for_permit)
    waiter.start()
    time.sleep(0.05)
    assert waiter.is_alive()

    cancel.set()
    waiter.join(timeout=2)

    assert outcome == {"acquired": False}
    assert gate.in_use == 1
    gate.release()
    assert gate.acquire(threading.Event()) is True


@pytest.mark.unit
def test_waiting_acquire_proceeds_after_release() -> None:
    gate = AdmissionGate(1, poll_interval=0.01)
    gate.acquire(threading.Event())
    outcome = {}

    def wait_for_permit() -> None:
        outcome["acquired"] = gate.acquire(threading.Event())

    waiter = threading.Thread(target=wait_for_permit)
    waiter.start()
    time.sleep(0.05)
    gate.release()
    waiter.join(timeout=2)

    assert outcome == {"acquired": True}
    assert gate.peak_in_use == 1


@pytest.mark.unit
def test_already_cancelled_event_never_takes_a_permit() -> None:
    gate = AdmissionGate(1)
    cancel = threading.Event()
    cancel.set()

    assert gate.acquire(cancel) is False
    assert gate.in_use == 0
