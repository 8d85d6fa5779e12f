"""Tests for the readiness coordinator."""

from __future__ import annotations

import threading
import time

import pytest

from fakes import LABEL, FakeCompute, FakeRegistration, offline, online
from ec2runner.concurrency import CancelScope
from ec2runner.config import Timeouts
from ec2runner.errors import ComputeError, ReadinessError, RegistrationError
from ec2runner.readiness import COMPUTE_HEALTH, REGISTRATION, ReadinessCoordinator


def _timeouts(**overrides) -> Timeouts:
    values = dict(readiness=5, health_poll=0.01, registration_poll=0.01)
    values.update(overrides)
    return Timeouts(**values)


class TestReady:
    """Both conditions hold."""

    def test_returns_once_both_ready(self):
        compute = FakeCompute(health=(False, False, True))
        registration = FakeRegistration(runners=[[], [offline()], [online()]])
        ReadinessCoordinator(compute, registration, _timeouts()).await_ready("i-1", LABEL)
        assert compute.calls["instance_status_ok"] == 3
        assert registration.calls["list_runners"] == 3

    def test_registration_first(self):
        compute = FakeCompute(health=(False,) * 10 + (True,))
        registration = FakeRegistration(runners=[[online()]])
        ReadinessCoordinator(compute, registration, _timeouts()).await_ready("i-1", LABEL)
        assert registration.calls["list_runners"] == 1

    def test_health_first(self):
        compute = FakeCompute(health=(True,))
        registration = FakeRegistration(runners=[[]] * 10 + [[online()]])
        ReadinessCoordinator(compute, registration, _timeouts()).await_ready("i-1", LABEL)
        assert compute.calls["instance_status_ok"] == 1

    def test_other_runner_does_not_count(self):
        compute = FakeCompute(health=(True,))
        registration = FakeRegistration(runners=[[online("someone-else", 7)]])
        with pytest.raises(ReadinessError) as exc_info:
            ReadinessCoordinator(
                compute, registration, _timeouts(readiness=0.1),
            ).await_ready("i-1", LABEL)
        assert exc_info.value.condition == REGISTRATION


class TestNotReady:
    """Either condition fails or times out."""

    def test_registration_cap_returns_promptly(self):
        compute = FakeCompute(health=(False,))
        registration = FakeRegistration(runners=[[]])
        timeouts = _timeouts(readiness=30, registration_timeout=0.1)

        started = time.monotonic()
        with pytest.raises(ReadinessError) as exc_info:
            ReadinessCoordinator(compute, registration, timeouts).await_ready("i-1", LABEL)
        elapsed = time.monotonic() - started

        assert exc_info.value.condition == REGISTRATION
        assert exc_info.value.timed_out
        assert exc_info.value.instance_id == "i-1"
        assert exc_info.value.label == LABEL
        assert elapsed < 5

        health_calls = compute.calls["instance_status_ok"]
        time.sleep(0.1)
        assert compute.calls["instance_status_ok"] == health_calls

    def test_health_cap(self):
        compute = FakeCompute(health=(False,))
        registration = FakeRegistration(runners=[[online()]])
        with pytest.raises(ReadinessError) as exc_info:
            ReadinessCoordinator(
                compute, registration, _timeouts(health_timeout=0.1),
            ).await_ready("i-1", LABEL)
        assert exc_info.value.condition == COMPUTE_HEALTH
        assert exc_info.value.timed_out

    def test_health_error_cancels_registration(self):
        compute = FakeCompute(health=(False, ComputeError("DescribeInstanceStatus", "i-1", "denied")))
        registration = FakeRegistration(runners=[[]])
        with pytest.raises(ReadinessError, match="denied") as exc_info:
            ReadinessCoordinator(compute, registration, _timeouts()).await_ready("i-1", LABEL)
        assert exc_info.value.condition == COMPUTE_HEALTH
        assert not exc_info.value.timed_out
        assert isinstance(exc_info.value.cause, ComputeError)

        list_calls = registration.calls["list_runners"]
        time.sleep(0.1)
        assert registration.calls["list_runners"] == list_calls

    def test_registration_error(self):
        compute = FakeCompute(health=(False,))
        registration = FakeRegistration(
            runners=[RegistrationError("GET", "/repos/octo/widgets/actions/runners", 401, "Bad credentials")],
        )
        with pytest.raises(ReadinessError, match="Bad credentials") as exc_info:
            ReadinessCoordinator(compute, registration, _timeouts()).await_ready("i-1", LABEL)
        assert exc_info.value.condition == REGISTRATION
        assert not exc_info.value.timed_out

    def test_shared_deadline(self):
        compute = FakeCompute(health=(False,))
        registration = FakeRegistration(runners=[[]])
        started = time.monotonic()
        with pytest.raises(ReadinessError) as exc_info:
            ReadinessCoordinator(
                compute, registration, _timeouts(readiness=0.1),
            ).await_ready("i-1", LABEL)
        assert exc_info.value.timed_out
        assert exc_info.value.condition in (COMPUTE_HEALTH, REGISTRATION)
        assert time.monotonic() - started < 5

    def test_outer_cancel(self):
        compute = FakeCompute(health=(False,))
        registration = FakeRegistration(runners=[[]])
        scope = CancelScope()
        threading.Timer(0.05, scope.cancel, args=("received SIGTERM",)).start()
        with pytest.raises(ReadinessError, match="SIGTERM"):
            ReadinessCoordinator(compute, registration, _timeouts()).await_ready("i-1", LABEL, scope)
