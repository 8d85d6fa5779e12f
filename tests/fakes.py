"""In-memory fakes and builders shared by the ec2runner tests.

Provides fakes for the compute provider and the registration
service. Both are thread-safe because the coordinators call them from
worker threads.
"""

from __future__ import annotations

import threading
from collections import Counter
from typing import Any, Callable, List, Optional, Sequence

from ec2runner.config import EC2Config, GitHubConfig, RunnerConfig, SpotConfig, Timeouts
from ec2runner.models import (
    ProvisioningSpec,
    RegisteredAgent,
    RegistrationToken,
    SpotRequestStatus,
)
from ec2runner.providers.base import ComputeProvider, RegistrationService
from ec2runner.userdata import build_user_data

LABEL = "ec2-runner-test"
FAST = Timeouts(
    launch=1,
    readiness=2,
    teardown=2,
    launch_poll=0.01,
    health_poll=0.01,
    registration_poll=0.01,
)

OPEN = SpotRequestStatus(request_id="sir-1", state="open", code="pending-evaluation")
FULFILLED = SpotRequestStatus(
    request_id="sir-1", state="active", code="fulfilled", instance_id="i-spot",
)


class Script:
    """Return values in order, repeating the last one forever.

    Exceptions in the sequence are raised instead of returned; a callable
    is invoked each time.
    """

    def __init__(self, values: Any) -> None:
        self._fn: Optional[Callable[[], Any]] = values if callable(values) else None
        self._values: List[Any] = [] if self._fn else list(values)
        self._index = 0

    def next(self) -> Any:
        if self._fn is not None:
            return self._fn()
        value = self._values[min(self._index, len(self._values) - 1)]
        self._index += 1
        if isinstance(value, BaseException):
            raise value
        return value


class FakeCompute(ComputeProvider):
    """Scriptable in-memory compute provider."""

    region = "us-east-1"

    def __init__(
        self,
        spot_price: Optional[str] = "0.0416",
        spot_statuses: Sequence[Any] = (FULFILLED,),
        instance_states: Sequence[Any] = ("pending", "running"),
        health: Any = (True,),
        run_error: Optional[Exception] = None,
        terminate_error: Optional[Exception] = None,
    ) -> None:
        self.spot_price = spot_price
        self._spot = Script(spot_statuses)
        self._states = Script(instance_states)
        self._health = Script(health)
        self.run_error = run_error
        self.terminate_error = terminate_error
        self.calls: Counter = Counter()
        self.specs: List[ProvisioningSpec] = []
        self.terminated: List[str] = []
        self.cancelled_requests: List[str] = []
        self._lock = threading.Lock()

    def _count(self, name: str) -> None:
        with self._lock:
            self.calls[name] += 1

    def latest_spot_price(self, instance_type, lookback):
        self._count("latest_spot_price")
        return self.spot_price

    def run_instance(self, spec):
        self._count("run_instance")
        self.specs.append(spec)
        if self.run_error:
            raise self.run_error
        return "i-ondemand"

    def instance_state(self, instance_id):
        self._count("instance_state")
        return self._states.next()

    def request_spot_instance(self, spec, max_price):
        self._count("request_spot_instance")
        self.specs.append(spec)
        self.spot_max_price = max_price
        return "sir-1"

    def spot_request_status(self, request_id):
        self._count("spot_request_status")
        if request_id in self.cancelled_requests:
            return SpotRequestStatus(request_id=request_id, state="cancelled")
        return self._spot.next()

    def cancel_spot_request(self, request_id):
        self._count("cancel_spot_request")
        self.cancelled_requests.append(request_id)

    def instance_status_ok(self, instance_id):
        self._count("instance_status_ok")
        return self._health.next()

    def terminate_instance(self, instance_id):
        self._count("terminate_instance")
        if self.terminate_error:
            raise self.terminate_error
        self.terminated.append(instance_id)


class FakeRegistration(RegistrationService):
    """Scriptable in-memory registration service.

    Args:
        runners: Successive results of list_runners (last one repeats).
        remove_error: Raised by remove_runner when set.
    """

    def __init__(
        self,
        runners: Sequence[Any] = ((),),
        remove_error: Optional[Exception] = None,
        token_error: Optional[Exception] = None,
    ) -> None:
        self._runners = Script([list(r) if isinstance(r, (list, tuple)) else r for r in runners])
        self.remove_error = remove_error
        self.token_error = token_error
        self.calls: Counter = Counter()
        self.removed: List[int] = []
        self._lock = threading.Lock()

    def _count(self, name: str) -> None:
        with self._lock:
            self.calls[name] += 1

    def create_registration_token(self):
        self._count("create_registration_token")
        if self.token_error:
            raise self.token_error
        return RegistrationToken(token="AABBCCDD", expires_at="2026-10-19T13:00:00Z")

    def list_runners(self):
        self._count("list_runners")
        return list(self._runners.next())

    def remove_runner(self, runner_id):
        self._count("remove_runner")
        if self.remove_error:
            raise self.remove_error
        self.removed.append(runner_id)


def online(label: str = LABEL, runner_id: int = 42) -> RegisteredAgent:
    return RegisteredAgent(id=runner_id, name=label, status="online")


def offline(label: str = LABEL, runner_id: int = 42) -> RegisteredAgent:
    return RegisteredAgent(id=runner_id, name=label, status="offline")


def make_config(
    mode: str = "start",
    provisioning_mode: str = "None",
    timeouts: Timeouts = FAST,
    **kwargs: Any,
) -> RunnerConfig:
    """Build a RunnerConfig for tests."""
    return RunnerConfig(
        mode=mode,
        github=GitHubConfig(token="ghp_test", repository="octo/widgets"),
        ec2=EC2Config(
            image_id="ami-123",
            instance_type="t3.large",
            subnet_id="subnet-1",
            security_group_id="sg-1",
        ),
        spot=SpotConfig(provisioning_mode=provisioning_mode, region="us-east-1"),
        timeouts=timeouts,
        **kwargs,
    )


def make_spec(**overrides: Any) -> ProvisioningSpec:
    """Build a ProvisioningSpec for tests."""
    fields = dict(
        image_id="ami-123",
        instance_type="t3.large",
        subnet_id="subnet-1",
        security_group_id="sg-1",
        user_data=build_user_data(
            "https://github.com/octo/widgets", "AABBCCDD", LABEL, "2.313.0",
        ),
        region="us-east-1",
    )
    fields.update(overrides)
    return ProvisioningSpec(**fields)
