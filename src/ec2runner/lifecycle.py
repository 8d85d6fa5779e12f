"""
Runner lifecycle: the top-level state machine.

    IDLE -> TOKEN_ISSUED -> LAUNCHING -> AWAITING_READY -> READY
         -> TEARING_DOWN -> STOPPED

Any failure moves to ERRORED and re-raises the typed error; nothing is
retried at this level. An ERRORED runner that still holds an instance
id may go on to TEARING_DOWN, so a failed start can be cleaned up. The
only state carried between phases is the runner label (generated once)
and the instance id (recorded once, at launch).
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from . import LABEL_PREFIX
from .concurrency import CancelScope
from .config import RunnerConfig
from .errors import LaunchFailed, NoInstance, RunnerError, TeardownError
from .launcher import InstanceLauncher
from .models import ProvisioningSpec, StartResult, TeardownReport
from .policy import choose
from .providers.base import ComputeProvider, RegistrationService
from .readiness import ReadinessCoordinator
from .teardown import TeardownCoordinator
from .userdata import build_user_data

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    """Where a runner is in its lifecycle."""

    IDLE = "idle"
    TOKEN_ISSUED = "token-issued"
    LAUNCHING = "launching"
    AWAITING_READY = "awaiting-ready"
    READY = "ready"
    TEARING_DOWN = "tearing-down"
    STOPPED = "stopped"
    ERRORED = "errored"


def generate_label() -> str:
    """Return a unique runner label, e.g. ``ec2-runner-20260101120000-1a2b3c``."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{LABEL_PREFIX}-{stamp}-{secrets.token_hex(3)}"


class RunnerLifecycle:
    """Provision, await and tear down one ephemeral runner.

    Args:
        config: Immutable runner configuration. For ``stop``, its
            ``runner_label`` and ``instance_id`` identify what to release.
        compute: Compute provider.
        registration: Registration service, already bound to the
            configured org/repository scope.
        launcher: Override for the instance launcher.
        readiness: Override for the readiness coordinator.
        teardown: Override for the teardown coordinator.
        label_factory: Callable producing the runner label.
    """

    def __init__(
        self,
        config: RunnerConfig,
        compute: ComputeProvider,
        registration: RegistrationService,
        launcher: Optional[InstanceLauncher] = None,
        readiness: Optional[ReadinessCoordinator] = None,
        teardown: Optional[TeardownCoordinator] = None,
        label_factory: Callable[[], str] = generate_label,
    ) -> None:
        self.config = config
        self._registration = registration
        self._launcher = launcher or InstanceLauncher(compute, config.timeouts)
        self._readiness = readiness or ReadinessCoordinator(
            compute, registration, config.timeouts,
        )
        self._teardown = teardown or TeardownCoordinator(
            compute, registration, config.timeouts,
        )
        self._label_factory = label_factory

        self.state = LifecycleState.IDLE
        self.history: List[LifecycleState] = [self.state]
        self.runner_label: Optional[str] = config.runner_label
        self.instance_id: Optional[str] = config.instance_id
        self.error: Optional[BaseException] = None

    # -- state machine -----------------------------------------------------

    def _transition(self, state: LifecycleState) -> None:
        logger.info("Runner lifecycle: %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _fail(self, exc: BaseException) -> None:
        self.error = exc
        self._transition(LifecycleState.ERRORED)
        if self.instance_id:
            logger.error(
                "Runner %s failed with instance %s still allocated: %s",
                self.runner_label, self.instance_id, exc,
            )

    # -- start -------------------------------------------------------------

    def start(self, scope: Optional[CancelScope] = None) -> StartResult:
        """Issue a token, launch the instance and wait for readiness.

        Args:
            scope: Lifecycle-level cancel scope (e.g. wired to SIGTERM).

        Returns:
            StartResult with the runner label and instance id.

        Raises:
            RunnerError: Any typed failure from a phase.
        """
        if self.state is not LifecycleState.IDLE:
            raise RunnerError(f"cannot start runner in state {self.state.value}")
        scope = scope or CancelScope(name="start")

        if not self.runner_label:
            self.runner_label = self._label_factory()
        label = self.runner_label

        try:
            scope.check("issue registration token")
            token = self._registration.create_registration_token()
            self._transition(LifecycleState.TOKEN_ISSUED)

            spec = self.build_spec(token.token, label)
            strategy = choose(self.config.spot.provisioning_mode)

            self._transition(LifecycleState.LAUNCHING)
            launched = self._launcher.launch(spec, strategy, scope)
            self.instance_id = launched.instance_id
            logger.info("Runner created successfully %s", self.instance_id)

            self._transition(LifecycleState.AWAITING_READY)
            self._readiness.await_ready(self.instance_id, label, scope)
        except LaunchFailed as exc:
            if exc.instance_id:
                self.instance_id = exc.instance_id
            self._fail(exc)
            raise
        except RunnerError as exc:
            self._fail(exc)
            raise

        self._transition(LifecycleState.READY)
        return StartResult(
            label=label,
            instance_id=self.instance_id,
            strategy=launched.strategy,
            fell_back=launched.fell_back,
        )

    def build_spec(self, token: str, label: str) -> ProvisioningSpec:
        """Build the immutable launch spec with the boot payload embedded."""
        ec2 = self.config.ec2
        github = self.config.github
        return ProvisioningSpec(
            image_id=ec2.image_id,
            instance_type=ec2.instance_type,
            subnet_id=ec2.subnet_id,
            security_group_id=ec2.security_group_id,
            iam_instance_profile=ec2.iam_instance_profile,
            tags=ec2.resource_tags,
            user_data=build_user_data(
                github.runner_url, token, label, github.runner_version,
            ),
            region=self.config.spot.region,
        )

    # -- stop --------------------------------------------------------------

    def stop(self, scope: Optional[CancelScope] = None) -> TeardownReport:
        """Terminate the instance and deregister the runner.

        A runner left in ERRORED by a failed start can still be stopped as
        long as its instance id is known.

        Raises:
            NoInstance: If no instance id is known.
            TeardownError: If either release failed.
        """
        if self.state is LifecycleState.STOPPED:
            raise RunnerError(f"cannot stop runner in state {self.state.value}")
        if not self.instance_id:
            exc = NoInstance()
            self._fail(exc)
            raise exc
        scope = scope or CancelScope(name="stop")

        self._transition(LifecycleState.TEARING_DOWN)
        try:
            report = self._teardown.teardown(
                self.instance_id, self.runner_label or "", scope,
            )
        except TeardownError as exc:
            # The instance id is kept only while the instance may still exist.
            if not exc.instance_failed:
                self.instance_id = None
            self._fail(exc)
            raise
        except RunnerError as exc:
            self._fail(exc)
            raise

        self.instance_id = None
        self._transition(LifecycleState.STOPPED)
        return report
