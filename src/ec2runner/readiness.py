"""
Readiness: wait until the instance is healthy AND the runner is online.

Two watchers poll independently under one shared deadline and are
joined with ``join_all``: both must report ready, in any order, and the
first one to fail cancels the other.
"""

from __future__ import annotations

import logging
from typing import Optional

from .concurrency import CancelScope, TaskFailure, join_all, poll_until
from .config import Timeouts
from .errors import ReadinessError
from .providers.base import ComputeProvider, RegistrationService

logger = logging.getLogger(__name__)

COMPUTE_HEALTH = "compute-health"
REGISTRATION = "registration"


class ReadinessCoordinator:
    """Run the compute-health and registration watchers concurrently.

    Args:
        compute: Compute provider used for instance status checks.
        registration: Registration service used to list runners.
        timeouts: Shared readiness deadline, poll intervals and the
            optional per-watcher caps.
    """

    def __init__(
        self,
        compute: ComputeProvider,
        registration: RegistrationService,
        timeouts: Optional[Timeouts] = None,
    ) -> None:
        self._compute = compute
        self._registration = registration
        self._timeouts = timeouts or Timeouts()

    def await_ready(
        self,
        instance_id: str,
        label: str,
        scope: Optional[CancelScope] = None,
    ) -> None:
        """Block until both readiness conditions hold.

        Args:
            instance_id: Instance whose status checks must pass.
            label: Runner name that must be listed as online.
            scope: Parent scope; the readiness deadline is applied beneath it.

        Raises:
            ReadinessError: As soon as either watcher fails or times out.
        """
        parent = scope or CancelScope(name="readiness")
        ready_scope = parent.child(self._timeouts.readiness, name="readiness")

        tasks = {
            COMPUTE_HEALTH: lambda s: self._watch_health(instance_id, s),
            REGISTRATION: lambda s: self._watch_registration(label, s),
        }
        try:
            join_all(tasks, ready_scope)
        except TaskFailure as failure:
            logger.error("Readiness failed on %s: %s", failure.name, failure.error)
            raise ReadinessError(
                failure.name, instance_id, label, failure.error,
            ) from failure.error

        logger.info("Instance %s is healthy and runner %s is online", instance_id, label)

    def _watch_health(self, instance_id: str, scope: CancelScope) -> bool:
        logger.info("Waiting for instance %s to be ready...", instance_id)
        watch_scope = scope.child(self._timeouts.health_timeout, name=COMPUTE_HEALTH)
        poll_until(
            lambda: True if self._compute.instance_status_ok(instance_id) else None,
            watch_scope,
            self._timeouts.health_poll,
            f"waiting for instance {instance_id} status checks",
        )
        logger.info("Instance %s passed status checks", instance_id)
        return True

    def _watch_registration(self, label: str, scope: CancelScope) -> bool:
        logger.info("Waiting for runner %s to register...", label)
        watch_scope = scope.child(self._timeouts.registration_timeout, name=REGISTRATION)
        poll_until(
            lambda: self._runner_online(label),
            watch_scope,
            self._timeouts.registration_poll,
            f"waiting for runner {label} to come online",
        )
        logger.info("Runner %s is online", label)
        return True

    def _runner_online(self, label: str) -> Optional[bool]:
        for runner in self._registration.list_runners():
            if runner.name == label and runner.online:
                return True
        logger.debug("Runner %s not online yet", label)
        return None
