"""
Teardown: terminate the instance and deregister the runner.

The two releases free distinct resources, so both are always attempted
and every failure is reported. A runner that is already gone surfaces
as AgentNotFound for its half without affecting the instance half.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from .concurrency import CancelScope, join_all_collect
from .config import Timeouts
from .errors import TeardownError
from .models import TeardownReport
from .providers.base import ComputeProvider, RegistrationService

logger = logging.getLogger(__name__)

INSTANCE = TeardownError.INSTANCE
AGENT = TeardownError.AGENT


class TeardownCoordinator:
    """Release the instance and the runner registration concurrently.

    Args:
        compute: Compute provider that terminates the instance.
        registration: Registration service that removes the runner.
        timeouts: Shared teardown deadline.
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

    def teardown(
        self,
        instance_id: str,
        label: str,
        scope: Optional[CancelScope] = None,
    ) -> TeardownReport:
        """Terminate ``instance_id`` and remove runner ``label``.

        Returns:
            TeardownReport when both releases succeeded.

        Raises:
            TeardownError: Naming every release that failed.
        """
        parent = scope or CancelScope(name="teardown")
        teardown_scope = parent.child(self._timeouts.teardown, name="teardown")

        tasks = {
            INSTANCE: lambda s: self._terminate(instance_id, s),
            AGENT: lambda s: self._deregister(label, s),
        }
        results = join_all_collect(tasks, teardown_scope)

        failures: Dict[str, BaseException] = {
            name: result.error for name, result in results.items() if not result.ok
        }
        if failures:
            for name, error in failures.items():
                logger.error("Teardown of %s failed: %s", name, error)
            raise TeardownError(failures, instance_id, label)

        logger.info("Terminated instance %s and removed runner %s", instance_id, label)
        return TeardownReport(
            instance_id=instance_id, label=label, runner_id=results[AGENT].value,
        )

    def _terminate(self, instance_id: str, scope: CancelScope) -> str:
        scope.check(f"terminate instance {instance_id}")
        self._compute.terminate_instance(instance_id)
        return instance_id

    def _deregister(self, label: str, scope: CancelScope) -> int:
        scope.check(f"remove runner {label}")
        runner = self._registration.remove_agent(label)
        logger.info("Removed runner %s (id %s)", label, runner.id)
        return runner.id
