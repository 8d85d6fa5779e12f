"""
Interfaces for the two external systems the runner lifecycle drives.

The orchestration code (launcher, readiness, teardown) depends only on
these classes, so tests can swap in in-memory fakes. Each method is a
single API round-trip; all waiting and deadline handling lives in the
orchestration layer.
"""

from __future__ import annotations

from typing import List, Optional

from ..errors import AgentNotFound
from ..models import (
    ProvisioningSpec,
    RegisteredAgent,
    RegistrationToken,
    SpotRequestStatus,
)


class ComputeProvider:
    """Abstract compute backend (EC2)."""

    region: str = ""

    def latest_spot_price(self, instance_type: str, lookback: float) -> Optional[str]:
        """Most recent spot price within the lookback window, or None.

        Args:
            instance_type: Instance class to price.
            lookback: Window size in seconds ending now.
        """
        raise NotImplementedError

    def run_instance(self, spec: ProvisioningSpec) -> str:
        """Submit an on-demand run request for exactly one instance.

        Returns:
            The new instance id.
        """
        raise NotImplementedError

    def instance_state(self, instance_id: str) -> str:
        """Return the lifecycle state name (pending, running, ...)."""
        raise NotImplementedError

    def request_spot_instance(self, spec: ProvisioningSpec, max_price: str) -> str:
        """Submit a one-time spot request.

        Returns:
            The spot request id.
        """
        raise NotImplementedError

    def spot_request_status(self, request_id: str) -> SpotRequestStatus:
        """Describe a spot request."""
        raise NotImplementedError

    def cancel_spot_request(self, request_id: str) -> None:
        """Cancel an open spot request."""
        raise NotImplementedError

    def instance_status_ok(self, instance_id: str) -> bool:
        """True once both instance and system status checks pass."""
        raise NotImplementedError

    def terminate_instance(self, instance_id: str) -> None:
        """Terminate an instance."""
        raise NotImplementedError


class RegistrationService:
    """Abstract CI registration backend (GitHub Actions runners).

    The scope (organization or repository) is fixed when the service is
    constructed and applies to every call.
    """

    def create_registration_token(self) -> RegistrationToken:
        """Issue a short-lived runner registration token."""
        raise NotImplementedError

    def list_runners(self) -> List[RegisteredAgent]:
        """List every runner registered in this scope."""
        raise NotImplementedError

    def remove_runner(self, runner_id: int) -> None:
        """Deregister a runner by id."""
        raise NotImplementedError

    def find_runner(self, label: str) -> RegisteredAgent:
        """Look up a runner by exact name.

        Raises:
            AgentNotFound: If no runner carries that name.
        """
        for runner in self.list_runners():
            if runner.name == label:
                return runner
        raise AgentNotFound(label)

    def remove_agent(self, label: str) -> RegisteredAgent:
        """Find the runner named ``label`` and deregister it.

        Returns:
            The runner that was removed.

        Raises:
            AgentNotFound: If no runner carries that name.
        """
        runner = self.find_runner(label)
        self.remove_runner(runner.id)
        return runner
