"""
Exception hierarchy for runner provisioning and teardown.

Every failure that touches AWS or GitHub is wrapped with the operation
and identifier involved so an operator can find and clean up whatever
was left behind.
"""

from __future__ import annotations

from typing import Dict, Optional


class RunnerError(Exception):
    """Base class for all ec2-runner failures."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigurationError(RunnerError):
    """Invalid input detected before any external call was made."""


class UnknownModeError(ConfigurationError):
    """A mode value (process or provisioning) is not recognized."""

    def __init__(self, kind: str, mode: str) -> None:
        self.kind = kind
        self.mode = mode
        super().__init__(f"unknown {kind}: {mode!r}")


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancelledError(RunnerError):
    """The enclosing cancel scope was cancelled."""


class DeadlineExceeded(CancelledError):
    """The enclosing cancel scope ran past its deadline."""


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------

class ComputeError(RunnerError):
    """An EC2 API call failed."""

    def __init__(self, operation: str, identifier: str, cause: object) -> None:
        self.operation = operation
        self.identifier = identifier
        self.cause = cause
        super().__init__(f"{operation} {identifier}: {cause}")


class RegistrationError(RunnerError):
    """A GitHub API call failed."""

    def __init__(
        self, method: str, path: str, status: Optional[int], detail: str,
    ) -> None:
        self.method = method
        self.path = path
        self.status = status
        self.detail = detail
        code = status if status is not None else "transport error"
        super().__init__(f"GitHub API {method} {path}: {code} {detail}".rstrip())


class AgentNotFound(RunnerError):
    """No registered runner carries the requested label."""

    def __init__(self, label: str) -> None:
        self.label = label
        super().__init__(f"runner {label!r} not found")


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------

class ProvisioningError(RunnerError):
    """Launching the compute instance failed."""


class NoPriceData(ProvisioningError):
    """The spot price history window returned no data points."""

    def __init__(self, instance_type: str, region: str) -> None:
        self.instance_type = instance_type
        self.region = region
        super().__init__(
            f"no spot price history for instance type {instance_type} "
            f"in region {region}"
        )


class SpotUnfulfilled(ProvisioningError):
    """A spot request was rejected or not fulfilled in time."""

    def __init__(
        self, request_id: str, reason: str, code: Optional[str] = None,
    ) -> None:
        self.request_id = request_id
        self.reason = reason
        self.code = code
        detail = f" (status {code})" if code else ""
        super().__init__(f"spot request {request_id} {reason}{detail}")


class LaunchFailed(ProvisioningError):
    """An on-demand launch or a launch-time provider call failed."""

    def __init__(
        self,
        operation: str,
        identifier: str,
        cause: object,
        instance_id: Optional[str] = None,
    ) -> None:
        self.operation = operation
        self.identifier = identifier
        self.cause = cause
        # Set when an instance was created before the failure.
        self.instance_id = instance_id
        super().__init__(f"{operation} {identifier}: {cause}")


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------

class ReadinessError(RunnerError):
    """One of the readiness conditions failed or timed out."""

    def __init__(
        self,
        condition: str,
        instance_id: str,
        label: str,
        cause: BaseException,
    ) -> None:
        self.condition = condition
        self.instance_id = instance_id
        self.label = label
        self.cause = cause
        verb = "timed out" if self.timed_out else "failed"
        super().__init__(
            f"{condition} {verb} (instance {instance_id}, runner {label}): {cause}"
        )

    @property
    def timed_out(self) -> bool:
        return isinstance(self.cause, CancelledError)


# ---------------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------------

class NoInstance(RunnerError):
    """Stop was requested but no instance id is known."""

    def __init__(self) -> None:
        super().__init__("no instance to terminate")


class TeardownError(RunnerError):
    """Aggregate of every release operation that failed during teardown.

    Args:
        failures: Failed release operations keyed by resource
            (``instance`` and/or ``agent``).
        instance_id: The instance that was being terminated.
        label: The runner label that was being deregistered.
    """

    INSTANCE = "instance"
    AGENT = "agent"

    def __init__(
        self,
        failures: Dict[str, BaseException],
        instance_id: str,
        label: str,
    ) -> None:
        self.failures = dict(failures)
        self.instance_id = instance_id
        self.label = label
        parts = []
        if self.instance_failed:
            parts.append(
                f"terminate instance {instance_id}: {self.failures[self.INSTANCE]}"
            )
        if self.agent_failed:
            parts.append(f"remove runner {label}: {self.failures[self.AGENT]}")
        prefix = "partial teardown failure" if self.partial else "teardown failed"
        super().__init__(f"{prefix}; " + "; ".join(parts))

    @property
    def instance_failed(self) -> bool:
        return self.INSTANCE in self.failures

    @property
    def agent_failed(self) -> bool:
        return self.AGENT in self.failures

    @property
    def agent_missing(self) -> bool:
        """True when the only agent-side problem is that it was already gone."""
        return isinstance(self.failures.get(self.AGENT), AgentNotFound)

    @property
    def partial(self) -> bool:
        """Exactly one of the two releases failed."""
        return self.instance_failed != self.agent_failed
