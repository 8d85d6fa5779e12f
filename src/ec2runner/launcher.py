"""
Instance launcher: execute a launch strategy against the compute provider.

Each LaunchStrategy maps, through its ``uses_spot`` and
``fallback_allowed`` flags, to an ordered tuple of attempts. A single
dispatcher walks the tuple, so "at most one fallback" is a property of
the table rather than of the code paths:

    ON_DEMAND            -> (on-demand,)
    SPOT_ONLY            -> (spot,)
    SPOT_THEN_ON_DEMAND  -> (spot, on-demand)

Only an unfulfilled or rejected spot request moves on to the next
attempt. Missing price data, provider errors and cancellation all
propagate.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Tuple

from .concurrency import CancelScope, poll_until
from .config import Timeouts
from .errors import (
    CancelledError,
    ComputeError,
    LaunchFailed,
    NoPriceData,
    SpotUnfulfilled,
)
from .models import LaunchResult, ProvisioningSpec, SpotRequestStatus
from .policy import LaunchStrategy
from .providers.base import ComputeProvider

logger = logging.getLogger(__name__)

ON_DEMAND = "on-demand"
SPOT = "spot"


def _attempts_for(strategy: LaunchStrategy) -> Tuple[str, ...]:
    attempts: Tuple[str, ...] = (SPOT,) if strategy.uses_spot else ()
    if strategy.fallback_allowed or not strategy.uses_spot:
        attempts += (ON_DEMAND,)
    return attempts


ATTEMPTS: Dict[LaunchStrategy, Tuple[str, ...]] = {
    strategy: _attempts_for(strategy) for strategy in LaunchStrategy
}

# States from which an instance will never reach "running".
_DEAD_STATES = ("shutting-down", "terminated", "stopping", "stopped")

# Spot failures that permit moving on to the next attempt.
_FALLBACK_ERRORS = (SpotUnfulfilled,)


class InstanceLauncher:
    """Launch one instance using a spot and/or on-demand strategy.

    Args:
        compute: Compute provider to launch against.
        timeouts: Launch deadline, poll interval and spot price lookback.
    """

    def __init__(self, compute: ComputeProvider, timeouts: Optional[Timeouts] = None) -> None:
        self._compute = compute
        self._timeouts = timeouts or Timeouts()
        self._attempts: Dict[str, Callable[[ProvisioningSpec, CancelScope], LaunchResult]] = {
            ON_DEMAND: self._launch_on_demand,
            SPOT: self._launch_spot,
        }

    def launch(
        self,
        spec: ProvisioningSpec,
        strategy: LaunchStrategy,
        scope: Optional[CancelScope] = None,
    ) -> LaunchResult:
        """Launch an instance according to ``strategy``.

        Args:
            spec: Immutable launch parameters, reused verbatim on fallback.
            strategy: Strategy chosen by the provisioning policy.
            scope: Parent cancel scope; each attempt gets its own launch
                deadline beneath it.

        Returns:
            LaunchResult with the instance id and which path produced it.

        Raises:
            NoPriceData: The spot price window was empty.
            SpotUnfulfilled: Spot failed and no fallback is allowed.
            LaunchFailed: The on-demand launch failed or timed out.
            CancelledError: The parent scope was cancelled.
        """
        scope = scope or CancelScope(name="launch")
        attempts = ATTEMPTS[strategy]
        last_error: Optional[Exception] = None

        for index, attempt in enumerate(attempts):
            is_last = index == len(attempts) - 1
            scope.check("launch")
            try:
                result = self._attempts[attempt](spec, scope)
            except _FALLBACK_ERRORS as exc:
                if is_last:
                    raise
                logger.warning(
                    "%s launch failed (%s); falling back to %s",
                    attempt, exc, attempts[index + 1],
                )
                last_error = exc
                continue
            if last_error is not None:
                result = result.model_copy(update={"strategy": strategy, "fell_back": True})
            else:
                result = result.model_copy(update={"strategy": strategy})
            logger.info(
                "Launched instance %s via %s%s",
                result.instance_id, attempt, " (fallback)" if result.fell_back else "",
            )
            return result

        raise AssertionError(f"no launch attempts for strategy {strategy}")

    # -- on-demand ---------------------------------------------------------

    def _launch_on_demand(self, spec: ProvisioningSpec, scope: CancelScope) -> LaunchResult:
        try:
            instance_id = self._compute.run_instance(spec)
        except ComputeError as exc:
            raise LaunchFailed("launch on-demand instance", spec.instance_type, exc) from exc

        logger.info("Waiting for instance %s to be running...", instance_id)
        wait_scope = scope.child(self._timeouts.launch, name="launch")
        try:
            poll_until(
                lambda: self._running(instance_id),
                wait_scope,
                self._timeouts.launch_poll,
                f"waiting for instance {instance_id} to be running",
            )
        except ComputeError as exc:
            raise LaunchFailed(
                "wait for instance running", instance_id, exc, instance_id=instance_id,
            ) from exc
        except CancelledError as exc:
            if scope.cancelled:
                raise
            raise LaunchFailed(
                "wait for instance running", instance_id, exc, instance_id=instance_id,
            ) from exc

        return LaunchResult(
            instance_id=instance_id, strategy=LaunchStrategy.ON_DEMAND, spot=False,
        )

    def _running(self, instance_id: str) -> Optional[bool]:
        state = self._compute.instance_state(instance_id)
        logger.debug("Instance %s state: %s", instance_id, state)
        if state == "running":
            return True
        if state in _DEAD_STATES:
            raise LaunchFailed(
                "wait for instance running", instance_id,
                f"instance entered state {state}", instance_id=instance_id,
            )
        return None

    # -- spot --------------------------------------------------------------

    def _launch_spot(self, spec: ProvisioningSpec, scope: CancelScope) -> LaunchResult:
        region = spec.region
        try:
            price = self._compute.latest_spot_price(
                spec.instance_type, self._timeouts.spot_price_lookback,
            )
        except ComputeError as exc:
            raise LaunchFailed("fetch spot price", spec.instance_type, exc) from exc
        if price is None:
            raise NoPriceData(spec.instance_type, region)

        try:
            request_id = self._compute.request_spot_instance(spec, price)
        except ComputeError as exc:
            raise LaunchFailed("request spot instance", spec.instance_type, exc) from exc

        logger.info(
            "Waiting for spot request %s (max price %s) to be fulfilled...",
            request_id, price,
        )
        wait_scope = scope.child(self._timeouts.launch, name="spot")
        last: Dict[str, SpotRequestStatus] = {}
        fulfilled = False
        try:
            status = poll_until(
                lambda: self._fulfilled(request_id, last),
                wait_scope,
                self._timeouts.launch_poll,
                f"waiting for spot request {request_id}",
            )
            fulfilled = True
        except CancelledError:
            if scope.cancelled:
                raise
            code = last["status"].code if "status" in last else None
            raise SpotUnfulfilled(request_id, "not fulfilled before deadline", code) from None
        except ComputeError as exc:
            raise LaunchFailed("wait for spot request", request_id, exc) from exc
        finally:
            if not fulfilled:
                self._cancel_spot_request(request_id)

        return LaunchResult(
            instance_id=status.instance_id,
            strategy=LaunchStrategy.SPOT_ONLY,
            spot=True,
            spot_request_id=request_id,
        )

    def _fulfilled(
        self, request_id: str, last: Dict[str, SpotRequestStatus],
    ) -> Optional[SpotRequestStatus]:
        status = self._compute.spot_request_status(request_id)
        last["status"] = status
        logger.debug("Spot request %s: state=%s code=%s", request_id, status.state, status.code)
        if status.fulfilled:
            return status
        if status.terminal:
            raise SpotUnfulfilled(request_id, f"ended in state {status.state}", status.code)
        return None

    def _cancel_spot_request(self, request_id: str) -> None:
        """Cancel an unfulfilled request so it is not left open.

        A request can be fulfilled between the last poll and the cancel;
        cancelling does not stop that instance, so it is terminated here.
        Failures are logged with the ids an operator needs and never mask
        the error that ended the wait.
        """
        try:
            self._compute.cancel_spot_request(request_id)
            status = self._compute.spot_request_status(request_id)
        except Exception as exc:
            logger.error(
                "Failed to cancel spot request %s; cancel it manually: %s",
                request_id, exc,
            )
            return
        if not status.instance_id:
            return
        logger.warning(
            "Spot request %s was fulfilled with %s while being cancelled; terminating it",
            request_id, status.instance_id,
        )
        try:
            self._compute.terminate_instance(status.instance_id)
        except Exception as exc:
            logger.error(
                "Failed to terminate late spot instance %s; terminate it manually: %s",
                status.instance_id, exc,
            )
