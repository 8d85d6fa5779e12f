"""
Provisioning policy: map a provisioning mode to a launch strategy.

This is a decision table with no side effects. ``BestEffort`` and
``MaxPerformance`` currently share one strategy.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Union

from .errors import UnknownModeError


class ProvisioningMode(str, Enum):
    """Provisioning modes accepted by the action input."""

    NONE = "None"
    SPOT_ONLY = "SpotOnly"
    BEST_EFFORT = "BestEffort"
    MAX_PERFORMANCE = "MaxPerformance"


class LaunchStrategy(str, Enum):
    """How the launcher obtains an instance."""

    ON_DEMAND = "on-demand"
    SPOT_ONLY = "spot-only"
    SPOT_THEN_ON_DEMAND = "spot-then-on-demand"

    @property
    def uses_spot(self) -> bool:
        return self is not LaunchStrategy.ON_DEMAND

    @property
    def fallback_allowed(self) -> bool:
        return self is LaunchStrategy.SPOT_THEN_ON_DEMAND


_STRATEGIES: Dict[ProvisioningMode, LaunchStrategy] = {
    ProvisioningMode.NONE: LaunchStrategy.ON_DEMAND,
    ProvisioningMode.SPOT_ONLY: LaunchStrategy.SPOT_ONLY,
    ProvisioningMode.BEST_EFFORT: LaunchStrategy.SPOT_THEN_ON_DEMAND,
    ProvisioningMode.MAX_PERFORMANCE: LaunchStrategy.SPOT_THEN_ON_DEMAND,
}


def parse_mode(value: Union[str, ProvisioningMode]) -> ProvisioningMode:
    """Coerce a raw input string into a ProvisioningMode.

    Raises:
        UnknownModeError: If the value is not one of the four modes.
    """
    if isinstance(value, ProvisioningMode):
        return value
    try:
        return ProvisioningMode(value)
    except ValueError:
        raise UnknownModeError("provisioning mode", str(value)) from None


def choose(mode: Union[str, ProvisioningMode]) -> LaunchStrategy:
    """Pick the launch strategy for a provisioning mode.

    Args:
        mode: A ProvisioningMode or its raw string spelling.

    Returns:
        The LaunchStrategy the launcher should execute.

    Raises:
        UnknownModeError: For any value outside the decision table.
    """
    return _STRATEGIES[parse_mode(mode)]
