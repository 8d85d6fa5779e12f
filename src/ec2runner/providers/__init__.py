"""
External collaborators: the compute backend and the CI registration service.

The orchestration layer only depends on the base interfaces; EC2Compute
and GitHubRegistration are the production implementations.
"""

from .aws import EC2Compute
from .base import ComputeProvider, RegistrationService
from .github import GitHubRegistration

__all__ = ["ComputeProvider", "RegistrationService", "EC2Compute", "GitHubRegistration"]
