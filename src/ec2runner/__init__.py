"""
ec2-runner: ephemeral EC2 self-hosted runners for GitHub Actions.

Launches a single EC2 instance that boots a GitHub Actions runner bound
to a generated label, waits until the instance is healthy and the
runner is online, and later tears both down again.
"""

__version__ = "0.1.0"

DEFAULT_REGION = "us-east-1"
LABEL_PREFIX = "ec2-runner"
