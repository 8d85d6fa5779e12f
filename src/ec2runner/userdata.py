"""
Boot script for the ephemeral runner.

The script downloads the GitHub Actions runner matching the machine
architecture, registers it under the generated label and starts it.
The launcher only ever sees the base64-encoded result.
"""

from __future__ import annotations

import base64

_TEMPLATE = """#!/bin/bash
set -e
echo "Configuring GitHub Runner {label}"
mkdir -p /actions-runner
cd /actions-runner
case $(uname -m) in aarch64) ARCH="arm64" ;; amd64|x86_64) ARCH="x64" ;; esac && export RUNNER_ARCH=${{ARCH}}
curl -O -L https://github.com/actions/runner/releases/download/v{version}/actions-runner-linux-${{RUNNER_ARCH}}-{version}.tar.gz
tar xzf ./actions-runner-linux-${{RUNNER_ARCH}}-{version}.tar.gz
export RUNNER_ALLOW_RUNASROOT=1
./config.sh --url {url} --token {token} --name {label} --work _work --labels {label} --unattended --ephemeral
./run.sh
"""


def render_boot_script(url: str, token: str, label: str, runner_version: str) -> str:
    """Render the plain-text boot script.

    Args:
        url: Organization or repository URL the runner registers with.
        token: Registration token, consumed once by ``config.sh``.
        label: Runner name and label.
        runner_version: actions/runner release to install.
    """
    return _TEMPLATE.format(
        url=url, token=token, label=label, version=runner_version,
    )


def build_user_data(url: str, token: str, label: str, runner_version: str) -> str:
    """Render the boot script and base64-encode it for EC2."""
    script = render_boot_script(url, token, label, runner_version)
    return base64.b64encode(script.encode("utf-8")).decode("ascii")
