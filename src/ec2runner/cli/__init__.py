"""
ec2-runner CLI: the GitHub Action entry point.

Every option can also be supplied as an action input through the
``INPUT_<NAME>`` environment variable the Actions runtime sets, so the
same command works from a workflow step and from a shell.

Entry point: ec2runner.cli:main
"""

from __future__ import annotations

import logging
from typing import Optional

import click
from rich.panel import Panel
from rich.table import Table

from .. import __version__
from ..concurrency import CancelScope
from ..config import RunnerConfig, build_config
from ..errors import ConfigurationError, RunnerError, TeardownError
from ..lifecycle import RunnerLifecycle
from ..providers import EC2Compute, GitHubRegistration
from ._common import cancel_on_signals, console, setup_logging, write_outputs

logger = logging.getLogger("ec2runner.cli")

EXIT_RUNTIME = 1
EXIT_CONFIG = 2


def _input(name: str) -> str:
    return f"INPUT_{name.upper()}"


def build_lifecycle(config: RunnerConfig) -> RunnerLifecycle:
    """Wire the production providers into a lifecycle."""
    compute = EC2Compute(region=config.spot.region)
    registration = GitHubRegistration(config.github)
    return RunnerLifecycle(config, compute, registration)


def _print_start(result, config: RunnerConfig) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="dim")
    table.add_column(style="bold cyan")
    table.add_row("Label", result.label)
    table.add_row("Instance", result.instance_id)
    table.add_row("Strategy", result.strategy.value + (" (fallback)" if result.fell_back else ""))
    table.add_row("Region", config.spot.region)
    console.print(Panel(table, title="Runner ready", border_style="green"))


def _print_failure(exc: RunnerError, lifecycle: Optional[RunnerLifecycle]) -> None:
    console.print(f"[bold red]Error:[/] {exc}")
    if isinstance(exc, TeardownError):
        for name, error in exc.failures.items():
            console.print(f"  [red]{name}[/]: {error}")
    if lifecycle is not None and lifecycle.instance_id:
        console.print(
            f"  [yellow]Instance {lifecycle.instance_id} may still be running; "
            "terminate it manually.[/]"
        )


@click.command()
@click.version_option(version=__version__, prog_name="ec2-runner")
@click.option("--mode", envvar=_input("mode"), required=True,
              help="Operating mode: start or stop.")
@click.option("--github-token", envvar=_input("github-token"), required=True,
              help="GitHub token with runner admin permissions.")
@click.option("--github-org-runner", envvar=_input("github-org-runner"), default="false",
              help="Register at organization scope instead of repository scope.")
@click.option("--repository", envvar=["GITHUB_REPOSITORY", _input("repository")], required=True,
              help="Repository as owner/name.")
@click.option("--ec2-image-id", envvar=_input("ec2-image-id"), default="")
@click.option("--ec2-instance-type", envvar=_input("ec2-instance-type"), default="")
@click.option("--subnet-id", envvar=_input("subnet-id"), default="")
@click.option("--security-group-id", envvar=_input("security-group-id"), default="")
@click.option("--iam-instance-role", envvar=_input("iam-instance-role"), default="",
              help="IAM instance profile name for the runner.")
@click.option("--aws-resource-tags", envvar=_input("aws-resource-tags"), default="",
              help='JSON array such as [{"Key": "Name", "Value": "runner"}].')
@click.option("--spot-provisioning-mode", envvar=_input("spot-provisioning-mode"), default="None",
              help="None, SpotOnly, BestEffort or MaxPerformance.")
@click.option("--spot-region", envvar=_input("spot-region"), default="",
              help="AWS region (defaults to AWS_DEFAULT_REGION).")
@click.option("--label", envvar=_input("label"), default="",
              help="Runner label from a previous start (stop mode).")
@click.option("--ec2-instance-id", envvar=_input("ec2-instance-id"), default="",
              help="Instance id from a previous start (stop mode).")
@click.option("--runner-version", envvar=_input("runner-version"), default="",
              help="actions/runner release to install.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(
    ctx: click.Context,
    mode: str,
    github_token: str,
    github_org_runner: str,
    repository: str,
    ec2_image_id: str,
    ec2_instance_type: str,
    subnet_id: str,
    security_group_id: str,
    iam_instance_role: str,
    aws_resource_tags: str,
    spot_provisioning_mode: str,
    spot_region: str,
    label: str,
    ec2_instance_id: str,
    runner_version: str,
    verbose: bool,
):
    """Start or stop an ephemeral EC2 GitHub Actions runner.

    \b
    Start:  ec2-runner --mode start --ec2-image-id ami-... --ec2-instance-type t3.large ...
    Stop:   ec2-runner --mode stop --label <label> --ec2-instance-id <id> ...
    """
    setup_logging(verbose)

    try:
        config = build_config(
            mode=mode.strip(),
            github_token=github_token,
            repository=repository,
            image_id=ec2_image_id,
            instance_type=ec2_instance_type,
            subnet_id=subnet_id,
            security_group_id=security_group_id,
            iam_instance_profile=iam_instance_role,
            resource_tags=aws_resource_tags,
            org_runner=github_org_runner,
            provisioning_mode=spot_provisioning_mode,
            region=spot_region,
            runner_label=label,
            instance_id=ec2_instance_id,
            runner_version=runner_version,
        )
    except ConfigurationError as exc:
        console.print(f"[bold red]Configuration error:[/] {exc}")
        ctx.exit(EXIT_CONFIG)

    lifecycle: Optional[RunnerLifecycle] = None
    scope = CancelScope(name=config.mode)
    try:
        lifecycle = build_lifecycle(config)
        with cancel_on_signals(scope):
            if config.mode == "start":
                result = lifecycle.start(scope)
                write_outputs({"label": result.label, "ec2-instance-id": result.instance_id})
                _print_start(result, config)
            else:
                if not config.runner_label:
                    logger.warning("No runner label given; runner deregistration will fail")
                lifecycle.stop(scope)
                console.print(
                    f"[green]Runner {config.runner_label} stopped, "
                    f"instance {config.instance_id} terminated.[/]"
                )
    except ConfigurationError as exc:
        _print_failure(exc, lifecycle)
        ctx.exit(EXIT_CONFIG)
    except RunnerError as exc:
        _print_failure(exc, lifecycle)
        ctx.exit(EXIT_RUNTIME)

