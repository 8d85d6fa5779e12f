"""Shared plumbing for the CLI: console, logging, signals and action outputs."""

from __future__ import annotations

import logging
import os
import signal
from contextlib import contextmanager
from typing import Dict, Iterator

import click
from rich.console import Console
from rich.logging import RichHandler

from ..concurrency import CancelScope

logger = logging.getLogger("ec2runner.cli")

# Human-facing output goes to stderr; stdout is reserved for action outputs.
console = Console(stderr=True)


def setup_logging(verbose: bool = False) -> None:
    """Configure root logging through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
        force=True,
    )
    # boto and urllib3 are chatty at DEBUG.
    for name in ("botocore", "boto3", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def cancel_on_signals(scope: CancelScope) -> Iterator[CancelScope]:
    """Cancel ``scope`` on SIGINT/SIGTERM for the duration of the block."""

    def _handle(signum, frame):
        name = signal.Signals(signum).name
        logger.warning("Received %s; cancelling", name)
        scope.cancel(f"received {name}")

    previous = {}
    for sig in (signal.SIGTERM, signal.SIGINT):
        previous[sig] = signal.signal(sig, _handle)
    try:
        yield scope
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def write_outputs(outputs: Dict[str, str]) -> None:
    """Publish GitHub Actions step outputs.

    Appends ``name=value`` lines to ``$GITHUB_OUTPUT`` when it is set and
    falls back to the legacy ``::set-output`` workflow command otherwise.
    """
    path = os.environ.get("GITHUB_OUTPUT")
    if path:
        with open(path, "a", encoding="utf-8") as fh:
            for name, value in outputs.items():
                fh.write(f"{name}={value}\n")
        return
    for name, value in outputs.items():
        click.echo(f"::set-output name={name}::{value}")
