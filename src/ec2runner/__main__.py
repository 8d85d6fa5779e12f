"""Allow ``python -m ec2runner``."""

from .cli import main

main(prog_name="ec2-runner")
