"""
Immutable runner configuration.

A RunnerConfig is built once at process start (normally by the CLI from
GitHub Actions inputs) and handed to each component explicitly. Nothing
downstream reads the environment.
"""

from __future__ import annotations

import json
import os
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from . import DEFAULT_REGION
from .errors import ConfigurationError, UnknownModeError
from .models import ResourceTag
from .policy import ProvisioningMode, parse_mode

MODES = ("start", "stop")
GITHUB_URL = "https://github.com"


# ---------------------------------------------------------------------------
# Input parsing helpers
# ---------------------------------------------------------------------------

def parse_repository(value: str) -> Tuple[str, str]:
    """Split a repository reference into owner and name.

    Accepts ``owner/name`` or ``https://github.com/owner/name``.

    Raises:
        ConfigurationError: If either part is missing.
    """
    ref = (value or "").strip()
    if ref.startswith(GITHUB_URL):
        ref = ref[len(GITHUB_URL):]
    ref = ref.strip("/")
    if ref.endswith(".git"):
        ref = ref[:-4]
    parts = ref.split("/")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise ConfigurationError(f"invalid repository reference: {value!r}")
    return parts[0], parts[1]


def parse_resource_tags(text: Optional[str]) -> Tuple[ResourceTag, ...]:
    """Parse the ``aws-resource-tags`` JSON input.

    Args:
        text: JSON array of ``{"Key": ..., "Value": ...}`` objects, or an
            empty string.

    Raises:
        ConfigurationError: On malformed JSON or tag entries.
    """
    if not text or not text.strip():
        return ()
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"failed to parse AWS resource tags: {exc}") from exc
    if not isinstance(raw, list):
        raise ConfigurationError("AWS resource tags must be a JSON array")
    try:
        return tuple(ResourceTag.model_validate(item) for item in raw)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid AWS resource tag: {exc}") from exc


def parse_bool(value: object) -> bool:
    """Interpret an action input the way ``== "true"`` does, plus real bools."""
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() == "true"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class GitHubConfig(BaseModel):
    """GitHub side of the configuration."""

    model_config = ConfigDict(frozen=True)

    token: str = Field(repr=False)
    repository: str
    org_runner: bool = False
    api_url: str = "https://api.github.com"
    runner_version: str = "2.313.0"

    @field_validator("repository")
    @classmethod
    def _check_repository(cls, v: str) -> str:
        owner, name = parse_repository(v)
        return f"{owner}/{name}"

    @property
    def owner(self) -> str:
        return self.repository.split("/", 1)[0]

    @property
    def repo(self) -> str:
        return self.repository.split("/", 1)[1]

    @property
    def runner_url(self) -> str:
        """URL the runner registers against (org or repository)."""
        if self.org_runner:
            return f"{GITHUB_URL}/{self.owner}"
        return f"{GITHUB_URL}/{self.repository}"


class EC2Config(BaseModel):
    """Launch parameters passed through to EC2 unmodified."""

    model_config = ConfigDict(frozen=True)

    image_id: str
    instance_type: str
    subnet_id: str
    security_group_id: str
    iam_instance_profile: Optional[str] = None
    resource_tags: Tuple[ResourceTag, ...] = ()

    @field_validator("iam_instance_profile")
    @classmethod
    def _blank_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None


class SpotConfig(BaseModel):
    """Spot provisioning mode and the region it applies to."""

    model_config = ConfigDict(frozen=True)

    provisioning_mode: ProvisioningMode = ProvisioningMode.NONE
    region: str = DEFAULT_REGION

    @field_validator("provisioning_mode", mode="before")
    @classmethod
    def _check_mode(cls, v: object) -> ProvisioningMode:
        if v is None or v == "":
            return ProvisioningMode.NONE
        return parse_mode(v)  # type: ignore[arg-type]


class Timeouts(BaseModel):
    """Per-operation deadlines and poll intervals, in seconds."""

    model_config = ConfigDict(frozen=True)

    launch: float = 6 * 60
    readiness: float = 8 * 60
    teardown: float = 8 * 60
    launch_poll: float = 15
    health_poll: float = 15
    registration_poll: float = 10
    spot_price_lookback: float = 60 * 60
    health_timeout: Optional[float] = None
    registration_timeout: Optional[float] = None


class RunnerConfig(BaseModel):
    """Complete, immutable configuration for one process invocation."""

    model_config = ConfigDict(frozen=True)

    mode: str
    github: GitHubConfig
    ec2: EC2Config
    spot: SpotConfig = Field(default_factory=SpotConfig)
    timeouts: Timeouts = Field(default_factory=Timeouts)
    runner_label: Optional[str] = None
    instance_id: Optional[str] = None

    @field_validator("mode")
    @classmethod
    def _check_mode(cls, v: str) -> str:
        if v not in MODES:
            raise UnknownModeError("mode", v)
        return v

    @field_validator("runner_label", "instance_id")
    @classmethod
    def _blank_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None


def build_config(
    *,
    mode: str,
    github_token: str,
    repository: str,
    image_id: str = "",
    instance_type: str = "",
    subnet_id: str = "",
    security_group_id: str = "",
    iam_instance_profile: Optional[str] = None,
    resource_tags: Optional[str] = None,
    org_runner: object = False,
    provisioning_mode: Optional[str] = None,
    region: Optional[str] = None,
    runner_label: Optional[str] = None,
    instance_id: Optional[str] = None,
    runner_version: Optional[str] = None,
    timeouts: Optional[Timeouts] = None,
) -> RunnerConfig:
    """Assemble a RunnerConfig from raw string inputs.

    Validation errors are surfaced as ConfigurationError so callers only
    need to handle one exception type for bad input.

    Raises:
        ConfigurationError: If any input is invalid.
    """
    if mode not in MODES:
        raise UnknownModeError("mode", mode)

    github_kwargs = {
        "token": github_token,
        "repository": repository,
        "org_runner": parse_bool(org_runner),
    }
    if runner_version:
        github_kwargs["runner_version"] = runner_version

    try:
        return RunnerConfig(
            mode=mode,
            github=GitHubConfig(**github_kwargs),
            ec2=EC2Config(
                image_id=image_id,
                instance_type=instance_type,
                subnet_id=subnet_id,
                security_group_id=security_group_id,
                iam_instance_profile=iam_instance_profile,
                resource_tags=parse_resource_tags(resource_tags),
            ),
            spot=SpotConfig(
                provisioning_mode=provisioning_mode,
                region=region or os.environ.get("AWS_DEFAULT_REGION") or DEFAULT_REGION,
            ),
            timeouts=timeouts or Timeouts(),
            runner_label=runner_label,
            instance_id=instance_id,
        )
    except ValidationError as exc:
        raise ConfigurationError(_describe_validation_error(exc)) from exc


def _describe_validation_error(exc: ValidationError) -> str:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        messages.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "invalid configuration: " + "; ".join(messages)
