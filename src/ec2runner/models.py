"""
Pydantic value objects passed between the provisioning phases.

Everything here is frozen: a spec or result is built once and never
mutated after it has been handed to a collaborator.
"""

from __future__ import annotations

import base64
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .policy import LaunchStrategy


class ResourceTag(BaseModel):
    """A single AWS resource tag."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    key: str = Field(alias="Key", min_length=1)
    value: str = Field(default="", alias="Value")

    def to_aws(self) -> dict:
        return {"Key": self.key, "Value": self.value}


class ProvisioningSpec(BaseModel):
    """Immutable launch parameters for one launch attempt."""

    model_config = ConfigDict(frozen=True)

    image_id: str
    instance_type: str
    subnet_id: str
    security_group_id: str
    iam_instance_profile: Optional[str] = None
    tags: Tuple[ResourceTag, ...] = ()
    user_data: str = Field(description="Base64-encoded boot script")
    region: str

    def decoded_user_data(self) -> str:
        """Return the boot script as plain text."""
        return base64.b64decode(self.user_data).decode("utf-8")


class RegistrationToken(BaseModel):
    """Short-lived runner registration token issued by GitHub."""

    model_config = ConfigDict(frozen=True)

    token: str = Field(repr=False)
    expires_at: Optional[str] = None


class RegisteredAgent(BaseModel):
    """A self-hosted runner as listed by the GitHub API."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    status: str = "offline"
    busy: bool = False

    @property
    def online(self) -> bool:
        return self.status == "online"


class SpotRequestStatus(BaseModel):
    """Snapshot of a spot instance request."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    state: str
    code: Optional[str] = None
    instance_id: Optional[str] = None

    @property
    def fulfilled(self) -> bool:
        return (
            self.state == "active"
            and self.code == "fulfilled"
            and bool(self.instance_id)
        )

    @property
    def terminal(self) -> bool:
        """The request can no longer be fulfilled."""
        return self.state in ("cancelled", "failed", "closed")


class LaunchResult(BaseModel):
    """Outcome of a successful launch."""

    model_config = ConfigDict(frozen=True)

    instance_id: str
    strategy: LaunchStrategy
    spot: bool
    fell_back: bool = False
    spot_request_id: Optional[str] = None


class StartResult(BaseModel):
    """Outputs of a successful ``start``."""

    model_config = ConfigDict(frozen=True)

    label: str
    instance_id: str
    strategy: LaunchStrategy
    fell_back: bool = False


class TeardownReport(BaseModel):
    """Outcome of a fully successful teardown."""

    model_config = ConfigDict(frozen=True)

    instance_id: str
    label: str
    runner_id: int
