"""
AWS EC2 compute provider using boto3.

Expects AWS credentials via environment variables, ~/.aws/credentials,
or an IAM role:
    AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY, AWS_DEFAULT_REGION

Each method is one EC2 API call. boto3 and botocore errors are wrapped
in ComputeError with the operation and resource id.
"""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .. import DEFAULT_REGION
from ..errors import ComputeError
from ..models import ProvisioningSpec, SpotRequestStatus
from .base import ComputeProvider

logger = logging.getLogger(__name__)

PRODUCT_DESCRIPTION = "Linux/UNIX"


def _not_yet_visible(exc: ComputeError) -> bool:
    """EC2 is eventually consistent; fresh ids can briefly be NotFound."""
    if not isinstance(exc.cause, ClientError):
        return False
    code = exc.cause.response.get("Error", {}).get("Code", "")
    return code.endswith(".NotFound")


def _tag_specifications(spec: ProvisioningSpec, resource_type: str) -> List[Dict[str, Any]]:
    if not spec.tags:
        return []
    return [{
        "ResourceType": resource_type,
        "Tags": [tag.to_aws() for tag in spec.tags],
    }]


class EC2Compute(ComputeProvider):
    """EC2 adapter.

    Args:
        region: AWS region. Falls back to AWS_DEFAULT_REGION handling done
            by the config layer; ``us-east-1`` if empty.
        client: Pre-built boto3 EC2 client (mainly for tests).
    """

    def __init__(self, region: Optional[str] = None, client: Any = None) -> None:
        self.region = region or DEFAULT_REGION
        self._client = client

    def _ec2_client(self) -> Any:
        """Return the boto3 EC2 client, creating it on first use."""
        if self._client is None:
            self._client = boto3.client("ec2", region_name=self.region)
        return self._client

    def _call(self, operation: str, identifier: str, **kwargs: Any) -> Dict[str, Any]:
        method = getattr(self._ec2_client(), operation)
        try:
            return method(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise ComputeError(operation, identifier, exc) from exc

    # -- spot --------------------------------------------------------------

    def latest_spot_price(self, instance_type: str, lookback: float) -> Optional[str]:
        """Return the most recent Linux/UNIX spot price in the window."""
        now = datetime.now(timezone.utc)
        result = self._call(
            "describe_spot_price_history",
            instance_type,
            InstanceTypes=[instance_type],
            ProductDescriptions=[PRODUCT_DESCRIPTION],
            StartTime=now - timedelta(seconds=lookback),
            EndTime=now,
        )
        history = result.get("SpotPriceHistory", [])
        if not history:
            return None
        latest = max(history, key=lambda point: point.get("Timestamp") or now)
        return latest["SpotPrice"]

    def request_spot_instance(self, spec: ProvisioningSpec, max_price: str) -> str:
        launch: Dict[str, Any] = {
            "ImageId": spec.image_id,
            "InstanceType": spec.instance_type,
            "SubnetId": spec.subnet_id,
            "SecurityGroupIds": [spec.security_group_id],
            "UserData": spec.user_data,
        }
        if spec.iam_instance_profile:
            launch["IamInstanceProfile"] = {"Name": spec.iam_instance_profile}

        kwargs: Dict[str, Any] = {
            "SpotPrice": max_price,
            "InstanceCount": 1,
            "Type": "one-time",
            "LaunchSpecification": launch,
        }
        tags = _tag_specifications(spec, "spot-instances-request")
        if tags:
            kwargs["TagSpecifications"] = tags

        logger.info(
            "Requesting spot instance (type=%s ami=%s price=%s region=%s)",
            spec.instance_type, spec.image_id, max_price, self.region,
        )
        result = self._call("request_spot_instances", spec.instance_type, **kwargs)
        spot_requests = result.get("SpotInstanceRequests", [])
        if not spot_requests:
            raise ComputeError(
                "request_spot_instances", spec.instance_type,
                "no spot instance requests returned",
            )
        return spot_requests[0]["SpotInstanceRequestId"]

    def spot_request_status(self, request_id: str) -> SpotRequestStatus:
        try:
            result = self._call(
                "describe_spot_instance_requests",
                request_id,
                SpotInstanceRequestIds=[request_id],
            )
        except ComputeError as exc:
            if _not_yet_visible(exc):
                return SpotRequestStatus(request_id=request_id, state="open")
            raise
        spot_requests = result.get("SpotInstanceRequests", [])
        if not spot_requests:
            return SpotRequestStatus(request_id=request_id, state="unknown")
        req = spot_requests[0]
        return SpotRequestStatus(
            request_id=request_id,
            state=req.get("State", "unknown"),
            code=req.get("Status", {}).get("Code"),
            instance_id=req.get("InstanceId"),
        )

    def cancel_spot_request(self, request_id: str) -> None:
        self._call(
            "cancel_spot_instance_requests",
            request_id,
            SpotInstanceRequestIds=[request_id],
        )
        logger.info("Cancelled spot request %s", request_id)

    # -- on-demand ---------------------------------------------------------

    def run_instance(self, spec: ProvisioningSpec) -> str:
        kwargs: Dict[str, Any] = {
            "ImageId": spec.image_id,
            "InstanceType": spec.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "SubnetId": spec.subnet_id,
            "SecurityGroupIds": [spec.security_group_id],
            # botocore base64-encodes RunInstances UserData itself.
            "UserData": base64.b64decode(spec.user_data).decode("utf-8"),
        }
        if spec.iam_instance_profile:
            kwargs["IamInstanceProfile"] = {"Name": spec.iam_instance_profile}
        tags = _tag_specifications(spec, "instance")
        if tags:
            kwargs["TagSpecifications"] = tags

        logger.info(
            "Launching on-demand instance (type=%s ami=%s region=%s)",
            spec.instance_type, spec.image_id, self.region,
        )
        result = self._call("run_instances", spec.instance_type, **kwargs)
        instances = result.get("Instances", [])
        if not instances:
            raise ComputeError(
                "run_instances", spec.instance_type,
                "no instance ID found for on-demand instance",
            )
        return instances[0]["InstanceId"]

    def instance_state(self, instance_id: str) -> str:
        try:
            result = self._call(
                "describe_instances", instance_id, InstanceIds=[instance_id],
            )
        except ComputeError as exc:
            if _not_yet_visible(exc):
                return "pending"
            raise
        reservations = result.get("Reservations", [])
        if not reservations or not reservations[0].get("Instances"):
            return "unknown"
        return reservations[0]["Instances"][0]["State"]["Name"]

    # -- health and teardown ----------------------------------------------

    def instance_status_ok(self, instance_id: str) -> bool:
        try:
            result = self._call(
                "describe_instance_status",
                instance_id,
                InstanceIds=[instance_id],
                IncludeAllInstances=True,
            )
        except ComputeError as exc:
            if _not_yet_visible(exc):
                return False
            raise
        statuses = result.get("InstanceStatuses", [])
        if not statuses:
            return False
        status = statuses[0]
        return (
            status.get("InstanceStatus", {}).get("Status") == "ok"
            and status.get("SystemStatus", {}).get("Status") == "ok"
        )

    def terminate_instance(self, instance_id: str) -> None:
        self._call("terminate_instances", instance_id, InstanceIds=[instance_id])
        logger.info("Terminated EC2 instance %s", instance_id)
