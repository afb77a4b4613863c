"""EC2 cloud provider built on boto3.

All calls are blocking. Timeouts per call are enforced by the reconciler;
botocore's own connect/read timeouts and standard retry mode bound the
individual HTTP requests underneath.
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from .models import (
    LIVE_STATES,
    OWNER_TAG_KEY,
    OWNER_UID_TAG_KEY,
    CreatedInstance,
    Ec2InstanceSpec,
    ObjectKey,
    ObservedInstance,
)

logger = logging.getLogger(__name__)

# Error codes meaning the instance id is unknown to EC2
NOT_FOUND_ERROR_CODES = frozenset({"InvalidInstanceID.NotFound"})

WAITER_DELAY_SECONDS = 5

BOTO_CLIENT_CONFIG = BotoConfig(
    connect_timeout=10,
    read_timeout=30,
    retries={"mode": "standard", "max_attempts": 3},
)


class ProviderError(Exception):
    """Raised when an EC2 API call fails."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "Unknown")


def _instance_fields(instance: dict[str, Any]) -> dict[str, str]:
    """Extract the status-relevant fields of an EC2 instance description."""
    return {
        "instance_id": instance["InstanceId"],
        "state": instance.get("State", {}).get("Name", ""),
        "public_ip": instance.get("PublicIpAddress", ""),
        "private_ip": instance.get("PrivateIpAddress", ""),
        "public_dns": instance.get("PublicDnsName", ""),
        "private_dns": instance.get("PrivateDnsName", ""),
    }


def build_tags(
    spec: Ec2InstanceSpec, owner: ObjectKey, uid: str = ""
) -> list[dict[str, str]]:
    """Build the EC2 tag list for an instance owned by owner."""
    tags = {"Name": owner.name, **spec.tags, OWNER_TAG_KEY: str(owner)}
    if uid:
        tags[OWNER_UID_TAG_KEY] = uid
    return [{"Key": key, "Value": value} for key, value in tags.items()]


class Ec2Provider:
    """CloudProvider implementation over the EC2 API.

    Clients are created lazily per region, since every Ec2Instance may name
    its own region. The cache is shared by all executor threads; a boto3
    session is not thread-safe, so clients are only created under a lock.
    """

    def __init__(
        self,
        default_region: str = "",
        *,
        session: boto3.session.Session | None = None,
        instance_wait_seconds: int = 0,
    ) -> None:
        self._default_region = default_region
        self._session = session if session is not None else boto3.session.Session()
        self._instance_wait_seconds = instance_wait_seconds
        self._clients: dict[str, Any] = {}
        self._clients_lock = threading.Lock()

    def _client(self, region: str) -> Any:
        resolved = region or self._default_region or self._session.region_name
        if not resolved:
            raise ProviderError("No region in spec and no default region configured")
        with self._clients_lock:
            client = self._clients.get(resolved)
            if client is None:
                client = self._session.client(
                    "ec2", region_name=resolved, config=BOTO_CLIENT_CONFIG
                )
                self._clients[resolved] = client
        return client

    def create(
        self,
        spec: Ec2InstanceSpec,
        owner: ObjectKey,
        *,
        uid: str = "",
        client_token: str = "",
    ) -> CreatedInstance:
        client = self._client(spec.region)

        existing = self._find_owned(client, owner, uid)
        if existing is not None:
            logger.info(
                "Adopting existing instance",
                extra={"owner": str(owner), "instance_id": existing["instance_id"]},
            )
            return CreatedInstance(**existing)

        params: dict[str, Any] = {
            "ImageId": spec.image_id,
            "InstanceType": spec.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": [
                {"ResourceType": "instance", "Tags": build_tags(spec, owner, uid)},
            ],
        }
        if spec.key_pair:
            params["KeyName"] = spec.key_pair
        if spec.subnet:
            params["SubnetId"] = spec.subnet
        if client_token:
            params["ClientToken"] = client_token

        logger.info(
            "Launching EC2 instance",
            extra={
                "owner": str(owner),
                "image_id": spec.image_id,
                "instance_type": spec.instance_type,
                "region": spec.region or self._default_region,
            },
        )

        try:
            response = client.run_instances(**params)
        except ClientError as e:
            code = _error_code(e)
            raise ProviderError(f"RunInstances failed ({code}): {e}", code=code) from e
        except BotoCoreError as e:
            raise ProviderError(f"RunInstances failed: {e}") from e

        instances = response.get("Instances") or []
        if not instances:
            raise ProviderError("RunInstances returned no instance")
        fields = _instance_fields(instances[0])

        if self._instance_wait_seconds > 0:
            fields = self._wait_until_running(client, fields)

        return CreatedInstance(**fields)

    def _find_owned(
        self, client: Any, owner: ObjectKey, uid: str
    ) -> dict[str, str] | None:
        """Find a live instance already launched for owner.

        When uid is set only instances carrying it match, so a recreated
        object with the same name never adopts its predecessor's instance.
        """
        filters = [{"Name": f"tag:{OWNER_TAG_KEY}", "Values": [str(owner)]}]
        if uid:
            filters.append({"Name": f"tag:{OWNER_UID_TAG_KEY}", "Values": [uid]})
        filters.append(
            {"Name": "instance-state-name", "Values": [s.value for s in LIVE_STATES]}
        )
        try:
            response = client.describe_instances(Filters=filters)
        except ClientError as e:
            code = _error_code(e)
            raise ProviderError(f"DescribeInstances failed ({code}): {e}", code=code) from e
        except BotoCoreError as e:
            raise ProviderError(f"DescribeInstances failed: {e}") from e

        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return _instance_fields(instance)
        return None

    def _wait_until_running(self, client: Any, fields: dict[str, str]) -> dict[str, str]:
        """Wait for the instance to run and refresh its addresses.

        The instance already exists at this point, so waiter failures are
        logged and the launch result is kept. Raising here would lose the id.
        """
        instance_id = fields["instance_id"]
        max_attempts = max(1, math.ceil(self._instance_wait_seconds / WAITER_DELAY_SECONDS))
        try:
            client.get_waiter("instance_running").wait(
                InstanceIds=[instance_id],
                WaiterConfig={"Delay": WAITER_DELAY_SECONDS, "MaxAttempts": max_attempts},
            )
            response = client.describe_instances(InstanceIds=[instance_id])
        except (WaiterError, ClientError, BotoCoreError) as e:
            logger.warning(
                "Instance did not reach running state in time",
                extra={"instance_id": instance_id, "error": str(e)},
            )
            return fields

        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                if instance.get("InstanceId") == instance_id:
                    return _instance_fields(instance)
        return fields

    def describe(self, region: str, instance_id: str) -> ObservedInstance | None:
        client = self._client(region)
        try:
            response = client.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            code = _error_code(e)
            if code in NOT_FOUND_ERROR_CODES:
                return None
            raise ProviderError(f"DescribeInstances failed ({code}): {e}", code=code) from e
        except BotoCoreError as e:
            raise ProviderError(f"DescribeInstances failed: {e}") from e

        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                if instance.get("InstanceId") == instance_id:
                    return ObservedInstance(**_instance_fields(instance))
        return None

    def terminate(self, region: str, instance_id: str) -> None:
        client = self._client(region)
        try:
            client.terminate_instances(InstanceIds=[instance_id])
        except ClientError as e:
            code = _error_code(e)
            if code in NOT_FOUND_ERROR_CODES:
                logger.info(
                    "Instance already gone, nothing to terminate",
                    extra={"instance_id": instance_id},
                )
                return
            raise ProviderError(f"TerminateInstances failed ({code}): {e}", code=code) from e
        except BotoCoreError as e:
            raise ProviderError(f"TerminateInstances failed: {e}") from e

        logger.info("Terminated EC2 instance", extra={"instance_id": instance_id})
