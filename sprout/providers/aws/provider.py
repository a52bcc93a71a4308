"""EC2 implementation of the sprout cloud provider contract."""

from __future__ import annotations

from functools import cached_property
from typing import TYPE_CHECKING, Any

from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from sprout.constants import VolumeState
from sprout.core.exceptions import AttachError, NotFoundError, QueryRejectedError, TransientQueryError
from sprout.types import InstanceDetails, InstanceStatusSnapshot

from .config import AWS
from .errors import (
    INSTANCE_NOT_FOUND_CODES,
    VOLUME_NOT_FOUND_CODES,
    error_code,
    error_message,
    is_transient,
)
from .fleet import request_fleet

if TYPE_CHECKING:
    from mypy_boto3_ec2 import EC2Client

    from sprout.types import InstanceHandle, LaunchTemplate

log = logger.bind(component="aws", provider="aws")


class EC2Provider:
    """Cloud provider backed by the EC2 API.

    Each method makes one API call; retrying transient failures is the
    caller's job (the readiness poller does it with backoff).

    Args:
        config: Region and credential settings.
        client: Pre-built EC2 client. Created lazily from ``config`` if None.
        owner: Value for the ``sprout:owner`` tag on launched instances.
    """

    def __init__(self, config: AWS | None = None, client: EC2Client | None = None, owner: str | None = None) -> None:
        self.config = config or AWS()
        self.owner = owner
        self._client = client

    @property
    def name(self) -> str:
        return "aws"

    @cached_property
    def _ec2(self) -> EC2Client:
        if self._client is not None:
            return self._client

        import boto3

        session = boto3.Session(profile_name=self.config.profile, region_name=self.config.region)
        return session.client(
            "ec2",
            config=Config(
                connect_timeout=self.config.connect_timeout,
                read_timeout=self.config.read_timeout,
                retries={"mode": "standard", "max_attempts": 2},
            ),
        )

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    def request_fleet(self, template: LaunchTemplate) -> InstanceHandle:
        return request_fleet(self._ec2, template, owner=self.owner)

    def describe_instance_status(self, instance_id: InstanceHandle) -> InstanceStatusSnapshot:
        response = self._query(
            "DescribeInstanceStatus",
            lambda: self._ec2.describe_instance_status(InstanceIds=[instance_id], IncludeAllInstances=True),
            instance_id,
        )
        statuses = response.get("InstanceStatuses", [])
        if not statuses:
            # Freshly launched instances can be invisible for a few seconds.
            log.debug("No status reported for {instance_id} yet", instance_id=instance_id)
            return InstanceStatusSnapshot.from_raw(instance_id)

        raw = statuses[0]
        return InstanceStatusSnapshot.from_raw(
            instance_id,
            lifecycle=raw.get("InstanceState", {}).get("Name"),
            system=raw.get("SystemStatus", {}).get("Status"),
            instance=raw.get("InstanceStatus", {}).get("Status"),
        )

    def describe_instance(self, instance_id: InstanceHandle) -> InstanceDetails:
        response = self._query(
            "DescribeInstances",
            lambda: self._ec2.describe_instances(InstanceIds=[instance_id]),
            instance_id,
        )
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return InstanceDetails(
                    instance_id=instance["InstanceId"],
                    instance_type=instance.get("InstanceType", ""),
                    public_ip=instance.get("PublicIpAddress"),
                    public_dns=instance.get("PublicDnsName") or None,
                    private_ip=instance.get("PrivateIpAddress"),
                )
        raise NotFoundError(f"Instance {instance_id} not found")

    # -------------------------------------------------------------------------
    # Volumes
    # -------------------------------------------------------------------------

    def describe_volume(self, volume_id: str) -> VolumeState:
        try:
            response = self._ec2.describe_volumes(VolumeIds=[volume_id])
        except ClientError as e:
            if error_code(e) in VOLUME_NOT_FOUND_CODES:
                return VolumeState.MISSING
            if is_transient(e):
                raise TransientQueryError(f"DescribeVolumes {volume_id}: {error_message(e)}") from e
            raise QueryRejectedError(f"DescribeVolumes {volume_id} ({error_code(e)}): {error_message(e)}") from e
        except BotoCoreError as e:
            if is_transient(e):
                raise TransientQueryError(f"DescribeVolumes {volume_id}: {e}") from e
            raise QueryRejectedError(f"DescribeVolumes {volume_id}: {e}") from e

        volumes = response.get("Volumes", [])
        if not volumes:
            return VolumeState.MISSING
        return VolumeState(volumes[0].get("State"))

    def attach_volume(self, instance_id: InstanceHandle, volume_id: str, device: str) -> None:
        try:
            response = self._ec2.attach_volume(Device=device, InstanceId=instance_id, VolumeId=volume_id)
        except ClientError as e:
            raise AttachError(f"AttachVolume {volume_id} -> {instance_id} ({error_code(e)}): {error_message(e)}") from e
        except BotoCoreError as e:
            raise AttachError(f"AttachVolume {volume_id} -> {instance_id}: {e}") from e
        log.debug("AttachVolume {volume_id}: {state}", volume_id=volume_id, state=response.get("State"))

    # -------------------------------------------------------------------------
    # Error translation
    # -------------------------------------------------------------------------

    def _query(self, operation: str, call: Any, instance_id: str) -> Any:
        try:
            return call()
        except ClientError as e:
            code = error_code(e)
            if code in INSTANCE_NOT_FOUND_CODES:
                raise NotFoundError(f"{operation}: instance {instance_id} not found ({code})") from e
            if is_transient(e):
                raise TransientQueryError(f"{operation} {instance_id} ({code}): {error_message(e)}") from e
            raise QueryRejectedError(f"{operation} {instance_id} ({code}): {error_message(e)}") from e
        except BotoCoreError as e:
            if is_transient(e):
                raise TransientQueryError(f"{operation} {instance_id}: {e}") from e
            raise QueryRejectedError(f"{operation} {instance_id}: {e}") from e
