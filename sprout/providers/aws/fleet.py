"""EC2 Fleet request for a single short-lived instance."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from sprout.constants import DEFAULT_INSTANCE_NAME, SproutTag
from sprout.core.exceptions import ProvisionError

from .errors import error_code, error_message

if TYPE_CHECKING:
    from mypy_boto3_ec2 import EC2Client

    from sprout.types import LaunchTemplate

log = logger.bind(component="aws-fleet")


# =============================================================================
# Request Building
# =============================================================================


def build_overrides(template: LaunchTemplate) -> list[dict[str, Any]]:
    """Cross product of instance types and subnets.

    Fleet picks the best pool among them. Empty when the template alone
    decides placement and type.
    """
    types: tuple[str | None, ...] = template.instance_types or (None,)
    subnets: tuple[str | None, ...] = template.subnet_ids or (None,)

    overrides: list[dict[str, Any]] = []
    for instance_type in types:
        for subnet_id in subnets:
            override: dict[str, Any] = {}
            if instance_type:
                override["InstanceType"] = instance_type
            if subnet_id:
                override["SubnetId"] = subnet_id
            if template.spot and template.max_price:
                override["MaxPrice"] = template.max_price
            if override:
                overrides.append(override)
    return overrides


def build_fleet_request(template: LaunchTemplate, owner: str | None = None) -> dict[str, Any]:
    """Keyword arguments for ``ec2.create_fleet``."""
    config: dict[str, Any] = {"LaunchTemplateSpecification": template.specification()}
    overrides = build_overrides(template)
    if overrides:
        config["Overrides"] = overrides

    tags = [
        {"Key": "Name", "Value": DEFAULT_INSTANCE_NAME},
        {"Key": SproutTag.MANAGED, "Value": "true"},
    ]
    if owner:
        tags.append({"Key": SproutTag.OWNER, "Value": owner})
    tags.extend({"Key": k, "Value": v} for k, v in template.tags)

    capacity = "spot" if template.spot else "on-demand"
    return {
        "Type": "instant",
        "LaunchTemplateConfigs": [config],
        "TargetCapacitySpecification": {
            "TotalTargetCapacity": 1,
            "DefaultTargetCapacityType": capacity,
            "SpotTargetCapacity": 1 if template.spot else 0,
            "OnDemandTargetCapacity": 0 if template.spot else 1,
        },
        "SpotOptions": {"AllocationStrategy": "price-capacity-optimized"},
        "OnDemandOptions": {"AllocationStrategy": "lowest-price"},
        "TagSpecifications": [{"ResourceType": "instance", "Tags": tags}],
    }


# =============================================================================
# Fleet Launch
# =============================================================================


def request_fleet(ec2: EC2Client, template: LaunchTemplate, owner: str | None = None) -> str:
    """Launch one instance through an instant EC2 Fleet.

    Returns:
        The new instance id.

    Raises:
        ProvisionError: If EC2 rejects the request or launches nothing.
    """
    request = build_fleet_request(template, owner=owner)
    log.info(
        "Requesting {capacity} instance from template {template} (types={types})",
        capacity=request["TargetCapacitySpecification"]["DefaultTargetCapacityType"],
        template=template.template_id or template.template_name,
        types=",".join(template.instance_types) or "from template",
    )

    try:
        fleet_response = ec2.create_fleet(**request)
    except ClientError as e:
        raise ProvisionError(f"Fleet request rejected ({error_code(e)}): {error_message(e)}") from e
    except BotoCoreError as e:
        raise ProvisionError(f"Fleet request failed: {e}") from e

    instance_ids: list[str] = []
    for instance_set in fleet_response.get("Instances", []):
        instance_ids.extend(instance_set.get("InstanceIds", []))

    errors = fleet_response.get("Errors", [])
    if not instance_ids:
        error_msgs = [f"{e.get('ErrorCode', 'Unknown')}: {e.get('ErrorMessage', '')}" for e in errors]
        raise ProvisionError(f"Fleet launch failed: {'; '.join(error_msgs) or 'no instances returned'}")

    if errors:
        log.warning("Fleet {fleet} reported errors alongside an instance: {errors}", fleet=fleet_response.get("FleetId"), errors=errors)

    instance_id = sorted(instance_ids)[0]
    log.info("Fleet {fleet} launched {instance_id}", fleet=fleet_response.get("FleetId"), instance_id=instance_id)
    return instance_id
