"""Immutable value types shared by the poller, providers and CLI."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum

from sprout.constants import (
    DEFAULT_DEVICE,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_QUERY_BACKOFF,
    DEFAULT_QUERY_RETRIES,
    DEFAULT_READY_TIMEOUT,
    HealthStatus,
    LifecycleState,
)
from sprout.core.exceptions import PreconditionError

type InstanceHandle = str
"""Provider-assigned instance id (``i-0abc...``)."""


# =============================================================================
# Requests
# =============================================================================


@dataclass(frozen=True, slots=True)
class LaunchTemplate:
    """Reference to an EC2 launch template plus fleet overrides.

    Args:
        template_id: Launch template id. Either this or ``template_name``.
        template_name: Launch template name.
        version: Template version, ``$Latest`` or ``$Default`` or a number.
        instance_types: Instance types the fleet may choose from. Empty means
            whatever the template says.
        subnet_ids: Subnets the fleet may place the instance in.
        spot: Request spot capacity instead of on-demand.
        max_price: Optional spot max price (USD/hour, as a string).
        tags: Extra instance tags.
    """

    template_id: str | None = None
    template_name: str | None = None
    version: str = "$Latest"
    instance_types: tuple[str, ...] = ()
    subnet_ids: tuple[str, ...] = ()
    spot: bool = True
    max_price: str | None = None
    tags: tuple[tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        if bool(self.template_id) == bool(self.template_name):
            raise PreconditionError("Launch template needs exactly one of template_id / template_name")

    def specification(self) -> dict[str, str]:
        """``LaunchTemplateSpecification`` for ``create_fleet``."""
        spec = {"Version": self.version}
        if self.template_id:
            spec["LaunchTemplateId"] = self.template_id
        else:
            spec["LaunchTemplateName"] = str(self.template_name)
        return spec


@dataclass(frozen=True, slots=True)
class InstanceRequest:
    """What the operator asked for: a fleet launch or an existing instance."""

    template: LaunchTemplate | None = None
    instance_id: InstanceHandle | None = None

    def __post_init__(self) -> None:
        if (self.template is None) == (not self.instance_id):
            raise PreconditionError("Instance request needs exactly one of a launch template or an instance id")

    @classmethod
    def launch(cls, template: LaunchTemplate) -> InstanceRequest:
        return cls(template=template)

    @classmethod
    def existing(cls, instance_id: InstanceHandle) -> InstanceRequest:
        return cls(instance_id=instance_id)

    @property
    def needs_fleet(self) -> bool:
        return self.template is not None


@dataclass(frozen=True, slots=True)
class VolumeAttachment:
    """EBS volume to attach and the device name to expose it as."""

    volume_id: str
    device: str = DEFAULT_DEVICE


# =============================================================================
# Observations
# =============================================================================


@dataclass(frozen=True, slots=True)
class InstanceStatusSnapshot:
    """Point-in-time read of the three EC2 status axes.

    Missing values from the provider (brand-new instances sometimes report
    nothing) classify as ``UNKNOWN``.
    """

    instance_id: InstanceHandle
    lifecycle: LifecycleState = LifecycleState.UNKNOWN
    system: HealthStatus = HealthStatus.UNKNOWN
    instance: HealthStatus = HealthStatus.UNKNOWN
    observed_at: float = field(default_factory=time.time, compare=False)

    @classmethod
    def from_raw(
        cls,
        instance_id: InstanceHandle,
        lifecycle: str | None = None,
        system: str | None = None,
        instance: str | None = None,
    ) -> InstanceStatusSnapshot:
        return cls(
            instance_id=instance_id,
            lifecycle=LifecycleState(lifecycle),
            system=HealthStatus(system),
            instance=HealthStatus(instance),
        )

    @property
    def healthy(self) -> bool:
        return (
            self.lifecycle is LifecycleState.RUNNING
            and self.system is HealthStatus.OK
            and self.instance is HealthStatus.OK
        )

    def describe(self) -> str:
        return f"lifecycle={self.lifecycle} system={self.system} instance={self.instance}"


@dataclass(frozen=True, slots=True)
class InstanceDetails:
    """Addressing information for a running instance."""

    instance_id: InstanceHandle
    instance_type: str
    public_ip: str | None = None
    public_dns: str | None = None
    private_ip: str | None = None

    @property
    def address(self) -> str | None:
        return self.public_ip or self.public_dns or None


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True, slots=True)
class ReadyInstance:
    """A healthy instance handed to the configuration pipeline.

    ``volume`` is set only when the attach call was issued and accepted.
    """

    instance_id: InstanceHandle
    address: str | None
    instance_type: str
    private_address: str | None = None
    volume: VolumeAttachment | None = None


class ReadinessState(StrEnum):
    """States of the readiness poller."""

    AWAITING_LIFECYCLE = "awaiting-lifecycle"
    AWAITING_SYSTEM_STATUS = "awaiting-system-status"
    AWAITING_INSTANCE_STATUS = "awaiting-instance-status"
    VOLUME_ATTACHMENT = "volume-attachment"
    READY = "ready"
    FAILED = "failed"


# =============================================================================
# Wait policy
# =============================================================================


@dataclass(frozen=True, slots=True)
class WaitPolicy:
    """How long and how often the poller waits.

    Args:
        poll_interval: Seconds between status queries.
        max_attempts: Maximum number of status queries. None for no limit.
        timeout: Overall deadline in seconds. None for no deadline.
        query_retries: Attempts per query when the provider call fails
            transiently (including the first one).
        query_backoff: Base delay for exponential backoff between those
            attempts.
    """

    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_attempts: int | None = None
    timeout: float | None = DEFAULT_READY_TIMEOUT
    query_retries: int = DEFAULT_QUERY_RETRIES
    query_backoff: float = DEFAULT_QUERY_BACKOFF

    def __post_init__(self) -> None:
        if self.poll_interval < 0:
            raise PreconditionError(f"poll_interval must be >= 0, got {self.poll_interval}")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise PreconditionError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.timeout is not None and self.timeout <= 0:
            raise PreconditionError(f"timeout must be > 0, got {self.timeout}")
        if self.query_retries < 1:
            raise PreconditionError(f"query_retries must be >= 1, got {self.query_retries}")
        if self.query_backoff < 0:
            raise PreconditionError(f"query_backoff must be >= 0, got {self.query_backoff}")

    @property
    def bounded(self) -> bool:
        return self.max_attempts is not None or self.timeout is not None
