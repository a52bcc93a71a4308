"""Sprout - Launch a short-lived EC2 instance and make it usable.

Example:

    from sprout import AWS, EC2Provider, ReadinessPoller, VolumeAttachment, WaitPolicy

    provider = EC2Provider(AWS(region="eu-west-1"))
    poller = ReadinessPoller(
        provider,
        WaitPolicy(poll_interval=5, timeout=600),
        volume=VolumeAttachment("vol-0123456789abcdef0"),
    )
    ready = poller.wait("i-0123456789abcdef0")
    print(ready.address, ready.volume)
"""

# Enums
from sprout.constants import HealthStatus, LifecycleState, VolumeState

# Exceptions
from sprout.core.exceptions import (
    AgentError,
    AttachError,
    BootstrapError,
    ConfigurationError,
    InvalidHandleError,
    LifecycleRegressionError,
    NotFoundError,
    PollCancelledError,
    PreconditionError,
    ProvisionError,
    QueryRejectedError,
    ReadinessError,
    SproutError,
    TimeoutError,
    TransientQueryError,
)

# Readiness
from sprout.poller import Cancellation, ReadinessPoller
from sprout.provider import CloudProvider

# Providers
from sprout.providers.aws import AWS, EC2Provider

# Configuration
from sprout.config import Settings, load_settings

# Value types
from sprout.types import (
    InstanceDetails,
    InstanceHandle,
    InstanceRequest,
    InstanceStatusSnapshot,
    LaunchTemplate,
    ReadinessState,
    ReadyInstance,
    VolumeAttachment,
    WaitPolicy,
)

__all__ = [
    # Enums
    "HealthStatus",
    "LifecycleState",
    "VolumeState",
    # Exceptions
    "AgentError",
    "AttachError",
    "BootstrapError",
    "ConfigurationError",
    "InvalidHandleError",
    "LifecycleRegressionError",
    "NotFoundError",
    "PollCancelledError",
    "PreconditionError",
    "ProvisionError",
    "QueryRejectedError",
    "ReadinessError",
    "SproutError",
    "TimeoutError",
    "TransientQueryError",
    # Readiness
    "Cancellation",
    "CloudProvider",
    "ReadinessPoller",
    # Providers
    "AWS",
    "EC2Provider",
    # Configuration
    "Settings",
    "load_settings",
    # Value types
    "InstanceDetails",
    "InstanceHandle",
    "InstanceRequest",
    "InstanceStatusSnapshot",
    "LaunchTemplate",
    "ReadinessState",
    "ReadyInstance",
    "VolumeAttachment",
    "WaitPolicy",
]
