"""Cloud provider contract used by the readiness poller and the CLI.

Implementations translate their API failures into the sprout taxonomy:

- ``request_fleet`` raises ``ProvisionError`` when the request is rejected.
- ``describe_instance_status`` / ``describe_instance`` raise
  ``TransientQueryError`` for retryable network or throttling failures and
  ``NotFoundError`` when the id is unknown.
- ``attach_volume`` raises ``AttachError``.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from sprout.constants import VolumeState
from sprout.types import (
    InstanceDetails,
    InstanceHandle,
    InstanceStatusSnapshot,
    LaunchTemplate,
)


@runtime_checkable
class CloudProvider(Protocol):
    @property
    def name(self) -> str: ...

    def request_fleet(self, template: LaunchTemplate) -> InstanceHandle: ...

    def describe_instance_status(self, instance_id: InstanceHandle) -> InstanceStatusSnapshot: ...

    def describe_instance(self, instance_id: InstanceHandle) -> InstanceDetails: ...

    def describe_volume(self, volume_id: str) -> VolumeState: ...

    def attach_volume(self, instance_id: InstanceHandle, volume_id: str, device: str) -> None: ...
