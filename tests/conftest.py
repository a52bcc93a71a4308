from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest
from loguru import logger

from sprout.constants import VolumeState
from sprout.core.exceptions import AttachError
from sprout.poller import Cancellation
from sprout.types import InstanceDetails, InstanceStatusSnapshot, LaunchTemplate

type Scripted = tuple[str | None, str | None, str | None] | Exception


class FakeClock:
    """Monotonic clock advanced only by ``InstantCancellation.wait``."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class InstantCancellation(Cancellation):
    """Cancellation token that records sleeps and advances a fake clock."""

    def __init__(self, clock: FakeClock, cancel_after: int | None = None) -> None:
        super().__init__()
        self.clock = clock
        self.sleeps: list[float] = []
        self.cancel_after = cancel_after

    def wait(self, seconds: float) -> bool:
        self.sleeps.append(seconds)
        self.clock.now += seconds
        if self.cancel_after is not None and len(self.sleeps) >= self.cancel_after:
            self.cancel()
        return self.cancelled


class ScriptedProvider:
    """Cloud provider replaying a fixed sequence of status observations.

    Each entry is a ``(lifecycle, system, instance)`` triple or an exception
    to raise. The last entry repeats forever.
    """

    name = "fake"

    def __init__(
        self,
        statuses: list[Scripted],
        details: InstanceDetails | None = None,
        volume_state: VolumeState | Exception = VolumeState.AVAILABLE,
        attach_error: AttachError | None = None,
    ) -> None:
        self.statuses = list(statuses)
        self.details = details
        self.volume_state = volume_state
        self.attach_error = attach_error
        self.status_calls = 0
        self.detail_calls = 0
        self.volume_calls: list[str] = []
        self.attach_calls: list[tuple[str, str, str]] = []
        self.fleet_requests: list[LaunchTemplate] = []

    def request_fleet(self, template: LaunchTemplate) -> str:
        self.fleet_requests.append(template)
        return "i-fleet"

    def describe_instance_status(self, instance_id: str) -> InstanceStatusSnapshot:
        self.status_calls += 1
        item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(item, Exception):
            raise item
        lifecycle, system, instance = item
        return InstanceStatusSnapshot.from_raw(instance_id, lifecycle, system, instance)

    def describe_instance(self, instance_id: str) -> InstanceDetails:
        self.detail_calls += 1
        return self.details or InstanceDetails(
            instance_id=instance_id,
            instance_type="t3.micro",
            public_ip="203.0.113.10",
            private_ip="10.0.0.10",
        )

    def describe_volume(self, volume_id: str) -> VolumeState:
        self.volume_calls.append(volume_id)
        if isinstance(self.volume_state, Exception):
            raise self.volume_state
        return self.volume_state

    def attach_volume(self, instance_id: str, volume_id: str, device: str) -> None:
        self.attach_calls.append((instance_id, volume_id, device))
        if self.attach_error is not None:
            raise self.attach_error


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cancellation(clock: FakeClock) -> InstantCancellation:
    return InstantCancellation(clock)


@pytest.fixture
def log_records() -> Iterator[list[dict[str, Any]]]:
    """Capture loguru records emitted during the test."""
    records: list[dict[str, Any]] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="TRACE")
    yield records
    logger.remove(handler_id)
