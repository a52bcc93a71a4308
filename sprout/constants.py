"""Centralized constants and enums for sprout.

Provider status strings are classified into closed enumerations here. Every
enum falls back to an ``UNKNOWN`` member for values EC2 may add later, so an
unrecognized string never breaks the readiness state machine.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Final

# =============================================================================
# EC2 Instance States
# =============================================================================


class LifecycleState(StrEnum):
    """EC2 instance state names."""

    PENDING = "pending"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    STOPPING = "stopping"
    STOPPED = "stopped"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> LifecycleState:
        return cls.UNKNOWN

    @property
    def is_regression(self) -> bool:
        """Moving away from usability."""
        return self in _REGRESSED


_REGRESSED: Final = frozenset({
    LifecycleState.SHUTTING_DOWN,
    LifecycleState.TERMINATED,
    LifecycleState.STOPPING,
    LifecycleState.STOPPED,
})


class HealthStatus(StrEnum):
    """EC2 system / instance reachability check results."""

    OK = "ok"
    IMPAIRED = "impaired"
    INSUFFICIENT_DATA = "insufficient-data"
    NOT_APPLICABLE = "not-applicable"
    INITIALIZING = "initializing"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> HealthStatus:
        return cls.UNKNOWN


# =============================================================================
# EBS Volume States
# =============================================================================


class VolumeState(StrEnum):
    """Attachability of an EBS volume, as far as sprout cares."""

    AVAILABLE = "available"
    IN_USE = "in-use"
    MISSING = "missing"
    UNAVAILABLE = "unavailable"

    @classmethod
    def _missing_(cls, value: object) -> VolumeState:
        # creating, deleting, deleted, error
        return cls.UNAVAILABLE


# =============================================================================
# AWS Resource Tags
# =============================================================================


class SproutTag(StrEnum):
    """AWS resource tag keys used by sprout."""

    MANAGED = "sprout:managed"
    OWNER = "sprout:owner"


# =============================================================================
# Defaults
# =============================================================================

DEFAULT_INSTANCE_NAME: Final = "sprout"
DEFAULT_REGION: Final = "us-east-1"
DEFAULT_DEVICE: Final = "/dev/sdf"
DEFAULT_MOUNT_PATH: Final = "/data"
DEFAULT_SSH_USER: Final = "ubuntu"

# Timeouts and intervals (in seconds)
DEFAULT_POLL_INTERVAL: Final = 10.0
DEFAULT_READY_TIMEOUT: Final = 900.0
DEFAULT_QUERY_RETRIES: Final = 4
DEFAULT_QUERY_BACKOFF: Final = 1.0
QUERY_BACKOFF_MAX: Final = 20.0
SSH_READY_TIMEOUT: Final = 300
APT_LOCK_TIMEOUT: Final = 600

# =============================================================================
# Filesystem Paths
# =============================================================================

SPROUT_HOME: Final = Path.home() / ".sprout"
AGENT_ENV_FILE: Final = SPROUT_HOME / "agent.env"
