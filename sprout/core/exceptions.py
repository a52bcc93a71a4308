"""Custom exception hierarchy for sprout.

All sprout-specific exceptions inherit from SproutError, enabling
callers to catch all sprout exceptions with a single except clause.
Each fatal error carries the process exit code the CLI reports for it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar, Literal

if TYPE_CHECKING:
    from sprout.types import InstanceStatusSnapshot, ReadinessState

type Axis = Literal["handle", "lifecycle", "system", "instance", "query"]


class SproutError(Exception):
    """Base exception for all sprout errors."""

    exit_code: ClassVar[int] = 1


class PreconditionError(SproutError):
    """Raised for bad or missing input. Never retried."""

    exit_code = 2


class ConfigurationError(PreconditionError):
    """Raised for invalid configuration or missing required settings."""


class ProvisionError(SproutError):
    """Raised when the provider rejects a fleet request (quota, bad template, ...)."""

    exit_code = 3


class AttachError(SproutError):
    """Raised when a volume attach call fails.

    The readiness poller downgrades this to a warning.
    """


# =============================================================================
# Readiness failures
# =============================================================================


class ReadinessError(SproutError):
    """Terminal failure of a readiness poll.

    Attributes:
        axis: Which status axis (or input) caused the failure.
        state: Poller state at the time of failure.
        snapshot: Last observed status snapshot, if any query succeeded.
    """

    def __init__(
        self,
        message: str,
        *,
        axis: Axis,
        state: ReadinessState | None = None,
        snapshot: InstanceStatusSnapshot | None = None,
    ) -> None:
        self.axis = axis
        self.state = state
        self.snapshot = snapshot
        super().__init__(message)


class InvalidHandleError(ReadinessError, PreconditionError):
    """Raised when the poller is given an empty instance id."""

    exit_code = 2

    def __init__(self) -> None:
        super().__init__("Instance id is required", axis="handle")


class TimeoutError(ReadinessError):  # noqa: A001
    """Raised when the wait policy is exhausted (attempts or deadline)."""

    exit_code = 4


class LifecycleRegressionError(ReadinessError):
    """Raised when the instance moves away from running - do not retry."""

    exit_code = 5


class NotFoundError(ReadinessError):
    """Raised when the provider does not know the instance id."""

    exit_code = 6

    def __init__(
        self,
        message: str,
        *,
        axis: Axis = "query",
        state: ReadinessState | None = None,
        snapshot: InstanceStatusSnapshot | None = None,
    ) -> None:
        super().__init__(message, axis=axis, state=state, snapshot=snapshot)


class TransientQueryError(ReadinessError):
    """Raised on network / throttling errors talking to the provider.

    Retried with backoff inside a single poll attempt; fatal once the
    retries are exhausted.
    """

    exit_code = 7

    def __init__(
        self,
        message: str,
        *,
        axis: Axis = "query",
        state: ReadinessState | None = None,
        snapshot: InstanceStatusSnapshot | None = None,
    ) -> None:
        super().__init__(message, axis=axis, state=state, snapshot=snapshot)


class QueryRejectedError(ReadinessError):
    """Raised when the provider refuses a query outright (permissions, bad request)."""

    exit_code = 11

    def __init__(
        self,
        message: str,
        *,
        axis: Axis = "query",
        state: ReadinessState | None = None,
        snapshot: InstanceStatusSnapshot | None = None,
    ) -> None:
        super().__init__(message, axis=axis, state=state, snapshot=snapshot)


class PollCancelledError(ReadinessError):
    """Raised when the caller cancels a poll while it is sleeping."""

    exit_code = 8


# =============================================================================
# Configuration pipeline
# =============================================================================


class BootstrapError(SproutError):
    """Raised when a first-boot configuration step fails."""

    exit_code = 9

    def __init__(self, step: str, message: str) -> None:
        self.step = step
        super().__init__(f"{step}: {message}")


class AgentError(SproutError):
    """Raised when the local ssh-agent cannot be managed."""

    exit_code = 10
