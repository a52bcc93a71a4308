"""Core building blocks shared across sprout."""

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

__all__ = [
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
]
