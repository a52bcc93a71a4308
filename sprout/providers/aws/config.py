"""AWS provider configuration.

Immutable configuration dataclass for the EC2 provider.
"""

from __future__ import annotations

from dataclasses import dataclass

from sprout.constants import DEFAULT_REGION


@dataclass(frozen=True, slots=True)
class AWS:
    """How to reach EC2.

    Example:
        >>> from sprout.providers.aws import AWS
        >>> config = AWS(region="eu-west-1", profile="sandbox")

    Args:
        region: AWS region. Default: us-east-1
        profile: Named profile from the shared credentials file. If None,
            uses the default credential chain.
        connect_timeout: Socket connect timeout for API calls, in seconds.
        read_timeout: Socket read timeout for API calls, in seconds.
    """

    region: str = DEFAULT_REGION
    profile: str | None = None
    connect_timeout: int = 10
    read_timeout: int = 30
