"""AWS EC2 provider for sprout.

Example:
    from sprout.providers.aws import AWS, EC2Provider

    provider = EC2Provider(AWS(region="eu-west-1"))
    instance_id = provider.request_fleet(template)
"""

from sprout.providers.aws.config import AWS
from sprout.providers.aws.fleet import build_fleet_request, request_fleet
from sprout.providers.aws.provider import EC2Provider

__all__ = ["AWS", "EC2Provider", "build_fleet_request", "request_fleet"]
