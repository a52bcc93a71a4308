"""Classification of botocore failures into the sprout error taxonomy."""

from __future__ import annotations

from typing import Final

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

TRANSIENT_CODES: Final = frozenset({
    "RequestLimitExceeded",
    "Throttling",
    "ThrottlingException",
    "InternalError",
    "InternalFailure",
    "ServiceUnavailable",
    "Unavailable",
    "RequestTimeout",
    "RequestTimeoutException",
})

INSTANCE_NOT_FOUND_CODES: Final = frozenset({
    "InvalidInstanceID.NotFound",
    "InvalidInstanceID.Malformed",
})

VOLUME_NOT_FOUND_CODES: Final = frozenset({
    "InvalidVolume.NotFound",
    "InvalidVolumeID.Malformed",
})

NETWORK_ERRORS: Final = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def error_message(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Message", "") or str(error)


def is_transient(error: Exception) -> bool:
    """True for throttling, server-side and connection failures."""
    if isinstance(error, NETWORK_ERRORS):
        return True
    if not isinstance(error, ClientError):
        return False
    if error_code(error) in TRANSIENT_CODES:
        return True
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    return status >= 500
