"""
Shared helpers for AWS calls made through aiobotocore.

Every remote call goes through call_with_timeout() so that timeouts,
unreachable endpoints and throttling surface as TransientIOError while
every other provider error reaches the caller unmodified.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, TypeVar

from botocore.exceptions import ClientError, EndpointConnectionError

from .errors import TransientIOError

logger = logging.getLogger(__name__)

T = TypeVar("T")

THROTTLING_CODES = frozenset(
    {
        "ProvisionedThroughputExceededException",
        "RequestLimitExceeded",
        "ThrottlingException",
        "Throttling",
        "InternalServerError",
        "ServiceUnavailable",
        "WAFInternalErrorException",
    }
)


def error_code(error: ClientError) -> str:
    """Return the provider error code of a botocore ClientError."""
    return error.response.get("Error", {}).get("Code", "")


async def call_with_timeout(operation: str, awaitable: Awaitable[T], timeout: float) -> T:
    """Await a provider call bounded by ``timeout`` seconds.

    Raises:
        TransientIOError: On timeout, connection failure or throttling
        ClientError: For any other provider error
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientIOError(f"{operation} timed out after {timeout}s", operation=operation) from e
    except EndpointConnectionError as e:
        raise TransientIOError(f"{operation} failed to connect: {e}", operation=operation) from e
    except ClientError as e:
        if error_code(e) in THROTTLING_CODES:
            raise TransientIOError(f"{operation} throttled: {e}", operation=operation) from e
        raise


def client_kwargs(region: str, endpoint_url: str | None) -> dict[str, Any]:
    """Keyword arguments for ``AioSession.create_client``."""
    kwargs: dict[str, Any] = {"region_name": region}
    if endpoint_url:
        kwargs["endpoint_url"] = endpoint_url
    return kwargs
