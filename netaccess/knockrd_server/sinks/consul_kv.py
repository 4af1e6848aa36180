"""
Consul KV sink (key-value mirror).

Every allowed address is mirrored as one key under a namespace prefix:

    PUT    /v1/kv/knockrd/allowed/198.51.100.1   body "198.51.100.1/32"
    DELETE /v1/kv/knockrd/allowed/198.51.100.1

Invariants:
    - One call per event, in stream order
    - The first failing call aborts the rest of the batch for this sink,
      so consumers enumerating the prefix never see a silently partial
      mirror; the batch is redelivered instead
    - Put and delete are idempotent, replays converge
"""

from __future__ import annotations

import logging
import posixpath
from typing import Dict, Optional, Sequence
from urllib.parse import quote

import httpx

from ..config import ConsulConfig
from ..errors import KnockrdError, SinkError, TransientIOError
from ..stream.events import ChangeEvent

logger = logging.getLogger(__name__)


def create_client(config: ConsulConfig) -> httpx.AsyncClient:
    """Create the HTTP client used to talk to the Consul agent."""
    headers = {}
    if config.token:
        headers["X-Consul-Token"] = config.token
    return httpx.AsyncClient(
        base_url=config.base_url,
        headers=headers,
        timeout=config.timeout_seconds,
    )


class ConsulKVSink:
    """Mirrors allowed addresses into Consul KV.

    Example:
        >>> async with create_client(config) as http:
        ...     sink = ConsulKVSink(http, config)
        ...     await sink.apply(events.v4, events.v6)
    """

    name = "consul_kv"

    def __init__(self, client: httpx.AsyncClient, config: ConsulConfig) -> None:
        """Initialize the sink.

        Args:
            client: HTTP client whose base_url points at the Consul agent
            config: ConsulConfig instance
        """
        self._client = client
        self.config = config

    def key_for(self, address: str) -> str:
        """KV key for an address."""
        return posixpath.join(self.config.kv_path, quote(address, safe=":"))

    @property
    def _params(self) -> Dict[str, str]:
        if self.config.datacenter:
            return {"dc": self.config.datacenter}
        return {}

    def has_work(self, v4: Sequence[ChangeEvent], v6: Sequence[ChangeEvent]) -> bool:
        return bool(v4 or v6)

    async def apply(self, v4: Sequence[ChangeEvent], v6: Sequence[ChangeEvent]) -> None:
        for event in [*v4, *v6]:
            key = self.key_for(event.address)
            try:
                if event.is_add:
                    logger.info(f"put to consul key={key}")
                    await self.put(key, event.cidr)
                else:
                    logger.info(f"delete from consul key={key}")
                    await self.delete(key)
            except KnockrdError as e:
                logger.error(f"consul kv update aborted at key={key}: {e}")
                raise SinkError(self.name, {key: e}) from e

    async def put(self, key: str, value: str) -> None:
        response = await self._request("PUT", key, content=value.encode("utf-8"))
        if response.text.strip() != "true":
            raise KnockrdError(
                f"failed to put to consul key={key}: {response.text}",
                code="CONSUL_PUT_REJECTED",
                details={"key": key},
            )

    async def delete(self, key: str) -> None:
        await self._request("DELETE", key)

    async def _request(
        self, method: str, key: str, content: Optional[bytes] = None
    ) -> httpx.Response:
        operation = f"Consul KV {method}"
        try:
            response = await self._client.request(
                method, f"/v1/kv/{key}", params=self._params, content=content
            )
        except httpx.TimeoutException as e:
            raise TransientIOError(f"{operation} {key} timed out", operation=operation) from e
        except httpx.TransportError as e:
            raise TransientIOError(f"{operation} {key} failed: {e}", operation=operation) from e

        if response.status_code >= 500:
            raise TransientIOError(
                f"{operation} {key} returned {response.status_code}", operation=operation
            )
        if response.status_code >= 400:
            raise KnockrdError(
                f"{operation} {key} returned {response.status_code}: {response.text}",
                code="CONSUL_ERROR",
                details={"key": key, "status": response.status_code},
            )
        return response
