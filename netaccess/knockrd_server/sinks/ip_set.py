"""
WAFv2 IP set sink (list-based).

Each address family has at most one IP set. An update reads the current
member set together with its lock token, applies the batch and writes the
whole set back presenting the same token:

    updated = current, then for each event in order:
        ADD    -> updated += {cidr}
        DELETE -> updated -= {cidr}

Invariants:
    - The lock token is the only protection against lost updates; a stale
      token rejects the write (ConflictError) and nothing is applied
    - A partially built member set is never written back
    - Replaying a batch converges to the same final set
    - CLOUDFRONT scoped sets live in us-east-1, REGIONAL ones in the
      configured region

How to change safely:
    - Adding retry-on-conflict changes observable timing; keep it opt-in
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Set

from botocore.exceptions import ClientError

from ..aws import call_with_timeout, error_code
from ..config import IPSetConfig
from ..errors import ConfigurationError, ConflictError, KnockrdError, SinkError
from ..stream.events import ChangeEvent

logger = logging.getLogger(__name__)

CLOUDFRONT_REGION = "us-east-1"


def normalize_cidr(address: str) -> str:
    """Canonical form of a range as returned by WAF (e.g. 2001:DB8::1/128)."""
    try:
        return str(ipaddress.ip_network(address, strict=False))
    except ValueError:
        logger.warning(f"keeping unparseable ip-set address {address!r} as is")
        return address


def merge_members(current: Iterable[str], events: Sequence[ChangeEvent]) -> Set[str]:
    """Apply change events, in order, to a member set."""
    members = {normalize_cidr(a) for a in current}
    for event in events:
        if event.is_add:
            logger.debug(f"add address {event.cidr}")
            members.add(event.cidr)
        else:
            logger.debug(f"remove address {event.cidr}")
            members.discard(event.cidr)
    return members


class IPSetSink:
    """Synchronizes WAFv2 IP sets with the access state.

    Attributes:
        v4: IP set receiving IPv4 ranges
        v6: IP set receiving IPv6 ranges

    Example:
        >>> sink = IPSetSink({"REGIONAL": wafv2}, v4=IPSetConfig(id="...", name="allowed-v4"))
        >>> await sink.apply(events.v4, events.v6)
    """

    name = "ip_set"

    def __init__(
        self,
        clients: Mapping[str, Any],
        v4: Optional[IPSetConfig] = None,
        v6: Optional[IPSetConfig] = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the sink.

        Args:
            clients: aiobotocore WAFv2 clients by scope (REGIONAL, CLOUDFRONT)
            v4: IP set for IPv4 ranges
            v6: IP set for IPv6 ranges
            timeout: Timeout applied to every WAFv2 call

        Raises:
            ConfigurationError: If no client serves a configured scope
        """
        for target in (v4, v6):
            if target is not None and target.scope not in clients:
                raise ConfigurationError(
                    f"invalid scope {target.scope}: Set REGIONAL or CLOUDFRONT",
                    setting="scope",
                )
        self._clients = dict(clients)
        self.v4 = v4
        self.v6 = v6
        self.timeout = timeout

    def has_work(self, v4: Sequence[ChangeEvent], v6: Sequence[ChangeEvent]) -> bool:
        return bool((self.v4 is not None and v4) or (self.v6 is not None and v6))

    async def apply(self, v4: Sequence[ChangeEvent], v6: Sequence[ChangeEvent]) -> None:
        failures: Dict[str, Exception] = {}
        for target, events in ((self.v4, v4), (self.v6, v6)):
            if target is None or not events:
                continue
            try:
                await self.update_ip_set(target, events)
            except (KnockrdError, ClientError) as e:
                logger.error(
                    f"failed to update ip-set {target.name}: {e}",
                    extra={"ip_set_id": target.id, "scope": target.scope},
                )
                failures[target.id] = e
        if failures:
            raise SinkError(self.name, failures)

    async def update_ip_set(self, target: IPSetConfig, events: Sequence[ChangeEvent]) -> Set[str]:
        """Read-modify-write one IP set.

        Returns:
            The member set that was written

        Raises:
            ConflictError: If the IP set changed since it was read
            TransientIOError: On timeout or connection failure
        """
        client = self._clients[target.scope]
        ident = {"Name": target.name, "Id": target.id, "Scope": target.scope}

        response = await call_with_timeout(
            "WAFv2 GetIPSet", client.get_ip_set(**ident), self.timeout
        )
        lock_token = response["LockToken"]
        current = response.get("IPSet", {}).get("Addresses", [])
        logger.debug(f"current addresses {sorted(current)}")

        members = merge_members(current, events)
        addresses = sorted(members)
        logger.info(
            f"update ip-set id:{target.id} name:{target.name} scope:{target.scope} "
            f"addresses:{addresses}"
        )
        try:
            await call_with_timeout(
                "WAFv2 UpdateIPSet",
                client.update_ip_set(**ident, Addresses=addresses, LockToken=lock_token),
                self.timeout,
            )
        except ClientError as e:
            if error_code(e) == "WAFOptimisticLockException":
                raise ConflictError(
                    f"ip-set {target.name} was modified concurrently", target_id=target.id
                ) from e
            raise
        return members
