"""
EC2 security group sink (rule-based).

For every configured group, ADD events become one AuthorizeSecurityGroupIngress
call and DELETE events one RevokeSecurityGroupIngress call, both built from
the group's protocol/port template and both covering IPv4 and IPv6 ranges.
The two calls are independent and run concurrently.

Invariants:
    - Authorizing a range that is already present, or revoking one that is
      absent, is a no-op and does not stop the remaining ranges
    - A failing group does not stop the other groups
    - When a batch holds several events for one range, the last one wins
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from botocore.exceptions import ClientError

from ..aws import call_with_timeout, error_code
from ..config import SecurityGroupConfig
from ..errors import SinkError
from ..stream.events import ChangeEvent
from .base import final_actions

logger = logging.getLogger(__name__)

DUPLICATE_CODE = "InvalidPermission.Duplicate"
NOT_FOUND_CODE = "InvalidPermission.NotFound"


def default_description() -> str:
    function = os.getenv("AWS_LAMBDA_FUNCTION_NAME") or "knockrd"
    now = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
    return f"by {function} at {now}"


def build_permission(
    group: SecurityGroupConfig,
    v4_cidrs: Sequence[str],
    v6_cidrs: Sequence[str],
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """Build an IpPermission for the group's template and the given ranges."""
    v4_ranges: List[Dict[str, str]] = []
    v6_ranges: List[Dict[str, str]] = []
    for cidr in v4_cidrs:
        entry = {"CidrIp": cidr}
        if description:
            entry["Description"] = description
        v4_ranges.append(entry)
    for cidr in v6_cidrs:
        entry = {"CidrIpv6": cidr}
        if description:
            entry["Description"] = description
        v6_ranges.append(entry)
    return {
        "IpProtocol": group.protocol,
        "FromPort": group.from_port,
        "ToPort": group.to_port,
        "IpRanges": v4_ranges,
        "Ipv6Ranges": v6_ranges,
    }


def has_ranges(permission: Dict[str, Any]) -> bool:
    return bool(permission["IpRanges"] or permission["Ipv6Ranges"])


def split_permission(permission: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Split a permission into one permission per range."""
    template = {k: v for k, v in permission.items() if k not in ("IpRanges", "Ipv6Ranges")}
    singles = []
    for entry in permission["IpRanges"]:
        singles.append({**template, "IpRanges": [entry], "Ipv6Ranges": []})
    for entry in permission["Ipv6Ranges"]:
        singles.append({**template, "IpRanges": [], "Ipv6Ranges": [entry]})
    return singles


def _ranges(permission: Dict[str, Any]) -> List[str]:
    return [r["CidrIp"] for r in permission["IpRanges"]] + [
        r["CidrIpv6"] for r in permission["Ipv6Ranges"]
    ]


class SecurityGroupSink:
    """Authorizes and revokes ingress rules on EC2 security groups.

    Example:
        >>> sink = SecurityGroupSink(ec2, [SecurityGroupConfig(id="sg-1", from_port=22, to_port=22)])
        >>> await sink.apply(events.v4, events.v6)
    """

    name = "security_group"

    def __init__(
        self,
        client: Any,
        groups: Sequence[SecurityGroupConfig],
        timeout: float = 30.0,
    ) -> None:
        """Initialize the sink.

        Args:
            client: aiobotocore EC2 client
            groups: Security groups with their rule templates
            timeout: Timeout applied to every EC2 call
        """
        self._client = client
        self.groups = list(groups)
        self.timeout = timeout

    def has_work(self, v4: Sequence[ChangeEvent], v6: Sequence[ChangeEvent]) -> bool:
        return bool(self.groups) and bool(v4 or v6)

    async def apply(self, v4: Sequence[ChangeEvent], v6: Sequence[ChangeEvent]) -> None:
        v4_latest = final_actions(v4)
        v6_latest = final_actions(v6)
        add_v4 = [c for c, e in v4_latest.items() if e.is_add]
        add_v6 = [c for c, e in v6_latest.items() if e.is_add]
        del_v4 = [c for c, e in v4_latest.items() if not e.is_add]
        del_v6 = [c for c, e in v6_latest.items() if not e.is_add]
        description = default_description()

        failures: Dict[str, Exception] = {}
        for group in self.groups:
            calls = {}
            authorize = build_permission(group, add_v4, add_v6, description)
            revoke = build_permission(group, del_v4, del_v6)
            if has_ranges(authorize):
                calls[f"{group.id}/authorize"] = self.authorize(group, authorize)
            if has_ranges(revoke):
                calls[f"{group.id}/revoke"] = self.revoke(group, revoke)
            if not calls:
                continue
            results = await asyncio.gather(*calls.values(), return_exceptions=True)
            for label, result in zip(calls, results):
                if isinstance(result, Exception):
                    logger.error(f"failed to update security group {label}: {result}")
                    failures[label] = result
                elif isinstance(result, BaseException):
                    raise result
        if failures:
            raise SinkError(self.name, failures)

    async def authorize(self, group: SecurityGroupConfig, permission: Dict[str, Any]) -> None:
        """Authorize ingress, tolerating ranges that are already authorized."""
        logger.debug(f"authorizing security group({group.id}) {_ranges(permission)}")
        try:
            await self._authorize_call(group, permission)
        except ClientError as e:
            if error_code(e) != DUPLICATE_CODE:
                raise
            logger.info(f"some ranges already authorized in {group.id}, retrying one by one")
            for single in split_permission(permission):
                try:
                    await self._authorize_call(group, single)
                except ClientError as e:
                    if error_code(e) != DUPLICATE_CODE:
                        raise
                    logger.debug(f"{_ranges(single)} already authorized in {group.id}")
        logger.info(f"authorized security group({group.id}) {_ranges(permission)}")

    async def revoke(self, group: SecurityGroupConfig, permission: Dict[str, Any]) -> None:
        """Revoke ingress, tolerating ranges that are not present."""
        logger.debug(f"revoking security group({group.id}) {_ranges(permission)}")
        try:
            await self._revoke_call(group, permission)
        except ClientError as e:
            if error_code(e) != NOT_FOUND_CODE:
                raise
            logger.info(f"some ranges not found in {group.id}, retrying one by one")
            for single in split_permission(permission):
                try:
                    await self._revoke_call(group, single)
                except ClientError as e:
                    if error_code(e) != NOT_FOUND_CODE:
                        raise
                    logger.debug(f"{_ranges(single)} not present in {group.id}")
        logger.info(f"revoked security group({group.id}) {_ranges(permission)}")

    async def _authorize_call(self, group: SecurityGroupConfig, permission: Dict[str, Any]) -> None:
        await call_with_timeout(
            "EC2 AuthorizeSecurityGroupIngress",
            self._client.authorize_security_group_ingress(
                GroupId=group.id, IpPermissions=[permission]
            ),
            self.timeout,
        )

    async def _revoke_call(self, group: SecurityGroupConfig, permission: Dict[str, Any]) -> None:
        response = await call_with_timeout(
            "EC2 RevokeSecurityGroupIngress",
            self._client.revoke_security_group_ingress(
                GroupId=group.id, IpPermissions=[permission]
            ),
            self.timeout,
        )
        unknown = (response or {}).get("UnknownIpPermissions")
        if unknown:
            logger.debug(f"unknown permissions in {group.id}: {unknown}")
