"""
Change event extraction for the knockrd stream.

Raw mutation-log records (DynamoDB stream records of the access table)
are turned into typed per-family change events:

    {"eventName": "INSERT", "dynamodb": {"Keys": {"Key": {"S": "198.51.100.1"}}}}
        -> ChangeEvent(address="198.51.100.1", family=V4, action=ADD)

Invariants:
    - Keys that are not IP addresses are dropped silently (the table may
      hold unrelated keys such as transient tokens)
    - Unknown mutation kinds are dropped with a warning
    - Output order within each family matches input order, so later
      records for the same address override earlier ones downstream
    - IPv4-mapped IPv6 addresses are treated as IPv4
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional

from ..errors import ValidationError
from ..store.dynamodb import KEY_ATTRIBUTE

logger = logging.getLogger(__name__)


class MutationKind(Enum):
    """Kind of change recorded in the mutation log."""

    INSERT = "INSERT"
    MODIFY = "MODIFY"
    REMOVE = "REMOVE"


class AddressFamily(Enum):
    V4 = "v4"
    V6 = "v6"


class Action(Enum):
    ADD = "add"
    DELETE = "delete"


_PREFIX_LENGTH = {AddressFamily.V4: 32, AddressFamily.V6: 128}


@dataclass(frozen=True)
class ChangeRecord:
    """One raw record of the mutation log.

    Attributes:
        key: Changed key
        kind: Mutation kind as reported by the log ("INSERT", "MODIFY", "REMOVE", ...)
    """

    key: str
    kind: str

    @classmethod
    def from_stream_record(cls, record: Mapping[str, Any]) -> Optional[ChangeRecord]:
        """Create from a DynamoDB stream record.

        Returns:
            ChangeRecord, or None if the record carries no Key attribute
        """
        keys = record.get("dynamodb", {}).get("Keys", {})
        key = keys.get(KEY_ATTRIBUTE)
        if not isinstance(key, Mapping) or "S" not in key:
            logger.warning(f"unknown key {keys}")
            return None
        return cls(key=key["S"], kind=str(record.get("eventName", "")))


@dataclass(frozen=True)
class ChangeEvent:
    """A normalized access change for one address.

    Attributes:
        address: Canonical textual form of the address
        family: Address family
        action: ADD or DELETE
    """

    address: str
    family: AddressFamily
    action: Action

    @property
    def cidr(self) -> str:
        """Single-host range for the address (/32 or /128)."""
        return f"{self.address}/{_PREFIX_LENGTH[self.family]}"

    @property
    def is_add(self) -> bool:
        return self.action is Action.ADD


@dataclass
class ExtractedEvents:
    """Change events of one batch, split by address family."""

    v4: List[ChangeEvent] = field(default_factory=list)
    v6: List[ChangeEvent] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.v4) + len(self.v6)

    def is_empty(self) -> bool:
        return not self.v4 and not self.v6

    def all(self) -> List[ChangeEvent]:
        return [*self.v4, *self.v6]


def parse_address(value: str) -> tuple[str, AddressFamily]:
    """Parse an IP address literal.

    Returns:
        (canonical address, family)

    Raises:
        ValidationError: If value is not an IP address
    """
    try:
        ip = ipaddress.ip_address(value.strip())
    except ValueError as e:
        raise ValidationError(f"not an IP address: {value!r}", value=value) from e
    if isinstance(ip, ipaddress.IPv6Address):
        if ip.scope_id:
            raise ValidationError(f"scoped address is not routable: {value!r}", value=value)
        if ip.ipv4_mapped is not None:
            return str(ip.ipv4_mapped), AddressFamily.V4
        return str(ip), AddressFamily.V6
    return str(ip), AddressFamily.V4


def to_action(kind: str) -> Optional[Action]:
    """Map a mutation kind to an action, or None if the kind is unknown."""
    try:
        mutation = MutationKind(kind.upper())
    except ValueError:
        return None
    if mutation is MutationKind.REMOVE:
        return Action.DELETE
    return Action.ADD


def extract_event(record: ChangeRecord) -> Optional[ChangeEvent]:
    """Turn one change record into a change event.

    Returns:
        ChangeEvent, or None if the record must be dropped
    """
    try:
        address, family = parse_address(record.key)
    except ValidationError:
        logger.debug(f"ignore Key:{record.key}")
        return None

    action = to_action(record.kind)
    if action is None:
        logger.warning(f"unknown event {record.kind}", extra={"key": record.key})
        return None

    logger.info(f"processing IP:{address} Event:{record.kind}")
    return ChangeEvent(address=address, family=family, action=action)


def extract_events(records: Iterable[ChangeRecord]) -> ExtractedEvents:
    """Extract per-family change events from an ordered batch of records."""
    extracted = ExtractedEvents()
    for record in records:
        event = extract_event(record)
        if event is None:
            continue
        if event.family is AddressFamily.V4:
            extracted.v4.append(event)
        else:
            extracted.v6.append(event)
    return extracted


def records_from_stream_event(event: Mapping[str, Any]) -> List[ChangeRecord]:
    """Parse the records of a DynamoDB stream event (``{"Records": [...]}``)."""
    records = []
    for raw in event.get("Records", []) or []:
        record = ChangeRecord.from_stream_record(raw)
        if record is not None:
            records.append(record)
    return records
