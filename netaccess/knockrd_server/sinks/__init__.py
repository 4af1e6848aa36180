"""
Enforcement sinks for knockrd.

This module provides the sink adapters that receive change events:
- IPSetSink: WAFv2 IP sets (list-based, optimistic lock token)
- SecurityGroupSink: EC2 security groups (rule-based authorize/revoke)
- ConsulKVSink: Consul KV (per-key mirror)

Every sink is optional and selected by configuration.
"""

from .base import Sink
from .consul_kv import ConsulKVSink
from .ip_set import IPSetSink
from .security_group import SecurityGroupSink

__all__ = [
    "Sink",
    "ConsulKVSink",
    "IPSetSink",
    "SecurityGroupSink",
]
