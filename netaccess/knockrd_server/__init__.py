"""
knockrd server - time-bounded network access with propagation to enforcement points.

This package grants short-lived access to requesting addresses and keeps
every configured enforcement point in sync with that access state:
- DynamoDB table with TTL expiry as the authoritative access store
- In-process positive/negative cache in front of the store
- DynamoDB stream of key changes as the mutation log
- WAFv2 IP sets, EC2 security groups and Consul KV as sinks

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Access    │────▶│ AccessCache │────▶│  DynamoDB table │
    │  (caller)   │     │ (pos / neg) │     │  Key, Expires   │
    └─────────────┘     └─────────────┘     └────────┬────────┘
                                                     │ stream
                                                     ▼
                        ┌─────────────────────────────────────────┐
                        │     Event extraction -> Reconciler      │
                        └─────────────────────────────────────────┘
                                             │
                        ┌────────────────────┼────────────────────┐
                        ▼                    ▼                    ▼
                   ┌─────────┐         ┌──────────┐         ┌─────────┐
                   │  WAFv2  │         │   EC2    │         │ Consul  │
                   │ IP sets │         │ sec grps │         │   KV    │
                   └─────────┘         └──────────┘         └─────────┘

Invariants:
    - The DynamoDB table is the source of truth; sinks are derived views
    - Freshness is computed from the stored expiry, never from reclamation
    - Every sink update is idempotent and safe under stream redelivery
    - All remote calls carry an explicit timeout

How to change safely:
    - New sinks must implement the Sink protocol and tolerate replays
    - Keep the cache write-through; never cache an unconfirmed positive
"""

from ._version import __version__

__all__ = ["__version__"]
