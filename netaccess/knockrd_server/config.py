"""
Configuration management for the knockrd server.

All configuration is done via environment variables. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Sink targets are validated once at startup, never per request
    - Secrets (Consul ACL token) are never logged

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Raise ConfigurationError for anything that would fail every request
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Any

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_TABLE = "knockrd"
DEFAULT_TTL_SECONDS = 3600.0
DEFAULT_CACHE_TTL_SECONDS = 10.0
DEFAULT_NEGATIVE_CACHE_TTL_SECONDS = 3.0
DEFAULT_CONSUL_KV_PATH = "knockrd/allowed"

IP_SET_SCOPES = ("REGIONAL", "CLOUDFRONT")
SECURITY_GROUP_PROTOCOLS = ("tcp", "udp", "icmp", "icmpv6", "-1")


def _load_json(name: str) -> Any:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{name} is not valid JSON: {e}", setting=name) from e


@dataclass(frozen=True)
class AwsConfig:
    """AWS client configuration.

    Attributes:
        region: AWS region for DynamoDB, EC2 and regional WAFv2
        endpoint_url: Custom endpoint URL (for LocalStack testing)
    """

    region: str = "us-east-1"
    endpoint_url: str | None = None

    @classmethod
    def from_env(cls) -> AwsConfig:
        """Load configuration from environment variables."""
        return cls(
            region=os.getenv("AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1")),
            endpoint_url=os.getenv("AWS_ENDPOINT") or None,
        )


@dataclass(frozen=True)
class StoreConfig:
    """Access store and cache configuration.

    Attributes:
        table_name: DynamoDB table holding access entries
        ttl_seconds: Lifetime of an access entry
        cache_ttl_seconds: Lifetime of a positive cache entry (0 disables the cache)
        negative_cache_ttl_seconds: Lifetime of a negative cache entry
        cache_max_size: Maximum number of cached keys
        call_timeout_seconds: Timeout applied to every store call
        provision_min_delay_seconds: First backoff delay while enabling TTL
        provision_max_delay_seconds: Backoff ceiling while enabling TTL
        provision_max_attempts: Attempts before provisioning is fatal
    """

    table_name: str = DEFAULT_TABLE
    ttl_seconds: float = DEFAULT_TTL_SECONDS
    cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    negative_cache_ttl_seconds: float = DEFAULT_NEGATIVE_CACHE_TTL_SECONDS
    cache_max_size: int = 10000
    call_timeout_seconds: float = 30.0
    provision_min_delay_seconds: float = 0.5
    provision_max_delay_seconds: float = 3.0
    provision_max_attempts: int = 10

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load configuration from environment variables."""
        try:
            return cls(
                table_name=os.getenv("KNOCKRD_TABLE_NAME", DEFAULT_TABLE),
                ttl_seconds=float(os.getenv("KNOCKRD_TTL", str(DEFAULT_TTL_SECONDS))),
                cache_ttl_seconds=float(
                    os.getenv("KNOCKRD_CACHE_TTL", str(DEFAULT_CACHE_TTL_SECONDS))
                ),
                negative_cache_ttl_seconds=float(
                    os.getenv(
                        "KNOCKRD_NEGATIVE_CACHE_TTL", str(DEFAULT_NEGATIVE_CACHE_TTL_SECONDS)
                    )
                ),
                cache_max_size=int(os.getenv("KNOCKRD_CACHE_MAX_SIZE", "10000")),
                call_timeout_seconds=float(os.getenv("KNOCKRD_CALL_TIMEOUT", "30")),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid store setting: {e}") from e

    @property
    def cache_enabled(self) -> bool:
        return self.cache_ttl_seconds > 0


@dataclass(frozen=True)
class IPSetConfig:
    """WAFv2 IP set target.

    Attributes:
        id: IP set ID
        name: IP set name
        scope: REGIONAL or CLOUDFRONT
    """

    id: str
    name: str
    scope: str = "REGIONAL"

    @classmethod
    def from_env(cls, name: str) -> IPSetConfig | None:
        """Load one IP set target from a JSON environment variable."""
        data = _load_json(name)
        if data is None:
            return None
        if not isinstance(data, dict):
            raise ConfigurationError(f"{name} must be a JSON object", setting=name)
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            scope=str(data.get("scope", "REGIONAL")).upper(),
        )

    def validate(self, setting: str) -> None:
        if not self.id or not self.name:
            raise ConfigurationError(f"{setting} requires both id and name", setting=setting)
        if self.scope not in IP_SET_SCOPES:
            raise ConfigurationError(
                f"invalid scope {self.scope} in {setting}: set REGIONAL or CLOUDFRONT",
                setting=setting,
            )


@dataclass(frozen=True)
class SecurityGroupConfig:
    """EC2 security group target with its ingress rule template.

    Attributes:
        id: Security group ID
        from_port: First port of the range
        to_port: Last port of the range
        protocol: IP protocol ("tcp", "udp", "icmp", "-1" for all)
    """

    id: str
    from_port: int = 0
    to_port: int = 65535
    protocol: str = "tcp"

    @classmethod
    def list_from_env(cls, name: str = "KNOCKRD_SECURITY_GROUPS") -> tuple[SecurityGroupConfig, ...]:
        """Load the security group list from a JSON environment variable."""
        data = _load_json(name)
        if data is None:
            return ()
        if not isinstance(data, list):
            raise ConfigurationError(f"{name} must be a JSON list", setting=name)
        groups = []
        for entry in data:
            if not isinstance(entry, dict):
                raise ConfigurationError(f"{name} entries must be objects", setting=name)
            try:
                groups.append(
                    cls(
                        id=str(entry.get("id", "")),
                        from_port=int(entry.get("from_port", 0)),
                        to_port=int(entry.get("to_port", 65535)),
                        protocol=str(entry.get("protocol", "tcp")).lower(),
                    )
                )
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid port in {name}: {e}", setting=name) from e
        return tuple(groups)

    def validate(self) -> None:
        setting = "KNOCKRD_SECURITY_GROUPS"
        if not self.id:
            raise ConfigurationError("security group id is required", setting=setting)
        if self.protocol not in SECURITY_GROUP_PROTOCOLS:
            raise ConfigurationError(
                f"invalid protocol {self.protocol} for {self.id}", setting=setting
            )
        if self.protocol in ("tcp", "udp"):
            if not (0 <= self.from_port <= self.to_port <= 65535):
                raise ConfigurationError(
                    f"invalid port range {self.from_port}-{self.to_port} for {self.id}",
                    setting=setting,
                )


@dataclass(frozen=True)
class ConsulConfig:
    """Consul KV mirror configuration.

    Attributes:
        address: Consul agent address (host:port)
        scheme: http or https
        datacenter: Optional datacenter
        kv_path: Namespace prefix for mirrored keys
        token: Optional ACL token
        timeout_seconds: Timeout applied to every KV call
    """

    address: str
    scheme: str = "http"
    datacenter: str | None = None
    kv_path: str = DEFAULT_CONSUL_KV_PATH
    token: str | None = None
    timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> ConsulConfig | None:
        """Load configuration from environment variables.

        Returns None when CONSUL_HTTP_ADDR is not set.
        """
        address = os.getenv("CONSUL_HTTP_ADDR")
        if not address:
            return None
        return cls(
            address=address,
            scheme=os.getenv("CONSUL_SCHEME", "http"),
            datacenter=os.getenv("CONSUL_DATACENTER") or None,
            kv_path=os.getenv("KNOCKRD_CONSUL_KV_PATH") or DEFAULT_CONSUL_KV_PATH,
            token=os.getenv("CONSUL_HTTP_TOKEN") or None,
            timeout_seconds=float(os.getenv("KNOCKRD_CALL_TIMEOUT", "30")),
        )

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.address}"


@dataclass(frozen=True)
class SinkConfig:
    """Enforcement point configuration. Every sink is optional.

    Attributes:
        ip_set_v4: WAFv2 IP set for IPv4 ranges
        ip_set_v6: WAFv2 IP set for IPv6 ranges
        security_groups: EC2 security groups to authorize/revoke on
        consul: Consul KV mirror
        call_timeout_seconds: Timeout applied to every AWS sink call
    """

    ip_set_v4: IPSetConfig | None = None
    ip_set_v6: IPSetConfig | None = None
    security_groups: tuple[SecurityGroupConfig, ...] = ()
    consul: ConsulConfig | None = None
    call_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> SinkConfig:
        """Load configuration from environment variables."""
        return cls(
            ip_set_v4=IPSetConfig.from_env("KNOCKRD_IPSET_V4"),
            ip_set_v6=IPSetConfig.from_env("KNOCKRD_IPSET_V6"),
            security_groups=SecurityGroupConfig.list_from_env(),
            consul=ConsulConfig.from_env(),
            call_timeout_seconds=float(os.getenv("KNOCKRD_CALL_TIMEOUT", "30")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        aws: AWS client configuration
        store: Access store and cache configuration
        sinks: Enforcement point configuration
        observability: Logging configuration
    """

    aws: AwsConfig = field(default_factory=AwsConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    sinks: SinkConfig = field(default_factory=SinkConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ConfigurationError: If configuration is missing or invalid.
        """
        config = cls(
            aws=AwsConfig.from_env(),
            store=StoreConfig.from_env(),
            sinks=SinkConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Clamps cache lifetimes that exceed the entry lifetime.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        store = self.store
        if store.ttl_seconds <= 0:
            raise ConfigurationError("KNOCKRD_TTL must be positive", setting="KNOCKRD_TTL")
        if store.call_timeout_seconds <= 0:
            raise ConfigurationError(
                "KNOCKRD_CALL_TIMEOUT must be positive", setting="KNOCKRD_CALL_TIMEOUT"
            )
        if not store.table_name:
            raise ConfigurationError(
                "KNOCKRD_TABLE_NAME is required", setting="KNOCKRD_TABLE_NAME"
            )

        if store.cache_ttl_seconds > store.ttl_seconds:
            logger.warning(
                f"cache_ttl({store.cache_ttl_seconds}s) is longer than ttl({store.ttl_seconds}s). "
                "set cache_ttl equals to ttl."
            )
            store = replace(store, cache_ttl_seconds=store.ttl_seconds)
        if store.cache_enabled and store.negative_cache_ttl_seconds > store.cache_ttl_seconds:
            logger.warning(
                f"negative_cache_ttl({store.negative_cache_ttl_seconds}s) is longer than "
                f"cache_ttl({store.cache_ttl_seconds}s). set negative_cache_ttl equals to cache_ttl."
            )
            store = replace(store, negative_cache_ttl_seconds=store.cache_ttl_seconds)
        if store.negative_cache_ttl_seconds < 0:
            raise ConfigurationError(
                "KNOCKRD_NEGATIVE_CACHE_TTL must not be negative",
                setting="KNOCKRD_NEGATIVE_CACHE_TTL",
            )
        self.store = store

        if self.sinks.ip_set_v4 is not None:
            self.sinks.ip_set_v4.validate("KNOCKRD_IPSET_V4")
        if self.sinks.ip_set_v6 is not None:
            self.sinks.ip_set_v6.validate("KNOCKRD_IPSET_V6")
        for group in self.sinks.security_groups:
            group.validate()
        if self.sinks.consul is not None and self.sinks.consul.scheme not in ("http", "https"):
            raise ConfigurationError(
                f"invalid CONSUL_SCHEME {self.sinks.consul.scheme}", setting="CONSUL_SCHEME"
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "region": self.aws.region,
                "endpoint": self.aws.endpoint_url or "AWS",
                "table_name": self.store.table_name,
                "ttl_seconds": self.store.ttl_seconds,
                "cache_ttl_seconds": self.store.cache_ttl_seconds,
                "negative_cache_ttl_seconds": self.store.negative_cache_ttl_seconds,
                "ip_set_v4": self.sinks.ip_set_v4.id if self.sinks.ip_set_v4 else None,
                "ip_set_v6": self.sinks.ip_set_v6.id if self.sinks.ip_set_v6 else None,
                "security_groups": [g.id for g in self.sinks.security_groups],
                "consul": self.sinks.consul.address if self.sinks.consul else None,
                "log_level": self.observability.log_level,
            },
        )
