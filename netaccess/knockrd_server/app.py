"""
Application context for knockrd.

App is built once from ServerConfig and owns every remote handle: the
AWS clients, the access store (optionally behind the cache), the
configured sinks and the reconciler. Components receive what they need
from it explicitly; there are no process-wide singletons.

Invariants:
    - connect() provisions the access table before anything uses it
    - Only sinks present in the configuration are created
    - close() releases every client opened by connect()
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional

from aiobotocore.session import get_session

from .aws import client_kwargs
from .config import ServerConfig
from .sinks import ConsulKVSink, IPSetSink, SecurityGroupSink, Sink
from .sinks.consul_kv import create_client as create_consul_client
from .sinks.ip_set import CLOUDFRONT_REGION
from .store import AccessCache, AccessStore, DynamoDBAccessStore
from .stream import Reconciler, StreamHandler

logger = logging.getLogger(__name__)


class App:
    """Explicit context holding every knockrd component.

    Attributes:
        config: Server configuration
        store: Authoritative DynamoDB store
        access: Store used by callers (the cache when enabled)
        sinks: Configured sinks
        reconciler: Reconciliation engine
        stream_handler: Mutation-log consumer boundary

    Example:
        >>> async with App(ServerConfig.from_env()) as app:
        ...     await app.access.set("198.51.100.1")
        ...     await app.stream_handler.handle(event)
    """

    def __init__(self, config: ServerConfig, session: Optional[Any] = None) -> None:
        """Initialize the context.

        Args:
            config: Server configuration
            session: aiobotocore session (a new one is created if omitted)
        """
        self.config = config
        self._session = session
        self._stack: Optional[AsyncExitStack] = None

        self.store: Optional[DynamoDBAccessStore] = None
        self.access: Optional[AccessStore] = None
        self.sinks: List[Sink] = []
        self.reconciler: Optional[Reconciler] = None
        self.stream_handler: Optional[StreamHandler] = None

    @property
    def is_connected(self) -> bool:
        return self._stack is not None

    async def connect(self, provision: bool = True) -> None:
        """Open clients, provision the table and build components.

        Args:
            provision: Whether to ensure the access table exists

        Raises:
            ProvisioningError: If the access table cannot be provisioned
            ConfigurationError: If a sink target is invalid
        """
        if self._stack is not None:
            return

        stack = AsyncExitStack()
        try:
            await self._build(stack, provision)
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        logger.info(
            "knockrd context ready",
            extra={
                "table_name": self.config.store.table_name,
                "cache": self.config.store.cache_enabled,
                "sinks": [sink.name for sink in self.sinks],
            },
        )

    async def _build(self, stack: AsyncExitStack, provision: bool) -> None:
        session = self._session or get_session()
        aws = self.config.aws
        kwargs = client_kwargs(aws.region, aws.endpoint_url)

        async def open_client(service: str, **overrides: Any) -> Any:
            return await stack.enter_async_context(
                session.create_client(service, **{**kwargs, **overrides})
            )

        store_config = self.config.store
        dynamodb = await open_client("dynamodb")
        self.store = DynamoDBAccessStore(dynamodb, store_config)
        if provision:
            await self.store.provision()

        if store_config.cache_enabled:
            self.access = AccessCache(
                self.store,
                cache_ttl=store_config.cache_ttl_seconds,
                negative_ttl=store_config.negative_cache_ttl_seconds,
                maxsize=store_config.cache_max_size,
            )
        else:
            self.access = self.store

        sinks_config = self.config.sinks
        sinks: List[Sink] = []

        ip_sets = [t for t in (sinks_config.ip_set_v4, sinks_config.ip_set_v6) if t is not None]
        if ip_sets:
            clients: Dict[str, Any] = {}
            scopes = {t.scope for t in ip_sets}
            if "REGIONAL" in scopes:
                clients["REGIONAL"] = await open_client("wafv2")
            if "CLOUDFRONT" in scopes:
                clients["CLOUDFRONT"] = await open_client("wafv2", region_name=CLOUDFRONT_REGION)
            sinks.append(
                IPSetSink(
                    clients,
                    v4=sinks_config.ip_set_v4,
                    v6=sinks_config.ip_set_v6,
                    timeout=sinks_config.call_timeout_seconds,
                )
            )

        if sinks_config.security_groups:
            ec2 = await open_client("ec2")
            sinks.append(
                SecurityGroupSink(
                    ec2,
                    sinks_config.security_groups,
                    timeout=sinks_config.call_timeout_seconds,
                )
            )

        if sinks_config.consul is not None:
            http = await stack.enter_async_context(create_consul_client(sinks_config.consul))
            sinks.append(ConsulKVSink(http, sinks_config.consul))

        self.sinks = sinks
        self.reconciler = Reconciler(sinks)
        self.stream_handler = StreamHandler(self.reconciler)

    async def close(self) -> None:
        """Release every client opened by connect()."""
        if self._stack is None:
            return
        stack, self._stack = self._stack, None
        await stack.aclose()
        logger.info("knockrd context closed")

    async def __aenter__(self) -> App:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
