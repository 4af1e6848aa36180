"""
DynamoDB access store implementation.

This module stores allow-list entries in a DynamoDB table whose TTL
attribute lets DynamoDB reclaim expired items. Key changes on the table
feed the reconciliation stream (KEYS_ONLY view).

Table layout:
    Key     (S, hash key)  entry key, typically an IP address
    Expires (N)            exact expiry as Unix epoch seconds, TTL attribute

Invariants:
    - get() recomputes freshness from Expires; DynamoDB may keep an item
      for a while after its TTL has passed
    - Every call is bounded by call_timeout_seconds
    - Provisioning retries with bounded exponential backoff; steady-state
      get/set/delete are never retried here

How to change safely:
    - Test with LocalStack before deploying to AWS
    - Changing the key or TTL attribute names requires a new table
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from botocore.exceptions import ClientError
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..aws import call_with_timeout, error_code
from ..config import StoreConfig
from ..errors import ProvisioningError, TransientIOError
from .base import AccessEntry, Clock

logger = logging.getLogger(__name__)

KEY_ATTRIBUTE = "Key"
EXPIRES_ATTRIBUTE = "Expires"


class DynamoDBAccessStore:
    """DynamoDB implementation of the AccessStore protocol.

    Attributes:
        config: Store configuration
        table_name: DynamoDB table name

    Example:
        >>> async with session.create_client("dynamodb", region_name="us-east-1") as client:
        ...     store = DynamoDBAccessStore(client, config.store)
        ...     await store.provision()
        ...     await store.set("198.51.100.1")
    """

    def __init__(
        self,
        client: Any,
        config: StoreConfig,
        clock: Optional[Clock] = None,
    ) -> None:
        """Initialize the store.

        Args:
            client: aiobotocore DynamoDB client
            config: StoreConfig instance
            clock: Time source returning Unix epoch seconds
        """
        self._client = client
        self.config = config
        self.table_name = config.table_name
        self._clock = clock or time.time

    @property
    def ttl(self) -> float:
        return self.config.ttl_seconds

    async def _call(self, operation: str, awaitable: Any) -> Any:
        return await call_with_timeout(
            f"DynamoDB {operation}", awaitable, self.config.call_timeout_seconds
        )

    # Provisioning

    async def provision(self) -> None:
        """Make sure the table exists with TTL enabled.

        Creates the table (on-demand capacity, KEYS_ONLY stream) when it
        does not exist, then enables TTL on the Expires attribute. Both
        steps treat "already done" as success.

        Raises:
            ProvisioningError: If the table is still not usable after
                provision_max_attempts tries
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.provision_max_attempts),
            wait=wait_exponential(
                multiplier=self.config.provision_min_delay_seconds,
                min=self.config.provision_min_delay_seconds,
                max=self.config.provision_max_delay_seconds,
            ),
            retry=retry_if_exception_type((ClientError, TransientIOError)),
            reraise=False,
        )
        try:
            await self.ensure_table()
            # A table created by an earlier run may still lack TTL
            async for attempt in retrying:
                with attempt:
                    await self.enable_expiry()
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise ProvisioningError(
                f"failed to set TTL for {self.table_name}.{EXPIRES_ATTRIBUTE}: {cause}",
                table_name=self.table_name,
            ) from cause
        except (ClientError, TransientIOError) as e:
            raise ProvisioningError(
                f"failed to provision table {self.table_name}: {e}",
                table_name=self.table_name,
            ) from e

    async def ensure_table(self) -> bool:
        """Create the table if it does not exist.

        Returns:
            True if this call created the table
        """
        try:
            await self._call("DescribeTable", self._client.describe_table(TableName=self.table_name))
            logger.debug(f"table {self.table_name} exists")
            return False
        except ClientError as e:
            if error_code(e) != "ResourceNotFoundException":
                raise

        logger.info(f"describe table {self.table_name} failed, creating")
        try:
            await self._call(
                "CreateTable",
                self._client.create_table(
                    TableName=self.table_name,
                    AttributeDefinitions=[
                        {"AttributeName": KEY_ATTRIBUTE, "AttributeType": "S"},
                    ],
                    KeySchema=[{"AttributeName": KEY_ATTRIBUTE, "KeyType": "HASH"}],
                    BillingMode="PAY_PER_REQUEST",
                    StreamSpecification={
                        "StreamEnabled": True,
                        "StreamViewType": "KEYS_ONLY",
                    },
                ),
            )
        except ClientError as e:
            if error_code(e) != "ResourceInUseException":
                raise
            logger.info(f"table {self.table_name} already exists")
        return True

    async def enable_expiry(self) -> None:
        """Enable TTL on the Expires attribute."""
        try:
            await self._call(
                "UpdateTimeToLive",
                self._client.update_time_to_live(
                    TableName=self.table_name,
                    TimeToLiveSpecification={
                        "Enabled": True,
                        "AttributeName": EXPIRES_ATTRIBUTE,
                    },
                ),
            )
        except ClientError as e:
            message = e.response.get("Error", {}).get("Message", "")
            if error_code(e) == "ValidationException" and "already enabled" in message:
                return
            raise
        logger.info(f"enabled TTL on {self.table_name}.{EXPIRES_ATTRIBUTE}")

    # Items

    async def get(self, key: str) -> bool:
        logger.debug(f"get {key} from dynamodb")
        response = await self._call(
            "GetItem",
            self._client.get_item(
                TableName=self.table_name,
                Key={KEY_ATTRIBUTE: {"S": key}},
                ConsistentRead=True,
            ),
        )
        item = response.get("Item")
        if not item:
            return False
        expires = item.get(EXPIRES_ATTRIBUTE, {}).get("N")
        if expires is None:
            logger.warning(f"item {key} has no {EXPIRES_ATTRIBUTE} attribute")
            return False
        entry = AccessEntry(key=key, expires_at=float(expires))
        now = self._clock()
        logger.debug(
            f"got {key} from dynamodb expires:{entry.expires_at:.0f} "
            f"remain:{entry.remaining(now):.0f} sec"
        )
        return entry.is_fresh(now)

    async def set(self, key: str) -> None:
        expires_at = self._clock() + self.ttl
        logger.debug(f"set {key} to dynamodb")
        await self._call(
            "PutItem",
            self._client.put_item(
                TableName=self.table_name,
                Item={
                    KEY_ATTRIBUTE: {"S": key},
                    EXPIRES_ATTRIBUTE: {"N": repr(float(expires_at))},
                },
            ),
        )

    async def delete(self, key: str) -> None:
        logger.debug(f"delete {key} from dynamodb")
        await self._call(
            "DeleteItem",
            self._client.delete_item(
                TableName=self.table_name,
                Key={KEY_ATTRIBUTE: {"S": key}},
            ),
        )
