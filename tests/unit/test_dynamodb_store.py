"""
Unit tests for the DynamoDB access store.

Tests cover:
- Table provisioning (create, already exists, TTL retry)
- Item get/set/delete against a fake client
- Freshness recomputed from Expires
- Timeout and throttling mapped to TransientIOError
"""

import pytest
from botocore.exceptions import ClientError

from netaccess.knockrd_server.config import StoreConfig
from netaccess.knockrd_server.errors import ProvisioningError, TransientIOError
from netaccess.knockrd_server.store.dynamodb import DynamoDBAccessStore
from tests.fakes import FakeClock, FakeDynamoDB, client_error


def _config(**overrides) -> StoreConfig:
    values = dict(
        table_name="knockrd-test",
        ttl_seconds=60,
        call_timeout_seconds=1.0,
        provision_min_delay_seconds=0,
        provision_max_delay_seconds=0,
        provision_max_attempts=3,
    )
    values.update(overrides)
    return StoreConfig(**values)


class TestProvisioning:
    """Tests for DynamoDBAccessStore.provision()."""

    @pytest.mark.asyncio
    async def test_creates_missing_table(self):
        """Missing table is created on demand with a keys-only stream and TTL."""
        client = FakeDynamoDB(table_exists=False)
        store = DynamoDBAccessStore(client, _config())

        await store.provision()

        [create] = client.called("create_table")
        assert create["TableName"] == "knockrd-test"
        assert create["BillingMode"] == "PAY_PER_REQUEST"
        assert create["KeySchema"] == [{"AttributeName": "Key", "KeyType": "HASH"}]
        assert create["StreamSpecification"]["StreamViewType"] == "KEYS_ONLY"
        assert client.ttl_attribute == "Expires"

    @pytest.mark.asyncio
    async def test_existing_table_is_not_recreated(self):
        client = FakeDynamoDB(table_exists=True, ttl_attribute="Expires")
        store = DynamoDBAccessStore(client, _config())

        await store.provision()

        assert client.called("create_table") == []
        assert len(client.called("update_time_to_live")) == 1

    @pytest.mark.asyncio
    async def test_existing_table_without_ttl_gets_ttl(self):
        """A table left behind before TTL was enabled is repaired."""
        client = FakeDynamoDB(table_exists=True, ttl_attribute=None)
        store = DynamoDBAccessStore(client, _config())

        await store.provision()

        assert client.called("create_table") == []
        assert client.ttl_attribute == "Expires"

    @pytest.mark.asyncio
    async def test_concurrent_create_counts_as_success(self):
        """ResourceInUseException on create means the table already exists."""
        client = FakeDynamoDB(table_exists=False)
        client.fail("create_table", client_error("ResourceInUseException", "CreateTable"))
        store = DynamoDBAccessStore(client, _config())

        await store.provision()

        assert client.ttl_attribute == "Expires"

    @pytest.mark.asyncio
    async def test_ttl_enable_is_retried(self):
        """TTL update is retried while the new table is still being created."""
        client = FakeDynamoDB(table_exists=False)
        client.fail(
            "update_time_to_live",
            client_error("ResourceInUseException", "UpdateTimeToLive"),
            client_error("ResourceInUseException", "UpdateTimeToLive"),
        )
        store = DynamoDBAccessStore(client, _config())

        await store.provision()

        assert len(client.called("update_time_to_live")) == 3
        assert client.ttl_attribute == "Expires"

    @pytest.mark.asyncio
    async def test_ttl_already_enabled_is_success(self):
        client = FakeDynamoDB(table_exists=False)
        client.fail(
            "update_time_to_live",
            client_error(
                "ValidationException", "UpdateTimeToLive", "TimeToLive is already enabled"
            ),
        )
        store = DynamoDBAccessStore(client, _config())

        await store.provision()

        assert len(client.called("update_time_to_live")) == 1

    @pytest.mark.asyncio
    async def test_ttl_retries_are_bounded(self):
        """Exhausted retries are fatal."""
        client = FakeDynamoDB(table_exists=False)
        client.fail(
            "update_time_to_live",
            *[client_error("ResourceInUseException", "UpdateTimeToLive") for _ in range(5)],
        )
        store = DynamoDBAccessStore(client, _config(provision_max_attempts=3))

        with pytest.raises(ProvisioningError) as exc_info:
            await store.provision()

        assert len(client.called("update_time_to_live")) == 3
        assert exc_info.value.table_name == "knockrd-test"

    @pytest.mark.asyncio
    async def test_describe_failure_is_fatal(self):
        client = FakeDynamoDB()
        client.fail("describe_table", client_error("AccessDeniedException", "DescribeTable"))
        store = DynamoDBAccessStore(client, _config())

        with pytest.raises(ProvisioningError):
            await store.provision()


class TestItems:
    """Tests for get/set/delete."""

    @pytest.fixture
    def clock(self):
        return FakeClock(1_700_000_000.25)

    @pytest.fixture
    def client(self):
        return FakeDynamoDB()

    @pytest.fixture
    def store(self, client, clock):
        return DynamoDBAccessStore(client, _config(), clock=clock)

    @pytest.mark.asyncio
    async def test_set_writes_exact_expiry(self, store, client):
        await store.set("198.51.100.1")

        [put] = client.called("put_item")
        assert put["TableName"] == "knockrd-test"
        assert put["Item"] == {
            "Key": {"S": "198.51.100.1"},
            "Expires": {"N": "1700000060.25"},
        }

    @pytest.mark.asyncio
    async def test_ttl_boundary(self, store, clock):
        """True while elapsed < TTL, false once elapsed >= TTL."""
        await store.set("198.51.100.1")

        clock.advance(59.5)
        assert await store.get("198.51.100.1") is True

        clock.advance(0.5)
        assert await store.get("198.51.100.1") is False

    @pytest.mark.asyncio
    async def test_set_then_get(self, store, client):
        await store.set("198.51.100.1")
        assert await store.get("198.51.100.1") is True
        assert client.called("get_item")[0]["ConsistentRead"] is True

    @pytest.mark.asyncio
    async def test_missing_item_is_false(self, store):
        assert await store.get("198.51.100.2") is False

    @pytest.mark.asyncio
    async def test_expired_item_still_in_table_is_false(self, store, client, clock):
        """DynamoDB reclaims lazily; freshness comes from Expires."""
        await store.set("198.51.100.1")
        clock.advance(60)

        assert "198.51.100.1" in client.items
        assert await store.get("198.51.100.1") is False

    @pytest.mark.asyncio
    async def test_item_without_expiry_is_false(self, store, client):
        client.items["token-abc"] = {"Key": {"S": "token-abc"}}
        assert await store.get("token-abc") is False

    @pytest.mark.asyncio
    async def test_delete_missing_is_not_an_error(self, store, client):
        await store.delete("198.51.100.3")
        assert len(client.called("delete_item")) == 1

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, client, clock):
        client.delays["get_item"] = 0.5
        store = DynamoDBAccessStore(client, _config(call_timeout_seconds=0.01), clock=clock)

        with pytest.raises(TransientIOError) as exc_info:
            await store.get("198.51.100.1")
        assert "timed out" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_throttling_is_transient(self, store, client):
        client.fail("put_item", client_error("ProvisionedThroughputExceededException", "PutItem"))

        with pytest.raises(TransientIOError):
            await store.set("198.51.100.1")

    @pytest.mark.asyncio
    async def test_other_errors_propagate_unmodified(self, store, client):
        error = client_error("AccessDeniedException", "GetItem")
        client.fail("get_item", error)

        with pytest.raises(ClientError) as exc_info:
            await store.get("198.51.100.1")
        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_steady_state_calls_are_not_retried(self, store, client):
        client.fail("put_item", client_error("ThrottlingException", "PutItem"))

        with pytest.raises(TransientIOError):
            await store.set("198.51.100.1")
        assert len(client.called("put_item")) == 1
