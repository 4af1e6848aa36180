"""
Unit tests for the EC2 security group sink.

Tests cover:
- One authorize and one revoke call per group
- Duplicate and not-found ranges tolerated
- Failure isolation between groups
- Collapsing several events for one range
"""

import pytest

from netaccess.knockrd_server.config import SecurityGroupConfig
from netaccess.knockrd_server.errors import SinkError
from netaccess.knockrd_server.sinks.base import final_actions
from netaccess.knockrd_server.sinks.security_group import (
    SecurityGroupSink,
    build_permission,
    split_permission,
)
from netaccess.knockrd_server.stream.events import Action, AddressFamily, ChangeEvent
from tests.fakes import FakeEC2, client_error


def _v4(address, action=Action.ADD):
    return ChangeEvent(address, AddressFamily.V4, action)


def _v6(address, action=Action.ADD):
    return ChangeEvent(address, AddressFamily.V6, action)


SSH = SecurityGroupConfig(id="sg-ssh", from_port=22, to_port=22, protocol="tcp")
HTTPS = SecurityGroupConfig(id="sg-https", from_port=443, to_port=443, protocol="tcp")


class TestPermissions:
    def test_build_permission(self):
        permission = build_permission(SSH, ["198.51.100.1/32"], ["2001:db8::1/128"], "by test")
        assert permission == {
            "IpProtocol": "tcp",
            "FromPort": 22,
            "ToPort": 22,
            "IpRanges": [{"CidrIp": "198.51.100.1/32", "Description": "by test"}],
            "Ipv6Ranges": [{"CidrIpv6": "2001:db8::1/128", "Description": "by test"}],
        }

    def test_split_permission(self):
        permission = build_permission(SSH, ["198.51.100.1/32", "198.51.100.2/32"], ["2001:db8::1/128"])
        singles = split_permission(permission)
        assert len(singles) == 3
        assert all(len(p["IpRanges"]) + len(p["Ipv6Ranges"]) == 1 for p in singles)

    def test_final_actions_last_wins(self):
        latest = final_actions(
            [_v4("198.51.100.1"), _v4("198.51.100.2"), _v4("198.51.100.1", Action.DELETE)]
        )
        assert list(latest) == ["198.51.100.1/32", "198.51.100.2/32"]
        assert not latest["198.51.100.1/32"].is_add


class TestSecurityGroupSink:
    """Tests for SecurityGroupSink."""

    @pytest.fixture
    def ec2(self):
        return FakeEC2()

    @pytest.fixture
    def sink(self, ec2):
        return SecurityGroupSink(ec2, [SSH], timeout=1.0)

    @pytest.mark.asyncio
    async def test_adds_only(self, sink, ec2):
        """Only ADD events: one authorize call with both families, no revoke."""
        await sink.apply([_v4("198.51.100.1")], [_v6("2001:db8::1")])

        [call] = ec2.called("authorize_security_group_ingress")
        assert call["GroupId"] == "sg-ssh"
        [permission] = call["IpPermissions"]
        assert permission["IpRanges"][0]["CidrIp"] == "198.51.100.1/32"
        assert permission["IpRanges"][0]["Description"].startswith("by ")
        assert permission["Ipv6Ranges"][0]["CidrIpv6"] == "2001:db8::1/128"
        assert ec2.called("revoke_security_group_ingress") == []
        assert ec2.cidrs("sg-ssh") == {"198.51.100.1/32", "2001:db8::1/128"}

    @pytest.mark.asyncio
    async def test_add_and_delete(self, sink, ec2):
        await sink.apply([_v4("198.51.100.1")], [])
        await sink.apply([_v4("198.51.100.2"), _v4("198.51.100.1", Action.DELETE)], [])

        assert len(ec2.called("authorize_security_group_ingress")) == 2
        assert len(ec2.called("revoke_security_group_ingress")) == 1
        assert ec2.cidrs("sg-ssh") == {"198.51.100.2/32"}

    @pytest.mark.asyncio
    async def test_duplicate_range_is_tolerated(self, sink, ec2):
        """An existing rule does not block the other ranges of the call."""
        await sink.apply([_v4("198.51.100.1")], [])

        await sink.apply([_v4("198.51.100.1"), _v4("198.51.100.2")], [])

        assert ec2.cidrs("sg-ssh") == {"198.51.100.1/32", "198.51.100.2/32"}

    @pytest.mark.asyncio
    async def test_revoke_of_absent_range_is_tolerated(self, sink, ec2):
        await sink.apply([_v4("198.51.100.1")], [])

        await sink.apply(
            [_v4("198.51.100.1", Action.DELETE), _v4("198.51.100.9", Action.DELETE)], []
        )

        assert ec2.cidrs("sg-ssh") == set()

    @pytest.mark.asyncio
    async def test_replay_converges(self, sink, ec2):
        batch = [_v4("198.51.100.1"), _v4("198.51.100.2", Action.DELETE)]
        await sink.apply(batch, [])
        await sink.apply(batch, [])
        assert ec2.cidrs("sg-ssh") == {"198.51.100.1/32"}

    @pytest.mark.asyncio
    async def test_collapsed_add_then_delete(self, sink, ec2):
        """The last event for a range decides whether it is authorized."""
        await sink.apply([_v4("198.51.100.1"), _v4("198.51.100.1", Action.DELETE)], [])

        assert ec2.called("authorize_security_group_ingress") == []
        assert ec2.cidrs("sg-ssh") == set()

    @pytest.mark.asyncio
    async def test_failing_group_does_not_stop_others(self, ec2):
        sink = SecurityGroupSink(ec2, [SSH, HTTPS], timeout=1.0)
        ec2.fail(
            "authorize_security_group_ingress",
            client_error("InvalidGroup.NotFound", "AuthorizeSecurityGroupIngress"),
        )

        with pytest.raises(SinkError) as exc_info:
            await sink.apply([_v4("198.51.100.1")], [])

        assert list(exc_info.value.failures) == ["sg-ssh/authorize"]
        assert ec2.cidrs("sg-https") == {"198.51.100.1/32"}

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_stop_other_groups(self, ec2):
        """Errors outside the provider taxonomy are still collected per group."""
        sink = SecurityGroupSink(ec2, [SSH, HTTPS], timeout=1.0)
        ec2.fail("authorize_security_group_ingress", RuntimeError("connection pool closed"))

        with pytest.raises(SinkError) as exc_info:
            await sink.apply([_v4("198.51.100.1")], [])

        assert isinstance(exc_info.value.failures["sg-ssh/authorize"], RuntimeError)
        assert ec2.cidrs("sg-https") == {"198.51.100.1/32"}

    def test_has_work(self, sink, ec2):
        assert sink.has_work([_v4("198.51.100.1")], [])
        assert not sink.has_work([], [])
        assert not SecurityGroupSink(ec2, []).has_work([_v4("198.51.100.1")], [])

    @pytest.mark.asyncio
    async def test_no_events_no_calls(self, sink, ec2):
        await sink.apply([], [])
        assert ec2.calls == []
