import ipaddress
import json

import pytest

from headwind.policy import (
    ACL,
    ACLPolicy,
    AutoApprovers,
    PolicyError,
    parse_hosts_json,
    parse_hosts_yaml,
    standardize_hujson,
)


def test_parse_hosts():
    hosts = parse_hosts_json(
        '{"example-host-1": "100.100.100.100","example-host-2": "100.100.101.100/24"}'
    )
    assert {name: str(prefix) for name, prefix in hosts.items()} == {
        "example-host-1": "100.100.100.100/32",
        "example-host-2": "100.100.101.100/24",
    }


def test_parse_invalid_cidr():
    with pytest.raises(PolicyError):
        parse_hosts_json('{"example-host-1": "100.100.100.100/42"}')


def test_parse_hosts_json_accepts_bytes_and_comments():
    hosts = parse_hosts_json(b'{\n // home\n "homeNetwork": "192.168.1.0/24",\n}')
    assert str(hosts["homeNetwork"]) == "192.168.1.0/24"


def test_parse_hosts_json_rejects_non_string_value():
    with pytest.raises(PolicyError):
        parse_hosts_json('{"host": 5}')


def test_parse_hosts_yaml_requires_prefix_length():
    with pytest.raises(PolicyError):
        parse_hosts_yaml("host: 10.0.0.1\n")


def test_parse_hosts_yaml():
    hosts = parse_hosts_yaml("homeNetwork: 192.168.1.0/24\n")
    assert hosts == {"homeNetwork": ipaddress.ip_interface("192.168.1.0/24")}


def test_standardize_hujson_strips_comments_and_trailing_commas():
    text = """
    {
        // a comment
        "acls": [
            {"action": "accept", "src": ["*"], "dst": ["*:*"],}, /* block */
        ],
        "url": "http://example.com/a//b",
    }
    """
    assert json.loads(standardize_hujson(text)) == {
        "acls": [{"action": "accept", "src": ["*"], "dst": ["*:*"]}],
        "url": "http://example.com/a//b",
    }


def test_standardize_hujson_preserves_length_and_lines():
    text = '{"a": 1, /* x\ny */ "b": [1, 2,],}'
    result = standardize_hujson(text)
    assert len(result) == len(text)
    assert result.count("\n") == text.count("\n")


def test_standardize_hujson_unterminated_comment():
    with pytest.raises(PolicyError):
        standardize_hujson('{"a": 1 /* never closed')


def test_standardize_hujson_unterminated_string():
    with pytest.raises(PolicyError):
        standardize_hujson('{"a')


def test_is_zero():
    assert ACLPolicy().is_zero() is True
    assert ACLPolicy(tag_owners={"tag:test": ["user1"]}).is_zero() is True
    policy = ACLPolicy(acls=[ACL(action="accept", sources=["*"], destinations=["*:*"])])
    assert policy.is_zero() is False
    assert ACLPolicy(groups={"group:test": ["foo"]}).is_zero() is False


def test_from_dict_reads_wire_keys():
    policy = ACLPolicy.from_dict(
        {
            "groups": {"group:test": ["user1", "user2"]},
            "hosts": {"client": "100.64.99.42"},
            "tagOwners": {"tag:test": ["user3", "group:test"]},
            "acls": [{"action": "accept", "proto": "tcp", "src": ["*"], "dst": ["tag:test:*"]}],
            "autoApprovers": {"routes": {"10.0.0.0/8": ["user1"]}, "exitNode": ["tag:exit"]},
            "ssh": [
                {
                    "action": "check",
                    "src": ["group:test"],
                    "dst": ["client"],
                    "users": ["autogroup:nonroot"],
                    "checkPeriod": "1h",
                }
            ],
        }
    )
    assert policy.groups == {"group:test": ["user1", "user2"]}
    assert str(policy.hosts["client"]) == "100.64.99.42/32"
    assert policy.tag_owners == {"tag:test": ["user3", "group:test"]}
    assert policy.acls == [
        ACL(action="accept", protocol="tcp", sources=["*"], destinations=["tag:test:*"])
    ]
    assert policy.auto_approvers.exit_node == ["tag:exit"]
    assert policy.ssh[0].check_period == "1h"
    assert policy.ssh[0].users == ["autogroup:nonroot"]
    assert policy.is_zero() is False


def test_from_dict_empty_is_zero():
    assert ACLPolicy.from_dict({}).is_zero() is True


def test_from_dict_rejects_bad_types():
    with pytest.raises(PolicyError):
        ACLPolicy.from_dict({"groups": {"group:test": "user1"}})
    with pytest.raises(PolicyError):
        ACLPolicy.from_dict({"acls": {"action": "accept"}})


def test_route_approvers_exit_node():
    approvers = AutoApprovers(routes={"10.0.0.0/8": ["user1"]}, exit_node=["tag:exit"])
    assert approvers.get_route_approvers("0.0.0.0/0") == ["tag:exit"]
    assert approvers.get_route_approvers("::/0") == ["tag:exit"]


def test_route_approvers_matches_contained_routes():
    approvers = AutoApprovers(
        routes={"10.0.0.0/8": ["user1"], "10.1.0.0/16": ["group:net"], "192.168.0.0/24": ["x"]}
    )
    assert approvers.get_route_approvers("10.1.2.0/24") == ["user1", "group:net"]
    assert approvers.get_route_approvers(ipaddress.ip_network("10.2.0.0/16")) == ["user1"]
    assert approvers.get_route_approvers("10.0.0.0/4") == []
    assert approvers.get_route_approvers("fd00::/64") == []


def test_route_approvers_invalid_route():
    approvers = AutoApprovers(routes={"not-a-prefix": ["user1"]})
    with pytest.raises(PolicyError):
        approvers.get_route_approvers("10.0.0.0/8")