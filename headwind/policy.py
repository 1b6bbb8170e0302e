"""ACL policy documents: data types, HuJSON handling and host parsing."""

from __future__ import annotations

import ipaddress
import json
import re
from dataclasses import dataclass, field
from typing import Any, Union

import yaml

Prefix = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]


class PolicyError(ValueError):
    """Raised when a policy document or one of its values is invalid."""


def standardize_hujson(text: Union[str, bytes]) -> str:
    """Turn HuJSON (JSON with comments and trailing commas) into plain JSON."""
    if isinstance(text, bytes):
        text = text.decode("utf-8")
    out: list[str] = []
    pending_comma = None
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == '"':
            j = i + 1
            while j < n:
                if text[j] == "\\":
                    j += 2
                    continue
                if text[j] == '"':
                    break
                j += 1
            else:
                raise PolicyError("unterminated string literal")
            out.append(text[i : j + 1])
            pending_comma = None
            i = j + 1
        elif text.startswith("//", i):
            end = text.find("\n", i)
            if end == -1:
                end = n
            out.append(" " * (end - i))
            i = end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            if end == -1:
                raise PolicyError("unterminated block comment")
            out.append(re.sub(r"[^\n]", " ", text[i : end + 2]))
            i = end + 2
        elif ch.isspace():
            out.append(ch)
            i += 1
        elif ch == ",":
            pending_comma = len(out)
            out.append(ch)
            i += 1
        elif ch in "]}":
            if pending_comma is not None:
                out[pending_comma] = " "
                pending_comma = None
            out.append(ch)
            i += 1
        else:
            pending_comma = None
            out.append(ch)
            i += 1
    return "".join(out)


def _parse_prefix(text: Any) -> Prefix:
    """Parse ADDRESS/BITS strictly, keeping any host bits of the address."""
    if not isinstance(text, str):
        raise PolicyError(f"prefix must be a string, got {text!r}")
    addr_text, sep, bits_text = text.rpartition("/")
    if not sep:
        raise PolicyError(f"no '/' in prefix {text!r}")
    if "%" in addr_text:
        raise PolicyError(f"zoned address not allowed in prefix {text!r}")
    try:
        address = ipaddress.ip_address(addr_text)
    except ValueError as err:
        raise PolicyError(f"invalid address in prefix {text!r}") from err
    if not (bits_text.isascii() and bits_text.isdigit()):
        raise PolicyError(f"invalid prefix length in {text!r}")
    bits = int(bits_text)
    if bits > address.max_prefixlen:
        raise PolicyError(f"prefix length out of range in {text!r}")
    return ipaddress.ip_interface((address, bits))


def _as_prefix(value: Any) -> Prefix:
    if isinstance(value, (ipaddress.IPv4Interface, ipaddress.IPv6Interface)):
        return value
    if isinstance(value, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return ipaddress.ip_interface(value.with_prefixlen)
    return _parse_prefix(value)


def _host_prefix_from_json(value: Any) -> Prefix:
    if isinstance(value, str) and "/" not in value:
        value += "/32"
    return _as_prefix(value)


def parse_hosts_json(data: Union[str, bytes]) -> dict[str, Prefix]:
    """Parse a HuJSON hosts object; bare addresses get a /32 length."""
    try:
        raw = json.loads(standardize_hujson(data))
    except json.JSONDecodeError as err:
        raise PolicyError(f"invalid hosts document: {err}") from err
    return {name: _host_prefix_from_json(value) for name, value in _string_map(raw, "hosts").items()}


def parse_hosts_yaml(data: Union[str, bytes]) -> dict[str, Prefix]:
    """Parse a YAML hosts mapping; every value must be ADDRESS/BITS."""
    try:
        raw = yaml.safe_load(data)
    except yaml.YAMLError as err:
        raise PolicyError(f"invalid hosts document: {err}") from err
    return {name: _parse_prefix(value) for name, value in _string_map(raw, "hosts").items()}


def _string_map(value: Any, name: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        raise PolicyError(f"{name} must map names to strings")
    return dict(value)


def _string_list(value: Any, name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise PolicyError(f"{name} must be a list of strings")
    return list(value)


def _string(value: Any, name: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise PolicyError(f"{name} must be a string")
    return value


def _mapping(value: Any, name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise PolicyError(f"{name} must be an object")
    return value


def _lists_map(value: Any, name: str) -> dict[str, list[str]]:
    return {
        key: _string_list(items, f"{name}[{key!r}]")
        for key, items in _mapping(value, name).items()
    }


def _records(value: Any, name: str) -> list[dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise PolicyError(f"{name} must be a list")
    return [_mapping(item, name) for item in value]


@dataclass
class ACL:
    """A basic accept rule of the policy."""

    action: str = ""
    protocol: str = ""
    sources: list[str] = field(default_factory=list)
    destinations: list[str] = field(default_factory=list)


@dataclass
class ACLTest:
    """A policy test case; kept but not evaluated."""

    source: str = ""
    accept: list[str] = field(default_factory=list)
    deny: list[str] = field(default_factory=list)


@dataclass
class AutoApprovers:
    """Who may have advertised routes or exit-node status enabled automatically."""

    routes: dict[str, list[str]] = field(default_factory=dict)
    exit_node: list[str] = field(default_factory=list)

    def get_route_approvers(self, prefix: Any) -> list[str]:
        """Return the approver aliases for a route prefix."""
        wanted = _as_prefix(prefix)
        bits = wanted.network.prefixlen
        if bits == 0:
            return list(self.exit_node)
        approvers: list[str] = []
        for route, aliases in self.routes.items():
            approved = _parse_prefix(route)
            if bits >= approved.network.prefixlen and (
                wanted.network.network_address in approved.network
            ):
                approvers.extend(aliases)
        return approvers


@dataclass
class SSH:
    """A rule controlling who can SSH into which machines."""

    action: str = ""
    sources: list[str] = field(default_factory=list)
    destinations: list[str] = field(default_factory=list)
    users: list[str] = field(default_factory=list)
    check_period: str = ""


@dataclass
class ACLPolicy:
    """A complete ACL policy document."""

    groups: dict[str, list[str]] = field(default_factory=dict)
    hosts: dict[str, Prefix] = field(default_factory=dict)
    tag_owners: dict[str, list[str]] = field(default_factory=dict)
    acls: list[ACL] = field(default_factory=list)
    tests: list[ACLTest] = field(default_factory=list)
    auto_approvers: AutoApprovers = field(default_factory=AutoApprovers)
    ssh: list[SSH] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "ACLPolicy":
        """Build a policy from a decoded document using its wire key names.

        Host values given as text follow the JSON rule: a bare address
        becomes a /32 prefix. Already parsed prefixes are kept as they are.
        """
        doc = _mapping(data, "policy")
        hosts = {
            name: _host_prefix_from_json(value)
            for name, value in _mapping(doc.get("hosts"), "hosts").items()
        }
        approvers = _mapping(doc.get("autoApprovers"), "autoApprovers")
        return cls(
            groups=_lists_map(doc.get("groups"), "groups"),
            hosts=hosts,
            tag_owners=_lists_map(doc.get("tagOwners"), "tagOwners"),
            acls=[
                ACL(
                    action=_string(item.get("action"), "action"),
                    protocol=_string(item.get("proto"), "proto"),
                    sources=_string_list(item.get("src"), "src"),
                    destinations=_string_list(item.get("dst"), "dst"),
                )
                for item in _records(doc.get("acls"), "acls")
            ],
            tests=[
                ACLTest(
                    source=_string(item.get("src"), "src"),
                    accept=_string_list(item.get("accept"), "accept"),
                    deny=_string_list(item.get("deny"), "deny"),
                )
                for item in _records(doc.get("tests"), "tests")
            ],
            auto_approvers=AutoApprovers(
                routes=_lists_map(approvers.get("routes"), "routes"),
                exit_node=_string_list(approvers.get("exitNode"), "exitNode"),
            ),
            ssh=[
                SSH(
                    action=_string(item.get("action"), "action"),
                    sources=_string_list(item.get("src"), "src"),
                    destinations=_string_list(item.get("dst"), "dst"),
                    users=_string_list(item.get("users"), "users"),
                    check_period=_string(item.get("checkPeriod"), "checkPeriod"),
                )
                for item in _records(doc.get("ssh"), "ssh")
            ],
        )

    def is_zero(self) -> bool:
        """Report whether the policy has no groups, hosts or ACLs."""
        return not self.groups and not self.hosts and not self.acls