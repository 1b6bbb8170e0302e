"""ACL rule generation: alias expansion, ports, protocols and SSH rules."""

from __future__ import annotations

import ipaddress
import json
import logging
import os
import re
from dataclasses import dataclass, field, replace
from datetime import timedelta
from fractions import Fraction
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence, Union

import yaml

from .models import Machine
from .policy import ACLPolicy, PolicyError, parse_hosts_yaml, standardize_hujson

log = logging.getLogger(__name__)

PORT_RANGE_BEGIN = 0
PORT_RANGE_END = 65535

PROTOCOL_ICMP = 1
PROTOCOL_IGMP = 2
PROTOCOL_IPV4 = 4
PROTOCOL_TCP = 6
PROTOCOL_EGP = 8
PROTOCOL_IGP = 9
PROTOCOL_UDP = 17
PROTOCOL_GRE = 47
PROTOCOL_ESP = 50
PROTOCOL_AH = 51
PROTOCOL_IPV6_ICMP = 58
PROTOCOL_SCTP = 132
PROTOCOL_FC = 133

SSH_FEATURE_ENV = "HEADWIND_EXPERIMENTAL_FEATURE_SSH"


class EmptyPolicyError(PolicyError):
    """The policy is missing or has no groups, hosts or ACLs."""


class InvalidActionError(PolicyError):
    """An ACL uses an action other than accept."""


class InvalidGroupError(PolicyError):
    """A group is unknown, nested or holds an invalid name."""


class InvalidTagError(PolicyError):
    """A tag has no owner."""


class InvalidPortFormatError(PolicyError):
    """A destination or port list is malformed."""


class WildcardRequiredError(PolicyError):
    """The protocol only allows '*' as destination port."""


@dataclass(frozen=True)
class PortRange:
    """An inclusive range of ports."""

    first: int
    last: int


@dataclass(frozen=True)
class NetPortRange:
    """An address (or '*') combined with a port range."""

    ip: str
    ports: PortRange


@dataclass
class FilterRule:
    """A packet filter rule sent to clients."""

    src_ips: list[str] = field(default_factory=list)
    dst_ports: list[NetPortRange] = field(default_factory=list)
    ip_proto: list[int] = field(default_factory=list)


@dataclass
class SSHAction:
    """What happens when an SSH rule matches."""

    message: str = ""
    reject: bool = False
    accept: bool = False
    session_duration: timedelta = timedelta(0)
    allow_agent_forwarding: bool = False
    hold_and_delegate: str = ""
    allow_local_port_forwarding: bool = False


@dataclass
class SSHPrincipal:
    """A source allowed by an SSH rule."""

    node_ip: str = ""


@dataclass
class SSHRule:
    """An SSH access rule sent to clients."""

    principals: list[SSHPrincipal] = field(default_factory=list)
    ssh_users: dict[str, str] = field(default_factory=dict)
    action: SSHAction = field(default_factory=SSHAction)
    rule_expires: Optional[object] = None


_ACCEPT_ACTION = SSHAction(accept=True, allow_local_port_forwarding=True)
_REJECT_ACTION = SSHAction(reject=True)

_PROTOCOLS: dict[str, tuple[tuple[int, ...], bool]] = {
    "": ((), False),
    "igmp": ((PROTOCOL_IGMP,), True),
    "ipv4": ((PROTOCOL_IPV4,), True),
    "ip-in-ip": ((PROTOCOL_IPV4,), True),
    "tcp": ((PROTOCOL_TCP,), False),
    "egp": ((PROTOCOL_EGP,), True),
    "igp": ((PROTOCOL_IGP,), True),
    "udp": ((PROTOCOL_UDP,), False),
    "gre": ((PROTOCOL_GRE,), True),
    "esp": ((PROTOCOL_ESP,), True),
    "ah": ((PROTOCOL_AH,), True),
    "sctp": ((PROTOCOL_SCTP,), False),
    "icmp": ((PROTOCOL_ICMP, PROTOCOL_IPV6_ICMP), True),
}

_INTEGER = re.compile(r"[+-]?[0-9]+")
_DIGITS = re.compile(r"[0-9]+")
_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9\-.]+")
_LABEL_MAX_LENGTH = 63

_DURATION_UNITS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_PART = re.compile(r"([0-9]*)(?:\.([0-9]*))?([^0-9.]*)")
_MAX_DURATION_NS = 2**63 - 1


def load_policy_file(path: Union[str, Path]) -> ACLPolicy:
    """Read a policy from a YAML (.yml/.yaml) or HuJSON file."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix in (".yml", ".yaml"):
        try:
            raw = yaml.safe_load(text)
        except yaml.YAMLError as err:
            raise PolicyError(f"invalid YAML policy: {err}") from err
        if isinstance(raw, dict) and raw.get("hosts") is not None:
            raw = dict(raw)
            raw["hosts"] = parse_hosts_yaml(yaml.safe_dump(raw["hosts"]))
    else:
        try:
            raw = json.loads(standardize_hujson(text))
        except json.JSONDecodeError as err:
            raise PolicyError(f"invalid HuJSON policy: {err}") from err
    policy = ACLPolicy.from_dict(raw)
    if policy.is_zero():
        raise EmptyPolicyError("empty policy")
    return policy


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as '1h30m', '1.5s' or '-2m'."""
    original = text
    sign = 1
    if text[:1] in ("+", "-"):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise PolicyError(f"invalid duration {original!r}")
    total = Fraction(0)
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        whole, frac, unit = match.group(1), match.group(2), match.group(3)
        if not whole and not frac:
            raise PolicyError(f"invalid duration {original!r}")
        if not unit:
            raise PolicyError(f"missing unit in duration {original!r}")
        if unit not in _DURATION_UNITS:
            raise PolicyError(f"unknown unit {unit!r} in duration {original!r}")
        value = Fraction(int(whole or "0"))
        if frac:
            value += Fraction(int(frac), 10 ** len(frac))
        total += value * _DURATION_UNITS[unit]
        pos = match.end()
    nanoseconds = int(total)
    if nanoseconds > _MAX_DURATION_NS:
        raise PolicyError(f"invalid duration {original!r}")
    return timedelta(microseconds=sign * (nanoseconds // 1000))


def parse_protocol(protocol: str) -> tuple[list[int], bool]:
    """Return the IP protocol numbers for a proto field and whether ports must be '*'."""
    known = _PROTOCOLS.get(protocol)
    if known is not None:
        return list(known[0]), known[1]
    if not _INTEGER.fullmatch(protocol):
        raise PolicyError(f"unknown protocol {protocol!r}")
    number = int(protocol)
    needs_wildcard = number not in (PROTOCOL_TCP, PROTOCOL_UDP, PROTOCOL_SCTP)
    return [number], needs_wildcard


def _parse_port(text: str) -> int:
    if not _DIGITS.fullmatch(text):
        raise PolicyError(f"invalid port {text!r}")
    value = int(text)
    if value > PORT_RANGE_END:
        raise PolicyError(f"port {text!r} out of range")
    return value


def expand_ports(ports_str: str, needs_wildcard: bool) -> list[PortRange]:
    """Expand a port specification such as '*', '22' or '80-1024,443'."""
    if ports_str == "*":
        return [PortRange(PORT_RANGE_BEGIN, PORT_RANGE_END)]
    if needs_wildcard:
        raise WildcardRequiredError("wildcard as port is required for the protocol")
    ports: list[PortRange] = []
    for item in ports_str.split(","):
        bounds = item.split("-")
        if len(bounds) == 1:
            port = _parse_port(bounds[0])
            ports.append(PortRange(port, port))
        elif len(bounds) == 2:
            ports.append(PortRange(_parse_port(bounds[0]), _parse_port(bounds[1])))
        else:
            raise InvalidPortFormatError(f"invalid port format {item!r}")
    return ports


def filter_machines_by_user(machines: Iterable[Machine], user: str) -> list[Machine]:
    """Return the machines owned by the named user."""
    return [machine for machine in machines if machine.user.name == user]


def normalize_to_fqdn_rules(name: str, strip_email_domain: bool) -> str:
    """Turn a user name or e-mail address into a DNS-safe name."""
    name = name.lower().replace("'", "")
    at = name.find("@")
    if strip_email_domain and at > 0:
        name = name[:at]
    else:
        name = name.replace("@", ".")
    name = _INVALID_NAME_CHARS.sub("-", name)
    for label in name.split("."):
        if len(label) > _LABEL_MAX_LENGTH:
            raise PolicyError(f"label {label!r} is longer than {_LABEL_MAX_LENGTH} characters")
    return name


def expand_group(policy: ACLPolicy, group: str, strip_email_domain: bool) -> list[str]:
    """Return the normalized users of a group; groups may not nest."""
    members = policy.groups.get(group)
    if members is None:
        raise InvalidGroupError(f"group {group} isn't registered")
    users: list[str] = []
    for member in members:
        if member.startswith("group:"):
            raise InvalidGroupError("a group cannot be composed of groups")
        try:
            users.append(normalize_to_fqdn_rules(member, strip_email_domain))
        except PolicyError as err:
            raise InvalidGroupError(f"failed to normalize group member {member!r}") from err
    return users


def expand_tag_owners(policy: ACLPolicy, tag: str, strip_email_domain: bool) -> list[str]:
    """Return the users owning a tag, expanding owner groups."""
    owners = policy.tag_owners.get(tag)
    if owners is None:
        raise InvalidTagError(f"{tag} isn't owned by a TagOwner, please add one first")
    users: list[str] = []
    for owner in owners:
        if owner.startswith("group:"):
            users.extend(expand_group(policy, owner, strip_email_domain))
        else:
            users.append(owner)
    return users


def exclude_correctly_tagged_nodes(
    policy: ACLPolicy,
    nodes: Sequence[Machine],
    user: str,
    strip_email_domain: bool,
) -> list[Machine]:
    """Drop the nodes that carry a known tag or any forced tag."""
    tags = set(policy.tag_owners)
    return [
        machine
        for machine in nodes
        if not machine.forced_tags
        and not any(tag in tags for tag in machine.host_info.request_tags)
    ]


def _parse_cidr(text: str) -> Optional[str]:
    addr_text, sep, bits_text = text.rpartition("/")
    if not sep or "%" in addr_text or not _DIGITS.fullmatch(bits_text):
        return None
    try:
        address = ipaddress.ip_address(addr_text)
    except ValueError:
        return None
    bits = int(bits_text)
    if bits > address.max_prefixlen:
        return None
    return str(ipaddress.ip_interface((address, bits)))


def expand_alias(
    machines: Sequence[Machine],
    policy: ACLPolicy,
    alias: str,
    strip_email_domain: bool,
) -> list[str]:
    """Resolve a wildcard, group, tag, user, host, address or CIDR to addresses."""
    if alias == "*":
        return ["*"]
    log.debug("expanding alias %s", alias)
    ips: list[str] = []

    if alias.startswith("group:"):
        for user in expand_group(policy, alias, strip_email_domain):
            for machine in filter_machines_by_user(machines, user):
                ips.extend(machine.ip_strings())
        return ips

    if alias.startswith("tag:"):
        for machine in machines:
            if alias in machine.forced_tags:
                ips.extend(machine.ip_strings())
        try:
            owners = expand_tag_owners(policy, alias, strip_email_domain)
        except InvalidTagError as err:
            if not ips:
                raise InvalidTagError(
                    f"{alias} isn't owned by a TagOwner and no forced tags are defined"
                ) from err
            return ips
        for owner in owners:
            for machine in filter_machines_by_user(machines, owner):
                if alias in machine.host_info.request_tags:
                    ips.extend(machine.ip_strings())
        return ips

    nodes = filter_machines_by_user(machines, alias)
    nodes = exclude_correctly_tagged_nodes(policy, nodes, alias, strip_email_domain)
    for node in nodes:
        ips.extend(node.ip_strings())
    if ips:
        return ips

    if alias in policy.hosts:
        return [str(policy.hosts[alias])]

    try:
        return [str(ipaddress.ip_address(alias))]
    except ValueError:
        pass

    cidr = _parse_cidr(alias)
    if cidr is not None:
        return [cidr]

    log.warning("no IPs found with the alias %s", alias)
    return ips


def generate_acl_policy_dest(
    machines: Sequence[Machine],
    policy: ACLPolicy,
    dest: str,
    needs_wildcard: bool,
    strip_email_domain: bool,
) -> list[NetPortRange]:
    """Expand a destination such as 'tag:web:80,443' into address/port pairs."""
    tokens = dest.split(":")
    if not 2 <= len(tokens) <= 3:
        raise InvalidPortFormatError(f"invalid destination {dest!r}")
    alias = tokens[0] if len(tokens) == 2 else f"{tokens[0]}:{tokens[1]}"
    expanded = expand_alias(machines, policy, alias, strip_email_domain)
    ports = expand_ports(tokens[-1], needs_wildcard)
    return [NetPortRange(ip, port) for ip in expanded for port in ports]


def generate_acl_rules(
    machines: Sequence[Machine],
    policy: ACLPolicy,
    strip_email_domain: bool,
) -> list[FilterRule]:
    """Build the packet filter rules for every ACL of the policy."""
    rules: list[FilterRule] = []
    for index, acl in enumerate(policy.acls):
        if acl.action != "accept":
            raise InvalidActionError(f"invalid action {acl.action!r} in ACL {index}")
        src_ips: list[str] = []
        for src in acl.sources:
            src_ips.extend(expand_alias(machines, policy, src, strip_email_domain))
        protocols, needs_wildcard = parse_protocol(acl.protocol)
        dst_ports: list[NetPortRange] = []
        for dest in acl.destinations:
            dst_ports.extend(
                generate_acl_policy_dest(
                    machines, policy, dest, needs_wildcard, strip_email_domain
                )
            )
        rules.append(FilterRule(src_ips=src_ips, dst_ports=dst_ports, ip_proto=protocols))
    return rules


def ssh_check_action(duration: str) -> SSHAction:
    """Return an accepting action whose session lasts for the given duration."""
    return replace(_ACCEPT_ACTION, session_duration=parse_duration(duration))


def generate_ssh_rules(
    machines: Sequence[Machine],
    policy: ACLPolicy,
    strip_email_domain: bool,
) -> list[SSHRule]:
    """Build the SSH rules of the policy."""
    rules: list[SSHRule] = []
    for index, ssh in enumerate(policy.ssh):
        if ssh.action == "accept":
            action = replace(_ACCEPT_ACTION)
        elif ssh.action == "check":
            try:
                action = ssh_check_action(ssh.check_period)
            except PolicyError:
                log.error(
                    "SSH rule %d has a check action with unparsable duration %r",
                    index,
                    ssh.check_period,
                )
                action = replace(_REJECT_ACTION)
        else:
            log.error("SSH rule %d has unknown action %r", index, ssh.action)
            return []
        principals = [
            SSHPrincipal(node_ip=ip)
            for src in ssh.sources
            for ip in expand_alias(machines, policy, src, strip_email_domain)
        ]
        rules.append(
            SSHRule(
                principals=principals,
                ssh_users={user: "=" for user in ssh.users},
                action=action,
            )
        )
    return rules


def _allow_all() -> list[FilterRule]:
    return [
        FilterRule(
            src_ips=["*"],
            dst_ports=[NetPortRange("*", PortRange(PORT_RANGE_BEGIN, PORT_RANGE_END))],
        )
    ]


_TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_VALUES = {"", "0", "f", "F", "FALSE", "false", "False"}


def _env_flag(name: str) -> bool:
    value = os.environ.get(name, "")
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean value {value!r} for {name}")


class ACLManager:
    """Holds the active policy and the rules generated from it."""

    def __init__(
        self,
        list_machines: Callable[[], Iterable[Machine]],
        strip_email_domain: bool = False,
        enable_ssh: Optional[bool] = None,
    ) -> None:
        self._list_machines = list_machines
        self.strip_email_domain = strip_email_domain
        self.enable_ssh = enable_ssh
        self.policy: Optional[ACLPolicy] = None
        self.acl_rules: list[FilterRule] = _allow_all()
        self.ssh_rules: Optional[list[SSHRule]] = None

    def _ssh_enabled(self) -> bool:
        if self.enable_ssh is not None:
            return self.enable_ssh
        return _env_flag(SSH_FEATURE_ENV)

    def load_acl_policy(self, path: Union[str, Path]) -> None:
        """Load a policy file and regenerate the rules."""
        log.debug("loading ACL policy from %s", path)
        self.policy = load_policy_file(path)
        self.update_acl_rules()

    def update_acl_rules(self) -> None:
        """Regenerate the filter (and, when enabled, SSH) rules from the policy."""
        machines = list(self._list_machines())
        if self.policy is None:
            raise EmptyPolicyError("empty policy")
        self.acl_rules = generate_acl_rules(machines, self.policy, self.strip_email_domain)
        if self._ssh_enabled():
            self.ssh_rules = generate_ssh_rules(
                machines, self.policy, self.strip_email_domain
            )
        elif self.policy.ssh:
            log.info(
                "SSH ACLs have been defined, but %s is not enabled; "
                "this is an unstable feature",
                SSH_FEATURE_ENV,
            )