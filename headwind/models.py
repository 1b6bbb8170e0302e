"""Core records describing users and the machines they own."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass
class User:
    """A user (namespace) that owns machines."""

    name: str = ""
    id: int = 0


@dataclass
class HostInfo:
    """Information a client reports about the host it runs on."""

    os: str = ""
    hostname: str = ""
    request_tags: list[str] = field(default_factory=list)


@dataclass
class Machine:
    """A node registered in the network."""

    id: int = 0
    machine_key: str = ""
    node_key: str = ""
    disco_key: str = ""
    hostname: str = ""
    given_name: str = ""
    user: User = field(default_factory=User)
    ip_addresses: list[IPAddress] = field(default_factory=list)
    forced_tags: list[str] = field(default_factory=list)
    host_info: HostInfo = field(default_factory=HostInfo)
    register_method: str = ""
    last_seen: Optional[datetime] = None
    expiry: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.ip_addresses = [
            ipaddress.ip_address(addr) if isinstance(addr, str) else addr
            for addr in self.ip_addresses
        ]
        self.forced_tags = list(self.forced_tags)

    def ip_strings(self) -> list[str]:
        """Return the machine's addresses in their canonical text form."""
        return [str(addr) for addr in self.ip_addresses]