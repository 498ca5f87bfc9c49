"""Domain objects for namespaces, pre-auth keys and machines, plus peer filtering."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

EXIT_ROUTE_V4 = ipaddress.ip_network("0.0.0.0/0")
EXIT_ROUTE_V6 = ipaddress.ip_network("::/0")

__all__ = [
    "EXIT_ROUTE_V4",
    "EXIT_ROUTE_V6",
    "FilterRule",
    "Machine",
    "Namespace",
    "PreAuthKey",
    "UserProfile",
    "describe_machines",
    "filter_peers_by_acl",
    "format_addresses",
    "parse_addresses",
    "user_profiles",
]


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _is_zero_time(moment: datetime) -> bool:
    return moment.replace(tzinfo=None) == datetime.min


def _iso(moment: datetime | None) -> str | None:
    return None if moment is None else _as_utc(moment).isoformat()


def parse_addresses(value: str) -> list[IPAddress]:
    """Parse a comma separated list of IP addresses, skipping empty entries."""
    if not isinstance(value, str):
        raise TypeError(
            "failed to parse machine addresses: unexpected data type "
            f"{type(value).__name__}"
        )
    return [ipaddress.ip_address(part) for part in value.split(",") if part]


def format_addresses(addresses: Iterable[IPAddress]) -> str:
    """Serialise addresses as a comma separated string."""
    return ",".join(str(address) for address in addresses)


def _parse_route(route: str | IPNetwork) -> IPNetwork:
    if isinstance(route, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return route
    return ipaddress.ip_network(route, strict=False)


@dataclass
class Namespace:
    """A group of machines, the equivalent of a user."""

    id: int = 0
    name: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "name": self.name,
            "created_at": _iso(self.created_at),
        }


@dataclass
class PreAuthKey:
    """A pre-authorization key usable in one namespace."""

    id: int = 0
    key: str = ""
    namespace_id: int = 0
    namespace: Namespace = field(default_factory=Namespace)
    reusable: bool = False
    ephemeral: bool = False
    used: bool = False
    acl_tags: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    expiration: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.namespace.name,
            "id": str(self.id),
            "key": self.key,
            "ephemeral": self.ephemeral,
            "reusable": self.reusable,
            "used": self.used,
            "acl_tags": list(self.acl_tags),
            "expiration": _iso(self.expiration),
            "created_at": _iso(self.created_at),
        }


@dataclass
class Machine:
    """A client node registered with the control server."""

    id: int = 0
    machine_key: str = ""
    node_key: str = ""
    disco_key: str = ""
    ip_addresses: list[IPAddress] = field(default_factory=list)
    hostname: str = ""
    given_name: str = ""
    namespace_id: int = 0
    namespace: Namespace = field(default_factory=Namespace)
    register_method: str = ""
    forced_tags: list[str] = field(default_factory=list)
    auth_key_id: int = 0
    auth_key: PreAuthKey | None = None
    last_seen: datetime | None = None
    last_successful_update: datetime | None = None
    expiry: datetime | None = None
    request_tags: list[str] = field(default_factory=list)
    advertised_routes: list[IPNetwork] = field(default_factory=list)
    endpoints: list[str] = field(default_factory=list)
    enabled_routes: list[IPNetwork] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    def __str__(self) -> str:
        return self.hostname

    @property
    def address_strings(self) -> list[str]:
        return [str(address) for address in self.ip_addresses]

    def is_expired(self, now: datetime | None = None) -> bool:
        """Whether the registration has expired; an unset expiry never expires."""
        if self.expiry is None or _is_zero_time(self.expiry):
            return False
        current = datetime.now(timezone.utc) if now is None else _as_utc(now)
        return current > _as_utc(self.expiry)

    def is_route_enabled(self, route: str) -> bool:
        """Whether ``route`` parses as a prefix and is among the enabled routes."""
        try:
            prefix = _parse_route(route)
        except ValueError:
            return False
        return prefix in self.enabled_routes

    def routes(self) -> dict[str, list[str]]:
        return {
            "advertised_routes": [str(r) for r in self.advertised_routes],
            "enabled_routes": [str(r) for r in self.enabled_routes],
        }

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "machine_key": self.machine_key,
            "node_key": self.node_key,
            "disco_key": self.disco_key,
            "ip_addresses": self.address_strings,
            "name": self.hostname,
            "given_name": self.given_name,
            "namespace": self.namespace.to_dict(),
            "forced_tags": list(self.forced_tags),
            "created_at": _iso(self.created_at),
            "pre_auth_key": None,
            "last_seen": _iso(self.last_seen),
            "last_successful_update": _iso(self.last_successful_update),
            "expiry": _iso(self.expiry),
        }
        if self.auth_key is not None:
            result["pre_auth_key"] = self.auth_key.to_dict()
        return result


@dataclass
class FilterRule:
    """A compiled ACL rule: source addresses and destination addresses."""

    src_ips: list[str] = field(default_factory=list)
    dst_ips: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class UserProfile:
    id: int
    login_name: str
    display_name: str


def describe_machines(machines: Sequence[Machine]) -> str:
    """Render hostnames as ``[ a, b ](2)``."""
    names = [machine.hostname for machine in machines]
    return f"[ {', '.join(names)} ]({len(names)})"


def _contains_any(inputs: Sequence[str], addresses: Iterable[str]) -> bool:
    return any(address in inputs for address in addresses)


def _rule_matches(rule: FilterRule, sources: Sequence[str], destinations: Sequence[str]) -> bool:
    return _contains_any(rule.src_ips, sources) and _contains_any(
        rule.dst_ips, destinations
    )


def filter_peers_by_acl(
    machines: Iterable[Machine], rules: Sequence[FilterRule], machine: Machine
) -> list[Machine]:
    """Return the peers ``machine`` may see under ``rules``, sorted by id."""
    own = machine.address_strings
    wildcard = ["*"]
    peers: dict[int, Machine] = {}
    for peer in machines:
        if peer.id == machine.id:
            continue
        theirs = peer.address_strings
        for rule in rules:
            if (
                _rule_matches(rule, own, theirs)
                or _rule_matches(rule, theirs, own)
                or _rule_matches(rule, own, wildcard)
                or _rule_matches(rule, wildcard, wildcard)
                or _rule_matches(rule, wildcard, theirs)
                or _rule_matches(rule, wildcard, own)
            ):
                peers[peer.id] = peer
    return sorted(peers.values(), key=lambda m: m.id)


def user_profiles(machine: Machine, peers: Iterable[Machine]) -> list[UserProfile]:
    """One profile per distinct namespace among the machine and its peers."""
    namespaces: dict[str, Namespace] = {machine.namespace.name: machine.namespace}
    for peer in peers:
        namespaces[peer.namespace.name] = peer.namespace
    return [
        UserProfile(id=ns.id, login_name=ns.name, display_name=ns.name)
        for ns in namespaces.values()
    ]