"""In-memory registry of namespaces, pre-auth keys and machines."""

from __future__ import annotations

import copy
import ipaddress
import secrets
import threading
from dataclasses import fields
from datetime import datetime, timezone
from typing import Iterable, Sequence

from tailnest.models import (
    FilterRule,
    IPAddress,
    IPNetwork,
    Machine,
    Namespace,
    PreAuthKey,
    filter_peers_by_acl,
)
from tailnest.naming import check_for_fqdn_rules

DEFAULT_PREFIXES = ("100.64.0.0/10", "fd7a:115c:a1e0::/48")
PREAUTH_KEY_BYTES = 24
NODE_KEY_PREFIX = "nodekey:"
MACHINE_KEY_PREFIX = "mkey:"

_ZERO_TIME = datetime.min.replace(tzinfo=timezone.utc)

__all__ = [
    "DEFAULT_PREFIXES",
    "DifferentRegisteredNamespace",
    "InvalidACLTag",
    "MachineNotFound",
    "NamespaceExists",
    "NamespaceMismatch",
    "NamespaceNotEmpty",
    "NamespaceNotFound",
    "PreAuthKeyExpired",
    "PreAuthKeyNotFound",
    "PreAuthKeyUsed",
    "Registry",
    "RegistryError",
    "RouteNotAvailable",
]


class RegistryError(Exception):
    """Base class for registry failures."""


class NamespaceExists(RegistryError):
    """A namespace with that name already exists."""


class NamespaceNotFound(RegistryError, LookupError):
    """No namespace has that name."""


class NamespaceNotEmpty(RegistryError):
    """The namespace still holds machines."""


class PreAuthKeyNotFound(RegistryError, LookupError):
    """No pre-auth key has that value."""


class PreAuthKeyExpired(RegistryError):
    """The pre-auth key is past its expiration."""


class PreAuthKeyUsed(RegistryError):
    """A single-use pre-auth key has already been used."""


class NamespaceMismatch(RegistryError):
    """The pre-auth key belongs to another namespace."""


class InvalidACLTag(RegistryError, ValueError):
    """An ACL tag does not begin with ``tag:``."""


class MachineNotFound(RegistryError, LookupError):
    """No machine matches the lookup."""


class RouteNotAvailable(RegistryError):
    """The route is not advertised by the machine."""


class DifferentRegisteredNamespace(RegistryError):
    """The machine was previously registered with a different namespace."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _strip_prefix(value: str, prefix: str) -> str:
    return value[len(prefix):] if value.startswith(prefix) else value


def _next_id(table: dict) -> int:
    return max(table, default=0) + 1


class Registry:
    """Keeps namespaces, pre-auth keys and machines, with database-like semantics.

    Objects handed out are copies; changes reach the registry only through
    the registry's own methods.
    """

    def __init__(self, prefixes: Iterable[str] | None = None) -> None:
        self._prefixes = [
            ipaddress.ip_network(prefix)
            for prefix in (DEFAULT_PREFIXES if prefixes is None else prefixes)
        ]
        self._namespaces: dict[int, Namespace] = {}
        self._keys: dict[int, PreAuthKey] = {}
        self._machines: dict[int, Machine] = {}
        self._registration_cache: dict[str, Machine] = {}
        self._ip_allocation_lock = threading.Lock()
        self._last_state_change = _ZERO_TIME
        self._closed = False

    def __enter__(self) -> "Registry":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Drop all records; further use raises RegistryError."""
        self._namespaces.clear()
        self._keys.clear()
        self._machines.clear()
        self._registration_cache.clear()
        self._closed = True

    @property
    def last_state_change(self) -> datetime:
        return self._last_state_change

    def _ensure_open(self) -> None:
        if self._closed:
            raise RegistryError("registry is closed")

    def _mark_state_change(self) -> None:
        self._last_state_change = _now()

    # Namespaces

    def create_namespace(self, name: str) -> Namespace:
        self._ensure_open()
        check_for_fqdn_rules(name)
        if self._find_namespace(name) is not None:
            raise NamespaceExists("Namespace already exists")
        now = _now()
        namespace = Namespace(
            id=_next_id(self._namespaces), name=name, created_at=now, updated_at=now
        )
        self._namespaces[namespace.id] = copy.deepcopy(namespace)
        return namespace

    def destroy_namespace(self, name: str) -> None:
        self._ensure_open()
        namespace = self.get_namespace(name)
        if self.list_machines_in_namespace(name):
            raise NamespaceNotEmpty("Namespace not empty: node(s) found")
        for pak in self.list_preauth_keys(name):
            self.destroy_preauth_key(pak)
        del self._namespaces[namespace.id]

    def rename_namespace(self, old_name: str, new_name: str) -> None:
        self._ensure_open()
        namespace = self.get_namespace(old_name)
        check_for_fqdn_rules(new_name)
        if self._find_namespace(new_name) is not None:
            raise NamespaceExists("Namespace already exists")
        stored = self._namespaces[namespace.id]
        stored.name = new_name
        stored.updated_at = _now()

    def _find_namespace(self, name: str) -> Namespace | None:
        return next((ns for ns in self._namespaces.values() if ns.name == name), None)

    def get_namespace(self, name: str) -> Namespace:
        self._ensure_open()
        namespace = self._find_namespace(name)
        if namespace is None:
            raise NamespaceNotFound("Namespace not found")
        return copy.deepcopy(namespace)

    def list_namespaces(self) -> list[Namespace]:
        self._ensure_open()
        return [copy.deepcopy(self._namespaces[i]) for i in sorted(self._namespaces)]

    def list_namespace_names(self) -> list[str]:
        return [namespace.name for namespace in self.list_namespaces()]

    def list_machines_in_namespace(self, name: str) -> list[Machine]:
        self._ensure_open()
        check_for_fqdn_rules(name)
        namespace = self.get_namespace(name)
        return [m for m in self.list_machines() if m.namespace_id == namespace.id]

    def set_machine_namespace(self, machine: Machine, namespace_name: str) -> Machine:
        self._ensure_open()
        check_for_fqdn_rules(namespace_name)
        namespace = self.get_namespace(namespace_name)
        machine.namespace = namespace
        machine.namespace_id = namespace.id
        return self.save_machine(machine)

    # Pre-auth keys

    def _load_key(self, row: PreAuthKey) -> PreAuthKey:
        pak = copy.deepcopy(row)
        stored_namespace = self._namespaces.get(pak.namespace_id)
        pak.namespace = copy.deepcopy(stored_namespace) if stored_namespace else Namespace()
        return pak

    def _store_key(self, pak: PreAuthKey) -> None:
        row = copy.deepcopy(pak)
        row.namespace = Namespace()
        self._keys[row.id] = row

    def create_preauth_key(
        self,
        namespace_name: str,
        reusable: bool = False,
        ephemeral: bool = False,
        expiration: datetime | None = None,
        acl_tags: Sequence[str] | None = None,
    ) -> PreAuthKey:
        self._ensure_open()
        namespace = self.get_namespace(namespace_name)
        tags = list(acl_tags or ())
        for tag in tags:
            if not tag.startswith("tag:"):
                raise InvalidACLTag(
                    f"AuthKey tag is invalid: '{tag}' did not begin with 'tag:'"
                )
        pak = PreAuthKey(
            id=_next_id(self._keys),
            key=secrets.token_hex(PREAUTH_KEY_BYTES),
            namespace_id=namespace.id,
            namespace=namespace,
            reusable=reusable,
            ephemeral=ephemeral,
            acl_tags=list(dict.fromkeys(tags)),
            created_at=_now(),
            expiration=expiration,
        )
        self._store_key(pak)
        return pak

    def list_preauth_keys(self, namespace_name: str) -> list[PreAuthKey]:
        self._ensure_open()
        namespace = self.get_namespace(namespace_name)
        return [
            self._load_key(self._keys[i])
            for i in sorted(self._keys)
            if self._keys[i].namespace_id == namespace.id
        ]

    def get_preauth_key(self, namespace_name: str, key: str) -> PreAuthKey:
        pak = self.check_key_validity(key)
        if pak.namespace.name != namespace_name:
            raise NamespaceMismatch("namespace mismatch")
        return pak

    def destroy_preauth_key(self, pak: PreAuthKey) -> None:
        self._ensure_open()
        self._keys.pop(pak.id, None)

    def expire_preauth_key(self, pak: PreAuthKey) -> PreAuthKey:
        self._ensure_open()
        pak.expiration = _now()
        stored = self._keys.get(pak.id)
        if stored is not None:
            stored.expiration = pak.expiration
        return pak

    def use_preauth_key(self, pak: PreAuthKey) -> PreAuthKey:
        self._ensure_open()
        pak.used = True
        self._store_key(pak)
        return pak

    def check_key_validity(self, key: str) -> PreAuthKey:
        """Return the pre-auth key if it may be used to register a machine."""
        self._ensure_open()
        row = next((k for k in self._keys.values() if k.key == key), None)
        if row is None:
            raise PreAuthKeyNotFound("AuthKey not found")
        pak = self._load_key(row)
        if pak.expiration is not None and _utc(pak.expiration) < _now():
            raise PreAuthKeyExpired("AuthKey expired")
        if pak.reusable or pak.ephemeral:
            return pak
        in_use = any(
            m.auth_key_id == pak.id and m.deleted_at is None
            for m in self._machines.values()
        )
        if in_use or pak.used:
            raise PreAuthKeyUsed("AuthKey has already been used")
        return pak

    # Machines

    def _load_machine(self, row: Machine) -> Machine:
        machine = copy.deepcopy(row)
        stored_namespace = self._namespaces.get(machine.namespace_id)
        machine.namespace = (
            copy.deepcopy(stored_namespace) if stored_namespace else Namespace()
        )
        key_row = self._keys.get(machine.auth_key_id)
        machine.auth_key = self._load_key(key_row) if key_row else None
        return machine

    def _live_rows(self) -> list[Machine]:
        return [
            self._machines[i]
            for i in sorted(self._machines)
            if self._machines[i].deleted_at is None
        ]

    def _live_row(self, machine_id: int) -> Machine:
        row = self._machines.get(machine_id)
        if row is None or row.deleted_at is not None:
            raise MachineNotFound("machine not found")
        return row

    def save_machine(self, machine: Machine) -> Machine:
        """Insert or update ``machine``; a zero id gets the next free id."""
        self._ensure_open()
        now = _now()
        if machine.id == 0:
            machine.id = _next_id(self._machines)
        if machine.created_at is None:
            machine.created_at = now
        machine.updated_at = now
        row = copy.deepcopy(machine)
        row.namespace = Namespace()
        row.auth_key = None
        self._machines[row.id] = row
        stored_namespace = self._namespaces.get(machine.namespace_id)
        if stored_namespace is not None:
            machine.namespace = copy.deepcopy(stored_namespace)
        return machine

    def list_machines(self) -> list[Machine]:
        self._ensure_open()
        return [self._load_machine(row) for row in self._live_rows()]

    def list_peers(self, machine: Machine) -> list[Machine]:
        """All machines other than ``machine`` (by node key), sorted by id."""
        return [m for m in self.list_machines() if m.node_key != machine.node_key]

    def get_peers(
        self, machine: Machine, rules: Sequence[FilterRule] | None = None
    ) -> list[Machine]:
        """Peers filtered by ACL rules when given, otherwise every other machine."""
        if rules is not None:
            peers = filter_peers_by_acl(self.list_machines(), rules, machine)
        else:
            peers = self.list_peers(machine)
        return sorted(peers, key=lambda m: m.id)

    def get_valid_peers(
        self, machine: Machine, rules: Sequence[FilterRule] | None = None
    ) -> list[Machine]:
        return [peer for peer in self.get_peers(machine, rules) if not peer.is_expired()]

    def get_machine(self, namespace_name: str, hostname: str) -> Machine:
        for machine in self.list_machines_in_namespace(namespace_name):
            if machine.hostname == hostname:
                return machine
        raise MachineNotFound("machine not found")

    def get_machine_by_id(self, machine_id: int) -> Machine:
        self._ensure_open()
        return self._load_machine(self._live_row(machine_id))

    def _first_machine_where(self, predicate) -> Machine:
        self._ensure_open()
        for row in self._live_rows():
            if predicate(row):
                return self._load_machine(row)
        raise MachineNotFound("machine not found")

    def get_machine_by_machine_key(self, machine_key: str) -> Machine:
        wanted = _strip_prefix(machine_key, MACHINE_KEY_PREFIX)
        return self._first_machine_where(lambda row: row.machine_key == wanted)

    def get_machine_by_node_key(self, node_key: str) -> Machine:
        wanted = _strip_prefix(node_key, NODE_KEY_PREFIX)
        return self._first_machine_where(lambda row: row.node_key == wanted)

    def get_machine_by_any_node_key(self, node_key: str, old_node_key: str) -> Machine:
        wanted = {
            _strip_prefix(node_key, NODE_KEY_PREFIX),
            _strip_prefix(old_node_key, NODE_KEY_PREFIX),
        }
        return self._first_machine_where(lambda row: row.node_key in wanted)

    def reload_machine(self, machine: Machine) -> Machine:
        """Refresh ``machine`` in place with what the registry holds for it."""
        fresh = self.get_machine_by_id(machine.id)
        for item in fields(Machine):
            setattr(machine, item.name, getattr(fresh, item.name))
        return machine

    def set_tags(self, machine: Machine, tags: Iterable[str]) -> Machine:
        machine.forced_tags = list(dict.fromkeys(tags))
        self._mark_state_change()
        return self.save_machine(machine)

    def expire_machine(self, machine: Machine) -> Machine:
        machine.expiry = _now()
        self._mark_state_change()
        return self.save_machine(machine)

    def rename_machine(self, machine: Machine, new_name: str) -> Machine:
        check_for_fqdn_rules(new_name)
        machine.given_name = new_name
        self._mark_state_change()
        return self.save_machine(machine)

    def refresh_machine(self, machine: Machine, expiry: datetime) -> Machine:
        machine.last_successful_update = _now()
        machine.expiry = expiry
        self._mark_state_change()
        return self.save_machine(machine)

    def delete_machine(self, machine: Machine) -> None:
        """Soft delete: the machine disappears from every lookup."""
        self._ensure_open()
        row = self._live_row(machine.id)
        row.deleted_at = _now()
        machine.deleted_at = row.deleted_at

    def hard_delete_machine(self, machine: Machine) -> None:
        self._ensure_open()
        if self._machines.pop(machine.id, None) is None:
            raise MachineNotFound("machine not found")

    def touch_machine(self, machine: Machine) -> None:
        """Persist only the set ``last_seen`` and ``last_successful_update`` fields."""
        self._ensure_open()
        row = self._live_row(machine.id)
        if machine.last_seen is not None:
            row.last_seen = machine.last_seen
        if machine.last_successful_update is not None:
            row.last_successful_update = machine.last_successful_update

    def is_outdated(self, machine: Machine) -> bool:
        """Whether the registry changed since the machine last got an update."""
        try:
            self.reload_machine(machine)
        except RegistryError:
            return True
        last_update = machine.last_successful_update or machine.created_at or _ZERO_TIME
        return _utc(last_update) < self._last_state_change

    def enable_routes(self, machine: Machine, *args: str) -> Machine:
        """Replace the enabled routes; each must be advertised by the machine."""
        new_routes: list[IPNetwork] = [
            ipaddress.ip_network(route, strict=False) for route in args
        ]
        for route in new_routes:
            if route not in machine.advertised_routes:
                raise RouteNotAvailable(
                    f"route ({route}) is not available on node {machine.hostname}: "
                    "route is not available on machine"
                )
        machine.enabled_routes = new_routes
        return self.save_machine(machine)

    # Registration

    def _available_ips(self) -> list[IPAddress]:
        used = {addr for row in self._live_rows() for addr in row.ip_addresses}
        chosen: list[IPAddress] = []
        for prefix in self._prefixes:
            address = next((ip for ip in prefix.hosts() if ip not in used), None)
            if address is None:
                raise RegistryError(f"no available IP addresses in {prefix}")
            chosen.append(address)
        return chosen

    def register_machine(self, machine: Machine) -> Machine:
        """Give the machine one free address per prefix and store it."""
        self._ensure_open()
        with self._ip_allocation_lock:
            machine.ip_addresses = self._available_ips()
            return self.save_machine(machine)

    def cache_registration(self, node_key: str, machine: Machine) -> None:
        """Hold a pending machine until its owner completes authentication."""
        self._ensure_open()
        self._registration_cache[node_key] = copy.deepcopy(machine)

    def register_from_auth_callback(
        self, node_key: str, namespace_name: str, method: str
    ) -> Machine:
        self._ensure_open()
        pending = self._registration_cache.get(node_key)
        if pending is None:
            raise MachineNotFound("machine not found in registration cache")
        namespace = self.get_namespace(namespace_name)
        if pending.id != 0 and pending.namespace_id != namespace.id:
            raise DifferentRegisteredNamespace(
                "machine was previously registered with a different namespace"
            )
        machine = copy.deepcopy(pending)
        machine.namespace_id = namespace.id
        machine.register_method = method
        registered = self.register_machine(machine)
        del self._registration_cache[node_key]
        return registered