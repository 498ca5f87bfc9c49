# tailnest

`tailnest` is the bookkeeping core of a coordination server for a mesh VPN.
It keeps namespaces (the groups machines belong to), pre-authentication
keys and registered machines. It works out which peers a machine may see
under a set of ACL filter rules, drives an OpenID Connect browser login up
to machine registration, and renders client configuration documents for
Windows and Apple clients.

It uses only the standard library.

## Installation

```
pip install tailnest
```

To run the tests:

```
pip install "tailnest[test]"
pytest
```

## DNS-safe names (`tailnest.naming`)

Namespace and machine names end up in DNS. They must be lowercase, use only
`a-z`, `0-9`, `-` and `.`, and each label is at most 63 bytes.

```python
from tailnest.naming import (
    InvalidNamespaceName,
    check_for_fqdn_rules,
    generate_given_name,
    normalize_to_fqdn_rules,
)

normalize_to_fqdn_rules("foo.bar@example.com", False)  # "foo.bar.example.com"
normalize_to_fqdn_rules("foo.bar@example.com", True)   # "foo.bar"
normalize_to_fqdn_rules("Jamie's iPhone 5", False)     # "jamies-iphone-5"

check_for_fqdn_rules("valid-namespace")                # returns the name
try:
    check_for_fqdn_rules("Invalid-CapItaLIzed-namespace")
except InvalidNamespaceName as exc:
    print(exc)

# Normalized name, trimmed if needed, plus "-" and 8 random [a-z0-9] characters.
generate_given_name("testmachine", True)               # e.g. "testmachine-k3x9q0ab"
```

`normalize_to_fqdn_rules` and `generate_given_name` raise
`InvalidNamespaceName` (a `ValueError`) when a label would exceed 63 bytes.

## Models (`tailnest.models`)

Dataclasses `Namespace`, `PreAuthKey`, `Machine`, `FilterRule` (lists of
source and destination address strings, `"*"` meaning any) and the frozen
`UserProfile`. Helpers:

- `parse_addresses("192.0.2.1,2001:db8::1")` and `format_addresses(...)`
  convert between IP address lists and a comma-separated string.
- `filter_peers_by_acl(machines, rules, machine)` returns the other machines
  that `machine` may reach, or that may reach it, under the rules, sorted by
  id.
- `user_profiles(machine, peers)` returns one profile per distinct
  namespace name.
- `describe_machines(machines)` gives `"[ a, b ](2)"`.

A `Machine` has `is_expired(now=None)` (an unset or zero expiry never
expires), `is_route_enabled(route)`, `routes()` and `to_dict()`;
`Namespace` and `PreAuthKey` also have `to_dict()`.

## The registry (`tailnest.store`)

`Registry(prefixes=None)` holds everything in memory. Objects it returns
are copies; changes reach it only through its methods. It is a context
manager, and `close()` drops all records.

```python
from tailnest.models import Machine
from tailnest.store import Registry

with Registry() as registry:
    ns = registry.create_namespace("test")
    pak = registry.create_preauth_key(ns.name, False, False, None, ["tag:web"])
    registry.check_key_validity(pak.key)  # PreAuthKeyExpired, PreAuthKeyUsed, ...

    machine = registry.register_machine(
        Machine(hostname="laptop", node_key="bar", namespace_id=ns.id)
    )
    machine.ip_addresses  # [IPv4Address('100.64.0.1'), IPv6Address('fd7a:115c:a1e0::1')]

    registry.get_machine("test", "laptop")
    registry.list_peers(machine)
```

`register_machine` assigns the first free address in each prefix (by
default `100.64.0.0/10` and `fd7a:115c:a1e0::/48`).

Other operations:

- Namespaces: `rename_namespace`, `destroy_namespace` (also removes the
  namespace's keys; refuses while machines remain), `get_namespace`,
  `list_namespaces`, `list_namespace_names`, `list_machines_in_namespace`,
  `set_machine_namespace`.
- Keys: `list_preauth_keys`, `get_preauth_key`, `destroy_preauth_key`,
  `expire_preauth_key`, `use_preauth_key`.
- Machines: `save_machine`, `list_machines`, `get_machine_by_id`,
  `get_machine_by_machine_key`, `get_machine_by_node_key`,
  `get_machine_by_any_node_key`, `reload_machine`, `set_tags`,
  `expire_machine`, `rename_machine`, `refresh_machine`, `enable_routes`,
  `touch_machine`, `delete_machine` (soft) and `hard_delete_machine`.
- Peers: `get_peers(machine, rules=None)` filters by the given rules, or
  returns every other machine; `get_valid_peers` also drops expired ones.
  `is_outdated(machine)` compares the machine's last update with
  `last_state_change`.
- Login: `cache_registration(node_key, machine)` holds a pending machine;
  `register_from_auth_callback(node_key, namespace_name, method)` registers
  it.

Failures raise subclasses of `RegistryError`: `NamespaceExists`,
`NamespaceNotFound`, `NamespaceNotEmpty`, `PreAuthKeyNotFound`,
`PreAuthKeyExpired`, `PreAuthKeyUsed`, `NamespaceMismatch`, `InvalidACLTag`,
`MachineNotFound`, `RouteNotAvailable`, `DifferentRegisteredNamespace`.

## Client configuration (`tailnest.platform_config`)

```python
from tailnest.platform_config import (
    apple_config_message,
    apple_platform_config,
    windows_config_message,
    windows_registry_config,
)

windows_registry_config("https://vpn.example.com")          # .reg file text
apple_platform_config("https://vpn.example.com", "macos")   # .mobileconfig plist XML
```

The two `*_message` functions return HTML instruction pages.
`apple_platform_config` accepts `"macos"` and `"ios"`; anything else raises
`UnsupportedPlatform`. Content types are given as `HTML_CONTENT_TYPE`,
`WINDOWS_REG_CONTENT_TYPE` and `APPLE_CONFIG_CONTENT_TYPE`.

## OpenID Connect login (`tailnest.oidc`, `tailnest.callback`)

`tailnest.oidc` has `new_state()`, `validate_callback_params`,
`validate_allowed_domains`, `validate_allowed_users`,
`namespace_name_from_claims` and `IDTokenClaims.from_mapping`. Failures
raise `OIDCError`, which carries the client-facing `message` and an HTTP
`status`.

`tailnest.callback.OIDCFlow` connects them to a registry:

```python
from tailnest.callback import OIDCFlow
from tailnest.models import Machine
from tailnest.oidc import IDTokenClaims
from tailnest.store import Registry

node_key = "ab" * 32
with Registry() as registry:
    registry.cache_registration(node_key, Machine(hostname="laptop", node_key=node_key))
    flow = OIDCFlow(registry, allowed_domains=["example.com"])
    state = flow.begin(node_key)
    claims = IDTokenClaims.from_mapping({"email": "alice@example.com"})
    page = flow.complete(state, claims)
    page.verb   # "Authenticated"; the machine is now in namespace "alice"
    page.html   # rendered by render_callback_page
```

A node key must be 64 hex digits, optionally prefixed `nodekey:`. If a
machine with that key already exists, `complete` refreshes it and returns a
"Reauthenticated" page. States expire after `state_ttl` (15 minutes by
default).

## What this package does not do

- It does not store anything durably; the registry lives in memory only.
- It has no HTTP server, routes or command-line tool; the functions return
  values for a caller to serve.
- It does not talk to an OpenID provider: exchanging the code and verifying
  the ID token are left to the caller, who passes in the verified claims.
- It does not compile ACL policies into `FilterRule`s, nor build node maps
  or speak the client control protocol.