"""DNS-safe naming rules for namespaces and machines (RFC 952 / RFC 1123)."""

from __future__ import annotations

import re
import secrets
import string

LABEL_HOSTNAME_LENGTH = 63
"""Longest allowed DNS label, in bytes."""

GIVEN_NAME_HASH_LENGTH = 8
GIVEN_NAME_TRIM_SIZE = 2

_INVALID_CHARS = re.compile(r"[^a-z0-9.\-]+")
_DNS_SAFE_ALPHABET = string.ascii_lowercase + string.digits

__all__ = [
    "GIVEN_NAME_HASH_LENGTH",
    "GIVEN_NAME_TRIM_SIZE",
    "InvalidNamespaceName",
    "LABEL_HOSTNAME_LENGTH",
    "check_for_fqdn_rules",
    "generate_given_name",
    "normalize_to_fqdn_rules",
]


class InvalidNamespaceName(ValueError):
    """A name does not satisfy the DNS label rules."""


def _byte_length(text: str) -> int:
    return len(text.encode("utf-8"))


def normalize_to_fqdn_rules(name: str, strip_email_domain: bool) -> str:
    """Turn an arbitrary name (often an e-mail address) into a DNS-safe name.

    Raises InvalidNamespaceName if any resulting label is longer than 63 bytes.
    """
    name = name.lower().replace("'", "")
    at_index = name.find("@")
    if strip_email_domain and at_index > 0:
        name = name[:at_index]
    else:
        name = name.replace("@", ".")
    name = _INVALID_CHARS.sub("-", name)

    for label in name.split("."):
        if _byte_length(label) > LABEL_HOSTNAME_LENGTH:
            raise InvalidNamespaceName(
                f"label {label} is more than 63 chars: invalid namespace name"
            )
    return name


def check_for_fqdn_rules(name: str) -> str:
    """Validate that ``name`` is a single lowercase DNS segment and return it."""
    if _byte_length(name) > LABEL_HOSTNAME_LENGTH:
        raise InvalidNamespaceName(
            f"DNS segment must not be over 63 chars. {name} doesn't comply "
            "with this rule: invalid namespace name"
        )
    if name.lower() != name:
        raise InvalidNamespaceName(
            f"DNS segment should be lowercase. {name} doesn't comply "
            "with this rule: invalid namespace name"
        )
    if _INVALID_CHARS.search(name):
        raise InvalidNamespaceName(
            "DNS segment should only be composed of lowercase ASCII letters "
            f"numbers, hyphen and dots. {name} doesn't comply with theses "
            "rules: invalid namespace name"
        )
    return name


def _random_dns_safe(length: int) -> str:
    return "".join(secrets.choice(_DNS_SAFE_ALPHABET) for _ in range(length))


def generate_given_name(supplied_name: str, strip_email_domain: bool) -> str:
    """Build a unique DNS label from a client-supplied hostname.

    The normalized name gets a random suffix; the name is trimmed first so
    the result always fits in one DNS label.
    """
    trimmed_length = (
        LABEL_HOSTNAME_LENGTH - GIVEN_NAME_HASH_LENGTH - GIVEN_NAME_TRIM_SIZE
    )
    normalized = normalize_to_fqdn_rules(supplied_name, strip_email_domain)
    postfix = _random_dns_safe(GIVEN_NAME_HASH_LENGTH)

    if len(normalized) > trimmed_length:
        normalized = normalized[:trimmed_length]
    return f"{normalized}-{postfix}"