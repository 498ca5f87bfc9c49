"""OpenID Connect login helpers: callback checks and ID token claims."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from tailnest.naming import InvalidNamespaceName, normalize_to_fqdn_rules

STATE_BYTES = 16
BAD_REQUEST = 400
INTERNAL_SERVER_ERROR = 500

__all__ = [
    "BAD_REQUEST",
    "INTERNAL_SERVER_ERROR",
    "IDTokenClaims",
    "OIDCError",
    "STATE_BYTES",
    "namespace_name_from_claims",
    "new_state",
    "validate_allowed_domains",
    "validate_allowed_users",
    "validate_callback_params",
]


class OIDCError(Exception):
    """A step of the OIDC login failed.

    ``message`` is the text shown to the client and ``status`` the HTTP
    status that goes with it.
    """

    def __init__(self, message: str, status: int = BAD_REQUEST) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


def _string_claim(data: Mapping[str, Any], name: str) -> str:
    value = data.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise OIDCError("Failed to decode id token claims")
    return value


def _string_list_claim(data: Mapping[str, Any], name: str) -> list[str]:
    value = data.get(name)
    if value is None:
        return []
    if not isinstance(value, (list, tuple)) or not all(
        isinstance(item, str) for item in value
    ):
        raise OIDCError("Failed to decode id token claims")
    return list(value)


@dataclass
class IDTokenClaims:
    """The ID token claims used to identify the authenticated principal."""

    name: str = ""
    groups: list[str] = field(default_factory=list)
    email: str = ""
    username: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "IDTokenClaims":
        """Build claims from decoded token JSON; wrong types raise OIDCError."""
        if not isinstance(data, Mapping):
            raise OIDCError("Failed to decode id token claims")
        return cls(
            name=_string_claim(data, "name"),
            groups=_string_list_claim(data, "groups"),
            email=_string_claim(data, "email"),
            username=_string_claim(data, "preferred_username"),
        )


def new_state() -> str:
    """A fresh random state value: 32 lowercase hex characters."""
    return secrets.token_hex(STATE_BYTES)


def validate_callback_params(code: str | None, state: str | None) -> tuple[str, str]:
    """Return ``(code, state)`` when both are present and non-empty."""
    if not code or not state:
        raise OIDCError("Wrong params")
    return code, state


def validate_allowed_domains(
    allowed_domains: Sequence[str], claims: IDTokenClaims
) -> IDTokenClaims:
    """Require the e-mail domain to be allowed, when a domain list is given."""
    if allowed_domains:
        at = claims.email.rfind("@")
        if at < 0 or claims.email[at + 1:] not in allowed_domains:
            raise OIDCError("unauthorized principal (domain mismatch)")
    return claims


def validate_allowed_users(
    allowed_users: Sequence[str], claims: IDTokenClaims
) -> IDTokenClaims:
    """Require the e-mail to be listed, when a user list is given."""
    if allowed_users and claims.email not in allowed_users:
        raise OIDCError("unauthorized principal (user mismatch)")
    return claims


def namespace_name_from_claims(claims: IDTokenClaims, strip_email_domain: bool) -> str:
    """Derive the namespace name from the principal's e-mail address."""
    try:
        return normalize_to_fqdn_rules(claims.email, strip_email_domain)
    except InvalidNamespaceName as err:
        raise OIDCError("couldn't normalize email", INTERNAL_SERVER_ERROR) from err