"""The OIDC login flow: state handling, callback completion and the result page."""

from __future__ import annotations

import string
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

from tailnest.naming import InvalidNamespaceName
from tailnest.oidc import (
    BAD_REQUEST,
    INTERNAL_SERVER_ERROR,
    IDTokenClaims,
    OIDCError,
    namespace_name_from_claims,
    new_state,
    validate_allowed_domains,
    validate_allowed_users,
)
from tailnest.store import NamespaceNotFound, Registry, RegistryError

REGISTER_METHOD_OIDC = "oidc"
NODE_KEY_PREFIX = "nodekey:"
NODE_KEY_HEX_LENGTH = 64
DEFAULT_STATE_TTL = timedelta(minutes=15)
OK = 200
HTML_CONTENT_TYPE = "text/html; charset=utf-8"

_ZERO_TIME = datetime.min.replace(tzinfo=timezone.utc)
_HEX_DIGITS = frozenset(string.hexdigits)

_HTML_ESCAPES = {
    "\0": "\ufffd",
    '"': "&#34;",
    "'": "&#39;",
    "&": "&amp;",
    "+": "&#43;",
    "<": "&lt;",
    ">": "&gt;",
}

_CALLBACK_TEMPLATE = """<html>
	<body>
	<h1>tailnest</h1>
	<p>
			{verb} as {user}, you can now close this window.
	</p>
	</body>
	</html>"""

__all__ = [
    "CallbackPage",
    "DEFAULT_STATE_TTL",
    "HTML_CONTENT_TYPE",
    "OIDCFlow",
    "REGISTER_METHOD_OIDC",
    "render_callback_page",
]


def _escape_html(text: str) -> str:
    return "".join(_HTML_ESCAPES.get(char, char) for char in text)


def render_callback_page(user: str, verb: str) -> str:
    """The HTML page shown once the browser login has finished."""
    return _CALLBACK_TEMPLATE.format(verb=_escape_html(verb), user=_escape_html(user))


@dataclass(frozen=True)
class CallbackPage:
    """The successful outcome of a callback: who logged in, and how."""

    user: str
    verb: str
    status: int = OK
    content_type: str = HTML_CONTENT_TYPE

    @property
    def html(self) -> str:
        return render_callback_page(self.user, self.verb)


def _strip_node_key_prefix(node_key: str) -> str:
    if node_key.startswith(NODE_KEY_PREFIX):
        return node_key[len(NODE_KEY_PREFIX):]
    return node_key


def _parse_node_key(node_key: str) -> str:
    stripped = _strip_node_key_prefix(node_key)
    if len(stripped) != NODE_KEY_HEX_LENGTH or not set(stripped) <= _HEX_DIGITS:
        raise OIDCError("could not parse public key", BAD_REQUEST)
    return stripped.lower()


class OIDCFlow:
    """Ties browser logins to pending machine registrations.

    ``begin`` remembers which node key a login belongs to under a fresh
    state value; ``complete`` takes the verified ID token claims for that
    state and registers (or reauthenticates) the machine.
    """

    def __init__(
        self,
        registry: Registry,
        *,
        allowed_domains: Sequence[str] = (),
        allowed_users: Sequence[str] = (),
        strip_email_domain: bool = True,
        state_ttl: timedelta = DEFAULT_STATE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._allowed_domains = list(allowed_domains)
        self._allowed_users = list(allowed_users)
        self._strip_email_domain = strip_email_domain
        self._state_ttl = state_ttl.total_seconds()
        self._clock = clock
        self._states: dict[str, tuple[str, float]] = {}

    def begin(self, node_key: str) -> str:
        """Start a login for ``node_key`` and return the state to send along."""
        if not node_key:
            raise OIDCError("Missing node key in URL", BAD_REQUEST)
        state = new_state()
        self._states[state] = (node_key, self._clock() + self._state_ttl)
        return state

    def _node_key_for(self, state: str) -> str:
        entry = self._states.get(state)
        if entry is None:
            raise OIDCError("state has expired", BAD_REQUEST)
        node_key, deadline = entry
        if self._clock() >= deadline:
            del self._states[state]
            raise OIDCError("state has expired", BAD_REQUEST)
        return node_key

    def complete(self, state: str, claims: IDTokenClaims) -> CallbackPage:
        """Finish the login identified by ``state`` for the given principal."""
        validate_allowed_domains(self._allowed_domains, claims)
        validate_allowed_users(self._allowed_users, claims)

        node_key = _parse_node_key(self._node_key_for(state))

        try:
            machine = self._registry.get_machine_by_node_key(node_key)
        except RegistryError:
            machine = None

        if machine is not None:
            try:
                self._registry.refresh_machine(machine, _ZERO_TIME)
            except RegistryError as err:
                raise OIDCError("Failed to refresh machine", INTERNAL_SERVER_ERROR) from err
            return CallbackPage(user=claims.email, verb="Reauthenticated")

        namespace_name = namespace_name_from_claims(claims, self._strip_email_domain)
        namespace = self._find_or_create_namespace(namespace_name)

        try:
            self._registry.register_from_auth_callback(
                node_key, namespace.name, REGISTER_METHOD_OIDC
            )
        except RegistryError as err:
            raise OIDCError("could not register machine", INTERNAL_SERVER_ERROR) from err

        return CallbackPage(user=claims.email, verb="Authenticated")

    def _find_or_create_namespace(self, name: str):
        try:
            return self._registry.get_namespace(name)
        except NamespaceNotFound:
            try:
                return self._registry.create_namespace(name)
            except (RegistryError, InvalidNamespaceName) as err:
                raise OIDCError(
                    "could not create namespace", INTERNAL_SERVER_ERROR
                ) from err
        except RegistryError as err:
            raise OIDCError(
                "could not find or create namespace", INTERNAL_SERVER_ERROR
            ) from err