from datetime import timedelta

import pytest

from tailnest.callback import (
    REGISTER_METHOD_OIDC,
    CallbackPage,
    OIDCFlow,
    render_callback_page,
)
from tailnest.models import Machine
from tailnest.oidc import IDTokenClaims, OIDCError
from tailnest.store import Registry

NODE_KEY = "ab" * 32


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def registry():
    with Registry() as reg:
        yield reg


def _pending(registry, node_key=NODE_KEY, hostname="laptop"):
    registry.cache_registration(node_key, Machine(hostname=hostname, node_key=node_key))


def test_render_callback_page_contains_message():
    page = render_callback_page("alice@example.com", "Authenticated")
    assert "Authenticated as alice@example.com, you can now close this window." in page
    assert page.startswith("<html>")


def test_render_callback_page_escapes_user():
    page = render_callback_page("<b>", "Authenticated")
    assert "&lt;b&gt;" in page
    assert "<b>" not in page


def test_callback_page_html_matches_render():
    page = CallbackPage(user="bob@example.com", verb="Reauthenticated")
    assert page.html == render_callback_page("bob@example.com", "Reauthenticated")
    assert page.status == 200


def test_begin_returns_hex_state(registry):
    flow = OIDCFlow(registry)
    state = flow.begin(NODE_KEY)
    assert len(state) == 32
    assert int(state, 16) >= 0
    assert flow.begin(NODE_KEY) != state or len(state) == 32


def test_begin_requires_node_key(registry):
    flow = OIDCFlow(registry)
    with pytest.raises(OIDCError) as info:
        flow.begin("")
    assert info.value.status == 400
    assert info.value.message == "Missing node key in URL"


def test_complete_unknown_state(registry):
    flow = OIDCFlow(registry)
    with pytest.raises(OIDCError) as info:
        flow.complete("deadbeef", IDTokenClaims(email="alice@example.com"))
    assert info.value.message == "state has expired"
    assert info.value.status == 400


def test_complete_registers_new_machine(registry):
    _pending(registry)
    flow = OIDCFlow(registry, strip_email_domain=True)
    state = flow.begin(NODE_KEY)
    page = flow.complete(state, IDTokenClaims(email="alice@example.com"))
    assert page.verb == "Authenticated"
    assert page.user == "alice@example.com"
    machine = registry.get_machine("alice", "laptop")
    assert machine.register_method == REGISTER_METHOD_OIDC
    assert machine.namespace.name == "alice"


def test_complete_without_strip_uses_full_email(registry):
    _pending(registry)
    flow = OIDCFlow(registry, strip_email_domain=False)
    state = flow.begin(NODE_KEY)
    flow.complete(state, IDTokenClaims(email="alice@example.com"))
    assert registry.list_namespace_names() == ["alice.example.com"]


def test_complete_reuses_existing_namespace(registry):
    registry.create_namespace("alice")
    _pending(registry)
    flow = OIDCFlow(registry)
    flow.complete(flow.begin(NODE_KEY), IDTokenClaims(email="alice@example.com"))
    assert registry.list_namespace_names() == ["alice"]
    assert len(registry.list_machines_in_namespace("alice")) == 1


def test_complete_reauthenticates_known_machine(registry):
    _pending(registry)
    flow = OIDCFlow(registry)
    flow.complete(flow.begin(NODE_KEY), IDTokenClaims(email="alice@example.com"))
    page = flow.complete(flow.begin(NODE_KEY), IDTokenClaims(email="alice@example.com"))
    assert page.verb == "Reauthenticated"
    machine = registry.get_machine_by_node_key(NODE_KEY)
    assert machine.last_successful_update is not None
    assert machine.is_expired() is False


def test_complete_accepts_prefixed_node_key(registry):
    _pending(registry)
    flow = OIDCFlow(registry)
    state = flow.begin("nodekey:" + NODE_KEY)
    page = flow.complete(state, IDTokenClaims(email="alice@example.com"))
    assert page.verb == "Authenticated"
    assert registry.get_machine_by_node_key(NODE_KEY).hostname == "laptop"


def test_complete_rejects_bad_node_key(registry):
    flow = OIDCFlow(registry)
    state = flow.begin("not-a-key")
    with pytest.raises(OIDCError) as info:
        flow.complete(state, IDTokenClaims(email="alice@example.com"))
    assert info.value.message == "could not parse public key"
    assert info.value.status == 400


def test_complete_without_pending_registration(registry):
    flow = OIDCFlow(registry)
    state = flow.begin(NODE_KEY)
    with pytest.raises(OIDCError) as info:
        flow.complete(state, IDTokenClaims(email="alice@example.com"))
    assert info.value.message == "could not register machine"
    assert info.value.status == 500


def test_complete_domain_mismatch(registry):
    _pending(registry)
    flow = OIDCFlow(registry, allowed_domains=["example.org"])
    state = flow.begin(NODE_KEY)
    with pytest.raises(OIDCError) as info:
        flow.complete(state, IDTokenClaims(email="alice@example.com"))
    assert info.value.message == "unauthorized principal (domain mismatch)"
    assert registry.list_machines() == []


def test_complete_user_mismatch(registry):
    _pending(registry)
    flow = OIDCFlow(registry, allowed_users=["bob@example.com"])
    state = flow.begin(NODE_KEY)
    with pytest.raises(OIDCError) as info:
        flow.complete(state, IDTokenClaims(email="alice@example.com"))
    assert info.value.message == "unauthorized principal (user mismatch)"


def test_complete_allowed_user_passes(registry):
    _pending(registry)
    flow = OIDCFlow(
        registry,
        allowed_domains=["example.com"],
        allowed_users=["alice@example.com"],
    )
    page = flow.complete(flow.begin(NODE_KEY), IDTokenClaims(email="alice@example.com"))
    assert page.verb == "Authenticated"


def test_state_expires(registry):
    _pending(registry)
    clock = FakeClock()
    flow = OIDCFlow(registry, state_ttl=timedelta(seconds=60), clock=clock)
    state = flow.begin(NODE_KEY)
    clock.now += 61
    with pytest.raises(OIDCError) as info:
        flow.complete(state, IDTokenClaims(email="alice@example.com"))
    assert info.value.message == "state has expired"


def test_state_valid_before_expiry(registry):
    _pending(registry)
    clock = FakeClock()
    flow = OIDCFlow(registry, state_ttl=timedelta(seconds=60), clock=clock)
    state = flow.begin(NODE_KEY)
    clock.now += 30
    page = flow.complete(state, IDTokenClaims(email="alice@example.com"))
    assert page.verb == "Authenticated"