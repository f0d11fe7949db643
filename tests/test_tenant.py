"""Tests for tenant resolution, demo isolation and auth-flow token lifting."""

import pytest

from rundeklar.service.tenant import (
    EphemeralSlot,
    TenantBinding,
    build_tenant_path,
    lift_flow_token,
    resolve_tenant_id,
)
from rundeklar.storage.kv import MemoryKeyValueStore
from rundeklar.storage.token_store import ISOLATION_ID_KEY, TokenStore


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://herlev.rundeklar.dk/check-in", "herlev"),
        ("https://www.rundeklar.dk/herlev/check-in", "herlev"),
        ("https://rundeklar.dk/", "default"),
        ("https://rundeklar.dk/check-in", "default"),
        ("https://rundeklar.dk/players/42", "default"),
        ("https://rundeklar.dk/marketing", "marketing"),
        ("https://demo.rundeklar.dk/herlev/check-in", "demo"),
        ("https://rundeklar-demo.vercel.app/", "demo"),
        ("http://localhost:5173/#/demo/check-in", "demo"),
        ("http://localhost:5173/#/coach", "default"),
        ("http://localhost:5173/", "default"),
        ("http://127.0.0.1:3000/herlev", "herlev"),
    ],
)
def test_resolve_tenant_id(url, expected):
    assert resolve_tenant_id(url) == expected


def test_fragment_path_takes_precedence_over_pathname():
    assert resolve_tenant_id("http://localhost/herlev/#/demo/players") == "demo"


def test_build_tenant_path():
    assert build_tenant_path("default", "/check-in") == "/check-in"
    assert build_tenant_path("demo", "check-in") == "/demo/check-in"
    assert build_tenant_path("herlev", "//players") == "/herlev/players"


class TestIsolation:
    def test_demo_get_or_create_is_stable_until_cleared(self, store):
        binding = TenantBinding(store, "https://demo.rundeklar.dk/")

        first = binding.get_or_create()
        assert first is not None
        assert binding.get_or_create() == first
        assert binding.peek() == first

        binding.clear()
        assert binding.peek() is None
        second = binding.get_or_create()
        assert second is not None and second != first

    def test_separate_contexts_do_not_share_identifiers(self):
        one = TenantBinding(TokenStore(MemoryKeyValueStore()), "https://demo.rundeklar.dk/")
        two = TenantBinding(TokenStore(MemoryKeyValueStore()), "https://demo.rundeklar.dk/")

        assert one.get_or_create() != two.get_or_create()

    def test_non_demo_tenant_never_sees_identifier(self):
        store = TokenStore(MemoryKeyValueStore({ISOLATION_ID_KEY: "leftover"}))
        binding = TenantBinding(store, "https://rundeklar.dk/")

        assert binding.peek() is None
        assert binding.get_or_create() is None
        assert store.get_isolation() == "leftover"

    def test_clear_outside_demo_leaves_shared_slot(self):
        store = TokenStore(MemoryKeyValueStore({ISOLATION_ID_KEY: "demo-context"}))
        binding = TenantBinding(store, "https://herlev.rundeklar.dk/")

        binding.clear()

        assert store.get_isolation() == "demo-context"

    def test_isolation_params_scope_demo_calls(self, store):
        demo = TenantBinding(store, "https://demo.rundeklar.dk/")

        params = demo.isolation_params()

        assert params["tenantId"] == "demo"
        assert params["isolationId"] == store.get_isolation()
        assert params["isolationId"]
        assert demo.isolation_params() == params

    def test_isolation_params_outside_demo_carry_tenant_only(self):
        store = TokenStore(MemoryKeyValueStore({ISOLATION_ID_KEY: "demo-context"}))
        binding = TenantBinding(store, "https://herlev.rundeklar.dk/")

        assert binding.isolation_params() == {"tenantId": "herlev"}

    def test_peek_does_not_create(self, store):
        binding = TenantBinding(store, "http://localhost/#/demo/check-in")

        assert binding.peek() is None
        assert store.get_isolation() is None


class TestInvalidation:
    def test_isolation_change_fires_invalidation(self, store):
        binding = TenantBinding(store, "https://demo.rundeklar.dk/")
        reasons = []
        binding.invalidated.subscribe(reasons.append)

        binding.get_or_create()
        binding.clear()

        assert reasons == ["isolation_changed", "isolation_changed"]

    def test_external_write_is_picked_up_by_tracker(self, backend, store):
        binding = TenantBinding(store, "https://demo.rundeklar.dk/")
        reasons = []
        binding.invalidated.subscribe(reasons.append)

        # Another context wrote behind our back
        backend.set_item(ISOLATION_ID_KEY, "from-elsewhere")

        assert binding.check_isolation() is True
        assert binding.check_isolation() is False
        assert reasons == ["isolation_changed"]

    def test_rebind_fires_before_new_tenant_is_visible(self, store):
        binding = TenantBinding(store, "http://localhost/herlev/check-in")
        seen = []
        binding.invalidated.subscribe(lambda reason: seen.append((reason, binding.tenant_id)))

        assert binding.rebind("http://localhost/#/demo/check-in") is True

        assert seen == [("tenant_changed", "herlev")]
        assert binding.tenant_id == "demo"

    def test_rebind_to_same_tenant_is_quiet(self, store):
        binding = TenantBinding(store, "http://localhost/herlev")
        seen = []
        binding.invalidated.subscribe(seen.append)

        assert binding.rebind("herlev") is False
        assert seen == []

    def test_close_detaches_from_store(self, store):
        binding = TenantBinding(store, "https://demo.rundeklar.dk/")
        seen = []
        binding.invalidated.subscribe(seen.append)
        binding.close()

        store.set_isolation("x")

        assert seen == []


class TestFlowTokens:
    def test_lifts_token_from_fragment(self):
        slot = EphemeralSlot()

        entry = lift_flow_token("https://rundeklar.dk/#/herlev/reset-pin?token=abc123", slot)

        assert entry.kind == "reset-pin"
        assert entry.token == "abc123"
        assert entry.tenant_id == "herlev"
        taken = slot.take()
        assert taken == entry
        assert slot.take() is None

    def test_falls_back_to_pathname_query(self):
        slot = EphemeralSlot()

        entry = lift_flow_token("https://rundeklar.dk/verify-email?token=v-1", slot)

        assert entry.kind == "verify-email"
        assert entry.token == "v-1"
        assert entry.tenant_id is None

    def test_fragment_route_with_pathname_query(self):
        slot = EphemeralSlot()

        entry = lift_flow_token("https://rundeklar.dk/?token=p-9#/reset-password", slot)

        assert (entry.kind, entry.token) == ("reset-password", "p-9")

    def test_ignores_urls_without_flow(self):
        slot = EphemeralSlot()

        assert lift_flow_token("https://rundeklar.dk/check-in?token=zzz", slot) is None
        assert lift_flow_token("https://rundeklar.dk/#/reset-pin", slot) is None
        assert slot.peek() is None

    def test_entries_expire(self):
        now = [0.0]
        slot = EphemeralSlot(ttl_seconds=900, clock=lambda: now[0])
        slot.put("reset-pin", "abc")

        now[0] = 899.0
        assert slot.peek() is not None
        now[0] = 901.0
        assert slot.take() is None
