# tests/services/test_namespace_router.py
"""
Namespace registry and campaign routing.

Run with: pytest tests/services/test_namespace_router.py -v
"""

from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from leadsync.errors import NamespaceError
from leadsync.services.namespace_router import NamespaceHandle, NamespaceRegistry, NamespaceRouter


def handle(name, keywords=(), position=0, is_default=False, is_active=True):
    return NamespaceHandle(
        name=name,
        partition_id=uuid4(),
        keywords=tuple(keywords),
        is_default=is_default,
        is_active=is_active,
        position=position,
    )


# ============================================================================
# TEST: Router (pure)
# ============================================================================

class TestRouter:

    def test_acme_scenario(self):
        """'ACME Corp Outreach' -> acme; 'Generic Outreach' -> default"""
        router = NamespaceRouter([
            handle("default", is_default=True),
            handle("acme", ["ACME"], position=1),
        ])
        assert router.resolve("ACME Corp Outreach").name == "acme"
        assert router.resolve("Generic Outreach").name == "default"

    def test_case_insensitive_substring(self):
        router = NamespaceRouter([handle("default", is_default=True), handle("acme", ["acme"], 1)])
        assert router.resolve("q3 launch - AcMe corp").name == "acme"

    def test_missing_campaign_goes_to_default(self):
        router = NamespaceRouter([handle("default", is_default=True), handle("acme", ["acme"], 1)])
        assert router.resolve(None).name == "default"
        assert router.resolve("").name == "default"

    def test_registration_order_breaks_ties(self):
        router = NamespaceRouter([
            handle("default", is_default=True),
            handle("later", ["corp"], position=2),
            handle("earlier", ["acme"], position=1),
        ])
        assert router.resolve("Acme Corp").name == "earlier"

    def test_inactive_namespaces_are_ignored(self):
        router = NamespaceRouter([
            handle("default", is_default=True),
            handle("acme", ["acme"], 1, is_active=False),
        ])
        assert router.resolve("Acme").name == "default"

    def test_deterministic(self):
        router = NamespaceRouter([handle("default", is_default=True), handle("beta", ["beta"], 1)])
        assert len({router.resolve("Beta launch").name for _ in range(50)}) == 1

    def test_requires_default(self):
        with pytest.raises(NamespaceError):
            NamespaceRouter([handle("acme", ["acme"], 1)])


# ============================================================================
# TEST: Registry
# ============================================================================

class TestRegistry:

    @pytest.mark.asyncio
    async def test_default_exists_once(self, registry):
        first = await registry.ensure_default()
        second = await registry.ensure_default()
        assert first.partition_id == second.partition_id
        assert first.is_default

    @pytest.mark.asyncio
    async def test_register_and_route(self, registry):
        acme = await registry.register("acme", ["ACME", " ACME ", ""])
        assert acme.keywords == ("ACME",)
        assert acme.partition_id != registry.get("default").partition_id
        assert registry.router().resolve("ACME Corp Outreach").name == "acme"

    @pytest.mark.asyncio
    async def test_positions_follow_registration_order(self, registry):
        a = await registry.register("alpha", ["a"])
        b = await registry.register("bravo", ["b"])
        assert b.position > a.position
        assert [h.name for h in registry.list_active()] == ["default", "alpha", "bravo"]

    @pytest.mark.asyncio
    async def test_duplicate_and_invalid_names(self, registry):
        await registry.register("acme", ["acme"])
        with pytest.raises(NamespaceError):
            await registry.register("acme", ["other"])
        with pytest.raises(NamespaceError):
            await registry.register("Acme Corp", ["acme"])
        with pytest.raises(NamespaceError):
            await registry.register("9lives", [])

    @pytest.mark.asyncio
    async def test_update_and_deactivate(self, registry):
        await registry.register("acme", ["acme"])
        updated = await registry.update("acme", keywords=["acme", "acme-corp"],
                                        crm_config={"min_behavior_score": 10})
        assert updated.keywords == ("acme", "acme-corp")
        assert updated.min_behavior_score(1) == 10

        await registry.deactivate("acme")
        assert [h.name for h in registry.list_active()] == ["default"]
        assert registry.router().resolve("acme").name == "default"

    @pytest.mark.asyncio
    async def test_default_cannot_be_deactivated(self, registry):
        with pytest.raises(NamespaceError):
            await registry.deactivate("default")

    @pytest.mark.asyncio
    async def test_update_unknown(self, registry):
        with pytest.raises(NamespaceError):
            await registry.update("ghost", keywords=["x"])

    @pytest.mark.asyncio
    async def test_load_restores_snapshot(self, session_factory, registry):
        await registry.register("acme", ["acme"])
        fresh = NamespaceRegistry(session_factory)
        await fresh.load()
        assert fresh.get("acme").partition_id == registry.get("acme").partition_id

    @pytest.mark.asyncio
    async def test_provision_hook(self, session_factory):
        hook = AsyncMock()
        registry = NamespaceRegistry(session_factory, on_provision=hook)
        await registry.ensure_default()
        acme = await registry.register("acme", ["acme"])

        assert hook.await_count == 2
        hook.assert_awaited_with(acme)
