"""Tests for role identity assignment."""
import json
from unittest.mock import AsyncMock

import pytest

from agentlink.agents.registry import IdentityRegistry
from agentlink.agents.schemas import Role
from agentlink.errors import DeliveryFailure, StoreUnavailable


@pytest.fixture
def registry(store, bus, clock):
    return IdentityRegistry(store, bus, "reassign-channel", clock=clock)


class TestAssignIdentity:
    @pytest.mark.asyncio
    async def test_latest_assignment_is_current(self, registry):
        for _ in range(5):
            identity = await registry.assign_identity(Role.A)
            assert await registry.current_identity(Role.A) == identity

    @pytest.mark.asyncio
    async def test_identities_are_never_reused(self, registry):
        seen = {await registry.assign_identity(Role.A) for _ in range(10)}
        assert len(seen) == 10

    @pytest.mark.asyncio
    async def test_roles_are_independent(self, registry):
        a = await registry.assign_identity(Role.A)
        b = await registry.assign_identity(Role.B)
        assert await registry.current_identity(Role.A) == a
        assert await registry.current_identity(Role.B) == b

    @pytest.mark.asyncio
    async def test_first_assignment_emits_no_event(self, registry, bus):
        events = await bus.subscribe(["reassign-channel"])
        await registry.assign_identity(Role.A)
        assert events.queue.empty()

    @pytest.mark.asyncio
    async def test_reassignment_emits_exactly_one_event(self, registry, bus):
        first = await registry.assign_identity(Role.A)
        events = await bus.subscribe(["reassign-channel"])

        second = await registry.assign_identity(Role.A)

        assert events.queue.qsize() == 1
        event = json.loads((await events.get()).data)
        assert event["agentType"] == "a"
        assert event["oldId"] == first
        assert event["newId"] == second
        assert event["agentName"] == "Agent A"

    @pytest.mark.asyncio
    async def test_binding_records_timestamp(self, registry, clock):
        identity = await registry.assign_identity(Role.B)
        binding = await registry.get_binding(Role.B)
        assert binding.identity == identity
        assert binding.role == Role.B
        assert binding.assignedAt == clock.now

    @pytest.mark.asyncio
    async def test_store_unavailable_propagates(self, registry, store):
        store.compare_and_assign = AsyncMock(side_effect=StoreUnavailable())
        with pytest.raises(StoreUnavailable):
            await registry.assign_identity(Role.A)

    @pytest.mark.asyncio
    async def test_event_publish_failure_does_not_fail_assignment(self, registry, bus):
        await registry.assign_identity(Role.A)
        bus.publish = AsyncMock(side_effect=DeliveryFailure("timeout", "reassign-channel"))
        identity = await registry.assign_identity(Role.A)
        assert await registry.current_identity(Role.A) == identity


class TestLookups:
    @pytest.mark.asyncio
    async def test_current_identity_absent(self, registry):
        assert await registry.current_identity(Role.A) is None
        assert await registry.get_binding(Role.A) is None

    @pytest.mark.asyncio
    async def test_reconnect_invalidates_prior_identity(self, registry):
        i1 = await registry.assign_identity(Role.A)
        i2 = await registry.assign_identity(Role.A)
        assert i1 != i2
        assert await registry.is_valid(Role.A, i1) is False
        assert await registry.is_valid(Role.A, i2) is True

    @pytest.mark.asyncio
    async def test_resolve_role(self, registry):
        a = await registry.assign_identity(Role.A)
        b = await registry.assign_identity(Role.B)
        assert await registry.resolve_role(a) == Role.A
        assert await registry.resolve_role(b) == Role.B
        assert await registry.resolve_role("someone-else") is None
        assert await registry.resolve_role("") is None


class TestRole:
    def test_parse_is_case_insensitive(self):
        assert Role.parse("A") is Role.A
        assert Role.parse(" b ") is Role.B

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            Role.parse("c")

    def test_display_name(self):
        assert Role.A.display_name == "Agent A"
