"""Tests for leases: identifiers, the in-memory manager and LeaseGuard."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from checkout_orchestrator.adapters.memory import InMemoryLeaseManager
from checkout_orchestrator.orchestration import LeaseGuard
from checkout_orchestrator.primitives import (
    ConcurrencyError,
    LockContentionError,
    ResourceIdentifier,
    resources_for_run,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from checkout_orchestrator.instrumentation import HookRegistry


RUN = ResourceIdentifier.run("ctx_1")
PG_1 = ResourceIdentifier.entity("pg_1")
PG_2 = ResourceIdentifier.entity("pg_2")


# ── ResourceIdentifier ───────────────────────────────────────────────


class TestResourceIdentifier:
    def test_sorting_is_stable_across_acquirers(self) -> None:
        assert sorted([RUN, PG_2, PG_1]) == [PG_1, PG_2, RUN]
        assert sorted([PG_1, RUN, PG_2]) == [PG_1, PG_2, RUN]

    def test_str_is_type_and_id(self) -> None:
        assert str(PG_1) == "entity:pg_1"
        assert str(RUN) == "run:ctx_1"

    def test_resources_for_run_dedupes(self) -> None:
        resources = resources_for_run("ctx_1", ["pg_2", "pg_1", "pg_2"])

        assert resources == [PG_1, PG_2, RUN]

    def test_contention_error_is_a_concurrency_error(self) -> None:
        error = LockContentionError(PG_1, "ctx_2", reason="held by ctx_1")

        assert isinstance(error, ConcurrencyError)
        assert error.resource == PG_1
        assert "entity:pg_1" in str(error)
        assert error.code == "LOCK_CONTENTION"


# ── InMemoryLeaseManager ─────────────────────────────────────────────


class TestInMemoryLeaseManager:
    @pytest.fixture
    def manager(self, clock: Any) -> InMemoryLeaseManager:
        return InMemoryLeaseManager(clock=clock)

    async def test_acquire_grants_every_key_sorted(
        self, manager: InMemoryLeaseManager
    ) -> None:
        lease_set = await manager.acquire([RUN, PG_2, PG_1], "ctx_1", ttl=10.0)

        assert lease_set.holder == "ctx_1"
        assert lease_set.keys == ["entity:pg_1", "entity:pg_2", "run:ctx_1"]
        assert {lease.token for lease in lease_set.leases} == {lease_set.token}
        assert len(await manager.get_active_leases()) == 3

    async def test_contention_fails_fast_and_keeps_nothing(
        self, manager: InMemoryLeaseManager
    ) -> None:
        await manager.acquire([PG_2], "ctx_1")

        with pytest.raises(LockContentionError) as exc_info:
            await manager.acquire([PG_1, PG_2], "ctx_2")

        assert exc_info.value.resource == PG_2
        # pg_1 sorts before the contended key but must not stay leased.
        lease_set = await manager.acquire([PG_1], "ctx_3")
        assert lease_set.keys == ["entity:pg_1"]

    async def test_same_holder_is_regranted(
        self, manager: InMemoryLeaseManager
    ) -> None:
        first = await manager.acquire([RUN, PG_1], "ctx_1")
        second = await manager.acquire([RUN, PG_1], "ctx_1")

        assert second.token != first.token
        active = await manager.get_active_leases()
        assert {lease.token for lease in active} == {second.token}

    async def test_release_frees_keys(self, manager: InMemoryLeaseManager) -> None:
        lease_set = await manager.acquire([RUN, PG_1], "ctx_1")

        await manager.release(lease_set)

        assert await manager.get_active_leases() == []
        await manager.acquire([PG_1], "ctx_2")

    async def test_stale_lease_set_cannot_release_successor(
        self, manager: InMemoryLeaseManager
    ) -> None:
        stale = await manager.acquire([PG_1], "ctx_1")
        await manager.acquire([PG_1], "ctx_1")

        await manager.release(stale)

        with pytest.raises(LockContentionError):
            await manager.acquire([PG_1], "ctx_2")

    async def test_expiry_frees_key(
        self, manager: InMemoryLeaseManager, clock: Any
    ) -> None:
        await manager.acquire([PG_1], "ctx_1", ttl=5.0)

        clock.advance(4.9)
        with pytest.raises(LockContentionError):
            await manager.acquire([PG_1], "ctx_2")

        clock.advance(0.2)
        lease_set = await manager.acquire([PG_1], "ctx_2")
        assert lease_set.holder == "ctx_2"

    async def test_renew_extends_expiry(
        self, manager: InMemoryLeaseManager, clock: Any
    ) -> None:
        lease_set = await manager.acquire([PG_1], "ctx_1", ttl=5.0)
        original_expiry = lease_set.leases[0].expires_at

        clock.advance(4.0)
        assert await manager.renew(lease_set) is True
        assert lease_set.leases[0].expires_at > original_expiry

        clock.advance(4.0)
        with pytest.raises(LockContentionError):
            await manager.acquire([PG_1], "ctx_2")

    async def test_renew_after_takeover_fails(
        self, manager: InMemoryLeaseManager, clock: Any
    ) -> None:
        lease_set = await manager.acquire([PG_1], "ctx_1", ttl=5.0)
        clock.advance(6.0)
        await manager.acquire([PG_1], "ctx_2")

        assert await manager.renew(lease_set) is False

    async def test_renew_after_expiry_fails(
        self, manager: InMemoryLeaseManager, clock: Any
    ) -> None:
        lease_set = await manager.acquire([PG_1], "ctx_1", ttl=5.0)
        clock.advance(6.0)

        assert await manager.renew(lease_set) is False

    async def test_health_check(self, manager: InMemoryLeaseManager) -> None:
        assert await manager.health_check() is True


# ── LeaseGuard ───────────────────────────────────────────────────────


class TestLeaseGuard:
    async def test_holds_leases_inside_block(
        self, lease_manager: InMemoryLeaseManager
    ) -> None:
        async with LeaseGuard(lease_manager, "ctx_1", ["pg_1"]) as guard:
            assert guard.held
            active = await lease_manager.get_active_leases()
            assert {(a.resource_type, a.resource_id) for a in active} == {
                ("entity", "pg_1"),
                ("run", "ctx_1"),
            }
            assert await guard.renew() is True

        assert not guard.held
        assert await lease_manager.get_active_leases() == []

    async def test_releases_on_error(
        self, lease_manager: InMemoryLeaseManager
    ) -> None:
        with pytest.raises(RuntimeError):
            async with LeaseGuard(lease_manager, "ctx_1", ["pg_1"]):
                raise RuntimeError("boom")

        assert await lease_manager.get_active_leases() == []

    async def test_early_release_makes_exit_a_noop(
        self, lease_manager: InMemoryLeaseManager
    ) -> None:
        async with LeaseGuard(lease_manager, "ctx_1", ["pg_1"]) as guard:
            await guard.release()
            other = await lease_manager.acquire([PG_1], "ctx_2")

        assert [a.holder for a in await lease_manager.get_active_leases()] == ["ctx_2"]
        await lease_manager.release(other)

    async def test_each_guard_holds_under_its_own_holder(
        self, lease_manager: InMemoryLeaseManager
    ) -> None:
        first = LeaseGuard(lease_manager, "ctx_1", ["pg_1"])
        second = LeaseGuard(lease_manager, "ctx_1", ["pg_1"])

        assert first.holder.startswith("ctx_1:")
        assert first.holder != second.holder

        async with first:
            with pytest.raises(LockContentionError) as exc_info:
                await second.acquire()
            assert exc_info.value.holder == second.holder
            assert not second.held
            assert {a.holder for a in await lease_manager.get_active_leases()} == {
                first.holder
            }

    async def test_renew_without_leases_is_false(
        self, lease_manager: InMemoryLeaseManager
    ) -> None:
        guard = LeaseGuard(lease_manager, "ctx_1", [])

        assert await guard.renew() is False

    async def test_contention_propagates(
        self, lease_manager: InMemoryLeaseManager
    ) -> None:
        await lease_manager.acquire([PG_1], "ctx_other")

        with pytest.raises(LockContentionError):
            async with LeaseGuard(lease_manager, "ctx_1", ["pg_1"]):
                pytest.fail("block must not run")

    async def test_acquire_and_release_are_instrumented(
        self, lease_manager: InMemoryLeaseManager, hook_registry: HookRegistry
    ) -> None:
        seen: list[tuple[str, dict[str, Any]]] = []

        async def hook(
            operation: str,
            attributes: dict[str, Any],
            next_handler: Callable[[], Awaitable[Any]],
        ) -> Any:
            seen.append((operation, attributes))
            return await next_handler()

        hook_registry.register(hook, operations=["lease.*"])

        async with LeaseGuard(lease_manager, "ctx_1", ["pg_1"]):
            pass

        assert [op for op, _ in seen] == ["lease.acquire", "lease.release"]
        assert seen[0][1]["keys"] == ["entity:pg_1", "run:ctx_1"]
