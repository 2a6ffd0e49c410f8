"""Shared fixtures: clock, step probe, registries and a wired orchestrator."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from checkout_orchestrator.adapters.memory import (
    InMemoryContextStore,
    InMemoryLeaseManager,
    InMemoryPublisher,
)
from checkout_orchestrator.adapters.sqlalchemy import Base
from checkout_orchestrator.instrumentation import HookRegistry, set_hook_registry
from checkout_orchestrator.orchestration import (
    AwaitConfirmation,
    ExponentialBackoffPolicy,
    Orchestrator,
    OrchestratorSettings,
    RetryPolicyTable,
    StepContext,
    StepDefinition,
    StepRegistry,
)

# ═══════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════


class FakeClock:
    """Manually advanced UTC clock for lease expiry tests."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class StepProbe:
    """
    Builds step callables that record every execution and compensation.

    ``failures[name]`` is a queue of exceptions raised by successive
    executions of that step; ``pending[name]`` makes the step return
    :class:`AwaitConfirmation` with the given correlation id.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.compensations: list[str] = []
        self.contexts: dict[str, StepContext] = {}
        self.failures: dict[str, list[BaseException]] = {}
        self.pending: dict[str, str] = {}
        self.failing_compensations: set[str] = set()
        self.compensated_outputs: dict[str, dict[str, Any]] = {}

    def execute(self, name: str, output: dict[str, Any] | None = None) -> Any:
        async def _execute(ctx: StepContext) -> dict[str, Any] | AwaitConfirmation:
            self.calls.append(name)
            self.contexts[name] = ctx
            queue = self.failures.get(name)
            if queue:
                raise queue.pop(0)
            result = dict(output) if output is not None else {"step": name}
            if name in self.pending:
                return AwaitConfirmation(self.pending[name], result)
            return result

        return _execute

    def compensate(self, name: str) -> Any:
        async def _compensate(ctx: StepContext, output: dict[str, Any]) -> None:  # noqa: ARG001
            self.compensations.append(name)
            self.compensated_outputs[name] = output
            if name in self.failing_compensations:
                raise RuntimeError(f"compensation of {name} failed")

        return _compensate

    def count(self, name: str) -> int:
        return self.calls.count(name)


def checkout_response(ctx: StepContext) -> dict[str, Any]:
    return {"status": "completed", "checkoutOrderId": ctx.output_of("C")["order_id"]}


def async_checkout_response(ctx: StepContext) -> dict[str, Any]:
    return {
        "status": "completed",
        "checkoutOrderId": ctx.output_of("confirm_order")["order_id"],
    }


def build_registry(probe: StepProbe) -> StepRegistry:
    """``checkout``: A, B, C (sync); ``async_checkout``: payment confirms out-of-band."""
    registry = StepRegistry()
    registry.register(
        "checkout",
        [
            StepDefinition("A", probe.execute("A"), compensate=probe.compensate("A")),
            StepDefinition("B", probe.execute("B"), compensate=probe.compensate("B")),
            StepDefinition("C", probe.execute("C", {"order_id": "co_1"})),
        ],
        entity_resolver=lambda params: params.get("payment_group_ids", []),
        response_builder=checkout_response,
    )
    registry.register(
        "async_checkout",
        [
            StepDefinition(
                "create_payment_group",
                probe.execute("create_payment_group", {"payment_group_id": "pg_1"}),
                compensate=probe.compensate("create_payment_group"),
            ),
            StepDefinition(
                "generate_invoice",
                probe.execute("generate_invoice", {"invoice_id": "inv_1"}),
                compensate=probe.compensate("generate_invoice"),
            ),
            StepDefinition(
                "collect_payment",
                probe.execute("collect_payment", {"payment_id": "pay_1"}),
                compensate=probe.compensate("collect_payment"),
                async_boundary=True,
            ),
            StepDefinition(
                "confirm_order", probe.execute("confirm_order", {"order_id": "co_9"})
            ),
        ],
        entity_resolver=lambda params: params.get("payment_group_ids", []),
        response_builder=async_checkout_response,
    )
    return registry


# ═══════════════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════════════


@pytest.fixture(autouse=True)
def hook_registry() -> HookRegistry:
    """Fresh instrumentation registry per test."""
    registry = HookRegistry()
    set_hook_registry(registry)
    return registry


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def lease_manager() -> InMemoryLeaseManager:
    return InMemoryLeaseManager()


@pytest.fixture
def store() -> InMemoryContextStore:
    return InMemoryContextStore()


@pytest.fixture
def publisher() -> InMemoryPublisher:
    return InMemoryPublisher()


@pytest.fixture
def probe() -> StepProbe:
    return StepProbe()


@pytest.fixture
def registry(probe: StepProbe) -> StepRegistry:
    return build_registry(probe)


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def settings() -> OrchestratorSettings:
    return OrchestratorSettings(
        lease_ttl=30.0,
        retry_policies=RetryPolicyTable(
            default=ExponentialBackoffPolicy(max_attempts=3, initial_delay=0.01)
        ),
    )


@pytest.fixture
def orchestrator(
    store: InMemoryContextStore,
    lease_manager: InMemoryLeaseManager,
    registry: StepRegistry,
    publisher: InMemoryPublisher,
    settings: OrchestratorSettings,
    sleep: AsyncMock,
) -> Orchestrator:
    return Orchestrator(
        store,
        lease_manager,
        registry,
        settings=settings,
        publisher=publisher,
        sleep=sleep,
    )


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()
