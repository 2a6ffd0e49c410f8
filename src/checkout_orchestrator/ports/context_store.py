"""IExecutionContextStore — persistence port for execution contexts."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime

    from ..orchestration.state import ExecutionContext, RunStatus, StepRecord
    from .unit_of_work import UnitOfWork


@runtime_checkable
class IExecutionContextStore(Protocol):
    """
    Port for execution-context persistence.

    Contexts are keyed by ``id``; step records are embedded, append-only and
    never edited in place. Every mutating method accepts an optional *uow*:
    when given, the write joins that unit of work and becomes visible only on
    its commit, together with whatever the executing step wrote through it.
    :class:`InMemoryContextStore` is available from
    :mod:`checkout_orchestrator.adapters.memory` for testing.
    """

    def unit_of_work(self) -> UnitOfWork:
        """Open a new unit of work bound to this store's backend."""
        ...

    async def create(
        self,
        context_id: str,
        task_kind: str,
        request_params: dict[str, Any],
        entity_ids: list[str],
        uow: UnitOfWork | None = None,
    ) -> ExecutionContext:
        """
        Persist a new ``INITIALIZED`` context.

        Raises:
            AlreadyExistsError: If *context_id* is already stored.
        """
        ...

    async def load(
        self, context_id: str, uow: UnitOfWork | None = None
    ) -> ExecutionContext:
        """
        Load a context by id.

        Raises:
            ContextNotFoundError: If no context is stored under *context_id*.
        """
        ...

    async def append_step(
        self,
        context_id: str,
        record: StepRecord,
        *,
        retried_at: datetime | None = None,
        uow: UnitOfWork | None = None,
    ) -> None:
        """
        Atomically append *record* (and optionally a retry timestamp).

        Raises:
            ContextNotFoundError: If the context does not exist.
            ConflictError: If the context is ``COMPLETED`` or ``ROLLED_BACK``.
        """
        ...

    async def set_status(
        self,
        context_id: str,
        status: RunStatus,
        uow: UnitOfWork | None = None,
        **extra: Any,
    ) -> None:
        """
        Transition the context to *status*.

        ``extra`` may carry ``response``, ``failure`` or ``correlation_id``.

        Raises:
            ConflictError: If the context is already terminal.
        """
        ...

    async def find_by_correlation_id(
        self, correlation_id: str
    ) -> ExecutionContext | None:
        """Return the context paused (or formerly paused) on *correlation_id*."""
        ...

    async def find_stale_running(
        self, older_than: datetime, limit: int = 10
    ) -> list[ExecutionContext]:
        """Return RUNNING contexts not updated since *older_than* (crashed holders)."""
        ...
