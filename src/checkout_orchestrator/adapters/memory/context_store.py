"""In-memory execution context store for testing and single-process wiring."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from ...orchestration.state import ExecutionContext, RunStatus
from ...ports.context_store import IExecutionContextStore
from ...primitives.exceptions import (
    AlreadyExistsError,
    ConflictError,
    ContextNotFoundError,
)
from .unit_of_work import InMemoryUnitOfWork

if TYPE_CHECKING:
    from collections.abc import Callable

    from ...orchestration.state import StepRecord
    from ...ports.unit_of_work import UnitOfWork

logger = logging.getLogger("checkout_orchestrator.store")

_MUTABLE_EXTRAS = frozenset({"response", "failure", "correlation_id"})


class InMemoryContextStore(IExecutionContextStore):
    """
    Dict-backed :class:`IExecutionContextStore`.

    Contexts are copied on the way in and out so callers never alias the
    stored record. Mutations passed an :class:`InMemoryUnitOfWork` are
    validated immediately and applied on its commit.
    """

    def __init__(self) -> None:
        self._contexts: dict[str, ExecutionContext] = {}

    def unit_of_work(self) -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork()

    def _run(
        self, context_id: str, write: Callable[[], None], uow: UnitOfWork | None
    ) -> None:
        if uow is None:
            write()
        elif isinstance(uow, InMemoryUnitOfWork):
            uow.stage(self._undoable(context_id, write))
        else:
            raise TypeError(
                f"InMemoryContextStore cannot join {type(uow).__name__}; "
                "use store.unit_of_work()"
            )

    def _undoable(
        self, context_id: str, write: Callable[[], None]
    ) -> Callable[[], Callable[[], None]]:
        """Wrap *write* so it snapshots the context and returns a restore."""

        def apply() -> Callable[[], None]:
            previous = self._contexts.get(context_id)
            snapshot = previous.model_copy(deep=True) if previous is not None else None
            write()

            def undo() -> None:
                if snapshot is None:
                    self._contexts.pop(context_id, None)
                else:
                    self._contexts[context_id] = snapshot

            return undo

        return apply

    def _require(self, context_id: str) -> ExecutionContext:
        context = self._contexts.get(context_id)
        if context is None:
            raise ContextNotFoundError(context_id)
        return context

    def _require_mutable(self, context_id: str) -> ExecutionContext:
        context = self._require(context_id)
        if context.is_terminal:
            raise ConflictError(context_id, context.status.value)
        return context

    async def create(
        self,
        context_id: str,
        task_kind: str,
        request_params: dict[str, Any],
        entity_ids: list[str],
        uow: UnitOfWork | None = None,
    ) -> ExecutionContext:
        if context_id in self._contexts:
            raise AlreadyExistsError(context_id)

        context = ExecutionContext(
            id=context_id,
            task_kind=task_kind,
            request_params=dict(request_params),
            entity_ids=list(entity_ids),
        )

        def write() -> None:
            if context_id in self._contexts:
                raise AlreadyExistsError(context_id)
            self._contexts[context_id] = context.model_copy(deep=True)

        self._run(context_id, write, uow)
        logger.debug("Created execution context %s (%s)", context_id, task_kind)
        return context

    async def load(
        self, context_id: str, uow: UnitOfWork | None = None  # noqa: ARG002
    ) -> ExecutionContext:
        return self._require(context_id).model_copy(deep=True)

    async def append_step(
        self,
        context_id: str,
        record: StepRecord,
        *,
        retried_at: datetime | None = None,
        uow: UnitOfWork | None = None,
    ) -> None:
        self._require_mutable(context_id)

        def write() -> None:
            context = self._require_mutable(context_id)
            context.steps.append(record)
            if retried_at is not None:
                context.retry_timestamps.append(retried_at)
            context.touch()

        self._run(context_id, write, uow)

    async def set_status(
        self,
        context_id: str,
        status: RunStatus,
        uow: UnitOfWork | None = None,
        **extra: Any,
    ) -> None:
        unknown = set(extra) - _MUTABLE_EXTRAS
        if unknown:
            raise TypeError(f"Unsupported context fields: {sorted(unknown)}")
        self._require_mutable(context_id)

        def write() -> None:
            context = self._require_mutable(context_id)
            context.status = status
            for field_name, value in extra.items():
                setattr(context, field_name, value)
            context.touch()

        self._run(context_id, write, uow)

    async def find_by_correlation_id(
        self, correlation_id: str
    ) -> ExecutionContext | None:
        for context in self._contexts.values():
            if context.correlation_id == correlation_id:
                return context.model_copy(deep=True)
        return None

    async def find_stale_running(
        self, older_than: datetime, limit: int = 10
    ) -> list[ExecutionContext]:
        result: list[ExecutionContext] = []
        for context in self._contexts.values():
            if context.status is RunStatus.RUNNING and context.updated_at < older_than:
                result.append(context.model_copy(deep=True))
                if len(result) >= limit:
                    break
        return result

    # ── Test helpers ─────────────────────────────────────────────────

    def all_contexts(self) -> list[ExecutionContext]:
        """Return copies of all stored contexts (testing convenience)."""
        return [c.model_copy(deep=True) for c in self._contexts.values()]

    def backdate(self, context_id: str, updated_at: datetime | None = None) -> None:
        """Pretend the context was last written at *updated_at* (testing)."""
        self._require(context_id).updated_at = updated_at or datetime(
            1970, 1, 1, tzinfo=timezone.utc
        )

    def clear(self) -> None:
        """Wipe the store."""
        self._contexts.clear()
