"""
SQLAlchemy implementation of execution-context persistence.
"""

from __future__ import annotations

import contextlib
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ...orchestration.state import (
    ExecutionContext,
    RunFailure,
    RunStatus,
    StepRecord,
    TERMINAL_STATUSES,
)
from ...ports.context_store import IExecutionContextStore
from ...primitives.exceptions import (
    AlreadyExistsError,
    ConflictError,
    ContextNotFoundError,
    OptimisticLockingError,
)
from .models import ExecutionContextModel, RunStatusColumn
from .uow import SQLAlchemyUnitOfWork

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from ...ports.unit_of_work import UnitOfWork

logger = logging.getLogger("checkout_orchestrator.sqlalchemy.store")

_MUTABLE_EXTRAS = frozenset({"response", "failure", "correlation_id"})


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class SQLAlchemyContextStore(IExecutionContextStore):
    """
    SQLAlchemy-backed :class:`IExecutionContextStore`.

    Step records live in a JSON column that is replaced (never edited in
    place) on every append, and each write bumps the row's ``version`` so a
    concurrent writer that raced past its lease gets
    :class:`~checkout_orchestrator.primitives.exceptions.OptimisticLockingError`
    at commit.

    Mutations passed a :class:`SQLAlchemyUnitOfWork` run on its session and
    become durable when that unit of work commits, together with any entity
    rows the executing step added to the same session.

    Example:
        ```python
        engine = create_async_engine("sqlite+aiosqlite:///:memory:")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        store = SQLAlchemyContextStore(async_sessionmaker(engine, expire_on_commit=False))
        ```
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    def unit_of_work(self) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory=self._session_factory)

    @contextlib.asynccontextmanager
    async def _session(self, uow: UnitOfWork | None) -> AsyncIterator[AsyncSession]:
        if uow is None:
            async with SQLAlchemyUnitOfWork(session_factory=self._session_factory) as own:
                yield own.session
        elif isinstance(uow, SQLAlchemyUnitOfWork):
            yield uow.session
        else:
            raise TypeError(
                f"SQLAlchemyContextStore cannot join {type(uow).__name__}; "
                "use store.unit_of_work()"
            )

    # ── Mapping ──────────────────────────────────────────────────────

    def from_model(self, model: ExecutionContextModel) -> ExecutionContext:
        """Convert a row into the pydantic :class:`ExecutionContext`."""
        return ExecutionContext(
            id=model.id,
            task_kind=model.task_kind,
            request_params=dict(model.request_params or {}),
            entity_ids=list(model.entity_ids or []),
            status=RunStatus(model.status.value),
            steps=[StepRecord.model_validate(s) for s in model.steps or []],
            response=model.response,
            failure=RunFailure.model_validate(model.failure) if model.failure else None,
            correlation_id=model.correlation_id,
            retry_timestamps=[
                _aware(datetime.fromisoformat(ts)) for ts in model.retry_timestamps or []
            ],
            created_at=_aware(model.created_at),
            updated_at=_aware(model.updated_at),
            version=model.version,
        )

    async def _get(
        self, session: AsyncSession, context_id: str
    ) -> ExecutionContextModel:
        model = await session.get(
            ExecutionContextModel, context_id, populate_existing=True
        )
        if model is None:
            raise ContextNotFoundError(context_id)
        return model

    async def _get_mutable(
        self, session: AsyncSession, context_id: str
    ) -> ExecutionContextModel:
        model = await self._get(session, context_id)
        if RunStatus(model.status.value) in TERMINAL_STATUSES:
            raise ConflictError(context_id, model.status.value)
        return model

    @staticmethod
    async def _flush(session: AsyncSession, context_id: str) -> None:
        try:
            await session.flush()
        except StaleDataError as e:
            raise OptimisticLockingError(
                f"Execution context {context_id!r} was modified concurrently"
            ) from e

    @staticmethod
    def _touch(model: ExecutionContextModel) -> None:
        model.updated_at = datetime.now(timezone.utc)
        model.version = model.version + 1

    # ── IExecutionContextStore ───────────────────────────────────────

    async def create(
        self,
        context_id: str,
        task_kind: str,
        request_params: dict[str, Any],
        entity_ids: list[str],
        uow: UnitOfWork | None = None,
    ) -> ExecutionContext:
        context = ExecutionContext(
            id=context_id,
            task_kind=task_kind,
            request_params=dict(request_params),
            entity_ids=list(entity_ids),
        )
        async with self._session(uow) as session:
            if await session.get(ExecutionContextModel, context_id) is not None:
                raise AlreadyExistsError(context_id)
            session.add(
                ExecutionContextModel(
                    id=context.id,
                    task_kind=context.task_kind,
                    status=RunStatusColumn(context.status.value),
                    request_params=context.request_params,
                    entity_ids=context.entity_ids,
                    steps=[],
                    response=None,
                    failure=None,
                    correlation_id=None,
                    retry_timestamps=[],
                    created_at=context.created_at,
                    updated_at=context.updated_at,
                    version=context.version,
                )
            )
            try:
                await session.flush()
            except IntegrityError as e:
                raise AlreadyExistsError(context_id) from e

        logger.debug("Created execution context %s (%s)", context_id, task_kind)
        return context

    async def load(
        self, context_id: str, uow: UnitOfWork | None = None
    ) -> ExecutionContext:
        async with self._session(uow) as session:
            return self.from_model(await self._get(session, context_id))

    async def append_step(
        self,
        context_id: str,
        record: StepRecord,
        *,
        retried_at: datetime | None = None,
        uow: UnitOfWork | None = None,
    ) -> None:
        async with self._session(uow) as session:
            model = await self._get_mutable(session, context_id)
            # JSON columns are not mutation-tracked; assign new lists.
            model.steps = [*(model.steps or []), record.model_dump(mode="json")]
            if retried_at is not None:
                model.retry_timestamps = [
                    *(model.retry_timestamps or []),
                    retried_at.isoformat(),
                ]
            self._touch(model)
            await self._flush(session, context_id)

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

        async with self._session(uow) as session:
            model = await self._get_mutable(session, context_id)
            model.status = RunStatusColumn(status.value)
            if "response" in extra:
                model.response = extra["response"]
            if "failure" in extra:
                failure = extra["failure"]
                model.failure = (
                    failure.model_dump(mode="json")
                    if isinstance(failure, RunFailure)
                    else failure
                )
            if "correlation_id" in extra:
                model.correlation_id = extra["correlation_id"]
            self._touch(model)
            await self._flush(session, context_id)

    async def find_by_correlation_id(
        self, correlation_id: str
    ) -> ExecutionContext | None:
        async with self._session(None) as session:
            stmt = select(ExecutionContextModel).where(
                ExecutionContextModel.correlation_id == correlation_id
            )
            result = await session.execute(stmt)
            model = result.scalars().first()
            return self.from_model(model) if model else None

    async def find_stale_running(
        self, older_than: datetime, limit: int = 10
    ) -> list[ExecutionContext]:
        async with self._session(None) as session:
            stmt = (
                select(ExecutionContextModel)
                .where(
                    ExecutionContextModel.status == RunStatusColumn.RUNNING,
                    ExecutionContextModel.updated_at < older_than,
                )
                .order_by(ExecutionContextModel.updated_at)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [self.from_model(m) for m in result.scalars().all()]
