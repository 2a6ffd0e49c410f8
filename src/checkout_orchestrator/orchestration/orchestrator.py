"""Orchestrator — drives an execution context through its task's step sequence."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict

from .config import OrchestratorSettings
from ..correlation import correlation_scope, get_correlation_id
from ..instrumentation import get_hook_registry
from ..primitives.exceptions import (
    AlreadyExistsError,
    ConcurrencyError,
    ConflictError,
    ContextNotFoundError,
    InfrastructureError,
    LeaseLostError,
    OrchestratorConfigurationError,
    RetryBudgetExhaustedError,
    RunRolledBackError,
    UnknownCorrelationError,
    ValidationError,
)
from ..primitives.locking import ResourceIdentifier
from .leases import LeaseGuard
from .notifications import RunNotifier
from .retry import FailureClass, RetryClassifier
from .state import (
    ExecutionContext,
    RunFailure,
    RunStatus,
    StepOutcome,
    StepPhase,
    StepRecord,
)
from .steps import AwaitConfirmation, StepContext, maybe_await

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..ports.context_store import IExecutionContextStore
    from ..ports.locking import ILeaseManager
    from ..ports.messaging import IMessagePublisher
    from ..ports.unit_of_work import UnitOfWork
    from .retry import RetryPolicyTable
    from .steps import StepDefinition, StepRegistry, TaskDefinition

logger = logging.getLogger("checkout_orchestrator.orchestrator")

EXTERNAL_FAILURE_CODE = "EXTERNAL_FAILURE"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _error_code(exc: BaseException) -> str:
    return getattr(exc, "code", None) or type(exc).__name__


class RunResult(BaseModel):
    """Outcome of ``start`` / ``resume`` / ``resume_by_event``."""

    model_config = ConfigDict(frozen=True)

    status: Literal["completed", "pending", "rolled_back"]
    execution_context_id: str
    response: dict[str, Any] | None = None
    correlation_id: str | None = None
    failure: RunFailure | None = None

    @classmethod
    def from_context(cls, context: ExecutionContext) -> RunResult:
        if context.status is RunStatus.COMPLETED:
            return cls(
                status="completed",
                execution_context_id=context.id,
                response=context.response,
                correlation_id=context.correlation_id,
            )
        if context.status is RunStatus.ROLLED_BACK:
            return cls(
                status="rolled_back",
                execution_context_id=context.id,
                correlation_id=context.correlation_id,
                failure=context.failure,
            )
        return cls(
            status="pending",
            execution_context_id=context.id,
            correlation_id=context.correlation_id,
        )

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"


def rolled_back_error(context: ExecutionContext) -> RunRolledBackError:
    """Rebuild the structured error stored on a ``ROLLED_BACK`` context."""
    failure = context.failure or RunFailure(
        step_name="unknown", code="ROLLED_BACK", message="run was rolled back"
    )
    return RunRolledBackError(
        context.id, failure.step_name, failure.code, failure.message
    )


class Orchestrator:
    """
    Resumable, idempotent saga driver.

    Lifecycle of one dispatch:

    1. A ``COMPLETED`` context replays its stored response without locks
       or steps; ``ROLLED_BACK`` re-raises its stored error and
       ``PENDING_EXTERNAL`` returns the pending result.
    2. Entity ids are resolved lock-free, then leases on
       ``{run id} ∪ entity ids`` are taken fail-fast.
    3. The context is created or loaded and set ``RUNNING``.
    4. Steps run in registry order. A step with an ``EXECUTE``/``SUCCESS``
       record is skipped. Each attempt runs in its own unit of work shared
       with the step. Leases are renewed before it and again before its
       record commits, so a step that outlived its lease leaves no trace.
    5. Transient failures are retried per the step's policy; terminal ones
       (or an exhausted budget) trigger reverse-order compensation and
       ``ROLLED_BACK``.
    6. An asynchronous-boundary step returning :class:`AwaitConfirmation`
       pauses the run in ``PENDING_EXTERNAL`` and every lease is released;
       :meth:`resume_by_event` re-acquires them and continues.

    Leases are always released when the dispatch returns or raises.
    """

    def __init__(
        self,
        store: IExecutionContextStore,
        lease_manager: ILeaseManager,
        registry: StepRegistry,
        *,
        settings: OrchestratorSettings | None = None,
        classifier: RetryClassifier | None = None,
        retry_policies: RetryPolicyTable | None = None,
        publisher: IMessagePublisher | None = None,
        notifier: RunNotifier | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        recovery_trigger: Callable[[], None] | None = None,
    ) -> None:
        self.settings = settings or OrchestratorSettings()
        self.store = store
        self.lease_manager = lease_manager
        self.registry = registry
        self.classifier = classifier or RetryClassifier()
        self.retry_policies = retry_policies or self.settings.retry_policies
        self.notifier = notifier or RunNotifier(
            publisher,
            updated_topic=self.settings.updated_topic,
            confirmed_topic=self.settings.confirmed_topic,
        )
        self._sleep = sleep
        self._recovery_trigger = recovery_trigger

    def set_recovery_trigger(self, callback: Callable[[], None] | None) -> None:
        """Set or clear the callback invoked when a run is left stalled.

        E.g. RunRecoveryWorker.trigger.
        """
        self._recovery_trigger = callback

    # ── Public API ──────────────────────────────────────────────────

    async def start(
        self,
        request_params: dict[str, Any],
        execution_context_id: str | None = None,
        task_kind: str | None = None,
    ) -> RunResult:
        """
        Start (or idempotently re-drive) a run.

        Raises:
            LockContentionError: Another run holds an overlapping lease; retry
                with the same ``execution_context_id``.
            RunRolledBackError: A step failed terminally and the run was
                rolled back (also raised on replay of a rolled-back run).
        """
        run_id = execution_context_id or str(uuid4())
        task = self.registry.get(task_kind)
        with correlation_scope(get_correlation_id() or run_id):
            return await get_hook_registry().execute_all(
                f"orchestrator.start.{task.kind}",
                {
                    "run_id": run_id,
                    "task_kind": task.kind,
                    "correlation_id": get_correlation_id(),
                },
                lambda: self._start(run_id, task, request_params, task_kind),
            )

    async def resume(self, execution_context_id: str) -> RunResult:
        """
        Re-drive a stored context (crash recovery).

        Raises:
            ContextNotFoundError: If nothing is stored under the id.
        """
        context = await self.store.load(execution_context_id)
        task = self.registry.get(context.task_kind)
        with correlation_scope(get_correlation_id() or context.id):
            return await get_hook_registry().execute_all(
                f"orchestrator.resume.{task.kind}",
                {
                    "run_id": context.id,
                    "task_kind": task.kind,
                    "correlation_id": get_correlation_id(),
                },
                lambda: self._resume_existing(task, context),
            )

    async def resume_by_event(
        self,
        correlation_id: str,
        payload: dict[str, Any] | None = None,
        *,
        succeeded: bool = True,
    ) -> RunResult:
        """
        Apply an external completion event to the run paused on *correlation_id*.

        Idempotent: a terminal context is returned unchanged, so duplicate or
        late (success-after-failure, failure-after-success) deliveries are
        no-ops. A rollback caused by the event is reported as a
        ``rolled_back`` result rather than raised.

        Raises:
            UnknownCorrelationError: No context carries *correlation_id*.
            LockContentionError: The run is being driven elsewhere; redeliver.
        """
        with correlation_scope(correlation_id):
            return await get_hook_registry().execute_all(
                "orchestrator.resume_by_event",
                {
                    "correlation_id": correlation_id,
                    "succeeded": succeeded,
                },
                lambda: self._resume_by_event(
                    correlation_id, dict(payload or {}), succeeded
                ),
            )

    # ── Dispatch ────────────────────────────────────────────────────

    async def _start(
        self,
        run_id: str,
        task: TaskDefinition,
        request_params: dict[str, Any],
        task_kind: str | None,
    ) -> RunResult:
        existing = await self._find(run_id)
        if existing is not None:
            if task_kind is not None and existing.task_kind != task_kind:
                raise ValidationError(
                    {
                        "task_kind": [
                            f"run {run_id!r} belongs to task {existing.task_kind!r}"
                        ]
                    }
                )
            return await self._resume_existing(
                self.registry.get(existing.task_kind), existing
            )

        entity_ids = await task.resolve_entities(request_params)
        async with LeaseGuard(
            self.lease_manager, run_id, entity_ids, ttl=self.settings.lease_ttl
        ) as guard:
            try:
                context = await self.store.create(
                    run_id, task.kind, request_params, entity_ids
                )
                logger.info(
                    "Run %s created (%s, entities=%s)", run_id, task.kind, entity_ids
                )
            except AlreadyExistsError:
                # Created concurrently and finished before our lease was granted.
                context = await self.store.load(run_id)
            if context.is_terminal or context.status is RunStatus.PENDING_EXTERNAL:
                return self._replay(context)
            return await self._guarded_drive(task, context, guard)

    async def _resume_existing(
        self, task: TaskDefinition, context: ExecutionContext
    ) -> RunResult:
        if context.is_terminal or context.status is RunStatus.PENDING_EXTERNAL:
            return self._replay(context)

        async with LeaseGuard(
            self.lease_manager,
            context.id,
            context.entity_ids,
            ttl=self.settings.lease_ttl,
        ) as guard:
            # Re-check under the lease: the previous holder may have finished.
            context = await self.store.load(context.id)
            if context.is_terminal or context.status is RunStatus.PENDING_EXTERNAL:
                return self._replay(context)
            logger.info(
                "Resuming run %s after %d recorded step(s)", context.id, len(context.steps)
            )
            return await self._guarded_drive(task, context, guard)

    async def _resume_by_event(
        self, correlation_id: str, payload: dict[str, Any], succeeded: bool
    ) -> RunResult:
        context = await self.store.find_by_correlation_id(correlation_id)
        if context is None:
            raise UnknownCorrelationError(correlation_id)
        if context.is_terminal:
            logger.info(
                "Ignoring %s event for run %s: already %s",
                "success" if succeeded else "failure",
                context.id,
                context.status.value,
            )
            return RunResult.from_context(context)

        task = self.registry.get(context.task_kind)
        async with LeaseGuard(
            self.lease_manager,
            context.id,
            context.entity_ids,
            ttl=self.settings.lease_ttl,
        ) as guard:
            context = await self.store.load(context.id)
            if context.is_terminal:
                return RunResult.from_context(context)

            if context.status is RunStatus.PENDING_EXTERNAL:
                await self._record_confirmation(task, context, payload, succeeded)
                context = await self.store.load(context.id)

            try:
                return await self._guarded_drive(task, context, guard)
            except RunRolledBackError:
                return RunResult.from_context(await self.store.load(context.id))

    async def _record_confirmation(
        self,
        task: TaskDefinition,
        context: ExecutionContext,
        payload: dict[str, Any],
        succeeded: bool,
    ) -> None:
        """Append the CONFIRM record and leave ``PENDING_EXTERNAL`` atomically.

        A failed confirmation keeps the run ``RUNNING``; the next drive sees
        the failed record and rolls back.
        """
        now = _utcnow()
        error = None if succeeded else str(payload.get("reason") or "external failure")
        record = StepRecord(
            step_name=self._boundary_name(task),
            phase=StepPhase.CONFIRM,
            outcome=StepOutcome.SUCCESS if succeeded else StepOutcome.FAILED_TERMINAL,
            started_at=now,
            finished_at=now,
            output=payload,
            error=error,
            error_code=None if succeeded else EXTERNAL_FAILURE_CODE,
        )
        async with self.store.unit_of_work() as uow:
            await self.store.append_step(context.id, record, uow=uow)
            await self.store.set_status(context.id, RunStatus.RUNNING, uow=uow)
        logger.info(
            "Run %s confirmation applied (%s)",
            context.id,
            "success" if succeeded else "failure",
        )

    @staticmethod
    def _boundary_name(task: TaskDefinition) -> str:
        for step in task.steps:
            if step.async_boundary:
                return step.name
        return task.steps[-1].name

    def _replay(self, context: ExecutionContext) -> RunResult:
        if context.status is RunStatus.ROLLED_BACK:
            raise rolled_back_error(context)
        logger.debug("Replaying run %s (%s)", context.id, context.status.value)
        return RunResult.from_context(context)

    async def _find(self, run_id: str) -> ExecutionContext | None:
        try:
            return await self.store.load(run_id)
        except ContextNotFoundError:
            return None

    async def _guarded_drive(
        self, task: TaskDefinition, context: ExecutionContext, guard: LeaseGuard
    ) -> RunResult:
        try:
            return await self._drive(task, context, guard)
        except (RunRolledBackError, ConcurrencyError):
            raise
        except Exception as exc:
            logger.error("Run %s stalled: %s", context.id, exc)
            if self._recovery_trigger is not None:
                try:
                    self._recovery_trigger()
                except Exception:  # noqa: BLE001
                    logger.debug("Recovery trigger callback failed", exc_info=True)
            raise

    async def _drive(
        self, task: TaskDefinition, context: ExecutionContext, guard: LeaseGuard
    ) -> RunResult:
        if context.status is RunStatus.INITIALIZED:
            await self.store.set_status(context.id, RunStatus.RUNNING)
            context = await self.store.load(context.id)

        # A failed confirmation, or a rollback cut short by a crash.
        failed = context.terminal_failure()
        if failed is not None:
            raise await self._rollback(
                task,
                context,
                step_name=failed.step_name,
                code=failed.error_code or EXTERNAL_FAILURE_CODE,
                message=failed.error or "",
            )

        for step in task.steps:
            if context.has_succeeded(step.name):
                logger.debug("Run %s: skipping completed step %s", context.id, step.name)
                continue

            result = await self._run_step(task, step, context, guard)
            context = await self.store.load(context.id)

            if isinstance(result, AwaitConfirmation):
                await self.notifier.run_updated(context, result.output)
                await guard.release()
                logger.info(
                    "Run %s pending external confirmation (correlation_id=%s)",
                    context.id,
                    result.correlation_id,
                )
                return RunResult.from_context(context)
            if step.async_boundary:
                await self.notifier.run_updated(context, result)

        return await self._complete(task, context)

    async def _complete(
        self, task: TaskDefinition, context: ExecutionContext
    ) -> RunResult:
        response = task.build_response(self._step_context(context))
        await self.store.set_status(context.id, RunStatus.COMPLETED, response=response)
        context = await self.store.load(context.id)
        logger.info("Run %s completed", context.id)
        await self.notifier.run_confirmed(context, response)
        return RunResult.from_context(context)

    # ── Steps ───────────────────────────────────────────────────────

    def _step_context(
        self,
        context: ExecutionContext,
        *,
        attempt: int = 1,
        uow: UnitOfWork | None = None,
    ) -> StepContext:
        confirmation = context.confirmation()
        return StepContext(
            run_id=context.id,
            task_kind=context.task_kind,
            request_params=dict(context.request_params),
            entity_ids=list(context.entity_ids),
            outputs=context.step_outputs(),
            external=confirmation.output
            if confirmation is not None and confirmation.succeeded
            else None,
            attempt=attempt,
            uow=uow,
        )

    async def _ensure_leases(
        self,
        context: ExecutionContext,
        guard: LeaseGuard,
        reason: str = "lease expired before the next step",
    ) -> None:
        if not await guard.renew():
            raise LeaseLostError(
                ResourceIdentifier.run(context.id), guard.holder, reason=reason
            )

    async def _invoke(
        self, step: StepDefinition, step_ctx: StepContext
    ) -> dict[str, Any] | AwaitConfirmation:
        async def _call() -> Any:
            return await maybe_await(step.execute(step_ctx))

        result = await get_hook_registry().execute_all(
            f"orchestrator.step.{step.name}",
            {
                "run_id": step_ctx.run_id,
                "step": step.name,
                "attempt": step_ctx.attempt,
                "correlation_id": get_correlation_id(),
            },
            _call,
        )
        if result is None:
            return {}
        if isinstance(result, AwaitConfirmation):
            if not step.async_boundary:
                raise OrchestratorConfigurationError(
                    f"Step {step.name!r} is not an asynchronous boundary "
                    "and cannot await confirmation"
                )
            return result
        if not isinstance(result, dict):
            raise ValidationError(
                {step.name: [f"step returned {type(result).__name__}, expected dict"]}
            )
        return result

    async def _run_step(
        self,
        task: TaskDefinition,
        step: StepDefinition,
        context: ExecutionContext,
        guard: LeaseGuard,
    ) -> dict[str, Any] | AwaitConfirmation:
        policy = self.retry_policies.for_step(step.name)
        attempt = 1

        while True:
            await self._ensure_leases(context, guard)
            started_at = _utcnow()
            try:
                async with self.store.unit_of_work() as uow:
                    result = await self._invoke(
                        step, self._step_context(context, attempt=attempt, uow=uow)
                    )
                    output = (
                        result.output if isinstance(result, AwaitConfirmation) else result
                    )
                    # Commit only while the lease is still ours.
                    await self._ensure_leases(
                        context, guard, reason="lease expired while the step ran"
                    )
                    await self.store.append_step(
                        context.id,
                        StepRecord(
                            step_name=step.name,
                            outcome=StepOutcome.SUCCESS,
                            attempt=attempt,
                            started_at=started_at,
                            finished_at=_utcnow(),
                            output=output,
                        ),
                        uow=uow,
                    )
                    if isinstance(result, AwaitConfirmation):
                        await self.store.set_status(
                            context.id,
                            RunStatus.PENDING_EXTERNAL,
                            uow=uow,
                            correlation_id=result.correlation_id,
                        )
                logger.debug(
                    "Run %s: step %s succeeded (attempt %d)",
                    context.id,
                    step.name,
                    attempt,
                )
                return result
            except (ConflictError, InfrastructureError, LeaseLostError):
                raise
            except Exception as exc:  # noqa: BLE001
                failure = self.classifier.classify(exc)
                retry = failure is FailureClass.TRANSIENT and policy.should_retry(attempt)
                if retry:
                    await self._record_failure(
                        context, step, attempt, started_at, exc, StepOutcome.FAILED_TRANSIENT
                    )
                    delay = policy.delay_for_attempt(attempt)
                    logger.warning(
                        "Run %s: step %s failed transiently: %s. "
                        "Retrying in %.3fs (attempt %d/%d).",
                        context.id,
                        step.name,
                        exc,
                        delay,
                        attempt,
                        policy.max_attempts,
                    )
                    if delay > 0:
                        await self._sleep(delay)
                    attempt += 1
                    context = await self.store.load(context.id)
                    if context.has_succeeded(step.name):
                        raise LeaseLostError(
                            ResourceIdentifier.run(context.id),
                            guard.holder,
                            reason=f"step {step.name!r} recorded by another dispatch",
                        )
                    continue

                error: BaseException = exc
                if failure is FailureClass.TRANSIENT:
                    error = RetryBudgetExhaustedError(step.name, attempt, exc)
                await self._record_failure(
                    context, step, attempt, started_at, error, StepOutcome.FAILED_TERMINAL
                )
                logger.error(
                    "Run %s: step %s failed terminally [%s]: %s",
                    context.id,
                    step.name,
                    _error_code(error),
                    error,
                )
                raise await self._rollback(
                    task,
                    await self.store.load(context.id),
                    step_name=step.name,
                    code=_error_code(error),
                    message=str(error),
                ) from exc

    async def _record_failure(
        self,
        context: ExecutionContext,
        step: StepDefinition,
        attempt: int,
        started_at: datetime,
        exc: BaseException,
        outcome: StepOutcome,
    ) -> None:
        finished_at = _utcnow()
        await self.store.append_step(
            context.id,
            StepRecord(
                step_name=step.name,
                outcome=outcome,
                attempt=attempt,
                started_at=started_at,
                finished_at=finished_at,
                error=str(exc) or type(exc).__name__,
                error_code=_error_code(exc),
            ),
            retried_at=finished_at if outcome is StepOutcome.FAILED_TRANSIENT else None,
        )

    # ── Rollback ────────────────────────────────────────────────────

    async def _rollback(
        self,
        task: TaskDefinition,
        context: ExecutionContext,
        *,
        step_name: str,
        code: str,
        message: str,
    ) -> RunRolledBackError:
        """Compensate successful steps in reverse order, then mark ``ROLLED_BACK``.

        Returns the :class:`RunRolledBackError` for the caller to raise.
        """
        succeeded = [
            r for r in context.steps if r.phase is StepPhase.EXECUTE and r.succeeded
        ]
        done = context.compensated_steps()
        for record in reversed(succeeded):
            step = task.step(record.step_name)
            if step.compensate is None or step.name in done:
                continue
            await self._compensate(context, step, record.output)

        failure = RunFailure(step_name=step_name, code=code, message=message)
        await self.store.set_status(context.id, RunStatus.ROLLED_BACK, failure=failure)
        logger.warning("Run %s rolled back at step %s [%s]", context.id, step_name, code)
        return RunRolledBackError(context.id, step_name, code, message)

    async def _compensate(
        self,
        context: ExecutionContext,
        step: StepDefinition,
        output: dict[str, Any],
    ) -> None:
        """Best-effort compensation; a failure is logged and recorded, never raised."""
        compensate = step.compensate
        assert compensate is not None
        started_at = _utcnow()
        try:
            async with self.store.unit_of_work() as uow:
                step_ctx = self._step_context(context, uow=uow)

                async def _call() -> Any:
                    return await maybe_await(compensate(step_ctx, output))

                await get_hook_registry().execute_all(
                    f"orchestrator.compensate.{step.name}",
                    {
                        "run_id": context.id,
                        "step": step.name,
                        "correlation_id": get_correlation_id(),
                    },
                    _call,
                )
                await self.store.append_step(
                    context.id,
                    StepRecord(
                        step_name=step.name,
                        phase=StepPhase.COMPENSATE,
                        outcome=StepOutcome.SUCCESS,
                        started_at=started_at,
                        finished_at=_utcnow(),
                    ),
                    uow=uow,
                )
            logger.info("Run %s: compensated step %s", context.id, step.name)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Run %s: compensation of step %s failed", context.id, step.name
            )
            await self.store.append_step(
                context.id,
                StepRecord(
                    step_name=step.name,
                    phase=StepPhase.COMPENSATE,
                    outcome=StepOutcome.FAILED_TERMINAL,
                    started_at=started_at,
                    finished_at=_utcnow(),
                    error=str(exc) or type(exc).__name__,
                    error_code=_error_code(exc),
                ),
            )
