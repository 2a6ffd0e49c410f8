"""Step registry — named, opaque domain steps grouped into task definitions."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..primitives.exceptions import (
    OrchestratorConfigurationError,
    StepNotRegisteredError,
    ValidationError,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from typing import TypeAlias

    from ..ports.unit_of_work import UnitOfWork

    StepOutput: TypeAlias = "dict[str, Any] | AwaitConfirmation"
    ExecuteFn: TypeAlias = "Callable[[StepContext], StepOutput | Awaitable[StepOutput]]"
    CompensateFn: TypeAlias = (
        "Callable[[StepContext, dict[str, Any]], Awaitable[None] | None]"
    )
    EntityResolver: TypeAlias = (
        "Callable[[dict[str, Any]], list[str] | Awaitable[list[str]]]"
    )
    ResponseBuilder: TypeAlias = "Callable[[StepContext], dict[str, Any]]"

logger = logging.getLogger("checkout_orchestrator.steps")


@dataclass
class StepContext:
    """
    Input handed to a step: the run's identity, the request snapshot and the
    outputs of every step that succeeded before it.

    ``external`` carries the payload of the completion event once a paused
    run has been confirmed. ``uow`` is the unit of work the step's own entity
    writes must join so they commit together with the step record.
    """

    run_id: str
    task_kind: str
    request_params: dict[str, Any]
    entity_ids: list[str]
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    external: dict[str, Any] | None = None
    attempt: int = 1
    uow: UnitOfWork | None = None

    def output_of(self, step_name: str) -> dict[str, Any]:
        """Output of a prior step; raises ``KeyError`` if it has not succeeded."""
        return self.outputs[step_name]


@dataclass(frozen=True)
class AwaitConfirmation:
    """
    Returned by an asynchronous-boundary step that could not confirm inline.

    The run pauses in ``PENDING_EXTERNAL`` until an event carrying
    *correlation_id* arrives. *output* is recorded as the step's output.
    """

    correlation_id: str
    output: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StepDefinition:
    """A named step with an optional compensation."""

    name: str
    execute: ExecuteFn
    compensate: CompensateFn | None = None
    async_boundary: bool = False


@dataclass(frozen=True)
class TaskDefinition:
    """
    The ordered step sequence for one ``task_kind``.

    *entity_resolver* derives the entity ids to lock from the request before
    any lease is taken; *response_builder* assembles the final response from
    the accumulated step outputs.
    """

    kind: str
    steps: tuple[StepDefinition, ...]
    entity_resolver: EntityResolver | None = None
    response_builder: ResponseBuilder | None = None

    def __post_init__(self) -> None:
        names = [s.name for s in self.steps]
        if not names:
            raise OrchestratorConfigurationError(f"Task {self.kind!r} has no steps")
        if len(set(names)) != len(names):
            raise OrchestratorConfigurationError(
                f"Task {self.kind!r} has duplicate step names: {names}"
            )
        if sum(1 for s in self.steps if s.async_boundary) > 1:
            raise OrchestratorConfigurationError(
                f"Task {self.kind!r} declares more than one asynchronous boundary"
            )

    def step(self, name: str) -> StepDefinition:
        for definition in self.steps:
            if definition.name == name:
                return definition
        raise StepNotRegisteredError(f"Step {name!r} is not part of task {self.kind!r}")

    async def resolve_entities(self, request_params: dict[str, Any]) -> list[str]:
        """Run the lock-free resolver; returns ordered, de-duplicated ids."""
        if self.entity_resolver is None:
            return []
        resolved = await maybe_await(self.entity_resolver(request_params))
        if not isinstance(resolved, (list, tuple)):
            raise ValidationError(
                {"entity_ids": [f"resolver returned {type(resolved).__name__}"]}
            )
        return list(dict.fromkeys(str(e) for e in resolved))

    def build_response(self, ctx: StepContext) -> dict[str, Any]:
        if self.response_builder is None:
            return {"status": "completed"}
        return dict(self.response_builder(ctx))


async def maybe_await(value: Any) -> Any:
    """Await *value* if it is awaitable so sync and async callables mix."""
    if inspect.isawaitable(value):
        return await value
    return value


class StepRegistry:
    """
    Registry mapping ``task_kind`` to its :class:`TaskDefinition`.

    Usage::

        registry = StepRegistry()
        registry.register(
            "checkout",
            [
                StepDefinition("create_payment_group", create_pg, compensate=void_pg),
                StepDefinition("generate_invoice", invoice),
                StepDefinition("collect_payment", collect, async_boundary=True),
                StepDefinition("finalize_order", finalize),
            ],
            entity_resolver=lambda params: params["payment_group_ids"],
            response_builder=lambda ctx: {
                "status": "completed",
                "checkoutOrderId": ctx.output_of("finalize_order")["order_id"],
            },
        )
    """

    def __init__(self) -> None:
        self._tasks: dict[str, TaskDefinition] = {}
        self._default_kind: str | None = None

    def register(
        self,
        task_kind: str,
        steps: list[StepDefinition],
        *,
        entity_resolver: EntityResolver | None = None,
        response_builder: ResponseBuilder | None = None,
        default: bool = False,
    ) -> TaskDefinition:
        """
        Register the step sequence for *task_kind*.

        The first registered task (or the one flagged ``default``) is used
        when ``start`` is called without a ``task_kind``.
        """
        if task_kind in self._tasks:
            raise OrchestratorConfigurationError(
                f"Task {task_kind!r} is already registered"
            )
        definition = TaskDefinition(
            kind=task_kind,
            steps=tuple(steps),
            entity_resolver=entity_resolver,
            response_builder=response_builder,
        )
        self._tasks[task_kind] = definition
        if default or self._default_kind is None:
            self._default_kind = task_kind
        logger.debug(
            "Registered task %s with steps %s", task_kind, [s.name for s in steps]
        )
        return definition

    def get(self, task_kind: str | None = None) -> TaskDefinition:
        kind = task_kind or self._default_kind
        if kind is None or kind not in self._tasks:
            raise StepNotRegisteredError(f"No task registered for kind {kind!r}")
        return self._tasks[kind]

    def __contains__(self, task_kind: object) -> bool:
        return task_kind in self._tasks

    def kinds(self) -> list[str]:
        return list(self._tasks)

    def clear(self) -> None:
        """Remove all registrations (mostly for tests)."""
        self._tasks.clear()
        self._default_kind = None
