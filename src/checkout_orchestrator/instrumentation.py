"""Instrumentation hooks — tracing, metrics or logging around orchestrator operations.

Operations are dotted names such as ``orchestrator.start.checkout``,
``orchestrator.step.create_payment_group`` or ``lease.acquire``; hooks
filter them with ``fnmatch`` patterns.
"""

from __future__ import annotations

import fnmatch
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable


@runtime_checkable
class InstrumentationHook(Protocol):
    """Wraps one orchestrator operation; must await *next_handler* exactly once."""

    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any: ...


@dataclass
class HookRegistration:
    """A hook plus the operations it wraps.

    An empty *operations* tuple wraps everything. Lower *priority* runs
    further out. Setting ``enabled = False`` parks the hook in place.
    """

    hook: InstrumentationHook
    operations: tuple[str, ...] = ()
    priority: int = 0
    enabled: bool = True
    _order: int = field(default=0, repr=False)

    def applies_to(self, operation: str) -> bool:
        if not self.enabled:
            return False
        return not self.operations or any(
            fnmatch.fnmatchcase(operation, pattern) for pattern in self.operations
        )


class HookRegistry:
    """Ordered set of :class:`HookRegistration` run around each operation."""

    def __init__(self) -> None:
        self._registrations: list[HookRegistration] = []
        self._registered = 0

    def register(
        self,
        hook: InstrumentationHook,
        *,
        priority: int = 0,
        operations: list[str] | None = None,
        enabled: bool = True,
    ) -> HookRegistration:
        """Add *hook*; equal priorities keep registration order."""
        self._registered += 1
        registration = HookRegistration(
            hook=hook,
            operations=tuple(operations or ()),
            priority=priority,
            enabled=enabled,
            _order=self._registered,
        )
        self._registrations.append(registration)
        self._registrations.sort(key=lambda r: (r.priority, r._order))
        return registration

    def unregister(self, registration: HookRegistration) -> None:
        if registration in self._registrations:
            self._registrations.remove(registration)

    async def execute_all(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run *next_handler* wrapped by every hook that applies to *operation*."""
        handler = next_handler
        for registration in reversed(self._registrations):
            if registration.applies_to(operation):
                handler = _wrap(registration.hook, operation, attributes, handler)
        return await handler()

    def clear(self) -> None:
        self._registrations.clear()


def _wrap(
    hook: InstrumentationHook,
    operation: str,
    attributes: dict[str, Any],
    inner: Callable[[], Awaitable[Any]],
) -> Callable[[], Awaitable[Any]]:
    async def wrapped() -> Any:
        return await hook(operation, attributes, inner)

    return wrapped


_hook_registry_var: ContextVar[HookRegistry | None] = ContextVar(
    "hook_registry", default=None
)


def get_hook_registry() -> HookRegistry:
    """Get the hook registry for the current context.

    Creates a fresh ``HookRegistry`` on first access within each context,
    so tests never leak hooks into each other.
    """
    registry = _hook_registry_var.get()
    if registry is None:
        registry = HookRegistry()
        _hook_registry_var.set(registry)
    return registry


def set_hook_registry(registry: HookRegistry) -> None:
    """Set a custom hook registry in the current context."""
    _hook_registry_var.set(registry)
