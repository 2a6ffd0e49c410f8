"""UnitOfWork — abstract base class for the Unit of Work pattern."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger("checkout_orchestrator.uow")


class UnitOfWork(ABC):
    """
    Abstract base class for Unit of Work implementations.

    The orchestrator opens one unit of work per step attempt and hands it to
    the step, so a step's own entity writes and the step-result append commit
    together or not at all.

    Commit happens BEFORE ``on_commit`` hooks are triggered, so a hook (for
    example a notification publish) only fires once the state is durable.
    """

    def __init__(self) -> None:
        self._on_commit_hooks: deque[Callable[[], Awaitable[Any]]] = deque()

    def on_commit(self, callback: Callable[[], Awaitable[Any]]) -> None:
        """Register an async callback to be executed after a successful commit."""
        self._on_commit_hooks.append(callback)

    async def trigger_commit_hooks(self) -> None:
        """Execute all registered on_commit hooks."""
        while self._on_commit_hooks:
            callback = self._on_commit_hooks.popleft()
            try:
                await callback()
            except Exception as exc:
                logger.error("Error in on_commit hook: %s", exc, exc_info=True)

    @abstractmethod
    async def commit(self) -> None:
        """Commit the transaction."""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """Rollback the transaction."""
        ...

    async def __aenter__(self) -> UnitOfWork:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        """
        Commit on success then fire hooks; rollback (no hooks) on exception.
        """
        if exc_type is None:
            await self.commit()
            await self.trigger_commit_hooks()
        else:
            await self.rollback()
