"""InMemoryUnitOfWork — staged writes applied atomically on commit."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ...ports.unit_of_work import UnitOfWork

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger("checkout_orchestrator.uow")


class InMemoryUnitOfWork(UnitOfWork):
    """In-memory implementation of UnitOfWork for tests and single-process use.

    Writes are registered with :meth:`stage` and applied in order on
    :meth:`commit`; :meth:`rollback` discards them. Domain steps use the same
    ``stage`` call for their own entity writes, which makes them commit or
    vanish together with the step record.

    A write may return an undo callable. If a later write raises during
    commit, the undos of the writes already applied run in reverse order and
    the unit of work ends rolled back. Commit/rollback calls are counted for
    assertions.
    """

    def __init__(self) -> None:
        super().__init__()
        self._staged: list[Callable[[], Any]] = []
        self.committed: bool = False
        self.rolled_back: bool = False
        self.commit_count: int = 0
        self.rollback_count: int = 0

    def stage(self, write: Callable[[], Any]) -> None:
        """Defer *write* until commit."""
        self._staged.append(write)

    async def commit(self) -> None:
        if self.committed or self.rolled_back:
            return
        staged, self._staged = self._staged, []
        undos: list[Callable[[], None]] = []
        try:
            for write in staged:
                undo = write()
                if callable(undo):
                    undos.append(undo)
        except Exception:
            logger.warning(
                "Staged write failed; undoing %d applied write(s)", len(undos)
            )
            for undo in reversed(undos):
                undo()
            self.rolled_back = True
            self.rollback_count += 1
            raise
        self.committed = True
        self.commit_count += 1

    async def rollback(self) -> None:
        if self.committed or self.rolled_back:
            return
        self._staged.clear()
        self.rolled_back = True
        self.rollback_count += 1
