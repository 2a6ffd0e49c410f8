"""LeaseGuard — scoped acquisition of a run's lease set."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from ..correlation import get_correlation_id
from ..instrumentation import get_hook_registry
from ..primitives.locking import resources_for_run

if TYPE_CHECKING:
    from types import TracebackType

    from ..ports.locking import ILeaseManager
    from ..primitives.locking import LeaseSet

logger = logging.getLogger("checkout_orchestrator.locking")


class LeaseGuard:
    """
    Holds the leases on ``{run_id} ∪ entity_ids`` for the duration of a block.

    Each guard acquires under its own holder (``{run_id}:{nonce}``), so two
    dispatches of the same run exclude each other like any other pair.

    Acquisition on enter is fail-fast and propagates
    :class:`~checkout_orchestrator.primitives.exceptions.LockContentionError`;
    release on exit always runs. :meth:`release` may be called early (for
    example when a run pauses) and makes the exit a no-op.

    Example:
        ```python
        async with LeaseGuard(manager, "ctx_1", ["pg_1", "pg_2"], ttl=30.0) as guard:
            await guard.renew()
            ...
        ```
    """

    def __init__(
        self,
        manager: ILeaseManager,
        run_id: str,
        entity_ids: list[str],
        *,
        ttl: float = 30.0,
    ) -> None:
        self._manager = manager
        self._run_id = run_id
        self._holder = f"{run_id}:{uuid4().hex}"
        self._resources = resources_for_run(run_id, entity_ids)
        self._ttl = ttl
        self._lease_set: LeaseSet | None = None

    @property
    def lease_set(self) -> LeaseSet | None:
        return self._lease_set

    @property
    def holder(self) -> str:
        return self._holder

    @property
    def held(self) -> bool:
        return self._lease_set is not None

    def _attributes(self) -> dict[str, Any]:
        return {
            "run_id": self._run_id,
            "keys": [str(r) for r in self._resources],
            "correlation_id": get_correlation_id(),
        }

    async def acquire(self) -> LeaseSet:
        async def _acquire() -> LeaseSet:
            return await self._manager.acquire(
                self._resources, self._holder, ttl=self._ttl
            )

        self._lease_set = await get_hook_registry().execute_all(
            "lease.acquire", self._attributes(), _acquire
        )
        return self._lease_set

    async def renew(self) -> bool:
        """Extend the held leases; False means they were lost to expiry."""
        if self._lease_set is None:
            return False
        renewed = await self._manager.renew(self._lease_set, ttl=self._ttl)
        if not renewed:
            logger.warning("Run %s lost its leases", self._run_id)
        return renewed

    async def release(self) -> None:
        lease_set, self._lease_set = self._lease_set, None
        if lease_set is None:
            return

        async def _release() -> None:
            await self._manager.release(lease_set)

        await get_hook_registry().execute_all(
            "lease.release", self._attributes(), _release
        )

    async def __aenter__(self) -> LeaseGuard:
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.release()
