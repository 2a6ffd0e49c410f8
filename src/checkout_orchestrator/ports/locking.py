"""ILeaseManager — protocol for fail-fast, all-or-nothing distributed leases.

Lease TTL guidance:
- The orchestrator renews the lease set before every step attempt, so the
  TTL only needs to cover the slowest single step plus its backoff delay.
- A crashed holder blocks its keys for at most one TTL; expiry is the only
  timeout mechanism.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime

    from ..primitives.locking import LeaseSet, ResourceIdentifier


@dataclass
class ActiveLease:
    """
    Information about an active lease for monitoring and debugging.

    Returned by ``get_active_leases()`` to show which resources are held
    and by which run.
    """

    resource_type: str
    resource_id: str
    holder: str
    token: str
    expires_at: datetime


@runtime_checkable
class ILeaseManager(Protocol):
    """
    Lease manager protocol for pessimistic, fail-fast concurrency control.

    Implementations acquire every key of a set or none of them, in sorted
    key order, and never queue: a key held by another (non-expired) holder
    makes the whole acquisition fail immediately.
    """

    async def acquire(
        self,
        resources: list[ResourceIdentifier],
        holder: str,
        *,
        ttl: float = 30.0,
    ) -> LeaseSet:
        """
        Acquire leases on all *resources* for *holder*.

        Args:
            resources: Keys to lease; de-duplicated and sorted by the manager.
            holder: Identity of the acquirer, unique per dispatch. Keys
                already held by the same holder are re-granted with a fresh TTL.
            ttl: Seconds until the leases expire unless renewed.

        Returns:
            The granted :class:`LeaseSet`.

        Raises:
            LockContentionError: If any key is held by a different holder.
        """
        ...

    async def renew(self, lease_set: LeaseSet, *, ttl: float | None = None) -> bool:
        """
        Extend every lease in *lease_set* by *ttl* seconds from now.

        Returns:
            True if all leases were still owned and have been extended,
            False if any of them expired or was taken over.
        """
        ...

    async def release(self, lease_set: LeaseSet) -> None:
        """Release every lease in *lease_set* that is still owned by its token."""
        ...

    async def health_check(self) -> bool:
        """Verify that the lease backend is responsive."""
        ...

    async def get_active_leases(self) -> list[ActiveLease]:
        """Return all non-expired leases known to this manager."""
        ...
