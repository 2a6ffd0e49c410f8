"""InMemoryLeaseManager — testing and single-process implementation of ILeaseManager."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING
from uuid import uuid4

from ...ports.locking import ActiveLease, ILeaseManager
from ...primitives.exceptions import LockContentionError
from ...primitives.locking import Lease, LeaseSet

if TYPE_CHECKING:
    from collections.abc import Callable

    from ...primitives.locking import ResourceIdentifier

logger = logging.getLogger("checkout_orchestrator.locking")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryLeaseManager(ILeaseManager):
    """
    In-memory implementation of ILeaseManager.

    Features:
    - All-or-nothing acquisition in sorted key order
    - Fail-fast contention (no waiting queue)
    - TTL expiry evaluated against an injectable clock
    - Re-grant to the same holder with a fresh token and TTL
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._clock = clock or _utcnow
        self._leases: dict[ResourceIdentifier, Lease] = {}
        self._lock = asyncio.Lock()

    async def acquire(
        self,
        resources: list[ResourceIdentifier],
        holder: str,
        *,
        ttl: float = 30.0,
    ) -> LeaseSet:
        ordered = sorted(set(resources))

        async with self._lock:
            now = self._clock()
            for resource in ordered:
                current = self._leases.get(resource)
                if (
                    current is not None
                    and current.holder != holder
                    and not current.is_expired(now)
                ):
                    logger.debug(
                        "Lease contention on %s: held by %s, requested by %s",
                        resource,
                        current.holder,
                        holder,
                    )
                    raise LockContentionError(
                        resource,
                        holder,
                        reason=f"held by {current.holder} until "
                        f"{current.expires_at.isoformat()}",
                    )

            token = str(uuid4())
            expires_at = now + timedelta(seconds=ttl)
            leases = [Lease(r, holder, token, expires_at) for r in ordered]
            for lease in leases:
                self._leases[lease.resource] = lease

        logger.debug("Leases acquired by %s: %s", holder, [str(r) for r in ordered])
        return LeaseSet(holder=holder, token=token, ttl=ttl, leases=leases)

    async def renew(self, lease_set: LeaseSet, *, ttl: float | None = None) -> bool:
        ttl = lease_set.ttl if ttl is None else ttl

        async with self._lock:
            now = self._clock()
            for lease in lease_set.leases:
                current = self._leases.get(lease.resource)
                if (
                    current is None
                    or current.token != lease_set.token
                    or current.is_expired(now)
                ):
                    logger.warning(
                        "Lease on %s lost by %s before renewal",
                        lease.resource,
                        lease_set.holder,
                    )
                    return False

            expires_at = now + timedelta(seconds=ttl)
            renewed = [
                Lease(lease.resource, lease.holder, lease.token, expires_at)
                for lease in lease_set.leases
            ]
            for lease in renewed:
                self._leases[lease.resource] = lease

        lease_set.leases = renewed
        lease_set.ttl = ttl
        logger.debug("Leases renewed for %s (ttl=%.1fs)", lease_set.holder, ttl)
        return True

    async def release(self, lease_set: LeaseSet) -> None:
        async with self._lock:
            for lease in reversed(lease_set.leases):
                current = self._leases.get(lease.resource)
                if current is None or current.token != lease_set.token:
                    logger.debug(
                        "Skipping release of %s: no longer held by token", lease.resource
                    )
                    continue
                del self._leases[lease.resource]

        logger.debug("Leases released by %s", lease_set.holder)

    async def health_check(self) -> bool:
        """Always healthy: there is no external dependency that could fail."""
        return True

    async def get_active_leases(self) -> list[ActiveLease]:
        async with self._lock:
            now = self._clock()
            return [
                ActiveLease(
                    resource_type=lease.resource.resource_type,
                    resource_id=lease.resource.resource_id,
                    holder=lease.holder,
                    token=lease.token,
                    expires_at=lease.expires_at,
                )
                for lease in self._leases.values()
                if not lease.is_expired(now)
            ]
