"""Redis-backed lease manager — atomic multi-key leases via Lua scripts."""

from __future__ import annotations

import contextlib
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING
from uuid import uuid4

from ...ports.locking import ActiveLease, ILeaseManager
from ...primitives.exceptions import LeaseBackendError, LockContentionError
from ...primitives.locking import Lease, LeaseSet

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from ...primitives.locking import ResourceIdentifier

logger = logging.getLogger("checkout_orchestrator.redis.locking")

# Returns 0 when every key was granted, otherwise the 1-based index of the
# first key held by another holder. Nothing is written in that case.
_ACQUIRE_SCRIPT = """
for i, key in ipairs(KEYS) do
    local holder = redis.call("HGET", key, "holder")
    if holder and holder ~= ARGV[1] then
        return i
    end
end
for _, key in ipairs(KEYS) do
    redis.call("HSET", key, "holder", ARGV[1], "token", ARGV[2])
    redis.call("PEXPIRE", key, ARGV[3])
end
return 0
"""

_RENEW_SCRIPT = """
for _, key in ipairs(KEYS) do
    if redis.call("HGET", key, "token") ~= ARGV[1] then
        return 0
    end
end
for _, key in ipairs(KEYS) do
    redis.call("PEXPIRE", key, ARGV[2])
end
return 1
"""

_RELEASE_SCRIPT = """
local released = 0
for _, key in ipairs(KEYS) do
    if redis.call("HGET", key, "token") == ARGV[1] then
        redis.call("DEL", key)
        released = released + 1
    end
end
return released
"""


class RedisLeaseManager(ILeaseManager):
    """
    Distributed lease manager for a single Redis instance.

    Each leased resource is a hash ``{holder, token}`` with a millisecond
    TTL. Acquisition checks and writes all keys in one Lua script, so it is
    atomic and all-or-nothing; renew and release are token-checked so a
    holder whose lease expired cannot touch a successor's lease.

    Example:
        ```python
        manager = RedisLeaseManager(redis.asyncio.Redis.from_url(url))
        lease_set = await manager.acquire(
            [ResourceIdentifier.run("ctx_1"), ResourceIdentifier.entity("pg_1")],
            holder="ctx_1",
            ttl=30.0,
        )
        try:
            ...
        finally:
            await manager.release(lease_set)
        ```
    """

    def __init__(self, redis: Redis, prefix: str = "lease") -> None:  # type: ignore[type-arg]
        self._redis = redis
        self._prefix = prefix
        # token -> LeaseSet, for monitoring only; Redis is the source of truth
        self._granted: dict[str, LeaseSet] = {}

    def _key(self, resource: ResourceIdentifier) -> str:
        return f"{self._prefix}:{resource.resource_type}:{resource.resource_id}"

    def _prune_expired(self) -> None:
        now = datetime.now(timezone.utc)
        expired = [
            token
            for token, lease_set in self._granted.items()
            if all(lease.is_expired(now) for lease in lease_set.leases)
        ]
        for token in expired:
            self._granted.pop(token, None)

    async def acquire(
        self,
        resources: list[ResourceIdentifier],
        holder: str,
        *,
        ttl: float = 30.0,
    ) -> LeaseSet:
        ordered = sorted(set(resources))
        keys = [self._key(r) for r in ordered]
        token = str(uuid4())
        self._prune_expired()

        try:
            result = await self._redis.eval(
                _ACQUIRE_SCRIPT, len(keys), *keys, holder, token, int(ttl * 1000)
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Lease acquisition failed for %s: %s", holder, exc)
            raise LeaseBackendError(
                f"Technical failure acquiring leases for {holder}: {exc}"
            ) from exc

        contended = int(result)
        if contended:
            resource = ordered[contended - 1]
            logger.debug("Lease contention on %s for %s", resource, holder)
            raise LockContentionError(resource, holder)

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
        lease_set = LeaseSet(
            holder=holder,
            token=token,
            ttl=ttl,
            leases=[Lease(r, holder, token, expires_at) for r in ordered],
        )
        self._granted[token] = lease_set
        logger.debug("Leases acquired by %s: %s", holder, keys)
        return lease_set

    async def renew(self, lease_set: LeaseSet, *, ttl: float | None = None) -> bool:
        ttl = lease_set.ttl if ttl is None else ttl
        keys = [self._key(r) for r in lease_set.resources]

        try:
            result = await self._redis.eval(
                _RENEW_SCRIPT, len(keys), *keys, lease_set.token, int(ttl * 1000)
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Lease renewal failed for %s: %s", lease_set.holder, exc)
            return False

        if not int(result):
            logger.warning("Leases lost by %s before renewal", lease_set.holder)
            self._granted.pop(lease_set.token, None)
            return False

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
        lease_set.leases = [
            Lease(lease.resource, lease.holder, lease.token, expires_at)
            for lease in lease_set.leases
        ]
        lease_set.ttl = ttl
        return True

    async def release(self, lease_set: LeaseSet) -> None:
        keys = [self._key(r) for r in reversed(lease_set.resources)]
        self._granted.pop(lease_set.token, None)
        try:
            released = await self._redis.eval(
                _RELEASE_SCRIPT, len(keys), *keys, lease_set.token
            )
            logger.debug(
                "Released %s/%d leases for %s", released, len(keys), lease_set.holder
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Failed to release leases for %s: %s (will auto-expire)",
                lease_set.holder,
                exc,
            )

    async def health_check(self) -> bool:
        try:
            await self._redis.ping()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Health check ping failed: %s", exc)
            return False
        return True

    async def get_active_leases(self) -> list[ActiveLease]:
        """Leases granted by this process that have not yet expired locally."""
        self._prune_expired()
        return [
            ActiveLease(
                resource_type=lease.resource.resource_type,
                resource_id=lease.resource.resource_id,
                holder=lease.holder,
                token=lease.token,
                expires_at=lease.expires_at,
            )
            for lease_set in self._granted.values()
            for lease in lease_set.leases
        ]

    async def close(self) -> None:
        """Close the underlying Redis client."""
        with contextlib.suppress(Exception):
            await self._redis.aclose()
        logger.info("RedisLeaseManager closed")
