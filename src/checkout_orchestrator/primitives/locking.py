"""Lease primitives for multi-resource mutual exclusion."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

RUN_RESOURCE_TYPE = "run"
ENTITY_RESOURCE_TYPE = "entity"


@dataclass(frozen=True)
class ResourceIdentifier:
    """
    Identifies a single leasable resource.

    Examples:
        >>> ResourceIdentifier("run", "ctx_1")
        >>> ResourceIdentifier("entity", "pg_42")
    """

    resource_type: str
    resource_id: str

    def __lt__(self, other: ResourceIdentifier) -> bool:
        """Sorting gives every acquirer the same order (no circular wait)."""
        return (self.resource_type, self.resource_id) < (
            other.resource_type,
            other.resource_id,
        )

    def __str__(self) -> str:
        return f"{self.resource_type}:{self.resource_id}"

    @classmethod
    def run(cls, run_id: str) -> ResourceIdentifier:
        return cls(RUN_RESOURCE_TYPE, run_id)

    @classmethod
    def entity(cls, entity_id: str) -> ResourceIdentifier:
        return cls(ENTITY_RESOURCE_TYPE, entity_id)


def resources_for_run(
    run_id: str, entity_ids: list[str] | tuple[str, ...]
) -> list[ResourceIdentifier]:
    """Return the sorted, de-duplicated key set ``{run_id} ∪ entity_ids``."""
    keys = {ResourceIdentifier.run(run_id)}
    keys.update(ResourceIdentifier.entity(e) for e in entity_ids)
    return sorted(keys)


@dataclass(frozen=True)
class Lease:
    """A granted, time-bounded exclusive hold over one resource."""

    resource: ResourceIdentifier
    holder: str
    token: str
    expires_at: datetime

    @property
    def key(self) -> str:
        return str(self.resource)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


@dataclass
class LeaseSet:
    """All leases granted by one all-or-nothing acquisition."""

    holder: str
    token: str
    ttl: float
    leases: list[Lease] = field(default_factory=list)

    @property
    def resources(self) -> list[ResourceIdentifier]:
        return [lease.resource for lease in self.leases]

    @property
    def keys(self) -> list[str]:
        return [lease.key for lease in self.leases]

    def __len__(self) -> int:
        return len(self.leases)
