"""In-memory adapters for tests and single-process deployments."""

from __future__ import annotations

from .context_store import InMemoryContextStore
from .locking import InMemoryLeaseManager
from .messaging import InMemoryConsumer, InMemoryMessageBus, InMemoryPublisher
from .unit_of_work import InMemoryUnitOfWork

__all__ = [
    "InMemoryConsumer",
    "InMemoryContextStore",
    "InMemoryLeaseManager",
    "InMemoryMessageBus",
    "InMemoryPublisher",
    "InMemoryUnitOfWork",
]
