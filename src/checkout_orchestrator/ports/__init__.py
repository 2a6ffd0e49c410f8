"""Ports — protocols implemented by the adapters."""

from __future__ import annotations

from .background_worker import IBackgroundWorker
from .context_store import IExecutionContextStore
from .locking import ActiveLease, ILeaseManager
from .messaging import IMessageConsumer, IMessagePublisher
from .unit_of_work import UnitOfWork

__all__ = [
    "ActiveLease",
    "IBackgroundWorker",
    "IExecutionContextStore",
    "ILeaseManager",
    "IMessageConsumer",
    "IMessagePublisher",
    "UnitOfWork",
]
