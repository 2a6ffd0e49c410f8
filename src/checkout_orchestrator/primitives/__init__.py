"""Primitives: exceptions, lease identifiers."""

from __future__ import annotations

from .exceptions import (
    AlreadyExistsError,
    ConcurrencyError,
    ConflictError,
    ContextNotFoundError,
    InfrastructureError,
    LeaseBackendError,
    LeaseLostError,
    LockContentionError,
    NotFoundError,
    OptimisticLockingError,
    OrchestratorConfigurationError,
    OrchestratorError,
    PersistenceError,
    RetryBudgetExhaustedError,
    RunRolledBackError,
    StepError,
    StepNotRegisteredError,
    StepTerminalError,
    StepTransientError,
    UnknownCorrelationError,
    ValidationError,
)
from .locking import Lease, LeaseSet, ResourceIdentifier, resources_for_run

__all__ = [
    "AlreadyExistsError",
    "ConcurrencyError",
    "ConflictError",
    "ContextNotFoundError",
    "InfrastructureError",
    "Lease",
    "LeaseBackendError",
    "LeaseLostError",
    "LeaseSet",
    "LockContentionError",
    "NotFoundError",
    "OptimisticLockingError",
    "OrchestratorConfigurationError",
    "OrchestratorError",
    "PersistenceError",
    "ResourceIdentifier",
    "RetryBudgetExhaustedError",
    "RunRolledBackError",
    "StepError",
    "StepNotRegisteredError",
    "StepTerminalError",
    "StepTransientError",
    "UnknownCorrelationError",
    "ValidationError",
    "resources_for_run",
]
