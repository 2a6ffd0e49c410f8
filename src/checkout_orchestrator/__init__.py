"""checkout-orchestrator — resumable, idempotent saga orchestration.

Drives named domain steps to completion exactly once under retry and
concurrency, with lease-based mutual exclusion and an event-driven
completion path. SQLAlchemy and Redis adapters live under
``checkout_orchestrator.adapters`` and are imported explicitly.
"""

from __future__ import annotations

# ── Adapters ────────────────────────────────────────────────────
from .adapters.memory import (
    InMemoryConsumer,
    InMemoryContextStore,
    InMemoryLeaseManager,
    InMemoryMessageBus,
    InMemoryPublisher,
    InMemoryUnitOfWork,
)
from .correlation import (
    correlation_scope,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)
from .envelope import MessageEnvelope
from .instrumentation import (
    HookRegistration,
    HookRegistry,
    InstrumentationHook,
    get_hook_registry,
    set_hook_registry,
)
from .observability import StructuredLoggingHook, install_structured_logging

# ── Orchestration ────────────────────────────────────────────────
from .orchestration import (
    AwaitConfirmation,
    CompletionBridge,
    ExecutionContext,
    ExponentialBackoffPolicy,
    FailureClass,
    LeaseGuard,
    LinearBackoffPolicy,
    NoRetryPolicy,
    Orchestrator,
    OrchestratorSettings,
    RetryClassifier,
    RetryPolicy,
    RetryPolicyTable,
    RunFailure,
    RunNotifier,
    RunRecoveryWorker,
    RunResult,
    RunStatus,
    StepContext,
    StepDefinition,
    StepOutcome,
    StepPhase,
    StepRecord,
    StepRegistry,
    TaskDefinition,
)

# ── Ports ────────────────────────────────────────────────────────
from .ports import (
    ActiveLease,
    IBackgroundWorker,
    IExecutionContextStore,
    ILeaseManager,
    IMessageConsumer,
    IMessagePublisher,
    UnitOfWork,
)

# ── Primitives ───────────────────────────────────────────────────
from .primitives import (
    AlreadyExistsError,
    ConcurrencyError,
    ConflictError,
    ContextNotFoundError,
    InfrastructureError,
    Lease,
    LeaseBackendError,
    LeaseLostError,
    LeaseSet,
    LockContentionError,
    NotFoundError,
    OptimisticLockingError,
    OrchestratorConfigurationError,
    OrchestratorError,
    PersistenceError,
    ResourceIdentifier,
    RetryBudgetExhaustedError,
    RunRolledBackError,
    StepError,
    StepNotRegisteredError,
    StepTerminalError,
    StepTransientError,
    UnknownCorrelationError,
    ValidationError,
)

__version__ = "0.1.0"

__all__ = [
    "ActiveLease",
    "AlreadyExistsError",
    "AwaitConfirmation",
    "CompletionBridge",
    "ConcurrencyError",
    "ConflictError",
    "ContextNotFoundError",
    "ExecutionContext",
    "ExponentialBackoffPolicy",
    "FailureClass",
    "HookRegistration",
    "HookRegistry",
    "IBackgroundWorker",
    "IExecutionContextStore",
    "ILeaseManager",
    "IMessageConsumer",
    "IMessagePublisher",
    "InMemoryConsumer",
    "InMemoryContextStore",
    "InMemoryLeaseManager",
    "InMemoryMessageBus",
    "InMemoryPublisher",
    "InMemoryUnitOfWork",
    "InfrastructureError",
    "InstrumentationHook",
    "Lease",
    "LeaseBackendError",
    "LeaseGuard",
    "LeaseLostError",
    "LeaseSet",
    "LinearBackoffPolicy",
    "LockContentionError",
    "MessageEnvelope",
    "NoRetryPolicy",
    "NotFoundError",
    "OptimisticLockingError",
    "Orchestrator",
    "OrchestratorConfigurationError",
    "OrchestratorError",
    "OrchestratorSettings",
    "PersistenceError",
    "ResourceIdentifier",
    "RetryBudgetExhaustedError",
    "RetryClassifier",
    "RetryPolicy",
    "RetryPolicyTable",
    "RunFailure",
    "RunNotifier",
    "RunRecoveryWorker",
    "RunResult",
    "RunRolledBackError",
    "RunStatus",
    "StepContext",
    "StepDefinition",
    "StepError",
    "StepNotRegisteredError",
    "StepOutcome",
    "StepPhase",
    "StepRecord",
    "StepRegistry",
    "StepTerminalError",
    "StepTransientError",
    "StructuredLoggingHook",
    "TaskDefinition",
    "UnitOfWork",
    "UnknownCorrelationError",
    "ValidationError",
    "correlation_scope",
    "generate_correlation_id",
    "get_correlation_id",
    "get_hook_registry",
    "install_structured_logging",
    "set_correlation_id",
    "set_hook_registry",
]
