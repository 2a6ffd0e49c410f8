"""Orchestration: execution-context model, step registry, retry and the saga driver."""

from __future__ import annotations

from .bridge import EXTERNAL_FAILURE, EXTERNAL_SUCCESS, CompletionBridge
from .config import OrchestratorSettings
from .leases import LeaseGuard
from .notifications import RUN_CONFIRMED, RUN_UPDATED, RunNotifier
from .orchestrator import Orchestrator, RunResult, rolled_back_error
from .retry import (
    ExponentialBackoffPolicy,
    FailureClass,
    LinearBackoffPolicy,
    NoRetryPolicy,
    RetryClassifier,
    RetryPolicy,
    RetryPolicyTable,
)
from .state import (
    ExecutionContext,
    RunFailure,
    RunStatus,
    StepOutcome,
    StepPhase,
    StepRecord,
)
from .steps import (
    AwaitConfirmation,
    StepContext,
    StepDefinition,
    StepRegistry,
    TaskDefinition,
)
from .worker import RunRecoveryWorker

__all__ = [
    "EXTERNAL_FAILURE",
    "EXTERNAL_SUCCESS",
    "RUN_CONFIRMED",
    "RUN_UPDATED",
    "AwaitConfirmation",
    "CompletionBridge",
    "ExecutionContext",
    "ExponentialBackoffPolicy",
    "FailureClass",
    "LeaseGuard",
    "LinearBackoffPolicy",
    "NoRetryPolicy",
    "Orchestrator",
    "OrchestratorSettings",
    "RetryClassifier",
    "RetryPolicy",
    "RetryPolicyTable",
    "RunFailure",
    "RunNotifier",
    "RunRecoveryWorker",
    "RunResult",
    "RunStatus",
    "StepContext",
    "StepDefinition",
    "StepOutcome",
    "StepPhase",
    "StepRecord",
    "StepRegistry",
    "TaskDefinition",
    "rolled_back_error",
]
