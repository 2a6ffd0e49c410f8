"""Exception hierarchy for checkout-orchestrator.

Every error carries a stable ``code`` so transport layers can map it to a
status without string matching.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .locking import ResourceIdentifier


class OrchestratorError(Exception):
    """Root exception for the entire toolkit."""

    code: str = "ORCHESTRATOR_ERROR"


class ConcurrencyError(OrchestratorError):
    """Base class for all concurrency-related conflicts.

    Always classified as transient: the same request may succeed later.
    """

    code = "CONCURRENCY_CONFLICT"


class LockContentionError(ConcurrencyError):
    """A lease key is currently held by a different holder.

    Raised fail-fast by lease managers; nothing stays acquired.
    """

    code = "LOCK_CONTENTION"

    def __init__(
        self,
        resource: ResourceIdentifier,
        holder: str,
        reason: str | None = None,
    ) -> None:
        self.resource = resource
        self.holder = holder
        self.reason = reason

        msg = f"Lease on {resource} is held by another holder (requested by {holder})"
        if reason:
            msg += f" - {reason}"
        super().__init__(msg)


class LeaseLostError(LockContentionError):
    """The driving dispatch no longer holds its leases.

    The step attempt in flight is rolled back and nothing is recorded for it.
    """

    code = "LEASE_LOST"


class OptimisticLockingError(ConcurrencyError):
    """Raised when the persistence layer detects a version mismatch on save."""

    code = "OPTIMISTIC_LOCK_CONFLICT"


class AlreadyExistsError(OrchestratorError):
    """An execution context with the given id already exists; ``load`` it."""

    code = "ALREADY_EXISTS"

    def __init__(self, context_id: str) -> None:
        self.context_id = context_id
        super().__init__(f"Execution context {context_id!r} already exists")


class ConflictError(OrchestratorError):
    """Mutation attempted on a terminal execution context."""

    code = "CONFLICT"

    def __init__(self, context_id: str, status: str) -> None:
        self.context_id = context_id
        self.status = status
        super().__init__(
            f"Execution context {context_id!r} is {status} and cannot be mutated"
        )


class NotFoundError(OrchestratorError):
    """Raised when a resource is not found."""

    code = "NOT_FOUND"


class ContextNotFoundError(NotFoundError):
    """No execution context is stored under the given id."""

    def __init__(self, context_id: str) -> None:
        self.context_id = context_id
        super().__init__(f"Execution context {context_id!r} not found")


class UnknownCorrelationError(NotFoundError):
    """No execution context matches an incoming correlation id."""

    code = "UNKNOWN_CORRELATION"

    def __init__(self, correlation_id: str) -> None:
        self.correlation_id = correlation_id
        super().__init__(f"No execution context with correlation_id={correlation_id!r}")


class ValidationError(OrchestratorError):
    """Raised when input validation fails.

    Carries structured errors: ``{field: [messages]}``.
    """

    code = "VALIDATION_FAILED"

    def __init__(self, errors: dict[str, list[str]] | str | None = None) -> None:
        if isinstance(errors, str):
            self.errors: dict[str, list[str]] = {"__root__": [errors]}
        elif errors is None:
            self.errors = {}
        else:
            self.errors = errors
        super().__init__(str(self.errors))


# ── Step failures ────────────────────────────────────────────────────


class StepError(OrchestratorError):
    """Base class for failures raised by domain steps.

    Steps raise one of the two subclasses so the retry classifier can act
    without inspecting messages. ``code`` may be overridden per instance.
    """

    code = "STEP_FAILED"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        if code is not None:
            self.code = code
        super().__init__(message)


class StepTransientError(StepError):
    """Retryable step failure (network, timeout, downstream unavailable)."""

    code = "STEP_TRANSIENT"


class StepTerminalError(StepError):
    """Fatal step failure (e.g. payable-amount mismatch); triggers rollback."""

    code = "STEP_TERMINAL"


class RetryBudgetExhaustedError(StepError):
    """A transient failure kept recurring until the step's budget ran out."""

    code = "RETRY_BUDGET_EXHAUSTED"

    def __init__(self, step_name: str, attempts: int, last_error: BaseException) -> None:
        self.step_name = step_name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Step {step_name!r} failed after {attempts} attempt(s): {last_error}"
        )


class RunRolledBackError(OrchestratorError):
    """Structured error surfaced to the caller when a run is rolled back.

    Identifies the failing step and carries the step's stable error code.
    """

    code = "RUN_ROLLED_BACK"

    def __init__(
        self,
        context_id: str,
        step_name: str,
        error_code: str,
        message: str,
    ) -> None:
        self.context_id = context_id
        self.step_name = step_name
        self.error_code = error_code
        self.message = message
        super().__init__(
            f"Run {context_id!r} rolled back at step {step_name!r} "
            f"[{error_code}]: {message}"
        )


# ── Configuration ────────────────────────────────────────────────────


class OrchestratorConfigurationError(OrchestratorError):
    """Invalid task or step registration."""

    code = "CONFIGURATION_ERROR"


class StepNotRegisteredError(OrchestratorConfigurationError):
    """Raised when a task kind or step name has no registration."""

    code = "NOT_REGISTERED"


# ── Infrastructure ───────────────────────────────────────────────────


class InfrastructureError(OrchestratorError):
    """Base class for all infrastructure-related errors."""

    code = "INFRASTRUCTURE_ERROR"


class PersistenceError(InfrastructureError):
    """Base class for all persistence-related errors."""


class LeaseBackendError(InfrastructureError, ConcurrencyError):
    """Technical failure talking to the lease backend.

    Combines infrastructure failure with concurrency semantics so callers
    may treat it as retryable contention.
    """

    code = "LEASE_BACKEND_ERROR"
