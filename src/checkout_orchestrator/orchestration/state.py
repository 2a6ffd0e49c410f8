"""Execution context model — the durable record of one orchestration run."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    """Lifecycle states of an execution context."""

    INITIALIZED = "INITIALIZED"
    RUNNING = "RUNNING"
    PENDING_EXTERNAL = "PENDING_EXTERNAL"
    COMPLETED = "COMPLETED"
    ROLLED_BACK = "ROLLED_BACK"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.ROLLED_BACK})


class StepOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED_TRANSIENT = "FAILED_TRANSIENT"
    FAILED_TERMINAL = "FAILED_TERMINAL"


class StepPhase(str, Enum):
    """What a step record describes.

    * ``EXECUTE`` — a forward attempt of a registered step.
    * ``CONFIRM`` — an external completion event applied to a paused run.
    * ``COMPENSATE`` — a rollback action for a previously successful step.
    """

    EXECUTE = "EXECUTE"
    CONFIRM = "CONFIRM"
    COMPENSATE = "COMPENSATE"


class StepRecord(BaseModel):
    """Immutable, append-only log entry of a step attempt."""

    model_config = ConfigDict(frozen=True)

    step_name: str
    phase: StepPhase = StepPhase.EXECUTE
    outcome: StepOutcome
    attempt: int = 1
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime = Field(default_factory=_utcnow)
    output: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    error_code: str | None = None

    @model_validator(mode="after")
    def _error_iff_failed(self) -> StepRecord:
        if (self.outcome is StepOutcome.SUCCESS) != (self.error is None):
            raise ValueError("error must be set iff outcome is not SUCCESS")
        return self

    @property
    def succeeded(self) -> bool:
        return self.outcome is StepOutcome.SUCCESS


class RunFailure(BaseModel):
    """Why a run was rolled back; replayed to callers that retry the same id."""

    model_config = ConfigDict(frozen=True)

    step_name: str
    code: str
    message: str


class ExecutionContext(BaseModel):
    """
    One idempotent attempt at the full step sequence for one logical request.

    The record is mutated only by the orchestrator instance holding the run's
    lease; ``COMPLETED`` and ``ROLLED_BACK`` are terminal.
    """

    id: str
    task_kind: str
    request_params: dict[str, Any] = Field(default_factory=dict)
    entity_ids: list[str] = Field(default_factory=list)

    status: RunStatus = RunStatus.INITIALIZED
    steps: list[StepRecord] = Field(default_factory=list)

    response: dict[str, Any] | None = None
    failure: RunFailure | None = None
    correlation_id: str | None = None
    retry_timestamps: list[datetime] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    version: int = 0

    # ── Helpers ──────────────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def has_succeeded(self, step_name: str) -> bool:
        """The step guard: True once an EXECUTE/SUCCESS record exists."""
        return any(
            r.step_name == step_name and r.phase is StepPhase.EXECUTE and r.succeeded
            for r in self.steps
        )

    def step_outputs(self) -> dict[str, dict[str, Any]]:
        """Outputs of every successful forward step, keyed by step name."""
        return {
            r.step_name: r.output
            for r in self.steps
            if r.phase is StepPhase.EXECUTE and r.succeeded
        }

    def confirmation(self) -> StepRecord | None:
        """The external confirmation record, if the paused run was resumed."""
        for r in self.steps:
            if r.phase is StepPhase.CONFIRM:
                return r
        return None

    def terminal_failure(self) -> StepRecord | None:
        """The forward or confirmation record that doomed the run, if any.

        Present on a non-terminal context only when a rollback was interrupted.
        """
        for r in self.steps:
            if r.phase is not StepPhase.COMPENSATE and (
                r.outcome is StepOutcome.FAILED_TERMINAL
            ):
                return r
        return None

    def compensated_steps(self) -> set[str]:
        """Names of steps whose compensation has already been attempted."""
        return {r.step_name for r in self.steps if r.phase is StepPhase.COMPENSATE}

    def touch(self) -> None:
        """Bump ``updated_at`` and the optimistic-concurrency version."""
        self.updated_at = _utcnow()
        self.version += 1
