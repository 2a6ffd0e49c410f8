"""OrchestratorSettings — runtime configuration, constructed in code."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from .retry import RetryPolicyTable


class OrchestratorSettings(BaseModel):
    """
    Configuration for :class:`~checkout_orchestrator.orchestration.orchestrator.Orchestrator`
    and its companions.

    ``lease_ttl`` must cover the slowest single step plus its retry delay.
    Leases are renewed before every attempt and again before its result
    commits; an attempt that outlives the TTL is rolled back.
    """

    model_config = ConfigDict(frozen=True)

    lease_ttl: float = Field(default=30.0, gt=0)
    retry_policies: RetryPolicyTable = Field(default_factory=RetryPolicyTable)

    # Notification topics
    updated_topic: str = "run.updated"
    confirmed_topic: str = "run.confirmed"
    success_topic: str = "external.success"
    failure_topic: str = "external.failure"

    # Recovery
    stale_after: float = Field(default=300.0, gt=0)
    recovery_poll_interval: float = Field(default=60.0, gt=0)
    recovery_batch_size: int = Field(default=10, ge=1)
