"""Retry classification and per-step backoff policies."""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..primitives.exceptions import (
    ConcurrencyError,
    StepTerminalError,
    StepTransientError,
    ValidationError,
)


class FailureClass(str, Enum):
    TRANSIENT = "TRANSIENT"
    TERMINAL = "TERMINAL"


_DEFAULT_TRANSIENT: tuple[type[BaseException], ...] = (
    StepTransientError,
    ConcurrencyError,
    TimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
)
_DEFAULT_TERMINAL: tuple[type[BaseException], ...] = (
    StepTerminalError,
    ValidationError,
)


class RetryClassifier:
    """
    Maps a step failure to :class:`FailureClass`.

    Terminal types are checked first so a subclass registered as terminal
    wins over a transient base class. Anything unrecognised is terminal.
    """

    def __init__(
        self,
        *,
        transient: tuple[type[BaseException], ...] = (),
        terminal: tuple[type[BaseException], ...] = (),
    ) -> None:
        self._transient = _DEFAULT_TRANSIENT + tuple(transient)
        self._terminal = tuple(terminal) + _DEFAULT_TERMINAL

    def classify(self, error: BaseException) -> FailureClass:
        if isinstance(error, self._terminal):
            return FailureClass.TERMINAL
        if isinstance(error, self._transient):
            return FailureClass.TRANSIENT
        return FailureClass.TERMINAL

    def is_transient(self, error: BaseException) -> bool:
        return self.classify(error) is FailureClass.TRANSIENT


# ── Policies ─────────────────────────────────────────────────────────


class RetryPolicy(BaseModel, ABC):
    """Base class for retry policies; ``max_attempts`` includes the first try."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    jitter: bool = False

    @abstractmethod
    def base_delay(self, attempt: int) -> float:
        """Delay in seconds after the given 1-based failed attempt, before jitter."""
        ...

    def should_retry(self, attempt: int) -> bool:
        """Return True if another attempt is allowed after *attempt* failed."""
        return 1 <= attempt < self.max_attempts

    def delay_for_attempt(self, attempt: int) -> float:
        if attempt < 1:
            return 0.0
        delay = self.base_delay(attempt)
        if self.jitter:
            delay = delay * (0.5 + random.random())  # noqa: S311
        return float(max(0.0, delay))


class ExponentialBackoffPolicy(RetryPolicy):
    """initial_delay * multiplier^(attempt-1), capped by max_delay."""

    kind: Literal["exponential"] = "exponential"
    initial_delay: float = Field(default=0.1, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=5.0, ge=0)

    def base_delay(self, attempt: int) -> float:
        return min(self.initial_delay * (self.multiplier ** (attempt - 1)), self.max_delay)


class LinearBackoffPolicy(RetryPolicy):
    """initial_delay + increment * (attempt-1), capped by max_delay."""

    kind: Literal["linear"] = "linear"
    initial_delay: float = Field(default=0.1, ge=0)
    increment: float = Field(default=0.1, ge=0)
    max_delay: float = Field(default=5.0, ge=0)

    def base_delay(self, attempt: int) -> float:
        return min(self.initial_delay + self.increment * (attempt - 1), self.max_delay)


class NoRetryPolicy(RetryPolicy):
    """Single attempt; a transient failure exhausts the budget immediately."""

    kind: Literal["none"] = "none"
    max_attempts: int = Field(default=1, ge=1, le=1)

    def base_delay(self, attempt: int) -> float:  # noqa: ARG002
        return 0.0


AnyRetryPolicy = Annotated[
    ExponentialBackoffPolicy | LinearBackoffPolicy | NoRetryPolicy,
    Field(discriminator="kind"),
]


class RetryPolicyTable(BaseModel):
    """Step name → retry policy, with a default for unlisted steps."""

    default: AnyRetryPolicy = Field(default_factory=ExponentialBackoffPolicy)
    per_step: dict[str, AnyRetryPolicy] = Field(default_factory=dict)

    @field_validator("per_step")
    @classmethod
    def _no_blank_names(
        cls, value: dict[str, AnyRetryPolicy]
    ) -> dict[str, AnyRetryPolicy]:
        if any(not name for name in value):
            raise ValueError("step names must be non-empty")
        return value

    def for_step(self, step_name: str) -> RetryPolicy:
        return self.per_step.get(step_name, self.default)
