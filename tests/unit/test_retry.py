"""Tests for RetryClassifier and the backoff policies."""

from __future__ import annotations

import asyncio

import pytest
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from checkout_orchestrator.orchestration import (
    ExponentialBackoffPolicy,
    FailureClass,
    LinearBackoffPolicy,
    NoRetryPolicy,
    OrchestratorSettings,
    RetryClassifier,
    RetryPolicyTable,
)
from checkout_orchestrator.primitives import (
    LeaseBackendError,
    LockContentionError,
    OptimisticLockingError,
    ResourceIdentifier,
    StepTerminalError,
    StepTransientError,
    ValidationError,
)


class PaymentDeclined(Exception):
    pass


class GatewayTimeout(StepTransientError):
    pass


class TestRetryClassifier:
    @pytest.mark.parametrize(
        "error",
        [
            StepTransientError("timeout"),
            GatewayTimeout("504"),
            OptimisticLockingError("stale"),
            LockContentionError(ResourceIdentifier.entity("pg_1"), "ctx_1"),
            LeaseBackendError("redis down"),
            TimeoutError(),
            asyncio.TimeoutError(),
            ConnectionRefusedError(),
        ],
    )
    def test_transient(self, error: BaseException) -> None:
        assert RetryClassifier().classify(error) is FailureClass.TRANSIENT

    @pytest.mark.parametrize(
        "error",
        [
            StepTerminalError("amount mismatch"),
            ValidationError({"amount": ["must be positive"]}),
            PaymentDeclined(),
            KeyError("pg_1"),
        ],
    )
    def test_terminal(self, error: BaseException) -> None:
        assert RetryClassifier().classify(error) is FailureClass.TERMINAL

    def test_custom_transient_types(self) -> None:
        classifier = RetryClassifier(transient=(PaymentDeclined,))

        assert classifier.is_transient(PaymentDeclined())

    def test_terminal_registration_wins_over_transient_base(self) -> None:
        classifier = RetryClassifier(terminal=(GatewayTimeout,))

        assert classifier.classify(GatewayTimeout("504")) is FailureClass.TERMINAL
        assert classifier.classify(StepTransientError("x")) is FailureClass.TRANSIENT


class TestPolicies:
    def test_exponential_delays_are_capped(self) -> None:
        policy = ExponentialBackoffPolicy(
            max_attempts=5, initial_delay=0.5, multiplier=2, max_delay=3
        )

        assert [policy.delay_for_attempt(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 3.0]

    def test_linear_delays(self) -> None:
        policy = LinearBackoffPolicy(initial_delay=1, increment=0.5, max_delay=1.8)

        assert [policy.delay_for_attempt(n) for n in (1, 2, 3)] == [1.0, 1.5, 1.8]

    def test_max_attempts_counts_first_try(self) -> None:
        policy = ExponentialBackoffPolicy(max_attempts=3)

        assert [policy.should_retry(n) for n in (1, 2, 3)] == [True, True, False]

    def test_no_retry_policy(self) -> None:
        policy = NoRetryPolicy()

        assert policy.should_retry(1) is False
        assert policy.delay_for_attempt(1) == 0.0
        with pytest.raises(PydanticValidationError):
            NoRetryPolicy(max_attempts=2)

    def test_jitter_stays_within_band(self) -> None:
        policy = ExponentialBackoffPolicy(initial_delay=1.0, jitter=True)

        for _ in range(50):
            assert 0.5 <= policy.delay_for_attempt(1) <= 1.5

    def test_rejects_invalid_budget(self) -> None:
        with pytest.raises(PydanticValidationError):
            ExponentialBackoffPolicy(max_attempts=0)

    def test_policies_are_immutable(self) -> None:
        policy = ExponentialBackoffPolicy()

        with pytest.raises(PydanticValidationError):
            policy.max_attempts = 10  # type: ignore[misc]


class TestRetryPolicyTable:
    def test_per_step_override(self) -> None:
        table = RetryPolicyTable(
            default=ExponentialBackoffPolicy(max_attempts=4),
            per_step={"collect_payment": NoRetryPolicy()},
        )

        assert isinstance(table.for_step("collect_payment"), NoRetryPolicy)
        assert table.for_step("generate_invoice").max_attempts == 4

    def test_loads_from_plain_data(self) -> None:
        table = TypeAdapter(RetryPolicyTable).validate_python(
            {
                "default": {"kind": "linear", "initial_delay": 0.2, "max_attempts": 2},
                "per_step": {"collect_payment": {"kind": "none"}},
            }
        )

        assert isinstance(table.default, LinearBackoffPolicy)
        assert isinstance(table.for_step("collect_payment"), NoRetryPolicy)

    def test_settings_carry_the_table(self) -> None:
        settings = OrchestratorSettings.model_validate(
            {
                "lease_ttl": 10,
                "retry_policies": {"default": {"kind": "exponential", "max_attempts": 5}},
            }
        )

        assert settings.retry_policies.for_step("A").max_attempts == 5
        assert settings.success_topic == "external.success"

    def test_blank_step_name_rejected(self) -> None:
        with pytest.raises(PydanticValidationError):
            RetryPolicyTable(per_step={"": NoRetryPolicy()})
