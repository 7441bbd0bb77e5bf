from __future__ import annotations

import allure
import pytest

from ai_workflow.workflow.models import FailureClass
from ai_workflow.workflow.retry import RETRYABLE_FAILURE_CLASSES, RetryDecision, RetryPolicy

pytestmark = [
    allure.epic("AI Workflow"),
    allure.feature("Retry Policy"),
]


def test_linear_backoff_grows_with_attempt() -> None:
    policy = RetryPolicy(base_backoff_seconds=120, max_attempts=3)

    assert policy.decide(attempt=1, failure_class=FailureClass.TIMEOUT) == RetryDecision(
        retry=True,
        delay_seconds=120,
        exhausted=False,
    )
    assert policy.decide(attempt=2, failure_class=FailureClass.TIMEOUT).delay_seconds == 240


def test_last_attempt_is_exhausted_for_retryable_class() -> None:
    decision = RetryPolicy(max_attempts=3).decide(attempt=3, failure_class=FailureClass.NETWORK)

    assert decision.retry is False
    assert decision.exhausted is True


@pytest.mark.parametrize(
    "failure_class",
    [
        FailureClass.VALIDATION,
        FailureClass.INVALID_REQUEST,
        FailureClass.ACCESS_OR_AUTH,
        FailureClass.BILLING_OR_QUOTA,
        FailureClass.OUTPUT_INVALID,
        FailureClass.INTERNAL,
    ],
)
def test_non_retryable_classes_fail_immediately(failure_class: FailureClass) -> None:
    decision = RetryPolicy().decide(attempt=1, failure_class=failure_class)

    assert decision == RetryDecision(retry=False, delay_seconds=0, exhausted=False)


def test_retryable_set_covers_transient_failures_only() -> None:
    assert RETRYABLE_FAILURE_CLASSES == {
        FailureClass.TIMEOUT,
        FailureClass.RATE_LIMITED,
        FailureClass.PROVIDER_TRANSIENT,
        FailureClass.NETWORK,
    }


def test_retry_after_hint_only_lengthens_delay() -> None:
    policy = RetryPolicy(base_backoff_seconds=120)

    longer = policy.decide(
        attempt=1,
        failure_class=FailureClass.RATE_LIMITED,
        retry_after_seconds=600,
    )
    shorter = policy.decide(
        attempt=1,
        failure_class=FailureClass.RATE_LIMITED,
        retry_after_seconds=5,
    )

    assert longer.delay_seconds == 600
    assert shorter.delay_seconds == 120


def test_per_job_overrides_take_precedence() -> None:
    policy = RetryPolicy(base_backoff_seconds=120, max_attempts=3)

    decision = policy.decide(
        attempt=3,
        failure_class=FailureClass.TIMEOUT,
        max_attempts=5,
        base_backoff_seconds=10,
    )

    assert decision == RetryDecision(retry=True, delay_seconds=30, exhausted=False)


def test_invalid_policy_values_are_rejected() -> None:
    with pytest.raises(ValueError, match="base_backoff_seconds"):
        RetryPolicy(base_backoff_seconds=-1)
    with pytest.raises(ValueError, match="max_attempts"):
        RetryPolicy(max_attempts=0)
