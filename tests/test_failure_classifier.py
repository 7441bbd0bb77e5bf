from __future__ import annotations

import allure

from ai_workflow.workflow.errors import (
    ContentValidationError,
    InvalidAiResponseError,
    ProviderAuthError,
    ProviderTimeoutError,
    RateLimitError,
)
from ai_workflow.workflow.failure_classifier import FAILURE_CLASSIFIER_VERSION, classify_error
from ai_workflow.workflow.models import FailureClass

pytestmark = [
    allure.epic("AI Workflow"),
    allure.feature("Failures & Retry"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


def test_ai_service_errors_use_their_error_type() -> None:
    timeout = classify_error(ProviderTimeoutError())
    assert timeout.failure_class == FailureClass.TIMEOUT
    assert timeout.reason_code == "ai_service_timeout"
    assert timeout.matched_rule == "ai_service_error_type"

    assert classify_error(RateLimitError(retry_after=30)).failure_class == FailureClass.RATE_LIMITED
    assert classify_error(ProviderAuthError()).failure_class == FailureClass.ACCESS_OR_AUTH


def test_typed_workflow_errors_carry_their_class() -> None:
    validation = classify_error(ContentValidationError("empty"))
    assert validation.failure_class == FailureClass.VALIDATION
    assert validation.reason_code == "content_validation_error"
    assert validation.matched_rule == "typed_workflow_error"

    output = classify_error(InvalidAiResponseError("not json"))
    assert output.failure_class == FailureClass.OUTPUT_INVALID


def test_builtin_timeout_and_connection_errors() -> None:
    assert classify_error(TimeoutError()).failure_class == FailureClass.TIMEOUT
    assert classify_error(ConnectionResetError()).failure_class == FailureClass.NETWORK


def test_classifier_prefers_billing_over_transient_message() -> None:
    classified = classify_error(RuntimeError("503: quota exceeded for this project"))

    assert classified.failure_class == FailureClass.BILLING_OR_QUOTA
    assert classified.matched_rule == "billing_or_quota"
    assert classified.matched_pattern == "quota"


def test_classifier_maps_rate_limit_message() -> None:
    classified = classify_error(RuntimeError("HTTP 429 Too Many Requests"))

    assert classified.failure_class == FailureClass.RATE_LIMITED
    assert classified.reason_code == "message_rate_limit"


def test_classifier_falls_back_to_internal() -> None:
    classified = classify_error(KeyError("entities"))

    assert classified.failure_class == FailureClass.INTERNAL
    assert classified.matched_rule == "fallback_internal"
    assert classified.matched_pattern is None


def test_event_details_are_serializable() -> None:
    details = classify_error(ProviderTimeoutError()).to_event_details()

    assert details == {
        "classifier_version": 1,
        "failure_class": "timeout",
        "reason_code": "ai_service_timeout",
        "matched_rule": "ai_service_error_type",
        "matched_pattern": None,
    }
