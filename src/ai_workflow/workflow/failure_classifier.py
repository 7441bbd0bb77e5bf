"""Deterministic error classification for worker retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from ai_workflow.workflow.errors import AiServiceError, WorkflowError
from ai_workflow.workflow.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "connection reset",
    "connection refused",
    "connection error",
    "network error",
    "could not resolve host",
    "dns",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "service unavailable",
    "temporary failure",
    "503",
    "try again later",
)

# Order matters: the first matching rule wins.
_MESSAGE_RULES: tuple[tuple[str, FailureClass, tuple[str, ...]], ...] = (
    ("billing_or_quota", FailureClass.BILLING_OR_QUOTA, _BILLING_OR_QUOTA_PATTERNS),
    ("access_or_auth", FailureClass.ACCESS_OR_AUTH, _ACCESS_OR_AUTH_PATTERNS),
    ("rate_limit", FailureClass.RATE_LIMITED, _RATE_LIMIT_PATTERNS),
    ("timeout", FailureClass.TIMEOUT, _TIMEOUT_PATTERNS),
    ("network", FailureClass.NETWORK, _NETWORK_PATTERNS),
    ("generic_transient", FailureClass.PROVIDER_TRANSIENT, _TRANSIENT_PATTERNS),
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_error(exc: BaseException) -> FailureClassification:
    """Map any exception raised by a stage onto one failure class.

    Typed workflow errors carry their own class.  Builtin timeout and
    connection errors map directly; anything else is matched on its message
    and falls back to ``internal``, which is never retried.
    """

    if isinstance(exc, AiServiceError):
        return FailureClassification(
            failure_class=exc.failure_class,
            reason_code=f"ai_service_{exc.error_type}",
            matched_rule="ai_service_error_type",
            matched_pattern=None,
        )

    if isinstance(exc, WorkflowError):
        return FailureClassification(
            failure_class=exc.failure_class,
            reason_code=_snake_case(type(exc).__name__),
            matched_rule="typed_workflow_error",
            matched_pattern=None,
        )

    if isinstance(exc, TimeoutError):
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code="builtin_timeout",
            matched_rule="builtin_timeout",
            matched_pattern=None,
        )

    if isinstance(exc, ConnectionError):
        return FailureClassification(
            failure_class=FailureClass.NETWORK,
            reason_code="builtin_connection_error",
            matched_rule="builtin_connection",
            matched_pattern=None,
        )

    haystack = str(exc).lower()
    for rule, failure_class, patterns in _MESSAGE_RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                failure_class=failure_class,
                reason_code=f"message_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    return FailureClassification(
        failure_class=FailureClass.INTERNAL,
        reason_code="unclassified_exception",
        matched_rule="fallback_internal",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


def _snake_case(name: str) -> str:
    chars: list[str] = []
    for index, char in enumerate(name):
        if char.isupper() and index > 0:
            chars.append("_")
        chars.append(char.lower())
    return "".join(chars)
