"""Error taxonomy for workflow execution."""

from __future__ import annotations

from ai_workflow.workflow.models import FailureClass

RETRYABLE_ERROR_TYPES = frozenset(
    {"rate_limit_exceeded", "service_unavailable", "timeout", "network_error"},
)

_ERROR_TYPE_FAILURE_CLASS: dict[str, FailureClass] = {
    "rate_limit_exceeded": FailureClass.RATE_LIMITED,
    "service_unavailable": FailureClass.PROVIDER_TRANSIENT,
    "timeout": FailureClass.TIMEOUT,
    "network_error": FailureClass.NETWORK,
    "invalid_request": FailureClass.INVALID_REQUEST,
    "authentication_failed": FailureClass.ACCESS_OR_AUTH,
    "quota_exceeded": FailureClass.BILLING_OR_QUOTA,
}


class WorkflowError(Exception):
    """Base class for errors raised by workflow stages."""

    failure_class: FailureClass = FailureClass.INTERNAL


class ContentValidationError(WorkflowError):
    """Content cannot be processed as submitted."""

    failure_class = FailureClass.VALIDATION


class InvalidAiResponseError(WorkflowError):
    """Provider answered, but the answer does not match the expected shape."""

    failure_class = FailureClass.OUTPUT_INVALID


class RetryExhaustedError(WorkflowError):
    failure_class = FailureClass.RETRY_EXHAUSTED


class InvalidTransitionError(WorkflowError):
    """Content status change not allowed from the current state."""


class DispatchBlockedError(WorkflowError):
    """Downstream work requested for an item that already failed."""

    failure_class = FailureClass.VALIDATION


class FeedbackEditError(WorkflowError):
    """Feedback can no longer be changed by this user."""

    failure_class = FailureClass.VALIDATION


class AiServiceError(WorkflowError):
    """Failure reported by an AI provider call."""

    def __init__(
        self,
        message: str,
        *,
        error_type: str = "unknown",
        provider: str | None = None,
        retry_after: int | None = None,
    ) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.provider = provider
        self.retry_after = retry_after

    @property
    def failure_class(self) -> FailureClass:  # type: ignore[override]
        return _ERROR_TYPE_FAILURE_CLASS.get(self.error_type, FailureClass.INTERNAL)

    @property
    def is_retryable(self) -> bool:
        return self.error_type in RETRYABLE_ERROR_TYPES


class RateLimitError(AiServiceError):
    def __init__(
        self,
        message: str = "rate limit exceeded",
        *,
        provider: str | None = None,
        retry_after: int | None = None,
    ) -> None:
        super().__init__(
            message,
            error_type="rate_limit_exceeded",
            provider=provider,
            retry_after=retry_after,
        )


class ProviderTimeoutError(AiServiceError):
    def __init__(self, message: str = "provider call timed out", *, provider: str | None = None):
        super().__init__(message, error_type="timeout", provider=provider)


class ProviderNetworkError(AiServiceError):
    def __init__(self, message: str = "network error", *, provider: str | None = None):
        super().__init__(message, error_type="network_error", provider=provider)


class ProviderUnavailableError(AiServiceError):
    def __init__(self, message: str = "service unavailable", *, provider: str | None = None):
        super().__init__(message, error_type="service_unavailable", provider=provider)


class InvalidRequestError(AiServiceError):
    def __init__(self, message: str = "invalid request", *, provider: str | None = None):
        super().__init__(message, error_type="invalid_request", provider=provider)


class ProviderAuthError(AiServiceError):
    def __init__(self, message: str = "authentication failed", *, provider: str | None = None):
        super().__init__(message, error_type="authentication_failed", provider=provider)
