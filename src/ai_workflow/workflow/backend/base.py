"""Provider interface for AI calls made by workflow stages."""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from ai_workflow.workflow.errors import ProviderTimeoutError

T = TypeVar("T")

Vector = list[float]


@dataclass(slots=True)
class AiResult:
    """Text answer of one generation call."""

    text: str
    confidence: float | None
    model: str
    tokens_used: int | None = None


class AiClient(Protocol):
    """Protocol implemented by AI providers.

    Implementations raise ``AiServiceError`` subclasses for provider-side
    failures so the worker can decide between retry and dead-letter.
    """

    provider_name: str

    def generate(self, prompt: str, options: dict[str, Any]) -> AiResult:
        """Return a completion for ``prompt``."""
        raise NotImplementedError

    def embed(self, texts: list[str], options: dict[str, Any]) -> list[Vector]:
        """Encode texts into vectors, one per input, in order."""
        raise NotImplementedError


def call_with_timeout(
    func: Callable[[], T],
    *,
    timeout_seconds: float,
    provider: str | None = None,
) -> T:
    """Run ``func`` and raise ``ProviderTimeoutError`` if it outlives the timeout.

    The call is not cancelled; its thread is abandoned and its result dropped.
    """

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ai-call")
    future = executor.submit(func)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError as error:
        raise ProviderTimeoutError(
            f"AI provider call exceeded {timeout_seconds:g}s",
            provider=provider,
        ) from error
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
