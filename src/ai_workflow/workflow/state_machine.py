"""Pure content status and checkpoint transitions.

Every function takes the current item and returns a ``ContentTransition``;
nothing here touches storage.  The repository applies a transition with a
conditional update on the status the transition was computed from.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from ai_workflow.storage.common import utc_now
from ai_workflow.workflow.errors import InvalidTransitionError
from ai_workflow.workflow.models import ContentStatus, ProcessingStep

STEP_KEY = "processing_step"
CHECKPOINT_KEY = "last_checkpoint"


class ContentState(Protocol):
    status: ContentStatus
    metadata: dict[str, Any]


@dataclass(slots=True)
class ContentTransition:
    """Target state of one content item plus the status it was computed from."""

    status: ContentStatus
    metadata: dict[str, Any]
    expected_status: ContentStatus
    processed_at: datetime | None = None
    failed_at: datetime | None = None
    error_message: str | None = None
    noop: bool = False


def begin_processing(
    item: ContentState,
    step: ProcessingStep,
    *,
    now: datetime | None = None,
) -> ContentTransition:
    """Move pending or processing content into processing.

    A resumed item keeps a checkpoint that is already past ``step``.
    """

    _require(item, {ContentStatus.PENDING, ContentStatus.PROCESSING}, "begin_processing")
    current = resume_point(item)
    target = step if current is None or current.rank < step.rank else current
    metadata = _checkpoint(item.metadata, target, now=now)
    return ContentTransition(
        status=ContentStatus.PROCESSING,
        metadata=metadata,
        expected_status=item.status,
    )


def record_checkpoint(
    item: ContentState,
    step: ProcessingStep,
    *,
    now: datetime | None = None,
    **extra: Any,
) -> ContentTransition:
    _require(item, {ContentStatus.PROCESSING}, "record_checkpoint")
    metadata = _checkpoint(item.metadata, step, now=now, **extra)
    return ContentTransition(
        status=ContentStatus.PROCESSING,
        metadata=metadata,
        expected_status=item.status,
    )


def complete_processing(
    item: ContentState,
    step: ProcessingStep,
    *,
    now: datetime | None = None,
    **extra: Any,
) -> ContentTransition:
    _require(
        item,
        {ContentStatus.PENDING, ContentStatus.PROCESSING},
        "complete_processing",
    )
    timestamp = now or utc_now()
    metadata = _checkpoint(item.metadata, step, now=timestamp, **extra)
    return ContentTransition(
        status=ContentStatus.PROCESSED,
        metadata=metadata,
        expected_status=item.status,
        processed_at=timestamp,
    )


def fail_processing(
    item: ContentState,
    error: str,
    *,
    now: datetime | None = None,
) -> ContentTransition:
    """Mark content failed; failing an already failed item is a no-op."""

    if item.status is ContentStatus.FAILED:
        return ContentTransition(
            status=ContentStatus.FAILED,
            metadata=dict(item.metadata),
            expected_status=ContentStatus.FAILED,
            noop=True,
        )
    _require(item, {ContentStatus.PENDING, ContentStatus.PROCESSING}, "fail_processing")
    return ContentTransition(
        status=ContentStatus.FAILED,
        metadata=dict(item.metadata),
        expected_status=item.status,
        failed_at=now or utc_now(),
        error_message=error,
    )


def reset_for_redispatch(item: ContentState) -> ContentTransition:
    """Human-initiated failed -> pending, keeping the last checkpoint for resume."""

    _require(item, {ContentStatus.FAILED}, "reset_for_redispatch")
    return ContentTransition(
        status=ContentStatus.PENDING,
        metadata=dict(item.metadata),
        expected_status=ContentStatus.FAILED,
    )


def resume_point(item: ContentState) -> ProcessingStep | None:
    raw = item.metadata.get(STEP_KEY)
    if not isinstance(raw, str):
        return None
    try:
        return ProcessingStep(raw)
    except ValueError:
        return None


def has_reached(item: ContentState, step: ProcessingStep) -> bool:
    current = resume_point(item)
    return current is not None and current.rank >= step.rank


def _checkpoint(
    metadata: dict[str, Any],
    step: ProcessingStep,
    *,
    now: datetime | None,
    **extra: Any,
) -> dict[str, Any]:
    updated = dict(metadata)
    updated.update(extra)
    updated[STEP_KEY] = step.value
    updated[CHECKPOINT_KEY] = (now or utc_now()).isoformat()
    return updated


def _require(item: ContentState, allowed: set[ContentStatus], operation: str) -> None:
    if item.status in allowed:
        return
    raise InvalidTransitionError(
        f"{operation} is not allowed from status {item.status.value!r}",
    )
