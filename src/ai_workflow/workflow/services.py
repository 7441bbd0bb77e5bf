"""Use-case services: content submission and the enqueue API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from ai_workflow.config import FeedbackSettings, QueueSettings
from ai_workflow.workflow.errors import (
    ContentValidationError,
    DispatchBlockedError,
    InvalidTransitionError,
)
from ai_workflow.workflow.models import (
    ContentItemView,
    ContentStatus,
    FeedbackType,
    FeedbackView,
    JobCreate,
    JobView,
)
from ai_workflow.workflow.payloads import (
    CONTENT_TYPES,
    AiContentGenerationPayload,
    BrainDumpParsePayload,
    EmbeddingGenerationPayload,
    FeedbackLearningPayload,
    FollowUpJob,
    JobPayload,
    payload_from_dict,
    payload_to_dict,
)
from ai_workflow.workflow.repository import WorkflowRepository
from ai_workflow.workflow.routing import URGENT_PRIORITY, QueueRouter
from ai_workflow.workflow.state_machine import reset_for_redispatch

logger = logging.getLogger(__name__)

BRAIN_DUMP_CONTENT_TYPE = "brain_dump"


@dataclass(slots=True)
class SubmissionResult:
    """Stored content item and the first job dispatched for it, if any."""

    item: ContentItemView
    job: JobView | None


@dataclass(slots=True)
class FeedbackSubmission:
    feedback: FeedbackView
    job: JobView | None


class WorkflowService:
    """Single entry point for putting work on the queue."""

    def __init__(
        self,
        *,
        repository: WorkflowRepository,
        router: QueueRouter,
        queue_settings: QueueSettings | None = None,
        feedback_settings: FeedbackSettings | None = None,
    ) -> None:
        self.repository = repository
        self.router = router
        self.queue_settings = queue_settings or QueueSettings()
        self.feedback_settings = feedback_settings or FeedbackSettings()

    def enqueue(  # noqa: PLR0913
        self,
        payload: JobPayload,
        *,
        lane_override: str | None = None,
        priority_hint: str | None = None,
        delay_seconds: int = 0,
        parent_job_id: str | None = None,
    ) -> JobView:
        """Queue one job; duplicate submissions are accepted.

        Downstream work for a failed item is refused with ``DispatchBlockedError``.
        """

        job_type = payload.job_type
        item = self._require_item(payload.content_item_id)
        if not job_type.is_lifecycle and item.status is ContentStatus.FAILED:
            raise DispatchBlockedError(
                f"Content item {item.content_item_id} failed; "
                f"{job_type.value} will not be dispatched",
            )

        hint = priority_hint
        if hint is None and isinstance(item.metadata.get("priority"), str):
            hint = item.metadata["priority"]
        lane = self.router.resolve(job_type, hint, lane_override)
        run_after = (
            self.repository.now() + timedelta(seconds=delay_seconds) if delay_seconds > 0 else None
        )
        job = self.repository.enqueue_job(
            JobCreate(
                job_type=job_type,
                lane=lane,
                content_item_id=item.content_item_id,
                payload=payload_to_dict(payload),
                parent_job_id=parent_job_id,
                max_attempts=self.queue_settings.default_max_attempts,
                backoff_seconds=self.queue_settings.default_backoff_seconds,
                run_after=run_after,
            ),
        )
        logger.info(
            "Enqueued %s job %s on lane %s for content %s",
            job_type.value,
            job.job_id,
            lane,
            item.content_item_id,
        )
        return job

    def dispatch_follow_ups(
        self,
        *,
        parent: JobView,
        follow_ups: list[FollowUpJob],
    ) -> list[JobView]:
        """Enqueue jobs requested by a finished job; blocked ones are logged and dropped."""

        dispatched: list[JobView] = []
        for follow_up in follow_ups:
            try:
                dispatched.append(
                    self.enqueue(
                        follow_up.payload,
                        priority_hint=follow_up.priority_hint,
                        delay_seconds=follow_up.delay_seconds,
                        parent_job_id=parent.job_id,
                    ),
                )
            except DispatchBlockedError as error:
                logger.warning("Follow-up of job %s not dispatched: %s", parent.job_id, error)
        return dispatched

    def submit_content(  # noqa: PLR0913
        self,
        *,
        content: str,
        content_type: str = BRAIN_DUMP_CONTENT_TYPE,
        priority: str | None = None,
        metadata: dict[str, Any] | None = None,
        options: dict[str, Any] | None = None,
        lane_override: str | None = None,
    ) -> SubmissionResult:
        """Store content; brain dumps immediately get a parse job."""

        item_metadata = dict(metadata or {})
        resolved_priority = priority
        if resolved_priority is None and (options or {}).get("urgent") is True:
            resolved_priority = URGENT_PRIORITY
        if resolved_priority is not None:
            item_metadata["priority"] = resolved_priority
        item = self.repository.create_content_item(
            content=content,
            content_type=content_type,
            metadata=item_metadata,
        )
        job = None
        if content_type == BRAIN_DUMP_CONTENT_TYPE:
            job = self.enqueue(
                BrainDumpParsePayload(
                    content_item_id=item.content_item_id,
                    options=dict(options or {}),
                ),
                lane_override=lane_override,
            )
        return SubmissionResult(item=item, job=job)

    def submit_brain_dump(
        self,
        content: str,
        *,
        priority: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> SubmissionResult:
        return self.submit_content(
            content=content,
            content_type=BRAIN_DUMP_CONTENT_TYPE,
            priority=priority,
            options=options,
        )

    def request_content_generation(  # noqa: PLR0913
        self,
        content_item_id: str,
        content_type: str,
        *,
        options: dict[str, Any] | None = None,
        lane_override: str | None = None,
        priority_hint: str | None = None,
    ) -> JobView:
        if content_type not in CONTENT_TYPES:
            raise ContentValidationError(
                f"Unsupported content type: {content_type!r}. "
                f"Use one of {', '.join(CONTENT_TYPES)}.",
            )
        return self.enqueue(
            AiContentGenerationPayload(
                content_item_id=content_item_id,
                content_type=content_type,
                options=dict(options or {}),
            ),
            lane_override=lane_override,
            priority_hint=priority_hint,
        )

    def request_embeddings(
        self,
        content_item_ids: list[str],
        *,
        model: str | None = None,
        force_regenerate: bool = False,
    ) -> JobView:
        """Queue one batch embedding job; failed items are dropped from the batch.

        The first remaining id owns the job. A batch of only failed items is
        refused with ``DispatchBlockedError``.
        """

        if not content_item_ids:
            raise ContentValidationError("At least one content item id is required")
        healthy: list[str] = []
        for content_item_id in content_item_ids:
            item = self.repository.get_content_item(content_item_id)
            if item is not None and item.status is ContentStatus.FAILED:
                logger.warning("Dropping failed content %s from embedding batch", content_item_id)
                continue
            healthy.append(content_item_id)
        if not healthy:
            raise DispatchBlockedError(
                f"Every content item in the batch failed: {', '.join(content_item_ids)}",
            )
        options: dict[str, Any] = {}
        if model is not None:
            options["model"] = model
        if force_regenerate:
            options["force_regenerate"] = True
        return self.enqueue(
            EmbeddingGenerationPayload(content_item_ids=tuple(healthy), options=options),
        )

    def submit_feedback(  # noqa: PLR0913
        self,
        *,
        content_item_id: str,
        feedback_type: FeedbackType,
        correction: dict[str, Any] | None = None,
        confidence: float | None = None,
        output_id: str | None = None,
    ) -> FeedbackSubmission:
        """Store feedback and queue learning unless the item already failed."""

        item = self._require_item(content_item_id)
        if feedback_type is FeedbackType.EDIT and not (correction or {}).get("corrected_content"):
            raise ContentValidationError("Edit feedback requires corrected_content")
        feedback = self.repository.create_feedback(
            content_item_id=content_item_id,
            feedback_type=feedback_type,
            correction=correction,
            confidence=confidence,
            output_id=output_id,
        )
        if item.status is ContentStatus.FAILED:
            logger.warning(
                "Feedback %s stored without learning: content %s failed",
                feedback.feedback_id,
                content_item_id,
            )
            return FeedbackSubmission(feedback=feedback, job=None)
        job = self.enqueue(
            FeedbackLearningPayload(
                feedback_id=feedback.feedback_id,
                content_item_id=content_item_id,
            ),
        )
        return FeedbackSubmission(feedback=feedback, job=job)

    def update_feedback(  # noqa: PLR0913
        self,
        feedback_id: str,
        *,
        user_id: str | None = None,
        correction: dict[str, Any] | None = None,
        feedback_type: FeedbackType | None = None,
        confidence: float | None = None,
    ) -> FeedbackView:
        return self.repository.update_feedback(
            feedback_id=feedback_id,
            user_id=user_id or self.repository.user_id,
            edit_window=timedelta(hours=self.feedback_settings.edit_window_hours),
            correction=correction,
            feedback_type=feedback_type,
            confidence=confidence,
        )

    def redispatch(self, content_item_id: str) -> JobView:
        """Human retry of a failed item: back to pending and re-run its last lifecycle job."""

        item = self._require_item(content_item_id)
        if item.status is not ContentStatus.FAILED:
            raise InvalidTransitionError(
                f"Only failed content can be redispatched, got {item.status.value!r}",
            )
        if not self.repository.apply_transition(
            content_item_id=content_item_id,
            transition=reset_for_redispatch(item),
        ):
            raise InvalidTransitionError(
                f"Content item {content_item_id} changed concurrently while redispatching",
            )

        last = self.repository.find_last_lifecycle_job(content_item_id=content_item_id)
        if last is None:
            payload: JobPayload = BrainDumpParsePayload(content_item_id=content_item_id)
            parent_job_id = None
        else:
            payload = payload_from_dict(last.job_type, last.payload)
            parent_job_id = last.job_id
        logger.info("Redispatching content %s", content_item_id)
        return self.enqueue(payload, parent_job_id=parent_job_id)

    def _require_item(self, content_item_id: str) -> ContentItemView:
        item = self.repository.get_content_item(content_item_id)
        if item is None:
            raise ContentValidationError(f"Content item not found: {content_item_id}")
        return item
