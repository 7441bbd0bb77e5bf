"""One executor per job type, looked up through ``build_executors``."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Generic, Protocol, TypeVar

from ai_workflow.config import AiSettings
from ai_workflow.workflow.backend.base import AiClient, AiResult, Vector, call_with_timeout
from ai_workflow.workflow.entities import (
    PROMPT_CONTENT_SEPARATOR,
    ExtractedEntities,
    build_extraction_prompt,
    extract_corrections,
    parse_entities,
    summarize_entities,
)
from ai_workflow.workflow.errors import (
    AiServiceError,
    ContentValidationError,
    InvalidAiResponseError,
    InvalidTransitionError,
)
from ai_workflow.workflow.failure_classifier import FailureClassification, classify_error
from ai_workflow.workflow.leases import DuplicateWorkGuard
from ai_workflow.workflow.models import (
    AiJobRecordStatus,
    ContentItemView,
    ContentStatus,
    FeedbackView,
    JobType,
    JobView,
    LeaseHandle,
    ProcessingStep,
)
from ai_workflow.workflow.payloads import (
    CONTENT_TYPES,
    AiContentGenerationPayload,
    BrainDumpParsePayload,
    EmbeddingGenerationPayload,
    FeedbackLearningPayload,
    FollowUpJob,
    JobPayload,
)
from ai_workflow.workflow.repository import WorkflowRepository
from ai_workflow.workflow.retry import RETRYABLE_FAILURE_CLASSES
from ai_workflow.workflow.state_machine import (
    ContentTransition,
    begin_processing,
    complete_processing,
    has_reached,
    record_checkpoint,
)

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=JobPayload)

_ERROR_SUMMARY_LIMIT = 500

_GENERATION_TEMPLATES: dict[str, str] = {
    "release_notes": (
        "Write release notes for {audience} in {format} format. Group changes by theme "
        "and call out anything that needs action."
    ),
    "summary": "Summarise the notes below for {audience} in {format} format.",
    "action_items": (
        "List every action item in the notes below with owner and due date when known, "
        "in {format} format."
    ),
    "analysis": (
        "Analyse the notes below for {audience}: risks, open questions and decisions, "
        "in {format} format."
    ),
}


class LearningSink(Protocol):
    """Receives corrections extracted from user feedback."""

    def learn(self, feedback: FeedbackView, entities: list[tuple[str, str]]) -> int:
        """Store corrections; return how many were new."""
        raise NotImplementedError


class RepositoryLearningSink:
    def __init__(self, repository: WorkflowRepository) -> None:
        self.repository = repository

    def learn(self, feedback: FeedbackView, entities: list[tuple[str, str]]) -> int:
        return self.repository.record_learned_entities(
            feedback_id=feedback.feedback_id,
            entities=entities,
        )


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one execution attempt; executors never raise past this."""

    success: bool
    next_jobs: list[FollowUpJob] = field(default_factory=list)
    checkpoint: ProcessingStep | None = None
    failure: FailureClassification | None = None
    error_summary: str | None = None
    retry_after_seconds: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(
        cls,
        *,
        next_jobs: list[FollowUpJob] | None = None,
        checkpoint: ProcessingStep | None = None,
        details: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        return cls(
            success=True,
            next_jobs=next_jobs or [],
            checkpoint=checkpoint,
            details=details or {},
        )

    @classmethod
    def failed(
        cls,
        *,
        failure: FailureClassification,
        error_summary: str,
        retry_after_seconds: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        return cls(
            success=False,
            failure=failure,
            error_summary=error_summary,
            retry_after_seconds=retry_after_seconds,
            details=details or {},
        )


@dataclass(slots=True)
class ExecutionContext:
    """Collaborators shared by every executor."""

    repository: WorkflowRepository
    ai_client: AiClient
    guard: DuplicateWorkGuard
    ai_settings: AiSettings = field(default_factory=AiSettings)
    learning_sink: LearningSink | None = None
    worker_id: str = "worker"

    def now(self) -> datetime:
        return self.repository.now()

    def load_item(self, content_item_id: str) -> ContentItemView:
        item = self.repository.get_content_item(content_item_id)
        if item is None:
            raise ContentValidationError(f"Content item not found: {content_item_id}")
        return item

    def transition(self, item: ContentItemView, transition: ContentTransition) -> ContentItemView:
        """Persist ``transition`` and return the fresh item."""

        applied = self.repository.apply_transition(
            content_item_id=item.content_item_id,
            transition=transition,
        )
        if not applied:
            raise InvalidTransitionError(
                f"Content item {item.content_item_id} changed concurrently "
                f"(expected status {transition.expected_status.value!r})",
            )
        return self.load_item(item.content_item_id)

    def generate(
        self,
        *,
        job: JobView,
        method: str,
        prompt: str,
        options: dict[str, Any],
    ) -> AiResult:
        """Call the provider under the timeout and audit the call."""

        return self._audited_call(
            job=job,
            method=method,
            prompt=prompt,
            options=options,
            call=lambda: self.ai_client.generate(prompt, options),
            measure=lambda result: (result.tokens_used, len(result.text)),
        )

    def embed(
        self,
        *,
        job: JobView,
        texts: list[str],
        options: dict[str, Any],
    ) -> list[Vector]:
        return self._audited_call(
            job=job,
            method="embed",
            prompt="\n".join(texts),
            options={**options, "batch_size": len(texts)},
            call=lambda: self.ai_client.embed(texts, options),
            measure=lambda vectors: (None, len(vectors)),
        )

    def _audited_call(  # noqa: PLR0913
        self,
        *,
        job: JobView,
        method: str,
        prompt: str,
        options: dict[str, Any],
        call: Callable[[], Any],
        measure: Callable[[Any], tuple[int | None, int | None]],
    ) -> Any:
        provider = self.ai_client.provider_name
        record_id = self.repository.create_ai_job_record(
            provider=provider,
            method=method,
            prompt=prompt,
            options=options,
            job_id=job.job_id,
            content_item_id=job.content_item_id,
        )
        try:
            result = call_with_timeout(
                call,
                timeout_seconds=self.ai_settings.timeout_seconds,
                provider=provider,
            )
        except Exception as error:
            self.repository.finish_ai_job_record(
                record_id=record_id,
                status=AiJobRecordStatus.FAILED,
                error_message=_summarize_error(error),
            )
            raise
        tokens_used, response_length = measure(result)
        self.repository.finish_ai_job_record(
            record_id=record_id,
            status=AiJobRecordStatus.COMPLETED,
            tokens_used=tokens_used,
            response_length=response_length,
        )
        return result


class StageExecutor(Generic[P]):
    """Base executor: turns every exception into a classified failed result."""

    job_type: ClassVar[JobType]

    def execute(self, context: ExecutionContext, job: JobView, payload: P) -> ExecutionResult:
        try:
            return self.run(context, job, payload)
        except Exception as error:  # noqa: BLE001
            classification = classify_error(error)
            if classification.matched_rule == "fallback_internal":
                logger.exception(
                    "Unexpected error in %s job %s",
                    self.job_type.value,
                    job.job_id,
                )
            else:
                logger.warning(
                    "%s job %s failed (%s): %s",
                    self.job_type.value,
                    job.job_id,
                    classification.failure_class.value,
                    error,
                )
            return ExecutionResult.failed(
                failure=classification,
                error_summary=_summarize_error(error),
                retry_after_seconds=(
                    error.retry_after if isinstance(error, AiServiceError) else None
                ),
            )

    def run(self, context: ExecutionContext, job: JobView, payload: P) -> ExecutionResult:
        raise NotImplementedError


class BrainDumpParseExecutor(StageExecutor[BrainDumpParsePayload]):
    """Extract entities from a brain dump and summarise them onto the item."""

    job_type = JobType.BRAIN_DUMP_PARSE

    def run(
        self,
        context: ExecutionContext,
        job: JobView,
        payload: BrainDumpParsePayload,
    ) -> ExecutionResult:
        item = context.load_item(payload.content_item_id)
        if item.status is ContentStatus.PROCESSED:
            logger.info("Content %s already processed; verification only", item.content_item_id)
            return ExecutionResult.ok(details={"verified_processed": True})
        if not item.content.strip():
            raise ContentValidationError("Brain dump content is empty")

        item = context.transition(
            item,
            begin_processing(item, ProcessingStep.PARSE_STARTED, now=context.now()),
        )

        stored = ExtractedEntities.from_metadata(item.metadata.get("entities"))
        resumed = False
        if stored is not None and has_reached(item, ProcessingStep.ENTITY_EXTRACTION_COMPLETED):
            resumed = True
            entities = stored
            logger.info(
                "Resuming content %s after entity extraction checkpoint",
                item.content_item_id,
            )
        else:
            answer = context.generate(
                job=job,
                method="extract_entities",
                prompt=build_extraction_prompt(item.content),
                options=payload.options,
            )
            entities = parse_entities(answer.text)
            item = context.transition(
                item,
                record_checkpoint(
                    item,
                    ProcessingStep.ENTITY_EXTRACTION_COMPLETED,
                    now=context.now(),
                    entities=entities.to_metadata(),
                ),
            )

        processing_result = summarize_entities(entities)
        item = context.transition(
            item,
            complete_processing(
                item,
                ProcessingStep.BRAIN_DUMP_PROCESSED,
                now=context.now(),
                processing_result=processing_result,
            ),
        )
        return ExecutionResult.ok(
            next_jobs=[
                FollowUpJob(
                    payload=EmbeddingGenerationPayload(content_item_ids=(item.content_item_id,)),
                ),
            ],
            checkpoint=ProcessingStep.BRAIN_DUMP_PROCESSED,
            details={"resumed": resumed, "entity_count": entities.count()},
        )


class AiContentGenerationExecutor(StageExecutor[AiContentGenerationPayload]):
    """Generate one derived text from an item and store it as an output."""

    job_type = JobType.AI_CONTENT_GENERATION

    def run(
        self,
        context: ExecutionContext,
        job: JobView,
        payload: AiContentGenerationPayload,
    ) -> ExecutionResult:
        if payload.content_type not in CONTENT_TYPES:
            raise ContentValidationError(f"Unsupported content type: {payload.content_type!r}")
        item = context.load_item(payload.content_item_id)
        if not item.content.strip():
            raise ContentValidationError("Content is empty")

        owns_lifecycle = item.status in {ContentStatus.PENDING, ContentStatus.PROCESSING}
        if owns_lifecycle:
            item = context.transition(
                item,
                begin_processing(
                    item,
                    ProcessingStep.CONTENT_GENERATION_STARTED,
                    now=context.now(),
                ),
            )

        options = {**payload.options, "content_type": payload.content_type}
        answer = context.generate(
            job=job,
            method="generate_content",
            prompt=build_generation_prompt(payload.content_type, item.content, payload.options),
            options=options,
        )
        if not answer.text.strip():
            raise InvalidAiResponseError("Provider returned empty content")

        output = context.repository.add_content_output(
            content_item_id=item.content_item_id,
            content_type=payload.content_type,
            text=answer.text,
            model=answer.model,
            confidence=answer.confidence,
            job_id=job.job_id,
        )
        if owns_lifecycle:
            context.transition(
                item,
                complete_processing(
                    item,
                    ProcessingStep.CONTENT_GENERATED,
                    now=context.now(),
                    last_output_id=output.output_id,
                ),
            )

        next_jobs: list[FollowUpJob] = []
        if payload.options.get("generate_embeddings") is True:
            next_jobs.append(
                FollowUpJob(
                    payload=EmbeddingGenerationPayload(content_item_ids=(item.content_item_id,)),
                    delay_seconds=context.ai_settings.followup_embedding_delay_seconds,
                ),
            )
        return ExecutionResult.ok(
            next_jobs=next_jobs,
            checkpoint=ProcessingStep.CONTENT_GENERATED if owns_lifecycle else None,
            details={
                "output_id": output.output_id,
                "model": answer.model,
                "tokens_used": answer.tokens_used,
            },
        )


class FeedbackLearningExecutor(StageExecutor[FeedbackLearningPayload]):
    job_type = JobType.FEEDBACK_LEARNING

    def run(
        self,
        context: ExecutionContext,
        job: JobView,
        payload: FeedbackLearningPayload,
    ) -> ExecutionResult:
        feedback = context.repository.get_feedback(payload.feedback_id)
        if feedback is None:
            raise ContentValidationError(f"Feedback not found: {payload.feedback_id}")
        if feedback.learned_at is not None:
            return ExecutionResult.ok(details={"already_learned": True})

        entities = extract_corrections(feedback.correction)
        sink = context.learning_sink or RepositoryLearningSink(context.repository)
        stored = sink.learn(feedback, entities)
        context.repository.mark_feedback_learned(feedback_id=feedback.feedback_id)
        logger.info(
            "Learned %d corrections (%d new) from feedback %s",
            len(entities),
            stored,
            feedback.feedback_id,
        )
        return ExecutionResult.ok(
            details={"corrections": len(entities), "stored": stored},
        )


class EmbeddingGenerationExecutor(StageExecutor[EmbeddingGenerationPayload]):
    """Embed one item or a batch; each item succeeds or fails on its own."""

    job_type = JobType.EMBEDDING_GENERATION

    def run(
        self,
        context: ExecutionContext,
        job: JobView,
        payload: EmbeddingGenerationPayload,
    ) -> ExecutionResult:
        model = str(payload.options.get("model") or context.ai_settings.embedding_model)
        force = payload.options.get("force_regenerate") is True
        existing = (
            {}
            if force
            else context.repository.get_embeddings(
                content_item_ids=payload.content_item_ids,
                model_name=model,
            )
        )

        outcomes: dict[str, str] = {}
        pending: list[tuple[str, str]] = []
        held: dict[str, LeaseHandle] = {}
        try:
            for index, content_item_id in enumerate(payload.content_item_ids):
                outcome = self._precheck(context, content_item_id, existing)
                if outcome is not None:
                    outcomes[content_item_id] = outcome
                    continue
                if index > 0:
                    handle = context.guard.try_acquire(
                        self.job_type.value,
                        content_item_id,
                        owner=context.worker_id,
                    )
                    if handle is None:
                        outcomes[content_item_id] = "locked"
                        continue
                    held[content_item_id] = handle
                item = context.load_item(content_item_id)
                pending.append((content_item_id, item.content))

            failures = self._embed_all(
                context,
                job,
                pending,
                model,
                payload.options,
                outcomes,
                held=held,
            )
        finally:
            for handle in held.values():
                context.guard.release(handle)

        details: dict[str, Any] = {
            "model": model,
            "outcomes": outcomes,
            "failures": {
                item_id: {
                    "failure_class": failure.failure_class.value,
                    "error": summary,
                }
                for item_id, (failure, summary) in failures.items()
            },
        }
        retryable = [
            (failure, summary)
            for failure, summary in failures.values()
            if failure.failure_class in RETRYABLE_FAILURE_CLASSES
        ]
        if retryable:
            failure, summary = retryable[0]
            return ExecutionResult.failed(
                failure=failure,
                error_summary=(
                    f"{len(failures)} of {len(payload.content_item_ids)} items failed: {summary}"
                ),
                details=details,
            )
        return ExecutionResult.ok(details=details)

    def _precheck(
        self,
        context: ExecutionContext,
        content_item_id: str,
        existing: dict[str, Vector],
    ) -> str | None:
        if content_item_id in existing:
            return "exists"
        item = context.repository.get_content_item(content_item_id)
        if item is None:
            return "missing"
        if item.status is ContentStatus.FAILED:
            return "skipped_failed"
        if not item.content.strip():
            return "skipped_empty"
        return None

    def _embed_all(  # noqa: PLR0913
        self,
        context: ExecutionContext,
        job: JobView,
        pending: list[tuple[str, str]],
        model: str,
        options: dict[str, Any],
        outcomes: dict[str, str],
        *,
        held: dict[str, LeaseHandle],
    ) -> dict[str, tuple[FailureClassification, str]]:
        failures: dict[str, tuple[FailureClassification, str]] = {}
        if not pending:
            return failures
        call_options = {**options, "model": model}

        if len(pending) > 1:
            try:
                vectors = context.embed(
                    job=job,
                    texts=[text for _, text in pending],
                    options=call_options,
                )
                if len(vectors) != len(pending):
                    raise InvalidAiResponseError(
                        f"Expected {len(pending)} vectors, got {len(vectors)}",
                    )
            except Exception as error:  # noqa: BLE001
                logger.warning(
                    "Batch embedding for job %s failed, falling back to single items: %s",
                    job.job_id,
                    error,
                )
            else:
                for (content_item_id, _), vector in zip(pending, vectors, strict=True):
                    self._store(context, content_item_id, model, vector, outcomes)
                return failures

        for content_item_id, text in pending:
            self._renew_pending(context, held, outcomes)
            if outcomes.get(content_item_id) == "locked":
                continue
            try:
                vectors = context.embed(job=job, texts=[text], options=call_options)
                if len(vectors) != 1:
                    raise InvalidAiResponseError(f"Expected 1 vector, got {len(vectors)}")
            except Exception as error:  # noqa: BLE001
                failures[content_item_id] = (classify_error(error), _summarize_error(error))
                outcomes[content_item_id] = "failed"
                continue
            self._store(context, content_item_id, model, vectors[0], outcomes)
        return failures

    def _renew_pending(
        self,
        context: ExecutionContext,
        held: dict[str, LeaseHandle],
        outcomes: dict[str, str],
    ) -> None:
        """Sequential calls can outlast the lease TTL; extend every lease still needed."""

        for content_item_id, handle in held.items():
            if content_item_id in outcomes:
                continue
            if not context.guard.renew(handle):
                outcomes[content_item_id] = "locked"

    def _store(
        self,
        context: ExecutionContext,
        content_item_id: str,
        model: str,
        vector: Vector,
        outcomes: dict[str, str],
    ) -> None:
        context.repository.upsert_embedding(
            content_item_id=content_item_id,
            model_name=model,
            vector=vector,
        )
        outcomes[content_item_id] = "embedded"


def build_generation_prompt(content_type: str, content: str, options: dict[str, Any]) -> str:
    template = _GENERATION_TEMPLATES[content_type]
    instructions = template.format(
        audience=options.get("audience") or "the project team",
        format=options.get("format") or "markdown",
    )
    return f"{instructions}{PROMPT_CONTENT_SEPARATOR}{content}"


def build_executors() -> dict[JobType, StageExecutor[Any]]:
    """Executor lookup table keyed by job type."""

    executors: list[StageExecutor[Any]] = [
        BrainDumpParseExecutor(),
        AiContentGenerationExecutor(),
        FeedbackLearningExecutor(),
        EmbeddingGenerationExecutor(),
    ]
    return {executor.job_type: executor for executor in executors}


def _summarize_error(error: BaseException) -> str:
    text = f"{type(error).__name__}: {error}".strip()
    if len(text) <= _ERROR_SUMMARY_LIMIT:
        return text
    return text[:_ERROR_SUMMARY_LIMIT]
