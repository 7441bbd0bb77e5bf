"""Controllers for workflow CLI commands."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from ai_workflow.config import Settings
from ai_workflow.workflow.backend import AiClient, EchoAiClient, HashingEmbedder
from ai_workflow.workflow.executors import ExecutionContext, build_executors
from ai_workflow.workflow.leases import DuplicateWorkGuard, SqlLeaseStore
from ai_workflow.workflow.metrics import build_workflow_metrics, render_stats_lines
from ai_workflow.workflow.models import ContentStatus, FeedbackType, JobStatus, JobType, JobView
from ai_workflow.workflow.payloads import BrainDumpParsePayload, FeedbackLearningPayload
from ai_workflow.workflow.repository import WorkflowRepository
from ai_workflow.workflow.retry import RetryPolicy
from ai_workflow.workflow.routing import KNOWN_LANES, QueueRouter, validate_lane
from ai_workflow.workflow.services import WorkflowService
from ai_workflow.workflow.state_machine import resume_point
from ai_workflow.workflow.worker import WorkerPool, WorkerRunSummary, WorkflowWorker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ContentSubmitCommand:
    """CLI input for content submission."""

    db_path: Path | None
    content: str
    content_type: str
    priority: str | None
    lane: str | None


@dataclass(slots=True)
class ContentShowCommand:
    db_path: Path | None
    content_item_id: str


@dataclass(slots=True)
class ContentListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class ContentRedispatchCommand:
    db_path: Path | None
    content_item_id: str


@dataclass(slots=True)
class JobEnqueueCommand:
    """CLI input for a manual enqueue of any job type."""

    db_path: Path | None
    job_type: str
    content_item_ids: tuple[str, ...]
    content_type: str | None = None
    feedback_id: str | None = None
    lane: str | None = None
    priority: str | None = None
    delay_seconds: int = 0
    options: dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    lane: str | None
    job_type: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class StatsCommand:
    """CLI input for queue health stats."""

    db_path: Path | None
    hours: int


@dataclass(slots=True)
class FeedbackAddCommand:
    """CLI input for feedback submission."""

    db_path: Path | None
    content_item_id: str
    feedback_type: str
    corrected_content: str | None = None
    corrections: dict[str, list[str]] = field(default_factory=dict)
    missing_entities: tuple[str, ...] = ()
    confidence: float | None = None
    output_id: str | None = None


@dataclass(slots=True)
class FeedbackEditCommand:
    db_path: Path | None
    feedback_id: str
    corrected_content: str | None
    confidence: float | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    lanes: tuple[str, ...]
    once: bool
    max_tasks: int | None
    max_idle_polls: int = 1


class WorkflowCliController:
    """Coordinates submission, queue inspection and worker CLI operations."""

    def submit_content(self, command: ContentSubmitCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            service = _service(settings, repository)
            result = service.submit_content(
                content=command.content,
                content_type=command.content_type,
                priority=command.priority,
                lane_override=command.lane,
            )

        lines = [
            "Content submitted: "
            f"content_item_id={result.item.content_item_id} "
            f"type={result.item.content_type} status={result.item.status.value}",
        ]
        if result.job is not None:
            lines.append(_job_line("Job enqueued", result.job))
        return lines

    def show_content(self, command: ContentShowCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            item = repository.get_content_item(command.content_item_id)
            if item is None:
                return [f"Content not found: {command.content_item_id}"]
            jobs = repository.list_jobs(content_item_id=item.content_item_id, limit=100)
            outputs = repository.list_content_outputs(content_item_id=item.content_item_id)
            embeddings = repository.get_embeddings(
                content_item_ids=(item.content_item_id,),
                model_name=settings.ai.embedding_model,
            )

        step = resume_point(item)
        lines = [
            f"Content: {item.content_item_id}",
            f"Type: {item.content_type}",
            f"Status: {item.status.value}",
            f"Processing step: {step.value if step is not None else '-'}",
            f"Error: {item.error_message or '-'}",
            f"Embedded: {'yes' if embeddings else 'no'} (model={settings.ai.embedding_model})",
        ]
        result = item.metadata.get("processing_result")
        if isinstance(result, dict):
            lines.append(
                "Result: "
                f"action_items={len(result.get('action_items') or [])} "
                f"stakeholders={len(result.get('stakeholders') or [])} "
                f"projects={len(result.get('projects') or [])} "
                f"entity_count={result.get('entity_count', 0)}",
            )
            for action in result.get("action_items") or []:
                lines.append(f"  action: {action.get('title')} due={action.get('due_date') or '-'}")
        lines.append(f"Outputs: {len(outputs)}")
        for output in outputs:
            lines.append(
                f"  {output.output_id} type={output.content_type} model={output.model} "
                f"chars={len(output.text)}",
            )
        lines.append(f"Jobs: {len(jobs)}")
        for job in jobs:
            lines.append(
                f"  {job.job_id} type={job.job_type.value} status={job.status.value} "
                f"attempt={job.attempt}/{job.max_attempts}",
            )
        return lines

    def list_content(self, command: ContentListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = ContentStatus(command.status.strip().lower()) if command.status else None
        with _repository(settings) as repository:
            items = repository.list_content_items(status=status, limit=command.limit)

        lines = [f"Content items: {len(items)}"]
        for item in items:
            lines.append(
                f"  {item.content_item_id} type={item.content_type} status={item.status.value} "
                f"created_at={item.created_at.isoformat()}",
            )
        return lines

    def redispatch(self, command: ContentRedispatchCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            job = _service(settings, repository).redispatch(command.content_item_id)
        return [_job_line("Content redispatched", job)]

    def enqueue_job(self, command: JobEnqueueCommand) -> list[str]:
        settings = _settings(command.db_path)
        job_type = JobType(command.job_type.strip().lower())
        if not command.content_item_ids:
            raise ValueError("At least one --content-id is required.")
        with _repository(settings) as repository:
            service = _service(settings, repository)
            if job_type is JobType.EMBEDDING_GENERATION:
                job = service.request_embeddings(
                    list(command.content_item_ids),
                    model=_optional_str(command.options.get("model")),
                    force_regenerate=command.options.get("force_regenerate") is True,
                )
            elif job_type is JobType.AI_CONTENT_GENERATION:
                if command.content_type is None:
                    raise ValueError("--content-type is required for ai_content_generation.")
                job = service.request_content_generation(
                    command.content_item_ids[0],
                    command.content_type,
                    options=dict(command.options),
                    lane_override=command.lane,
                    priority_hint=command.priority,
                )
            elif job_type is JobType.FEEDBACK_LEARNING:
                if command.feedback_id is None:
                    raise ValueError("--feedback-id is required for feedback_learning.")
                job = service.enqueue(
                    FeedbackLearningPayload(
                        feedback_id=command.feedback_id,
                        content_item_id=command.content_item_ids[0],
                    ),
                    lane_override=command.lane,
                    delay_seconds=command.delay_seconds,
                )
            else:
                job = service.enqueue(
                    BrainDumpParsePayload(
                        content_item_id=command.content_item_ids[0],
                        options=dict(command.options),
                    ),
                    lane_override=command.lane,
                    priority_hint=command.priority,
                    delay_seconds=command.delay_seconds,
                )
        return [_job_line("Job enqueued", job)]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = JobStatus(command.status.strip().lower()) if command.status else None
        job_type = JobType(command.job_type.strip().lower()) if command.job_type else None
        lane = validate_lane(command.lane) if command.lane else None
        with _repository(settings) as repository:
            jobs = repository.list_jobs(
                status=status,
                lane=lane,
                job_type=job_type,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} type={job.job_type.value} lane={job.lane} "
                f"status={job.status.value} attempt={job.attempt}/{job.max_attempts} "
                f"run_after={job.run_after.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(job_id=command.job_id)
            records = repository.list_ai_job_records(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Type: {job.job_type.value}",
            f"Lane: {job.lane}",
            f"Content: {job.content_item_id}",
            f"Parent: {job.parent_job_id or '-'}",
            f"Status: {job.status.value}",
            f"Attempt: {job.attempt}/{job.max_attempts}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error: {job.error_summary or '-'}",
            f"AI calls: {len(records)}",
        ]
        for record in records:
            lines.append(
                f"  {record.created_at.isoformat()} {record.provider}.{record.method} "
                f"status={record.status.value} tokens={record.tokens_used or '-'}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def stats(self, command: StatsCommand) -> list[str]:
        """Show operator-facing queue health metrics."""

        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            snapshot = build_workflow_metrics(
                repository=repository,
                window_hours=max(1, command.hours),
            )
        return render_stats_lines(snapshot=snapshot, hours=command.hours)

    def add_feedback(self, command: FeedbackAddCommand) -> list[str]:
        settings = _settings(command.db_path)
        correction: dict[str, object] = {
            f"corrected_{entity_type}": list(values)
            for entity_type, values in command.corrections.items()
            if values
        }
        if command.corrected_content:
            correction["corrected_content"] = command.corrected_content
        if command.missing_entities:
            correction["missing_entities"] = list(command.missing_entities)
        with _repository(settings) as repository:
            submission = _service(settings, repository).submit_feedback(
                content_item_id=command.content_item_id,
                feedback_type=FeedbackType(command.feedback_type.strip().lower()),
                correction=correction,
                confidence=command.confidence,
                output_id=command.output_id,
            )

        lines = [
            "Feedback stored: "
            f"feedback_id={submission.feedback.feedback_id} "
            f"type={submission.feedback.feedback_type.value}",
        ]
        if submission.job is None:
            lines.append("Learning not scheduled: content item failed.")
        else:
            lines.append(_job_line("Learning job enqueued", submission.job))
        return lines

    def edit_feedback(self, command: FeedbackEditCommand) -> list[str]:
        settings = _settings(command.db_path)
        correction = (
            {"corrected_content": command.corrected_content}
            if command.corrected_content is not None
            else None
        )
        with _repository(settings) as repository:
            feedback = _service(settings, repository).update_feedback(
                command.feedback_id,
                correction=correction,
                confidence=command.confidence,
            )
        return [
            f"Feedback updated: feedback_id={feedback.feedback_id} "
            f"updated_at={feedback.updated_at.isoformat()}",
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        router = QueueRouter.from_settings(settings.queue)
        lanes = [validate_lane(lane) for lane in command.lanes] or list(KNOWN_LANES)
        with _repository(settings) as repository:
            build_worker = _worker_factory(settings=settings, repository=repository, router=router)
            if command.once:
                summary = build_worker(lanes, "once").run_once()
            else:
                pool = WorkerPool(
                    lanes=[router.lane_config(lane) for lane in lanes],
                    worker_factory=lambda lane, index: build_worker(
                        [lane.name],
                        f"{lane.name}-{index}",
                    ),
                )
                summary = pool.run(
                    max_tasks_per_worker=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
        return [_summary_line(summary)]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _service(settings: Settings, repository: WorkflowRepository) -> WorkflowService:
    return WorkflowService(
        repository=repository,
        router=QueueRouter.from_settings(settings.queue),
        queue_settings=settings.queue,
        feedback_settings=settings.feedback,
    )


def build_ai_client(settings: Settings) -> AiClient:
    """Provider named by ``AI_WORKFLOW_AI_PROVIDER``; only the offline client ships."""

    if settings.ai.provider != "echo":
        raise ValueError(f"Unsupported AI provider: {settings.ai.provider!r}. Use 'echo'.")
    return EchoAiClient(
        embedder=HashingEmbedder(
            model_name=settings.ai.embedding_model,
            dimensions=settings.ai.embedding_dim,
        ),
    )


def _worker_factory(
    *,
    settings: Settings,
    repository: WorkflowRepository,
    router: QueueRouter,
) -> Callable[[list[str], str], WorkflowWorker]:
    ai_client = build_ai_client(settings)
    service = WorkflowService(
        repository=repository,
        router=router,
        queue_settings=settings.queue,
        feedback_settings=settings.feedback,
    )
    guard = DuplicateWorkGuard(
        SqlLeaseStore(repository),
        ttl_seconds=settings.worker.lock_ttl_seconds,
    )
    retry_policy = RetryPolicy(
        base_backoff_seconds=settings.queue.default_backoff_seconds,
        max_attempts=settings.queue.default_max_attempts,
    )

    def build(lanes: list[str], suffix: str) -> WorkflowWorker:
        return WorkflowWorker(
            repository=repository,
            service=service,
            context=ExecutionContext(
                repository=repository,
                ai_client=ai_client,
                guard=guard,
                ai_settings=settings.ai,
                worker_id=f"worker-{os.getpid()}-{suffix}",
            ),
            executors=build_executors(),
            lanes=lanes,
            retry_policy=retry_policy,
            poll_interval_seconds=settings.worker.poll_interval_seconds,
            stale_job_seconds=settings.worker.stale_job_seconds,
        )

    return build


def _job_line(prefix: str, job: JobView) -> str:
    return (
        f"{prefix}: job_id={job.job_id} type={job.job_type.value} lane={job.lane} "
        f"status={job.status.value}"
    )


def _summary_line(summary: WorkerRunSummary) -> str:
    return (
        "Worker summary: "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} retried={summary.retried} "
        f"skipped={summary.skipped} idle_polls={summary.idle_polls}"
    )


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


@contextmanager
def _repository(settings: Settings) -> Iterator[WorkflowRepository]:
    repository = WorkflowRepository(
        db_path=settings.db_path,
        user_id=settings.user_context.user_id,
        user_name=settings.user_context.user_name,
        busy_timeout_ms=settings.worker.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()

