from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from ai_workflow.workflow.models import (
    AiJobRecordStatus,
    ContentStatus,
    FailureClass,
    FeedbackType,
    JobCreate,
    JobStatus,
    JobType,
    ProcessingStep,
)
from ai_workflow.workflow.repository import WorkflowRepository
from ai_workflow.workflow.routing import LANE_EMBEDDINGS, LANE_PROCESSING
from ai_workflow.workflow.state_machine import begin_processing, fail_processing
from tests.conftest import FakeClock

pytestmark = [
    allure.epic("AI Workflow"),
    allure.feature("Persistence"),
]


def _enqueue(
    repository: WorkflowRepository,
    content_item_id: str,
    *,
    job_type: JobType = JobType.BRAIN_DUMP_PARSE,
    lane: str = LANE_PROCESSING,
    **kwargs: object,
):
    return repository.enqueue_job(
        JobCreate(
            job_type=job_type,
            lane=lane,
            content_item_id=content_item_id,
            payload={"content_item_id": content_item_id},
            **kwargs,
        ),
    )


def test_content_item_is_stored_pending_with_metadata(repository: WorkflowRepository) -> None:
    item = repository.create_content_item(
        content="Meeting notes",
        content_type="brain_dump",
        metadata={"priority": "urgent"},
    )

    loaded = repository.get_content_item(item.content_item_id)
    assert loaded is not None
    assert loaded.status is ContentStatus.PENDING
    assert loaded.metadata == {"priority": "urgent"}
    assert loaded.user_id == "default_user"
    assert repository.get_content_item("missing") is None


def test_enqueue_stores_job_and_event_with_foreign_keys_enforced(
    repository: WorkflowRepository,
) -> None:
    with repository.engine.connect() as connection:
        assert connection.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1
    item = repository.create_content_item(content="x", content_type="brain_dump")

    job = _enqueue(repository, item.content_item_id)

    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.job.status is JobStatus.QUEUED
    assert [event.event_type for event in details.events] == ["enqueued"]
    assert details.events[0].status_to is JobStatus.QUEUED
    assert details.events[0].details["lane"] == LANE_PROCESSING


def test_apply_transition_is_compare_and_set(repository: WorkflowRepository) -> None:
    item = repository.create_content_item(content="x", content_type="brain_dump")
    transition = begin_processing(item, ProcessingStep.PARSE_STARTED, now=repository.now())

    assert repository.apply_transition(content_item_id=item.content_item_id, transition=transition)
    assert not repository.apply_transition(
        content_item_id=item.content_item_id,
        transition=transition,
    )

    loaded = repository.get_content_item(item.content_item_id)
    assert loaded.status is ContentStatus.PROCESSING
    assert loaded.metadata["processing_step"] == "parse_started"


def test_failed_transition_stores_error(repository: WorkflowRepository) -> None:
    item = repository.create_content_item(content="x", content_type="brain_dump")

    repository.apply_transition(
        content_item_id=item.content_item_id,
        transition=fail_processing(item, "ContentValidationError: empty", now=repository.now()),
    )

    loaded = repository.get_content_item(item.content_item_id)
    assert loaded.status is ContentStatus.FAILED
    assert loaded.error_message == "ContentValidationError: empty"
    assert loaded.failed_at == repository.now()


def test_claim_respects_lanes_and_run_after(
    repository: WorkflowRepository,
    clock: FakeClock,
) -> None:
    item = repository.create_content_item(content="x", content_type="brain_dump")
    delayed = _enqueue(repository, item.content_item_id, run_after=clock() + timedelta(seconds=60))
    other_lane = _enqueue(
        repository,
        item.content_item_id,
        job_type=JobType.EMBEDDING_GENERATION,
        lane=LANE_EMBEDDINGS,
    )

    assert repository.claim_next_ready_job(worker_id="w", lanes=[LANE_PROCESSING]) is None

    clock.advance(60)
    claimed = repository.claim_next_ready_job(worker_id="w", lanes=[LANE_PROCESSING])
    assert claimed is not None
    assert claimed.job_id == delayed.job_id
    assert claimed.status is JobStatus.RUNNING
    assert claimed.attempt == 1
    assert claimed.worker_id == "w"

    embedding = repository.claim_next_ready_job(worker_id="w", lanes=[LANE_EMBEDDINGS])
    assert embedding.job_id == other_lane.job_id


def test_claim_is_fifo_within_lane(repository: WorkflowRepository, clock: FakeClock) -> None:
    item = repository.create_content_item(content="x", content_type="brain_dump")
    first = _enqueue(repository, item.content_item_id)
    clock.advance(1)
    second = _enqueue(repository, item.content_item_id)

    claimed = [
        repository.claim_next_ready_job(worker_id="w", lanes=[LANE_PROCESSING]).job_id
        for _ in range(2)
    ]

    assert claimed == [first.job_id, second.job_id]
    assert repository.claim_next_ready_job(worker_id="w", lanes=[LANE_PROCESSING]) is None


def test_retry_keeps_attempt_and_terminal_updates_need_running(
    repository: WorkflowRepository,
    clock: FakeClock,
) -> None:
    item = repository.create_content_item(content="x", content_type="brain_dump")
    job = _enqueue(repository, item.content_item_id)
    repository.claim_next_ready_job(worker_id="w", lanes=[LANE_PROCESSING])

    assert repository.schedule_retry(
        job_id=job.job_id,
        run_after=clock() + timedelta(seconds=120),
        delay_seconds=120,
        failure_class=FailureClass.TIMEOUT,
        error_summary="ProviderTimeoutError: slow",
    )
    requeued = repository.get_job(job.job_id)
    assert requeued.status is JobStatus.QUEUED
    assert requeued.attempt == 1
    assert requeued.failure_class is FailureClass.TIMEOUT
    assert requeued.worker_id is None

    assert not repository.complete_job(job_id=job.job_id)
    assert not repository.kill_job(
        job_id=job.job_id,
        failure_class=FailureClass.INTERNAL,
        error_summary="x",
    )

    clock.advance(120)
    reclaimed = repository.claim_next_ready_job(worker_id="w", lanes=[LANE_PROCESSING])
    assert reclaimed.attempt == 2
    assert repository.complete_job(job_id=job.job_id, details={"ok": True})

    details = repository.get_job_details(job_id=job.job_id)
    assert [event.event_type for event in details.events] == [
        "enqueued",
        "claimed",
        "retry_scheduled",
        "claimed",
        "succeeded",
    ]
    assert details.events[2].details["delay_seconds"] == 120
    assert details.job.finished_at is not None


def test_stale_running_job_is_recovered(repository: WorkflowRepository, clock: FakeClock) -> None:
    item = repository.create_content_item(content="x", content_type="brain_dump")
    job = _enqueue(repository, item.content_item_id)
    repository.claim_next_ready_job(worker_id="crashed", lanes=[LANE_PROCESSING])

    assert repository.recover_stale_running_jobs(stale_after_seconds=60) == 0
    clock.advance(61)
    assert repository.recover_stale_running_jobs(stale_after_seconds=60) == 1

    recovered = repository.get_job(job.job_id)
    assert recovered.status is JobStatus.QUEUED
    assert recovered.attempt == 1


def test_find_last_lifecycle_job_ignores_downstream(repository: WorkflowRepository) -> None:
    item = repository.create_content_item(content="x", content_type="brain_dump")
    parse = _enqueue(repository, item.content_item_id)
    embed = _enqueue(
        repository,
        item.content_item_id,
        job_type=JobType.EMBEDDING_GENERATION,
        lane=LANE_EMBEDDINGS,
    )
    for lanes in ([LANE_PROCESSING], [LANE_EMBEDDINGS]):
        claimed = repository.claim_next_ready_job(worker_id="w", lanes=lanes)
        repository.kill_job(
            job_id=claimed.job_id,
            failure_class=FailureClass.VALIDATION,
            error_summary="bad",
        )

    last = repository.find_last_lifecycle_job(content_item_id=item.content_item_id)

    assert last is not None
    assert last.job_id == parse.job_id
    assert repository.get_job(embed.job_id).status is JobStatus.DEAD


def test_ai_job_record_stores_prompt_hash_only(repository: WorkflowRepository) -> None:
    record_id = repository.create_ai_job_record(
        provider="echo",
        method="extract_entities",
        prompt="secret brain dump",
        options={"model": "echo-1"},
    )

    assert repository.finish_ai_job_record(
        record_id=record_id,
        status=AiJobRecordStatus.COMPLETED,
        tokens_used=12,
        response_length=40,
    )
    assert not repository.finish_ai_job_record(
        record_id=record_id,
        status=AiJobRecordStatus.FAILED,
    )
    with pytest.raises(ValueError, match="completed or failed"):
        repository.finish_ai_job_record(record_id=record_id, status=AiJobRecordStatus.PROCESSING)

    (record,) = repository.list_ai_job_records()
    assert record.status is AiJobRecordStatus.COMPLETED
    assert record.prompt_length == len("secret brain dump")
    assert len(record.prompt_hash) == 64
    assert "secret" not in record.prompt_hash
    assert record.tokens_used == 12
    assert record.completed_at is not None


def test_feedback_is_learned_once_and_entities_are_deduplicated(
    repository: WorkflowRepository,
) -> None:
    item = repository.create_content_item(content="x", content_type="brain_dump")
    feedback = repository.create_feedback(
        content_item_id=item.content_item_id,
        feedback_type=FeedbackType.CORRECTION,
        correction={"corrected_projects": ["Project Alpha"]},
    )

    pairs = [("projects", "Project Alpha"), ("projects", "Project Alpha")]
    assert repository.record_learned_entities(feedback_id=feedback.feedback_id, entities=pairs) == 1
    assert repository.record_learned_entities(feedback_id=feedback.feedback_id, entities=pairs) == 0
    assert repository.mark_feedback_learned(feedback_id=feedback.feedback_id)
    assert not repository.mark_feedback_learned(feedback_id=feedback.feedback_id)

    stored = repository.list_learned_entities(feedback_id=feedback.feedback_id)
    assert [(row.entity_type, row.value) for row in stored] == [("projects", "Project Alpha")]
    assert repository.get_feedback(feedback.feedback_id).learned_at is not None


def test_embeddings_are_upserted_per_model(repository: WorkflowRepository) -> None:
    item = repository.create_content_item(content="x", content_type="notes")

    repository.upsert_embedding(
        content_item_id=item.content_item_id,
        model_name="hashing-384",
        vector=[0.5, 0.25],
    )
    repository.upsert_embedding(
        content_item_id=item.content_item_id,
        model_name="hashing-384",
        vector=[1.0, 0.0, 0.0],
    )

    assert repository.get_embeddings(
        content_item_ids=[item.content_item_id],
        model_name="hashing-384",
    ) == {item.content_item_id: [1.0, 0.0, 0.0]}
    assert (
        repository.get_embeddings(content_item_ids=[item.content_item_id], model_name="other") == {}
    )
    assert repository.get_embeddings(content_item_ids=[], model_name="hashing-384") == {}


def test_queue_stats_group_by_lane_status_and_failure(repository: WorkflowRepository) -> None:
    item = repository.create_content_item(content="x", content_type="brain_dump")
    _enqueue(repository, item.content_item_id)
    _enqueue(repository, item.content_item_id)
    dead = repository.claim_next_ready_job(worker_id="w", lanes=[LANE_PROCESSING])
    repository.kill_job(job_id=dead.job_id, failure_class=FailureClass.INTERNAL, error_summary="x")

    stats = repository.queue_stats()

    assert stats.by_status == {"queued": 1, "dead": 1}
    assert stats.by_lane == {LANE_PROCESSING: {"queued": 1, "dead": 1}}
    assert stats.by_failure_class == {"internal": 1}
    assert stats.content_by_status == {"pending": 1}
