from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from ai_workflow.workflow.errors import (
    ContentValidationError,
    DispatchBlockedError,
    InvalidTransitionError,
)
from ai_workflow.workflow.models import ContentStatus, FeedbackType, JobStatus, JobType
from ai_workflow.workflow.payloads import (
    AiContentGenerationPayload,
    EmbeddingGenerationPayload,
    FollowUpJob,
)
from ai_workflow.workflow.repository import WorkflowRepository
from ai_workflow.workflow.routing import (
    LANE_CONTENT_GENERATION,
    LANE_EMBEDDINGS,
    LANE_HIGH_PRIORITY,
    LANE_LEARNING,
    LANE_PROCESSING,
)
from ai_workflow.workflow.state_machine import fail_processing
from tests.conftest import BRAIN_DUMP

pytestmark = [
    allure.epic("AI Workflow"),
    allure.feature("Enqueue API"),
]


def _fail(repository: WorkflowRepository, content_item_id: str) -> None:
    item = repository.get_content_item(content_item_id)
    assert repository.apply_transition(
        content_item_id=content_item_id,
        transition=fail_processing(item, "boom", now=repository.now()),
    )


def test_brain_dump_submission_enqueues_parse_job(make_service) -> None:
    service = make_service(max_attempts=4, backoff_seconds=30)

    submission = service.submit_brain_dump(BRAIN_DUMP)

    assert submission.item.status is ContentStatus.PENDING
    assert submission.item.content_type == "brain_dump"
    job = submission.job
    assert job is not None
    assert job.job_type is JobType.BRAIN_DUMP_PARSE
    assert job.lane == LANE_PROCESSING
    assert job.status is JobStatus.QUEUED
    assert job.max_attempts == 4
    assert job.backoff_seconds == 30
    assert job.payload == {"content_item_id": submission.item.content_item_id, "options": {}}


@pytest.mark.parametrize(
    ("kwargs", "priority"),
    [
        ({"priority": "urgent"}, "urgent"),
        ({"options": {"urgent": True}}, "urgent"),
    ],
)
def test_urgent_brain_dump_routes_to_high_priority_lane(
    make_service,
    kwargs: dict[str, object],
    priority: str,
) -> None:
    submission = make_service().submit_brain_dump(BRAIN_DUMP, **kwargs)

    assert submission.item.metadata["priority"] == priority
    assert submission.job.lane == LANE_HIGH_PRIORITY


def test_non_brain_dump_content_is_stored_without_job(make_service) -> None:
    submission = make_service().submit_content(content="Release 2.0 notes", content_type="notes")

    assert submission.job is None
    assert submission.item.content_type == "notes"


def test_duplicate_submissions_are_accepted(make_service, repository) -> None:
    service = make_service()
    item = service.submit_content(content="notes", content_type="notes").item

    first = service.request_content_generation(item.content_item_id, "summary")
    second = service.request_content_generation(item.content_item_id, "summary")

    assert first.job_id != second.job_id
    assert len(repository.list_jobs(content_item_id=item.content_item_id)) == 2


def test_content_generation_validates_type_and_honours_lane_override(make_service) -> None:
    service = make_service()
    item = service.submit_content(content="notes", content_type="notes").item

    with pytest.raises(ContentValidationError, match="Unsupported content type"):
        service.request_content_generation(item.content_item_id, "poem")

    job = service.request_content_generation(
        item.content_item_id,
        "release_notes",
        options={"audience": "developers"},
        lane_override=LANE_HIGH_PRIORITY,
    )
    assert job.lane == LANE_HIGH_PRIORITY
    assert job.payload["options"] == {"audience": "developers"}

    default = service.request_content_generation(item.content_item_id, "analysis")
    assert default.lane == LANE_CONTENT_GENERATION


def test_enqueue_with_delay_sets_run_after(make_service, repository) -> None:
    service = make_service()
    item = service.submit_content(content="notes", content_type="notes").item

    job = service.enqueue(
        AiContentGenerationPayload(content_item_id=item.content_item_id, content_type="summary"),
        delay_seconds=30,
    )

    assert job.run_after == repository.now() + timedelta(seconds=30)


def test_enqueue_for_unknown_item_is_rejected(make_service) -> None:
    with pytest.raises(ContentValidationError, match="not found"):
        make_service().request_content_generation("missing", "summary")


def test_request_embeddings_builds_batch_options(make_service) -> None:
    service = make_service()
    first = service.submit_content(content="a", content_type="notes").item
    second = service.submit_content(content="b", content_type="notes").item

    job = service.request_embeddings(
        [first.content_item_id, second.content_item_id],
        model="hashing-64",
        force_regenerate=True,
    )

    assert job.lane == LANE_EMBEDDINGS
    assert job.content_item_id == first.content_item_id
    assert job.payload["content_item_ids"] == [first.content_item_id, second.content_item_id]
    assert job.payload["options"] == {"model": "hashing-64", "force_regenerate": True}
    with pytest.raises(ContentValidationError):
        service.request_embeddings([])


def test_downstream_work_for_failed_item_is_blocked(make_service, repository) -> None:
    service = make_service()
    item = service.submit_content(content="notes", content_type="notes").item
    _fail(repository, item.content_item_id)

    with pytest.raises(DispatchBlockedError):
        service.request_embeddings([item.content_item_id])

    lifecycle = service.request_content_generation(item.content_item_id, "summary")
    assert lifecycle.status is JobStatus.QUEUED


def test_embedding_batch_drops_failed_items_before_choosing_owner(
    make_service,
    repository,
) -> None:
    service = make_service()
    failed = service.submit_content(content="broken", content_type="notes").item
    healthy = service.submit_content(content="fine", content_type="notes").item
    _fail(repository, failed.content_item_id)

    job = service.request_embeddings([failed.content_item_id, healthy.content_item_id])

    assert job.content_item_id == healthy.content_item_id
    assert job.payload["content_item_ids"] == [healthy.content_item_id]
    assert job.job_type is JobType.EMBEDDING_GENERATION


def test_blocked_follow_ups_are_dropped(make_service, repository) -> None:
    service = make_service()
    parent = service.submit_brain_dump(BRAIN_DUMP).job
    healthy = service.submit_content(content="ok", content_type="notes").item
    failed = service.submit_content(content="bad", content_type="notes").item
    _fail(repository, failed.content_item_id)

    dispatched = service.dispatch_follow_ups(
        parent=parent,
        follow_ups=[
            FollowUpJob(
                payload=EmbeddingGenerationPayload(content_item_ids=(failed.content_item_id,)),
            ),
            FollowUpJob(
                payload=EmbeddingGenerationPayload(content_item_ids=(healthy.content_item_id,)),
            ),
        ],
    )

    assert [job.content_item_id for job in dispatched] == [healthy.content_item_id]
    assert dispatched[0].parent_job_id == parent.job_id


def test_feedback_enqueues_learning_job(make_service) -> None:
    service = make_service()
    item = service.submit_brain_dump(BRAIN_DUMP).item

    submission = service.submit_feedback(
        content_item_id=item.content_item_id,
        feedback_type=FeedbackType.CORRECTION,
        correction={"corrected_projects": ["Project Alpha"]},
        confidence=0.9,
    )

    assert submission.feedback.feedback_type is FeedbackType.CORRECTION
    assert submission.job is not None
    assert submission.job.job_type is JobType.FEEDBACK_LEARNING
    assert submission.job.lane == LANE_LEARNING
    assert submission.job.payload["feedback_id"] == submission.feedback.feedback_id


def test_edit_feedback_requires_corrected_content(make_service) -> None:
    service = make_service()
    item = service.submit_brain_dump(BRAIN_DUMP).item

    with pytest.raises(ContentValidationError, match="corrected_content"):
        service.submit_feedback(
            content_item_id=item.content_item_id,
            feedback_type=FeedbackType.EDIT,
        )


def test_feedback_on_failed_item_is_stored_without_learning(make_service, repository) -> None:
    service = make_service()
    item = service.submit_content(content="notes", content_type="notes").item
    _fail(repository, item.content_item_id)

    submission = service.submit_feedback(
        content_item_id=item.content_item_id,
        feedback_type=FeedbackType.REJECT,
    )

    assert submission.job is None
    assert repository.get_feedback(submission.feedback.feedback_id) is not None


def test_redispatch_requires_failed_item(make_service) -> None:
    service = make_service()
    item = service.submit_brain_dump(BRAIN_DUMP).item

    with pytest.raises(InvalidTransitionError, match="Only failed content"):
        service.redispatch(item.content_item_id)


def test_redispatch_without_dead_job_starts_parse(make_service, repository) -> None:
    service = make_service()
    item = service.submit_content(content="notes", content_type="notes").item
    _fail(repository, item.content_item_id)

    job = service.redispatch(item.content_item_id)

    assert job.job_type is JobType.BRAIN_DUMP_PARSE
    assert job.parent_job_id is None
    reset = repository.get_content_item(item.content_item_id)
    assert reset.status is ContentStatus.PENDING
    assert reset.error_message is None
    assert reset.failed_at is None
