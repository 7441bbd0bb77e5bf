from __future__ import annotations

import allure

from ai_workflow.workflow.errors import ProviderTimeoutError
from ai_workflow.workflow.models import (
    AiJobRecordStatus,
    ContentStatus,
    FailureClass,
    JobStatus,
    JobType,
    ProcessingStep,
)
from ai_workflow.workflow.routing import LANE_CONTENT_GENERATION, LANE_EMBEDDINGS, LANE_PROCESSING
from tests.conftest import BRAIN_DUMP, ScriptedAiClient

pytestmark = [
    allure.epic("AI Workflow"),
    allure.feature("End-to-end Scenarios"),
]


def test_brain_dump_is_parsed_and_emits_exactly_one_embedding_job(make_harness) -> None:
    harness = make_harness()
    submission = harness.service.submit_brain_dump(BRAIN_DUMP)
    assert submission.job is not None
    assert submission.job.lane == LANE_PROCESSING

    summary = harness.worker.run_once()
    assert summary.processed == 1
    assert summary.succeeded == 1

    item = harness.repository.get_content_item(submission.item.content_item_id)
    assert item is not None
    assert item.status == ContentStatus.PROCESSED
    assert item.processed_at is not None
    assert item.metadata["processing_step"] == ProcessingStep.BRAIN_DUMP_PROCESSED.value
    result = item.metadata["processing_result"]
    assert result["projects"] == ["Project Alpha"]
    assert result["action_items"] == [{"title": "review API by Friday", "due_date": "friday"}]

    embedding_jobs = harness.jobs(job_type=JobType.EMBEDDING_GENERATION)
    assert len(embedding_jobs) == 1
    assert embedding_jobs[0].lane == LANE_EMBEDDINGS
    assert embedding_jobs[0].parent_job_id == submission.job.job_id
    assert embedding_jobs[0].content_item_id == item.content_item_id

    harness.drain()
    embeddings = harness.repository.get_embeddings(
        content_item_ids=[item.content_item_id],
        model_name="hashing-384",
    )
    assert len(embeddings[item.content_item_id]) == 384
    assert harness.repository.get_job(embedding_jobs[0].job_id).status == JobStatus.SUCCEEDED


def test_empty_brain_dump_fails_without_downstream_jobs(make_harness) -> None:
    ai_client = ScriptedAiClient()
    harness = make_harness(ai_client=ai_client)
    submission = harness.service.submit_brain_dump("")

    summary = harness.drain()
    assert summary.processed == 1
    assert summary.failed == 1
    assert summary.retried == 0

    item = harness.repository.get_content_item(submission.item.content_item_id)
    assert item is not None
    assert item.status == ContentStatus.FAILED
    assert item.failed_at is not None
    assert "empty" in (item.error_message or "")

    job = harness.repository.get_job(submission.job.job_id)
    assert job is not None
    assert job.status == JobStatus.DEAD
    assert job.failure_class == FailureClass.VALIDATION
    assert job.attempt == 1

    assert [job.job_type for job in harness.jobs()] == [JobType.BRAIN_DUMP_PARSE]
    assert ai_client.generate_calls == []


def test_release_notes_recover_after_two_timeouts_with_linear_backoff(make_harness) -> None:
    ai_client = ScriptedAiClient(
        generate_script=[
            ProviderTimeoutError(),
            ProviderTimeoutError(),
            "# Release notes\n- Fixed login\n- Added export",
        ],
    )
    harness = make_harness(ai_client=ai_client)
    submission = harness.service.submit_content(
        content="Fixed login. Added CSV export.",
        content_type="notes",
    )
    assert submission.job is None
    job = harness.service.request_content_generation(
        submission.item.content_item_id,
        "release_notes",
    )
    assert job.lane == LANE_CONTENT_GENERATION

    first = harness.worker.run_once()
    assert first.retried == 1
    item = harness.repository.get_content_item(submission.item.content_item_id)
    assert item.status == ContentStatus.PROCESSING

    assert harness.worker.run_once().processed == 0

    harness.clock.advance(120)
    assert harness.worker.run_once().retried == 1
    harness.clock.advance(239)
    assert harness.worker.run_once().processed == 0
    harness.clock.advance(1)
    assert harness.worker.run_once().succeeded == 1

    details = harness.repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.job.status == JobStatus.SUCCEEDED
    assert details.job.attempt == 3
    delays = [
        event.details["delay_seconds"]
        for event in details.events
        if event.event_type == "retry_scheduled"
    ]
    assert delays == [120, 240]

    records = harness.repository.list_ai_job_records(job_id=job.job_id)
    assert [record.status for record in records] == [
        AiJobRecordStatus.FAILED,
        AiJobRecordStatus.FAILED,
        AiJobRecordStatus.COMPLETED,
    ]
    assert all(record.method == "generate_content" for record in records)

    item = harness.repository.get_content_item(submission.item.content_item_id)
    assert item.status == ContentStatus.PROCESSED
    outputs = harness.repository.list_content_outputs(content_item_id=item.content_item_id)
    assert len(outputs) == 1
    assert outputs[0].content_type == "release_notes"
    assert outputs[0].text.startswith("# Release notes")
    assert item.metadata["last_output_id"] == outputs[0].output_id
