from __future__ import annotations

import allure
import pytest

from ai_workflow.workflow.models import JobType
from ai_workflow.workflow.payloads import (
    AiContentGenerationPayload,
    BrainDumpParsePayload,
    EmbeddingGenerationPayload,
    FeedbackLearningPayload,
    payload_from_dict,
    payload_to_dict,
)

pytestmark = [
    allure.epic("AI Workflow"),
    allure.feature("Job Payloads"),
]


def test_generation_payload_survives_json_shape() -> None:
    payload = AiContentGenerationPayload(
        content_item_id="c-1",
        content_type="release_notes",
        options={"audience": "developers"},
    )

    data = payload_to_dict(payload)

    assert data == {
        "content_item_id": "c-1",
        "content_type": "release_notes",
        "options": {"audience": "developers"},
    }
    assert payload_from_dict("ai_content_generation", data) == payload


def test_each_payload_reports_its_job_type() -> None:
    assert BrainDumpParsePayload(content_item_id="c-1").job_type is JobType.BRAIN_DUMP_PARSE
    assert (
        FeedbackLearningPayload(feedback_id="f-1", content_item_id="c-1").job_type
        is JobType.FEEDBACK_LEARNING
    )


def test_embedding_payload_owner_is_first_id_and_ids_are_deduplicated() -> None:
    payload = payload_from_dict(
        JobType.EMBEDDING_GENERATION,
        {"content_item_ids": ["a", " b ", "a"], "options": {"model": "hashing-384"}},
    )

    assert isinstance(payload, EmbeddingGenerationPayload)
    assert payload.content_item_ids == ("a", "b")
    assert payload.content_item_id == "a"


def test_embedding_payload_accepts_single_id_form() -> None:
    payload = payload_from_dict(JobType.EMBEDDING_GENERATION, {"content_item_id": "a"})

    assert payload.content_item_ids == ("a",)


@pytest.mark.parametrize(
    ("job_type", "data", "message"),
    [
        (JobType.BRAIN_DUMP_PARSE, {}, "content_item_id"),
        (JobType.AI_CONTENT_GENERATION, {"content_item_id": "c-1"}, "content_type"),
        (JobType.FEEDBACK_LEARNING, {"content_item_id": "c-1", "feedback_id": " "}, "feedback_id"),
        (JobType.EMBEDDING_GENERATION, {"content_item_ids": []}, "non-empty"),
        (JobType.EMBEDDING_GENERATION, {"content_item_ids": ["a", 7]}, "Invalid content item id"),
        (JobType.BRAIN_DUMP_PARSE, {"content_item_id": "c-1", "options": []}, "options"),
    ],
)
def test_malformed_payloads_raise_value_error(
    job_type: JobType,
    data: dict[str, object],
    message: str,
) -> None:
    with pytest.raises(ValueError, match=message):
        payload_from_dict(job_type, data)


def test_unknown_job_type_is_rejected() -> None:
    with pytest.raises(ValueError):
        payload_from_dict("translate", {"content_item_id": "c-1"})
