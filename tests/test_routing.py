from __future__ import annotations

import allure
import pytest

from ai_workflow.config import QueueSettings
from ai_workflow.workflow.models import JobType
from ai_workflow.workflow.routing import (
    KNOWN_LANES,
    LANE_CONTENT_GENERATION,
    LANE_EMBEDDINGS,
    LANE_HIGH_PRIORITY,
    LANE_LEARNING,
    LANE_PROCESSING,
    QueueRouter,
    validate_lane,
)

pytestmark = [
    allure.epic("AI Workflow"),
    allure.feature("Queue Routing"),
]


@pytest.mark.parametrize(
    ("job_type", "lane"),
    [
        (JobType.BRAIN_DUMP_PARSE, LANE_PROCESSING),
        (JobType.AI_CONTENT_GENERATION, LANE_CONTENT_GENERATION),
        (JobType.EMBEDDING_GENERATION, LANE_EMBEDDINGS),
        (JobType.FEEDBACK_LEARNING, LANE_LEARNING),
    ],
)
def test_default_lane_per_job_type(job_type: JobType, lane: str) -> None:
    assert QueueRouter().route(job_type) == lane


def test_urgent_brain_dump_goes_to_high_priority_lane() -> None:
    router = QueueRouter()

    assert router.route(JobType.BRAIN_DUMP_PARSE, " Urgent ") == LANE_HIGH_PRIORITY
    assert router.route(JobType.AI_CONTENT_GENERATION, "urgent") == LANE_CONTENT_GENERATION


def test_lane_override_wins_and_is_validated() -> None:
    router = QueueRouter()

    assert router.resolve(JobType.EMBEDDING_GENERATION, None, "AI-Learning") == LANE_LEARNING
    with pytest.raises(ValueError, match="Unknown queue lane"):
        router.resolve(JobType.EMBEDDING_GENERATION, None, "gpu")


def test_validate_lane_normalizes_known_names() -> None:
    assert validate_lane("  ai-embeddings ") == LANE_EMBEDDINGS


def test_router_from_settings_applies_concurrency() -> None:
    router = QueueRouter.from_settings(
        QueueSettings(lane_concurrency={LANE_EMBEDDINGS: 4}),
    )

    assert set(router.lanes) == set(KNOWN_LANES)
    assert router.lane_config(LANE_EMBEDDINGS).concurrency == 4
    assert router.lane_config(LANE_PROCESSING).concurrency == 1


def test_router_from_settings_rejects_unknown_lane() -> None:
    with pytest.raises(ValueError, match="Unknown queue lane"):
        QueueRouter.from_settings(QueueSettings(lane_concurrency={"gpu": 2}))
