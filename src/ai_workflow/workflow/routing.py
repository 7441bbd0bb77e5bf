"""Lane routing for queued jobs."""

from __future__ import annotations

from dataclasses import dataclass

from ai_workflow.config import QueueSettings
from ai_workflow.workflow.models import JobType

LANE_HIGH_PRIORITY = "ai-processing-high"
LANE_PROCESSING = "ai-processing"
LANE_CONTENT_GENERATION = "ai-content-generation"
LANE_EMBEDDINGS = "ai-embeddings"
LANE_LEARNING = "ai-learning"

KNOWN_LANES: tuple[str, ...] = (
    LANE_HIGH_PRIORITY,
    LANE_PROCESSING,
    LANE_CONTENT_GENERATION,
    LANE_EMBEDDINGS,
    LANE_LEARNING,
)

DEFAULT_LANES: dict[JobType, str] = {
    JobType.BRAIN_DUMP_PARSE: LANE_PROCESSING,
    JobType.AI_CONTENT_GENERATION: LANE_CONTENT_GENERATION,
    JobType.EMBEDDING_GENERATION: LANE_EMBEDDINGS,
    JobType.FEEDBACK_LEARNING: LANE_LEARNING,
}

URGENT_PRIORITY = "urgent"


@dataclass(slots=True, frozen=True)
class LaneConfig:
    name: str
    concurrency: int = 1


class QueueRouter:
    """Pick the lane a job is enqueued on."""

    def __init__(self, lanes: dict[str, LaneConfig] | None = None) -> None:
        self.lanes = lanes or {name: LaneConfig(name=name) for name in KNOWN_LANES}

    @classmethod
    def from_settings(cls, settings: QueueSettings) -> QueueRouter:
        """Build lane configs, rejecting concurrency for lanes that do not exist."""

        for lane in settings.lane_concurrency:
            validate_lane(lane)
        return cls(
            {
                name: LaneConfig(name=name, concurrency=settings.lane_concurrency.get(name, 1))
                for name in KNOWN_LANES
            },
        )

    def route(self, job_type: JobType, priority_hint: str | None = None) -> str:
        if job_type is JobType.BRAIN_DUMP_PARSE and _normalize(priority_hint) == URGENT_PRIORITY:
            return LANE_HIGH_PRIORITY
        return DEFAULT_LANES[job_type]

    def resolve(
        self,
        job_type: JobType,
        priority_hint: str | None = None,
        lane_override: str | None = None,
    ) -> str:
        if lane_override is not None:
            return validate_lane(lane_override)
        return self.route(job_type, priority_hint)

    def lane_config(self, lane: str) -> LaneConfig:
        return self.lanes[validate_lane(lane)]


def validate_lane(lane: str) -> str:
    normalized = lane.strip().lower()
    if normalized in KNOWN_LANES:
        return normalized
    raise ValueError(f"Unknown queue lane: {lane!r}. Use one of {', '.join(KNOWN_LANES)}.")


def _normalize(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip().lower()
