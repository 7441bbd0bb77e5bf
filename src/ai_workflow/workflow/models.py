"""Domain models for the workflow job queue and content lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ContentStatus(str, Enum):
    """Lifecycle states of a content item."""

    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class JobType(str, Enum):
    """Kinds of background work."""

    BRAIN_DUMP_PARSE = "brain_dump_parse"
    AI_CONTENT_GENERATION = "ai_content_generation"
    FEEDBACK_LEARNING = "feedback_learning"
    EMBEDDING_GENERATION = "embedding_generation"

    @property
    def is_lifecycle(self) -> bool:
        """Lifecycle stages own the item status; downstream stages never touch it."""

        return self in LIFECYCLE_JOB_TYPES


LIFECYCLE_JOB_TYPES = frozenset({JobType.BRAIN_DUMP_PARSE, JobType.AI_CONTENT_GENERATION})
DOWNSTREAM_JOB_TYPES = frozenset({JobType.EMBEDDING_GENERATION, JobType.FEEDBACK_LEARNING})


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    DEAD = "dead"


class AiJobRecordStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    VALIDATION = "validation"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    PROVIDER_TRANSIENT = "provider_transient"
    NETWORK = "network"
    INVALID_REQUEST = "invalid_request"
    ACCESS_OR_AUTH = "access_or_auth"
    BILLING_OR_QUOTA = "billing_or_quota"
    OUTPUT_INVALID = "output_invalid"
    RETRY_EXHAUSTED = "retry_exhausted"
    INTERNAL = "internal"


class ProcessingStep(str, Enum):
    """Checkpoint steps in execution order."""

    PARSE_STARTED = "parse_started"
    ENTITY_EXTRACTION_COMPLETED = "entity_extraction_completed"
    BRAIN_DUMP_PROCESSED = "brain_dump_processed"
    CONTENT_GENERATION_STARTED = "content_generation_started"
    CONTENT_GENERATED = "content_generated"

    @property
    def rank(self) -> int:
        return _STEP_ORDER.index(self)


_STEP_ORDER = list(ProcessingStep)


class FeedbackType(str, Enum):
    CORRECTION = "correction"
    ACCEPT = "accept"
    REJECT = "reject"
    EDIT = "edit"


@dataclass(slots=True)
class ContentItemView:
    """Readable content item for executors, services and the CLI."""

    content_item_id: str
    user_id: str
    content: str
    content_type: str
    status: ContentStatus
    metadata: dict[str, Any]
    error_message: str | None
    processed_at: datetime | None
    failed_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    job_type: JobType
    lane: str
    content_item_id: str
    payload: dict[str, Any]
    job_id: str | None = None
    parent_job_id: str | None = None
    max_attempts: int = 3
    backoff_seconds: int = 120
    run_after: datetime | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and worker logic."""

    job_id: str
    user_id: str
    job_type: JobType
    lane: str
    content_item_id: str
    parent_job_id: str | None
    payload: dict[str, Any]
    status: JobStatus
    attempt: int
    max_attempts: int
    backoff_seconds: int
    run_after: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    finished_at: datetime | None
    failure_class: FailureClass | None
    error_summary: str | None
    worker_id: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class AiJobRecordView:
    """Audit row of one AI provider call."""

    record_id: int
    job_id: str | None
    content_item_id: str | None
    user_id: str
    provider: str
    method: str
    prompt_hash: str
    prompt_length: int
    options: dict[str, Any]
    status: AiJobRecordStatus
    tokens_used: int | None
    response_length: int | None
    error_message: str | None
    created_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class ContentOutputView:
    output_id: str
    content_item_id: str
    job_id: str | None
    content_type: str
    text: str
    model: str
    confidence: float | None
    created_at: datetime


@dataclass(slots=True)
class FeedbackView:
    """User feedback on a content item or one of its outputs."""

    feedback_id: str
    content_item_id: str
    output_id: str | None
    user_id: str
    feedback_type: FeedbackType
    correction: dict[str, Any]
    confidence: float | None
    learned_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class LearnedEntityView:
    feedback_id: str
    entity_type: str
    value: str
    created_at: datetime


@dataclass(slots=True)
class LeaseHandle:
    """Proof of ownership of one duplicate-work lease."""

    key: str
    token: str
    owner: str
    expires_at: datetime


@dataclass(slots=True)
class QueueStats:
    """Per-lane and per-status job counters."""

    by_status: dict[str, int]
    by_lane: dict[str, dict[str, int]]
    by_failure_class: dict[str, int]
    content_by_status: dict[str, int]
