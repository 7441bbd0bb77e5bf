"""SQLModel ORM tables for workflow storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    LargeBinary,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"


class AppUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True, index=True)
    display_name: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ContentItem(SQLModel, table=True):
    __tablename__ = "content_items"  # type: ignore[bad-override]

    content_item_id: str = Field(primary_key=True)
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    content: str = Field(sa_column=Column(Text, nullable=False))
    content_type: str = Field(index=True)
    status: str = Field(index=True)
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    processed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    failed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueJob(SQLModel, table=True):
    __tablename__ = "queue_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queue_jobs_lane_ready", "lane", "status", "run_after"),)

    job_id: str = Field(primary_key=True)
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    job_type: str = Field(index=True)
    lane: str = Field(index=True)
    content_item_id: str = Field(
        sa_column=Column(
            ForeignKey("content_items.content_item_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    parent_job_id: str | None = Field(default=None, index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    attempt: int = Field(default=0)
    max_attempts: int = Field(default=3)
    backoff_seconds: int = Field(default=120)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    failure_class: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("queue_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AiJobRecord(SQLModel, table=True):
    __tablename__ = "ai_job_records"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_ai_job_records_provider_time", "provider", "created_at"),)

    record_id: int | None = Field(default=None, primary_key=True)
    job_id: str | None = Field(default=None, index=True)
    content_item_id: str | None = Field(default=None, index=True)
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    provider: str = Field(index=True)
    method: str
    prompt_hash: str = Field(index=True)
    prompt_length: int
    options_json: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(index=True)
    tokens_used: int | None = None
    response_length: int | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class ContentOutput(SQLModel, table=True):
    __tablename__ = "content_outputs"  # type: ignore[bad-override]

    output_id: str = Field(primary_key=True)
    content_item_id: str = Field(
        sa_column=Column(
            ForeignKey("content_items.content_item_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    job_id: str | None = Field(default=None, index=True)
    content_type: str = Field(index=True)
    text: str = Field(sa_column=Column(Text, nullable=False))
    model: str
    confidence: float | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Feedback(SQLModel, table=True):
    __tablename__ = "feedback"  # type: ignore[bad-override]

    feedback_id: str = Field(primary_key=True)
    content_item_id: str = Field(
        sa_column=Column(
            ForeignKey("content_items.content_item_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    output_id: str | None = Field(default=None, index=True)
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    feedback_type: str = Field(index=True)
    correction_json: str | None = Field(default=None, sa_column=Column(Text))
    confidence: float | None = None
    learned_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LearnedEntity(SQLModel, table=True):
    __tablename__ = "learned_entities"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "feedback_id",
            "entity_type",
            "value",
            name="uq_learned_entities_feedback_type_value",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    feedback_id: str = Field(
        sa_column=Column(
            ForeignKey("feedback.feedback_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    entity_type: str = Field(index=True)
    value: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ContentEmbedding(SQLModel, table=True):
    __tablename__ = "content_embeddings"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "content_item_id",
            "model_name",
            name="uq_content_embeddings_item_model",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    content_item_id: str = Field(
        sa_column=Column(
            ForeignKey("content_items.content_item_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    model_name: str = Field(index=True)
    embedding_dim: int
    embedding_blob: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkLease(SQLModel, table=True):
    __tablename__ = "work_leases"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_leases_expires", "expires_at"),)

    lease_key: str = Field(primary_key=True)
    token: str
    owner: str
    acquired_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
