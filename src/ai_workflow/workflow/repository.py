"""Persistent queue and content repository backed by SQLModel + SQLite."""

from __future__ import annotations

import hashlib
import json
import struct
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, literal_column
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from ai_workflow.storage.alembic_runner import upgrade_head
from ai_workflow.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from ai_workflow.storage.sqlmodel_models import (
    DEFAULT_USER_ID,
    AiJobRecord,
    AppUser,
    ContentEmbedding,
    ContentItem,
    ContentOutput,
    Feedback,
    JobEvent,
    LearnedEntity,
    QueueJob,
    WorkLease,
)
from ai_workflow.workflow.errors import FeedbackEditError
from ai_workflow.workflow.models import (
    AiJobRecordStatus,
    AiJobRecordView,
    ContentItemView,
    ContentOutputView,
    ContentStatus,
    FailureClass,
    FeedbackType,
    FeedbackView,
    JobCreate,
    JobDetails,
    JobEventView,
    JobStatus,
    JobType,
    JobView,
    LearnedEntityView,
    LeaseHandle,
    QueueStats,
)
from ai_workflow.workflow.state_machine import ContentTransition

Clock = Callable[[], datetime]


class WorkflowRepository:
    """Queue and content persistence facade backed by SQLModel + SQLite."""

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        user_id: str = DEFAULT_USER_ID,
        user_name: str = "Default User",
        busy_timeout_ms: int = 5_000,
        clock: Clock | None = None,
    ) -> None:
        self.db_path = db_path
        self.user_id = user_id
        self.user_name = user_name
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._clock = clock or utc_now

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and ensure actor context exists."""

        upgrade_head(self.db_path, engine=self.engine)
        self._ensure_actor_context()

    def now(self) -> datetime:
        return self._clock()

    def _ensure_actor_context(self) -> None:
        with Session(self.engine) as session:
            user = session.exec(
                select(AppUser).where(AppUser.user_id == self.user_id),
            ).one_or_none()
            if user is not None:
                return
            session.add(
                AppUser(
                    user_id=self.user_id,
                    display_name=self.user_name,
                    created_at=to_db_datetime(self.now()),
                ),
            )
            session.commit()

    # Content items

    def create_content_item(
        self,
        *,
        content: str,
        content_type: str,
        metadata: dict[str, Any] | None = None,
        content_item_id: str | None = None,
    ) -> ContentItemView:
        """Store submitted content in ``pending`` state."""

        now = to_db_datetime(self.now())
        row = ContentItem(
            content_item_id=content_item_id or str(uuid4()),
            user_id=self.user_id,
            content=content,
            content_type=content_type,
            status=ContentStatus.PENDING.value,
            metadata_json=dump_json(metadata),
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_content_view(row)

    def get_content_item(self, content_item_id: str) -> ContentItemView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ContentItem).where(
                    ContentItem.content_item_id == content_item_id,
                    ContentItem.user_id == self.user_id,
                ),
            ).one_or_none()
            if row is None:
                return None
            return _to_content_view(row)

    def list_content_items(
        self,
        *,
        status: ContentStatus | None = None,
        limit: int = 50,
    ) -> list[ContentItemView]:
        with Session(self.engine) as session:
            statement = (
                select(ContentItem)
                .where(ContentItem.user_id == self.user_id)
                .order_by(col(ContentItem.created_at).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(ContentItem.status == status.value)
            rows = session.exec(statement).all()
        return [_to_content_view(row) for row in rows]

    def apply_transition(self, *, content_item_id: str, transition: ContentTransition) -> bool:
        """Write a computed transition if the item still has the expected status.

        Returns ``False`` for no-op transitions and for lost races.
        """

        if transition.noop:
            return False
        values: dict[str, Any] = {
            "status": transition.status.value,
            "metadata_json": dump_json(transition.metadata),
            "updated_at": to_db_datetime(self.now()),
        }
        if transition.processed_at is not None:
            values["processed_at"] = to_db_datetime(transition.processed_at)
        if transition.failed_at is not None:
            values["failed_at"] = to_db_datetime(transition.failed_at)
        if transition.status is ContentStatus.FAILED:
            values["error_message"] = transition.error_message
        elif transition.status is ContentStatus.PENDING:
            values["error_message"] = None
            values["failed_at"] = None
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ContentItem)
                .where(
                    col(ContentItem.content_item_id) == content_item_id,
                    col(ContentItem.user_id) == self.user_id,
                    col(ContentItem.status) == transition.expected_status.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # Jobs

    def enqueue_job(self, payload: JobCreate) -> JobView:
        """Create a queued job."""

        now = self.now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = QueueJob(
                job_id=job_id,
                user_id=self.user_id,
                job_type=payload.job_type.value,
                lane=payload.lane,
                content_item_id=payload.content_item_id,
                parent_job_id=payload.parent_job_id,
                payload_json=json.dumps(payload.payload, ensure_ascii=False, sort_keys=True),
                status=JobStatus.QUEUED.value,
                attempt=0,
                max_attempts=payload.max_attempts,
                backoff_seconds=payload.backoff_seconds,
                run_after=to_db_datetime(payload.run_after or now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.QUEUED,
                details={
                    "job_type": payload.job_type.value,
                    "lane": payload.lane,
                    "max_attempts": payload.max_attempts,
                    "parent_job_id": payload.parent_job_id,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueJob).where(
                    QueueJob.job_id == job_id,
                    QueueJob.user_id == self.user_id,
                ),
            ).one_or_none()
            if row is None:
                return None
            return _to_job_view(row)

    def claim_next_ready_job(
        self,
        *,
        worker_id: str,
        lanes: Iterable[str],
    ) -> JobView | None:
        """Atomically claim the oldest ready job on one of ``lanes``."""

        lane_list = list(lanes)
        while True:
            now = to_db_datetime(self.now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueJob)
                    .where(
                        QueueJob.user_id == self.user_id,
                        col(QueueJob.lane).in_(lane_list),
                        QueueJob.status == JobStatus.QUEUED.value,
                        QueueJob.run_after <= now,
                    )
                    .order_by(
                        col(QueueJob.run_after).asc(),
                        col(QueueJob.created_at).asc(),
                        literal_column("queue_jobs.rowid").asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueueJob)
                    .where(
                        col(QueueJob.job_id) == candidate.job_id,
                        col(QueueJob.user_id) == self.user_id,
                        col(QueueJob.status) == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        attempt=candidate.attempt + 1,
                        started_at=now,
                        heartbeat_at=now,
                        finished_at=None,
                        worker_id=worker_id,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(QueueJob).where(QueueJob.job_id == candidate.job_id),
                ).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    status_from=JobStatus.QUEUED,
                    status_to=JobStatus.RUNNING,
                    details={"worker_id": worker_id, "attempt": claimed.attempt},
                )
                session.commit()
                return _to_job_view(claimed)

    def touch_job(self, *, job_id: str) -> None:
        """Update heartbeat for a running job."""

        now = to_db_datetime(self.now())
        with Session(self.engine) as session:
            session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.user_id) == self.user_id,
                    col(QueueJob.status) == JobStatus.RUNNING.value,
                )
                .values(heartbeat_at=now, updated_at=now),
            )
            session.commit()

    def complete_job(self, *, job_id: str, details: dict[str, object] | None = None) -> bool:
        """Mark a running job as succeeded."""

        return self._finish_running(
            job_id=job_id,
            status=JobStatus.SUCCEEDED,
            event_type="succeeded",
            details=details or {},
        )

    def skip_job(
        self,
        *,
        job_id: str,
        reason: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Finish a running job without executing it."""

        return self._finish_running(
            job_id=job_id,
            status=JobStatus.SKIPPED,
            event_type=reason,
            details=details or {},
            error_summary=reason,
        )

    def kill_job(
        self,
        *,
        job_id: str,
        failure_class: FailureClass,
        error_summary: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Move a running job to the terminal ``dead`` state."""

        return self._finish_running(
            job_id=job_id,
            status=JobStatus.DEAD,
            event_type="dead",
            details={
                **(details or {}),
                "failure_class": failure_class.value,
                "error_summary": error_summary,
            },
            failure_class=failure_class,
            error_summary=error_summary,
        )

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        run_after: datetime,
        delay_seconds: int,
        failure_class: FailureClass,
        error_summary: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Requeue a running job for automatic retry; ``attempt`` is kept."""

        now = to_db_datetime(self.now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.user_id) == self.user_id,
                    col(QueueJob.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    run_after=to_db_datetime(run_after),
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    started_at=None,
                    finished_at=None,
                    heartbeat_at=None,
                    worker_id=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry_scheduled",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.QUEUED,
                details={
                    **(details or {}),
                    "run_after": to_utc_aware_datetime(run_after).isoformat(),
                    "delay_seconds": delay_seconds,
                    "failure_class": failure_class.value,
                },
            )
            session.commit()
            return True

    def recover_stale_running_jobs(self, *, stale_after_seconds: int) -> int:
        """Return jobs whose heartbeat went silent back to ``queued``."""

        now = self.now()
        cutoff = to_db_datetime(now - timedelta(seconds=stale_after_seconds))
        recovered = 0
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueJob).where(
                    QueueJob.user_id == self.user_id,
                    QueueJob.status == JobStatus.RUNNING.value,
                    col(QueueJob.heartbeat_at) < cutoff,
                ),
            ).all()
            for row in rows:
                result = session.exec(
                    sa_update(QueueJob)
                    .where(
                        col(QueueJob.job_id) == row.job_id,
                        col(QueueJob.status) == JobStatus.RUNNING.value,
                        col(QueueJob.heartbeat_at) < cutoff,
                    )
                    .values(
                        status=JobStatus.QUEUED.value,
                        run_after=to_db_datetime(now),
                        started_at=None,
                        heartbeat_at=None,
                        worker_id=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                recovered += 1
                self._add_event(
                    session=session,
                    job_id=row.job_id,
                    event_type="stale_recovered",
                    status_from=JobStatus.RUNNING,
                    status_to=JobStatus.QUEUED,
                    details={"worker_id": row.worker_id, "attempt": row.attempt},
                )
            session.commit()
        return recovered

    def list_jobs(  # noqa: PLR0913
        self,
        *,
        status: JobStatus | None = None,
        lane: str | None = None,
        job_type: JobType | None = None,
        content_item_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, newest first."""

        with Session(self.engine) as session:
            statement = (
                select(QueueJob)
                .where(QueueJob.user_id == self.user_id)
                .order_by(
                    col(QueueJob.created_at).desc(),
                    literal_column("queue_jobs.rowid").desc(),
                )
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(QueueJob.status == status.value)
            if lane is not None:
                statement = statement.where(QueueJob.lane == lane)
            if job_type is not None:
                statement = statement.where(QueueJob.job_type == job_type.value)
            if content_item_id is not None:
                statement = statement.where(QueueJob.content_item_id == content_item_id)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.exec(
                select(QueueJob).where(
                    QueueJob.job_id == job_id,
                    QueueJob.user_id == self.user_id,
                ),
            ).one_or_none()
            if job is None:
                return None

            event_rows = session.exec(
                select(JobEvent)
                .where(
                    JobEvent.job_id == job_id,
                    JobEvent.user_id == self.user_id,
                )
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()

        events = [
            JobEventView(
                event_id=row.id or 0,
                job_id=row.job_id,
                event_type=row.event_type,
                status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json_object(row.details_json),
            )
            for row in event_rows
        ]
        return JobDetails(job=_to_job_view(job), events=events)

    def add_job_event(
        self,
        *,
        job_id: str,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        """Append an informational event that does not change job status."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()

    def find_last_lifecycle_job(
        self,
        *,
        content_item_id: str,
        status: JobStatus = JobStatus.DEAD,
    ) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueJob)
                .where(
                    QueueJob.user_id == self.user_id,
                    QueueJob.content_item_id == content_item_id,
                    QueueJob.status == status.value,
                    col(QueueJob.job_type).in_(
                        [JobType.BRAIN_DUMP_PARSE.value, JobType.AI_CONTENT_GENERATION.value],
                    ),
                )
                .order_by(
                    col(QueueJob.updated_at).desc(),
                    literal_column("queue_jobs.rowid").desc(),
                )
                .limit(1),
            ).one_or_none()
            if row is None:
                return None
            return _to_job_view(row)

    def queue_stats(self) -> QueueStats:
        """Aggregate job and content counters for operators."""

        with Session(self.engine) as session:
            job_rows = session.exec(
                select(QueueJob.lane, QueueJob.status, func.count())
                .where(QueueJob.user_id == self.user_id)
                .group_by(QueueJob.lane, QueueJob.status),
            ).all()
            failure_rows = session.exec(
                select(QueueJob.failure_class, func.count())
                .where(
                    QueueJob.user_id == self.user_id,
                    col(QueueJob.failure_class).is_not(None),
                )
                .group_by(QueueJob.failure_class),
            ).all()
            content_rows = session.exec(
                select(ContentItem.status, func.count())
                .where(ContentItem.user_id == self.user_id)
                .group_by(ContentItem.status),
            ).all()

        by_status: dict[str, int] = {}
        by_lane: dict[str, dict[str, int]] = {}
        for lane, status, count in job_rows:
            by_status[status] = by_status.get(status, 0) + int(count)
            by_lane.setdefault(lane, {})[status] = int(count)
        return QueueStats(
            by_status=by_status,
            by_lane=by_lane,
            by_failure_class={str(name): int(count) for name, count in failure_rows},
            content_by_status={status: int(count) for status, count in content_rows},
        )

    # AI call audit records

    def create_ai_job_record(  # noqa: PLR0913
        self,
        *,
        provider: str,
        method: str,
        prompt: str,
        options: dict[str, Any] | None = None,
        job_id: str | None = None,
        content_item_id: str | None = None,
    ) -> int:
        """Insert a ``processing`` audit row; only the prompt hash is stored."""

        row = AiJobRecord(
            job_id=job_id,
            content_item_id=content_item_id,
            user_id=self.user_id,
            provider=provider,
            method=method,
            prompt_hash=hashlib.sha256(prompt.encode("utf-8")).hexdigest(),
            prompt_length=len(prompt),
            options_json=dump_json(options),
            status=AiJobRecordStatus.PROCESSING.value,
            created_at=to_db_datetime(self.now()),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return int(row.record_id or 0)

    def finish_ai_job_record(
        self,
        *,
        record_id: int,
        status: AiJobRecordStatus,
        tokens_used: int | None = None,
        response_length: int | None = None,
        error_message: str | None = None,
    ) -> bool:
        if status is AiJobRecordStatus.PROCESSING:
            raise ValueError("AI job record can only finish as completed or failed")
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AiJobRecord)
                .where(
                    col(AiJobRecord.record_id) == record_id,
                    col(AiJobRecord.status) == AiJobRecordStatus.PROCESSING.value,
                )
                .values(
                    status=status.value,
                    tokens_used=tokens_used,
                    response_length=response_length,
                    error_message=error_message,
                    completed_at=to_db_datetime(self.now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def list_ai_job_records(
        self,
        *,
        job_id: str | None = None,
        content_item_id: str | None = None,
    ) -> list[AiJobRecordView]:
        """List audit rows in insertion order."""

        with Session(self.engine) as session:
            statement = (
                select(AiJobRecord)
                .where(AiJobRecord.user_id == self.user_id)
                .order_by(col(AiJobRecord.record_id).asc())
            )
            if job_id is not None:
                statement = statement.where(AiJobRecord.job_id == job_id)
            if content_item_id is not None:
                statement = statement.where(AiJobRecord.content_item_id == content_item_id)
            rows = session.exec(statement).all()
        return [_to_ai_record_view(row) for row in rows]

    # Generated outputs

    def add_content_output(  # noqa: PLR0913
        self,
        *,
        content_item_id: str,
        content_type: str,
        text: str,
        model: str,
        confidence: float | None,
        job_id: str | None = None,
    ) -> ContentOutputView:
        row = ContentOutput(
            output_id=str(uuid4()),
            content_item_id=content_item_id,
            job_id=job_id,
            content_type=content_type,
            text=text,
            model=model,
            confidence=confidence,
            created_at=to_db_datetime(self.now()),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_output_view(row)

    def list_content_outputs(self, *, content_item_id: str) -> list[ContentOutputView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ContentOutput)
                .where(ContentOutput.content_item_id == content_item_id)
                .order_by(
                    col(ContentOutput.created_at).asc(),
                    literal_column("content_outputs.rowid").asc(),
                ),
            ).all()
        return [_to_output_view(row) for row in rows]

    # Feedback

    def create_feedback(  # noqa: PLR0913
        self,
        *,
        content_item_id: str,
        feedback_type: FeedbackType,
        correction: dict[str, Any] | None = None,
        confidence: float | None = None,
        output_id: str | None = None,
    ) -> FeedbackView:
        now = to_db_datetime(self.now())
        row = Feedback(
            feedback_id=str(uuid4()),
            content_item_id=content_item_id,
            output_id=output_id,
            user_id=self.user_id,
            feedback_type=feedback_type.value,
            correction_json=dump_json(correction),
            confidence=confidence,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_feedback_view(row)

    def get_feedback(self, feedback_id: str) -> FeedbackView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Feedback).where(Feedback.feedback_id == feedback_id),
            ).one_or_none()
            if row is None:
                return None
            return _to_feedback_view(row)

    def update_feedback(  # noqa: PLR0913
        self,
        *,
        feedback_id: str,
        user_id: str,
        edit_window: timedelta,
        correction: dict[str, Any] | None = None,
        feedback_type: FeedbackType | None = None,
        confidence: float | None = None,
    ) -> FeedbackView:
        """Edit feedback: owner only, inside the edit window, not yet learned."""

        now = self.now()
        with Session(self.engine) as session:
            row = session.exec(
                select(Feedback).where(Feedback.feedback_id == feedback_id),
            ).one_or_none()
            if row is None:
                raise FeedbackEditError(f"Feedback not found: {feedback_id}")
            if row.user_id != user_id:
                raise FeedbackEditError("Only the author can edit feedback")
            if row.learned_at is not None:
                raise FeedbackEditError("Feedback was already learned and is now immutable")
            if to_utc_aware_datetime(row.created_at) + edit_window < to_utc_aware_datetime(now):
                raise FeedbackEditError("Feedback edit window has expired")

            values: dict[str, Any] = {"updated_at": to_db_datetime(now)}
            if correction is not None:
                values["correction_json"] = dump_json(correction)
            if feedback_type is not None:
                values["feedback_type"] = feedback_type.value
            if confidence is not None:
                values["confidence"] = confidence
            result = session.exec(
                sa_update(Feedback)
                .where(
                    col(Feedback.feedback_id) == feedback_id,
                    col(Feedback.learned_at).is_(None),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise FeedbackEditError("Feedback was learned while being edited")
            session.commit()
            updated = session.exec(
                select(Feedback).where(Feedback.feedback_id == feedback_id),
            ).one()
            return _to_feedback_view(updated)

    def mark_feedback_learned(self, *, feedback_id: str) -> bool:
        """Set ``learned_at`` once; later calls return ``False``."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Feedback)
                .where(
                    col(Feedback.feedback_id) == feedback_id,
                    col(Feedback.learned_at).is_(None),
                )
                .values(learned_at=to_db_datetime(self.now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def record_learned_entities(
        self,
        *,
        feedback_id: str,
        entities: Iterable[tuple[str, str]],
    ) -> int:
        """Insert ``(entity_type, value)`` pairs, ignoring ones already stored."""

        inserted = 0
        now = to_db_datetime(self.now())
        with Session(self.engine) as session:
            existing = {
                (row.entity_type, row.value)
                for row in session.exec(
                    select(LearnedEntity).where(LearnedEntity.feedback_id == feedback_id),
                ).all()
            }
            for entity_type, value in entities:
                key = (entity_type, value)
                if key in existing:
                    continue
                existing.add(key)
                session.add(
                    LearnedEntity(
                        feedback_id=feedback_id,
                        user_id=self.user_id,
                        entity_type=entity_type,
                        value=value,
                        created_at=now,
                    ),
                )
                inserted += 1
            session.commit()
        return inserted

    def list_learned_entities(self, *, feedback_id: str | None = None) -> list[LearnedEntityView]:
        with Session(self.engine) as session:
            statement = (
                select(LearnedEntity)
                .where(LearnedEntity.user_id == self.user_id)
                .order_by(col(LearnedEntity.id).asc())
            )
            if feedback_id is not None:
                statement = statement.where(LearnedEntity.feedback_id == feedback_id)
            rows = session.exec(statement).all()
        return [
            LearnedEntityView(
                feedback_id=row.feedback_id,
                entity_type=row.entity_type,
                value=row.value,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    # Embeddings

    def upsert_embedding(
        self,
        *,
        content_item_id: str,
        model_name: str,
        vector: list[float],
    ) -> None:
        now = to_db_datetime(self.now())
        with Session(self.engine) as session:
            row = session.exec(
                select(ContentEmbedding).where(
                    ContentEmbedding.content_item_id == content_item_id,
                    ContentEmbedding.model_name == model_name,
                ),
            ).one_or_none()
            if row is None:
                row = ContentEmbedding(
                    content_item_id=content_item_id,
                    model_name=model_name,
                    embedding_dim=len(vector),
                    embedding_blob=_pack_vector(vector),
                    created_at=now,
                )
            else:
                row.embedding_dim = len(vector)
                row.embedding_blob = _pack_vector(vector)
                row.created_at = now
            session.add(row)
            session.commit()

    def get_embeddings(
        self,
        *,
        content_item_ids: Iterable[str],
        model_name: str,
    ) -> dict[str, list[float]]:
        ids = list(content_item_ids)
        if not ids:
            return {}
        with Session(self.engine) as session:
            rows = session.exec(
                select(ContentEmbedding).where(
                    col(ContentEmbedding.content_item_id).in_(ids),
                    ContentEmbedding.model_name == model_name,
                ),
            ).all()
        return {
            row.content_item_id: _unpack_vector(row.embedding_blob, row.embedding_dim)
            for row in rows
        }

    # Duplicate-work leases

    def acquire_lease(self, *, key: str, ttl_seconds: int, owner: str) -> LeaseHandle | None:
        """Take ``key`` unless a live lease holds it; expired leases are taken over."""

        now = self.now()
        expires_at = now + timedelta(seconds=ttl_seconds)
        token = uuid4().hex
        with Session(self.engine) as session:
            session.exec(
                sa_delete(WorkLease).where(
                    col(WorkLease.lease_key) == key,
                    col(WorkLease.expires_at) <= to_db_datetime(now),
                ),
            )
            session.add(
                WorkLease(
                    lease_key=key,
                    token=token,
                    owner=owner,
                    acquired_at=to_db_datetime(now),
                    expires_at=to_db_datetime(expires_at),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
        return LeaseHandle(
            key=key,
            token=token,
            owner=owner,
            expires_at=to_utc_aware_datetime(expires_at),
        )

    def release_lease(self, handle: LeaseHandle) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(WorkLease).where(
                    col(WorkLease.lease_key) == handle.key,
                    col(WorkLease.token) == handle.token,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def renew_lease(self, handle: LeaseHandle, *, ttl_seconds: int) -> datetime | None:
        """Extend a lease still owned by ``handle``; ``None`` once it was taken over."""

        expires_at = self.now() + timedelta(seconds=ttl_seconds)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkLease)
                .where(
                    col(WorkLease.lease_key) == handle.key,
                    col(WorkLease.token) == handle.token,
                )
                .values(expires_at=to_db_datetime(expires_at)),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
        return to_utc_aware_datetime(expires_at)

    def _finish_running(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        status: JobStatus,
        event_type: str,
        details: dict[str, object],
        failure_class: FailureClass | None = None,
        error_summary: str | None = None,
    ) -> bool:
        now = to_db_datetime(self.now())
        values: dict[str, Any] = {
            "status": status.value,
            "finished_at": now,
            "heartbeat_at": now,
            "updated_at": now,
        }
        if failure_class is not None:
            values["failure_class"] = failure_class.value
        if error_summary is not None:
            values["error_summary"] = error_summary
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.user_id) == self.user_id,
                    col(QueueJob.status) == JobStatus.RUNNING.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=JobStatus.RUNNING,
                status_to=status,
                details=details,
            )
            session.commit()
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                user_id=self.user_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details),
                created_at=to_db_datetime(self.now()),
            ),
        )


def _pack_vector(vector: list[float]) -> bytes:
    return struct.pack(f"{len(vector)}f", *vector)


def _unpack_vector(blob: bytes, dim: int) -> list[float]:
    return list(struct.unpack(f"{dim}f", blob))


def _to_content_view(row: ContentItem) -> ContentItemView:
    return ContentItemView(
        content_item_id=row.content_item_id,
        user_id=row.user_id,
        content=row.content,
        content_type=row.content_type,
        status=ContentStatus(row.status),
        metadata=load_json_object(row.metadata_json),
        error_message=row.error_message,
        processed_at=optional_utc(row.processed_at),
        failed_at=optional_utc(row.failed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_job_view(row: QueueJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        user_id=row.user_id,
        job_type=JobType(row.job_type),
        lane=row.lane,
        content_item_id=row.content_item_id,
        parent_job_id=row.parent_job_id,
        payload=load_json_object(row.payload_json),
        status=JobStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        backoff_seconds=row.backoff_seconds,
        run_after=to_utc_aware_datetime(row.run_after),
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        finished_at=optional_utc(row.finished_at),
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        error_summary=row.error_summary,
        worker_id=row.worker_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_ai_record_view(row: AiJobRecord) -> AiJobRecordView:
    return AiJobRecordView(
        record_id=row.record_id or 0,
        job_id=row.job_id,
        content_item_id=row.content_item_id,
        user_id=row.user_id,
        provider=row.provider,
        method=row.method,
        prompt_hash=row.prompt_hash,
        prompt_length=row.prompt_length,
        options=load_json_object(row.options_json),
        status=AiJobRecordStatus(row.status),
        tokens_used=row.tokens_used,
        response_length=row.response_length,
        error_message=row.error_message,
        created_at=to_utc_aware_datetime(row.created_at),
        completed_at=optional_utc(row.completed_at),
    )


def _to_output_view(row: ContentOutput) -> ContentOutputView:
    return ContentOutputView(
        output_id=row.output_id,
        content_item_id=row.content_item_id,
        job_id=row.job_id,
        content_type=row.content_type,
        text=row.text,
        model=row.model,
        confidence=row.confidence,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_feedback_view(row: Feedback) -> FeedbackView:
    return FeedbackView(
        feedback_id=row.feedback_id,
        content_item_id=row.content_item_id,
        output_id=row.output_id,
        user_id=row.user_id,
        feedback_type=FeedbackType(row.feedback_type),
        correction=load_json_object(row.correction_json),
        confidence=row.confidence,
        learned_at=optional_utc(row.learned_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
