"""Runtime configuration for the workflow queue, workers and AI calls."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class QueueSettings:
    """Enqueue-time defaults and lane sizing."""

    default_max_attempts: int = 3
    default_backoff_seconds: int = 120
    lane_concurrency: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class WorkerSettings:
    """Lane worker loop settings."""

    poll_interval_seconds: float = 2.0
    stale_job_seconds: int = 1_800
    lock_ttl_seconds: int = 300
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class AiSettings:
    """Provider call settings."""

    provider: str = "echo"
    timeout_seconds: float = 60.0
    embedding_model: str = "hashing-384"
    embedding_dim: int = 384
    followup_embedding_delay_seconds: int = 30


@dataclass(slots=True)
class FeedbackSettings:
    edit_window_hours: int = 24


@dataclass(slots=True)
class UserContextSettings:
    """User context settings."""

    user_id: str = "default_user"
    user_name: str = "Default User"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".ai_workflow.db")
    log_level: str = "INFO"
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    ai: AiSettings = field(default_factory=AiSettings)
    feedback: FeedbackSettings = field(default_factory=FeedbackSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AI_WORKFLOW_DB_PATH", ".ai_workflow.db")),
            log_level=os.getenv("AI_WORKFLOW_LOG_LEVEL", "INFO").strip().upper(),
            queue=QueueSettings(
                default_max_attempts=_env_int("AI_WORKFLOW_MAX_ATTEMPTS", 3),
                default_backoff_seconds=_env_int("AI_WORKFLOW_BACKOFF_SECONDS", 120),
                lane_concurrency=_collect_lane_concurrency(),
            ),
            worker=WorkerSettings(
                poll_interval_seconds=_env_float("AI_WORKFLOW_POLL_INTERVAL_SECONDS", 2.0),
                stale_job_seconds=_env_int("AI_WORKFLOW_STALE_JOB_SECONDS", 1_800),
                lock_ttl_seconds=_env_int("AI_WORKFLOW_LOCK_TTL_SECONDS", 300),
                sqlite_busy_timeout_ms=_env_int("AI_WORKFLOW_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            ),
            ai=AiSettings(
                provider=os.getenv("AI_WORKFLOW_AI_PROVIDER", "echo").strip().lower(),
                timeout_seconds=_env_float("AI_WORKFLOW_AI_TIMEOUT_SECONDS", 60.0),
                embedding_model=os.getenv("AI_WORKFLOW_EMBEDDING_MODEL", "hashing-384").strip(),
                embedding_dim=_env_int("AI_WORKFLOW_EMBEDDING_DIM", 384),
                followup_embedding_delay_seconds=_env_int(
                    "AI_WORKFLOW_FOLLOWUP_EMBEDDING_DELAY_SECONDS",
                    30,
                ),
            ),
            feedback=FeedbackSettings(
                edit_window_hours=_env_int("AI_WORKFLOW_FEEDBACK_EDIT_WINDOW_HOURS", 24),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("AI_WORKFLOW_USER_ID", "default_user"),
                user_name=os.getenv("AI_WORKFLOW_USER_NAME", "Default User"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"AI_WORKFLOW_LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}: "
                f"{self.log_level!r}",
            )
        if self.queue.default_max_attempts < 1:
            raise ValueError("AI_WORKFLOW_MAX_ATTEMPTS must be >= 1.")
        if self.queue.default_backoff_seconds < 0:
            raise ValueError("AI_WORKFLOW_BACKOFF_SECONDS must be >= 0.")
        for lane, concurrency in self.queue.lane_concurrency.items():
            if concurrency < 1:
                raise ValueError(
                    f"AI_WORKFLOW_LANE_CONCURRENCY value for {lane!r} must be >= 1.",
                )
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("AI_WORKFLOW_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.stale_job_seconds <= 0:
            raise ValueError("AI_WORKFLOW_STALE_JOB_SECONDS must be > 0.")
        if self.worker.lock_ttl_seconds <= 0:
            raise ValueError("AI_WORKFLOW_LOCK_TTL_SECONDS must be > 0.")
        if self.ai.timeout_seconds <= 0:
            raise ValueError("AI_WORKFLOW_AI_TIMEOUT_SECONDS must be > 0.")
        if self.worker.lock_ttl_seconds <= self.ai.timeout_seconds:
            raise ValueError(
                "AI_WORKFLOW_LOCK_TTL_SECONDS must exceed AI_WORKFLOW_AI_TIMEOUT_SECONDS.",
            )
        if self.ai.embedding_dim <= 0:
            raise ValueError("AI_WORKFLOW_EMBEDDING_DIM must be > 0.")
        if not self.ai.embedding_model:
            raise ValueError("AI_WORKFLOW_EMBEDDING_MODEL must not be empty.")
        if self.ai.followup_embedding_delay_seconds < 0:
            raise ValueError("AI_WORKFLOW_FOLLOWUP_EMBEDDING_DELAY_SECONDS must be >= 0.")
        if self.feedback.edit_window_hours < 0:
            raise ValueError("AI_WORKFLOW_FEEDBACK_EDIT_WINDOW_HOURS must be >= 0.")


def _collect_lane_concurrency() -> dict[str, int]:
    raw = os.getenv("AI_WORKFLOW_LANE_CONCURRENCY", "").strip()
    if not raw:
        return {}

    overrides: dict[str, int] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                "Invalid AI_WORKFLOW_LANE_CONCURRENCY entry: "
                f"{token!r}. Expected format '<lane>=<workers>'.",
            )
        lane, count_raw = token.split("=", 1)
        lane = lane.strip().lower()
        count_raw = count_raw.strip()
        try:
            count = int(count_raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid AI_WORKFLOW_LANE_CONCURRENCY value for {lane!r}: {count_raw!r}",
            ) from error
        overrides[lane] = count
    return overrides


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error
