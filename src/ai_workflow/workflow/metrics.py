"""Operator metrics for the workflow queue."""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import timedelta

from ai_workflow.workflow.models import AiJobRecordStatus, JobStatus, QueueStats
from ai_workflow.workflow.repository import WorkflowRepository

_TERMINAL_STATUSES = {JobStatus.SUCCEEDED, JobStatus.SKIPPED, JobStatus.DEAD}
_ACTIVE_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)
DEFAULT_JOB_SAMPLE = 5_000


@dataclass(slots=True)
class RetryClassMetric:
    """Retry metrics for one failure class."""

    failure_class: str
    retried_jobs: int
    succeeded_after_retry: int

    @property
    def success_ratio(self) -> float:
        if self.retried_jobs == 0:
            return 0.0
        return self.succeeded_after_retry / self.retried_jobs


@dataclass(slots=True)
class LatencyPercentiles:
    sample_size: int
    p50_seconds: float
    p90_seconds: float
    p99_seconds: float


@dataclass(slots=True)
class WorkflowMetricsSnapshot:
    """Queue counters plus window aggregates used by ``jobs stats``."""

    stats: QueueStats
    window_job_count: int
    terminal_status_counts: dict[str, int]
    retry_metrics: list[RetryClassMetric]
    latency_by_job_type: dict[str, LatencyPercentiles]
    ai_call_counts: dict[str, dict[str, int]]


def build_workflow_metrics(
    *,
    repository: WorkflowRepository,
    window_hours: int = 24,
    job_sample: int = DEFAULT_JOB_SAMPLE,
) -> WorkflowMetricsSnapshot:
    """Aggregate metrics over jobs created in the last ``window_hours``."""

    since = repository.now() - timedelta(hours=window_hours)
    jobs = [job for job in repository.list_jobs(limit=job_sample) if job.created_at >= since]

    terminal: Counter[str] = Counter()
    retried: Counter[str] = Counter()
    recovered: Counter[str] = Counter()
    durations: dict[str, list[float]] = defaultdict(list)
    for job in jobs:
        if job.status in _TERMINAL_STATUSES:
            terminal[job.status.value] += 1
        if job.failure_class is not None and (job.attempt > 1 or job.status is JobStatus.QUEUED):
            retried[job.failure_class.value] += 1
            if job.status is JobStatus.SUCCEEDED:
                recovered[job.failure_class.value] += 1
        if job.status is JobStatus.SUCCEEDED and job.finished_at is not None:
            durations[job.job_type.value].append(
                max(0.0, (job.finished_at - job.created_at).total_seconds()),
            )

    ai_calls: dict[str, dict[str, int]] = defaultdict(dict)
    for record in repository.list_ai_job_records():
        if record.created_at < since:
            continue
        by_status = ai_calls[record.provider]
        by_status[record.status.value] = by_status.get(record.status.value, 0) + 1

    return WorkflowMetricsSnapshot(
        stats=repository.queue_stats(),
        window_job_count=len(jobs),
        terminal_status_counts=dict(sorted(terminal.items())),
        retry_metrics=[
            RetryClassMetric(
                failure_class=failure_class,
                retried_jobs=count,
                succeeded_after_retry=recovered.get(failure_class, 0),
            )
            for failure_class, count in sorted(retried.items())
        ],
        latency_by_job_type={
            job_type: LatencyPercentiles(
                sample_size=len(values),
                p50_seconds=_percentile(values, 0.50),
                p90_seconds=_percentile(values, 0.90),
                p99_seconds=_percentile(values, 0.99),
            )
            for job_type, values in sorted(durations.items())
        },
        ai_call_counts={
            provider: dict(sorted(counts.items())) for provider, counts in ai_calls.items()
        },
    )


def render_stats_lines(*, snapshot: WorkflowMetricsSnapshot, hours: int) -> list[str]:
    """Render operator-facing metrics lines for CLI output."""

    stats = snapshot.stats
    active = {status: stats.by_status.get(status, 0) for status in _ACTIVE_STATUSES}
    lines = [
        f"AI workflow queue health (window={hours}h)",
        "Queue status: " + (_fmt_key_value(stats.by_status) or _fmt_key_value(active)),
        "Lane/status: " + (_fmt_lane_status(stats.by_lane) or "none"),
        "Content status: " + (_fmt_key_value(stats.content_by_status) or "none"),
        f"Window jobs: {snapshot.window_job_count}",
        (
            "Terminal status distribution: "
            + (_fmt_key_value(snapshot.terminal_status_counts) or "none")
        ),
    ]

    if snapshot.retry_metrics:
        lines.append("Retry metrics:")
        for metric in snapshot.retry_metrics:
            lines.append(
                "  "
                f"failure_class={metric.failure_class} retried={metric.retried_jobs} "
                f"succeeded_after_retry={metric.succeeded_after_retry} "
                f"success_ratio={metric.success_ratio:.2%}",
            )
    else:
        lines.append("Retry metrics: none")

    if stats.by_failure_class:
        lines.append("Failure-class distribution: " + _fmt_key_value(stats.by_failure_class))
    else:
        lines.append("Failure-class distribution: none")

    if snapshot.latency_by_job_type:
        lines.append("Latency percentiles (created_at -> finished_at):")
        for job_type, metrics in snapshot.latency_by_job_type.items():
            lines.append(
                "  "
                f"job_type={job_type} n={metrics.sample_size} "
                f"p50={metrics.p50_seconds:.2f}s "
                f"p90={metrics.p90_seconds:.2f}s "
                f"p99={metrics.p99_seconds:.2f}s",
            )
    else:
        lines.append("Latency percentiles: none")

    if snapshot.ai_call_counts:
        lines.append("AI calls:")
        for provider in sorted(snapshot.ai_call_counts):
            counts = snapshot.ai_call_counts[provider]
            failed = counts.get(AiJobRecordStatus.FAILED.value, 0)
            total = sum(counts.values())
            lines.append(
                f"  provider={provider} {_fmt_key_value(counts)} failure_rate={failed / total:.2%}",
            )
    else:
        lines.append("AI calls: none")
    return lines


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))


def _fmt_lane_status(values: dict[str, dict[str, int]]) -> str:
    flattened: list[str] = []
    for lane in sorted(values):
        for status in sorted(values[lane]):
            flattened.append(f"{lane}/{status}={values[lane][status]}")
    return " ".join(flattened)


def _percentile(values: list[float], percentile: float) -> float:
    if not values:
        return 0.0
    sorted_values = sorted(values)
    if len(sorted_values) == 1:
        return sorted_values[0]
    rank = (len(sorted_values) - 1) * percentile
    lower = int(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    weight = rank - lower
    return sorted_values[lower] * (1.0 - weight) + sorted_values[upper] * weight
