"""Lane workers that claim queued jobs and run them through their executors."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from ai_workflow.workflow.errors import RetryExhaustedError
from ai_workflow.workflow.executors import ExecutionContext, ExecutionResult, StageExecutor
from ai_workflow.workflow.leases import lease_stage
from ai_workflow.workflow.models import ContentStatus, FailureClass, JobView, LeaseHandle
from ai_workflow.workflow.payloads import JobPayload, payload_from_dict
from ai_workflow.workflow.repository import WorkflowRepository
from ai_workflow.workflow.retry import RetryPolicy
from ai_workflow.workflow.routing import LaneConfig
from ai_workflow.workflow.services import WorkflowService
from ai_workflow.workflow.state_machine import fail_processing

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.skipped += other.skipped
        self.idle_polls += other.idle_polls


@dataclass(slots=True)
class _StopState:
    requested: bool = False
    signal_name: str | None = None


class WorkflowWorker:
    """Consumes queued jobs from a set of lanes, one job at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: WorkflowRepository,
        service: WorkflowService,
        context: ExecutionContext,
        executors: dict[Any, StageExecutor[Any]],
        lanes: list[str],
        retry_policy: RetryPolicy | None = None,
        poll_interval_seconds: float = 2.0,
        stale_job_seconds: int = 1_800,
        heartbeat_interval_seconds: float = 30.0,
    ) -> None:
        if not lanes:
            raise ValueError("Worker needs at least one lane")
        self.repository = repository
        self.service = service
        self.context = context
        self.executors = executors
        self.lanes = list(lanes)
        self.retry_policy = retry_policy or RetryPolicy()
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_job_seconds = stale_job_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self._stop = _StopState()
        self._current_job_id: str | None = None

    @property
    def worker_id(self) -> str:
        return self.context.worker_id

    @property
    def stop_requested(self) -> bool:
        return self._stop.requested

    def request_stop(self, *, signal_name: str = "manual") -> None:
        """Finish the current job, then stop claiming."""

        if self._stop.requested:
            return
        self._stop.requested = True
        self._stop.signal_name = signal_name
        job_id = self._current_job_id
        if job_id is None:
            return
        try:
            self.repository.add_job_event(
                job_id=job_id,
                event_type="shutdown_requested",
                details={"signal": signal_name, "worker_id": self.worker_id},
            )
        except SQLAlchemyError:
            logger.warning("Could not record shutdown request for job %s", job_id, exc_info=True)

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the worker's lanes."""

        summary = WorkerRunSummary()
        if self._stop.requested:
            summary.idle_polls = 1
            return summary

        job = self._claim_job()
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._current_job_id = job.job_id
        try:
            self._process(job=job, summary=summary)
        finally:
            self._current_job_id = None
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
        install_signal_handlers: bool = True,
    ) -> WorkerRunSummary:
        """Run until the lanes are idle, ``max_tasks`` is reached or a stop is requested.

        Args:
            max_tasks: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
                Pass a large value for a long-running worker.
            install_signal_handlers: Translate SIGINT/SIGTERM into a graceful
                stop. Only effective on the main thread.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        handlers = (
            stop_on_signals(self.request_stop) if install_signal_handlers else nullcontext()
        )
        with handlers:
            while True:
                if self._stop.requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _claim_job(self) -> JobView | None:
        if self.stale_job_seconds > 0:
            recovered = self.repository.recover_stale_running_jobs(
                stale_after_seconds=self.stale_job_seconds,
            )
            if recovered:
                logger.warning("Recovered %d stale running jobs", recovered)
        if self._stop.requested:
            return None
        return self.repository.claim_next_ready_job(worker_id=self.worker_id, lanes=self.lanes)

    def _process(self, *, job: JobView, summary: WorkerRunSummary) -> None:
        try:
            payload = payload_from_dict(job.job_type, job.payload)
        except ValueError as error:
            logger.warning("Job %s has an invalid payload: %s", job.job_id, error)
            self._finish_dead(
                job=job,
                failure_class=FailureClass.VALIDATION,
                error_summary=f"Invalid payload: {error}",
                details={},
                summary=summary,
            )
            return

        guard = self.context.guard
        stage = lease_stage(job.job_type)
        handle = guard.try_acquire(stage, job.content_item_id, owner=self.worker_id)
        if handle is None:
            skipped = self.repository.skip_job(
                job_id=job.job_id,
                reason="duplicate_in_flight",
                details={"lease_key": guard.lease_key(stage, job.content_item_id)},
            )
            summary.skipped = int(skipped)
            return
        try:
            self._run_leased(job=job, payload=payload, handle=handle, summary=summary)
        finally:
            guard.release(handle)

    def _run_leased(
        self,
        *,
        job: JobView,
        payload: JobPayload,
        handle: LeaseHandle,
        summary: WorkerRunSummary,
    ) -> None:
        if job.attempt > job.max_attempts:
            error = RetryExhaustedError(
                f"Attempt {job.attempt} exceeds max_attempts {job.max_attempts}",
            )
            self._finish_dead(
                job=job,
                failure_class=error.failure_class,
                error_summary=str(error),
                details={},
                summary=summary,
            )
            return

        item = self.repository.get_content_item(job.content_item_id)
        if item is not None and item.status is ContentStatus.FAILED:
            logger.warning(
                "Skipping %s job %s: content %s already failed",
                job.job_type.value,
                job.job_id,
                job.content_item_id,
            )
            skipped = self.repository.skip_job(
                job_id=job.job_id,
                reason="content_failed",
                details={"content_item_id": job.content_item_id},
            )
            summary.skipped = int(skipped)
            return

        executor = self.executors[job.job_type]
        with self._heartbeat(job.job_id, handle):
            result = executor.execute(self.context, job, payload)
        if result.success:
            self._handle_success(job=job, result=result, summary=summary)
        else:
            self._handle_failure(job=job, result=result, summary=summary)

    def _handle_success(
        self,
        *,
        job: JobView,
        result: ExecutionResult,
        summary: WorkerRunSummary,
    ) -> None:
        follow_up_ids: list[str] = []
        if result.next_jobs:
            item = self.repository.get_content_item(job.content_item_id)
            if item is not None and item.status is ContentStatus.FAILED:
                logger.warning(
                    "Dropping %d follow-ups of job %s: content %s failed",
                    len(result.next_jobs),
                    job.job_id,
                    job.content_item_id,
                )
            else:
                dispatched = self.service.dispatch_follow_ups(
                    parent=job,
                    follow_ups=result.next_jobs,
                )
                follow_up_ids = [child.job_id for child in dispatched]

        details: dict[str, object] = {**result.details, "follow_up_job_ids": follow_up_ids}
        if result.checkpoint is not None:
            details["checkpoint"] = result.checkpoint.value
        if self.repository.complete_job(job_id=job.job_id, details=details):
            summary.succeeded = 1
            logger.info("%s job %s succeeded", job.job_type.value, job.job_id)

    def _handle_failure(
        self,
        *,
        job: JobView,
        result: ExecutionResult,
        summary: WorkerRunSummary,
    ) -> None:
        if result.failure is None or result.error_summary is None:
            raise RuntimeError("Failed execution result must carry failure and error_summary.")

        failure = result.failure
        details: dict[str, object] = {**result.details, **failure.to_event_details()}
        decision = self.retry_policy.decide(
            attempt=job.attempt,
            failure_class=failure.failure_class,
            max_attempts=job.max_attempts,
            base_backoff_seconds=job.backoff_seconds,
            retry_after_seconds=result.retry_after_seconds,
        )
        if decision.retry:
            retried = self.repository.schedule_retry(
                job_id=job.job_id,
                run_after=self.repository.now() + timedelta(seconds=decision.delay_seconds),
                delay_seconds=decision.delay_seconds,
                failure_class=failure.failure_class,
                error_summary=result.error_summary,
                details=details,
            )
            summary.retried = int(retried)
            if retried:
                logger.info(
                    "Retrying %s job %s in %ds (attempt %d of %d)",
                    job.job_type.value,
                    job.job_id,
                    decision.delay_seconds,
                    job.attempt,
                    job.max_attempts,
                )
            return

        if decision.exhausted:
            details["last_failure_class"] = failure.failure_class.value
            self._finish_dead(
                job=job,
                failure_class=FailureClass.RETRY_EXHAUSTED,
                error_summary=(
                    f"Retry exhausted after {job.attempt} attempts: {result.error_summary}"
                ),
                details=details,
                summary=summary,
            )
            return

        self._finish_dead(
            job=job,
            failure_class=failure.failure_class,
            error_summary=result.error_summary,
            details=details,
            summary=summary,
        )

    def _finish_dead(  # noqa: PLR0913
        self,
        *,
        job: JobView,
        failure_class: FailureClass,
        error_summary: str,
        details: dict[str, object],
        summary: WorkerRunSummary,
    ) -> None:
        killed = self.repository.kill_job(
            job_id=job.job_id,
            failure_class=failure_class,
            error_summary=error_summary,
            details=details,
        )
        if not killed:
            return
        summary.failed = 1
        logger.warning(
            "%s job %s is dead (%s): %s",
            job.job_type.value,
            job.job_id,
            failure_class.value,
            error_summary,
        )
        if job.job_type.is_lifecycle:
            self._fail_owning_item(job=job, error_summary=error_summary)

    def _fail_owning_item(self, *, job: JobView, error_summary: str) -> None:
        item = self.repository.get_content_item(job.content_item_id)
        if item is None or item.status not in {ContentStatus.PENDING, ContentStatus.PROCESSING}:
            return
        applied = self.repository.apply_transition(
            content_item_id=item.content_item_id,
            transition=fail_processing(item, error_summary, now=self.repository.now()),
        )
        if applied:
            logger.warning("Content %s failed: %s", item.content_item_id, error_summary)

    @contextmanager
    def _heartbeat(self, job_id: str, handle: LeaseHandle) -> Iterator[None]:
        """Keep the running job and its lease alive while the executor works."""

        if self.heartbeat_interval_seconds <= 0:
            yield
            return

        stopped = threading.Event()

        def _beat() -> None:
            while not stopped.wait(self.heartbeat_interval_seconds):
                self.repository.touch_job(job_id=job_id)
                self.context.guard.renew(handle)

        thread = threading.Thread(target=_beat, name=f"heartbeat-{job_id[:8]}", daemon=True)
        thread.start()
        try:
            yield
        finally:
            stopped.set()
            thread.join()

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop.requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))


class WorkerPool:
    """Runs ``concurrency`` worker threads for every configured lane."""

    def __init__(
        self,
        *,
        lanes: list[LaneConfig],
        worker_factory: Callable[[LaneConfig, int], WorkflowWorker],
    ) -> None:
        self.lanes = lanes
        self.worker_factory = worker_factory
        self.workers: list[WorkflowWorker] = []

    def request_stop(self, *, signal_name: str = "manual") -> None:
        for worker in self.workers:
            worker.request_stop(signal_name=signal_name)

    def run(
        self,
        *,
        max_tasks_per_worker: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        self.workers = [
            self.worker_factory(lane, index)
            for lane in self.lanes
            for index in range(max(1, lane.concurrency))
        ]
        logger.info(
            "Starting %d workers on lanes %s",
            len(self.workers),
            ", ".join(lane.name for lane in self.lanes),
        )
        aggregate = WorkerRunSummary()
        with (
            stop_on_signals(self.request_stop),
            ThreadPoolExecutor(
                max_workers=len(self.workers),
                thread_name_prefix="ai-workflow-worker",
            ) as executor,
        ):
            futures = [
                executor.submit(
                    worker.run_loop,
                    max_tasks=max_tasks_per_worker,
                    max_idle_polls=max_idle_polls,
                    install_signal_handlers=False,
                )
                for worker in self.workers
            ]
            for future in futures:
                aggregate.add(future.result())
        return aggregate


@contextmanager
def stop_on_signals(on_stop: Callable[..., None]) -> Iterator[None]:
    """Call ``on_stop(signal_name=...)`` on SIGINT/SIGTERM while the block runs.

    Outside the main thread handlers cannot be installed and the block runs
    without them.
    """

    if not hasattr(signal, "SIGTERM") or threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info("Received %s, stopping after the current job", name)
        on_stop(signal_name=name)

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)
    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
