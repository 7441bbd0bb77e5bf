"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from ai_workflow.config import AiSettings, FeedbackSettings, QueueSettings
from ai_workflow.workflow.backend import AiClient, AiResult, EchoAiClient, Vector
from ai_workflow.workflow.executors import ExecutionContext, build_executors
from ai_workflow.workflow.leases import DuplicateWorkGuard, LeaseStore, SqlLeaseStore
from ai_workflow.workflow.models import JobStatus, JobView
from ai_workflow.workflow.repository import WorkflowRepository
from ai_workflow.workflow.retry import RetryPolicy
from ai_workflow.workflow.routing import KNOWN_LANES, QueueRouter
from ai_workflow.workflow.services import WorkflowService
from ai_workflow.workflow.worker import WorkerRunSummary, WorkflowWorker

START = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)

BRAIN_DUMP = "Meeting about Project Alpha. Action: review API by Friday"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class ScriptedAiClient:
    """Replays scripted outcomes call by call, then answers like the echo client.

    A script entry is an exception (raised), a string or ``AiResult`` for
    ``generate``, a vector list for ``embed``, or ``None`` to fall through
    to the echo client for that one call.
    """

    provider_name = "scripted"

    def __init__(
        self,
        *,
        generate_script: list[Any] | None = None,
        embed_script: list[Any] | None = None,
    ) -> None:
        self.generate_script = list(generate_script or [])
        self.embed_script = list(embed_script or [])
        self.fallback = EchoAiClient()
        self.generate_calls: list[str] = []
        self.embed_calls: list[list[str]] = []

    def generate(self, prompt: str, options: dict[str, Any]) -> AiResult:
        self.generate_calls.append(prompt)
        outcome = self.generate_script.pop(0) if self.generate_script else None
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, str):
            return AiResult(text=outcome, confidence=0.9, model="scripted-1", tokens_used=10)
        if isinstance(outcome, AiResult):
            return outcome
        return self.fallback.generate(prompt, options)

    def embed(self, texts: list[str], options: dict[str, Any]) -> list[Vector]:
        self.embed_calls.append(list(texts))
        outcome = self.embed_script.pop(0) if self.embed_script else None
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is not None:
            return outcome
        return self.fallback.embed(texts, options)


@dataclass
class WorkflowHarness:
    repository: WorkflowRepository
    clock: FakeClock
    ai_client: AiClient
    service: WorkflowService
    guard: DuplicateWorkGuard
    worker: WorkflowWorker

    def drain(self) -> WorkerRunSummary:
        """Run every job that is ready now."""

        return self.worker.run_loop(max_idle_polls=1, install_signal_handlers=False)

    def jobs(self, **filters: Any) -> list[JobView]:
        return list(reversed(self.repository.list_jobs(limit=500, **filters)))

    def queued(self) -> list[JobView]:
        return self.jobs(status=JobStatus.QUEUED)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def repository(tmp_path: Path, clock: FakeClock) -> Iterator[WorkflowRepository]:
    repo = WorkflowRepository(tmp_path / "workflow.db", clock=clock)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def make_service(repository: WorkflowRepository) -> Callable[..., WorkflowService]:
    def _make(
        *,
        max_attempts: int = 3,
        backoff_seconds: int = 120,
        edit_window_hours: int = 24,
    ) -> WorkflowService:
        return WorkflowService(
            repository=repository,
            router=QueueRouter(),
            queue_settings=QueueSettings(
                default_max_attempts=max_attempts,
                default_backoff_seconds=backoff_seconds,
            ),
            feedback_settings=FeedbackSettings(edit_window_hours=edit_window_hours),
        )

    return _make


@pytest.fixture()
def make_harness(
    repository: WorkflowRepository,
    clock: FakeClock,
    make_service: Callable[..., WorkflowService],
) -> Callable[..., WorkflowHarness]:
    def _make(  # noqa: PLR0913
        *,
        ai_client: AiClient | None = None,
        lanes: tuple[str, ...] = KNOWN_LANES,
        lease_store: LeaseStore | None = None,
        max_attempts: int = 3,
        ai_settings: AiSettings | None = None,
        worker_id: str = "test-worker",
    ) -> WorkflowHarness:
        client = ai_client or EchoAiClient()
        service = make_service(max_attempts=max_attempts)
        guard = DuplicateWorkGuard(lease_store or SqlLeaseStore(repository), ttl_seconds=300)
        worker = WorkflowWorker(
            repository=repository,
            service=service,
            context=ExecutionContext(
                repository=repository,
                ai_client=client,
                guard=guard,
                ai_settings=ai_settings or AiSettings(timeout_seconds=5.0),
                worker_id=worker_id,
            ),
            executors=build_executors(),
            lanes=list(lanes),
            retry_policy=RetryPolicy(base_backoff_seconds=120, max_attempts=max_attempts),
            poll_interval_seconds=0.0,
            heartbeat_interval_seconds=0.0,
        )
        return WorkflowHarness(
            repository=repository,
            clock=clock,
            ai_client=client,
            service=service,
            guard=guard,
            worker=worker,
        )

    return _make
