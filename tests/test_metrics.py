from __future__ import annotations

import allure
import pytest

from ai_workflow.workflow.errors import ProviderTimeoutError
from ai_workflow.workflow.metrics import (
    RetryClassMetric,
    _percentile,
    build_workflow_metrics,
    render_stats_lines,
)
from ai_workflow.workflow.routing import LANE_CONTENT_GENERATION
from tests.conftest import ScriptedAiClient

pytestmark = [
    allure.epic("AI Workflow"),
    allure.feature("Queue Health"),
]


def test_empty_queue_renders_none_sections(repository) -> None:
    snapshot = build_workflow_metrics(repository=repository)

    lines = render_stats_lines(snapshot=snapshot, hours=24)

    assert lines[0] == "AI workflow queue health (window=24h)"
    assert "Queue status: queued=0 running=0" in lines
    assert "Lane/status: none" in lines
    assert "Window jobs: 0" in lines
    assert "Retry metrics: none" in lines
    assert "Failure-class distribution: none" in lines
    assert "Latency percentiles: none" in lines
    assert lines[-1] == "AI calls: none"


def test_recovered_retries_show_up_in_metrics(make_harness) -> None:
    ai_client = ScriptedAiClient(
        generate_script=[ProviderTimeoutError(), ProviderTimeoutError(), "# Notes\n- done"],
    )
    harness = make_harness(ai_client=ai_client)
    item = harness.service.submit_content(content="done", content_type="notes").item
    harness.service.request_content_generation(item.content_item_id, "summary")

    harness.worker.run_once()
    harness.clock.advance(120)
    harness.worker.run_once()
    harness.clock.advance(240)
    assert harness.worker.run_once().succeeded == 1

    snapshot = build_workflow_metrics(repository=harness.repository, window_hours=1)

    assert snapshot.window_job_count == 1
    assert snapshot.terminal_status_counts == {"succeeded": 1}
    assert snapshot.retry_metrics == [
        RetryClassMetric(failure_class="timeout", retried_jobs=1, succeeded_after_retry=1),
    ]
    latency = snapshot.latency_by_job_type["ai_content_generation"]
    assert latency.sample_size == 1
    assert latency.p50_seconds == pytest.approx(360.0)
    assert snapshot.ai_call_counts == {"scripted": {"completed": 1, "failed": 2}}

    lines = render_stats_lines(snapshot=snapshot, hours=1)
    assert lines[0] == "AI workflow queue health (window=1h)"
    assert f"Lane/status: {LANE_CONTENT_GENERATION}/succeeded=1" in lines
    assert "Retry metrics:" in lines
    assert (
        "  failure_class=timeout retried=1 succeeded_after_retry=1 success_ratio=100.00%" in lines
    )
    assert "  job_type=ai_content_generation n=1 p50=360.00s p90=360.00s p99=360.00s" in lines
    assert "  provider=scripted completed=1 failed=2 failure_rate=66.67%" in lines


def test_jobs_outside_window_are_not_aggregated(make_harness) -> None:
    harness = make_harness()
    item = harness.service.submit_content(content="done", content_type="notes").item
    harness.service.request_content_generation(item.content_item_id, "summary")
    harness.drain()

    harness.clock.advance(2 * 3600)
    snapshot = build_workflow_metrics(repository=harness.repository, window_hours=1)

    assert snapshot.window_job_count == 0
    assert snapshot.ai_call_counts == {}
    assert snapshot.stats.by_status == {"succeeded": 1}


def test_percentile_interpolates_between_ranks() -> None:
    assert _percentile([], 0.5) == 0.0
    assert _percentile([7.0], 0.99) == 7.0
    assert _percentile([4.0, 1.0, 3.0, 2.0], 0.5) == pytest.approx(2.5)
    assert _percentile([0.0, 10.0], 0.9) == pytest.approx(9.0)


def test_retry_success_ratio_handles_zero() -> None:
    assert RetryClassMetric("timeout", 0, 0).success_ratio == 0.0
    assert RetryClassMetric("timeout", 4, 1).success_ratio == 0.25
