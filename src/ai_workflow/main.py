"""CLI entrypoint for ai-workflow."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from ai_workflow import __version__
from ai_workflow.workflow.controllers import (
    ContentListCommand,
    ContentRedispatchCommand,
    ContentShowCommand,
    ContentSubmitCommand,
    FeedbackAddCommand,
    FeedbackEditCommand,
    JobEnqueueCommand,
    JobInspectCommand,
    JobListCommand,
    StatsCommand,
    WorkerCommand,
    WorkflowCliController,
)
from ai_workflow.workflow.errors import WorkflowError
from ai_workflow.workflow.models import ContentStatus, FeedbackType, JobStatus, JobType
from ai_workflow.workflow.payloads import CONTENT_TYPES
from ai_workflow.workflow.routing import KNOWN_LANES

click.rich_click.USE_MARKDOWN = True
CONTROLLER = WorkflowCliController()

_LANE_CHOICE = click.Choice(list(KNOWN_LANES), case_sensitive=False)
_DB_PATH_HELP = "SQLite DB path (default: `AI_WORKFLOW_DB_PATH` or `.ai_workflow.db`)."


@click.group()
@click.version_option(version=__version__, prog_name="ai-workflow")
def ai_workflow() -> None:
    """Queued AI content workflow.

    Brain dumps are parsed into entities, content is generated and embedded,
    and user feedback is learned from, all through lane-based job queues
    drained by `ai-workflow worker run`.
    """

    _configure_logging()


@ai_workflow.group()
def content() -> None:
    """Content submission and inspection."""


@content.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--text", "text", default=None, help="Content text. Reads `--file` when omitted.")
@click.option(
    "--file",
    "file_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Read content from this file.",
)
@click.option("--content-type", default="brain_dump", show_default=True, help="Content type.")
@click.option("--priority", default=None, help="Priority hint; `urgent` uses the high lane.")
@click.option("--lane", type=_LANE_CHOICE, default=None, help="Force a queue lane.")
def content_submit(  # noqa: PLR0913
    db_path: Path | None,
    text: str | None,
    file_path: Path | None,
    content_type: str,
    priority: str | None,
    lane: str | None,
) -> None:
    """Store content; brain dumps are queued for parsing right away."""

    if text is not None:
        body = text
    elif file_path is not None:
        body = file_path.read_text("utf-8")
    else:
        raise click.UsageError("Pass --text or --file.")
    _run(
        lambda: CONTROLLER.submit_content(
            ContentSubmitCommand(
                db_path=db_path,
                content=body,
                content_type=content_type,
                priority=priority,
                lane=lane,
            ),
        ),
    )


@content.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--content-id", required=True, help="Content item id.")
def content_show(db_path: Path | None, content_id: str) -> None:
    """Show one content item with its jobs and outputs."""

    _run(
        lambda: CONTROLLER.show_content(
            ContentShowCommand(db_path=db_path, content_item_id=content_id),
        ),
    )


@content.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice([status.value for status in ContentStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max items to print.",
)
def content_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent content items."""

    _run(
        lambda: CONTROLLER.list_content(
            ContentListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@content.command("redispatch")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--content-id", required=True, help="Failed content item id.")
def content_redispatch(db_path: Path | None, content_id: str) -> None:
    """Reset a failed item to pending and re-run its last lifecycle job."""

    _run(
        lambda: CONTROLLER.redispatch(
            ContentRedispatchCommand(db_path=db_path, content_item_id=content_id),
        ),
    )


@ai_workflow.group()
def jobs() -> None:
    """Queue inspection and manual enqueue."""


@jobs.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--type",
    "job_type",
    type=click.Choice([job_type.value for job_type in JobType], case_sensitive=False),
    required=True,
    help="Job type.",
)
@click.option(
    "--content-id",
    "content_item_ids",
    multiple=True,
    required=True,
    help="Content item id. Repeat for embedding batches.",
)
@click.option(
    "--content-type",
    type=click.Choice(list(CONTENT_TYPES), case_sensitive=False),
    default=None,
    help="Output type for `ai_content_generation`.",
)
@click.option("--feedback-id", default=None, help="Feedback id for `feedback_learning`.")
@click.option("--lane", type=_LANE_CHOICE, default=None, help="Force a queue lane.")
@click.option("--priority", default=None, help="Priority hint.")
@click.option(
    "--delay",
    "delay_seconds",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Seconds before the job becomes ready.",
)
@click.option("--audience", default=None, help="Audience for generated content.")
@click.option(
    "--format",
    "output_format",
    default=None,
    help="Output format for generated content, for example markdown.",
)
@click.option(
    "--generate-embeddings/--no-generate-embeddings",
    default=False,
    show_default=True,
    help="Queue an embedding job after generation succeeds.",
)
@click.option(
    "--force-regenerate",
    is_flag=True,
    default=False,
    help="Re-embed items that already have a vector.",
)
def jobs_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    job_type: str,
    content_item_ids: tuple[str, ...],
    content_type: str | None,
    feedback_id: str | None,
    lane: str | None,
    priority: str | None,
    delay_seconds: int,
    audience: str | None,
    output_format: str | None,
    generate_embeddings: bool,
    force_regenerate: bool,
) -> None:
    """Enqueue one job by hand."""

    options: dict[str, object] = {}
    if audience is not None:
        options["audience"] = audience
    if output_format is not None:
        options["format"] = output_format
    if generate_embeddings:
        options["generate_embeddings"] = True
    if force_regenerate:
        options["force_regenerate"] = True
    _run(
        lambda: CONTROLLER.enqueue_job(
            JobEnqueueCommand(
                db_path=db_path,
                job_type=job_type,
                content_item_ids=content_item_ids,
                content_type=content_type,
                feedback_id=feedback_id,
                lane=lane,
                priority=priority,
                delay_seconds=delay_seconds,
                options=options,
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--lane", type=_LANE_CHOICE, default=None, help="Optional lane filter.")
@click.option(
    "--type",
    "job_type",
    type=click.Choice([job_type.value for job_type in JobType], case_sensitive=False),
    default=None,
    help="Optional job type filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(  # noqa: PLR0913
    db_path: Path | None,
    status: str | None,
    lane: str | None,
    job_type: str | None,
    limit: int,
) -> None:
    """List queued and finished jobs, newest first."""

    _run(
        lambda: CONTROLLER.list_jobs(
            JobListCommand(
                db_path=db_path,
                status=status,
                lane=lane,
                job_type=job_type,
                limit=limit,
            ),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with AI calls and event history."""

    _run(lambda: CONTROLLER.inspect_job(JobInspectCommand(db_path=db_path, job_id=job_id)))


@jobs.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for aggregation.",
)
def jobs_stats(db_path: Path | None, hours: int) -> None:
    """Show queue health: lanes, retries, failure classes and latency."""

    _run(lambda: CONTROLLER.stats(StatsCommand(db_path=db_path, hours=hours)))


@ai_workflow.group()
def feedback() -> None:
    """User feedback on processed content."""


@feedback.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--content-id", required=True, help="Content item id.")
@click.option(
    "--type",
    "feedback_type",
    type=click.Choice([value.value for value in FeedbackType], case_sensitive=False),
    required=True,
    help="Feedback type.",
)
@click.option("--corrected-content", default=None, help="Corrected text; required for `edit`.")
@click.option(
    "--correction",
    "corrections",
    multiple=True,
    help="Corrected entity as `TYPE=VALUE`, for example `stakeholders=Alice`. Repeatable.",
)
@click.option("--missing", "missing_entities", multiple=True, help="Entity the parse missed.")
@click.option("--confidence", type=click.FloatRange(0.0, 1.0), default=None, help="Confidence.")
@click.option("--output-id", default=None, help="Generated output the feedback refers to.")
def feedback_add(  # noqa: PLR0913
    db_path: Path | None,
    content_id: str,
    feedback_type: str,
    corrected_content: str | None,
    corrections: tuple[str, ...],
    missing_entities: tuple[str, ...],
    confidence: float | None,
    output_id: str | None,
) -> None:
    """Store feedback and queue a learning job."""

    parsed = _parse_corrections(corrections)
    _run(
        lambda: CONTROLLER.add_feedback(
            FeedbackAddCommand(
                db_path=db_path,
                content_item_id=content_id,
                feedback_type=feedback_type,
                corrected_content=corrected_content,
                corrections=parsed,
                missing_entities=missing_entities,
                confidence=confidence,
                output_id=output_id,
            ),
        ),
    )


@feedback.command("edit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--feedback-id", required=True, help="Feedback id.")
@click.option("--corrected-content", default=None, help="Replacement corrected text.")
@click.option("--confidence", type=click.FloatRange(0.0, 1.0), default=None, help="Confidence.")
def feedback_edit(
    db_path: Path | None,
    feedback_id: str,
    corrected_content: str | None,
    confidence: float | None,
) -> None:
    """Edit feedback inside the edit window, before it is learned."""

    _run(
        lambda: CONTROLLER.edit_feedback(
            FeedbackEditCommand(
                db_path=db_path,
                feedback_id=feedback_id,
                corrected_content=corrected_content,
                confidence=confidence,
            ),
        ),
    )


@ai_workflow.group()
def worker() -> None:
    """Queue workers."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--queue",
    "lanes",
    multiple=True,
    help="Lane to drain. Repeatable; all lanes when omitted.",
)
@click.option(
    "--once",
    is_flag=True,
    default=False,
    help="Run one claim-execute cycle and exit.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs per worker thread.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before a worker exits.",
)
def worker_run(
    db_path: Path | None,
    lanes: tuple[str, ...],
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
) -> None:
    """Run lane workers; SIGINT/SIGTERM stop them after the current job."""

    _run(
        lambda: CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                lanes=lanes,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


def _configure_logging() -> None:
    level_name = os.getenv("AI_WORKFLOW_LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        raise click.ClickException(f"Invalid AI_WORKFLOW_LOG_LEVEL: {level_name!r}")
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_corrections(values: tuple[str, ...]) -> dict[str, list[str]]:
    parsed: dict[str, list[str]] = {}
    for value in values:
        entity_type, separator, entity = value.partition("=")
        if not separator or not entity_type.strip() or not entity.strip():
            raise click.BadParameter(
                f"Expected TYPE=VALUE, got {value!r}",
                param_hint="--correction",
            )
        parsed.setdefault(entity_type.strip(), []).append(entity.strip())
    return parsed


def _run(call: Callable[[], list[str]]) -> None:
    try:
        lines = call()
    except (WorkflowError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ai_workflow()
