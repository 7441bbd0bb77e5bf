"""Typed job payloads and their JSON representation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

from ai_workflow.workflow.models import JobType

CONTENT_TYPES = ("release_notes", "summary", "action_items", "analysis")


@dataclass(slots=True, frozen=True)
class BrainDumpParsePayload:
    job_type: ClassVar[JobType] = JobType.BRAIN_DUMP_PARSE

    content_item_id: str
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class AiContentGenerationPayload:
    """Generate one derived text (release notes, summary, ...) from an item."""

    job_type: ClassVar[JobType] = JobType.AI_CONTENT_GENERATION

    content_item_id: str
    content_type: str
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class FeedbackLearningPayload:
    job_type: ClassVar[JobType] = JobType.FEEDBACK_LEARNING

    feedback_id: str
    content_item_id: str


@dataclass(slots=True, frozen=True)
class EmbeddingGenerationPayload:
    """Embed one item or an ordered batch; the first id owns the job."""

    job_type: ClassVar[JobType] = JobType.EMBEDDING_GENERATION

    content_item_ids: tuple[str, ...]
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def content_item_id(self) -> str:
        return self.content_item_ids[0]


JobPayload = (
    BrainDumpParsePayload
    | AiContentGenerationPayload
    | FeedbackLearningPayload
    | EmbeddingGenerationPayload
)


@dataclass(slots=True)
class FollowUpJob:
    """Job an executor asks to dispatch after its own success."""

    payload: JobPayload
    delay_seconds: int = 0
    priority_hint: str | None = None


def payload_to_dict(payload: JobPayload) -> dict[str, Any]:
    if isinstance(payload, BrainDumpParsePayload):
        return {"content_item_id": payload.content_item_id, "options": dict(payload.options)}
    if isinstance(payload, AiContentGenerationPayload):
        return {
            "content_item_id": payload.content_item_id,
            "content_type": payload.content_type,
            "options": dict(payload.options),
        }
    if isinstance(payload, FeedbackLearningPayload):
        return {"feedback_id": payload.feedback_id, "content_item_id": payload.content_item_id}
    return {
        "content_item_ids": list(payload.content_item_ids),
        "options": dict(payload.options),
    }


def payload_from_dict(job_type: JobType | str, data: dict[str, Any]) -> JobPayload:
    """Rebuild a typed payload; malformed input raises ``ValueError``."""

    resolved = JobType(job_type)
    if resolved is JobType.BRAIN_DUMP_PARSE:
        return BrainDumpParsePayload(
            content_item_id=_required_str(data, "content_item_id"),
            options=_options(data),
        )
    if resolved is JobType.AI_CONTENT_GENERATION:
        return AiContentGenerationPayload(
            content_item_id=_required_str(data, "content_item_id"),
            content_type=_required_str(data, "content_type"),
            options=_options(data),
        )
    if resolved is JobType.FEEDBACK_LEARNING:
        return FeedbackLearningPayload(
            feedback_id=_required_str(data, "feedback_id"),
            content_item_id=_required_str(data, "content_item_id"),
        )

    raw_ids = data.get("content_item_ids")
    if raw_ids is None and "content_item_id" in data:
        raw_ids = [data["content_item_id"]]
    if not isinstance(raw_ids, list) or not raw_ids:
        raise ValueError("embedding payload requires a non-empty content_item_ids list")
    ids: list[str] = []
    for raw in raw_ids:
        if not isinstance(raw, str) or not raw.strip():
            raise ValueError(f"Invalid content item id in embedding payload: {raw!r}")
        if raw.strip() not in ids:
            ids.append(raw.strip())
    return EmbeddingGenerationPayload(content_item_ids=tuple(ids), options=_options(data))


def _required_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Job payload field {key!r} is missing or empty")
    return value.strip()


def _options(data: dict[str, Any]) -> dict[str, Any]:
    raw = data.get("options")
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError("Job payload field 'options' must be an object")
    return dict(raw)
