"""Brain-dump entity extraction: prompt, response parsing and summaries."""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from ai_workflow.workflow.errors import InvalidAiResponseError

T = TypeVar("T")

ENTITY_KEYS = ("stakeholders", "projects", "action_items", "dates")
PROMPT_CONTENT_SEPARATOR = "\n---\n"

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)
_PROJECT_RE = re.compile(r"\bProject\s+([A-Z][\w-]*)")
_STAKEHOLDER_RE = re.compile(
    r"\b(?:with|from|ask|cc|ping)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)",
)
_ACTIONS_RE = re.compile(r"\baction(?:\s+items?|s)?\s*:\s*(.+)", re.IGNORECASE)
_ACTION_SPLIT_RE = re.compile(r"\s*(?:\d+\)|;)\s*")
_DATE_RE = re.compile(
    r"\bby\s+(monday|tuesday|wednesday|thursday|friday|saturday|sunday|"
    r"tomorrow|today|end of (?:day|week|month)|\d{4}-\d{2}-\d{2})\b",
    re.IGNORECASE,
)

_EXTRACTION_INSTRUCTIONS = (
    "Extract entities from the brain dump below. Answer with one JSON object with "
    'keys "stakeholders", "projects", "action_items" and "dates", each a list of '
    "strings. Do not add commentary."
)


@dataclass(slots=True)
class ExtractedEntities:
    """Entities found in one brain dump."""

    stakeholders: list[str] = field(default_factory=list)
    projects: list[str] = field(default_factory=list)
    action_items: list[str] = field(default_factory=list)
    dates: list[str] = field(default_factory=list)

    def to_metadata(self) -> dict[str, list[str]]:
        return {
            "stakeholders": list(self.stakeholders),
            "projects": list(self.projects),
            "action_items": list(self.action_items),
            "dates": list(self.dates),
        }

    @classmethod
    def from_metadata(cls, raw: object) -> ExtractedEntities | None:
        """Rebuild stored entities; ``None`` when nothing usable is stored."""

        if not isinstance(raw, dict):
            return None
        try:
            return _entities_from_mapping(raw)
        except InvalidAiResponseError:
            return None

    def count(self) -> int:
        return len(self.stakeholders) + len(self.projects) + len(self.action_items) + len(
            self.dates,
        )


def build_extraction_prompt(content: str) -> str:
    return f"{_EXTRACTION_INSTRUCTIONS}{PROMPT_CONTENT_SEPARATOR}{content}"


def parse_entities(raw_text: str) -> ExtractedEntities:
    """Parse a provider answer into entities.

    Accepts a bare JSON object or one wrapped in a markdown code fence.
    Anything else raises ``InvalidAiResponseError``.
    """

    text = raw_text.strip()
    fenced = _CODE_FENCE_RE.match(text)
    if fenced is not None:
        text = fenced.group(1).strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as error:
        raise InvalidAiResponseError(f"Entity extraction answer is not JSON: {error}") from error
    if not isinstance(parsed, dict):
        raise InvalidAiResponseError("Entity extraction answer must be a JSON object")
    return _entities_from_mapping(parsed)


def extract_entities_heuristic(content: str) -> ExtractedEntities:
    """Rule-based extraction used by the offline client."""

    projects = _unique(f"Project {match}" for match in _PROJECT_RE.findall(content))
    stakeholders = _unique(
        name for name in _STAKEHOLDER_RE.findall(content) if not name.startswith("Project")
    )
    action_items: list[str] = []
    for match in _ACTIONS_RE.findall(content):
        for part in _ACTION_SPLIT_RE.split(match):
            cleaned = part.strip().rstrip(".").strip()
            if cleaned:
                action_items.append(cleaned)
    dates = _unique(match.lower() for match in _DATE_RE.findall(content))
    return ExtractedEntities(
        stakeholders=stakeholders,
        projects=projects,
        action_items=_unique(action_items),
        dates=dates,
    )


def summarize_entities(entities: ExtractedEntities) -> dict[str, Any]:
    """Processing result stored on the content item after a parse."""

    return {
        "action_items": [
            {"title": item, "due_date": _due_date_for(item, entities.dates)}
            for item in entities.action_items
        ],
        "stakeholders": list(entities.stakeholders),
        "projects": list(entities.projects),
        "due_dates": list(entities.dates),
        "entity_count": entities.count(),
    }


def extract_corrections(correction: dict[str, Any]) -> list[tuple[str, str]]:
    """Flatten a feedback correction payload into ``(entity_type, value)`` pairs."""

    pairs: list[tuple[str, str]] = []
    for key in sorted(correction):
        if not key.startswith("corrected_") or key == "corrected_content":
            continue
        values = correction[key]
        if not isinstance(values, list):
            continue
        entity_type = key.removeprefix("corrected_")
        pairs.extend((entity_type, value.strip()) for value in values if _is_text(value))

    missing = correction.get("missing_entities")
    if isinstance(missing, list):
        for entry in missing:
            if _is_text(entry):
                pairs.append(("missing", entry.strip()))
            elif isinstance(entry, dict) and _is_text(entry.get("value")):
                entity_type = entry.get("type")
                pairs.append(
                    (
                        entity_type.strip() if _is_text(entity_type) else "missing",
                        entry["value"].strip(),
                    ),
                )

    content = correction.get("corrected_content")
    if _is_text(content):
        pairs.append(("corrected_content", content.strip()))
    return _unique(pairs)


def _entities_from_mapping(raw: dict[str, Any]) -> ExtractedEntities:
    values: dict[str, list[str]] = {}
    for key in ENTITY_KEYS:
        items = raw.get(key, [])
        if items is None:
            items = []
        if not isinstance(items, list):
            raise InvalidAiResponseError(f"Entity field {key!r} must be a list")
        values[key] = _unique(_entity_text(item, key) for item in items)
    return ExtractedEntities(**values)


def _entity_text(item: object, key: str) -> str:
    if _is_text(item):
        return item.strip()
    if isinstance(item, dict):
        for name in ("title", "name", "description", "value"):
            candidate = item.get(name)
            if _is_text(candidate):
                return candidate.strip()
    raise InvalidAiResponseError(f"Unsupported entry in entity field {key!r}: {item!r}")


def _due_date_for(action_item: str, dates: list[str]) -> str | None:
    lowered = action_item.lower()
    for date in dates:
        if date in lowered:
            return date
    return None


def _is_text(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _unique(values: Iterable[T]) -> list[T]:
    seen: set[T] = set()
    result: list[T] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result
