"""Deterministic offline AI client for local runs and tests."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from ai_workflow.workflow.backend.base import AiResult, Vector
from ai_workflow.workflow.backend.hashing import HashingEmbedder, dimensions_for_model
from ai_workflow.workflow.entities import (
    PROMPT_CONTENT_SEPARATOR,
    build_extraction_prompt,
    extract_entities_heuristic,
)

_EXTRACTION_MARKER = build_extraction_prompt("").split(PROMPT_CONTENT_SEPARATOR, 1)[0]


@dataclass(slots=True)
class EchoAiClient:
    """Answers without a network: rule-based entities, echoed text, hashed vectors."""

    provider_name: str = "echo"
    model: str = "echo-1"
    embedder: HashingEmbedder = field(default_factory=HashingEmbedder)

    def generate(self, prompt: str, options: dict[str, Any]) -> AiResult:
        head, _, body = prompt.rpartition(PROMPT_CONTENT_SEPARATOR)
        if head.startswith(_EXTRACTION_MARKER):
            entities = extract_entities_heuristic(body)
            text = json.dumps(entities.to_metadata(), ensure_ascii=False, sort_keys=True)
            confidence = 0.9
        else:
            lines = [line.strip() for line in body.strip().splitlines() if line.strip()]
            title = str(options.get("content_type") or "output").replace("_", " ").title()
            text = "\n".join([f"# {title}", *(f"- {line}" for line in lines)])
            confidence = 0.8
        return AiResult(
            text=text,
            confidence=confidence,
            model=self.model,
            tokens_used=len(prompt.split()) + len(text.split()),
        )

    def embed(self, texts: list[str], options: dict[str, Any]) -> list[Vector]:
        model = options.get("model")
        if not isinstance(model, str) or model == self.embedder.model_name:
            return self.embedder.embed(texts)
        embedder = HashingEmbedder(
            model_name=model,
            dimensions=dimensions_for_model(model, self.embedder.dimensions),
        )
        return embedder.embed(texts)
