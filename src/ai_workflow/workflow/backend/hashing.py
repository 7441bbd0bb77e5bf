"""Offline feature-hashing embedder behind the ``hashing-<N>`` model names."""

from __future__ import annotations

import hashlib
import math
import re
from dataclasses import dataclass

from ai_workflow.workflow.backend.base import Vector

HASHING_MODEL_PREFIX = "hashing-"

_WORD_PATTERN = re.compile(r"\w+")


def dimensions_for_model(model_name: str, default: int) -> int:
    """``hashing-64`` embeds into 64 dimensions; other names fall back to ``default``."""

    suffix = model_name.removeprefix(HASHING_MODEL_PREFIX)
    if suffix != model_name and suffix.isdigit() and int(suffix) > 0:
        return int(suffix)
    return default


@dataclass(slots=True)
class HashingEmbedder:
    """Signed feature hashing over word unigrams and bigrams.

    Each feature adds +1 or -1 to one bucket, both picked from its blake2b
    digest, so colliding features tend to cancel. Output is L2-normalised and
    blank text maps to the zero vector.
    """

    model_name: str = "hashing-384"
    dimensions: int = 384

    def embed(self, texts: list[str]) -> list[Vector]:
        return [self._embed_one(text) for text in texts]

    def _embed_one(self, text: str) -> Vector:
        vector = [0.0] * self.dimensions
        for feature in _features(text or ""):
            digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], byteorder="big") % self.dimensions
            vector[bucket] += 1.0 if digest[4] & 1 else -1.0

        norm = math.sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]


def _features(text: str) -> list[str]:
    words = _WORD_PATTERN.findall(text.casefold())
    bigrams = [f"{left} {right}" for left, right in zip(words, words[1:], strict=False)]
    return words + bigrams
