from __future__ import annotations

import json
import math
import threading

import allure
import pytest

from ai_workflow.workflow.backend import EchoAiClient, HashingEmbedder, call_with_timeout
from ai_workflow.workflow.backend.hashing import dimensions_for_model
from ai_workflow.workflow.entities import build_extraction_prompt
from ai_workflow.workflow.errors import ProviderTimeoutError
from ai_workflow.workflow.failure_classifier import classify_error
from ai_workflow.workflow.models import FailureClass
from tests.conftest import BRAIN_DUMP

pytestmark = [
    allure.epic("AI Workflow"),
    allure.feature("AI Backend"),
]


def test_call_with_timeout_returns_fast_result() -> None:
    assert call_with_timeout(lambda: "ok", timeout_seconds=1.0) == "ok"


def test_call_with_timeout_raises_classified_timeout() -> None:
    release = threading.Event()

    with pytest.raises(ProviderTimeoutError, match="exceeded 0.05s") as caught:
        call_with_timeout(lambda: release.wait(5), timeout_seconds=0.05, provider="slow")
    release.set()

    assert caught.value.provider == "slow"
    assert classify_error(caught.value).failure_class == FailureClass.TIMEOUT


def test_call_with_timeout_propagates_provider_errors() -> None:
    def _fail() -> str:
        raise ValueError("bad prompt")

    with pytest.raises(ValueError, match="bad prompt"):
        call_with_timeout(_fail, timeout_seconds=1.0)


def test_hashing_embedder_is_deterministic_and_normalized() -> None:
    embedder = HashingEmbedder(dimensions=64)

    first, second, empty = embedder.embed(["Project Alpha", "Project Alpha", ""])

    assert len(first) == 64
    assert first == second
    assert math.isclose(math.sqrt(sum(value * value for value in first)), 1.0, rel_tol=1e-5)
    assert empty == [0.0] * 64


def _cosine(left: list[float], right: list[float]) -> float:
    return sum(l_value * r_value for l_value, r_value in zip(left, right, strict=True))


def test_hashing_embedder_scores_shared_wording_above_unrelated_text() -> None:
    notes, overlap, unrelated = HashingEmbedder().embed(
        ["review the api docs", "review the api", "lunch menu friday"],
    )

    assert _cosine(notes, overlap) > 0.5
    assert _cosine(notes, overlap) > _cosine(notes, unrelated)


def test_hashing_model_name_sets_vector_width() -> None:
    assert dimensions_for_model("hashing-64", 384) == 64
    assert dimensions_for_model("hashing-0", 384) == 384
    assert dimensions_for_model("text-embedding-3-small", 384) == 384

    client = EchoAiClient()
    assert len(client.embed(["notes"], {"model": "hashing-64"})[0]) == 64
    assert len(client.embed(["notes"], {})[0]) == 384


def test_echo_client_answers_extraction_prompts_with_entities_json() -> None:
    result = EchoAiClient().generate(build_extraction_prompt(BRAIN_DUMP), {})

    parsed = json.loads(result.text)
    assert parsed["projects"] == ["Project Alpha"]
    assert parsed["action_items"] == ["review API by Friday"]
    assert result.model == "echo-1"


def test_echo_client_renders_generation_as_markdown_list() -> None:
    result = EchoAiClient().generate(
        "Write release notes.\n---\nFixed login\nAdded export",
        {"content_type": "release_notes"},
    )

    assert result.text == "# Release Notes\n- Fixed login\n- Added export"
    assert result.tokens_used is not None


def test_echo_client_embeds_one_vector_per_text() -> None:
    vectors = EchoAiClient().embed(["a", "b", "c"], {})

    assert len(vectors) == 3
    assert all(len(vector) == 384 for vector in vectors)
