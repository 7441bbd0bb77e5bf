"""AI provider implementations."""

from ai_workflow.workflow.backend.base import AiClient, AiResult, Vector, call_with_timeout
from ai_workflow.workflow.backend.echo_client import EchoAiClient
from ai_workflow.workflow.backend.hashing import HashingEmbedder

__all__ = [
    "AiClient",
    "AiResult",
    "EchoAiClient",
    "HashingEmbedder",
    "Vector",
    "call_with_timeout",
]
