"""Model client backends for the execution engine."""

from jobrelay.engine.backend.base import (
    ModelClient,
    ModelRequest,
    ModelResponse,
    TokenUsage,
    ToolCall,
    ToolSchema,
)
from jobrelay.engine.backend.http_client import HttpModelClient
from jobrelay.engine.backend.scripted import ScriptedModelClient

__all__ = [
    "HttpModelClient",
    "ModelClient",
    "ModelRequest",
    "ModelResponse",
    "ScriptedModelClient",
    "TokenUsage",
    "ToolCall",
    "ToolSchema",
]
