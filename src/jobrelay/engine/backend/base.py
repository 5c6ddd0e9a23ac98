"""Model client interface for tool-calling conversations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(slots=True)
class ToolSchema:
    """Tool advertised to the model under its namespaced name."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass(slots=True)
class ToolCall:
    """One tool invocation requested by the model."""

    call_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TokenUsage:
    """Token counts reported for one or more invocations."""

    input_tokens: int = 0
    output_tokens: int = 0

    def plus(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass(slots=True)
class ModelRequest:
    """Inputs for one model invocation.

    `messages` uses content-block conversation entries:
    `{"role": "user" | "assistant", "content": str | list[block]}`.
    """

    model: str
    messages: list[dict[str, Any]]
    tools: list[ToolSchema]
    max_tokens: int
    system: str | None = None


@dataclass(slots=True)
class ModelResponse:
    """Parsed model output."""

    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    stop_reason: str | None = None

    def content_blocks(self) -> list[dict[str, Any]]:
        """Assistant turn as it is replayed into the next request."""

        blocks: list[dict[str, Any]] = []
        if self.text:
            blocks.append({"type": "text", "text": self.text})
        blocks.extend(
            {
                "type": "tool_use",
                "id": call.call_id,
                "name": call.name,
                "input": call.arguments,
            }
            for call in self.tool_calls
        )
        return blocks


class ModelClient(Protocol):
    """Protocol implemented by model backends."""

    provider: str
    model: str

    def complete(self, request: ModelRequest) -> ModelResponse:
        """Run one invocation; raise `ModelCallError` on failure."""
