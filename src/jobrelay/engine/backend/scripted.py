"""Deterministic model client for local demos and tests."""

from __future__ import annotations

from collections.abc import Callable, Iterable

from jobrelay.engine.backend.base import ModelRequest, ModelResponse, TokenUsage
from jobrelay.errors import ModelCallError

ResponseStep = ModelResponse | Exception | Callable[[ModelRequest], ModelResponse]


class ScriptedModelClient:
    """Replays a fixed list of responses, one per invocation.

    A step may be a `ModelResponse`, an exception to raise, or a callable
    that builds the response from the request. Every request is kept in
    `requests` for inspection.
    """

    def __init__(
        self,
        steps: Iterable[ResponseStep] = (),
        *,
        default: Callable[[ModelRequest], ModelResponse] | None = None,
        provider: str = "scripted",
        model: str = "scripted-model",
    ) -> None:
        self.provider = provider
        self.model = model
        self._steps = list(steps)
        self._default = default
        self.requests: list[ModelRequest] = []

    @classmethod
    def echo(cls, *, provider: str = "scripted", model: str = "echo") -> ScriptedModelClient:
        """Client that answers every request with its last user text."""

        return cls(default=_echo_response, provider=provider, model=model)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def complete(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        if self._steps:
            step = self._steps.pop(0)
        elif self._default is not None:
            step = self._default
        else:
            raise ModelCallError("Scripted model has no responses left", transient=False)

        if isinstance(step, Exception):
            raise step
        if isinstance(step, ModelResponse):
            return step
        return step(request)


def _echo_response(request: ModelRequest) -> ModelResponse:
    text = ""
    for message in reversed(request.messages):
        if message.get("role") == "user" and isinstance(message.get("content"), str):
            text = message["content"]
            break
    return ModelResponse(
        text=f"Echo: {text}",
        usage=TokenUsage(input_tokens=len(text.split()), output_tokens=len(text.split()) + 1),
        stop_reason="end_turn",
    )
