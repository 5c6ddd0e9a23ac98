"""Messages-API model client over httpx."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from jobrelay.engine.backend.base import ModelRequest, ModelResponse, TokenUsage, ToolCall
from jobrelay.errors import ModelCallError

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
_TRANSIENT_STATUS_CODES = frozenset({408, 409, 429})


class HttpModelClient:
    """Sync client for a `/v1/messages` style endpoint.

    Timeouts, connection errors, 429 and 5xx responses raise a transient
    `ModelCallError`; other 4xx responses are permanent.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        provider: str = "anthropic",
        timeout_seconds: float = 120.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.provider = provider
        self.model = model
        headers = {
            "content-type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        if api_key:
            headers["x-api-key"] = api_key
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport,
        )

    def complete(self, request: ModelRequest) -> ModelResponse:
        body: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": request.messages,
        }
        if request.system:
            body["system"] = request.system
        if request.tools:
            body["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.input_schema,
                }
                for tool in request.tools
            ]

        try:
            response = self._client.post("/v1/messages", json=body)
        except httpx.TimeoutException as error:
            raise ModelCallError(f"Model request timed out: {error}", transient=True) from error
        except httpx.HTTPError as error:
            raise ModelCallError(f"Model request failed: {error}", transient=True) from error

        if not response.is_success:
            status = response.status_code
            transient = status in _TRANSIENT_STATUS_CODES or status >= 500
            logger.warning(
                "Model endpoint returned HTTP %d (transient=%s): %s",
                status,
                transient,
                response.text[:500],
            )
            input_tokens, output_tokens = _error_usage(response)
            raise ModelCallError(
                f"Model endpoint returned HTTP {status}: {_error_message(response)}",
                transient=transient,
                status_code=status,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )

        try:
            payload = response.json()
        except ValueError as error:
            raise ModelCallError("Model endpoint returned invalid JSON", transient=True) from error
        return parse_messages_response(payload)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpModelClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def parse_messages_response(payload: dict[str, Any]) -> ModelResponse:
    """Convert a Messages-API JSON body into a `ModelResponse`."""

    texts: list[str] = []
    calls: list[ToolCall] = []
    for block in payload.get("content") or []:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            texts.append(str(block.get("text", "")))
        elif block_type == "tool_use":
            arguments = block.get("input")
            calls.append(
                ToolCall(
                    call_id=str(block.get("id", "")),
                    name=str(block.get("name", "")),
                    arguments=arguments if isinstance(arguments, dict) else {},
                ),
            )
    usage = payload.get("usage") or {}
    return ModelResponse(
        text="\n".join(part for part in texts if part),
        tool_calls=calls,
        usage=TokenUsage(
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
        ),
        stop_reason=payload.get("stop_reason"),
    )


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return response.text[:200]


def _error_usage(response: httpx.Response) -> tuple[int, int]:
    """Billed tokens some providers still report on an error body."""

    try:
        payload = response.json()
    except ValueError:
        return 0, 0
    usage = payload.get("usage") if isinstance(payload, dict) else None
    if not isinstance(usage, dict):
        return 0, 0
    return int(usage.get("input_tokens") or 0), int(usage.get("output_tokens") or 0)
