"""Namespaced tool registry consulted by the execution engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from jobrelay.engine.backend.base import ToolSchema
from jobrelay.storage.common import utc_now

logger = logging.getLogger(__name__)

NAMESPACE_SEPARATOR = "__"
_MAX_RESULT_CHARS = 20_000


@dataclass(slots=True)
class ToolSpec:
    """Tool declared by a provider under its local name."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass(slots=True)
class ToolContext:
    """Caller identity passed to every tool call."""

    organization_id: str
    user_id: str | None = None
    job_id: str | None = None
    session_id: str | None = None


@dataclass(slots=True)
class ToolResult:
    """Tool output fed back to the model; errors are results, not exceptions."""

    content: str
    is_error: bool = False


class ToolProvider(Protocol):
    """A fixed set of tools registered under one namespace."""

    namespace: str

    def tools(self) -> list[ToolSpec]:
        """Tools this provider exposes."""

    def call(self, name: str, arguments: dict[str, Any], context: ToolContext) -> ToolResult:
        """Run the local tool `name`; may raise, the registry converts errors."""


def qualify(namespace: str, tool_name: str) -> str:
    return f"{namespace}{NAMESPACE_SEPARATOR}{tool_name}"


def split_tool_name(qualified_name: str) -> tuple[str, str]:
    """Split `<namespace>__<tool>`; raises ValueError when no namespace is present."""

    namespace, separator, tool_name = qualified_name.partition(NAMESPACE_SEPARATOR)
    if not separator or not namespace or not tool_name:
        raise ValueError(f"Tool name is not namespaced: {qualified_name!r}")
    return namespace, tool_name


class ToolRegistry:
    """Lookup from `(namespace, tool)` to the provider that implements it."""

    def __init__(self, providers: list[ToolProvider] | None = None) -> None:
        self._providers: dict[str, ToolProvider] = {}
        self._specs: dict[tuple[str, str], ToolSpec] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: ToolProvider) -> None:
        namespace = provider.namespace
        if not namespace or NAMESPACE_SEPARATOR in namespace:
            raise ValueError(f"Invalid tool namespace: {namespace!r}")
        if namespace in self._providers:
            raise ValueError(f"Tool namespace already registered: {namespace}")
        specs: dict[tuple[str, str], ToolSpec] = {}
        for spec in provider.tools():
            if NAMESPACE_SEPARATOR in spec.name:
                raise ValueError(f"Tool name must not contain '{NAMESPACE_SEPARATOR}': {spec.name}")
            specs[(namespace, spec.name)] = spec
        self._providers[namespace] = provider
        self._specs.update(specs)

    @property
    def namespaces(self) -> list[str]:
        return sorted(self._providers)

    def schemas(self) -> list[ToolSchema]:
        return [
            ToolSchema(
                name=qualify(namespace, tool_name),
                description=spec.description,
                input_schema=spec.input_schema,
            )
            for (namespace, tool_name), spec in sorted(self._specs.items())
        ]

    def execute(
        self,
        qualified_name: str,
        arguments: dict[str, Any],
        context: ToolContext,
    ) -> ToolResult:
        """Run one tool call and always return a result."""

        try:
            namespace, tool_name = split_tool_name(qualified_name)
        except ValueError as error:
            return ToolResult(content=str(error), is_error=True)

        provider = self._providers.get(namespace)
        if provider is None or (namespace, tool_name) not in self._specs:
            return ToolResult(content=f"Unknown tool: {qualified_name}", is_error=True)

        try:
            result = provider.call(tool_name, arguments, context)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Tool %s failed for job=%s: %s",
                qualified_name,
                context.job_id,
                error,
            )
            return ToolResult(content=f"{type(error).__name__}: {error}", is_error=True)

        if len(result.content) > _MAX_RESULT_CHARS:
            result = ToolResult(
                content=result.content[:_MAX_RESULT_CHARS] + "\n[truncated]",
                is_error=result.is_error,
            )
        return result


class BuiltinToolProvider:
    """Small always-available tools."""

    namespace = "builtin"

    def tools(self) -> list[ToolSpec]:
        return [
            ToolSpec(
                name="current_time",
                description="Current UTC date and time in ISO 8601 format.",
                input_schema={"type": "object", "properties": {}},
            ),
            ToolSpec(
                name="echo",
                description="Return the given text unchanged.",
                input_schema={
                    "type": "object",
                    "properties": {"text": {"type": "string", "description": "Text to return"}},
                    "required": ["text"],
                },
            ),
            ToolSpec(
                name="word_count",
                description="Count words in the given text.",
                input_schema={
                    "type": "object",
                    "properties": {"text": {"type": "string"}},
                    "required": ["text"],
                },
            ),
        ]

    def call(self, name: str, arguments: dict[str, Any], context: ToolContext) -> ToolResult:
        if name == "current_time":
            return ToolResult(content=utc_now().isoformat())
        text = arguments.get("text")
        if not isinstance(text, str):
            raise ValueError("Argument 'text' must be a string.")
        if name == "echo":
            return ToolResult(content=text)
        if name == "word_count":
            return ToolResult(content=str(len(text.split())))
        raise ValueError(f"Unsupported builtin tool: {name}")
