from __future__ import annotations

from typing import TYPE_CHECKING, Any

import allure
import pytest

from jobrelay.budget.guard import BudgetGuard
from jobrelay.budget.ledger import UsageLedger
from jobrelay.budget.models import UsageRecord
from jobrelay.config import Settings
from jobrelay.engine.backend import (
    ModelRequest,
    ModelResponse,
    ScriptedModelClient,
    TokenUsage,
    ToolCall,
)
from jobrelay.engine.executor import ExecutionContext, ExecutionRequest, ToolExecutionEngine
from jobrelay.engine.tools import (
    BuiltinToolProvider,
    ToolContext,
    ToolRegistry,
    ToolResult,
    ToolSpec,
    split_tool_name,
)
from jobrelay.errors import LeaseLost, ModelCallError
from jobrelay.queue.repository import JobStore

if TYPE_CHECKING:
    from conftest import FakeClock

pytestmark = [
    allure.epic("Tool Execution"),
    allure.feature("Bounded Tool Loop"),
]


class _ExplodingProvider:
    namespace = "crm"

    def tools(self) -> list[ToolSpec]:
        return [ToolSpec(name="lookup", description="Look up a contact", input_schema={})]

    def call(self, name: str, arguments: dict[str, Any], context: ToolContext) -> ToolResult:
        raise ConnectionError("crm unreachable")


def _engine(
    store: JobStore,
    settings: Settings,
    clock: FakeClock,
    client: ScriptedModelClient,
    *,
    max_rounds: int = 10,
) -> ToolExecutionEngine:
    ledger = UsageLedger(store.engine, clock=clock)
    guard = BudgetGuard(store.engine, ledger=ledger, settings=settings.budget, clock=clock)
    return ToolExecutionEngine(client=client, ledger=ledger, guard=guard, max_rounds=max_rounds)


def _tool_call(call_id: str, name: str, **arguments: Any) -> ModelResponse:
    return ModelResponse(
        text="",
        tool_calls=[ToolCall(call_id=call_id, name=name, arguments=arguments)],
        usage=TokenUsage(input_tokens=10, output_tokens=5),
        stop_reason="tool_use",
    )


def _final(text: str) -> ModelResponse:
    return ModelResponse(
        text=text,
        usage=TokenUsage(input_tokens=20, output_tokens=8),
        stop_reason="end_turn",
    )


def test_tool_results_are_fed_back_until_the_model_answers(
    store: JobStore,
    settings: Settings,
    clock: FakeClock,
) -> None:
    client = ScriptedModelClient(
        [
            _tool_call("call-1", "builtin__word_count", text="one two three"),
            _tool_call("call-2", "builtin__echo", text="done"),
            _final("Three words."),
        ],
    )
    engine = _engine(store, settings, clock, client)

    result = engine.execute(
        ExecutionRequest(text="How many words?"),
        ToolRegistry([BuiltinToolProvider()]),
        ExecutionContext(organization_id="org-1", job_id="job-1"),
    )

    assert result.success is True
    assert result.truncated is False
    assert result.rounds == 3
    assert result.result_text == "Three words."
    assert result.usage == TokenUsage(input_tokens=40, output_tokens=18)
    assert [call.name for call in result.tool_calls] == ["builtin__word_count", "builtin__echo"]
    assert result.tool_calls[0].output_preview == "3"

    third_request = client.requests[2]
    assert [message["role"] for message in third_request.messages] == [
        "user",
        "assistant",
        "user",
        "assistant",
        "user",
    ]
    tool_result = third_request.messages[2]["content"][0]
    assert tool_result == {
        "type": "tool_result",
        "tool_use_id": "call-1",
        "content": "3",
        "is_error": False,
    }
    assert "builtin__word_count" in [tool.name for tool in third_request.tools]
    assert len(engine.ledger.list_entries(organization_id="org-1")) == 3


def test_loop_stops_at_round_ceiling_with_truncated_success(
    store: JobStore,
    settings: Settings,
    clock: FakeClock,
) -> None:
    client = ScriptedModelClient(
        default=lambda request: ModelResponse(
            text=f"Still working ({len(request.messages)} messages)",
            tool_calls=[ToolCall(call_id="c", name="builtin__current_time")],
            usage=TokenUsage(input_tokens=1, output_tokens=1),
        ),
    )
    engine = _engine(store, settings, clock, client)

    result = engine.execute(
        ExecutionRequest(text="loop forever"),
        ToolRegistry([BuiltinToolProvider()]),
        ExecutionContext(organization_id="org-1"),
    )

    assert client.calls == 10
    assert result.success is True
    assert result.truncated is True
    assert result.rounds == 10
    assert len(result.tool_calls) == 9
    assert result.result_text == "Still working (19 messages)"


def test_tool_failures_become_error_results(
    store: JobStore,
    settings: Settings,
    clock: FakeClock,
) -> None:
    client = ScriptedModelClient(
        [
            ModelResponse(
                text="Checking",
                tool_calls=[
                    ToolCall(call_id="a", name="crm__lookup", arguments={"name": "Ada"}),
                    ToolCall(call_id="b", name="lookup"),
                    ToolCall(call_id="c", name="weather__forecast"),
                ],
            ),
            _final("The CRM is unavailable."),
        ],
    )
    engine = _engine(store, settings, clock, client)

    result = engine.execute(
        ExecutionRequest(text="Find Ada"),
        ToolRegistry([_ExplodingProvider()]),
        ExecutionContext(organization_id="org-1"),
    )

    assert result.success is True
    assert [call.is_error for call in result.tool_calls] == [True, True, True]
    blocks = client.requests[1].messages[-1]["content"]
    assert blocks[0]["content"] == "ConnectionError: crm unreachable"
    assert "not namespaced" in blocks[1]["content"]
    assert blocks[2]["content"] == "Unknown tool: weather__forecast"


def test_budget_exceeded_stops_before_calling_the_model(
    store: JobStore,
    settings: Settings,
    clock: FakeClock,
) -> None:
    client = ScriptedModelClient([_final("never")])
    engine = _engine(store, settings, clock, client)
    engine.guard.set_budget("org-1", 300)
    engine.ledger.record(
        UsageRecord(
            organization_id="org-1",
            provider="anthropic",
            model="claude-sonnet-4-5",
            input_tokens=1_000_000,
            output_tokens=0,
            success=True,
        ),
    )

    result = engine.execute(
        ExecutionRequest(text="hello"),
        ToolRegistry([BuiltinToolProvider()]),
        ExecutionContext(organization_id="org-1"),
    )

    assert result.success is False
    assert result.budget_exceeded is True
    assert result.budget_status is not None
    assert result.budget_status.spent_cents == pytest.approx(300.0)
    assert client.calls == 0
    assert len(engine.ledger.list_entries(organization_id="org-1")) == 1


def test_model_failure_is_recorded_and_raised(
    store: JobStore,
    settings: Settings,
    clock: FakeClock,
) -> None:
    client = ScriptedModelClient([ModelCallError("HTTP 529 overloaded", transient=True)])
    engine = _engine(store, settings, clock, client)

    with pytest.raises(ModelCallError):
        engine.execute(
            ExecutionRequest(text="hello"),
            ToolRegistry(),
            ExecutionContext(organization_id="org-1", job_id="job-9"),
        )

    entries = engine.ledger.list_entries(organization_id="org-1")
    assert len(entries) == 1
    assert entries[0].success is False
    assert entries[0].input_tokens == 0
    assert entries[0].job_id == "job-9"


def test_failed_call_records_the_tokens_the_provider_billed(
    store: JobStore,
    settings: Settings,
    clock: FakeClock,
) -> None:
    billed = ModelCallError(
        "Model endpoint returned HTTP 500: stream interrupted",
        transient=True,
        status_code=500,
        input_tokens=1200,
        output_tokens=340,
    )
    engine = _engine(store, settings, clock, ScriptedModelClient([billed]))

    with pytest.raises(ModelCallError):
        engine.execute(
            ExecutionRequest(text="hello"),
            ToolRegistry(),
            ExecutionContext(organization_id="org-1"),
        )

    entries = engine.ledger.list_entries(organization_id="org-1")
    assert [(entry.input_tokens, entry.output_tokens, entry.success) for entry in entries] == [
        (1200, 340, False),
    ]


def test_heartbeat_runs_before_every_model_call(
    store: JobStore,
    settings: Settings,
    clock: FakeClock,
) -> None:
    beats: list[int] = []
    client = ScriptedModelClient(
        [
            _tool_call("c1", "builtin__echo", text="a"),
            _tool_call("c2", "builtin__echo", text="b"),
            _final("done"),
        ],
    )
    engine = _engine(store, settings, clock, client)

    result = engine.execute(
        ExecutionRequest(text="hello"),
        ToolRegistry([BuiltinToolProvider()]),
        ExecutionContext(organization_id="org-1", heartbeat=lambda: beats.append(client.calls)),
    )

    assert result.success is True
    assert beats == [0, 1, 2]


def test_heartbeat_failure_aborts_before_the_next_call(
    store: JobStore,
    settings: Settings,
    clock: FakeClock,
) -> None:
    client = ScriptedModelClient([_tool_call("c1", "builtin__echo", text="a"), _final("never")])
    engine = _engine(store, settings, clock, client)

    def _heartbeat() -> None:
        if client.calls:
            raise LeaseLost("Lease lost for job job-3")

    with pytest.raises(LeaseLost):
        engine.execute(
            ExecutionRequest(text="hello"),
            ToolRegistry([BuiltinToolProvider()]),
            ExecutionContext(organization_id="org-1", job_id="job-3", heartbeat=_heartbeat),
        )

    assert client.calls == 1


def test_cancel_is_checked_before_each_round(
    store: JobStore,
    settings: Settings,
    clock: FakeClock,
) -> None:
    canceled = {"value": False}

    def _after_first_call(request: ModelRequest) -> ModelResponse:
        canceled["value"] = True
        return _tool_call("c", "builtin__echo", text="hi")

    client = ScriptedModelClient([_after_first_call, _final("never")])
    engine = _engine(store, settings, clock, client)

    result = engine.execute(
        ExecutionRequest(text="hello"),
        ToolRegistry([BuiltinToolProvider()]),
        ExecutionContext(organization_id="org-1", cancel_requested=lambda: canceled["value"]),
    )

    assert result.canceled is True
    assert result.success is False
    assert result.rounds == 1
    assert client.calls == 1


def test_registry_rejects_ambiguous_namespaces() -> None:
    registry = ToolRegistry([BuiltinToolProvider()])

    with pytest.raises(ValueError, match="already registered"):
        registry.register(BuiltinToolProvider())
    assert registry.namespaces == ["builtin"]
    assert split_tool_name("crm__lookup_contact") == ("crm", "lookup_contact")
    with pytest.raises(ValueError, match="not namespaced"):
        split_tool_name("lookup")


def test_engine_requires_positive_round_limit(
    store: JobStore,
    settings: Settings,
    clock: FakeClock,
) -> None:
    with pytest.raises(ValueError, match="max_rounds"):
        _engine(store, settings, clock, ScriptedModelClient(), max_rounds=0)
