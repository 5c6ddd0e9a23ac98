"""Tool-execution engine: a bounded model/tool conversation loop."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from jobrelay.budget.guard import BudgetGuard
from jobrelay.budget.ledger import UsageLedger
from jobrelay.budget.models import BudgetStatus, UsageRecord
from jobrelay.engine.backend.base import ModelClient, ModelRequest, ModelResponse, TokenUsage
from jobrelay.engine.tools import ToolContext, ToolRegistry
from jobrelay.errors import BudgetExceeded, ModelCallError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 10
DEFAULT_SYSTEM_PROMPT = (
    "You are a workplace assistant. Use the available tools when they help answer "
    "the request, then reply with a concise final answer."
)


@dataclass(slots=True)
class ExecutionRequest:
    """User request to run through the loop."""

    text: str
    system_prompt: str | None = None


@dataclass(slots=True)
class ExecutionContext:
    """Caller identity plus the cancellation and lease-renewal hooks.

    `heartbeat` runs before every model call; an exception it raises (such as
    `LeaseLost`) aborts the run.
    """

    organization_id: str
    user_id: str | None = None
    job_id: str | None = None
    session_id: str | None = None
    cancel_requested: Callable[[], bool] | None = None
    heartbeat: Callable[[], object] | None = None

    def tool_context(self) -> ToolContext:
        return ToolContext(
            organization_id=self.organization_id,
            user_id=self.user_id,
            job_id=self.job_id,
            session_id=self.session_id,
        )


@dataclass(slots=True)
class ToolCallRecord:
    """Audit entry for one executed tool call."""

    round: int
    name: str
    arguments: dict[str, Any]
    is_error: bool
    output_preview: str


@dataclass(slots=True)
class ExecutionResult:
    """Loop outcome.

    `truncated` results are successful: the round ceiling was reached and the
    latest text is returned as best effort.
    """

    success: bool
    result_text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    rounds: int = 0
    truncated: bool = False
    canceled: bool = False
    budget_exceeded: bool = False
    budget_status: BudgetStatus | None = None
    error: str | None = None
    tool_calls: list[ToolCallRecord] = field(default_factory=list)


class ToolExecutionEngine:
    """Runs request -> model -> tools -> model rounds up to `max_rounds`.

    Before each model call the engine checks cancellation and renews the
    caller's lease, then checks the budget.
    Every model call is appended to the usage ledger, failed ones included.
    Model errors propagate to the caller; tool errors are fed back to the
    model as `is_error` results.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        client: ModelClient,
        ledger: UsageLedger,
        guard: BudgetGuard,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        max_tokens: int = 4096,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> None:
        if max_rounds <= 0:
            raise ValueError("max_rounds must be > 0")
        self.client = client
        self.ledger = ledger
        self.guard = guard
        self.max_rounds = max_rounds
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt

    def execute(
        self,
        request: ExecutionRequest,
        tools: ToolRegistry,
        context: ExecutionContext,
    ) -> ExecutionResult:
        schemas = tools.schemas()
        messages: list[dict[str, Any]] = [{"role": "user", "content": request.text}]
        usage = TokenUsage()
        text = ""
        records: list[ToolCallRecord] = []

        for round_no in range(1, self.max_rounds + 1):
            if context.cancel_requested is not None and context.cancel_requested():
                logger.info("Execution for job=%s canceled before round %d", context.job_id, round_no)
                return ExecutionResult(
                    success=False,
                    result_text=text,
                    usage=usage,
                    rounds=round_no - 1,
                    canceled=True,
                    tool_calls=records,
                )

            if context.heartbeat is not None:
                context.heartbeat()

            try:
                self.guard.check(context.organization_id)
            except BudgetExceeded as error:
                return ExecutionResult(
                    success=False,
                    result_text=text,
                    usage=usage,
                    rounds=round_no - 1,
                    budget_exceeded=True,
                    budget_status=error.status,
                    error=str(error),
                    tool_calls=records,
                )

            response = self._invoke(
                ModelRequest(
                    model=self.client.model,
                    messages=list(messages),
                    tools=schemas,
                    max_tokens=self.max_tokens,
                    system=request.system_prompt or self.system_prompt,
                ),
                context=context,
            )
            usage = usage.plus(response.usage)
            if response.text:
                text = response.text

            if not response.tool_calls:
                return ExecutionResult(
                    success=True,
                    result_text=text,
                    usage=usage,
                    rounds=round_no,
                    tool_calls=records,
                )

            if round_no == self.max_rounds:
                logger.warning(
                    "Execution for job=%s reached the %d-round ceiling; returning partial result",
                    context.job_id,
                    self.max_rounds,
                )
                return ExecutionResult(
                    success=True,
                    result_text=text,
                    usage=usage,
                    rounds=round_no,
                    truncated=True,
                    tool_calls=records,
                )

            tool_context = context.tool_context()
            result_blocks: list[dict[str, Any]] = []
            for call in response.tool_calls:
                result = tools.execute(call.name, call.arguments, tool_context)
                records.append(
                    ToolCallRecord(
                        round=round_no,
                        name=call.name,
                        arguments=call.arguments,
                        is_error=result.is_error,
                        output_preview=result.content[:200],
                    ),
                )
                result_blocks.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": call.call_id,
                        "content": result.content,
                        "is_error": result.is_error,
                    },
                )
            messages = [
                *messages,
                {"role": "assistant", "content": response.content_blocks()},
                {"role": "user", "content": result_blocks},
            ]

        raise AssertionError("unreachable: loop returns on its final round")

    def _invoke(self, request: ModelRequest, *, context: ExecutionContext) -> ModelResponse:
        try:
            response = self.client.complete(request)
        except ModelCallError as error:
            self._record(
                context=context,
                usage=TokenUsage(
                    input_tokens=error.input_tokens,
                    output_tokens=error.output_tokens,
                ),
                success=False,
            )
            raise
        except Exception:
            self._record(context=context, usage=TokenUsage(), success=False)
            raise
        self._record(context=context, usage=response.usage, success=True)
        return response

    def _record(self, *, context: ExecutionContext, usage: TokenUsage, success: bool) -> None:
        self.ledger.record(
            UsageRecord(
                organization_id=context.organization_id,
                provider=self.client.provider,
                model=self.client.model,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                success=success,
                job_id=context.job_id,
            ),
        )
