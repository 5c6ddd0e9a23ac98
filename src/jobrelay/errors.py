"""Error taxonomy shared by queue, engine, and workers."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from jobrelay.budget.models import BudgetStatus


class JobRelayError(RuntimeError):
    """Base class for pipeline errors."""


class NotFound(JobRelayError):
    """Requested job or dead-letter record does not exist."""


class RateLimited(JobRelayError):
    """Admission rejected by the sliding-window limiter."""

    def __init__(
        self,
        *,
        organization_id: str,
        queue_class: str,
        retry_after_seconds: float,
    ) -> None:
        super().__init__(
            f"Rate limit reached for organization={organization_id} "
            f"class={queue_class}; retry after {retry_after_seconds:.1f}s",
        )
        self.organization_id = organization_id
        self.queue_class = queue_class
        self.retry_after_seconds = retry_after_seconds


class BudgetExceeded(JobRelayError):
    """Organization spent its monthly budget ceiling."""

    def __init__(self, status: BudgetStatus) -> None:
        super().__init__(
            f"Monthly budget exceeded for organization={status.organization_id}: "
            f"spent {status.spent_cents:.2f} of {status.budget_cents} cents",
        )
        self.status = status


class ValidationError(JobRelayError):
    """Permanent payload error; the job is never retried."""


class LeaseLost(JobRelayError):
    """Lease expired or was taken over before the worker resolved the job."""


class InvalidProgressTransition(JobRelayError):
    """Progress state machine refused a backward or post-terminal move."""


class ModelCallError(JobRelayError):
    """Language-model invocation failed, with retryability hint.

    Token counts the provider billed for the failed call, if it reported any.
    """

    def __init__(  # noqa: PLR0913
        self,
        message: str,
        *,
        transient: bool,
        status_code: int | None = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens


class DeliveryError(JobRelayError):
    """Notification channel could not deliver a message."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient
