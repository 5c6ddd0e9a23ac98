"""Deterministic failure classification for retry and dead-letter recovery policy."""

from __future__ import annotations

from dataclasses import dataclass

from jobrelay.errors import (
    BudgetExceeded,
    DeliveryError,
    ModelCallError,
    RateLimited,
    ValidationError,
)
from jobrelay.queue.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 2

_BUDGET_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "budget",
    "quota",
    "exceeded",
    "insufficient credits",
    "billing",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "authentication",
    "401",
    "403",
)
_PERMISSION_PATTERNS: tuple[str, ...] = ("permission denied",)
_INVALID_INPUT_PATTERNS: tuple[str, ...] = (
    "invalid",
    "malformed",
    "syntax error",
    "validation",
)
_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "not found",
    "404",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "etimedout",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "too many requests",
    "429",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "econnrefused",
    "enotfound",
    "connection reset",
    "connection refused",
    "network",
)
_TEMPORARY_PATTERNS: tuple[str, ...] = (
    "temporary",
    "temporarily unavailable",
    "transient",
    "overloaded",
    "502",
    "503",
    "504",
)

# Checked in order: permanent causes win over transient hints in the same text.
_RULES: tuple[tuple[str, tuple[str, ...], FailureClass], ...] = (
    ("budget_or_quota", _BUDGET_OR_QUOTA_PATTERNS, FailureClass.BUDGET_EXCEEDED),
    ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS, FailureClass.NON_RETRYABLE),
    ("permission_denied", _PERMISSION_PATTERNS, FailureClass.NON_RETRYABLE),
    ("invalid_input", _INVALID_INPUT_PATTERNS, FailureClass.VALIDATION),
    ("not_found", _NOT_FOUND_PATTERNS, FailureClass.NON_RETRYABLE),
    ("timeout", _TIMEOUT_PATTERNS, FailureClass.TRANSIENT),
    ("rate_limit", _RATE_LIMIT_PATTERNS, FailureClass.TRANSIENT),
    ("network", _NETWORK_PATTERNS, FailureClass.TRANSIENT),
    ("temporary", _TEMPORARY_PATTERNS, FailureClass.TRANSIENT),
)

_RETRYABLE_CLASSES = frozenset(
    {
        FailureClass.TRANSIENT,
        FailureClass.TOOL_ERROR,
        FailureClass.DELIVERY_TRANSIENT,
    },
)


def is_retryable(failure_class: FailureClass) -> bool:
    return failure_class in _RETRYABLE_CLASSES


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return is_retryable(self.failure_class)

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_exception(error: BaseException) -> FailureClassification:
    """Map a worker exception to a failure class.

    Typed pipeline errors carry their own retryability. Anything else is an
    unexpected worker crash and is transient whatever its message says;
    message patterns apply only to stored failure reasons.
    """

    if isinstance(error, ValidationError):
        return FailureClassification(
            failure_class=FailureClass.VALIDATION,
            reason_code="validation_error",
            matched_rule="typed_validation",
            matched_pattern=None,
        )
    if isinstance(error, BudgetExceeded):
        return FailureClassification(
            failure_class=FailureClass.BUDGET_EXCEEDED,
            reason_code="budget_exceeded",
            matched_rule="typed_budget",
            matched_pattern=None,
        )
    if isinstance(error, ModelCallError):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT if error.transient else FailureClass.NON_RETRYABLE,
            reason_code=(
                f"model_http_{error.status_code}" if error.status_code else "model_call_failed"
            ),
            matched_rule="typed_model_call",
            matched_pattern=None,
        )
    if isinstance(error, RateLimited):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="rate_limited",
            matched_rule="typed_rate_limit",
            matched_pattern=None,
        )
    if isinstance(error, DeliveryError):
        return FailureClassification(
            failure_class=(
                FailureClass.DELIVERY_TRANSIENT if error.transient else FailureClass.DELIVERY_PERMANENT
            ),
            reason_code="delivery_failed",
            matched_rule="typed_delivery",
            matched_pattern=None,
        )

    return FailureClassification(
        failure_class=FailureClass.TRANSIENT,
        reason_code=f"unexpected_{type(error).__name__.lower()}",
        matched_rule="fallback_transient",
        matched_pattern=None,
    )


def classify_failure_reason(reason: str) -> FailureClassification:
    """Classify a stored failure message, as done for dead-letter recovery."""

    haystack = reason.lower()
    for rule, patterns, failure_class in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                failure_class=failure_class,
                reason_code=rule,
                matched_rule=rule,
                matched_pattern=pattern,
            )
    return FailureClassification(
        failure_class=FailureClass.NON_RETRYABLE,
        reason_code="unknown",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
