"""Runtime configuration for queues, workers, engine, and budgets."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from jobrelay.queue.models import (
    EVENTS_QUEUE,
    NOTIFICATIONS_QUEUE,
    ORCHESTRATION_QUEUE,
    AdmissionPolicy,
)


@dataclass(slots=True)
class QueueSettings:
    """Per-queue throughput and retry policy."""

    rate_class: str
    concurrency: int = 3
    max_attempts: int = 3
    backoff_base_seconds: float = 5.0
    visibility_timeout_seconds: int = 300
    admission: AdmissionPolicy = AdmissionPolicy.BYPASS


def _default_queues() -> dict[str, QueueSettings]:
    return {
        EVENTS_QUEUE: QueueSettings(
            rate_class="ingestion",
            concurrency=4,
            max_attempts=3,
            backoff_base_seconds=2.0,
            visibility_timeout_seconds=60,
            admission=AdmissionPolicy.REJECT,
        ),
        ORCHESTRATION_QUEUE: QueueSettings(
            rate_class="orchestration",
            concurrency=3,
            max_attempts=3,
            backoff_base_seconds=10.0,
            visibility_timeout_seconds=600,
            admission=AdmissionPolicy.DEFER,
        ),
        NOTIFICATIONS_QUEUE: QueueSettings(
            rate_class="notification",
            concurrency=4,
            max_attempts=8,
            backoff_base_seconds=2.0,
            visibility_timeout_seconds=60,
            admission=AdmissionPolicy.BYPASS,
        ),
    }


def _default_ceilings() -> dict[str, int]:
    return {"ingestion": 100, "orchestration": 20, "notification": 300}


@dataclass(slots=True)
class RateLimitSettings:
    """Sliding-window ceilings per queue class."""

    window_seconds: float = 60.0
    ceilings: dict[str, int] = field(default_factory=_default_ceilings)


@dataclass(slots=True)
class EngineSettings:
    """Model endpoint and tool-loop settings."""

    max_tool_rounds: int = 10
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-5"
    base_url: str = "https://api.anthropic.com"
    api_key: str = ""
    timeout_seconds: float = 120.0
    max_tokens: int = 4096
    max_request_chars: int = 20_000


@dataclass(slots=True)
class BudgetSettings:
    """Monthly budget policy."""

    default_budget_cents: int = 0
    warning_threshold: float = 0.80
    critical_threshold: float = 0.95


@dataclass(slots=True)
class WorkerSettings:
    """Polling and delivery settings shared by worker pools."""

    poll_interval_seconds: float = 1.0
    notify_webhook_url: str = ""
    notify_timeout_seconds: float = 10.0
    dead_letter_max_replays: int = 5


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".jobrelay.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    queues: dict[str, QueueSettings] = field(default_factory=_default_queues)
    rate_limits: RateLimitSettings = field(default_factory=RateLimitSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)
    budget: BudgetSettings = field(default_factory=BudgetSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults suited to local development."""

        queues = _default_queues()
        for name, queue in queues.items():
            prefix = f"JOBRELAY_{name.upper()}"
            queue.concurrency = int(os.getenv(f"{prefix}_CONCURRENCY", str(queue.concurrency)))
            queue.max_attempts = int(os.getenv(f"{prefix}_MAX_ATTEMPTS", str(queue.max_attempts)))
            queue.backoff_base_seconds = float(
                os.getenv(f"{prefix}_BACKOFF_BASE_SECONDS", str(queue.backoff_base_seconds)),
            )
            queue.visibility_timeout_seconds = int(
                os.getenv(
                    f"{prefix}_VISIBILITY_TIMEOUT_SECONDS",
                    str(queue.visibility_timeout_seconds),
                ),
            )
            queue.admission = _env_admission(f"{prefix}_ADMISSION", default=queue.admission)

        ceilings = _default_ceilings()
        for rate_class in list(ceilings):
            ceilings[rate_class] = int(
                os.getenv(f"JOBRELAY_RATE_LIMIT_{rate_class.upper()}", str(ceilings[rate_class])),
            )

        return cls(
            db_path=db_path or Path(os.getenv("JOBRELAY_DB_PATH", ".jobrelay.db")),
            sqlite_busy_timeout_ms=int(os.getenv("JOBRELAY_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("JOBRELAY_LOG_LEVEL", "INFO").upper(),
            queues=queues,
            rate_limits=RateLimitSettings(
                window_seconds=float(os.getenv("JOBRELAY_RATE_LIMIT_WINDOW_SECONDS", "60")),
                ceilings=ceilings,
            ),
            engine=EngineSettings(
                max_tool_rounds=int(os.getenv("JOBRELAY_MAX_TOOL_ROUNDS", "10")),
                provider=os.getenv("JOBRELAY_MODEL_PROVIDER", "anthropic").strip().lower(),
                model=os.getenv("JOBRELAY_MODEL", "claude-sonnet-4-5"),
                base_url=os.getenv("JOBRELAY_MODEL_BASE_URL", "https://api.anthropic.com"),
                api_key=os.getenv("JOBRELAY_MODEL_API_KEY", ""),
                timeout_seconds=float(os.getenv("JOBRELAY_MODEL_TIMEOUT_SECONDS", "120")),
                max_tokens=int(os.getenv("JOBRELAY_MODEL_MAX_TOKENS", "4096")),
                max_request_chars=int(os.getenv("JOBRELAY_MAX_REQUEST_CHARS", "20000")),
            ),
            budget=BudgetSettings(
                default_budget_cents=int(os.getenv("JOBRELAY_DEFAULT_BUDGET_CENTS", "0")),
                warning_threshold=float(os.getenv("JOBRELAY_BUDGET_WARNING_THRESHOLD", "0.80")),
                critical_threshold=float(os.getenv("JOBRELAY_BUDGET_CRITICAL_THRESHOLD", "0.95")),
            ),
            worker=WorkerSettings(
                poll_interval_seconds=float(os.getenv("JOBRELAY_POLL_INTERVAL_SECONDS", "1.0")),
                notify_webhook_url=os.getenv("JOBRELAY_NOTIFY_WEBHOOK_URL", "").strip(),
                notify_timeout_seconds=float(
                    os.getenv("JOBRELAY_NOTIFY_TIMEOUT_SECONDS", "10.0"),
                ),
                dead_letter_max_replays=int(os.getenv("JOBRELAY_DEAD_LETTER_MAX_REPLAYS", "5")),
            ),
        )

    def queue(self, name: str) -> QueueSettings:
        """Return settings for a known queue or raise a configuration error."""

        try:
            return self.queues[name]
        except KeyError as error:
            raise ValueError(
                f"Unknown queue {name!r}. Expected one of: {', '.join(sorted(self.queues))}.",
            ) from error

    def validate(self) -> None:
        """Raise configuration error for values the pipeline cannot run with."""

        for name, queue in self.queues.items():
            prefix = f"JOBRELAY_{name.upper()}"
            if queue.concurrency <= 0:
                raise ValueError(f"{prefix}_CONCURRENCY must be > 0.")
            if queue.max_attempts <= 0:
                raise ValueError(f"{prefix}_MAX_ATTEMPTS must be > 0.")
            if queue.backoff_base_seconds < 0:
                raise ValueError(f"{prefix}_BACKOFF_BASE_SECONDS must be >= 0.")
            if queue.visibility_timeout_seconds <= 0:
                raise ValueError(f"{prefix}_VISIBILITY_TIMEOUT_SECONDS must be > 0.")
        if self.rate_limits.window_seconds <= 0:
            raise ValueError("JOBRELAY_RATE_LIMIT_WINDOW_SECONDS must be > 0.")
        if self.engine.max_tool_rounds <= 0:
            raise ValueError("JOBRELAY_MAX_TOOL_ROUNDS must be > 0.")
        if self.budget.default_budget_cents < 0:
            raise ValueError("JOBRELAY_DEFAULT_BUDGET_CENTS must be >= 0.")
        if not 0 < self.budget.warning_threshold <= self.budget.critical_threshold <= 1:
            raise ValueError(
                "Budget thresholds must satisfy 0 < warning <= critical <= 1 "
                f"(got warning={self.budget.warning_threshold}, "
                f"critical={self.budget.critical_threshold}).",
            )
        if self.worker.notify_webhook_url:
            _validate_url(self.worker.notify_webhook_url, name="JOBRELAY_NOTIFY_WEBHOOK_URL")
        _validate_url(self.engine.base_url, name="JOBRELAY_MODEL_BASE_URL")


def _validate_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_admission(name: str, default: AdmissionPolicy) -> AdmissionPolicy:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return AdmissionPolicy(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(policy.value for policy in AdmissionPolicy)
        raise ValueError(f"Invalid admission policy for {name}: {value!r} ({allowed})") from error
