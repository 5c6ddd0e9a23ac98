"""Shared test fixtures."""

from __future__ import annotations

import random
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from jobrelay.config import Settings
from jobrelay.queue.repository import JobStore


class FakeClock:
    """Settable clock shared by a store and its collaborators."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    settings = Settings(db_path=tmp_path / "jobrelay.db")
    for queue in settings.queues.values():
        queue.backoff_base_seconds = 1.0
    return settings


@pytest.fixture()
def store(settings: Settings, clock: FakeClock) -> Iterator[JobStore]:
    jobs = JobStore(settings.db_path, settings=settings, clock=clock, rng=random.Random(7))
    jobs.init_schema()
    try:
        yield jobs
    finally:
        jobs.close()
